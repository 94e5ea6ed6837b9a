# -*- coding: utf-8 -*-
"""
会话级取消信号

一个 CancelToken 被对账线程、所有 worker 的阻塞等待共同观察。
cancel() 后：
  - wait() 立即返回 True
  - 通过 register() 注册的回调各执行一次（用于唤醒 Condition 上的等待者）
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger("drawer.cancel")


class CancelToken:
    """可广播的取消信号（线程安全，cancel 幂等）"""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """触发取消；重复调用无副作用"""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            try:
                cb()
            except Exception as e:
                logger.error("取消回调异常: %s", e, exc_info=True)

    def register(self, callback: Callable[[], None]) -> None:
        """注册取消回调；已取消时立即执行"""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """等待最多 timeout 秒，期间被取消返回 True"""
        return self._event.wait(timeout)
