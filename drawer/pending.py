# -*- coding: utf-8 -*-
"""
Paintboard Drawer — 待绘集合（去重队列）

每个像素偏移量对应一个"待绘"标记，外加一个有界 FIFO 队列。

不变式：
  - 标记置位 ⇔ 偏移量在队列中（或正被 dequeue() 取出）
  - 标记置位期间同一偏移量不会重复入队

标记在 dequeue() 时就清除，而不是在绘制确认成功后。
绘制失败的像素要等下一轮对账重新检测到才会再次入队。

队列满时 enqueue() 阻塞调用方（对账线程），不丢弃。
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Optional

from .cancel import CancelToken

logger = logging.getLogger("drawer.pending")


class PendingSet:
    """线程安全的待绘偏移量集合"""

    def __init__(self, flag_count: int, capacity: int, cancel: Optional[CancelToken] = None):
        self.capacity = capacity
        self._flags = bytearray(flag_count)
        self._queue: deque[int] = deque()
        self._cond = threading.Condition()
        self._cancel = cancel
        if cancel is not None:
            cancel.register(self.wake)

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.cancelled

    def enqueue(self, offset: int) -> bool:
        """
        标记并入队。

        Returns:
            True 表示新入队；已标记或在等待队列空位时被取消返回 False
        """
        with self._cond:
            if self._flags[offset]:
                return False
            while len(self._queue) >= self.capacity:
                if self._cancelled():
                    return False
                self._cond.wait()
            if self._flags[offset]:
                return False
            self._flags[offset] = 1
            self._queue.append(offset)
            self._cond.notify_all()
            return True

    def dequeue(self) -> Optional[int]:
        """取出一个偏移量并清除其标记；队列为空时阻塞，被取消返回 None"""
        with self._cond:
            while not self._queue:
                if self._cancelled():
                    return None
                self._cond.wait()
            if self._cancelled():
                return None
            offset = self._queue.popleft()
            self._flags[offset] = 0
            self._cond.notify_all()
            return offset

    def wake(self) -> None:
        """唤醒所有等待者（取消时调用）"""
        with self._cond:
            self._cond.notify_all()

    def is_pending(self, offset: int) -> bool:
        with self._cond:
            return bool(self._flags[offset])

    def size(self) -> int:
        """当前队列长度（仅用于状态估算）"""
        return len(self._queue)

    def flag_count(self) -> int:
        """当前置位的标记数"""
        with self._cond:
            return sum(self._flags)
