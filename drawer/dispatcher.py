# -*- coding: utf-8 -*-
"""
Paintboard Drawer — 派发 worker

每个 worker 线程循环：
  1. 从待绘集合取一个偏移量（被取消则退出）
  2. 借一个 token（没有可用 token 时阻塞，被取消则退出）
  3. 解析 token；已失效则移出轮转，继续下一个偏移量
  4. 计算期望颜色（白色替换）并请求绘制
  5. 成功 → token 进入冷却；失败 → token 立即归还，像素不重新入队
     （等下一轮对账重新检测；requeue_on_failure=True 时立即重新入队）

worker 不修改待绘标记（dequeue 时已清除）。
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Protocol

from .cancel import CancelToken
from .credential_pool import CredentialPool, Lease
from .errors import PaintRejected, UnknownCredential
from .image import Placement, TargetImage
from .pending import PendingSet

logger = logging.getLogger("drawer.dispatcher")


class PaintBackend(Protocol):
    """绘制后端"""

    def paint(self, x: int, y: int, color: int, uid: int, token: str) -> bool: ...


@dataclass
class PaintStats:
    """绘制计数（所有 worker 共享，线程安全）"""

    started_at: float = field(default_factory=time.time)
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_success(self) -> None:
        with self._lock:
            self.succeeded += 1

    def record_failure(self) -> None:
        with self._lock:
            self.failed += 1

    def record_skip(self) -> None:
        with self._lock:
            self.skipped += 1

    def rate(self, interval: float, known_tokens: int) -> float:
        """token 利用率：实际成功数 / 理论最大成功数"""
        elapsed = time.time() - self.started_at
        if elapsed <= 0 or known_tokens <= 0:
            return 0.0
        with self._lock:
            return self.succeeded * interval / (elapsed * known_tokens)


class DispatchWorker:
    """单个派发 worker（在独立线程中运行 run()）"""

    def __init__(
        self,
        index: int,
        backend: PaintBackend,
        image: TargetImage,
        placement: Placement,
        pending: PendingSet,
        pool: CredentialPool,
        cancel: CancelToken,
        stats: PaintStats,
        interval: float,
        requeue_on_failure: bool = False,
    ):
        self.index = index
        self.backend = backend
        self.image = image
        self.placement = placement
        self.pending = pending
        self.pool = pool
        self.cancel = cancel
        self.stats = stats
        self.interval = interval
        self.requeue_on_failure = requeue_on_failure

    @property
    def name(self) -> str:
        return f"worker-{self.index}"

    def run(self) -> None:
        """循环直到取消"""
        while True:
            offset = self.pending.dequeue()
            if offset is None:
                break
            lease = self.pool.acquire(self.cancel)
            if lease is None:
                break
            try:
                self.process(offset, lease)
            except Exception as e:
                logger.error("[%s] 处理 offset=%d 异常: %s", self.name, offset, e, exc_info=True)
                self.pool.release(lease, success=False)
        logger.info("[%s] 退出", self.name)

    def process(self, offset: int, lease: Lease) -> bool:
        """处理一个偏移量，返回是否绘制成功"""
        try:
            credential = self.pool.resolve(lease.uid)
        except UnknownCredential as e:
            self.pool.discard(lease.uid)
            self.stats.record_skip()
            logger.warning("[%s] %s，跳过", self.name, e)
            return False

        x, y = self.image.coords(offset)
        cx, cy = self.placement.to_canvas(x, y)
        color = self.image.expected_color(x, y)
        try:
            self._paint(cx, cy, color, credential.uid, credential.token)
        except PaintRejected as e:
            self.pool.release(lease, success=False)
            self.stats.record_failure()
            logger.info("[%s] %s", self.name, e)
            if self.requeue_on_failure:
                self.pending.enqueue(offset)
            return False

        self.pool.release(lease, success=True)
        self.stats.record_success()
        remaining = self.pending.size()
        if remaining:
            known = max(len(self.pool.tokens), 1)
            logger.info(
                "队列剩余 %d 像素... 预计 >= %d 秒",
                remaining, int(remaining * self.interval // known),
            )
        return True

    def _paint(self, x: int, y: int, color: int, uid: int, token: str) -> None:
        try:
            ok = self.backend.paint(x, y, color, uid, token)
        except Exception as e:
            raise PaintRejected(f"绘制 ({x}, {y}) 异常: {e}") from e
        if not ok:
            raise PaintRejected(f"绘制 ({x}, {y}) 失败 uid={uid}")
