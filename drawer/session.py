# -*- coding: utf-8 -*-
"""
Paintboard Drawer — 绘制会话控制器

负责生命周期（start / reset / stop），把对账循环、派发 worker、
待绘集合、token 池组装在一起，并提供进度 / 状态查询。

线程模型：
  - 1 个对账线程（reconciler）
  - N 个 worker 线程（worker-0 … worker-N-1）
  - 1 个吞吐监控线程（monitor）
  - 若干 token 冷却计时器（threading.Timer，由 token 池管理）

所有线程共享同一个 CancelToken；reset() / stop() 触发取消后全部及时退出。
换图、改位置都会强制 reset()，运行中的线程不会看到中途变化的图片或位置。
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .cancel import CancelToken
from .config import DrawerConfig
from .credential_pool import CredentialPool, CredentialState
from .dispatcher import DispatchWorker, PaintBackend, PaintStats
from .errors import DrawerError, InvalidPlacement
from .image import Placement, TargetImage, check_size
from .pending import PendingSet
from .reconciler import BoardSource, Reconciler
from .token_store import TokenStore

logger = logging.getLogger("drawer.session")


# ── 状态 ─────────────────────────────────────────────────────

class WorkState(str, Enum):
    NOT_RUNNING = "not_running"        # 没有运行中的会话
    IDLE = "idle"                      # 待绘像素少于 2 个，视为已收敛
    ESTIMATED = "estimated"            # 正在绘制，附带预计剩余秒数
    NO_CREDENTIALS = "no_credentials"  # 没有任何已知 token


@dataclass(frozen=True)
class WorkStatus:
    state: WorkState
    seconds: Optional[int] = None

    def describe(self) -> str:
        if self.state is WorkState.NOT_RUNNING:
            return "未运行"
        if self.state is WorkState.IDLE:
            return "空闲（已收敛）"
        if self.state is WorkState.NO_CREDENTIALS:
            return "没有可用 token"
        return f"预计剩余 {self.seconds} 秒"


# ── 会话 ─────────────────────────────────────────────────────

class DrawerSession:
    """绘制会话"""

    def __init__(
        self,
        config: DrawerConfig,
        board: BoardSource,
        backend: PaintBackend,
        tokens: TokenStore,
        progress_callback: Optional[Callable[[dict[str, Any]], None]] = None,
    ):
        self.config = config
        self.board = board
        self.backend = backend
        self.tokens = tokens
        self.progress_callback = progress_callback

        self.image: Optional[TargetImage] = None
        self.placement = Placement(config.origin_x, config.origin_y)
        self.pool = CredentialPool(
            tokens,
            cooldown=config.cooldown_seconds,
            capacity=config.pool_capacity,
        )
        self.pending = self._new_pending(None)
        self.stats = PaintStats()

        self._lock = threading.RLock()
        self._cancel: Optional[CancelToken] = None
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return self._cancel is not None

    # ── 生命周期 ─────────────────────────────────────────────

    def start(self) -> None:
        """完整重置后启动对账线程、worker 线程和监控线程"""
        with self._lock:
            if self.image is None:
                raise DrawerError("尚未设置目标图片")

            self._cancel_current()
            cancel = CancelToken()
            self._rebuild(cancel)
            cancel.register(self.pool.wake)
            self._cancel = cancel
            self.stats = PaintStats()

            reconciler = Reconciler(
                board=self.board,
                image=self.image,
                placement=self.placement,
                pending=self.pending,
                cancel=cancel,
                initial_delay=self.config.initial_check_delay,
                update_interval=self.config.update_interval,
                scan_order=self.config.scan_order,
                canvas_size=(self.config.board_width, self.config.board_height),
            )
            threads = [threading.Thread(target=reconciler.run, name="reconciler", daemon=True)]
            for i in range(self.config.worker_count):
                worker = DispatchWorker(
                    index=i,
                    backend=self.backend,
                    image=self.image,
                    placement=self.placement,
                    pending=self.pending,
                    pool=self.pool,
                    cancel=cancel,
                    stats=self.stats,
                    interval=self.config.paint_interval,
                    requeue_on_failure=self.config.requeue_on_failure,
                )
                threads.append(threading.Thread(target=worker.run, name=worker.name, daemon=True))
            threads.append(
                threading.Thread(target=self._monitor, args=(cancel, self.stats), name="monitor", daemon=True)
            )

            self._threads = threads
            for t in threads:
                t.start()
            logger.info(
                "开始绘制: 图片 %dx%d @ (%d, %d) | worker=%d | token=%d",
                self.image.width, self.image.height,
                self.placement.origin_x, self.placement.origin_y,
                self.config.worker_count, len(self.tokens),
            )

    def reset(self) -> None:
        """取消当前会话（未运行时跳过），重建待绘集合并用已知 token 重新播种 token 池"""
        with self._lock:
            logger.info("重置...")
            self._cancel_current()
            self._rebuild(None)

    def stop(self, timeout: Optional[float] = None) -> bool:
        """重置并等待线程退出，返回是否全部退出"""
        threads = self._threads
        self.reset()
        return self._join(threads, timeout)

    def join(self, timeout: Optional[float] = None) -> bool:
        """等待当前会话的所有线程退出"""
        return self._join(self._threads, timeout)

    def close(self) -> None:
        """停止会话并取消所有冷却计时器"""
        self.stop(timeout=5)
        self.pool.close()

    def _cancel_current(self) -> None:
        if self._cancel is not None:
            self._cancel.cancel()
            self._cancel = None

    def _rebuild(self, cancel: Optional[CancelToken]) -> None:
        self.pending = self._new_pending(cancel)
        self.pool.seed(self.tokens.ids())

    def _new_pending(self, cancel: Optional[CancelToken]) -> PendingSet:
        return PendingSet(
            flag_count=self.config.max_image_size ** 2,
            capacity=self.config.pending_capacity,
            cancel=cancel,
        )

    @staticmethod
    def _join(threads: list[threading.Thread], timeout: Optional[float]) -> bool:
        for t in threads:
            t.join(timeout)
        return not any(t.is_alive() for t in threads)

    # ── 配置变更 ─────────────────────────────────────────────

    def set_image(self, image: TargetImage) -> None:
        """替换目标图片（超过尺寸上限时抛出 SizeLimitExceeded，不替换），并重置"""
        check_size(image.width, image.height, self.config.max_image_size)
        with self._lock:
            self.reset()
            self.image = image
        logger.info("目标图片: %s (%dx%d)", image.source, image.width, image.height)

    def load_image(self, path: str | Path) -> TargetImage:
        """从文件加载目标图片"""
        image = TargetImage.from_file(path, max_size=self.config.max_image_size)
        self.set_image(image)
        return image

    def set_position(self, x: int, y: int) -> None:
        """修改图片放置位置，并重置"""
        if not 0 <= x <= self.config.board_width:
            raise InvalidPlacement(f"X 超出范围: {x}（0~{self.config.board_width}）")
        if not 0 <= y <= self.config.board_height:
            raise InvalidPlacement(f"Y 超出范围: {y}（0~{self.config.board_height}）")
        with self._lock:
            self.placement = Placement(x, y)
            self.reset()
        logger.info("图片位置: (%d, %d)", x, y)

    # ── token ────────────────────────────────────────────────

    def add_token(self, uid: int, token: str) -> None:
        """登记 token，立即进入 token 池可用（与 reset() 的重新播种互斥）"""
        with self._lock:
            self.tokens.set(uid, token)
            self.pool.add(uid)
        logger.info("新增 token: uid=%d", uid)

    def get_tokens(self) -> dict[int, str]:
        return self.tokens.snapshot()

    # ── 查询 ─────────────────────────────────────────────────

    def status(self) -> WorkStatus:
        if self._cancel is None:
            return WorkStatus(WorkState.NOT_RUNNING)
        remaining = self.pending.size()
        if remaining < 2:
            return WorkStatus(WorkState.IDLE)
        known = len(self.tokens)
        if known == 0:
            return WorkStatus(WorkState.NO_CREDENTIALS)
        return WorkStatus(WorkState.ESTIMATED, remaining * self.config.paint_interval // known)

    def image_size(self) -> tuple[int, int]:
        if self.image is None:
            return 0, 0
        return self.image.size

    def image_pixel(self, x: int, y: int) -> int:
        """目标图片 (x, y) 的原始颜色"""
        if self.image is None:
            raise DrawerError("尚未设置目标图片")
        return self.image.color_at(x, y)

    def describe(self) -> dict[str, Any]:
        """会话快照（供 Web UI 展示）"""
        status = self.status()
        return {
            "running": self.running,
            "status": status.state.value,
            "status_text": status.describe(),
            "eta_seconds": status.seconds,
            "pending": self.pending.size(),
            "image_path": self.image.source if self.image else "",
            "image_size": list(self.image_size()),
            "origin": [self.placement.origin_x, self.placement.origin_y],
            "token_count": len(self.tokens),
            "pool_available": self.pool.count(CredentialState.AVAILABLE),
            "pool_in_flight": self.pool.count(CredentialState.IN_FLIGHT),
            "pool_cooling": self.pool.count(CredentialState.COOLING),
            "painted": self.stats.succeeded,
            "failed": self.stats.failed,
        }

    # ── 吞吐监控 ─────────────────────────────────────────────

    def _monitor(self, cancel: CancelToken, stats: PaintStats) -> None:
        while not cancel.wait(self.config.monitor_interval):
            known = len(self.tokens)
            logger.info(
                "Token: %d | Rate: %.3f | 成功 %d 失败 %d",
                known, stats.rate(self.config.paint_interval, known), stats.succeeded, stats.failed,
            )
            if self.progress_callback is not None:
                try:
                    self.progress_callback(self.describe())
                except Exception as e:
                    logger.warning("进度回调失败: %s", e)
        logger.info("监控线程退出")
