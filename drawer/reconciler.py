# -*- coding: utf-8 -*-
"""
Paintboard Drawer — 对账循环

状态机：等待 → 刷新画板 → 逐像素比对 → 等待 …，只在等待开始时响应取消。

每轮：
  1. 等待（第一轮 initial_delay，之后 update_interval），期间被取消立即退出
  2. 拉取画板快照；失败只记日志，跳过本轮比对，下一轮重试
  3. 遍历目标图片的每个偏移量（顺序或随机排列，每轮每个偏移量恰好一次）：
     期望颜色（白色替换后）与画板颜色不同、且未在待绘集合中 → 入队
"""

from __future__ import annotations

import logging
import random
from typing import Iterable, Optional, Protocol

from .cancel import CancelToken
from .config import ScanOrder
from .errors import CanvasRefreshFailed
from .image import Placement, TargetImage
from .pending import PendingSet

logger = logging.getLogger("drawer.reconciler")


class BoardSource(Protocol):
    """画板快照来源"""

    def refresh(self) -> None: ...

    def pixel_at(self, x: int, y: int) -> int: ...


class Reconciler:
    """对账循环（在独立线程中运行 run()）"""

    def __init__(
        self,
        board: BoardSource,
        image: TargetImage,
        placement: Placement,
        pending: PendingSet,
        cancel: CancelToken,
        initial_delay: float = 1.0,
        update_interval: float = 300.0,
        scan_order: ScanOrder = ScanOrder.RASTER,
        canvas_size: Optional[tuple[int, int]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.board = board
        self.image = image
        self.placement = placement
        self.pending = pending
        self.cancel = cancel
        self.initial_delay = initial_delay
        self.update_interval = update_interval
        self.scan_order = ScanOrder(scan_order)
        self.canvas_size = canvas_size
        self.rng = rng or random.Random()

        self.cycles = 0
        self.failed_refreshes = 0

    def run(self) -> None:
        """循环直到取消"""
        delay = self.initial_delay
        while not self.cancel.wait(delay):
            try:
                self.run_cycle()
            except Exception as e:
                logger.error("对账循环异常: %s", e, exc_info=True)
            delay = self.update_interval
        logger.info("对账线程退出")

    def run_cycle(self) -> int:
        """刷新画板并比对一轮，返回新入队的像素数"""
        self.cycles += 1
        try:
            self.board.refresh()
        except CanvasRefreshFailed as e:
            self.failed_refreshes += 1
            logger.warning("画板刷新失败，跳过本轮比对: %s", e)
            return 0
        return self.scan()

    def scan(self) -> int:
        """按当前画板快照比对所有偏移量，返回新入队的像素数"""
        added = 0
        off_canvas = 0
        for offset in self._scan_offsets():
            if self.cancel.cancelled:
                break
            x, y = self.image.coords(offset)
            cx, cy = self.placement.to_canvas(x, y)
            if not self._on_canvas(cx, cy):
                off_canvas += 1
                continue

            expected = self.image.expected_color(x, y)
            actual = self.board.pixel_at(cx, cy)
            if expected == actual:
                continue
            if self.pending.enqueue(offset):
                added += 1
                logger.debug(
                    "差异 (%d, %d) → 画板 (%d, %d)，期望 %#08x 实际 %#08x",
                    x, y, cx, cy, expected, actual,
                )

        if off_canvas:
            logger.warning("%d 个像素超出画板范围，已跳过", off_canvas)
        logger.info("对账完成: 新增 %d，待绘 %d", added, self.pending.size())
        return added

    def _scan_offsets(self) -> Iterable[int]:
        if self.scan_order is ScanOrder.RANDOM:
            offsets = list(self.image.offsets())
            self.rng.shuffle(offsets)
            return offsets
        return self.image.offsets()

    def _on_canvas(self, cx: int, cy: int) -> bool:
        if self.canvas_size is None:
            return True
        width, height = self.canvas_size
        return 0 <= cx < width and 0 <= cy < height
