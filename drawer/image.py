# -*- coding: utf-8 -*-
"""
Paintboard Drawer — 目标图片与放置位置

TargetImage 加载后只读；换图时整体替换并触发会话重置。

像素偏移量按列优先编码（与对账队列、待绘标记一致）：
    offset = x * height + y
    x, y   = divmod(offset, height)

纯白 0xFFFFFF 在画板上表示"未绘制/背景"，永远不能直接请求，
比对和绘制前统一替换为近白色 0xAAAAAA。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

import numpy as np
from PIL import Image

from .errors import SizeLimitExceeded

logger = logging.getLogger("drawer.image")

WHITE = 0xFFFFFF
WHITE_SUBSTITUTE = 0xAAAAAA
DEFAULT_MAX_SIZE = 200


def substitute_white(color: int) -> int:
    """白色替换规则：0xFFFFFF → 0xAAAAAA，其余颜色原样返回"""
    return WHITE_SUBSTITUTE if color == WHITE else color


def pack_rgb(r: int, g: int, b: int) -> int:
    return (r << 16) | (g << 8) | b


def color_to_hex(color: int) -> str:
    """24 位颜色 → 6 位小写十六进制（画板 API 格式）"""
    return f"{color & 0xFFFFFF:06x}"


@dataclass(frozen=True)
class Placement:
    """图片左上角在画板上的坐标"""
    origin_x: int = 0
    origin_y: int = 0

    def to_canvas(self, x: int, y: int) -> tuple[int, int]:
        return self.origin_x + x, self.origin_y + y


@dataclass(frozen=True, eq=False)
class TargetImage:
    """
    目标图片（只读）。

    pixels 是 shape 为 (width, height) 的 uint32 数组，pixels[x, y] 为 0xRRGGBB。
    """

    width: int
    height: int
    pixels: np.ndarray
    source: str = ""

    def __post_init__(self) -> None:
        if self.pixels.shape != (self.width, self.height):
            raise ValueError(
                f"像素数组尺寸 {self.pixels.shape} 与图片尺寸 {self.width}x{self.height} 不一致"
            )
        self.pixels.setflags(write=False)

    # ── 构造 ─────────────────────────────────────────────────

    @classmethod
    def from_rows(
        cls,
        rows: Sequence[Sequence[int]],
        max_size: int = DEFAULT_MAX_SIZE,
        source: str = "<memory>",
    ) -> "TargetImage":
        """由行列表构造：rows[y][x] 为 0xRRGGBB"""
        height = len(rows)
        width = len(rows[0]) if height else 0
        check_size(width, height, max_size)
        grid = np.array(rows, dtype=np.uint32).reshape(height, width).T.copy()
        return cls(width=width, height=height, pixels=grid, source=source)

    @classmethod
    def from_pil(
        cls,
        img: Image.Image,
        max_size: int = DEFAULT_MAX_SIZE,
        source: str = "<pil>",
    ) -> "TargetImage":
        """由 Pillow 图片构造（透明通道丢弃）"""
        width, height = img.size
        check_size(width, height, max_size)
        rgb = np.asarray(img.convert("RGB"), dtype=np.uint32)  # (height, width, 3)
        packed = (rgb[:, :, 0] << 16) | (rgb[:, :, 1] << 8) | rgb[:, :, 2]
        return cls(width=width, height=height, pixels=packed.T.copy(), source=source)

    @classmethod
    def from_file(cls, path: str | Path, max_size: int = DEFAULT_MAX_SIZE) -> "TargetImage":
        """
        从图片文件加载（PNG / JPEG 等 Pillow 支持的格式）。

        Raises:
            FileNotFoundError: 文件不存在
            SizeLimitExceeded: 宽或高超过 max_size
        """
        with Image.open(path) as img:
            logger.info("图片尺寸: %dx%d (%s)", img.size[0], img.size[1], path)
            return cls.from_pil(img, max_size=max_size, source=str(path))

    # ── 查询 ─────────────────────────────────────────────────

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    @property
    def offset_count(self) -> int:
        return self.width * self.height

    def color_at(self, x: int, y: int) -> int:
        """图片原始颜色"""
        return int(self.pixels[x, y])

    def expected_color(self, x: int, y: int) -> int:
        """画板上期望的颜色（已应用白色替换）"""
        return substitute_white(self.color_at(x, y))

    def offset_of(self, x: int, y: int) -> int:
        return x * self.height + y

    def coords(self, offset: int) -> tuple[int, int]:
        return divmod(offset, self.height)

    def offsets(self) -> Iterator[int]:
        return iter(range(self.offset_count))


def check_size(width: int, height: int, max_size: int = DEFAULT_MAX_SIZE) -> None:
    """宽或高超过上限时抛出 SizeLimitExceeded"""
    if width > max_size or height > max_size:
        raise SizeLimitExceeded(width, height, max_size)
