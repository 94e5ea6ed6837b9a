# -*- coding: utf-8 -*-
"""
Paintboard Drawer — 画板 HTTP 客户端

封装画板服务的三个端点：
  GET  {base}/board     → 整张画板快照
  POST {base}/paint     → 绘制单个像素（表单: x, y, color, uid, token）
  POST {base}/gettoken  → 用 uid + paste 凭证申请 token（表单: uid, paste）

画板快照格式：board_width 行，每行 board_height 个 6 位十六进制颜色，以 \\n 结尾。
第 i 行第 j 个颜色即坐标 (i, j) 的像素。

/paint 与 /gettoken 的响应体包含 "200" 即视为成功（服务端把状态码写在 JSON 里）。
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional

import httpx
import numpy as np
from PIL import Image

from .config import DrawerConfig
from .errors import CanvasRefreshFailed
from .image import color_to_hex

logger = logging.getLogger("drawer.board_client")

_HEX_WEIGHTS = np.array([1 << 20, 1 << 16, 1 << 12, 1 << 8, 1 << 4, 1], dtype=np.int64)

_HEX_LOOKUP = np.full(256, -1, dtype=np.int64)
for _i, _c in enumerate(b"0123456789abcdef"):
    _HEX_LOOKUP[_c] = _i


def parse_board(data: bytes, width: int, height: int) -> np.ndarray:
    """
    解析画板快照文本，返回 shape 为 (width, height) 的 uint32 数组。

    Raises:
        CanvasRefreshFailed: 行数不足、行长度异常或包含非十六进制字符
    """
    lines = data.split(b"\n")
    if len(lines) < width:
        raise CanvasRefreshFailed(f"画板行数不足: {len(lines)} < {width}")

    row_len = height * 6
    rows = []
    for i in range(width):
        line = lines[i].rstrip(b"\r")
        if len(line) != row_len:
            raise CanvasRefreshFailed(f"第 {i} 行长度异常: {len(line)}（应为 {row_len}）")
        rows.append(line)

    digits = np.frombuffer(b"".join(rows).lower(), dtype=np.uint8)
    values = _HEX_LOOKUP[digits]
    if values.size and (values < 0).any():
        raise CanvasRefreshFailed("画板数据包含非十六进制字符")

    grid = values.reshape(width, height, 6) @ _HEX_WEIGHTS
    return grid.astype(np.uint32)


def _response_message(text: str) -> str:
    """提取响应 JSON 的 data 字段，解析失败返回原文片段"""
    try:
        payload: Any = json.loads(text)
    except json.JSONDecodeError:
        return text[:200]
    if isinstance(payload, dict):
        return str(payload.get("data", ""))
    return text[:200]


class BoardClient:
    """画板 HTTP 客户端（同时充当对账的画板来源和 worker 的绘制后端）"""

    def __init__(self, config: DrawerConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self.width = config.board_width
        self.height = config.board_height
        self._client = httpx.Client(
            base_url=config.board_base_url,
            timeout=config.http_timeout,
            transport=transport,
        )
        self._lock = threading.Lock()
        self._board = np.zeros((self.width, self.height), dtype=np.uint32)

    def close(self) -> None:
        """关闭 HTTP 客户端"""
        self._client.close()

    def __enter__(self) -> "BoardClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ── 画板快照 ─────────────────────────────────────────────

    def refresh(self) -> None:
        """
        拉取并整体替换画板快照。

        失败时抛出 CanvasRefreshFailed，保留上一次的快照。
        """
        logger.info("正在拉取画板...")
        try:
            resp = self._client.get("/board")
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CanvasRefreshFailed(f"HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise CanvasRefreshFailed(f"请求失败: {e}") from e

        grid = parse_board(resp.content, self.width, self.height)
        with self._lock:
            self._board = grid
        logger.info("画板拉取完成")

    def pixel_at(self, x: int, y: int) -> int:
        with self._lock:
            return int(self._board[x, y])

    def snapshot(self) -> np.ndarray:
        """当前画板快照的副本"""
        with self._lock:
            return self._board.copy()

    def save_board(self, path: str | Path) -> None:
        """把当前画板快照导出为 PNG"""
        grid = self.snapshot()
        rgb = np.stack(
            [(grid >> 16) & 0xFF, (grid >> 8) & 0xFF, grid & 0xFF],
            axis=-1,
        ).astype(np.uint8)
        # 数组是 (x, y)，图片是 (行=y, 列=x)
        Image.fromarray(np.ascontiguousarray(rgb.transpose(1, 0, 2))).save(path, format="PNG")
        logger.info("画板已导出: %s", path)

    # ── 绘制 ─────────────────────────────────────────────────

    def paint(self, x: int, y: int, color: int, uid: int, token: str) -> bool:
        """绘制单个像素；网络错误或被服务端拒绝返回 False"""
        body = {
            "x": str(x),
            "y": str(y),
            "color": color_to_hex(color),
            "uid": str(uid),
            "token": token,
        }
        logger.debug("绘制请求: x=%d y=%d color=%s uid=%d", x, y, body["color"], uid)
        try:
            resp = self._client.post("/paint", data=body)
        except httpx.RequestError as e:
            logger.error("绘制请求失败 (%d, %d): %s", x, y, e)
            return False

        if "200" not in resp.text:
            logger.warning("绘制被拒绝 (%d, %d) uid=%d: %s", x, y, uid, _response_message(resp.text))
            return False
        logger.debug("绘制成功 (%d, %d) %s", x, y, body["color"])
        return True

    # ── token 注册 ──────────────────────────────────────────

    def request_token(self, uid: int, paste: str) -> tuple[bool, str]:
        """
        申请 token。

        Returns:
            (是否成功, token 或失败原因)；token 形如 dfe4d610-70c0-4fe6-b196-9b0e09ac920b
        """
        try:
            resp = self._client.post("/gettoken", data={"uid": str(uid), "paste": paste})
        except httpx.RequestError as e:
            logger.error("token 申请失败 uid=%d: %s", uid, e)
            return False, str(e)

        message = _response_message(resp.text)
        if "200" not in resp.text:
            logger.warning("token 申请被拒绝 uid=%d: %s", uid, message)
            return False, message
        logger.info("token 申请成功 uid=%d", uid)
        return True, message
