# -*- coding: utf-8 -*-
"""
Drawer 错误类型

所有错误都不是致命的：只会降低吞吐或推迟收敛，不会破坏共享状态。
token 池为空不算错误，acquire() 阻塞等待。
"""

from __future__ import annotations


class DrawerError(Exception):
    """Drawer 错误基类"""


class SizeLimitExceeded(DrawerError):
    """目标图片宽或高超过上限，调用方需要换一张图"""

    def __init__(self, width: int, height: int, limit: int):
        self.width = width
        self.height = height
        self.limit = limit
        super().__init__(f"图片过大: {width}x{height}（上限 {limit}x{limit}）")


class InvalidPlacement(DrawerError, ValueError):
    """图片放置坐标超出画板范围"""


class CanvasRefreshFailed(DrawerError):
    """画板快照拉取失败（瞬时错误，下一轮重试）"""


class PaintRejected(DrawerError):
    """绘制请求被后端拒绝或网络失败（token 立即回收，像素下轮重新检测）"""


class UnknownCredential(DrawerError):
    """token 已失效或未知（跳过，无需回收）"""

    def __init__(self, uid: int):
        self.uid = uid
        super().__init__(f"未知 token: uid={uid}")
