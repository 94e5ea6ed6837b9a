# -*- coding: utf-8 -*-
"""
Paintboard Drawer — 配置管理模块

支持三级配置加载优先级：
  1. 配置文件 drawer.json（最高优先级）
  2. 环境变量 DRAWER_*
  3. 默认值（兜底）

命令行参数在 main.py 中通过 model_copy(update=...) 再覆盖一层。

使用 Pydantic Settings 实现，字段名与环境变量自动映射。
环境变量前缀: DRAWER_
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class ScanOrder(str, Enum):
    """对账扫描顺序"""
    RASTER = "raster"    # 按偏移量顺序（列优先）
    RANDOM = "random"    # 每轮随机排列


class Registration(BaseModel):
    """配置文件中待注册的 token（uid + paste 凭证）"""
    uid: int
    paste: str


class DrawerConfig(BaseSettings):
    """Drawer 全局配置"""

    # ── 画板 HTTP API ────────────────────────────────────────
    board_base_url: str = Field(
        default="https://www.oi-search.com/paintboard",
        description="画板服务根 URL（/board /paint /gettoken 均在其下）",
    )
    board_width: int = Field(
        default=1000,
        description="画板宽度（像素）",
    )
    board_height: int = Field(
        default=600,
        description="画板高度（像素）",
    )
    http_timeout: int = Field(
        default=10,
        description="HTTP 请求超时时间（秒）",
    )

    # ── 限流 & 调度 ──────────────────────────────────────────
    paint_interval: int = Field(
        default=30,
        description="单个 token 两次成功绘制的最小间隔（秒），由画板服务端强制",
    )
    cooldown_margin: float = Field(
        default=1 / 15,
        description="冷却提前量（秒）：冷却时长 = paint_interval - cooldown_margin，避免错过限流窗口",
    )
    worker_count: int = Field(
        default=4,
        description="派发 worker 线程数（会话启动时固定）",
    )
    initial_check_delay: float = Field(
        default=1.0,
        description="会话启动后第一次对账前的等待秒数",
    )
    update_interval: float = Field(
        default=300.0,
        description="两次对账之间的间隔（秒）",
    )
    monitor_interval: float = Field(
        default=3.0,
        description="吞吐监控日志输出间隔（秒）",
    )
    pool_capacity: int = Field(
        default=50,
        description="token 池预期容量，超出时只记警告（不限制 token 数量）",
    )
    pending_capacity: int = Field(
        default=40000,
        description="待绘队列容量，满时对账循环阻塞（背压）",
    )
    max_image_size: int = Field(
        default=200,
        description="目标图片宽/高上限（像素）",
    )
    scan_order: ScanOrder = Field(
        default=ScanOrder.RASTER,
        description="对账扫描顺序：raster 顺序扫描 / random 随机排列",
    )
    requeue_on_failure: bool = Field(
        default=False,
        description="绘制失败时是否立即重新入队（默认否：等下一轮对账重新检测）",
    )

    # ── 目标图片 & token ─────────────────────────────────────
    image_path: Optional[str] = Field(
        default=None,
        description="启动时加载的目标图片路径",
    )
    origin_x: int = Field(
        default=0,
        description="图片左上角在画板上的 X 坐标",
    )
    origin_y: int = Field(
        default=0,
        description="图片左上角在画板上的 Y 坐标",
    )
    registrations: list[Registration] = Field(
        default_factory=list,
        description="启动时注册的 token 列表（uid + paste）",
    )
    auto_start: bool = Field(
        default=False,
        description="启动后自动开始绘制",
    )
    token_file: str = Field(
        default="tokens.json",
        description="token 缓存文件路径",
    )
    board_png: str = Field(
        default="board.png",
        description="画板快照导出路径",
    )

    # ── Web UI ───────────────────────────────────────────────
    ui_host: str = Field(
        default="127.0.0.1",
        description="Web UI 绑定地址",
    )
    ui_port: int = Field(
        default=5000,
        description="Web UI 状态面板端口",
    )
    no_ui: bool = Field(
        default=False,
        description="禁用 Web UI 状态面板",
    )

    # ── 日志 ─────────────────────────────────────────────────
    log_dir: str = Field(
        default="logs",
        description="日志目录路径",
    )
    log_level: str = Field(
        default="INFO",
        description="日志级别",
    )

    model_config = {
        "env_prefix": "DRAWER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # ── 计算属性 ─────────────────────────────────────────────

    @property
    def cooldown_seconds(self) -> float:
        """成功绘制后 token 的实际冷却时长"""
        return max(0.0, self.paint_interval - self.cooldown_margin)

    @property
    def log_file(self) -> Path:
        """日志文件路径"""
        log_dir = Path(self.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir / "drawer.log"

    # ── 持久化 ───────────────────────────────────────────────

    def save_to_file(self, path: str | Path = "drawer.json") -> None:
        """将当前配置写入 JSON 文件"""
        data = self.model_dump(mode="json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    @classmethod
    def load_from_file(cls, path: str | Path = "drawer.json") -> "DrawerConfig":
        """从 JSON 文件加载配置"""
        file_path = Path(path)
        if file_path.exists():
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return cls(**data)
        return cls()


def get_config(path: str | Path = "drawer.json") -> DrawerConfig:
    """
    获取 Drawer 配置实例。

    加载优先级：
      1. drawer.json 文件（作为初始化参数传入，优先于环境变量）
      2. 环境变量 DRAWER_*
      3. 默认值
    """
    config_path = Path(path)
    if config_path.exists():
        return DrawerConfig.load_from_file(config_path)
    return DrawerConfig()
