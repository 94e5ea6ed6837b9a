# -*- coding: utf-8 -*-
"""
Paintboard Drawer — 程序入口

启动流程：
  1. 读取 token 缓存文件
  2. 按配置加载目标图片、设置位置、注册配置文件里的 token
  3. 启动 Web UI 状态面板（可选）
  4. 配置了 auto_start 或命令行带 start 时立即开始绘制
  5. 进入交互命令行

启动方式：
  drawer                              # 默认配置（drawer.json + 环境变量）
  drawer start                        # 启动后立即开始绘制
  drawer --config my.json --no-ui     # 指定配置文件，禁用 Web UI
  python -m drawer.main --workers 5 --log-level DEBUG
"""

from __future__ import annotations

import argparse
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Optional

from . import __version__
from .board_client import BoardClient
from .config import DrawerConfig, get_config
from .errors import CanvasRefreshFailed, DrawerError
from .session import DrawerSession
from .token_store import TokenStore
from .ui_server import set_drawer_refs, start_server_thread, ui_state

logger = logging.getLogger("drawer")


# ── 应用 ─────────────────────────────────────────────────────

class DrawerApp:
    """
    Drawer 应用。

    职责：
      1. 组装画板客户端、token 缓存、绘制会话
      2. 按配置完成启动准备（图片 / 位置 / token 注册）
      3. 把会话进度同步到 Web UI
    """

    def __init__(self, config: DrawerConfig, client: Optional[BoardClient] = None):
        self.config = config
        self.client = client or BoardClient(config)
        self.tokens = TokenStore(config.token_file)
        self.session = DrawerSession(
            config,
            board=self.client,
            backend=self.client,
            tokens=self.tokens,
            progress_callback=self._on_progress,
        )
        self._ui_thread = None

    def bootstrap(self) -> None:
        """读取 token 缓存并应用配置"""
        self.tokens.load()
        self.session.reset()
        self.apply_config()

    def apply_config(self) -> None:
        """按配置加载图片、设置位置、注册 token；单项失败只记日志"""
        cfg = self.config
        try:
            self.session.set_position(cfg.origin_x, cfg.origin_y)
        except DrawerError as e:
            logger.error("配置中的位置无效: %s", e)

        if cfg.image_path:
            try:
                self.session.load_image(cfg.image_path)
            except (OSError, DrawerError) as e:
                logger.error("加载图片失败 (%s): %s", cfg.image_path, e)

        for reg in cfg.registrations:
            logger.info("正在获取 uid=%d 的 token...", reg.uid)
            if not self.register(reg.uid, reg.paste):
                logger.error("uid=%d 获取 token 失败", reg.uid)

    def register(self, uid: int, paste: str) -> bool:
        """获取（缓存或注册）token 并加入会话"""
        ok, token = self.tokens.obtain(uid, paste, self.client)
        if not ok:
            return False
        self.session.add_token(uid, token)
        return True

    def start_ui(self) -> None:
        """启动 Web UI 状态面板"""
        if self.config.no_ui:
            logger.info("Web UI 已禁用 (--no-ui)")
            return
        set_drawer_refs(session=self.session, client=self.client)
        ui_state.update(**self.session.describe())
        self._ui_thread = start_server_thread(host=self.config.ui_host, port=self.config.ui_port)

    def shutdown(self) -> None:
        """清理退出"""
        logger.info("正在停止 Drawer...")
        self.session.close()
        self.client.close()
        ui_state.update(running=False)
        logger.info("Drawer 已停止")

    def _on_progress(self, snapshot: dict[str, Any]) -> None:
        ui_state.update(**snapshot)


# ── 交互命令行 ───────────────────────────────────────────────

HELP_TEXT = """帮助：
输入 h 获取帮助
输入 a / add 新增 token（uid + paste），之后会有提示
输入 f / fix 直接登记 token（uid + token）
输入 i / image 设置图片
输入 x / y 设置图片位置
输入 s / start 开始绘制
输入 r / reset 重置（停止绘制）
输入 p / pixel 查看像素（0 画板 / 1 图片 / 2 导出画板 PNG）
输入 u / update 刷新画板
输入 t / status 查看进度
输入 q / quit 退出"""


class CommandShell:
    """交互命令行（按首字母分派命令）"""

    def __init__(
        self,
        app: DrawerApp,
        input_fn: Callable[[str], str] = input,
        output: Callable[[str], None] = print,
    ):
        self.app = app
        self.session = app.session
        self.input_fn = input_fn
        self.output = output
        self._commands: dict[str, Callable[[], None]] = {
            "a": self.add_token,
            "f": self.fix_token,
            "i": self.set_image,
            "x": self.set_x,
            "y": self.set_y,
            "s": self.start,
            "r": self.reset,
            "p": self.print_pixel,
            "u": self.update_board,
            "t": self.show_status,
        }

    def run(self) -> None:
        while True:
            try:
                line = self.input_fn(">>> ")
            except (EOFError, KeyboardInterrupt):
                break
            if not self.handle(line):
                break

    def handle(self, line: str) -> bool:
        """执行一条命令，返回 False 表示退出"""
        opt = line.strip()[:1].lower()
        if not opt:
            return True
        if opt == "q":
            return False
        command = self._commands.get(opt, self.show_help)
        command()
        return True

    # ── 输入辅助 ─────────────────────────────────────────────

    def _ask(self, prompt: str) -> str:
        return self.input_fn(prompt).strip()

    def _ask_int(self, prompt: str) -> Optional[int]:
        raw = self._ask(prompt)
        try:
            return int(raw)
        except ValueError:
            self.output(f"无效输入: {raw!r}")
            return None

    # ── 命令 ─────────────────────────────────────────────────

    def add_token(self) -> None:
        uid = self._ask_int("UID? ")
        if uid is None:
            return
        paste = self._ask("Paste? ")
        if self.app.register(uid, paste):
            self.output("OK!")
        else:
            self.output("Failed!")

    def fix_token(self) -> None:
        uid = self._ask_int("UID? ")
        if uid is None:
            return
        token = self._ask("Token? ")
        if not token:
            self.output("无效 token")
            return
        self.session.add_token(uid, token)
        self.app.tokens.save()
        self.output("OK")

    def set_image(self) -> None:
        path = self._ask("Path? ")
        if not Path(path).exists():
            self.output(f"文件不存在: {path}")
            return
        try:
            self.session.load_image(path)
        except (OSError, DrawerError) as e:
            self.output(str(e))
            return
        self.output("OK!")

    def set_x(self) -> None:
        x = self._ask_int("X? ")
        if x is None:
            return
        self._set_position(x, self.session.placement.origin_y)

    def set_y(self) -> None:
        y = self._ask_int("Y? ")
        if y is None:
            return
        self._set_position(self.session.placement.origin_x, y)

    def _set_position(self, x: int, y: int) -> None:
        try:
            self.session.set_position(x, y)
        except DrawerError as e:
            self.output(f"Invalid ! {e}")
            return
        self.output("Set ok !")

    def start(self) -> None:
        try:
            self.session.start()
        except DrawerError as e:
            self.output(str(e))

    def reset(self) -> None:
        self.session.reset()
        self.output("已重置")

    def print_pixel(self) -> None:
        parts = self._ask("Type, X, Y ? ").split()
        try:
            kind, x, y = (int(p) for p in parts)
        except ValueError:
            self.output("格式: <type> <x> <y>")
            return
        try:
            if kind == 0:
                self.output(f"0X{self.app.client.pixel_at(x, y):X}")
            elif kind == 1:
                self.output(f"0X{self.session.image_pixel(x, y):X}")
            elif kind == 2:
                self.app.client.save_board(self.app.config.board_png)
                self.output(f"已导出: {self.app.config.board_png}")
            else:
                self.output("type 只能是 0 / 1 / 2")
        except (IndexError, OSError, DrawerError) as e:
            self.output(str(e))

    def update_board(self) -> None:
        try:
            self.app.client.refresh()
        except CanvasRefreshFailed as e:
            self.output(f"刷新失败: {e}")
            return
        self.output("Update Done !")

    def show_status(self) -> None:
        status = self.session.status()
        self.output(f"{status.describe()} | 待绘 {self.session.pending.size()}")

    def show_help(self) -> None:
        image = self.session.image
        self.output(HELP_TEXT)
        self.output("")
        self.output("当前信息：")
        self.output(f"图片：{image.source if image else '(未设置)'}")
        self.output(f"位置：{self.session.placement.origin_x} {self.session.placement.origin_y}")
        self.output("可用 UID:")
        self.output(" ".join(str(uid) for uid in sorted(self.session.get_tokens())))


# ── 日志配置 ─────────────────────────────────────────────────

def setup_logging(config: DrawerConfig) -> None:
    """配置日志系统（带轮转，防止日志文件无限增长）"""
    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
        RotatingFileHandler(
            str(config.log_file),
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=3,
            encoding="utf-8",
        ),
    ]

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


# ── CLI 入口 ─────────────────────────────────────────────────

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """解析命令行参数"""
    parser = argparse.ArgumentParser(
        prog="drawer",
        description=f"Paintboard Drawer v{__version__} — 共享画板自动绘制器",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=["start"],
        help="start: 启动后立即开始绘制",
    )
    parser.add_argument(
        "--config", "-c",
        default="drawer.json",
        help="配置文件路径（默认: drawer.json）",
    )
    parser.add_argument(
        "--workers",
        dest="worker_count",
        type=int,
        help="worker 线程数（默认: 4）",
    )
    parser.add_argument(
        "--interval",
        dest="paint_interval",
        type=int,
        help="单个 token 的绘制间隔（秒，默认: 30）",
    )
    parser.add_argument(
        "--update-interval",
        dest="update_interval",
        type=float,
        help="对账间隔（秒，默认: 300）",
    )
    parser.add_argument(
        "--token-file",
        dest="token_file",
        help="token 缓存文件（默认: tokens.json）",
    )
    parser.add_argument(
        "--ui-port",
        dest="ui_port",
        type=int,
        help="Web UI 状态面板端口（默认: 5000）",
    )
    parser.add_argument(
        "--no-ui",
        action="store_true",
        dest="no_ui",
        help="禁用 Web UI 状态面板",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="日志级别（默认: INFO）",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> DrawerConfig:
    """加载配置：文件 → 环境变量 → 命令行参数"""
    config = get_config(args.config)

    overrides: dict[str, Any] = {}
    for k, v in vars(args).items():
        if k in ("command", "config"):
            continue
        if k == "no_ui":
            if v:  # 仅当 flag 开启时才覆盖
                overrides[k] = v
        elif v is not None:
            overrides[k] = v
    if args.command == "start":
        overrides["auto_start"] = True
    if overrides:
        config = config.model_copy(update=overrides)
    return config


def main(argv: Optional[list[str]] = None) -> None:
    """程序主入口"""
    args = parse_args(argv)
    config = build_config(args)
    setup_logging(config)

    app = DrawerApp(config)
    app.bootstrap()
    app.start_ui()
    if config.auto_start:
        try:
            app.session.start()
        except DrawerError as e:
            logger.error("自动开始失败: %s", e)

    try:
        CommandShell(app).run()
    finally:
        app.shutdown()


if __name__ == "__main__":
    main()
