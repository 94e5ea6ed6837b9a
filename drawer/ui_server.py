# -*- coding: utf-8 -*-
"""
Paintboard Drawer — Web UI 状态面板服务

提供 Flask 轻量 HTTP 服务，包含：
  - GET  /api/state     → 当前状态 JSON（会话快照 + 最近日志）
  - GET  /api/stream    → SSE 实时状态推送
  - GET  /api/tokens    → 已知 uid 列表（不含 token 内容）
  - POST /api/tokens    → 新增 token（{uid, token} 直接登记，或 {uid, paste} 走注册）
  - POST /api/start     → 开始绘制
  - POST /api/reset     → 重置 / 停止
  - POST /api/position  → 设置图片位置 {x, y}
  - POST /api/image     → 加载目标图片 {path}

所有会话操作通过 set_drawer_refs() 注入的 DrawerSession / BoardClient 引用执行。
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from datetime import datetime
from typing import Any

from flask import Flask, Response, jsonify, request

from .errors import DrawerError

logger = logging.getLogger("drawer.ui_server")

MAX_LOGS = 100


# ── 全局状态 ─────────────────────────────────────────────────

class UIState:
    """
    线程安全的 UI 状态容器。

    会话监控线程通过 update() 写入状态，
    Web UI 通过 SSE 或 /api/state 读取状态。
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._data: dict[str, Any] = {
            "running": False,
            "status": "not_running",
            "status_text": "",
            "eta_seconds": None,
            "pending": 0,
            "image_path": "",
            "image_size": [0, 0],
            "origin": [0, 0],
            "token_count": 0,
            "pool_available": 0,
            "pool_in_flight": 0,
            "pool_cooling": 0,
            "painted": 0,
            "failed": 0,
            "last_update": "",
            "logs": [],
        }
        # SSE 订阅者队列列表
        self._subscribers: list[queue.Queue] = []

    def update(self, **kwargs: Any) -> None:
        """更新状态字段（忽略未知字段）并通知所有 SSE 订阅者"""
        with self._lock:
            for key, value in kwargs.items():
                if key in self._data and key != "logs":
                    self._data[key] = value
            self._data["last_update"] = datetime.now().strftime("%H:%M:%S")

        self._notify_subscribers()

    def add_log(self, level: str, message: str) -> None:
        """添加日志条目（最多保留 MAX_LOGS 条）"""
        entry = {
            "time": datetime.now().strftime("%H:%M:%S"),
            "level": level,
            "message": message,
        }
        with self._lock:
            logs = self._data["logs"]
            logs.append(entry)
            if len(logs) > MAX_LOGS:
                self._data["logs"] = logs[-MAX_LOGS:]
            self._data["last_update"] = datetime.now().strftime("%H:%M:%S")

        self._notify_subscribers()

    def get_state(self) -> dict[str, Any]:
        """获取当前完整状态"""
        with self._lock:
            data = dict(self._data)
            data["logs"] = list(self._data["logs"])
            return data

    def subscribe(self) -> queue.Queue:
        """创建 SSE 订阅"""
        q: queue.Queue = queue.Queue(maxsize=50)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        """取消 SSE 订阅"""
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _notify_subscribers(self) -> None:
        """通知所有 SSE 订阅者"""
        data = self.get_state()
        with self._lock:
            subs = list(self._subscribers)
        for q in subs:
            # 非阻塞 put，队列满则丢弃旧数据
            if q.full():
                try:
                    q.get_nowait()
                except queue.Empty:
                    pass
            try:
                q.put_nowait(data)
            except queue.Full:
                logger.debug("SSE 订阅队列已满，丢弃一次推送")


# ── 全局单例 ─────────────────────────────────────────────────

ui_state = UIState()

# Drawer 组件引用（由 set_drawer_refs 注入）
_session_ref: Any = None
_client_ref: Any = None
_UNSET = object()


def set_drawer_refs(session: Any = _UNSET, client: Any = _UNSET) -> None:
    """注入 Drawer 组件引用，供 Web UI API 调用"""
    global _session_ref, _client_ref
    if session is not _UNSET:
        _session_ref = session
    if client is not _UNSET:
        _client_ref = client


def _refresh_state() -> None:
    if _session_ref is not None:
        ui_state.update(**_session_ref.describe())


# ── Flask 应用 ───────────────────────────────────────────────

def create_app() -> Flask:
    """创建 Flask 应用"""
    app = Flask(__name__)

    # 禁用 Flask 默认日志（太吵）
    werkzeug_log = logging.getLogger("werkzeug")
    werkzeug_log.setLevel(logging.WARNING)

    @app.route("/api/state")
    def api_state():
        """返回当前完整状态"""
        _refresh_state()
        return jsonify(ui_state.get_state())

    @app.route("/api/stream")
    def api_stream():
        """SSE 实时状态推送"""
        def event_stream():
            sub = ui_state.subscribe()
            try:
                # 立即发送当前状态
                data = ui_state.get_state()
                yield f"data: {json.dumps(data, ensure_ascii=False)}\n\n"
                while True:
                    try:
                        data = sub.get(timeout=30)
                        yield f"data: {json.dumps(data, ensure_ascii=False)}\n\n"
                    except queue.Empty:
                        # 心跳保活
                        yield ": heartbeat\n\n"
            finally:
                ui_state.unsubscribe(sub)

        return Response(
            event_stream(),
            mimetype="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
                "Connection": "keep-alive",
            },
        )

    @app.route("/api/tokens", methods=["GET"])
    def api_tokens():
        """已知 uid 列表"""
        if _session_ref is None:
            return jsonify({"success": False, "message": "会话不可用"})
        return jsonify({"success": True, "uids": sorted(_session_ref.get_tokens())})

    @app.route("/api/tokens", methods=["POST"])
    def api_add_token():
        """新增 token"""
        if _session_ref is None:
            return jsonify({"success": False, "message": "会话不可用"})
        data = request.get_json(silent=True) or {}
        try:
            uid = int(data["uid"])
        except (KeyError, TypeError, ValueError):
            return jsonify({"success": False, "message": "请提供整数 uid"})

        if data.get("token"):
            token = str(data["token"])
        elif data.get("paste"):
            if _client_ref is None:
                return jsonify({"success": False, "message": "画板客户端不可用"})
            ok, token = _session_ref.tokens.obtain(uid, str(data["paste"]), _client_ref)
            if not ok:
                return jsonify({"success": False, "message": f"token 申请失败: {token}"})
        else:
            return jsonify({"success": False, "message": "请提供 token 或 paste"})

        _session_ref.add_token(uid, token)
        ui_state.add_log("INFO", f"已通过 Web UI 新增 token: uid={uid}")
        return jsonify({"success": True, "uid": uid})

    @app.route("/api/start", methods=["POST"])
    def api_start():
        """开始绘制"""
        if _session_ref is None:
            return jsonify({"success": False, "message": "会话不可用"})
        try:
            _session_ref.start()
        except DrawerError as e:
            return jsonify({"success": False, "message": str(e)})
        ui_state.add_log("INFO", "已通过 Web UI 开始绘制")
        _refresh_state()
        return jsonify({"success": True, "message": "已开始绘制"})

    @app.route("/api/reset", methods=["POST"])
    def api_reset():
        """重置 / 停止"""
        if _session_ref is None:
            return jsonify({"success": False, "message": "会话不可用"})
        _session_ref.reset()
        ui_state.add_log("INFO", "已通过 Web UI 重置")
        _refresh_state()
        return jsonify({"success": True, "message": "已重置"})

    @app.route("/api/position", methods=["POST"])
    def api_position():
        """设置图片位置"""
        if _session_ref is None:
            return jsonify({"success": False, "message": "会话不可用"})
        data = request.get_json(silent=True) or {}
        try:
            _session_ref.set_position(int(data["x"]), int(data["y"]))
        except (KeyError, TypeError, ValueError) as e:
            return jsonify({"success": False, "message": f"无效位置: {e}"})
        _refresh_state()
        return jsonify({"success": True, "origin": [int(data["x"]), int(data["y"])]})

    @app.route("/api/image", methods=["POST"])
    def api_image():
        """加载目标图片"""
        if _session_ref is None:
            return jsonify({"success": False, "message": "会话不可用"})
        data = request.get_json(silent=True) or {}
        path = data.get("path", "")
        if not path:
            return jsonify({"success": False, "message": "请提供图片路径"})
        try:
            image = _session_ref.load_image(path)
        except (OSError, DrawerError) as e:
            return jsonify({"success": False, "message": str(e)})
        ui_state.add_log("INFO", f"已加载图片: {path}")
        _refresh_state()
        return jsonify({"success": True, "size": [image.width, image.height]})

    return app


# ── 服务器启动 ───────────────────────────────────────────────

def start_server_thread(host: str = "127.0.0.1", port: int = 5000) -> threading.Thread:
    """
    在后台线程中启动 Flask Web UI 服务器。

    Args:
        host: 绑定地址
        port: 端口号

    Returns:
        服务器线程
    """
    app = create_app()

    def _run():
        try:
            app.run(
                host=host,
                port=port,
                debug=False,
                use_reloader=False,
                threaded=True,
            )
        except OSError as e:
            logger.error("Web UI 服务异常退出: %s", e)

    thread = threading.Thread(target=_run, daemon=True, name="ui-server")
    thread.start()
    logger.info("Web UI 已启动: http://%s:%d", host, port)
    return thread
