# -*- coding: utf-8 -*-
"""
Web UI 服务器单元测试

测试内容：
  1. UIState 字段更新、日志截断、SSE 订阅
  2. Flask 路由 (/api/state, /api/stream, /api/tokens)
  3. 会话控制 API (start, reset, position, image)
"""

import os
import sys
import tempfile
import threading
import unittest
from unittest.mock import MagicMock

from PIL import Image

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from drawer.config import DrawerConfig
from drawer.session import DrawerSession
from drawer.token_store import TokenStore
from drawer.ui_server import MAX_LOGS, UIState, create_app, set_drawer_refs, ui_state


class FakeCanvas:
    def refresh(self):
        pass

    def pixel_at(self, x, y):
        return 0

    def paint(self, x, y, color, uid, token):
        return True


class TestUIState(unittest.TestCase):
    """UIState 行为"""

    def test_initial_state(self):
        """初始状态应有合理的默认值"""
        snapshot = UIState().get_state()
        self.assertFalse(snapshot["running"])
        self.assertEqual(snapshot["status"], "not_running")
        self.assertEqual(snapshot["logs"], [])

    def test_update(self):
        """update() 应批量更新字段并刷新时间戳"""
        state = UIState()
        state.update(running=True, pending=12, token_count=3)
        snapshot = state.get_state()
        self.assertTrue(snapshot["running"])
        self.assertEqual(snapshot["pending"], 12)
        self.assertEqual(snapshot["token_count"], 3)
        self.assertNotEqual(snapshot["last_update"], "")

    def test_update_ignores_unknown_fields(self):
        """未知字段和 logs 不应被 update() 写入"""
        state = UIState()
        state.update(nonexistent="x", logs=["bogus"])
        snapshot = state.get_state()
        self.assertNotIn("nonexistent", snapshot)
        self.assertEqual(snapshot["logs"], [])

    def test_log_rotation(self):
        """日志最多保留 MAX_LOGS 条"""
        state = UIState()
        for i in range(MAX_LOGS + 20):
            state.add_log("INFO", f"msg-{i}")
        logs = state.get_state()["logs"]
        self.assertEqual(len(logs), MAX_LOGS)
        self.assertEqual(logs[-1]["message"], f"msg-{MAX_LOGS + 19}")

    def test_subscribers_receive_updates(self):
        """SSE 订阅者应收到状态推送"""
        state = UIState()
        q = state.subscribe()
        self.assertEqual(state.subscriber_count(), 1)
        state.update(pending=5)
        self.assertEqual(q.get(timeout=1)["pending"], 5)
        state.unsubscribe(q)
        self.assertEqual(state.subscriber_count(), 0)

    def test_thread_safety(self):
        """并发写入不应丢失日志"""
        state = UIState()

        def writer(n):
            for i in range(20):
                state.add_log("INFO", f"{n}-{i}")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(state.get_state()["logs"]), 80)


class TestFlaskRoutesWithoutSession(unittest.TestCase):
    """未注入会话时的路由"""

    def setUp(self):
        set_drawer_refs(session=None, client=None)
        app = create_app()
        app.testing = True
        self.client = app.test_client()

    def test_api_state_returns_json(self):
        """GET /api/state 应返回 JSON 状态"""
        resp = self.client.get("/api/state")
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        for key in ("running", "status", "pending", "token_count", "logs", "last_update"):
            self.assertIn(key, data, f"缺少字段: {key}")

    def test_api_stream_sse(self):
        """GET /api/stream 应返回 SSE 流"""
        resp = self.client.get("/api/stream")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("text/event-stream", resp.content_type)
        resp.close()

    def test_control_without_session(self):
        """会话不可用时控制 API 应返回失败"""
        for path in ("/api/start", "/api/reset", "/api/position", "/api/image", "/api/tokens"):
            data = self.client.post(path, json={}).get_json()
            self.assertFalse(data["success"], path)
            self.assertIn("不可用", data["message"])


class TestFlaskRoutesWithSession(unittest.TestCase):
    """注入真实会话（内存画板）时的路由"""

    def setUp(self):
        canvas = FakeCanvas()
        config = DrawerConfig(board_width=20, board_height=20, worker_count=0, initial_check_delay=100.0)
        self.session = DrawerSession(config, board=canvas, backend=canvas, tokens=TokenStore())
        self.mock_client = MagicMock()
        set_drawer_refs(session=self.session, client=self.mock_client)
        app = create_app()
        app.testing = True
        self.client = app.test_client()

    def tearDown(self):
        self.session.close()
        set_drawer_refs(session=None, client=None)

    def test_add_token_directly(self):
        """POST /api/tokens 带 token 应直接登记"""
        data = self.client.post("/api/tokens", json={"uid": 9, "token": "abc"}).get_json()
        self.assertTrue(data["success"])
        self.assertEqual(self.session.get_tokens(), {9: "abc"})

        data = self.client.get("/api/tokens").get_json()
        self.assertEqual(data["uids"], [9])

    def test_add_token_via_registration(self):
        """POST /api/tokens 带 paste 应通过客户端注册"""
        self.mock_client.request_token.return_value = (True, "issued")
        data = self.client.post("/api/tokens", json={"uid": 4, "paste": "p"}).get_json()
        self.assertTrue(data["success"])
        self.mock_client.request_token.assert_called_once_with(4, "p")
        self.assertEqual(self.session.tokens.get(4), "issued")

    def test_add_token_registration_failure(self):
        """注册失败时应返回失败原因"""
        self.mock_client.request_token.return_value = (False, "bad paste")
        data = self.client.post("/api/tokens", json={"uid": 4, "paste": "p"}).get_json()
        self.assertFalse(data["success"])
        self.assertIn("bad paste", data["message"])

    def test_add_token_bad_uid(self):
        """uid 不是整数应报错"""
        data = self.client.post("/api/tokens", json={"uid": "x", "token": "t"}).get_json()
        self.assertFalse(data["success"])

    def test_start_without_image(self):
        """没有目标图片时开始绘制应失败"""
        data = self.client.post("/api/start").get_json()
        self.assertFalse(data["success"])
        self.assertFalse(self.session.running)

    def test_image_start_reset(self):
        """加载图片 → 开始 → 重置"""
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "t.png")
            Image.new("RGB", (3, 2), (1, 2, 3)).save(path)
            data = self.client.post("/api/image", json={"path": path}).get_json()
        self.assertTrue(data["success"])
        self.assertEqual(data["size"], [3, 2])

        data = self.client.post("/api/start").get_json()
        self.assertTrue(data["success"])
        self.assertTrue(self.session.running)
        self.assertTrue(ui_state.get_state()["running"])

        data = self.client.post("/api/reset").get_json()
        self.assertTrue(data["success"])
        self.assertFalse(self.session.running)

    def test_image_missing_file(self):
        """图片不存在应返回失败"""
        data = self.client.post("/api/image", json={"path": "/nonexistent.png"}).get_json()
        self.assertFalse(data["success"])

    def test_position(self):
        """POST /api/position 应校验范围"""
        data = self.client.post("/api/position", json={"x": 5, "y": 6}).get_json()
        self.assertTrue(data["success"])
        self.assertEqual(data["origin"], [5, 6])

        data = self.client.post("/api/position", json={"x": 500, "y": 6}).get_json()
        self.assertFalse(data["success"])
        self.assertEqual(self.session.placement.origin_x, 5)


if __name__ == "__main__":
    unittest.main(verbosity=2)
