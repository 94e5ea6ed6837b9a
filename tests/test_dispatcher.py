# -*- coding: utf-8 -*-
"""
派发 worker 单元测试

覆盖：
1) 成功绘制：按画板坐标、白色替换后的颜色请求，token 进入冷却
2) 失败绘制：token 立即可用，像素默认不重新入队
3) requeue_on_failure=True 时失败像素立即重新入队
4) 已失效 token 被移出轮转，不发起绘制
5) 后端抛异常按失败处理
6) run() 在取消后退出
"""

from __future__ import annotations

import os
import sys
import threading
import time
import unittest

# 确保项目根目录在路径上
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from drawer.cancel import CancelToken
from drawer.credential_pool import CredentialPool, CredentialState
from drawer.dispatcher import DispatchWorker, PaintStats
from drawer.image import Placement, TargetImage
from drawer.pending import PendingSet
from drawer.token_store import TokenStore


class FakeBackend:
    """记录所有绘制请求；ok=False 模拟拒绝，error 模拟网络异常"""

    def __init__(self, ok: bool = True, error: Exception | None = None):
        self.ok = ok
        self.error = error
        self.calls: list[tuple[int, int, int, int, str]] = []
        self._lock = threading.Lock()

    def paint(self, x: int, y: int, color: int, uid: int, token: str) -> bool:
        with self._lock:
            self.calls.append((x, y, color, uid, token))
        if self.error is not None:
            raise self.error
        return self.ok


SAMPLE = [
    [0xFF0000, 0xFFFFFF],
    [0x00FF00, 0x0000FF],
]


class DispatcherTestCase(unittest.TestCase):
    def setUp(self):
        self.tokens = TokenStore()
        self.tokens.set(1, "tok-1")
        self.pool = CredentialPool(self.tokens, cooldown=10)
        self.pool.seed(self.tokens.ids())
        self.image = TargetImage.from_rows(SAMPLE)
        self.cancel = CancelToken()
        self.cancel.register(self.pool.wake)
        self.pending = PendingSet(flag_count=4, capacity=10, cancel=self.cancel)
        self.stats = PaintStats()

    def tearDown(self):
        self.cancel.cancel()
        self.pool.close()

    def make_worker(self, backend, requeue_on_failure: bool = False) -> DispatchWorker:
        return DispatchWorker(
            index=0,
            backend=backend,
            image=self.image,
            placement=Placement(100, 50),
            pending=self.pending,
            pool=self.pool,
            cancel=self.cancel,
            stats=self.stats,
            interval=30,
            requeue_on_failure=requeue_on_failure,
        )


class TestProcess(DispatcherTestCase):
    def test_success_paints_substituted_color(self):
        backend = FakeBackend()
        worker = self.make_worker(backend)
        lease = self.pool.acquire()

        self.assertTrue(worker.process(self.image.offset_of(1, 0), lease))
        self.assertEqual(backend.calls, [(101, 50, 0xAAAAAA, 1, "tok-1")])
        self.assertEqual(self.pool.state_of(1), CredentialState.COOLING)
        self.assertEqual(self.stats.succeeded, 1)

    def test_failure_releases_immediately_without_requeue(self):
        worker = self.make_worker(FakeBackend(ok=False))
        lease = self.pool.acquire()

        self.assertFalse(worker.process(3, lease))
        self.assertEqual(self.pool.state_of(1), CredentialState.AVAILABLE)
        self.assertEqual(self.stats.failed, 1)
        self.assertEqual(self.pending.size(), 0)
        self.assertFalse(self.pending.is_pending(3))

    def test_failure_requeues_when_enabled(self):
        worker = self.make_worker(FakeBackend(ok=False), requeue_on_failure=True)
        lease = self.pool.acquire()

        worker.process(3, lease)
        self.assertTrue(self.pending.is_pending(3))
        self.assertEqual(self.pending.dequeue(), 3)

    def test_backend_exception_counts_as_failure(self):
        worker = self.make_worker(FakeBackend(error=ConnectionError("reset")))
        lease = self.pool.acquire()

        self.assertFalse(worker.process(0, lease))
        self.assertEqual(self.pool.state_of(1), CredentialState.AVAILABLE)
        self.assertEqual(self.stats.failed, 1)

    def test_unknown_credential_is_discarded(self):
        self.pool.add(2)  # 池里有，但缓存里没有 token
        backend = FakeBackend()
        worker = self.make_worker(backend)

        lease = self.pool.acquire()
        self.assertEqual(lease.uid, 1)
        lease = self.pool.acquire()
        self.assertEqual(lease.uid, 2)

        self.assertFalse(worker.process(0, lease))
        self.assertEqual(backend.calls, [])
        self.assertIsNone(self.pool.state_of(2))
        self.assertEqual(self.stats.skipped, 1)


class TestRunLoop(DispatcherTestCase):
    def test_run_drains_queue_then_exits_on_cancel(self):
        self.pool.cooldown = 0
        backend = FakeBackend()
        worker = self.make_worker(backend)
        for offset in range(4):
            self.pending.enqueue(offset)

        t = threading.Thread(target=worker.run, daemon=True)
        t.start()
        deadline = time.monotonic() + 2
        while len(backend.calls) < 4 and time.monotonic() < deadline:
            time.sleep(0.01)

        self.cancel.cancel()
        t.join(2)
        self.assertFalse(t.is_alive())
        painted = {(x, y): color for x, y, color, _, _ in backend.calls}
        self.assertEqual(painted, {
            (100, 50): 0xFF0000,
            (101, 50): 0xAAAAAA,
            (100, 51): 0x00FF00,
            (101, 51): 0x0000FF,
        })

    def test_run_exits_when_blocked_on_pool(self):
        lease = self.pool.acquire()  # 池里唯一的 token 被占用
        worker = self.make_worker(FakeBackend())
        self.pending.enqueue(0)

        t = threading.Thread(target=worker.run, daemon=True)
        t.start()
        time.sleep(0.1)
        self.assertTrue(t.is_alive())

        self.cancel.cancel()
        t.join(2)
        self.assertFalse(t.is_alive())
        self.pool.release(lease, success=False)


class TestPaintStats(unittest.TestCase):
    def test_rate_zero_without_tokens(self):
        stats = PaintStats()
        stats.record_success()
        self.assertEqual(stats.rate(30, 0), 0.0)

    def test_rate_positive_after_success(self):
        stats = PaintStats(started_at=time.time() - 30)
        stats.record_success()
        self.assertAlmostEqual(stats.rate(30, 1), 1.0, places=1)

    def test_counters_are_independent(self):
        stats = PaintStats()
        stats.record_success()
        stats.record_failure()
        stats.record_failure()
        stats.record_skip()
        self.assertEqual((stats.succeeded, stats.failed, stats.skipped), (1, 2, 1))


if __name__ == "__main__":
    unittest.main(verbosity=2)
