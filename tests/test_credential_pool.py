# -*- coding: utf-8 -*-
"""
token 池单元测试

覆盖：
1) 新增 / 借出 / 归还的状态流转
2) 成功归还后的冷却、失败归还的立即可用
3) seed() 重新播种：精确替换可用集合，作废冷却和旧租约
4) 取消信号唤醒阻塞的 acquire()
5) 多线程并发下同一 token 不会被两个 worker 同时持有
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
from drawer.errors import UnknownCredential
from drawer.token_store import TokenStore


def make_pool(uids=(1,), cooldown: float = 0.2, capacity: int = 50) -> CredentialPool:
    store = TokenStore()
    for uid in uids:
        store.set(uid, f"tok-{uid}")
    pool = CredentialPool(store, cooldown=cooldown, capacity=capacity)
    pool.seed(store.ids())
    return pool


class TestMembership(unittest.TestCase):
    def test_add_is_immediately_available(self):
        pool = make_pool(uids=())
        self.assertTrue(pool.add(7))
        self.assertEqual(pool.available_ids(), {7})
        self.assertEqual(pool.state_of(7), CredentialState.AVAILABLE)

    def test_add_twice_is_noop(self):
        pool = make_pool(uids=(7,))
        self.assertFalse(pool.add(7))
        self.assertEqual(pool.size(), 1)

    def test_seed_beyond_capacity_keeps_every_id(self):
        uids = list(range(60))
        pool = make_pool(uids=uids, capacity=50)
        self.assertEqual(pool.available_ids(), set(uids))
        self.assertEqual(pool.size(), 60)
        self.assertTrue(pool.add(60))
        self.assertEqual(pool.state_of(60), CredentialState.AVAILABLE)

    def test_resolve_known_and_unknown(self):
        pool = make_pool(uids=(1,))
        self.assertEqual(pool.resolve(1).token, "tok-1")
        with self.assertRaises(UnknownCredential):
            pool.resolve(99)

    def test_discard_removes_from_rotation(self):
        pool = make_pool(uids=(1, 2))
        pool.discard(1)
        self.assertEqual(pool.available_ids(), {2})
        self.assertIsNone(pool.state_of(1))


class TestAcquireRelease(unittest.TestCase):
    def test_acquire_marks_in_flight(self):
        pool = make_pool(uids=(1,))
        lease = pool.acquire()
        self.assertEqual(lease.uid, 1)
        self.assertEqual(pool.state_of(1), CredentialState.IN_FLIGHT)
        self.assertEqual(pool.available_ids(), set())

    def test_failure_release_is_immediate(self):
        pool = make_pool(uids=(1,), cooldown=10)
        lease = pool.acquire()
        pool.release(lease, success=False)
        self.assertEqual(pool.state_of(1), CredentialState.AVAILABLE)
        self.assertEqual(pool.available_ids(), {1})

    def test_success_release_cools_down(self):
        pool = make_pool(uids=(1,), cooldown=0.3)
        lease = pool.acquire()
        released_at = time.monotonic()
        pool.release(lease, success=True)
        self.assertEqual(pool.state_of(1), CredentialState.COOLING)

        again = pool.acquire()
        waited = time.monotonic() - released_at
        self.assertEqual(again.uid, 1)
        self.assertGreaterEqual(waited, 0.29)

    def test_second_acquire_blocks_until_release(self):
        pool = make_pool(uids=(1,))
        first = pool.acquire()
        got: list = []

        t = threading.Thread(target=lambda: got.append(pool.acquire()), daemon=True)
        t.start()
        t.join(0.2)
        self.assertTrue(t.is_alive())
        self.assertEqual(got, [])

        pool.release(first, success=False)
        t.join(2)
        self.assertFalse(t.is_alive())
        self.assertEqual(got[0].uid, 1)

    def test_cancel_wakes_blocked_acquire(self):
        pool = make_pool(uids=())
        cancel = CancelToken()
        cancel.register(pool.wake)
        got: list = []

        t = threading.Thread(target=lambda: got.append(pool.acquire(cancel)), daemon=True)
        t.start()
        time.sleep(0.1)
        cancel.cancel()
        t.join(2)
        self.assertFalse(t.is_alive())
        self.assertEqual(got, [None])

    def test_concurrent_workers_never_share_a_credential(self):
        pool = make_pool(uids=(1, 2, 3), cooldown=0.0)
        holders: set[int] = set()
        holders_lock = threading.Lock()
        violations: list[int] = []

        def worker():
            for _ in range(200):
                lease = pool.acquire()
                with holders_lock:
                    if lease.uid in holders:
                        violations.append(lease.uid)
                    holders.add(lease.uid)
                time.sleep(0.0005)
                with holders_lock:
                    holders.discard(lease.uid)
                pool.release(lease, success=True)

        threads = [threading.Thread(target=worker, daemon=True) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(20)

        self.assertEqual(violations, [])
        self.assertEqual(pool.available_ids(), {1, 2, 3})


class TestSeed(unittest.TestCase):
    def test_seed_replaces_available_set_exactly(self):
        pool = make_pool(uids=(1, 2))
        pool.acquire()
        pool.seed([7])
        self.assertEqual(pool.available_ids(), {7})
        self.assertEqual(pool.size(), 1)

    def test_seed_twice_is_stable(self):
        pool = make_pool(uids=())
        pool.seed([7])
        pool.seed([7])
        self.assertEqual(pool.available_ids(), {7})

    def test_seed_discards_cooldown(self):
        pool = make_pool(uids=(1,), cooldown=0.2)
        lease = pool.acquire()
        pool.release(lease, success=True)
        pool.seed([1])
        self.assertEqual(pool.state_of(1), CredentialState.AVAILABLE)

        # 旧冷却计时器到期后不会再放回一份
        time.sleep(0.35)
        self.assertEqual(pool.available_ids(), {1})
        self.assertEqual(pool.count(CredentialState.AVAILABLE), 1)

    def test_stale_lease_release_is_ignored(self):
        pool = make_pool(uids=(1,))
        old = pool.acquire()
        pool.seed([1])
        new = pool.acquire()
        self.assertEqual(new.uid, 1)

        pool.release(old, success=False)
        self.assertEqual(pool.state_of(1), CredentialState.IN_FLIGHT)
        self.assertEqual(pool.available_ids(), set())

        pool.release(new, success=False)
        self.assertEqual(pool.available_ids(), {1})


if __name__ == "__main__":
    unittest.main(verbosity=2)
