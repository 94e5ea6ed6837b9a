# -*- coding: utf-8 -*-
"""
Paintboard Drawer — token 池

每个已知 token 处于三种状态之一：

| 状态        | 含义                         | 转移                                  |
|-------------|------------------------------|---------------------------------------|
| AVAILABLE   | 空闲，可被 worker 借出         | acquire() → IN_FLIGHT                 |
| IN_FLIGHT   | 某个 worker 正在用它绘制        | release(成功) → COOLING               |
|             |                              | release(失败) → AVAILABLE（不冷却）     |
| COOLING     | 成功绘制后等待服务端限流窗口      | 冷却计时器到期 → AVAILABLE              |

冷却时长 = paint_interval - cooldown_margin，提前一点点归还以免错过限流窗口。
失败的绘制被认为没有消耗服务端限流额度，因此立即归还。

重置时 seed() 用当前已知 uid 原子替换整个池：未到期的冷却计时器全部作废，
借出中的租约也随代际号（generation）一起失效，旧会话迟到的 release 会被忽略，
保证同一个 token 不会同时被两个 worker 持有。
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from .cancel import CancelToken
from .errors import UnknownCredential
from .token_store import TokenStore

logger = logging.getLogger("drawer.credential_pool")


class CredentialState(str, Enum):
    AVAILABLE = "available"
    IN_FLIGHT = "in_flight"
    COOLING = "cooling"


@dataclass(frozen=True)
class Credential:
    """身份 + token"""
    uid: int
    token: str


@dataclass(frozen=True)
class Lease:
    """一次 acquire() 借出的凭据，release() 时原样交回"""
    uid: int
    generation: int


class CredentialPool:
    """带冷却的 token 池（线程安全，acquire 阻塞等待）"""

    def __init__(self, tokens: TokenStore, cooldown: float, capacity: int = 50):
        self.tokens = tokens
        self.cooldown = cooldown
        self.capacity = capacity

        self._cond = threading.Condition()
        self._available: deque[int] = deque()
        self._state: dict[int, CredentialState] = {}
        self._timers: dict[int, threading.Timer] = {}
        self._generation = 0

    # ── 成员管理 ─────────────────────────────────────────────

    def add(self, uid: int) -> bool:
        """新增 token 并立即可用；已在池中返回 False"""
        with self._cond:
            added = self._admit(uid)
            if added:
                self._cond.notify()
            return added

    def seed(self, uids: Iterable[int]) -> None:
        """用给定 uid 原子替换整个池，丢弃所有冷却 / 借出状态"""
        with self._cond:
            self._generation += 1
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._available.clear()
            self._state.clear()
            for uid in uids:
                self._admit(uid)
            self._cond.notify_all()
            logger.info("token 池已重建: %d 个可用 (generation=%d)", len(self._available), self._generation)

    def discard(self, uid: int) -> None:
        """把失效 token 移出轮转"""
        with self._cond:
            state = self._state.pop(uid, None)
            timer = self._timers.pop(uid, None)
            if timer is not None:
                timer.cancel()
            if state is CredentialState.AVAILABLE:
                self._available.remove(uid)
        logger.warning("token 已移出轮转: uid=%d", uid)

    def _admit(self, uid: int) -> bool:
        if uid in self._state:
            return False
        if len(self._state) >= self.capacity:
            logger.warning("token 池超出容量（%d），uid=%d 仍加入轮转", self.capacity, uid)
        self._state[uid] = CredentialState.AVAILABLE
        self._available.append(uid)
        return True

    # ── 借出 / 归还 ──────────────────────────────────────────

    def acquire(self, cancel: Optional[CancelToken] = None) -> Optional[Lease]:
        """
        借出一个可用 token，没有可用 token 时阻塞。

        取消信号触发时返回 None（需要在 cancel 上注册 wake() 才能及时唤醒）。
        """
        with self._cond:
            while not self._available:
                if cancel is not None and cancel.cancelled:
                    return None
                self._cond.wait()
            if cancel is not None and cancel.cancelled:
                return None
            uid = self._available.popleft()
            self._state[uid] = CredentialState.IN_FLIGHT
            return Lease(uid=uid, generation=self._generation)

    def release(self, lease: Lease, success: bool) -> None:
        """
        归还 token。

        success=True  → 进入冷却，cooldown 秒后再可用
        success=False → 立即可用
        """
        with self._cond:
            if lease.generation != self._generation or self._state.get(lease.uid) is not CredentialState.IN_FLIGHT:
                logger.debug("忽略过期租约: uid=%d generation=%d", lease.uid, lease.generation)
                return
            if success and self.cooldown > 0:
                self._state[lease.uid] = CredentialState.COOLING
                timer = threading.Timer(self.cooldown, self._finish_cooldown, args=(lease.uid, lease.generation))
                timer.daemon = True
                timer.name = f"cooldown-{lease.uid}"
                self._timers[lease.uid] = timer
                timer.start()
            else:
                self._make_available(lease.uid)

    def _finish_cooldown(self, uid: int, generation: int) -> None:
        with self._cond:
            if generation != self._generation:
                # 池已重新播种，成员关系以新池为准
                return
            self._timers.pop(uid, None)
            if self._state.get(uid) is CredentialState.COOLING:
                self._make_available(uid)

    def _make_available(self, uid: int) -> None:
        self._state[uid] = CredentialState.AVAILABLE
        self._available.append(uid)
        self._cond.notify()

    def resolve(self, uid: int) -> Credential:
        """
        从 token 缓存解析当前 token。

        Raises:
            UnknownCredential: uid 不在缓存中（已失效）
        """
        token = self.tokens.get(uid)
        if token is None:
            raise UnknownCredential(uid)
        return Credential(uid=uid, token=token)

    def wake(self) -> None:
        """唤醒所有阻塞在 acquire() 上的线程"""
        with self._cond:
            self._cond.notify_all()

    def close(self) -> None:
        """取消所有冷却计时器"""
        with self._cond:
            self._generation += 1
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()

    # ── 查询 ─────────────────────────────────────────────────

    def state_of(self, uid: int) -> Optional[CredentialState]:
        with self._cond:
            return self._state.get(uid)

    def available_ids(self) -> set[int]:
        with self._cond:
            return set(self._available)

    def count(self, state: CredentialState) -> int:
        with self._cond:
            return sum(1 for s in self._state.values() if s is state)

    def size(self) -> int:
        """池中跟踪的 token 总数"""
        with self._cond:
            return len(self._state)
