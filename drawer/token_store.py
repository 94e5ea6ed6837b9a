# -*- coding: utf-8 -*-
"""
Paintboard Drawer — token 缓存

维护当前已知的 uid → token 映射（线程安全），并持久化到 JSON 文件。
token 池每次重置都从这里重新播种，worker 绘制前也从这里解析最新 token。
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger("drawer.token_store")


class TokenIssuer(Protocol):
    """token 注册端点（由 BoardClient 实现）"""

    def request_token(self, uid: int, paste: str) -> tuple[bool, str]: ...


class TokenStore:
    """线程安全的 token 缓存"""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._tokens: dict[int, str] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def __contains__(self, uid: object) -> bool:
        with self._lock:
            return uid in self._tokens

    def get(self, uid: int) -> Optional[str]:
        with self._lock:
            return self._tokens.get(uid)

    def set(self, uid: int, token: str) -> None:
        with self._lock:
            self._tokens[uid] = token

    def ids(self) -> list[int]:
        with self._lock:
            return list(self._tokens)

    def snapshot(self) -> dict[int, str]:
        """返回当前映射的副本"""
        with self._lock:
            return dict(self._tokens)

    def clear(self) -> None:
        """清空缓存并落盘"""
        with self._lock:
            self._tokens.clear()
        self.save()

    # ── 注册 ─────────────────────────────────────────────────

    def obtain(self, uid: int, paste: str, issuer: TokenIssuer) -> tuple[bool, str]:
        """
        获取 uid 的 token：缓存命中直接返回，否则通过注册端点申请并落盘。

        Returns:
            (是否成功, token 或失败原因)
        """
        token = self.get(uid)
        if token is not None:
            return True, token

        ok, token = issuer.request_token(uid, paste)
        if ok:
            self.set(uid, token)
            self.save()
        return ok, token

    # ── 持久化 ───────────────────────────────────────────────

    def save(self) -> None:
        """写入 JSON 文件（未配置路径时跳过）"""
        if self.path is None:
            return
        with self._lock:
            data = {
                "saved_at": datetime.now().isoformat(timespec="seconds"),
                "tokens": {str(uid): tok for uid, tok in self._tokens.items()},
            }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error("token 缓存写入失败 (%s): %s", self.path, e)

    def load(self) -> int:
        """从 JSON 文件读取，返回读取到的 token 数"""
        if self.path is None or not self.path.exists():
            return 0
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("token 缓存读取失败 (%s): %s", self.path, e)
            return 0

        tokens = data.get("tokens", {})
        with self._lock:
            for uid, tok in tokens.items():
                self._tokens[int(uid)] = str(tok)
                logger.debug("缓存 token: uid=%s", uid)
        logger.info("已加载 %d 个 token (%s)", len(tokens), self.path)
        return len(tokens)
