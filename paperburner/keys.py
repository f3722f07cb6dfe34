"""API key pools with rotation, blacklisting and usage statistics.

One :class:`KeyPoolManager` is built per processing run and handed to
both executors. Every method is synchronous and never awaits, so pool
updates stay atomic under the event loop without a lock.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

log = logging.getLogger(__name__)

OCR_POOL = "ocr"
TRANSLATION_POOL = "translation"


def mask_key(key: str) -> str:
    """Render a key for logs without exposing it."""
    return f"...{key[-4:]}" if key else "<none>"


@dataclass
class KeyUsage:
    count: int = 0
    errors: int = 0
    last_used: float = 0.0


@dataclass
class _Pool:
    keys: list[str] = field(default_factory=list)
    blacklist: set[str] = field(default_factory=set)
    cursor: int = 0
    usage: dict[str, KeyUsage] = field(default_factory=dict)

    def available(self, exclude: Iterable[str] = ()) -> list[str]:
        excluded = set(exclude)
        return [k for k in self.keys if k not in self.blacklist and k not in excluded]


class KeyPoolManager:
    """Named pools of API keys.

    Unknown pool names behave like empty pools; a ``None`` draw means no
    usable key is left.
    """

    def __init__(self) -> None:
        self._pools: dict[str, _Pool] = {}

    def _pool(self, pool: str) -> _Pool:
        return self._pools.get(pool) or _Pool()

    def _touch(self, pool: _Pool, key: str) -> None:
        stats = pool.usage.setdefault(key, KeyUsage())
        stats.count += 1
        stats.last_used = time.time()

    def set_keys(self, pool: str, keys: Iterable[str]) -> None:
        """Replace a pool's keys and reset its blacklist, cursor and stats."""
        unique = list(dict.fromkeys(k.strip() for k in keys if k and k.strip()))
        self._pools[pool] = _Pool(
            keys=unique,
            usage={k: KeyUsage() for k in unique},
        )
        log.debug("Key pool %s loaded with %s keys", pool, len(unique))

    def keys(self, pool: str) -> list[str]:
        return list(self._pool(pool).keys)

    def get_next_key(self, pool: str) -> Optional[str]:
        """Round-robin draw over the non-blacklisted keys."""
        state = self._pools.get(pool)
        if state is None:
            return None
        available = state.available()
        if not available:
            return None
        index = state.cursor % len(available)
        key = available[index]
        state.cursor = (index + 1) % len(available)
        self._touch(state, key)
        return key

    def get_specific_key(
        self, pool: str, exclude_keys: Iterable[str] = ()
    ) -> Optional[str]:
        """Draw the least-used usable key not in *exclude_keys*.

        Ties on draw count go to the key with fewer recorded errors, then
        to configuration order.
        """
        state = self._pools.get(pool)
        if state is None:
            return None
        available = state.available(exclude_keys)
        if not available:
            return None
        order = {k: i for i, k in enumerate(state.keys)}
        key = min(
            available,
            key=lambda k: (
                state.usage.get(k, KeyUsage()).count,
                state.usage.get(k, KeyUsage()).errors,
                order[k],
            ),
        )
        self._touch(state, key)
        return key

    def get_multiple_keys(self, pool: str, count: int) -> list[str]:
        """Draw up to *count* distinct keys, least-used first."""
        drawn: list[str] = []
        for _ in range(max(0, count)):
            key = self.get_specific_key(pool, drawn)
            if key is None:
                break
            drawn.append(key)
        return drawn

    def mark_invalid(self, pool: str, key: str) -> None:
        """Blacklist *key* for the rest of the run."""
        state = self._pools.get(pool)
        if state is None or not key:
            return
        if key not in state.blacklist:
            state.blacklist.add(key)
            log.warning("Key %s in pool %s marked invalid", mask_key(key), pool)
        if key in state.usage:
            state.usage[key].errors += 1

    def record_error(self, pool: str, key: str) -> None:
        """Count a soft error against *key*; it stays usable."""
        state = self._pools.get(pool)
        if state is None or key not in state.usage:
            return
        state.usage[key].errors += 1

    def is_blacklisted(self, pool: str, key: str) -> bool:
        return key in self._pool(pool).blacklist

    def available_count(self, pool: str, exclude: Iterable[str] = ()) -> int:
        return len(self._pool(pool).available(exclude))

    def key_stats(self, pool: str) -> list[dict]:
        """Per-key usage with masked key names, in configuration order."""
        state = self._pool(pool)
        stats = []
        for key in state.keys:
            usage = state.usage.get(key, KeyUsage())
            stats.append(
                {
                    "key": mask_key(key),
                    "count": usage.count,
                    "errors": usage.errors,
                    "last_used": usage.last_used,
                    "blacklisted": key in state.blacklist,
                }
            )
        return stats

    def reset_blacklist(self, pool: Optional[str] = None) -> None:
        for name, state in self._pools.items():
            if pool is None or name == pool:
                state.blacklist.clear()
