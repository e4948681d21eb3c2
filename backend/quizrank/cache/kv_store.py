"""Synchronous key/value backends for the leaderboard cache.

These stores have no expiry semantics of their own; freshness is decided by
:class:`quizrank.cache.leaderboard_cache.LeaderboardCache`.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Dict, Optional, Protocol


class CacheFullError(OSError):
    """The backend refused a write because it is at capacity."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:  # pragma: no cover - protocol definition
        ...

    def set(self, key: str, value: str) -> None:  # pragma: no cover - protocol definition
        ...

    def delete(self, key: str) -> None:  # pragma: no cover - protocol definition
        ...


class InMemoryKeyValueStore:
    """Process-local store, optionally capped at ``max_items`` keys."""

    def __init__(self, max_items: Optional[int] = None) -> None:
        self._items: Dict[str, str] = {}
        self._max_items = max_items

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        if self._max_items is not None and key not in self._items and len(self._items) >= self._max_items:
            raise CacheFullError(f"Cache holds {len(self._items)} items (limit {self._max_items}).")
        self._items[key] = value

    def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class JsonFileKeyValueStore:
    """One file per key under ``root`` so concurrent keys never share a file."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._root / f"{digest}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(value, encoding="utf-8")
        os.replace(tmp_path, path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


__all__ = ["CacheFullError", "InMemoryKeyValueStore", "JsonFileKeyValueStore", "KeyValueStore"]
