"""In-process scratch space shared by pipelines for best-effort memoization."""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Tuple


class SharedState:
    """Lock-guarded key/value map. No transactional semantics."""

    def __init__(self):
        self._store: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._store[key] = value

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        with self._lock:
            return self._store.get(key, default)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._store

    def entries(self) -> List[Tuple[str, Any]]:
        with self._lock:
            return list(self._store.items())
