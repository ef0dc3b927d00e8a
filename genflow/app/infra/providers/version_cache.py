from __future__ import annotations

import threading
from typing import Callable, Optional


class VersionCache:
    """
    Process-lifetime map of model slug -> resolved version.
    No eviction; a restart picks up newly published versions.
    """

    def __init__(self) -> None:
        self._versions: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, model: str) -> Optional[str]:
        with self._lock:
            return self._versions.get(model)

    def set(self, model: str, version: str) -> None:
        with self._lock:
            self._versions[model] = version

    def get_or_resolve(
        self,
        model: str,
        resolver: Callable[[str], str],
        configured_version: Optional[str] = None,
    ) -> str:
        if configured_version and configured_version.strip():
            version = configured_version.strip()
            self.set(model, version)
            return version

        cached = self.get(model)
        if cached:
            return cached

        # resolved outside the lock; concurrent misses may both resolve, last one wins
        version = resolver(model)
        self.set(model, version)
        return version

    def clear(self) -> None:
        with self._lock:
            self._versions.clear()


_DEFAULT_CACHE = VersionCache()


def get_version_cache() -> VersionCache:
    return _DEFAULT_CACHE
