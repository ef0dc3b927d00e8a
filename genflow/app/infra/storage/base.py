# genflow/app/infra/storage/base.py
"""
Storage interface for published refinement artifacts.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from uuid import uuid4

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class StorageProvider(ABC):
    """Where rendered sites are published (see R2StorageProvider)."""

    @abstractmethod
    def upload_bytes(self, object_key: str, data: bytes, content_type: str) -> str:
        """Store `data` under `object_key` and return a URL it can be fetched from."""

    @abstractmethod
    def generate_signed_get_url(self, object_key: str, expires_seconds: int = 3600) -> str:
        """Time-limited download URL for a private object."""

    def generate_object_key(self, owner_id: str, filename: str, prefix: str = "sites") -> str:
        """
        owners/{owner}/{prefix}/{YYYY}/{MM}/{8 hex}_{filename}, with unsafe
        characters in owner and filename replaced by underscores.
        """
        now = datetime.now(timezone.utc)
        owner = _UNSAFE_KEY_CHARS.sub("_", owner_id or "anonymous")
        name = _UNSAFE_KEY_CHARS.sub("_", filename)
        return f"owners/{owner}/{prefix}/{now:%Y}/{now:%m}/{uuid4().hex[:8]}_{name}"
