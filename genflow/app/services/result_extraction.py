# genflow/app/services/result_extraction.py
"""
Normalization of provider output payloads into media/cover URLs and duration.

Payloads are first converted into a small typed tree whose object keys are
sorted, so extraction does not depend on the order a provider serialized them.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Union
from urllib.parse import urlparse

from genflow.app.domain.models import ExtractedMedia, ResourceKind

logger = logging.getLogger(__name__)

MAX_DEPTH = 32
COVER_HINTS = ("cover", "thumb", "poster")
DURATION_KEYS = frozenset({"duration", "video_duration", "seconds", "length"})


@dataclass(frozen=True)
class StringLeaf:
    value: str


@dataclass(frozen=True)
class NumberLeaf:
    value: float


@dataclass(frozen=True)
class BoolLeaf:
    value: bool


@dataclass(frozen=True)
class ArrayNode:
    items: tuple["PayloadNode", ...]


@dataclass(frozen=True)
class ObjectNode:
    entries: tuple[tuple[str, "PayloadNode"], ...]


PayloadNode = Union[StringLeaf, NumberLeaf, BoolLeaf, ArrayNode, ObjectNode]
Leaf = Union[StringLeaf, NumberLeaf, BoolLeaf]


def to_tree(payload: Any, depth: int = 0) -> Optional[PayloadNode]:
    """Convert decoded JSON into a PayloadNode; None for null and unsupported values."""
    if payload is None or depth > MAX_DEPTH:
        return None
    if isinstance(payload, bool):
        return BoolLeaf(payload)
    if isinstance(payload, (int, float)):
        return NumberLeaf(float(payload))
    if isinstance(payload, str):
        return StringLeaf(payload)
    if isinstance(payload, (list, tuple)):
        items = (to_tree(item, depth + 1) for item in payload)
        return ArrayNode(tuple(item for item in items if item is not None))
    if isinstance(payload, dict):
        entries = []
        for key in sorted(payload, key=str):
            child = to_tree(payload[key], depth + 1)
            if child is not None:
                entries.append((str(key), child))
        return ObjectNode(tuple(entries))
    return None


def iter_leaves(node: Optional[PayloadNode], key: Optional[str] = None) -> Iterator[tuple[Optional[str], Leaf]]:
    """Depth-first walk; array items inherit the key of the array."""
    if node is None:
        return
    if isinstance(node, ArrayNode):
        for item in node.items:
            yield from iter_leaves(item, key)
    elif isinstance(node, ObjectNode):
        for child_key, child in node.entries:
            yield from iter_leaves(child, child_key)
    else:
        yield key, node


def _is_http_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def _dedupe(values: list[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


class MediaExtractor(ABC):
    @abstractmethod
    def extract(self, payload: Any) -> ExtractedMedia:
        pass


class HeuristicMediaExtractor(MediaExtractor):
    """
    Classifies string leaves by URL extension and key hints.

    A URL is primary media when its path ends in a known extension, its key
    mentions the media type, or it is a data URL of that type. It is a cover
    when its key mentions cover/thumb/poster. Anything else is ignored.
    """

    def __init__(
        self,
        media_hint: str,
        extensions: tuple[str, ...],
        data_prefixes: tuple[str, ...],
        accept_bare_urls: bool = False,
    ):
        self.media_hint = media_hint
        self.extensions = extensions
        self.data_prefixes = data_prefixes
        self.accept_bare_urls = accept_bare_urls

    def _has_media_extension(self, url: str) -> bool:
        path = urlparse(url).path.lower()
        return path.endswith(self.extensions)

    def extract(self, payload: Any) -> ExtractedMedia:
        media: list[str] = []
        covers: list[str] = []
        duration: Optional[float] = None

        for key, leaf in iter_leaves(to_tree(payload)):
            lowered_key = (key or "").lower()

            if isinstance(leaf, StringLeaf):
                value = leaf.value.strip()
                if _is_http_url(value):
                    if self._has_media_extension(value) or self.media_hint in lowered_key:
                        media.append(value)
                    elif any(hint in lowered_key for hint in COVER_HINTS):
                        covers.append(value)
                    elif key is None and self.accept_bare_urls:
                        media.append(value)
                elif value.startswith(self.data_prefixes):
                    media.append(value)

            elif isinstance(leaf, NumberLeaf):
                if duration is None and lowered_key in DURATION_KEYS:
                    duration = leaf.value

        return ExtractedMedia(media_urls=_dedupe(media), cover_urls=_dedupe(covers), duration=duration)


class AnyUrlExtractor(MediaExtractor):
    """Every http(s) or matching data URL is primary media."""

    def __init__(self, data_prefixes: tuple[str, ...] = ("data:video/",)):
        self.data_prefixes = data_prefixes

    def extract(self, payload: Any) -> ExtractedMedia:
        media = [
            leaf.value.strip()
            for _, leaf in iter_leaves(to_tree(payload))
            if isinstance(leaf, StringLeaf)
            and (_is_http_url(leaf.value.strip()) or leaf.value.strip().startswith(self.data_prefixes))
        ]
        return ExtractedMedia(media_urls=_dedupe(media))


VIDEO_EXTRACTOR = HeuristicMediaExtractor(
    media_hint="video",
    extensions=(".mp4", ".mov", ".webm", ".gif"),
    data_prefixes=("data:video/",),
)
IMAGE_EXTRACTOR = HeuristicMediaExtractor(
    media_hint="image",
    extensions=(".png", ".jpg", ".jpeg", ".webp", ".gif"),
    data_prefixes=("data:image/",),
    accept_bare_urls=True,
)
SITE_EXTRACTOR = HeuristicMediaExtractor(
    media_hint="html",
    extensions=(".html", ".htm", ".zip"),
    data_prefixes=("data:text/html",),
)


class ExtractorRegistry:
    """
    Extractors by provider name, with a default per resource kind.
    A provider-specific registration wins over the resource default.
    """

    def __init__(self) -> None:
        self._by_provider: dict[str, MediaExtractor] = {}
        self._by_resource: dict[ResourceKind, MediaExtractor] = {}

    def register(self, provider: str, extractor: MediaExtractor) -> None:
        self._by_provider[provider] = extractor

    def register_default(self, resource: ResourceKind, extractor: MediaExtractor) -> None:
        self._by_resource[resource] = extractor

    def for_job(self, provider: Optional[str], resource: Optional[str]) -> MediaExtractor:
        if provider and provider in self._by_provider:
            return self._by_provider[provider]
        try:
            kind = ResourceKind(resource) if resource else ResourceKind.VIDEO
        except ValueError:
            logger.warning("extract.unknown_resource resource=%s", resource)
            kind = ResourceKind.VIDEO
        return self._by_resource.get(kind, VIDEO_EXTRACTOR)

    def extract(self, payload: Any, provider: Optional[str], resource: Optional[str]) -> ExtractedMedia:
        return self.for_job(provider, resource).extract(payload)


def build_default_registry() -> ExtractorRegistry:
    registry = ExtractorRegistry()
    registry.register_default(ResourceKind.VIDEO, VIDEO_EXTRACTOR)
    registry.register_default(ResourceKind.IMAGE, IMAGE_EXTRACTOR)
    registry.register_default(ResourceKind.SITE, SITE_EXTRACTOR)
    registry.register_default(ResourceKind.LOOP_ADS, AnyUrlExtractor())
    registry.register("loop-ads", AnyUrlExtractor())
    return registry
