# genflow/app/services/site_builder.py
"""
Builds a static site from a blueprint.

Section images come from an ImageAssetSource (the image provider through the
reconciler). A failed image keeps a placeholder and is reported back in the
BuildResult so the caller decides whether that degradation is acceptable.
"""
from __future__ import annotations

import copy
import html
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from genflow.app.domain.errors import OrchestrationError, StorageError
from genflow.app.domain.models import GenerationRequest, RefinementProject, ResourceKind
from genflow.app.infra.storage.base import StorageProvider
from genflow.app.services.reconciliation import JobReconciler

logger = logging.getLogger(__name__)

PLACEHOLDER_IMAGE_URL = "https://placehold.co/1600x900?text=Image+unavailable"
MAX_IMAGES = 4
IMAGE_ATTEMPTS = 2


class ImageAssetSource(ABC):
    @abstractmethod
    def generate(self, prompt: str, owner_id: str) -> str:
        """
        Generate one image and return its URL.

        Raises:
            OrchestrationError: If the image could not be produced
        """
        pass


class ReconcilerImageSource(ImageAssetSource):
    """Runs the image provider through the reconciler and waits for the result."""

    def __init__(self, reconciler: JobReconciler, provider: Optional[str] = None, aspect_ratio: str = "16:9"):
        self._reconciler = reconciler
        self._provider = provider
        self._aspect_ratio = aspect_ratio

    def generate(self, prompt: str, owner_id: str) -> str:
        request = GenerationRequest(
            caller_id=owner_id,
            resource=ResourceKind.IMAGE,
            params={"prompt": prompt, "aspect_ratio": self._aspect_ratio, "count": 1},
            provider=self._provider,
        )
        record = self._reconciler.generate_and_wait(request)
        return record.primary_url or PLACEHOLDER_IMAGE_URL


@dataclass
class BuildResult:
    html: str
    blueprint: dict[str, Any]
    url: Optional[str] = None
    object_key: Optional[str] = None
    failures: list[str] = field(default_factory=list)

    def as_artifact(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "object_key": self.object_key,
            "size_bytes": len(self.html.encode("utf-8")),
            "image_failures": len([item for item in self.failures if item.startswith("image")]),
        }


def _e(value: Optional[str]) -> str:
    return html.escape(value or "", quote=True)


def _render_section(section: dict[str, Any]) -> str:
    parts = [f'<section id="{_e(section["id"])}" class="section section-{_e(section["type"])}">']
    if section.get("title"):
        tag = "h1" if section["type"] == "hero" else "h2"
        parts.append(f"  <{tag}>{_e(section['title'])}</{tag}>")
    if section.get("description"):
        parts.append(f'  <p class="lead">{_e(section["description"])}</p>')
    if section.get("copy"):
        parts.append(f"  <p>{_e(section['copy'])}</p>")
    if section.get("image_url"):
        parts.append(f'  <img src="{_e(section["image_url"])}" alt="{_e(section.get("title"))}" loading="lazy">')
    if section.get("cta_label"):
        parts.append(f'  <a class="cta" href="{_e(section.get("cta_href") or "#")}">{_e(section["cta_label"])}</a>')
    parts.append("</section>")
    return "\n".join(parts)


def render_html(project: RefinementProject, blueprint: dict[str, Any]) -> str:
    colors = project.brand_colors or ["#0b0b1a", "#7c5cff"]
    background, accent = colors[0], colors[-1]
    pages_html = []
    for page in blueprint["pages"]:
        sections = "\n".join(_render_section(section) for section in page["sections"])
        pages_html.append(f'<main data-page="{_e(page["slug"])}">\n{sections}\n</main>')

    first_page = blueprint["pages"][0]
    return "\n".join([
        "<!doctype html>",
        '<html lang="pt-BR">',
        "<head>",
        '  <meta charset="utf-8">',
        '  <meta name="viewport" content="width=device-width, initial-scale=1">',
        f"  <title>{_e(first_page['title'])}</title>",
        f'  <meta name="description" content="{_e(first_page.get("seo_description"))}">',
        "  <style>",
        f"    body {{ margin: 0; font-family: system-ui, sans-serif; background: {_e(background)}; color: #f5f5f7; }}",
        "    .section { max-width: 960px; margin: 0 auto; padding: 64px 24px; }",
        "    .section img { width: 100%; border-radius: 16px; }",
        f"    .cta {{ display: inline-block; padding: 12px 24px; border-radius: 999px; background: {_e(accent)}; color: #fff; }}",
        "  </style>",
        "</head>",
        "<body>",
        *pages_html,
        "</body>",
        "</html>",
    ])


class SiteBuilder:
    def __init__(
        self,
        image_source: Optional[ImageAssetSource] = None,
        storage: Optional[StorageProvider] = None,
        max_images: int = MAX_IMAGES,
    ):
        self._images = image_source
        self._storage = storage
        self._max_images = max_images

    def build(self, project: RefinementProject, blueprint: dict[str, Any]) -> BuildResult:
        built = copy.deepcopy(blueprint)
        failures = self._fill_images(project, built)
        document = render_html(project, built)
        result = BuildResult(html=document, blueprint=built, failures=failures)

        if self._storage is not None:
            self._publish(project, result)

        logger.info(
            "site_builder.built project=%s iteration=%d failures=%d url=%s",
            project.id,
            project.current_iteration,
            len(result.failures),
            result.url,
        )
        return result

    def _fill_images(self, project: RefinementProject, blueprint: dict[str, Any]) -> list[str]:
        failures: list[str] = []
        targets = [
            section
            for page in blueprint["pages"]
            for section in page["sections"]
            if section.get("image_prompt") and not section.get("image_url")
        ][: self._max_images]

        for section in targets:
            if self._images is None:
                section["image_url"] = PLACEHOLDER_IMAGE_URL
                continue

            last_error: Optional[Exception] = None
            for attempt in range(1, IMAGE_ATTEMPTS + 1):
                try:
                    section["image_url"] = self._images.generate(section["image_prompt"], project.owner_id)
                    last_error = None
                    break
                except OrchestrationError as exc:
                    last_error = exc
                    logger.warning(
                        "site_builder.image_failed project=%s section=%s attempt=%d error=%s",
                        project.id,
                        section["id"],
                        attempt,
                        exc,
                    )

            if last_error is not None:
                section["image_url"] = PLACEHOLDER_IMAGE_URL
                failures.append(f"image {section['id']}: {last_error}")

        return failures

    def _publish(self, project: RefinementProject, result: BuildResult) -> None:
        object_key = self._storage.generate_object_key(
            project.owner_id,
            f"{project.id}-v{project.current_iteration}.html",
        )
        try:
            result.url = self._storage.upload_bytes(object_key, result.html.encode("utf-8"), "text/html; charset=utf-8")
            result.object_key = object_key
        except StorageError as exc:
            result.failures.append(f"upload: {exc}")
