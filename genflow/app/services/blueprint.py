# genflow/app/services/blueprint.py
"""
Site blueprint generation.
A blueprint is a plain dict: {"pages": [{"id", "slug", "title", "seo_description", "sections": [...]}]}.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

from genflow.app.domain.errors import RefinementStepError
from genflow.app.domain.models import RefinementProject
from genflow.app.services.gemini_client import PROMPTS_DIR, GeminiClient

logger = logging.getLogger(__name__)

BLUEPRINT_PROMPT = PROMPTS_DIR / "blueprint_system.txt"
SECTION_TYPES = ("hero", "features", "gallery", "pricing", "contact", "custom")
MAX_PAGES = 4
MAX_SECTIONS = 8

# camelCase keys some models still answer with
_KEY_ALIASES = {
    "seoDescription": "seo_description",
    "imagePrompt": "image_prompt",
    "imageUrl": "image_url",
    "ctaLabel": "cta_label",
    "ctaHref": "cta_href",
}


def _text(value: Any, max_length: int = 2000) -> Optional[str]:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped[:max_length] if stripped else None


def _slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "page"


def _as_list(value: Any) -> list[Any]:
    """Lists pass through; an object keyed by id becomes its values with the key as id."""
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [{"id": key, **item} if isinstance(item, dict) else item for key, item in value.items()]
    return []


def _normalize_section(raw: dict[str, Any], index: int) -> dict[str, Any]:
    data = {_KEY_ALIASES.get(key, key): value for key, value in raw.items()}
    candidate = data.get("type") or data.get("id")
    section_type = candidate if candidate in SECTION_TYPES else "custom"
    return {
        "id": _text(data.get("id"), 60) or f"section-{index + 1}",
        "type": section_type,
        "title": _text(data.get("title"), 200),
        "description": _text(data.get("description"), 500),
        "copy": _text(data.get("copy")),
        "image_prompt": _text(data.get("image_prompt"), 1000),
        "image_url": _text(data.get("image_url"), 2048),
        "cta_label": _text(data.get("cta_label"), 60),
        "cta_href": _text(data.get("cta_href"), 300),
    }


def normalize_blueprint(raw: Any) -> dict[str, Any]:
    """
    Validate and normalize a blueprint dict.

    Raises:
        RefinementStepError: If it has no page with at least one section
    """
    pages_raw = _as_list(raw.get("pages")) if isinstance(raw, dict) else []
    if not pages_raw:
        raise RefinementStepError("blueprint", "blueprint has no 'pages' list")

    pages: list[dict[str, Any]] = []
    for index, page in enumerate(pages_raw[:MAX_PAGES]):
        if not isinstance(page, dict):
            continue
        data = {_KEY_ALIASES.get(key, key): value for key, value in page.items()}
        sections = [
            _normalize_section(section, section_index)
            for section_index, section in enumerate(_as_list(data.get("sections"))[:MAX_SECTIONS])
            if isinstance(section, dict)
        ]
        if not sections:
            continue
        title = _text(data.get("title"), 200) or f"Page {index + 1}"
        page_id = _text(data.get("id"), 60) or _slugify(title)
        pages.append({
            "id": page_id,
            "slug": _text(data.get("slug"), 120) or ("/" if index == 0 else f"/{_slugify(page_id)}"),
            "title": title,
            "seo_description": _text(data.get("seo_description"), 300),
            "sections": sections,
        })

    if not pages:
        raise RefinementStepError("blueprint", "blueprint has no page with sections")
    return {"pages": pages}


class BlueprintGenerator(ABC):
    @abstractmethod
    def generate(self, project: RefinementProject) -> dict[str, Any]:
        """
        Produce the blueprint for the project's current iteration.

        Args:
            project: Project with brief and the previous iteration's improvement notes

        Returns:
            Normalized blueprint dict
        """
        pass


class GeminiBlueprintGenerator(BlueprintGenerator):
    def __init__(self, client: GeminiClient, temperature: float = 0.7):
        self._client = client
        self._temperature = temperature

    def generate(self, project: RefinementProject) -> dict[str, Any]:
        payload = {
            "project_name": project.name,
            "briefing": project.brief,
            "brand_colors": project.brand_colors or "not specified",
            "tone": project.tone,
            "iteration": project.current_iteration,
            "improvement_notes": project.improvement_notes,
            "previous_blueprint": project.blueprint if project.improvement_notes else None,
        }
        raw = self._client.generate_json(payload, BLUEPRINT_PROMPT, temperature=self._temperature)
        blueprint = normalize_blueprint(raw)
        logger.info(
            "blueprint.generated project=%s iteration=%d pages=%d",
            project.id,
            project.current_iteration,
            len(blueprint["pages"]),
        )
        return blueprint


class TemplateBlueprintGenerator(BlueprintGenerator):
    """Deterministic single-page layout built from the brief alone."""

    def generate(self, project: RefinementProject) -> dict[str, Any]:
        name = project.name or "New site"
        brief = project.brief.strip()
        summary = brief.split(".")[0][:160] if brief else name
        sections = [
            {
                "id": "hero",
                "type": "hero",
                "title": name,
                "description": summary,
                "copy": brief,
                "image_prompt": f"{project.tone} hero image for {name}: {summary}",
                "cta_label": "Get started",
                "cta_href": "#contact",
            },
            {
                "id": "features",
                "type": "features",
                "title": "What we offer",
                "description": summary,
                "copy": brief,
            },
            {
                "id": "contact",
                "type": "contact",
                "title": "Contact",
                "description": f"Talk to the {name} team.",
                "cta_label": "Send a message",
                "cta_href": "mailto:hello@example.com",
            },
        ]
        return normalize_blueprint({
            "pages": [{"id": "home", "slug": "/", "title": name, "seo_description": summary, "sections": sections}]
        })
