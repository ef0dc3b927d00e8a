from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from genflow.app.domain.errors import RefinementStepError
from genflow.app.domain.models import RefinementProject, ReviewResult
from genflow.app.services.gemini_client import PROMPTS_DIR, GeminiClient

logger = logging.getLogger(__name__)

REVIEW_PROMPT = PROMPTS_DIR / "review_system.txt"
MAX_CONTEXT_CHARS = 6000
MAX_HTML_CHARS = 20000


def clamp_text(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return f"{value[:max_length]}\n\n[truncated]"


def parse_review(raw: Any) -> ReviewResult:
    """
    Validate a reviewer answer. Score is clamped to 0..10.

    Raises:
        RefinementStepError: If the answer carries no numeric score
    """
    if not isinstance(raw, dict):
        raise RefinementStepError("review", "review is not an object")

    score = raw.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise RefinementStepError("review", "review has no numeric score")

    improvements = []
    for item in raw.get("improvements") or []:
        if not isinstance(item, dict):
            continue
        improvements.append({
            key: str(item.get(key) or "").strip()
            for key in ("target", "reason", "fix")
        })

    notes = raw.get("notes")
    return ReviewResult(
        score=min(10.0, max(0.0, float(score))),
        improvements=tuple(improvements),
        notes=notes.strip() if isinstance(notes, str) and notes.strip() else None,
    )


class SiteReviewer(ABC):
    @abstractmethod
    def review(self, project: RefinementProject, blueprint: dict[str, Any], html: str) -> ReviewResult:
        pass


class GeminiSiteReviewer(SiteReviewer):
    def __init__(self, client: GeminiClient, temperature: float = 0.2):
        self._client = client
        self._temperature = temperature

    def review(self, project: RefinementProject, blueprint: dict[str, Any], html: str) -> ReviewResult:
        context = json.dumps(
            {"site_name": project.name, "briefing": project.brief, "pages": blueprint.get("pages")},
            indent=2,
            ensure_ascii=False,
        )
        prompt = "\n".join([
            "Context:",
            clamp_text(context, MAX_CONTEXT_CHARS),
            "",
            "Site HTML:",
            clamp_text(html or "Site unavailable for review.", MAX_HTML_CHARS),
        ])

        result = parse_review(self._client.generate_json(prompt, REVIEW_PROMPT, temperature=self._temperature))
        logger.info(
            "site_reviewer.scored project=%s iteration=%d score=%.1f improvements=%d",
            project.id,
            project.current_iteration,
            result.score,
            len(result.improvements),
        )
        return result
