# genflow/app/services/refinement_controller.py
"""
Refinement loop: blueprint -> build -> review -> decide.

One advance() runs exactly one iteration. Progress is never stored on its own;
it is derived from the project status. Every transition appends an event.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Optional
from uuid import uuid4

from genflow.app.domain.errors import (
    ConfigurationMissingError,
    InvalidGenerationRequestError,
    OrchestrationError,
    ProjectNotFoundError,
    RefinementStepError,
)
from genflow.app.domain.models import (
    ProjectEvent,
    ProjectStatus,
    RefinementProject,
    ReviewResult,
)
from genflow.app.infra.db.base import ProjectStore
from genflow.app.services.blueprint import BlueprintGenerator, TemplateBlueprintGenerator
from genflow.app.services.input_normalizer import parse_integer, parse_text
from genflow.app.services.site_builder import BuildResult, SiteBuilder
from genflow.app.services.site_reviewer import SiteReviewer

logger = logging.getLogger(__name__)

DEFAULT_SCORE_THRESHOLD = 8.0
DEFAULT_ITERATIONS = 3
MAX_ITERATIONS_CAP = 5
BRIEF_MAX_LENGTH = 4000


class RefinementController:
    """
    Drives refinement projects through their iterations.

    Responsibilities:
    - Create projects with a bounded iteration budget
    - Run one iteration per advance and decide whether to iterate again
    - Degrade blueprint/image sub-steps to templates when allowed, and say so
    - Fail the project on an unrecoverable step (review, or any step without fallback)
    """

    def __init__(
        self,
        store: ProjectStore,
        blueprints: Optional[BlueprintGenerator],
        builder: SiteBuilder,
        reviewer: Optional[SiteReviewer],
        fallback_blueprints: Optional[BlueprintGenerator] = None,
        score_threshold: float = DEFAULT_SCORE_THRESHOLD,
        default_iterations: int = DEFAULT_ITERATIONS,
        max_iterations_cap: int = MAX_ITERATIONS_CAP,
        allow_fallback: bool = True,
        id_factory: Callable[[], str] = lambda: uuid4().hex,
    ):
        self._store = store
        self._blueprints = blueprints
        self._fallback_blueprints = fallback_blueprints or TemplateBlueprintGenerator()
        self._builder = builder
        self._reviewer = reviewer
        self.score_threshold = score_threshold
        self.default_iterations = default_iterations
        self.max_iterations_cap = max(1, max_iterations_cap)
        self.allow_fallback = allow_fallback
        self._id_factory = id_factory

    def start(
        self,
        brief: str,
        owner_id: str,
        name: Optional[str] = None,
        max_iterations: Optional[int] = None,
        tone: Optional[str] = None,
        brand_colors: Optional[list[str]] = None,
    ) -> RefinementProject:
        """
        Create a project in blueprint_pending at iteration 1.

        Raises:
            InvalidGenerationRequestError: If the brief is empty
            ConfigurationMissingError: If no reviewer is configured
        """
        normalized_brief = parse_text(brief, "", BRIEF_MAX_LENGTH)
        if not normalized_brief:
            raise InvalidGenerationRequestError("'brief' is required")
        if self._reviewer is None:
            raise ConfigurationMissingError(["GEMINI_API_KEY"])

        project = RefinementProject(
            id=self._id_factory(),
            owner_id=owner_id,
            name=parse_text(name, "Untitled site", 120),
            brief=normalized_brief,
            status=ProjectStatus.BLUEPRINT_PENDING,
            current_iteration=1,
            max_iterations=parse_integer(max_iterations, self.default_iterations, 1, self.max_iterations_cap),
            tone=parse_text(tone, "futurista", 40),
            brand_colors=[color for color in (parse_text(c, "", 20) for c in brand_colors or []) if color][:6],
        )
        stored = self._store.create(project)
        self._event(stored, f"Project created with up to {stored.max_iterations} iterations.")
        logger.info("refinement.started project=%s owner=%s max_iterations=%d", stored.id, owner_id, stored.max_iterations)
        return stored

    def get(self, project_id: str) -> RefinementProject:
        project = self._store.get(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    def events(self, project_id: str) -> list[ProjectEvent]:
        return self._store.list_events(project_id)

    def advance(self, project_id: str) -> RefinementProject:
        """
        Run one full iteration. Finished projects are returned unchanged.

        Raises:
            ProjectNotFoundError: If the project does not exist
        """
        project = self.get(project_id)
        if project.is_finished:
            logger.info("refinement.advance_noop project=%s status=%s", project.id, project.status.value)
            return project

        try:
            return self._run_iteration(project)
        except RefinementStepError as exc:
            return self._fail(project.id, exc)

    def _run_iteration(self, project: RefinementProject) -> RefinementProject:
        iteration = project.current_iteration

        blueprint, changes = self._make_blueprint(project)
        project = self._transition(
            project,
            ProjectStatus.BLUEPRINT_READY,
            f"Blueprint ready for iteration {iteration}.",
            blueprint=blueprint,
            **changes,
        )

        project = self._transition(project, ProjectStatus.ASSETS_GENERATING, "Generating site assets.")
        build, changes = self._build(project, blueprint)
        project = self._transition(
            project,
            ProjectStatus.ASSETS_READY,
            "Site assets ready.",
            artifact=build.as_artifact(),
            blueprint=build.blueprint,
            **changes,
        )

        project = self._transition(project, ProjectStatus.REVIEWING, "Reviewing the built site.")
        review = self._review(project, build)
        below_threshold = review.score < self.score_threshold
        project = self._transition(
            project,
            ProjectStatus.REVIEW_DONE,
            f"Automatic review finished with score {review.score:g}.",
            level="warning" if below_threshold else "info",
            last_score=review.score,
            improvement_notes=review.improvement_notes,
            review={"score": review.score, "improvements": list(review.improvements), "notes": review.notes},
        )

        if not below_threshold or not project.can_iterate:
            reason = "score reached the threshold" if not below_threshold else "iteration budget exhausted"
            return self._transition(project, ProjectStatus.COMPLETED, f"Site completed ({reason}).")

        return self._transition(
            project,
            ProjectStatus.BLUEPRINT_PENDING,
            f"Starting iteration {iteration + 1} with {len(project.improvement_notes)} improvement notes.",
            current_iteration=iteration + 1,
        )

    def _make_blueprint(self, project: RefinementProject) -> tuple[dict[str, Any], dict[str, Any]]:
        if self._blueprints is not None:
            try:
                return self._blueprints.generate(project), {}
            except OrchestrationError as exc:
                if not self.allow_fallback:
                    raise RefinementStepError("blueprint", str(exc)) from exc
                return self._fallback_blueprints.generate(project), self._fallback(project, "blueprint", str(exc))

        if not self.allow_fallback:
            raise RefinementStepError("blueprint", "no blueprint generator configured")
        return (
            self._fallback_blueprints.generate(project),
            self._fallback(project, "blueprint", "no blueprint generator configured"),
        )

    def _build(self, project: RefinementProject, blueprint: dict[str, Any]) -> tuple[BuildResult, dict[str, Any]]:
        build = self._builder.build(project, blueprint)
        if not build.failures:
            return build, {}
        if not self.allow_fallback:
            raise RefinementStepError("assets", "; ".join(build.failures))
        return build, self._fallback(project, "assets", "; ".join(build.failures))

    def _review(self, project: RefinementProject, build: BuildResult) -> ReviewResult:
        if self._reviewer is None:
            raise RefinementStepError("review", "no reviewer configured")
        try:
            return self._reviewer.review(project, build.blueprint, build.html)
        except RefinementStepError:
            raise
        except OrchestrationError as exc:
            raise RefinementStepError("review", str(exc)) from exc

    def _fallback(self, project: RefinementProject, step: str, reason: str) -> dict[str, Any]:
        logger.warning("refinement.fallback project=%s step=%s reason=%s", project.id, step, reason)
        self._event(project, f"Fell back to a template for {step}: {reason}", level="warning", step=step)
        return {
            "fallback_used": True,
            "fallback_reasons": [*project.fallback_reasons, f"{step}: {reason}"],
        }

    def _fail(self, project_id: str, exc: RefinementStepError) -> RefinementProject:
        logger.error("refinement.failed project=%s step=%s reason=%s", project_id, exc.step, exc.reason)
        current = self.get(project_id)
        return self._transition(
            current,
            ProjectStatus.FAILED,
            f"Step '{exc.step}' failed: {exc.reason}",
            level="error",
            step=exc.step,
            error_message=str(exc),
        )

    def _transition(
        self,
        project: RefinementProject,
        status: ProjectStatus,
        message: str,
        level: str = "info",
        step: Optional[str] = None,
        **changes: Any,
    ) -> RefinementProject:
        saved = self._store.save(replace(project, status=status, **changes))
        self._event(saved, message, level=level, step=step or status.value)
        return saved

    def _event(self, project: RefinementProject, message: str, level: str = "info", step: Optional[str] = None) -> None:
        self._store.append_event(
            ProjectEvent(project_id=project.id, message=message, level=level, step=step or project.status.value)
        )
