# genflow/app/services/provider_catalog.py
"""
Per-provider settings and input builders.

Each entry knows which model to run, how to turn a caller's free-form params
into the provider's input, and how long a blocking caller may wait for it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from genflow.app.config import Settings, first_non_empty
from genflow.app.domain.errors import InvalidGenerationRequestError
from genflow.app.domain.models import ResourceKind
from genflow.app.services.input_normalizer import (
    clamp_number,
    parse_aspect,
    parse_bool,
    parse_enum,
    parse_integer,
    parse_optional_text,
    parse_text,
    snap_to_allowed,
)

ADAPTER_DEFAULT = "replicate"
ADAPTER_LOOP_ADS = "replicate_loop_ads"

PROMPT_MAX_LENGTH = 2000
IMAGE_ASPECTS = ("1:1", "16:9", "9:16", "4:3", "3:4")
VIDEO_ASPECTS = ("16:9", "9:16")
SITE_TONES = ("futurista", "minimal", "corporate", "playful", "luxury")

LOOP_PRESETS = ("ecom", "cosmic", "minimal", "premium")
LOOP_BACKGROUNDS = ("studio_glass", "cosmic_nebula", "packshot_studio")
LOOP_ELEMENTS = ("none", "orb", "chroma_creature", "mixed")
LOOP_PARTICLE_STYLES = ("dust", "comet", "mixed")
LOOP_TEXT_ANIMS = ("none", "fade", "slide", "type")
LOOP_PALETTE_MODES = ("auto", "manual")
LOOP_CONFIG_ECHO = (
    "preset",
    "background_mode",
    "element",
    "scenes",
    "seconds_per_scene",
    "fps",
    "width",
    "height",
    "batch_count",
    "seed",
    "with_product",
)


@dataclass(frozen=True)
class DurationRange:
    minimum: int
    maximum: int
    step: int
    fallback: int


@dataclass(frozen=True)
class ProviderSettings:
    name: str
    resource: ResourceKind
    model: str
    version: Optional[str]
    poll_interval_seconds: float
    max_attempts: int
    build_input: Callable[["ProviderSettings", Mapping[str, Any], Optional[str]], dict[str, Any]]
    model_env: str
    token: str = ""
    token_env: str = "REPLICATE_API_TOKEN"
    adapter: str = ADAPTER_DEFAULT
    default_aspect: str = "16:9"
    aspect_whitelist: tuple[str, ...] = VIDEO_ASPECTS
    duration_range: Optional[DurationRange] = None
    allowed_durations: tuple[int, ...] = ()
    prompt_suffix: str = ""
    config_echo: Optional[tuple[str, ...]] = None

    def missing_configuration(self) -> list[str]:
        missing: list[str] = []
        if not self.token:
            missing.append(self.token_env)
        if not self.model:
            missing.append(self.model_env)
        return missing

    def echo(self, provider_input: Mapping[str, Any]) -> dict[str, Any]:
        """Subset of the input stored on the job record."""
        if self.config_echo is not None:
            return {key: provider_input.get(key) for key in self.config_echo}
        return {
            key: value
            for key, value in provider_input.items()
            if key not in ("prompt", "image", "product_image") and value is not None
        }


def _require_prompt(params: Mapping[str, Any], field_name: str = "prompt") -> str:
    prompt = parse_text(params.get(field_name), "", PROMPT_MAX_LENGTH)
    if not prompt:
        raise InvalidGenerationRequestError(f"'{field_name}' is required")
    return prompt


def _with_suffix(prompt: str, suffix: str) -> str:
    return f"{prompt} | {suffix}" if suffix else prompt


def _video_duration(entry: ProviderSettings, value: Any) -> int:
    bounds = entry.duration_range or DurationRange(4, 20, 1, 6)
    if entry.allowed_durations:
        return int(snap_to_allowed(value, entry.allowed_durations, bounds.fallback))
    return int(clamp_number(value, bounds.fallback, bounds.minimum, bounds.maximum, bounds.step))


def build_video_input(
    entry: ProviderSettings,
    params: Mapping[str, Any],
    reference_asset: Optional[str],
) -> dict[str, Any]:
    aspect = parse_aspect(params.get("aspect_ratio"), entry.aspect_whitelist, entry.default_aspect)
    duration = _video_duration(entry, params.get("duration"))
    payload: dict[str, Any] = {
        "prompt": _with_suffix(_require_prompt(params), entry.prompt_suffix),
        "aspect_ratio": aspect,
        "duration": duration,
        "image": reference_asset or None,
    }
    if entry.name == "veo":
        payload["video_length"] = duration
        payload["resolution"] = "720x1280" if aspect == "9:16" else "1080p"
    return payload


def build_image_input(
    entry: ProviderSettings,
    params: Mapping[str, Any],
    reference_asset: Optional[str],
) -> dict[str, Any]:
    return {
        "prompt": _with_suffix(_require_prompt(params), entry.prompt_suffix),
        "aspect_ratio": parse_aspect(params.get("aspect_ratio"), entry.aspect_whitelist, entry.default_aspect),
        "num_outputs": parse_integer(params.get("count"), 1, 1, 4),
        "image": reference_asset or None,
    }


def build_site_input(
    entry: ProviderSettings,
    params: Mapping[str, Any],
    reference_asset: Optional[str],
) -> dict[str, Any]:
    return {
        "prompt": _with_suffix(_require_prompt(params), entry.prompt_suffix),
        "tone": parse_enum(params.get("tone"), SITE_TONES, "futurista"),
        "sections": parse_integer(params.get("sections"), 5, 3, 10),
        "language": parse_text(params.get("language"), "pt-BR", 16),
    }


def build_loop_ads_input(
    entry: ProviderSettings,
    params: Mapping[str, Any],
    reference_asset: Optional[str],
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "preset": parse_enum(params.get("preset"), LOOP_PRESETS, "ecom"),
        "background_mode": parse_enum(params.get("background_mode"), LOOP_BACKGROUNDS, "studio_glass"),
        "element": parse_enum(params.get("element"), LOOP_ELEMENTS, "mixed"),
        "particles": parse_bool(params.get("particles"), True),
        "particle_style": parse_enum(params.get("particle_style"), LOOP_PARTICLE_STYLES, "mixed"),
        "width": parse_integer(params.get("width"), 720, 512, 1080),
        "height": parse_integer(params.get("height"), 1280, 512, 1920),
        "fps": parse_integer(params.get("fps"), 24, 12, 60),
        "scenes": parse_integer(params.get("scenes"), 5, 3, 10),
        "seconds_per_scene": clamp_number(params.get("seconds_per_scene"), 1, 0.6, 3, 0.1),
        "motion_intensity": clamp_number(params.get("motion_intensity"), 0.9, 0, 1, 0.01),
        "loop_fade": clamp_number(params.get("loop_fade"), 0.35, 0.1, 0.8, 0.01),
        "with_product": parse_bool(params.get("with_product"), False),
        "remove_bg": parse_bool(params.get("remove_bg"), True),
        "product_image": parse_optional_text(params.get("product_image") or reference_asset),
        "title": parse_text(params.get("title"), "MERSE", 100),
        "subtitle": parse_text(params.get("subtitle"), "Loop Ads Engine", 140),
        "text_anim": parse_enum(params.get("text_anim"), LOOP_TEXT_ANIMS, "fade"),
        "reflection": parse_bool(params.get("reflection"), True),
        "reflection_strength": clamp_number(params.get("reflection_strength"), 0.22, 0, 0.8, 0.01),
        "palette_mode": parse_enum(params.get("palette_mode"), LOOP_PALETTE_MODES, "auto"),
        "manual_colors": parse_optional_text(params.get("manual_colors"), 200),
        "product_scale": clamp_number(params.get("product_scale"), 0.58, 0.2, 0.9, 0.01),
        "product_x": clamp_number(params.get("product_x"), 0.64, 0, 1, 0.01),
        "product_y": clamp_number(params.get("product_y"), 0.5, 0, 1, 0.01),
        "seed": parse_integer(params.get("seed"), 0, 0, 2_147_483_647),
        "batch_count": parse_integer(params.get("batch_count"), 1, 1, 8),
        "batch_start": parse_integer(params.get("batch_start"), 0, 0, 9999),
    }
    if payload["with_product"] and not payload["product_image"]:
        raise InvalidGenerationRequestError("'product_image' is required when 'with_product' is enabled")
    return payload


@dataclass
class ProviderCatalog:
    """Provider entries per resource; the first entry of a resource is its default."""

    entries: dict[ResourceKind, dict[str, ProviderSettings]] = field(default_factory=dict)

    def register(self, entry: ProviderSettings) -> None:
        self.entries.setdefault(entry.resource, {})[entry.name] = entry

    def resolve(self, resource: ResourceKind, provider: Optional[str] = None) -> ProviderSettings:
        providers = self.entries.get(resource) or {}
        if not providers:
            raise InvalidGenerationRequestError(f"No provider configured for '{resource.value}'")
        if provider is None or not provider.strip():
            return next(iter(providers.values()))
        entry = providers.get(provider.strip().lower())
        if entry is None:
            allowed = ", ".join(providers)
            raise InvalidGenerationRequestError(
                f"Unknown provider '{provider}' for {resource.value} (expected one of: {allowed})"
            )
        return entry

    def lookup(self, resource: Optional[str], name: Optional[str]) -> Optional[ProviderSettings]:
        """Entry for a stored job record, or None when it is no longer registered."""
        try:
            kind = ResourceKind(resource) if resource else None
        except ValueError:
            return None
        if kind is None or not name:
            return None
        return (self.entries.get(kind) or {}).get(name)


def build_default_catalog(settings: Settings) -> ProviderCatalog:
    token = settings.replicate_token
    catalog = ProviderCatalog()

    # video: the first registered entry is the default provider
    catalog.register(ProviderSettings(
        name="veo",
        resource=ResourceKind.VIDEO,
        model=first_non_empty(settings.REPLICATE_VEO_MODEL),
        version=settings.REPLICATE_VEO_MODEL_VERSION,
        model_env="REPLICATE_VEO_MODEL",
        token=token,
        poll_interval_seconds=2.5,
        max_attempts=40,
        duration_range=DurationRange(4, 8, 2, 6),
        allowed_durations=(4, 6, 8),
        prompt_suffix="Realistic cinematic look, organic grain.",
        build_input=build_video_input,
    ))
    catalog.register(ProviderSettings(
        name="sora",
        resource=ResourceKind.VIDEO,
        model=first_non_empty(settings.REPLICATE_SORA_MODEL),
        version=settings.REPLICATE_SORA_MODEL_VERSION,
        model_env="REPLICATE_SORA_MODEL",
        token=token,
        poll_interval_seconds=3.0,
        max_attempts=45,
        duration_range=DurationRange(6, 20, 2, 12),
        prompt_suffix="Coherent physics, cinematic lighting.",
        build_input=build_video_input,
    ))
    catalog.register(ProviderSettings(
        name="merse",
        resource=ResourceKind.VIDEO,
        model=first_non_empty(settings.REPLICATE_MERSE_VIDEO_MODEL, settings.REPLICATE_MERSE_MODEL),
        version=first_non_empty(
            settings.REPLICATE_MERSE_VIDEO_MODEL_VERSION, settings.REPLICATE_MERSE_MODEL_VERSION
        ) or None,
        model_env="REPLICATE_MERSE_VIDEO_MODEL",
        token=token,
        poll_interval_seconds=2.5,
        max_attempts=35,
        duration_range=DurationRange(4, 20, 2, 12),
        prompt_suffix="Official Merse identity, cosmic particles, neon glow.",
        build_input=build_video_input,
    ))

    catalog.register(ProviderSettings(
        name="flux",
        resource=ResourceKind.IMAGE,
        model=first_non_empty(settings.REPLICATE_FLUX_MODEL),
        version=settings.REPLICATE_FLUX_MODEL_VERSION,
        model_env="REPLICATE_FLUX_MODEL",
        token=token,
        poll_interval_seconds=2.0,
        max_attempts=30,
        default_aspect="1:1",
        aspect_whitelist=IMAGE_ASPECTS,
        build_input=build_image_input,
    ))
    catalog.register(ProviderSettings(
        name="merse",
        resource=ResourceKind.IMAGE,
        model=first_non_empty(settings.REPLICATE_MERSE_MODEL),
        version=settings.REPLICATE_MERSE_MODEL_VERSION,
        model_env="REPLICATE_MERSE_MODEL",
        token=token,
        poll_interval_seconds=2.0,
        max_attempts=30,
        default_aspect="1:1",
        aspect_whitelist=IMAGE_ASPECTS,
        prompt_suffix="Merse aesthetic, cosmic neon palette.",
        build_input=build_image_input,
    ))

    catalog.register(ProviderSettings(
        name="site-html",
        resource=ResourceKind.SITE,
        model=first_non_empty(settings.REPLICATE_SITE_MODEL),
        version=settings.REPLICATE_SITE_MODEL_VERSION,
        model_env="REPLICATE_SITE_MODEL",
        token=token,
        poll_interval_seconds=3.0,
        max_attempts=60,
        build_input=build_site_input,
    ))

    catalog.register(ProviderSettings(
        name="loop-ads",
        resource=ResourceKind.LOOP_ADS,
        model=first_non_empty(settings.REPLICATE_LOOP_ADS_MODEL, settings.REPLICATE_MERSE_MODEL),
        version=first_non_empty(
            settings.REPLICATE_LOOP_ADS_MODEL_VERSION,
            settings.REPLICATE_MERSE_MODEL_VERSION,
        ) or None,
        model_env="REPLICATE_LOOP_ADS_MODEL",
        token=settings.loop_ads_token,
        token_env="REPLICATE_LOOP_ADS_API_TOKEN",
        adapter=ADAPTER_LOOP_ADS,
        poll_interval_seconds=3.0,
        max_attempts=60,
        default_aspect="9:16",
        config_echo=LOOP_CONFIG_ECHO,
        build_input=build_loop_ads_input,
    ))

    return catalog
