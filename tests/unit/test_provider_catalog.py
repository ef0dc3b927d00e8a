from __future__ import annotations

import pytest

from genflow.app.config import Settings
from genflow.app.domain.errors import InvalidGenerationRequestError
from genflow.app.domain.models import ResourceKind
from genflow.app.services.provider_catalog import (
    ADAPTER_LOOP_ADS,
    LOOP_CONFIG_ECHO,
    ProviderCatalog,
    build_default_catalog,
)


def create_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {"REPLICATE_API_TOKEN": "r8_test"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def catalog() -> ProviderCatalog:
    return build_default_catalog(create_settings())


class TestCatalogResolution:
    def test_first_registered_is_default(self, catalog: ProviderCatalog) -> None:
        assert catalog.resolve(ResourceKind.VIDEO).name == "veo"
        assert catalog.resolve(ResourceKind.IMAGE).name == "flux"
        assert catalog.resolve(ResourceKind.LOOP_ADS).name == "loop-ads"

    def test_named_provider(self, catalog: ProviderCatalog) -> None:
        assert catalog.resolve(ResourceKind.VIDEO, " Sora ").name == "sora"

    def test_unknown_provider_is_invalid(self, catalog: ProviderCatalog) -> None:
        with pytest.raises(InvalidGenerationRequestError) as exc_info:
            catalog.resolve(ResourceKind.VIDEO, "pika")
        assert "veo" in str(exc_info.value)

    def test_lookup_distinguishes_resources(self, catalog: ProviderCatalog) -> None:
        video = catalog.lookup("video", "merse")
        image = catalog.lookup("image", "merse")

        assert video is not None and video.resource == ResourceKind.VIDEO
        assert image is not None and image.resource == ResourceKind.IMAGE

    def test_lookup_unknown_returns_none(self, catalog: ProviderCatalog) -> None:
        assert catalog.lookup("audio", "veo") is None
        assert catalog.lookup("video", None) is None

    def test_poll_budgets(self, catalog: ProviderCatalog) -> None:
        veo = catalog.resolve(ResourceKind.VIDEO, "veo")
        assert (veo.max_attempts, veo.poll_interval_seconds) == (40, 2.5)


class TestMissingConfiguration:
    def test_missing_token_reported(self) -> None:
        catalog = build_default_catalog(create_settings(REPLICATE_API_TOKEN=None))

        assert catalog.resolve(ResourceKind.VIDEO).missing_configuration() == ["REPLICATE_API_TOKEN"]

    def test_missing_model_reported(self, catalog: ProviderCatalog) -> None:
        site = catalog.resolve(ResourceKind.SITE)
        assert site.missing_configuration() == ["REPLICATE_SITE_MODEL"]

    def test_loop_ads_token_chain(self) -> None:
        catalog = build_default_catalog(
            create_settings(REPLICATE_API_TOKEN=None, REPLICATE_MERSE_API_TOKEN="r8_merse")
        )
        entry = catalog.resolve(ResourceKind.LOOP_ADS)

        assert entry.token == "r8_merse"
        assert entry.adapter == ADAPTER_LOOP_ADS
        assert entry.missing_configuration() == []


class TestVideoInput:
    def test_veo_snaps_duration_to_allowed(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.VIDEO, "veo")

        payload = entry.build_input(entry, {"prompt": "a fox", "duration": 7}, None)

        assert payload["duration"] == 6
        assert payload["video_length"] == 6
        assert payload["resolution"] == "1080p"
        assert payload["prompt"].startswith("a fox | ")

    def test_vertical_veo_resolution(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.VIDEO, "veo")

        payload = entry.build_input(entry, {"prompt": "a fox", "aspect_ratio": "9:16"}, None)

        assert payload["aspect_ratio"] == "9:16"
        assert payload["resolution"] == "720x1280"

    def test_sora_clamps_and_steps_duration(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.VIDEO, "sora")

        assert entry.build_input(entry, {"prompt": "x", "duration": 99}, None)["duration"] == 20
        assert entry.build_input(entry, {"prompt": "x", "duration": 13}, None)["duration"] == 14
        assert entry.build_input(entry, {"prompt": "x"}, None)["duration"] == 12

    def test_prompt_required(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.VIDEO)

        with pytest.raises(InvalidGenerationRequestError):
            entry.build_input(entry, {"prompt": "   "}, None)

    def test_reference_asset_passed_as_image(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.VIDEO, "sora")

        payload = entry.build_input(entry, {"prompt": "x"}, "https://cdn.example.com/ref.png")

        assert payload["image"] == "https://cdn.example.com/ref.png"


class TestImageInput:
    def test_count_clamped(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.IMAGE)

        assert entry.build_input(entry, {"prompt": "x", "count": 10}, None)["num_outputs"] == 4
        assert entry.build_input(entry, {"prompt": "x"}, None)["num_outputs"] == 1

    def test_echo_excludes_prompt_and_images(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.IMAGE)
        payload = entry.build_input(entry, {"prompt": "x"}, "https://cdn.example.com/ref.png")

        echo = entry.echo(payload)

        assert "prompt" not in echo
        assert "image" not in echo
        assert echo["aspect_ratio"] == "1:1"


class TestLoopAdsInput:
    def test_defaults(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.LOOP_ADS)

        payload = entry.build_input(entry, {}, None)

        assert payload["preset"] == "ecom"
        assert payload["scenes"] == 5
        assert payload["fps"] == 24
        assert payload["with_product"] is False
        assert payload["title"] == "MERSE"

    def test_with_product_requires_product_image(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.LOOP_ADS)

        with pytest.raises(InvalidGenerationRequestError) as exc_info:
            entry.build_input(entry, {"with_product": "true"}, None)

        assert "product_image" in str(exc_info.value)

    def test_reference_asset_counts_as_product_image(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.LOOP_ADS)

        payload = entry.build_input(entry, {"with_product": True}, "https://cdn.example.com/bottle.png")

        assert payload["product_image"] == "https://cdn.example.com/bottle.png"

    def test_out_of_range_params_clamped(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.LOOP_ADS)

        payload = entry.build_input(
            entry,
            {"scenes": 50, "fps": 1, "seconds_per_scene": 0.734, "preset": "neon", "batch_count": 99},
            None,
        )

        assert payload["scenes"] == 10
        assert payload["fps"] == 12
        assert payload["seconds_per_scene"] == 0.7
        assert payload["preset"] == "ecom"
        assert payload["batch_count"] == 8

    def test_echo_uses_fixed_key_set(self, catalog: ProviderCatalog) -> None:
        entry = catalog.resolve(ResourceKind.LOOP_ADS)

        echo = entry.echo(entry.build_input(entry, {}, None))

        assert tuple(echo) == LOOP_CONFIG_ECHO
