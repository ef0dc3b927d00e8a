from __future__ import annotations

from genflow.app.services.result_extraction import (
    IMAGE_EXTRACTOR,
    SITE_EXTRACTOR,
    VIDEO_EXTRACTOR,
    AnyUrlExtractor,
    ArrayNode,
    NumberLeaf,
    ObjectNode,
    StringLeaf,
    build_default_registry,
    iter_leaves,
    to_tree,
)


class TestToTree:
    def test_object_keys_sorted(self) -> None:
        tree = to_tree({"b": 1, "a": "x"})

        assert isinstance(tree, ObjectNode)
        assert [key for key, _ in tree.entries] == ["a", "b"]

    def test_nulls_dropped(self) -> None:
        tree = to_tree({"a": None, "b": [None, "x"]})

        assert tree == ObjectNode((("b", ArrayNode((StringLeaf("x"),))),))

    def test_booleans_are_not_numbers(self) -> None:
        tree = to_tree([True, 2])

        assert isinstance(tree, ArrayNode)
        assert not isinstance(tree.items[0], NumberLeaf)
        assert tree.items[1] == NumberLeaf(2.0)

    def test_array_items_inherit_key(self) -> None:
        leaves = list(iter_leaves(to_tree({"video": ["https://a/1", "https://a/2"]})))

        assert leaves == [("video", StringLeaf("https://a/1")), ("video", StringLeaf("https://a/2"))]


class TestVideoExtraction:
    def test_bare_string_output(self) -> None:
        media = VIDEO_EXTRACTOR.extract("https://replicate.delivery/abc/output.mp4")

        assert media.media_urls == ("https://replicate.delivery/abc/output.mp4",)

    def test_extension_ignores_query_string(self) -> None:
        media = VIDEO_EXTRACTOR.extract(["https://cdn.example.com/clip.webm?token=1"])

        assert media.media_urls == ("https://cdn.example.com/clip.webm?token=1",)

    def test_key_hint_and_cover(self) -> None:
        payload = {
            "video_url": "https://cdn.example.com/render/123",
            "thumbnail": "https://cdn.example.com/render/123.jpg",
            "duration": 8,
        }

        media = VIDEO_EXTRACTOR.extract(payload)

        assert media.media_urls == ("https://cdn.example.com/render/123",)
        assert media.cover_urls == ("https://cdn.example.com/render/123.jpg",)
        assert media.duration == 8.0

    def test_unrelated_urls_discarded(self) -> None:
        media = VIDEO_EXTRACTOR.extract({"logs": "https://replicate.com/p/abc", "status": "succeeded"})

        assert media.has_media is False
        assert media.cover_urls == ()

    def test_data_url(self) -> None:
        media = VIDEO_EXTRACTOR.extract({"output": "data:video/mp4;base64,AAAA"})

        assert media.media_urls == ("data:video/mp4;base64,AAAA",)

    def test_duplicates_removed(self) -> None:
        url = "https://cdn.example.com/a.mp4"
        media = VIDEO_EXTRACTOR.extract({"output": [url, url], "video": url})

        assert media.media_urls == (url,)

    def test_first_duration_wins(self) -> None:
        media = VIDEO_EXTRACTOR.extract({"a": {"seconds": 4}, "b": {"length": 10}, "video": "https://x/y.mp4"})

        assert media.duration == 4.0

    def test_extraction_is_key_order_independent(self) -> None:
        forward = {
            "poster": "https://cdn.example.com/p.jpg",
            "outputs": [{"video": "https://cdn.example.com/1.mp4"}, "https://cdn.example.com/2.mov"],
            "meta": {"duration": 6, "video_duration": 9},
        }
        backward = {
            "meta": {"video_duration": 9, "duration": 6},
            "outputs": [{"video": "https://cdn.example.com/1.mp4"}, "https://cdn.example.com/2.mov"],
            "poster": "https://cdn.example.com/p.jpg",
        }

        assert VIDEO_EXTRACTOR.extract(forward) == VIDEO_EXTRACTOR.extract(backward)


class TestImageExtraction:
    def test_bare_urls_without_extension_are_images(self) -> None:
        media = IMAGE_EXTRACTOR.extract(["https://cdn.example.com/a", "https://cdn.example.com/b"])

        assert media.media_urls == ("https://cdn.example.com/a", "https://cdn.example.com/b")

    def test_keyed_url_without_hint_is_ignored(self) -> None:
        media = IMAGE_EXTRACTOR.extract({"source": "https://example.com/page"})

        assert media.has_media is False


class TestSiteExtraction:
    def test_html_bundle(self) -> None:
        media = SITE_EXTRACTOR.extract({"site": "https://cdn.example.com/site/index.html"})

        assert media.media_urls == ("https://cdn.example.com/site/index.html",)


class TestRegistry:
    def test_loop_ads_accepts_any_url(self) -> None:
        registry = build_default_registry()

        media = registry.extract({"result": "https://cdn.example.com/render/42"}, "loop-ads", "loop_ads")

        assert media.media_urls == ("https://cdn.example.com/render/42",)

    def test_provider_registration_wins_over_resource_default(self) -> None:
        registry = build_default_registry()
        registry.register("veo", AnyUrlExtractor())

        media = registry.extract({"x": "https://cdn.example.com/anything"}, "veo", "video")

        assert media.has_media is True

    def test_unknown_resource_falls_back_to_video(self) -> None:
        registry = build_default_registry()

        assert registry.for_job(None, "hologram") is VIDEO_EXTRACTOR
