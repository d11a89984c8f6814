"""Tests for content hashing, tag normalization and auto-tagging."""

import pytest

from memory_intel.canonical import (
    DEFAULT_METADATA_TAGS,
    DEFAULT_TAG_ALIAS_MAP,
    auto_generate_tags,
    canonicalize_tag,
    compute_content_hash,
    infer_is_metadata,
    normalize_content_for_hash,
    normalize_tag,
    normalize_tags,
    parse_metadata_tags,
    parse_tag_alias_map,
)


class TestContentHash:
    def test_whitespace_and_case_insensitive_when_normalizing(self):
        assert compute_content_hash("Hello   World\n", True) == compute_content_hash("hello world", True)

    def test_case_sensitive_without_normalization(self):
        assert compute_content_hash("Hello World", False) != compute_content_hash("hello world", False)

    def test_trim_always_applies(self):
        assert compute_content_hash("  abc  ", False) == compute_content_hash("abc", False)

    def test_sha256_hex(self):
        h = compute_content_hash("abc", False)
        assert h == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_normalized_form(self):
        assert normalize_content_for_hash("  A\t\tB \n C ", True) == "a b c"
        assert normalize_content_for_hash("  A\t\tB  ", False) == "A\t\tB"


class TestTagNormalization:
    def test_canonicalize(self):
        assert canonicalize_tag("  Foo_Bar baz ") == "foo-bar-baz"
        assert canonicalize_tag("--edge--") == "edge"
        assert canonicalize_tag("   ") == ""

    def test_default_aliases(self):
        assert normalize_tag(" Next_JS ") == "next.js"
        assert normalize_tag("K8s") == "kubernetes"
        assert normalize_tag("postgres") == "postgresql"

    def test_empty_alias_map_disables_aliases(self):
        assert normalize_tag("k8s", alias_map={}) == "k8s"

    def test_dedup_preserves_first_seen_order(self):
        tags = ["Python", "python ", " ", "k8s", "kubernetes", "Rust"]
        assert normalize_tags(tags) == ["python", "kubernetes", "rust"]

    def test_none_is_empty(self):
        assert normalize_tags(None) == []

    def test_idempotent(self):
        once = normalize_tags(["Next JS", "K8S", "Machine_Learning"])
        assert normalize_tags(once) == once


class TestAliasMapParsing:
    def test_unset_returns_defaults(self):
        assert parse_tag_alias_map(None) == DEFAULT_TAG_ALIAS_MAP

    def test_override_merges_over_defaults(self):
        merged = parse_tag_alias_map('{"JS": "JavaScript", "k8s": "k8s-cluster"}')
        assert merged["js"] == "javascript"
        assert merged["k8s"] == "k8s-cluster"
        assert merged["nextjs"] == "next.js"

    @pytest.mark.parametrize("raw", [
        "not json",
        '["a", "b"]',
        '{"a": 1}',
        '{"a": "  "}',
        '{"ok": "fine", "bad": null}',
    ])
    def test_invalid_override_rejected_whole(self, raw):
        assert parse_tag_alias_map(raw) == DEFAULT_TAG_ALIAS_MAP


class TestAutoTags:
    def test_stages_in_order(self):
        content = (
            "Decided to use Python with FastAPI for the memory-intel service; "
            "fixed a bug in the pipeline."
        )
        assert auto_generate_tags(content) == ["python", "decision", "bug", "deployment", "memory-intel"]

    def test_capped_at_five(self):
        tags = auto_generate_tags("react typescript python rust docker kubernetes redis")
        assert tags == ["react", "typescript", "python", "rust", "docker"]

    def test_project_blocklist(self):
        assert auto_generate_tags("an end-to-end test of real-time sync") == ["testing"]

    def test_no_signal(self):
        assert auto_generate_tags("nothing to see here") == []

    def test_test_runner_keywords(self):
        tags = auto_generate_tags("Moved the suite from jest to vitest")
        assert "vitest" in tags
        assert "jest" in tags


class TestMetadataClassification:
    def test_default_metadata_tags(self):
        assert parse_metadata_tags(None) == set(DEFAULT_METADATA_TAGS)

    def test_custom_metadata_tags_are_normalized(self):
        assert parse_metadata_tags("Eval Run, , k8s") == {"eval-run", "kubernetes"}

    def test_explicit_flag_wins(self):
        assert infer_is_metadata(["golden-queries"], None, set(DEFAULT_METADATA_TAGS), explicit=False) is False
        assert infer_is_metadata([], None, set(DEFAULT_METADATA_TAGS), explicit=True) is True

    def test_tag_match(self):
        assert infer_is_metadata(["python", "goal-progress"], None, set(DEFAULT_METADATA_TAGS)) is True

    def test_metadata_mode_and_kind(self):
        tags = set(DEFAULT_METADATA_TAGS)
        assert infer_is_metadata([], {"mode": "Benchmark"}, tags) is True
        assert infer_is_metadata([], {"kind": "retrieval-regression-alert"}, tags) is True
        assert infer_is_metadata([], {"kind": "note", "mode": "daily"}, tags) is False

    def test_plain_memory(self):
        assert infer_is_metadata(["python"], {}, set(DEFAULT_METADATA_TAGS)) is False
