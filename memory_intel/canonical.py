"""Content canonicalization: hashing, tag normalization and auto-tagging.

Everything in this module is a pure function of its arguments. Callers that
need the install-wide behaviour (whitespace-normalized hashing, user alias
map, metadata tag list) read the matching setting from storage and pass the
parsed value in.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Pattern, Set, Tuple

logger = logging.getLogger(__name__)

MAX_AUTO_TAGS = 5

# ---------------------------------------------------------------------------
# Content hash
# ---------------------------------------------------------------------------

_WS_RE = re.compile(r"\s+")


def normalize_content_for_hash(content: str, normalize_whitespace: bool) -> str:
    """Trim; when *normalize_whitespace* is set also lowercase and collapse runs of whitespace."""
    if normalize_whitespace:
        return _WS_RE.sub(" ", content.lower()).strip()
    return content.strip()


def compute_content_hash(content: str, normalize_whitespace: bool) -> str:
    """SHA-256 hex digest of the normalized content."""
    normalized = normalize_content_for_hash(content, normalize_whitespace)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Tag normalization
# ---------------------------------------------------------------------------

DEFAULT_TAG_ALIAS_MAP: Dict[str, str] = {
    "nextjs": "next.js",
    "next-js": "next.js",
    "k8s": "kubernetes",
    "postgres": "postgresql",
}

_TAG_SEP_RE = re.compile(r"[ _]+")
_EDGE_HYPHEN_RE = re.compile(r"^-+|-+$")


def canonicalize_tag(raw: str) -> str:
    tag = raw.strip().lower()
    tag = _TAG_SEP_RE.sub("-", tag)
    return _EDGE_HYPHEN_RE.sub("", tag)


def parse_tag_alias_map(raw: Optional[str]) -> Dict[str, str]:
    """Parse a JSON alias-map override and merge it over the defaults.

    The override must be a JSON object of string to string whose keys and
    values are non-empty after canonicalization. Anything else is rejected
    as a whole and the defaults are returned.
    """
    merged = dict(DEFAULT_TAG_ALIAS_MAP)
    if not raw:
        return merged
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("Ignoring tags.alias_map (invalid JSON): %s", exc)
        return merged
    if not isinstance(parsed, dict):
        logger.warning("Ignoring tags.alias_map: expected an object, got %s", type(parsed).__name__)
        return merged

    override: Dict[str, str] = {}
    for key, value in parsed.items():
        if not isinstance(key, str) or not isinstance(value, str):
            logger.warning("Ignoring tags.alias_map: non-string entry %r -> %r", key, value)
            return merged
        ckey = canonicalize_tag(key)
        cvalue = canonicalize_tag(value)
        if not ckey or not cvalue:
            logger.warning("Ignoring tags.alias_map: empty entry %r -> %r", key, value)
            return merged
        override[ckey] = cvalue

    merged.update(override)
    return merged


def normalize_tag(tag: str, alias_map: Optional[Dict[str, str]] = None) -> str:
    """Canonical form of one tag, or ``""`` when nothing is left."""
    canonical = canonicalize_tag(tag)
    if not canonical:
        return ""
    aliases = DEFAULT_TAG_ALIAS_MAP if alias_map is None else alias_map
    return aliases.get(canonical, canonical)


def normalize_tags(
    tags: Optional[Iterable[str]],
    alias_map: Optional[Dict[str, str]] = None,
) -> List[str]:
    """Normalize, drop empties and dedupe while keeping first-seen order."""
    out: List[str] = []
    seen: Set[str] = set()
    for tag in tags or []:
        normalized = normalize_tag(tag, alias_map)
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        out.append(normalized)
    return out


# ---------------------------------------------------------------------------
# Auto-tagging
# ---------------------------------------------------------------------------

TECH_KEYWORDS: Set[str] = {
    "react", "typescript", "javascript", "python", "rust", "go", "java", "ruby",
    "sqlite", "postgres", "postgresql", "mysql", "mongodb", "redis", "dynamodb",
    "node", "nodejs", "deno", "bun", "express", "fastify", "nextjs", "remix",
    "vite", "webpack", "rollup", "esbuild", "turbopack",
    "docker", "kubernetes", "aws", "azure", "gcp", "vercel", "cloudflare",
    "graphql", "rest", "grpc", "websocket",
    "git", "github", "gitlab", "npm", "pnpm", "yarn",
    "vue", "svelte", "angular", "solid", "astro",
    "tailwind", "css", "html", "sass",
    "vitest", "pytest", "jest", "playwright", "cypress",
    "openai", "anthropic", "claude", "llm", "embeddings", "rag",
    "linux", "windows", "macos",
}

# Ordered: evaluated first to last, one tag per matching pattern.
TOPIC_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\b(?:decided|decision|chose|choosing|trade-?off)\b", re.I), "decision"),
    (re.compile(r"\b(?:bug|fix(?:ed)?|broke|broken|crash|error|issue)\b", re.I), "bug"),
    (re.compile(r"\b(?:architect(?:ure)?|design(?:ed)?|pattern|structure)\b", re.I), "architecture"),
    (re.compile(r"\b(?:lesson|learned|insight|takeaway|realization)\b", re.I), "lesson"),
    (re.compile(r"\b(?:config(?:uration)?|setting|env(?:ironment)?|\.env)\b", re.I), "config"),
    (re.compile(r"\b(?:perf(?:ormance)?|optimi[sz](?:e|ation)|slow|fast|latency|benchmark)\b", re.I), "performance"),
    (re.compile(r"\b(?:deploy(?:ment)?|ci/cd|pipeline|release|ship(?:ping)?)\b", re.I), "deployment"),
    (re.compile(r"\b(?:test(?:ing|s)?|spec|coverage|assertion|mock)\b", re.I), "testing"),
    (re.compile(r"\b(?:refactor(?:ing|ed)?|cleanup|reorgani[sz]e|restructure)\b", re.I), "refactor"),
    (re.compile(r"\b(?:secur(?:ity|e)|auth(?:entication)?|vulnerabilit(?:y|ies)|xss|csrf|injection)\b", re.I), "security"),
]

PROJECT_BLOCKLIST: Set[str] = {
    "built-in", "real-time", "re-use", "re-run", "pre-commit", "pre-build",
    "post-build", "non-null", "non-empty", "up-to-date", "end-to-end",
    "out-of-date", "day-to-day", "step-by-step", "case-by-case",
    "long-term", "short-term", "high-level", "low-level",
}

_WORD_SPLIT_RE = re.compile(r"[\s,.:;!?()\[\]{}\"'`/\\]+")
_PROJECT_RE = re.compile(r"\b([a-z][a-z0-9]*(?:-[a-z0-9]+)+)\b")


def auto_generate_tags(content: str) -> List[str]:
    """Derive up to five tags from *content*.

    Stages run in order and stop adding once the cap is reached:
    technology keywords, topic patterns, then kebab-case project names.
    """
    tags: List[str] = []

    def _add(tag: str) -> None:
        if len(tags) < MAX_AUTO_TAGS and tag not in tags:
            tags.append(tag)

    for word in _WORD_SPLIT_RE.split(content.lower()):
        if word in TECH_KEYWORDS:
            _add(word)

    for pattern, tag in TOPIC_PATTERNS:
        if len(tags) >= MAX_AUTO_TAGS:
            break
        if pattern.search(content):
            _add(tag)

    for match in _PROJECT_RE.finditer(content):
        if len(tags) >= MAX_AUTO_TAGS:
            break
        name = match.group(1).lower()
        if name in PROJECT_BLOCKLIST or not 3 <= len(name) <= 30:
            continue
        _add(name)

    return tags


# ---------------------------------------------------------------------------
# Metadata classification
# ---------------------------------------------------------------------------

DEFAULT_METADATA_TAGS: List[str] = [
    "benchmark-artifact",
    "golden-queries",
    "retrieval-regression",
    "goal-progress",
]

_METADATA_MODES = {"benchmark", "progress", "regression"}
_METADATA_KIND_MARKERS = ("retrieval-regression", "goal-progress", "benchmark", "alert")


def parse_metadata_tags(raw: Optional[str], alias_map: Optional[Dict[str, str]] = None) -> Set[str]:
    """Comma-separated tag list from settings, normalized; defaults when unset."""
    tags = [t.strip() for t in raw.split(",") if t.strip()] if raw else DEFAULT_METADATA_TAGS
    return set(normalize_tags(tags, alias_map))


def infer_is_metadata(
    tags: Iterable[str],
    metadata: Optional[Dict[str, Any]],
    metadata_tags: Set[str],
    explicit: Optional[bool] = None,
) -> bool:
    """Whether a memory holds bookkeeping content rather than user knowledge."""
    if explicit is not None:
        return explicit
    if any(tag in metadata_tags for tag in tags):
        return True

    meta = metadata or {}
    mode = meta.get("mode")
    if isinstance(mode, str) and mode.lower() in _METADATA_MODES:
        return True
    kind = meta.get("kind")
    if isinstance(kind, str):
        kind = kind.lower()
        if any(marker in kind for marker in _METADATA_KIND_MARKERS):
            return True
    return False
