"""
sanitizer.py - soft content hygiene for validated learning modules.

Runs only AFTER validator.py has accepted the payload. Nothing here rejects a
module: a risky field is dropped or rewritten and the module survives.

Policy:
  1. resourceUrl must be a public http(s) URL (no localhost, *.local, private or
     loopback IPs, dotless hosts, embedded credentials). If an allowlist is given
     the URL must appear in it verbatim (after trimming). Otherwise it is dropped.
  2. searchKeywords keeps only multi-word, non-generic phrases, deduplicated and
     clamped to MAX_KEYWORDS. When fewer than MIN_KEYWORDS remain, phrases are
     synthesized from the module title until the minimum holds.
"""
from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, Optional, Sequence
from urllib.parse import urlsplit

from skillpath.agents.assessment_agent.schemas import (
    MAX_KEYWORDS,
    MIN_KEYWORDS,
    ModuleItem,
)

logger = logging.getLogger(__name__)

_BLOCKED_HOST_SUFFIXES = (".local", ".localhost", ".internal", ".lan", ".home.arpa")

# Single words that carry no search value on their own
GENERIC_TERMS = frozenset({
    "learn", "learning", "beginner", "beginners", "basics", "basic", "intro",
    "introduction", "tutorial", "tutorials", "course", "courses", "lesson",
    "lessons", "guide", "video", "videos", "article", "articles", "quiz",
    "project", "projects", "online", "free", "best", "how", "to", "the",
    "a", "an", "and", "for", "of", "in", "on", "with", "skill", "skills",
    "module", "modules", "study", "practice", "training",
})

_FALLBACK_TEMPLATES = (
    "{title} tutorial",
    "{title} for beginners",
    "{title} step by step",
    "{title} practical examples",
    "{title} explained",
    "{title} exercises",
    "{title} {type} guide",
)


# ---------------------------------------------------------------------------
# URL policy
# ---------------------------------------------------------------------------

def is_likely_public_http_url(url: str) -> bool:
    """True when url is http(s) and its host looks publicly routable."""
    if not isinstance(url, str) or not url.strip():
        return False
    try:
        parts = urlsplit(url.strip())
        host = (parts.hostname or "").lower().rstrip(".")
        _ = parts.port  # raises ValueError on a malformed port
    except ValueError:
        return False
    if parts.scheme not in ("http", "https") or not host:
        return False
    if parts.username is not None or parts.password is not None:
        return False
    if host == "localhost" or host.endswith(_BLOCKED_HOST_SUFFIXES):
        return False
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return "." in host
    return ip.is_global


def _keep_url(url: Optional[str], allowset: Optional[set[str]]) -> Optional[str]:
    if url is None:
        return None
    trimmed = url.strip()
    if not is_likely_public_http_url(trimmed):
        return None
    if allowset is not None and trimmed not in allowset:
        return None
    return trimmed


# ---------------------------------------------------------------------------
# Keyword policy
# ---------------------------------------------------------------------------

def is_meaningful_keyword(phrase: str) -> bool:
    """Multi-word and not made up entirely of generic terms."""
    tokens = phrase.lower().split()
    if len(tokens) < 2:
        return False
    return not all(t in GENERIC_TERMS for t in tokens)


def _dedupe(phrases: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for p in phrases:
        cleaned = " ".join(p.split())
        key = cleaned.lower()
        if cleaned and key not in seen:
            seen.add(key)
            out.append(cleaned)
    return out


def _fallback_keywords(module: ModuleItem) -> list[str]:
    title = " ".join(module.title.split())
    return [
        tpl.format(title=title, type=module.type.value)
        for tpl in _FALLBACK_TEMPLATES
    ]


def clamp_keywords(module: ModuleItem) -> list[str]:
    """Return MIN_KEYWORDS..MAX_KEYWORDS meaningful phrases for module."""
    supplied = [k for k in (module.search_keywords or []) if isinstance(k, str)]
    kept = [k for k in _dedupe(supplied) if is_meaningful_keyword(k)][:MAX_KEYWORDS]
    if len(kept) >= MIN_KEYWORDS:
        return kept
    for phrase in _dedupe(kept + _fallback_keywords(module)):
        if len(kept) >= MIN_KEYWORDS:
            break
        if phrase not in kept and is_meaningful_keyword(phrase):
            kept.append(phrase)
    return kept


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def sanitize_modules(
    modules: Sequence[ModuleItem],
    allowlist: Optional[Sequence[str]] = None,
) -> list[ModuleItem]:
    """
    Apply URL and keyword policy to each module; input objects are not mutated.
    allowlist=None means no allowlist; an empty list allows no URL at all.
    """
    allowset = None if allowlist is None else {u.strip() for u in allowlist if u and u.strip()}
    out: list[ModuleItem] = []
    dropped_urls = 0
    for module in modules:
        url = _keep_url(module.resource_url, allowset)
        if module.resource_url is not None and url is None:
            dropped_urls += 1
        out.append(
            module.model_copy(
                update={"resource_url": url, "search_keywords": clamp_keywords(module)},
            )
        )
    if dropped_urls:
        logger.info("Sanitizer dropped resource URLs count=%d modules=%d", dropped_urls, len(out))
    return out
