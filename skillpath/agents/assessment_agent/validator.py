"""
validator.py - extract, normalise and validate assessment JSON from free text.

The generator is prompted to end its answer with a fenced ```json block, but in
practice the object arrives wrapped in prose, split across stream chunks, fenced
without a language tag, or not fenced at all. This module is pure: no I/O, no
session access, nothing here raises on bad input.

  iter_json_candidates() - every parseable JSON object in the text, best first
  extract_json()         - first candidate or None
  validate()             - schema check, collecting ALL violations
  detect_assessment()    - candidates -> normalise -> validate, first success wins
  coerce_assessment()    - best-effort rebuild of near-valid repair output
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from pydantic import ValidationError

from skillpath.agents.assessment_agent.schemas import (
    MIN_MODULES,
    AssessmentResult,
    ModuleType,
)

logger = logging.getLogger(__name__)

_FENCED_RE = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\r?\n?([\s\S]*?)```")
_DEFAULT_DURATION = "10 min"


@dataclass(frozen=True)
class ValidationOutcome:
    success: bool
    value: Optional[AssessmentResult] = None
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def _span_end(text: str, start: int) -> Optional[int]:
    """End index of the balanced {...} opening at start, or None if it never closes."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def _balanced_brace_spans(text: str) -> list[tuple[int, int]]:
    """
    Return (start, end) spans of outermost balanced {...} regions.

    An opening brace that never closes (stray prose, a truncated stream) does
    not hide later objects: scanning restarts at the next "{". Braces inside
    JSON string literals are ignored.
    """
    spans: list[tuple[int, int]] = []
    covered_until = 0
    pos = text.find("{")
    while pos != -1:
        if pos >= covered_until:
            end = _span_end(text, pos)
            if end is not None:
                spans.append((pos, end))
                covered_until = end
        pos = text.find("{", pos + 1)
    return spans


def _raw_candidates(text: str) -> Iterator[str]:
    # Fenced blocks, latest first: a repair answer is appended after the prose
    fenced = [m.group(1).strip() for m in _FENCED_RE.finditer(text)]
    for body in reversed(fenced):
        if body:
            yield body
    spans = _balanced_brace_spans(text)
    spans.sort(key=lambda s: s[1] - s[0], reverse=True)
    for start, end in spans:
        yield text[start:end]


def iter_json_candidates(text: Any) -> Iterator[dict]:
    """Yield every JSON object that parses out of text, best candidate first."""
    if not isinstance(text, str) or not text:
        return
    seen: set[str] = set()
    for raw in _raw_candidates(text):
        if raw in seen:
            continue
        seen.add(raw)
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, ValueError, RecursionError):
            continue
        if isinstance(parsed, dict):
            yield parsed


def extract_json(text: Any) -> Optional[dict]:
    """Return the best JSON object embedded in text, or None. Never raises."""
    return next(iter_json_candidates(text), None)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def normalize_candidate(obj: dict) -> dict:
    """Rename a PRD-style top-level 'modules' list to 'learningModules'."""
    if isinstance(obj.get("learningModules"), list):
        return dict(obj)
    if isinstance(obj.get("modules"), list):
        out = {k: v for k, v in obj.items() if k != "modules"}
        out["learningModules"] = obj["modules"]
        return out
    return dict(obj)


def _format_error(err: dict) -> str:
    path = ".".join(str(p) for p in err.get("loc", ()))
    return f"{path}: {err['msg']}" if path else err["msg"]


def validate(obj: Any) -> ValidationOutcome:
    """
    Schema-check obj against AssessmentResult / ModuleItem.
    All violations are collected so callers can log complete diagnostics.
    """
    if not isinstance(obj, dict):
        return ValidationOutcome(success=False, errors=["root: expected a JSON object"])
    try:
        value = AssessmentResult.model_validate(obj)
    except ValidationError as exc:
        return ValidationOutcome(
            success=False,
            errors=[_format_error(e) for e in exc.errors()],
        )
    return ValidationOutcome(success=True, value=value)


def detect_assessment(text: Any) -> Optional[AssessmentResult]:
    """Return the first embedded object that validates, or None."""
    last_errors: list[str] = []
    for candidate in iter_json_candidates(text):
        outcome = validate(normalize_candidate(candidate))
        if outcome.success:
            return outcome.value
        last_errors = outcome.errors
    if last_errors:
        logger.debug("Assessment candidate rejected errors=%d first=%s", len(last_errors), last_errors[0])
    return None


# ---------------------------------------------------------------------------
# Coercion (repair output only)
# ---------------------------------------------------------------------------

def _non_blank(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _coerce_module(raw: dict, idx: int) -> dict:
    module = dict(raw)
    module.pop("durationMin", None)
    if not _non_blank(raw.get("id")):
        module["id"] = f"m{idx + 1}"
    if not _non_blank(raw.get("title")):
        module["title"] = f"Module {idx + 1}"
    if raw.get("type") not in {t.value for t in ModuleType}:
        module["type"] = ModuleType.article.value
    if not _non_blank(raw.get("duration")):
        minutes = raw.get("durationMin")
        if isinstance(minutes, (int, float)) and not isinstance(minutes, bool) and minutes == minutes:
            module["duration"] = f"{max(1, round(minutes))} min"
        else:
            module["duration"] = _DEFAULT_DURATION
    return module


def coerce_assessment(candidate: Any) -> Optional[AssessmentResult]:
    """
    Rebuild a near-valid object: fill module defaults, map 'rationale' to
    'reasoning', pad the module list to MIN_MODULES. Returns None when the
    rebuilt object still fails validation or has no modules at all.
    """
    if not isinstance(candidate, dict):
        return None
    normalized = normalize_candidate(candidate)
    raw_modules = [m for m in normalized.get("learningModules") or [] if isinstance(m, dict)]
    if not raw_modules:
        return None

    modules = [_coerce_module(m, i) for i, m in enumerate(raw_modules)]
    used_ids = {m["id"] for m in modules}
    while len(modules) < MIN_MODULES:
        filler = dict(modules[-1])
        n = len(modules) + 1
        while f"m{n}" in used_ids:
            n += 1
        filler["id"] = f"m{n}"
        used_ids.add(filler["id"])
        modules.append(filler)

    rebuilt: dict[str, Any] = {"learningModules": modules}
    for key in ("level", "confidence", "skill"):
        if key in normalized:
            rebuilt[key] = normalized[key]
    reasoning = normalized.get("reasoning", normalized.get("rationale"))
    if isinstance(reasoning, str):
        rebuilt["reasoning"] = reasoning

    outcome = validate(rebuilt)
    if not outcome.success:
        logger.debug("Coercion failed errors=%s", outcome.errors)
        return None
    logger.info("Coerced near-valid assessment modules=%d", len(modules))
    return outcome.value
