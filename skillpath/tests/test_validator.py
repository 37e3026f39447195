"""
JSON extraction, schema validation and repair-output coercion.
"""
from __future__ import annotations

import json

import pytest

from skillpath.agents.assessment_agent.schemas import AssessmentResult, ModuleType
from skillpath.agents.assessment_agent.validator import (
    coerce_assessment,
    detect_assessment,
    extract_json,
    iter_json_candidates,
    normalize_candidate,
    validate,
)
from skillpath.tests.fakes import fenced, valid_assessment


# ===========================================================================
# Extraction
# ===========================================================================

def test_extract_from_fenced_block_inside_prose() -> None:
    text = "Here is your result:\n\n" + fenced({"level": 2}) + "\n\nGood luck!"
    assert extract_json(text) == {"level": 2}


def test_extract_from_unlabelled_fence() -> None:
    text = "```\n{\"level\": 5}\n```"
    assert extract_json(text) == {"level": 5}


def test_extract_without_fence_uses_largest_brace_span() -> None:
    text = 'noise {"a": 1} more noise {"level": 3, "nested": {"x": "}"}} tail'
    assert extract_json(text) == {"level": 3, "nested": {"x": "}"}}


def test_latest_fenced_block_wins() -> None:
    text = fenced({"draft": True}) + "\nCorrected:\n" + fenced({"draft": False})
    candidates = list(iter_json_candidates(text))
    assert candidates[0] == {"draft": False}
    assert {"draft": True} in candidates


@pytest.mark.parametrize(
    "text",
    [None, 42, "", "no json here", "```json\n{broken\n```", '{"level": 3', "[1, 2, 3]"],
)
def test_extract_never_raises_and_returns_none(text) -> None:
    assert extract_json(text) is None


def test_truncated_stream_buffer_is_not_detected() -> None:
    full = fenced(valid_assessment())
    assert detect_assessment(full[: len(full) // 2]) is None
    assert detect_assessment(full) is not None


def test_unmatched_brace_in_prose_does_not_hide_later_object() -> None:
    payload = valid_assessment()
    text = "Use { for dicts. " + json.dumps(payload)
    assert extract_json(text) == payload
    assert detect_assessment(text) is not None


def test_truncated_block_followed_by_complete_block_is_detected() -> None:
    full = fenced(valid_assessment())
    text = "Here is your path:\n" + full[:60] + "\n\n" + full
    result = detect_assessment(text)
    assert result is not None
    assert result.level == 4


# ===========================================================================
# Validation
# ===========================================================================

def test_valid_payload_passes() -> None:
    outcome = validate(valid_assessment())
    assert outcome.success
    assert isinstance(outcome.value, AssessmentResult)
    assert outcome.value.level == 4
    assert [m.type for m in outcome.value.learning_modules] == [
        ModuleType.article, ModuleType.video, ModuleType.project,
    ]


def test_validation_collects_all_violations() -> None:
    payload = valid_assessment()
    payload["level"] = 0
    payload["confidence"] = 1.5
    payload["learningModules"][0]["type"] = "podcast"
    outcome = validate(payload)
    assert not outcome.success
    assert outcome.value is None
    joined = "\n".join(outcome.errors)
    assert len(outcome.errors) >= 3
    assert "level" in joined
    assert "confidence" in joined
    assert "learningModules.0.type" in joined


def test_non_object_root_is_rejected() -> None:
    outcome = validate(["not", "an", "object"])
    assert not outcome.success
    assert outcome.errors == ["root: expected a JSON object"]


@pytest.mark.parametrize("count", [2, 7])
def test_module_count_must_be_in_range(count: int) -> None:
    payload = valid_assessment()
    base = payload["learningModules"][1]
    payload["learningModules"] = [dict(base, id=f"m{i}") for i in range(count)]
    assert not validate(payload).success


def test_duplicate_module_ids_are_rejected() -> None:
    payload = valid_assessment()
    payload["learningModules"][2]["id"] = "m1"
    outcome = validate(payload)
    assert not outcome.success
    assert any("duplicate module ids" in e for e in outcome.errors)


@pytest.mark.parametrize(("level", "ok"), [(4, True), (4.0, True), (4.5, False), ("4", False), (True, False)])
def test_level_must_be_a_real_integer(level, ok: bool) -> None:
    payload = valid_assessment()
    payload["level"] = level
    outcome = validate(payload)
    assert outcome.success is ok
    if ok:
        assert outcome.value.level == 4
        assert isinstance(outcome.value.level, int)


def test_unknown_module_key_rejected_but_unknown_top_level_key_ignored() -> None:
    payload = valid_assessment()
    payload["generatorNotes"] = "ignored"
    assert validate(payload).success

    payload["learningModules"][0]["rating"] = 5
    assert not validate(payload).success


@pytest.mark.parametrize(
    ("duration", "ok"),
    [("15 min", True), ("2 hours", True), ("1h", True), ("about 2 weeks", True), ("soon", False), ("", False)],
)
def test_duration_labels(duration: str, ok: bool) -> None:
    payload = valid_assessment()
    payload["learningModules"][1]["duration"] = duration
    assert validate(payload).success is ok


def test_objectives_and_outline_bounds() -> None:
    payload = valid_assessment()
    payload["learningModules"][0]["objectives"] = ["only one"]
    assert not validate(payload).success
    payload["learningModules"][0]["objectives"] = ["read docs", "write code"]
    payload["learningModules"][0]["outline"] = ["intro", "setup", "build", "ship"]
    assert validate(payload).success


def test_modules_key_is_normalised() -> None:
    payload = valid_assessment()
    payload["modules"] = payload.pop("learningModules")
    assert not validate(payload).success
    assert validate(normalize_candidate(payload)).success
    assert detect_assessment(fenced(payload)) is not None


# ===========================================================================
# Coercion
# ===========================================================================

def test_coerce_fills_defaults_and_pads_modules() -> None:
    candidate = {
        "level": 3,
        "confidence": 0.6,
        "rationale": "Knows the basics.",
        "learningModules": [{"title": "Loops", "type": "lecture", "durationMin": 25}],
    }
    result = coerce_assessment(candidate)
    assert result is not None
    assert result.reasoning == "Knows the basics."
    assert [m.id for m in result.learning_modules] == ["m1", "m2", "m3"]
    first = result.learning_modules[0]
    assert first.type is ModuleType.article
    assert first.duration == "25 min"
    assert first.title == "Loops"


def test_coerce_accepts_modules_alias_and_default_duration() -> None:
    candidate = {
        "level": 7,
        "confidence": 0.9,
        "modules": [{"id": "a"}, {"id": "b"}, {"id": "c"}],
    }
    result = coerce_assessment(candidate)
    assert result is not None
    assert [m.title for m in result.learning_modules] == ["Module 1", "Module 2", "Module 3"]
    assert all(m.duration == "10 min" for m in result.learning_modules)


@pytest.mark.parametrize(
    "candidate",
    [
        None,
        "text",
        {"level": 3, "confidence": 0.5},
        {"level": 3, "confidence": 0.5, "learningModules": []},
        {"confidence": 0.5, "learningModules": [{"title": "x"}]},
        {"level": 11, "confidence": 0.5, "learningModules": [{"title": "x"}]},
    ],
)
def test_coerce_gives_up_on_unrecoverable_input(candidate) -> None:
    assert coerce_assessment(candidate) is None


def test_detect_round_trips_through_json_dump() -> None:
    result = detect_assessment("prose\n" + fenced(valid_assessment()))
    dumped = result.model_dump(mode="json", by_alias=True, exclude_none=True)
    assert detect_assessment(json.dumps(dumped)) == result
