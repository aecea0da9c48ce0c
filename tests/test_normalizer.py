# tests/test_normalizer.py

import json

import pytest

from compare_backend.config import PROMPT_VARIANTS
from compare_backend.errors import ErrorCode, PipelineError
from compare_backend.normalizer import (
    ValidResult, ViolationList, degraded_result, invert_naming_convention, map_naming_convention,
    normalize, pad_actions, parse_lenient, remap_severity, strip_code_fences, to_ui_result, validate,
)

from fakes import model_output

FULL = PROMPT_VARIANTS["full"]
SHORT = PROMPT_VARIANTS["short"]


def test_parse_lenient_strips_json_fences():
    """
    Tests that fenced model output parses to the same object as the bare JSON.
    """
    # Input: valid JSON wrapped in a ```json fence
    payload = model_output()
    raw = json.dumps(payload, indent=2)
    fenced = f"```json\n{raw}\n```"

    # Action + Assert: both spellings parse to the same object
    assert parse_lenient(fenced) == parse_lenient(raw) == payload


def test_strip_code_fences_handles_plain_fence():
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'


def test_parse_lenient_extracts_object_from_prose():
    text = 'Sure! Here is the comparison: {"summary": "ok", "n": 2} Let me know.'
    assert parse_lenient(text) == {"summary": "ok", "n": 2}


def test_parse_lenient_rejects_non_json():
    with pytest.raises(PipelineError) as excinfo:
        parse_lenient("I could not watch the videos.")
    assert excinfo.value.code == ErrorCode.NON_JSON


def test_validate_reports_every_violation():
    obj = model_output()
    del obj["summary"]
    obj["actions"] = ["only one"]
    obj["per_video"]["A"]["score"] = "90"

    checked = validate(obj, FULL)

    assert isinstance(checked, ViolationList)
    assert any(v.startswith("summary") for v in checked.violations)
    assert any(v.startswith("actions") for v in checked.violations)
    assert any(v.startswith("per_video.A.score") for v in checked.violations)


def test_validate_applies_variant_limits():
    # Six items are too many for the full prompt; "critical" is outside the short vocabulary.
    too_long = validate(model_output(timeline_len=6), FULL)
    assert isinstance(too_long, ViolationList)
    assert any("at most 5" in v for v in too_long.violations)

    critical = validate(model_output(timeline_len=1, severity="critical"), SHORT)
    assert isinstance(critical, ViolationList)
    assert any("timeline.0.gap.severity" in v for v in critical.violations)

    assert isinstance(validate(model_output(timeline_len=1, severity="critical"), FULL), ValidResult)


def test_naming_convention_round_trip_keeps_key_set():
    original = model_output()
    camel = map_naming_convention(original)

    assert "perVideo" in camel and "improvementSummary" in camel
    assert "spokenExcerpt" in camel["timeline"][0]["A"]
    assert invert_naming_convention(camel) == original


def test_naming_convention_keeps_private_keys():
    assert map_naming_convention({"_key_clips": {"at_time": 1}}) == {"_key_clips": {"atTime": 1}}


def test_remap_severity():
    assert remap_severity("critical") == "high"
    assert remap_severity("Medium") == "medium"
    assert remap_severity("none") == "low"
    assert remap_severity(None) == "low"


def test_pad_actions_always_returns_three():
    assert pad_actions([]) == ["", "", ""]
    assert pad_actions(["a"]) == ["a", "", ""]
    assert pad_actions(["a", "b", "c", "d"]) == ["a", "b", "c"]


def test_to_ui_result_maps_to_camel_case_contract():
    checked = validate(model_output(timeline_len=2, severity="critical"), FULL)
    result = to_ui_result(checked, embed_aspect_tags=True)

    assert len(result.actions) == 3
    assert result.diff[0].note == "[HOOK] B opens with the result"
    entry = result.timeline[0]
    assert entry.severity == "high"
    assert entry.gap["severity"] == "high"
    assert entry.A["spokenExcerpt"] == "You need this in your kitchen"
    assert entry.label_a == "00:00-00:03"
    assert entry.tip == "Show the product in the first second"

    dumped = result.model_dump(by_alias=True)
    assert set(dumped) >= {"summary", "perVideo", "diff", "actions", "timeline", "improvementSummary"}


def test_to_ui_result_without_aspect_tags():
    result = to_ui_result(validate(model_output(), FULL), embed_aspect_tags=False)
    assert result.diff[0].note == "B opens with the result"


def test_normalize_returns_degraded_fallback_on_failure():
    outcome = normalize(json.dumps(model_output(actions=2)), FULL)

    assert not outcome.ok
    assert outcome.error_code == ErrorCode.SCHEMA
    assert outcome.fallback is not None
    assert outcome.fallback.actions == ["", "", ""]
    assert "Schema violations" in outcome.fallback.improvement_summary


def test_normalize_non_json_keeps_code():
    outcome = normalize("no json here", FULL)
    assert outcome.error_code == ErrorCode.NON_JSON
    assert outcome.violations


def test_degraded_result_lists_first_violations():
    result = degraded_result([f"v{i}" for i in range(7)])
    assert result.improvement_summary.endswith("(+2 more)")
    assert result.per_video.A.score == 0
