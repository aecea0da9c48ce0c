"""
Turns raw model text into a ComparisonResult.

parse_lenient -> validate -> to_ui_result, with degraded_result as the
well-typed fallback when the output cannot be used.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from compare_backend.config import EMBED_ASPECT_TAGS, UI_SEVERITY_VOCAB, PromptVariant
from compare_backend.errors import ErrorCode, PipelineError
from compare_backend.models import (
    ComparisonResult, DiffEntry, PerVideo, TimelineEntry, VideoScore,
)
from compare_backend.schemas import CompareOutput, TimelineItemOutput


FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
DESCRIPTION_MAX = 160


@dataclass(frozen=True)
class ValidResult:
    data: CompareOutput


@dataclass(frozen=True)
class ViolationList:
    violations: List[str]


@dataclass
class NormalizeOutcome:
    result: Optional[ComparisonResult] = None
    violations: List[str] = field(default_factory=list)
    error_code: Optional[str] = None
    fallback: Optional[ComparisonResult] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


# --- Parsing ---

def strip_code_fences(text: str) -> str:
    return FENCE_PATTERN.sub("", text.strip()).strip()


def parse_lenient(text: str) -> Any:
    """
    Parse model text as JSON, tolerating code fences and surrounding prose.

    Tries the fence-stripped text first, then the span from the first ``{``
    to the last ``}``. Raises PipelineError(NON_JSON) when neither parses.
    """
    cleaned = strip_code_fences(text or "")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            pass
    raise PipelineError(ErrorCode.NON_JSON, "Model returned non-JSON output.")


# --- Validation ---

def _format_error(err: Dict[str, Any]) -> str:
    loc = ".".join(str(part) for part in err.get("loc", ())) or "<root>"
    return f"{loc}: {err.get('msg', 'invalid value')}"


def _variant_violations(obj: Dict[str, Any], variant: PromptVariant) -> List[str]:
    violations = []
    timeline = obj.get("timeline")
    if not isinstance(timeline, list):
        return violations
    if len(timeline) > variant.timeline_max:
        violations.append(f"timeline: at most {variant.timeline_max} items allowed, got {len(timeline)}")
    for i, item in enumerate(timeline):
        if not isinstance(item, dict):
            continue
        for part in ("A", "B", "gap"):
            record = item.get(part)
            if not isinstance(record, dict):
                continue
            severity = record.get("severity")
            if isinstance(severity, str) and severity not in variant.severity_vocab:
                violations.append(
                    f"timeline.{i}.{part}.severity: '{severity}' is not one of {', '.join(variant.severity_vocab)}"
                )
    return violations


def validate(obj: Any, variant: PromptVariant) -> Union[ValidResult, ViolationList]:
    """Check the parsed object against the output schema. Reports every violation."""
    violations: List[str] = []
    data = None
    try:
        data = CompareOutput.model_validate(obj)
    except ValidationError as e:
        violations.extend(_format_error(err) for err in e.errors())
    if isinstance(obj, dict):
        violations.extend(_variant_violations(obj, variant))
    if violations or data is None:
        return ViolationList(violations or ["<root>: invalid output"])
    return ValidResult(data)


# --- Naming convention ---

def snake_to_camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def camel_to_snake(key: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", lambda m: "_" + m.group(1).lower(), key)


def _rename_keys(obj: Any, rename) -> Any:
    if isinstance(obj, dict):
        return {
            (key if key.startswith("_") else rename(key)): _rename_keys(value, rename)
            for key, value in obj.items()
        }
    if isinstance(obj, list):
        return [_rename_keys(item, rename) for item in obj]
    return obj


def map_naming_convention(obj: Any) -> Any:
    """Deep snake_case -> camelCase key rename. Keys starting with ``_`` are kept."""
    return _rename_keys(obj, snake_to_camel)


def invert_naming_convention(obj: Any) -> Any:
    """Deep camelCase -> snake_case key rename, the inverse of map_naming_convention."""
    return _rename_keys(obj, camel_to_snake)


# --- UI mapping ---

def remap_severity(value: Optional[str]) -> str:
    severity = (value or "").strip().lower()
    if severity == "critical":
        return "high"
    return severity if severity in UI_SEVERITY_VOCAB else "low"


def pad_actions(actions: Sequence[str]) -> List[str]:
    return (list(actions) + ["", "", ""])[:3]


def describe_segment(item: TimelineItemOutput) -> str:
    """Short description of a paired segment: issues first, then the gap hint, then excerpts."""
    a, b, gap = item.A, item.B, item.gap
    if a.issue and b.issue:
        return f"A: {a.issue} | B: {b.issue}"[:DESCRIPTION_MAX]
    if a.issue or b.issue:
        return (a.issue or b.issue)[:DESCRIPTION_MAX]
    if gap.aspect and gap.hint:
        return f"[{gap.aspect.upper()}] {gap.hint}"[:DESCRIPTION_MAX]
    parts = []
    if a.spoken_excerpt:
        parts.append(f'A: "{a.spoken_excerpt[:30]}..."')
    if b.spoken_excerpt:
        parts.append(f'B: "{b.spoken_excerpt[:30]}..."')
    if a.screen_text:
        parts.append(f'Text: "{a.screen_text[:30]}..."')
    return " • ".join(parts)[:DESCRIPTION_MAX] or "Compare segment details"


def _timeline_entry(item: TimelineItemOutput) -> TimelineEntry:
    gap = map_naming_convention(item.gap.model_dump())
    gap["severity"] = remap_severity(item.gap.severity)
    return TimelineEntry(
        A=map_naming_convention(item.A.model_dump()),
        B=map_naming_convention(item.B.model_dump()),
        gap=gap,
        label_a=item.A.t or item.A.phase or None,
        label_b=item.B.t or item.B.phase or None,
        description=describe_segment(item),
        severity=gap["severity"],
        tip=item.A.fix_hint or item.B.fix_hint or item.gap.hint,
    )


def to_ui_result(valid: ValidResult, embed_aspect_tags: bool = EMBED_ASPECT_TAGS) -> ComparisonResult:
    data = valid.data
    return ComparisonResult(
        summary=data.summary,
        per_video=PerVideo(
            A=VideoScore(**data.per_video.A.model_dump()),
            B=VideoScore(**data.per_video.B.model_dump()),
        ),
        diff=[
            DiffEntry(
                aspect=d.aspect,
                note=f"[{d.aspect.upper()}] {d.note}" if embed_aspect_tags and d.aspect else d.note,
            )
            for d in data.diff
        ],
        actions=pad_actions(data.actions),
        timeline=[_timeline_entry(item) for item in data.timeline],
        improvement_summary=data.improvement_summary,
    )


def degraded_result(violations: Sequence[str]) -> ComparisonResult:
    """A well-typed placeholder result describing why the real one is missing."""
    listed = "; ".join(violations[:5])
    more = f" (+{len(violations) - 5} more)" if len(violations) > 5 else ""
    return ComparisonResult(
        summary="Comparison unavailable: the model output did not match the expected format.",
        per_video=PerVideo(A=VideoScore(score=0), B=VideoScore(score=0)),
        diff=[],
        actions=pad_actions([]),
        timeline=[],
        improvement_summary=f"Schema violations: {listed}{more}" if listed else "",
    )


def normalize(text: str, variant: PromptVariant, embed_aspect_tags: bool = EMBED_ASPECT_TAGS) -> NormalizeOutcome:
    try:
        obj = parse_lenient(text)
    except PipelineError as e:
        violations = [e.message]
        return NormalizeOutcome(violations=violations, error_code=e.code, fallback=degraded_result(violations))

    checked = validate(obj, variant)
    if isinstance(checked, ViolationList):
        logging.warning(f"⚠️ Model output failed validation with {len(checked.violations)} violation(s)")
        return NormalizeOutcome(
            violations=checked.violations,
            error_code=ErrorCode.SCHEMA,
            fallback=degraded_result(checked.violations),
        )
    return NormalizeOutcome(result=to_ui_result(checked, embed_aspect_tags))
