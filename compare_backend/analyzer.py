"""
Client for the external single-video analyzer, and the mapping that fuses
two single-video analyses into one comparison result.
"""

import asyncio
import logging
import math
import os
import re
from typing import Any, Dict, List, Optional

import requests

from compare_backend.config import (
    KEY_CLIPS_ENABLED, REQUEST_TIMEOUT, SINGLE_ANALYZER_BASE_URL, SINGLE_ANALYZER_TIMELINE_MAX, UPLOAD_DIR,
)
from compare_backend.errors import ErrorCode, PipelineError
from compare_backend.models import (
    ComparisonResult, DiffEntry, KeyClip, PerVideo, Source, TimelineEntry, UploadSource, VideoScore,
)
from compare_backend.normalizer import pad_actions, remap_severity
from compare_backend.schemas import FabContext


PILLAR_ASPECTS = {
    "hook_0_3s": "hook",
    "display_clarity": "product_display",
    "creator_trust": "trust",
    "cta_effectiveness": "cta",
}
TIMELINE_PHASES = ("hook", "trust", "desire", "cta")
GRADES = {"S", "A", "B", "C", "D"}


def _num(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return number if math.isfinite(number) else 0


def _fmt(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _timeline_of(pd: Dict[str, Any]) -> List[Dict[str, Any]]:
    timeline = pd.get("timeline")
    return [t for t in timeline if isinstance(t, dict)] if isinstance(timeline, list) else []


# --- Mapping ---

def pick_highlights(pd: Dict[str, Any]) -> List[str]:
    pillars = _dict(pd.get("pillars"))
    ranked = sorted(
        ((k, v) for k, v in pillars.items() if isinstance(v, (int, float)) and not isinstance(v, bool)),
        key=lambda kv: kv[1],
        reverse=True,
    )[:2]
    out = [f"Strong {k}: {_fmt(v)}" for k, v in ranked]
    good = [t for t in _timeline_of(pd) if _num(t.get("score")) >= 8][:2]
    out += [f"Good {t.get('phase') or 'segment'} ({t.get('segment') or ''})" for t in good]
    return out[:3]


def pick_issues(pd: Dict[str, Any]) -> List[str]:
    bad = [
        t for t in _timeline_of(pd)
        if (t.get("severity") and str(t["severity"]).lower() != "none") or _num(t.get("score")) <= 6
    ][:3]
    out = [t.get("issue") or f"Weak {t.get('phase') or 'segment'} ({t.get('segment') or ''})" for t in bad]
    penalties = _dict(pd.get("flags")).get("penalties")
    if len(out) < 2 and isinstance(penalties, list) and penalties:
        out += [str(p) for p in penalties[:2 - len(out)]]
    return out[:3]


def build_diff(pa: Dict[str, Any], pb: Dict[str, Any]) -> List[DiffEntry]:
    out = []
    pillars_a = _dict(pa.get("pillars"))
    pillars_b = _dict(pb.get("pillars"))
    for key, aspect in PILLAR_ASPECTS.items():
        a, b = _num(pillars_a.get(key)), _num(pillars_b.get(key))
        delta = a - b
        if abs(delta) >= 2:
            direction = "higher" if delta > 0 else "lower"
            out.append(DiffEntry(aspect=aspect, note=f"A {direction} by {_fmt(abs(delta))} ({_fmt(a)} vs {_fmt(b)})"))
    sa = _num(_dict(pa.get("overview")).get("score"))
    sb = _num(_dict(pb.get("overview")).get("score"))
    if abs(sa - sb) >= 5:
        out.append(DiffEntry(aspect="overall", note=f"Overall score gap {_fmt(abs(sa - sb))} ({_fmt(sa)} vs {_fmt(sb)})"))
    return out[:6]


def build_actions(pa: Dict[str, Any], pb: Dict[str, Any]) -> List[str]:
    def pick(rec: Any) -> str:
        if not isinstance(rec, dict):
            return ""
        oral = _dict(rec.get("examples")).get("oral")
        oral = oral[0] if isinstance(oral, list) and oral else {}
        return rec.get("solution") or rec.get("problem") or (oral.get("text") if isinstance(oral, dict) else "") or ""

    actions = []
    for pd in (pa, pb):
        recs = pd.get("recommendations")
        for rec in recs if isinstance(recs, list) else []:
            text = pick(rec)
            if text and len(actions) < 3:
                actions.append(text)
    return pad_actions(actions)


def pair_timeline(pa: Dict[str, Any], pb: Dict[str, Any]) -> List[TimelineEntry]:
    def by_phase(timeline: List[Dict[str, Any]], phase: str) -> Dict[str, Any]:
        return next((t for t in timeline if str(t.get("phase") or "").lower() == phase), {})

    la, lb = _timeline_of(pa), _timeline_of(pb)
    out = []
    for phase in TIMELINE_PHASES:
        a, b = by_phase(la, phase), by_phase(lb, phase)
        severity = remap_severity(a.get("severity") or b.get("severity") or "low")
        hint = a.get("fix_hint") or b.get("fix_hint") or ""
        out.append(TimelineEntry(
            A=a, B=b,
            gap={"aspect": phase, "severity": severity, "hint": hint},
            label_a=a.get("t") or a.get("phase") or None,
            label_b=b.get("t") or b.get("phase") or None,
            description=(a.get("issue") or b.get("issue") or "")[:160],
            severity=severity,
            tip=hint,
        ))
    return out[:SINGLE_ANALYZER_TIMELINE_MAX]


def key_clips(pd: Dict[str, Any]) -> List[KeyClip]:
    """Classify up to 8 timeline segments by shot type."""
    clips = []
    for t in _timeline_of(pd)[:8]:
        at = t.get("t") if isinstance(t.get("t"), str) else ""
        screen_text = t.get("screen_text") if isinstance(t.get("screen_text"), str) else ""
        visual = str(t.get("visual_cue") or "").lower()
        if screen_text:
            shot = "text-overlay"
        elif re.search(r"screen|record", visual):
            shot = "screen-record"
        elif re.search(r"hand|hold", visual):
            shot = "product-in-hand"
        elif "macro" in visual:
            shot = "macro"
        else:
            shot = "close-up"
        clips.append(KeyClip(at=at, shot=shot, sub=screen_text))
    return clips


def _score_of(pd: Dict[str, Any]) -> int:
    return max(0, min(100, int(round(_num(_dict(pd.get("overview")).get("score"))))))


def _grade_of(pd: Dict[str, Any]) -> Optional[str]:
    grade = _dict(pd.get("overview")).get("grade")
    return grade if grade in GRADES else None


def map_singles_to_tabs(
    pa: Dict[str, Any],
    pb: Dict[str, Any],
    fab: Optional[FabContext] = None,
    with_key_clips: bool = KEY_CLIPS_ENABLED,
) -> ComparisonResult:
    """Fuse two single-video analyses (``parsed_data``) into one comparison result."""
    pa, pb = _dict(pa), _dict(pb)
    sa, sb = _score_of(pa), _score_of(pb)
    ga, gb = _grade_of(pa), _grade_of(pb)
    sum_a = str(_dict(pa.get("overview")).get("summary") or "")[:250]
    sum_b = str(_dict(pb.get("overview")).get("summary") or "")[:250]
    fab_part = f"FAB: {fab.summary}" if fab and fab.summary else ""
    summary = (
        f"A: {sa}{f' ({ga})' if ga else ''}. B: {sb}{f' ({gb})' if gb else ''}. "
        f"{fab_part} A: {sum_a} B: {sum_b}"
    )[:400]

    clips = None
    if with_key_clips:
        clips_a, clips_b = key_clips(pa), key_clips(pb)
        if clips_a or clips_b:
            clips = {"A": clips_a, "B": clips_b}

    return ComparisonResult(
        summary=summary,
        per_video=PerVideo(
            A=VideoScore(score=sa, grade=ga, highlights=pick_highlights(pa), issues=pick_issues(pa)),
            B=VideoScore(score=sb, grade=gb, highlights=pick_highlights(pb), issues=pick_issues(pb)),
        ),
        diff=build_diff(pa, pb),
        actions=build_actions(pa, pb),
        timeline=pair_timeline(pa, pb),
        improvement_summary="",
        key_clips=clips,
    )


def map_single_error_to_code(error) -> str:
    """Collapse a single-analyzer error (exception or code string) into a pipeline code."""
    text = error if isinstance(error, str) else getattr(error, "code", None)
    if not isinstance(text, str):
        text = str(error)
    if re.search(r"INVALID_URL|UNSUPPORTED_HOST", text, re.IGNORECASE):
        return ErrorCode.INVALID_URL
    if re.search(r"TOO_LARGE", text, re.IGNORECASE):
        return ErrorCode.TOO_LARGE
    if re.search(r"TIMEOUT", text, re.IGNORECASE):
        return ErrorCode.TIMEOUT
    if re.search(r"PARSE_FAIL|SCHEMA", text, re.IGNORECASE):
        return ErrorCode.SCHEMA
    return ErrorCode.UNKNOWN


# --- HTTP client ---

class SingleAnalyzerClient:
    """Calls the single-video analyzer service over HTTP."""

    def __init__(self, base_url: str = SINGLE_ANALYZER_BASE_URL, upload_dir: str = UPLOAD_DIR,
                 timeout: float = REQUEST_TIMEOUT, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.upload_dir = upload_dir
        self.timeout = timeout
        self.session = session or requests.Session()

    def _check(self, response: requests.Response) -> Dict[str, Any]:
        try:
            body = _dict(response.json())
        except ValueError:
            body = {}
        if not response.ok:
            code = body.get("code") or body.get("errorCode") or ErrorCode.UNKNOWN
            raise PipelineError(map_single_error_to_code(str(code)), f"Single analyzer returned {response.status_code}: {code}")
        return body

    def _post(self, path: str, **kwargs) -> Dict[str, Any]:
        if not self.base_url:
            raise PipelineError(ErrorCode.UNKNOWN, "SINGLE_ANALYZER_BASE_URL is not set.")
        try:
            response = self.session.post(f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise PipelineError(ErrorCode.TIMEOUT, f"Single analyzer timed out: {e}") from e
        except requests.RequestException as e:
            raise PipelineError(ErrorCode.UNKNOWN, f"Could not connect to the single analyzer: {e}") from e
        return self._check(response)

    def analyze_url(self, url: str) -> Dict[str, Any]:
        return self._post("/api/videos/analyze_url", json={"url": url})

    def analyze_upload(self, file_key: str) -> Dict[str, Any]:
        path = os.path.join(self.upload_dir, file_key)
        with open(path, "rb") as f:
            files = {"video": (os.path.basename(path), f, "video/mp4")}
            return self._post("/api/videos/upload", files=files)

    async def call_single_url(self, url: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self.analyze_url, url)

    async def call_single_upload(self, file_key: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self.analyze_upload, file_key)

    async def analyze(self, source: Source) -> Dict[str, Any]:
        """The ``parsed_data`` of one single-video analysis."""
        if isinstance(source, UploadSource):
            body = await self.call_single_upload(source.file_key)
        else:
            body = await self.call_single_url(source.url)
        return _dict(_dict(body.get("analysisResult")).get("parsed_data"))

    async def compare_via_single_analyzer(self, source_a: Source, source_b: Source,
                                          fab: Optional[FabContext] = None) -> ComparisonResult:
        logging.info("📝 Comparing through the single analyzer")
        pa, pb = await asyncio.gather(self.analyze(source_a), self.analyze(source_b))
        return map_singles_to_tabs(pa, pb, fab)
