# tests/test_analyzer.py

import asyncio

import pytest
import requests

from compare_backend.analyzer import (
    SingleAnalyzerClient, build_diff, key_clips, map_single_error_to_code, map_singles_to_tabs, pick_issues,
)
from compare_backend.errors import ErrorCode, PipelineError
from compare_backend.models import UploadSource, UrlSource
from compare_backend.schemas import FabContext

from fakes import FakeResponse, FakeSession


def parsed(score=72, grade="B", pillars=None, timeline=None, recommendations=None, penalties=None):
    return {
        "overview": {"score": score, "grade": grade, "summary": "Decent demo, slow start."},
        "pillars": pillars or {"hook_0_3s": 6, "display_clarity": 8, "creator_trust": 7, "cta_effectiveness": 5},
        "timeline": timeline if timeline is not None else [
            {"t": "00:00-00:03", "phase": "hook", "score": 5, "severity": "critical", "issue": "No hook",
             "fix_hint": "Open with the result", "visual_cue": "hand holding mop", "screen_text": ""},
            {"t": "00:03-00:08", "phase": "trust", "score": 9, "severity": "none", "visual_cue": "macro shot"},
            {"t": "00:08-00:12", "phase": "cta", "score": 8, "screen_text": "Tap the cart"},
        ],
        "recommendations": recommendations if recommendations is not None else [
            {"problem": "Slow hook", "solution": "Show the clean floor first"},
        ],
        "flags": {"penalties": penalties or []},
    }


def test_map_singles_to_tabs_pads_actions_and_pairs_phases():
    result = map_singles_to_tabs(parsed(), parsed(score=90, grade="S"), FabContext(summary="Cleans fast"))

    assert result.actions == ["Show the clean floor first", "Show the clean floor first", ""]
    assert [entry.gap["aspect"] for entry in result.timeline] == ["hook", "trust", "desire", "cta"]
    assert result.timeline[0].severity == "high"
    assert result.timeline[0].description == "No hook"
    assert result.per_video.A.score == 72 and result.per_video.B.grade == "S"
    assert result.summary.startswith("A: 72 (B). B: 90 (S). FAB: Cleans fast")


def test_map_singles_to_tabs_handles_empty_analyses():
    result = map_singles_to_tabs({}, {}, with_key_clips=True)

    assert result.actions == ["", "", ""]
    assert result.per_video.A.score == 0
    assert result.diff == []
    assert result.key_clips is None


def test_build_diff_reports_large_gaps_only():
    a = parsed(score=60, pillars={"hook_0_3s": 4, "display_clarity": 8, "creator_trust": 7, "cta_effectiveness": 5})
    b = parsed(score=80, pillars={"hook_0_3s": 9, "display_clarity": 9, "creator_trust": 7, "cta_effectiveness": 5})

    diff = build_diff(a, b)

    assert [(d.aspect, d.note) for d in diff] == [
        ("hook", "A lower by 5 (4 vs 9)"),
        ("overall", "Overall score gap 20 (60 vs 80)"),
    ]


def test_pick_issues_falls_back_to_penalties():
    pd = parsed(timeline=[], penalties=["No product in first 5s", "Muted audio", "Extra"])
    assert pick_issues(pd) == ["No product in first 5s", "Muted audio"]


def test_key_clips_classify_shots():
    clips = key_clips(parsed())
    assert [c.shot for c in clips] == ["product-in-hand", "macro", "text-overlay"]
    assert clips[2].sub == "Tap the cart"


def test_key_clips_are_dumped_under_private_key():
    result = map_singles_to_tabs(parsed(), parsed(), with_key_clips=True)
    dumped = result.model_dump(by_alias=True)
    assert len(dumped["_key_clips"]["A"]) == 3


@pytest.mark.parametrize("error, code", [
    ("UNSUPPORTED_HOST", ErrorCode.INVALID_URL),
    ("TOO_LARGE", ErrorCode.TOO_LARGE),
    ("UPSTREAM_TIMEOUT", ErrorCode.TIMEOUT),
    ("PARSE_FAIL", ErrorCode.SCHEMA),
    (RuntimeError("socket closed"), ErrorCode.UNKNOWN),
    (PipelineError(ErrorCode.TOO_LARGE), ErrorCode.TOO_LARGE),
])
def test_map_single_error_to_code(error, code):
    assert map_single_error_to_code(error) == code


def test_client_fuses_two_url_analyses():
    body = {"analysisResult": {"parsed_data": parsed()}}
    session = FakeSession({"/api/videos/analyze_url": FakeResponse(200, body)})
    client = SingleAnalyzerClient(base_url="http://analyzer.local/", session=session)

    result = asyncio.run(client.compare_via_single_analyzer(
        UrlSource(type="tiktok", url="https://www.tiktok.com/@a/video/1"),
        UrlSource(type="tiktok", url="https://www.tiktok.com/@b/video/2"),
    ))

    assert len(session.calls) == 2
    assert session.calls[0][0] == "http://analyzer.local/api/videos/analyze_url"
    assert len(result.actions) == 3


def test_client_uploads_file_for_upload_source(tmp_path):
    (tmp_path / "up_1_abc_a.mp4").write_bytes(b"\x00" * 8)
    session = FakeSession({"/api/videos/upload": FakeResponse(200, {"analysisResult": {"parsed_data": parsed()}})})
    client = SingleAnalyzerClient(base_url="http://analyzer.local", upload_dir=str(tmp_path), session=session)

    pd = asyncio.run(client.analyze(UploadSource(type="upload", file_key="up_1_abc_a.mp4")))

    assert pd["overview"]["score"] == 72
    assert "video" in session.calls[0][1]["files"]


def test_client_maps_service_errors():
    session = FakeSession({"/api/videos/analyze_url": FakeResponse(400, {"code": "UNSUPPORTED_HOST"})})
    client = SingleAnalyzerClient(base_url="http://analyzer.local", session=session)

    with pytest.raises(PipelineError) as excinfo:
        client.analyze_url("https://example.com/v")
    assert excinfo.value.code == ErrorCode.INVALID_URL


def test_client_maps_request_timeout():
    session = FakeSession({"/api/videos/analyze_url": requests.Timeout("read timed out")})
    client = SingleAnalyzerClient(base_url="http://analyzer.local", session=session)

    with pytest.raises(PipelineError) as excinfo:
        client.analyze_url("https://www.tiktok.com/@a/video/1")
    assert excinfo.value.code == ErrorCode.TIMEOUT


def test_client_requires_base_url():
    client = SingleAnalyzerClient(base_url="", session=FakeSession({}))
    with pytest.raises(PipelineError):
        client.analyze_url("https://www.tiktok.com/@a/video/1")


@pytest.mark.parametrize("body", [["unexpected"], "plain text", 42])
def test_client_tolerates_non_object_bodies(body):
    session = FakeSession({
        "/api/videos/analyze_url": FakeResponse(200, body),
        "/bad": FakeResponse(503, body),
    })
    client = SingleAnalyzerClient(base_url="http://analyzer.local", session=session)

    pd = asyncio.run(client.analyze(UrlSource(type="tiktok", url="https://www.tiktok.com/@a/video/1")))
    assert pd == {}

    with pytest.raises(PipelineError) as excinfo:
        client._post("/bad")
    assert excinfo.value.code == ErrorCode.UNKNOWN


def test_map_singles_to_tabs_tolerates_malformed_sections():
    odd = {
        "overview": "great",
        "pillars": [1, 2],
        "flags": {"penalties": "none"},
        "recommendations": [{"examples": "say hi"}, {"examples": {"oral": [{"text": "Say the price"}]}}],
    }

    result = map_singles_to_tabs(odd, parsed())

    assert result.per_video.A.score == 0
    assert result.per_video.A.highlights == []
    assert result.actions[0] == "Say the price"
