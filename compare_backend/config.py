"""
Configuration file for the two-video compare backend.
Contains all global constants, retry policies and prompt engineering templates.
"""

import os
from dataclasses import dataclass
from typing import Tuple

from compare_backend.retry import RetryPolicy


def _env_list(name: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(s.strip().lower() for s in raw.split(",") if s.strip())


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default) == "1"


# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# --- Server ---
CORS_ORIGINS = _env_list("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))

# --- Paths ---
VIDEO_CACHE_DIR = os.getenv("VIDEO_CACHE_DIR", "/var/tmp/video-cache")
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "/tmp/uploads")

# --- Limits ---
MAX_VIDEO_BYTES = 50 * 1024 * 1024
MAX_UPLOAD_MB = float(os.getenv("MAX_UPLOAD_MB", "50"))
MAX_NOTES_CHARS = 1500

# --- Hosts ---
ALLOWED_HOSTS = _env_list("ALLOWED_HOSTS", "tiktok.com,www.tiktok.com,vt.tiktok.com,vm.tiktok.com")
TIKTOK_API_ENDPOINTS = _env_list(
    "TIKTOK_API_ENDPOINTS",
    "api16-normal-c-useast1a.tiktokv.com,"
    "api16-normal-c-useast2a.tiktokv.com,"
    "api16-core-c-useast1a.tiktokv.com,"
    "api19-normal-c-useast1a.tiktokv.com,"
    "api22-normal-c-useast1a.tiktokv.com",
)

# --- External binaries ---
YT_DLP_PATH = os.getenv("YT_DLP_PATH", "yt-dlp")
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
YT_DLP_USER_AGENT = os.getenv(
    "YT_DLP_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

# --- Timeouts (seconds) ---
YT_DLP_TIMEOUT = float(os.getenv("YT_DLP_TIMEOUT", "60"))
YT_DLP_DOWNLOAD_TIMEOUT = float(os.getenv("YT_DLP_DOWNLOAD_TIMEOUT", "120"))
SANITIZE_TIMEOUT = float(os.getenv("SANITIZE_TIMEOUT", "60"))
UPLOAD_TIMEOUT = float(os.getenv("UPLOAD_TIMEOUT", "60"))
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "90"))
COMPARE_REQUEST_TIMEOUT = float(os.getenv("COMPARE_REQUEST_TIMEOUT", "90"))

# --- Retry policies ---
PROBE_RETRY = RetryPolicy(max_retries=1, backoff_base=1.5)
DOWNLOAD_RETRY = RetryPolicy(max_retries=1, backoff_base=1.5)
UPLOAD_RETRY = RetryPolicy(max_retries=1, backoff_base=1.5)
MODEL_RETRY = RetryPolicy(max_retries=2, backoff_base=1.8)

# --- Model ---
GOOGLE_API_KEY = os.getenv("GOOGLE_GENERATIVE_AI_API_KEY", "")
MODEL_ID = os.getenv("MODEL_ID", "gemini-2.5-pro")
MODEL_TEMPERATURE = float(os.getenv("MODEL_TEMPERATURE", "0.2"))
MODEL_MAX_OUTPUT_TOKENS = int(os.getenv("MODEL_MAX_OUTPUT_TOKENS", "2500"))
UPLOAD_POLL_INTERVAL = float(os.getenv("UPLOAD_POLL_INTERVAL", "1"))
INLINE_MEDIA_MAX_BYTES = int(os.getenv("INLINE_MEDIA_MAX_BYTES", "0"))
PROMPT_VERSION = "v2-fab"

# --- Speech recognition ---
ASR_ENABLED = _env_flag("ASR_ENABLED", "0")
ASR_CLI = os.getenv("ASR_CLI", "whisper")
ASR_MODEL = os.getenv("ASR_MODEL", "medium")
ASR_CONCURRENCY = int(os.getenv("ASR_CONCURRENCY", "1"))
ASR_TIMEOUT = float(os.getenv("ASR_TIMEOUT", "120"))

# --- Single analyzer ---
SINGLE_ANALYZER_BASE_URL = os.getenv("SINGLE_ANALYZER_BASE_URL", "")
COMPARE_MODE = os.getenv("COMPARE_MODE", "direct")
KEY_CLIPS_ENABLED = _env_flag("KEY_CLIPS_ENABLED", "1")
EMBED_ASPECT_TAGS = _env_flag("EMBED_ASPECT_TAGS", "1")

# --- Prompt Engineering Section ---

FULL_COMPARE_PROMPT = """You are a TikTok Shop coach. Compare Video A (to improve) vs Video B (Pro reference), using the confirmed FAB as ground truth.
STRICTLY RETURN JSON ONLY. Do not include prose, explanations, markdown, or code fences.
If unsure about any field, output "" or [] but DO NOT omit keys.

Identify clear differences in: hook (0-3s), product display/proof, trust/credibility, CTA clarity, visuals/pacing.
Produce concise, actionable recommendations tied to the provided FAB (features/advantages/benefits).

Scoring: Hook 40%, Product Display/Proof 25%, Trust/Credibility 20%, CTA 15%.
Grade bands: S=90-100, A=80-89, B=70-79, C=60-69, D<60.
Fatal rules: No hook within 3s caps at C. Poor visuals caps at D. No product within 5s caps at B.

OUTPUT SHAPE (snake_case keys, all required):
{
  "summary": string,
  "per_video": {"A": {"score": int 0-100, "grade": "S"|"A"|"B"|"C"|"D", "highlights": [string], "issues": [string]},
                "B": {same as A}},
  "diff": [{"aspect": "hook"|"trust"|"cta"|"visual"|"product_display", "note": string}],
  "actions": [string, string, string],
  "timeline": [{"A": SEGMENT, "B": SEGMENT, "gap": {"aspect": string, "severity": "low"|"medium"|"high"|"critical", "hint": string}}],
  "improvement_summary": string
}
SEGMENT = {"t": "mm:ss-mm:ss", "phase": "hook"|"trust"|"desire"|"cta", "score": int 0-100,
           "spoken_excerpt": string, "screen_text": string, "visual_cue": string,
           "severity": "low"|"medium"|"high"|"critical", "pillar_contrib": "hook"|"product_display"|"trust"|"cta",
           "issue": string, "fix_hint": string}
Return exactly 3 actions and at most 5 timeline entries.
"""

SHORT_COMPARE_PROMPT = """Compare Video A (to improve) vs Video B (reference) for TikTok Shop selling power.
RETURN ONE JSON OBJECT ONLY, no prose, no code fences. Use exactly these snake_case keys:
summary, per_video {A, B: score int 0-100, grade S|A|B|C|D, highlights[], issues[]},
diff [{aspect, note}], actions [exactly 3 strings],
timeline [at most 3 items of {A, B, gap}; A/B have t, phase, score, spoken_excerpt, screen_text,
visual_cue, severity low|medium|high, pillar_contrib, issue, fix_hint; gap has aspect, severity, hint],
improvement_summary.
"""


@dataclass(frozen=True)
class PromptVariant:
    """A prompt text plus the output limits it asks the model for."""
    name: str
    text: str
    timeline_max: int
    severity_vocab: Tuple[str, ...]


PROMPT_VARIANTS = {
    "full": PromptVariant(
        name="full",
        text=FULL_COMPARE_PROMPT,
        timeline_max=5,
        severity_vocab=("low", "medium", "high", "critical"),
    ),
    "short": PromptVariant(
        name="short",
        text=SHORT_COMPARE_PROMPT,
        timeline_max=3,
        severity_vocab=("low", "medium", "high"),
    ),
}

COMPARE_PROMPT_VARIANT = os.getenv("COMPARE_PROMPT_VARIANT", "full")
FALLBACK_PROMPT_VARIANT = "short"

# UI-facing severity tiers; everything above "high" collapses into it.
UI_SEVERITY_VOCAB = ("low", "medium", "high")
SINGLE_ANALYZER_TIMELINE_MAX = 8


@dataclass(frozen=True)
class Settings:
    """Snapshot of the knobs the pipeline reads at run time."""
    cache_dir: str = VIDEO_CACHE_DIR
    upload_dir: str = UPLOAD_DIR
    max_video_bytes: int = MAX_VIDEO_BYTES
    max_upload_bytes: int = int(MAX_UPLOAD_MB * 1024 * 1024)
    allowed_hosts: Tuple[str, ...] = ALLOWED_HOSTS
    api_endpoints: Tuple[str, ...] = TIKTOK_API_ENDPOINTS
    request_timeout: float = REQUEST_TIMEOUT
    compare_request_timeout: float = COMPARE_REQUEST_TIMEOUT
    upload_timeout: float = UPLOAD_TIMEOUT
    probe_retry: RetryPolicy = PROBE_RETRY
    download_retry: RetryPolicy = DOWNLOAD_RETRY
    upload_retry: RetryPolicy = UPLOAD_RETRY
    model_retry: RetryPolicy = MODEL_RETRY
    model_id: str = MODEL_ID
    compare_mode: str = COMPARE_MODE
    prompt_variant: str = COMPARE_PROMPT_VARIANT
    fallback_variant: str = FALLBACK_PROMPT_VARIANT
    embed_aspect_tags: bool = EMBED_ASPECT_TAGS
