"""
Client for the multimodal model: media upload, prompt composition and the
single structured-output call.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from compare_backend.config import (
    GOOGLE_API_KEY, INLINE_MEDIA_MAX_BYTES, MAX_NOTES_CHARS, MODEL_ID, MODEL_MAX_OUTPUT_TOKENS,
    MODEL_TEMPERATURE, UPLOAD_POLL_INTERVAL,
)
from compare_backend.errors import ErrorCode, PipelineError
from compare_backend.models import Source, UploadSource
from compare_backend.schemas import FabContext
from compare_backend.toolchain import ProbeResult


@dataclass(frozen=True)
class MediaHandle:
    """A file the model can read: either an uploaded URI or inline bytes."""
    mime_type: str
    uri: Optional[str] = None
    data: Optional[bytes] = None

    def to_part(self) -> types.Part:
        if self.uri:
            return types.Part.from_uri(file_uri=self.uri, mime_type=self.mime_type)
        return types.Part.from_bytes(data=self.data, mime_type=self.mime_type)


def trim_string(value: Optional[str], max_length: int) -> Optional[str]:
    if not value:
        return None
    if len(value) <= max_length:
        return value
    return value[:max_length - 3] + "..."


def trim_list(items: Optional[Sequence[str]], max_items: int, max_length: int) -> List[str]:
    return [trim_string(item, max_length) or "" for item in (items or [])[:max_items]]


def video_meta(source: Source, probe: Optional[ProbeResult]) -> Dict[str, Any]:
    """Per-video metadata block appended to the prompt."""
    size = probe.estimated_size_bytes if probe else None
    is_upload = isinstance(source, UploadSource)
    return {
        "type": source.type,
        "urlOrFile": source.file_key if is_upload else source.url,
        "sizeMB": round(size / 1024 / 1024) if size else None,
        "title": probe.title if probe else None,
        "desc": probe.description if probe else None,
        "userNotes": source.notes,
    }


def compose_prompt(prompt: str, fab: Optional[FabContext], meta_a: Dict[str, Any], meta_b: Dict[str, Any]) -> str:
    """Append FAB context and per-video metadata as JSON, every field length-capped."""
    fab = fab or FabContext()
    trimmed_fab = {
        "product_name": trim_string(fab.product_name, 100) or "N/A",
        "features": trim_list(fab.features, 5, 100),
        "advantages": trim_list(fab.advantages, 5, 100),
        "benefits": trim_list(fab.benefits, 5, 100),
        "note": trim_string(fab.note, 100),
    }

    def trim_meta(meta: Dict[str, Any]) -> Dict[str, Any]:
        return {
            **meta,
            "title": trim_string(meta.get("title"), 200),
            "desc": trim_string(meta.get("desc"), 300),
            "userNotes": trim_string(meta.get("userNotes"), MAX_NOTES_CHARS),
        }

    full_prompt = (
        f"{prompt}\n\n"
        f"FAB_JSON:\n{json.dumps(trimmed_fab, indent=2, ensure_ascii=False)}\n\n"
        f"VIDEO_A_META:\n{json.dumps(trim_meta(meta_a), indent=2, ensure_ascii=False)}\n\n"
        f"VIDEO_B_META:\n{json.dumps(trim_meta(meta_b), indent=2, ensure_ascii=False)}"
    )
    logging.info(f"📝 Prompt size: {len(full_prompt.encode('utf-8'))} bytes")
    return full_prompt


def _state_name(file) -> str:
    state = getattr(file, "state", None)
    return getattr(state, "name", None) or str(state or "")


class InferenceClient:
    """Thin async wrapper around the google-genai client."""

    def __init__(
        self,
        api_key: str = GOOGLE_API_KEY,
        model_id: str = MODEL_ID,
        client: Optional[genai.Client] = None,
        poll_interval: float = UPLOAD_POLL_INTERVAL,
        inline_max_bytes: int = INLINE_MEDIA_MAX_BYTES,
    ):
        self.api_key = api_key
        self.model_id = model_id
        self.poll_interval = poll_interval
        self.inline_max_bytes = inline_max_bytes
        self._client = client

    @property
    def client(self) -> genai.Client:
        # Created on first use so the app can start without an API key.
        if self._client is None:
            if not self.api_key:
                raise PipelineError(ErrorCode.UNKNOWN, "GOOGLE_GENERATIVE_AI_API_KEY is not set.")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def upload_media(self, path: str, mime_type: str = "video/mp4") -> MediaHandle:
        size = os.path.getsize(path)
        if self.inline_max_bytes and size <= self.inline_max_bytes:
            with open(path, "rb") as f:
                return MediaHandle(mime_type=mime_type, data=f.read())

        start = time.monotonic()
        try:
            file = await self.client.aio.files.upload(file=path, config={"mime_type": mime_type})
            while _state_name(file) == "PROCESSING":
                await asyncio.sleep(self.poll_interval)
                file = await self.client.aio.files.get(name=file.name)
        except genai_errors.APIError as e:
            raise PipelineError(ErrorCode.UPLOAD_FAILED, f"Upload of {os.path.basename(path)} failed: {e}") from e

        state = _state_name(file)
        if state != "ACTIVE":
            raise PipelineError(ErrorCode.UPLOAD_FAILED, f"File upload failed with state: {state}")
        logging.info(f"✅ Uploaded {os.path.basename(path)} in {(time.monotonic() - start) * 1000:.0f}ms")
        return MediaHandle(mime_type=file.mime_type or mime_type, uri=file.uri)

    async def infer(self, prompt: str, handles: Sequence[MediaHandle], max_output_tokens: int = MODEL_MAX_OUTPUT_TOKENS) -> str:
        """
        Issue one generate call carrying the prompt and media.

        The JSON response mime type is only a hint to the model; callers
        must parse the text defensively.
        """
        parts = [types.Part.from_text(text=prompt)] + [h.to_part() for h in handles]
        start = time.monotonic()
        response = await self.client.aio.models.generate_content(
            model=self.model_id,
            contents=[types.Content(role="user", parts=parts)],
            config=types.GenerateContentConfig(
                temperature=MODEL_TEMPERATURE,
                response_mime_type="application/json",
                max_output_tokens=max_output_tokens,
            ),
        )
        text = response.text or ""
        logging.info(f"✅ Model answered in {(time.monotonic() - start) * 1000:.0f}ms ({len(text)} chars)")
        if not text.strip():
            raise PipelineError(ErrorCode.NON_JSON, "AI returned an empty response.")
        return text

    async def ping(self) -> Dict[str, Any]:
        start = time.monotonic()
        response = await self.client.aio.models.generate_content(
            model=self.model_id,
            contents="Reply with the single word: pong",
            config=types.GenerateContentConfig(max_output_tokens=16),
        )
        return {
            "model": self.model_id,
            "latencyMs": int((time.monotonic() - start) * 1000),
            "reply": (response.text or "").strip(),
        }
