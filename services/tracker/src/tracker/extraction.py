"""
Extraction client and response parsing for job-posting imports.

The client performs one round-trip to Gemini and returns its raw text. The
parser pulls a single JSON object out of that text, tolerating prose before
and after it, and maps it onto the application fields.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from tracker.errors import ParseError, ServiceError

LOGGER = logging.getLogger("tracker.extraction")

DEFAULT_GEMINI_MODEL = "gemini-flash-latest"
DEFAULT_EXTRACTION_TIMEOUT_SECONDS = 60.0


class ExtractionClient(Protocol):
    def generate(self, prompt: str) -> str: ...


class GeminiExtractionClient:
    """Gemini-backed ExtractionClient. The SDK client is created on first use."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = DEFAULT_GEMINI_MODEL,
        timeout_seconds: float = DEFAULT_EXTRACTION_TIMEOUT_SECONDS,
    ) -> None:
        self.api_key = (api_key or "").strip() or None
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._client: genai.Client | None = None

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self.api_key:
                raise ServiceError("GEMINI_API_KEY is not set")
            self._client = genai.Client(
                api_key=self.api_key,
                http_options=genai_types.HttpOptions(timeout=int(self.timeout_seconds * 1000)),
            )
        return self._client

    def generate(self, prompt: str) -> str:
        client = self._get_client()
        try:
            response = client.models.generate_content(model=self.model, contents=prompt)
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise ServiceError(f"Gemini request failed: {exc}") from exc

        text = response.text
        if not text:
            raise ServiceError("Gemini returned an empty response")
        LOGGER.debug(
            json.dumps({"event": "extraction_response", "model": self.model, "chars": len(text)})
        )
        return text


@dataclass
class ExtractedApplication:
    company_name: str
    job_title: str | None
    location: str | None
    source_url: str
    status: str
    apply_time: str | None
    soft_skills: str | None
    skills: str | None


def extract_json_object(raw_text: str) -> dict[str, Any]:
    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise ParseError("Extraction response did not contain a JSON object")

    try:
        payload = json.loads(raw_text[start : end + 1])
    except RecursionError as exc:
        raise ParseError("Extraction response is nested too deeply") from exc
    except json.JSONDecodeError:
        payload = _scan_for_object(raw_text, start)
    if not isinstance(payload, dict):
        raise ParseError("Extraction response did not contain a JSON object")
    return payload


def _scan_for_object(raw_text: str, start: int) -> dict[str, Any] | None:
    # Prose around the object may contain braces of its own.
    decoder = json.JSONDecoder()
    position = start
    while position != -1:
        try:
            candidate, _ = decoder.raw_decode(raw_text, position)
        except RecursionError as exc:
            raise ParseError("Extraction response is nested too deeply") from exc
        except json.JSONDecodeError:
            candidate = None
        if isinstance(candidate, dict):
            return candidate
        position = raw_text.find("{", position + 1)
    return None


def _string_or_none(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def parse_extraction_response(raw_text: str, source_url: str) -> ExtractedApplication:
    payload = extract_json_object(raw_text)
    return ExtractedApplication(
        company_name=_string_or_none(payload, "companyName") or "",
        job_title=_string_or_none(payload, "jobTitle"),
        location=_string_or_none(payload, "location"),
        source_url=_string_or_none(payload, "sourceUrl") or source_url,
        status=_string_or_none(payload, "status") or "applied",
        apply_time=_string_or_none(payload, "applyTime"),
        soft_skills=_string_or_none(payload, "softSkills"),
        skills=_string_or_none(payload, "skills"),
    )
