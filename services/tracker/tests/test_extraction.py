from __future__ import annotations

from typing import Any

import httpx
import pytest
import tracker.extraction as extraction_module
from tracker.errors import ParseError, ServiceError
from tracker.extraction import GeminiExtractionClient, parse_extraction_response

pytestmark = pytest.mark.unit

SOURCE_URL = "https://jobs.example.com/postings/42"


def test_parse_tolerates_surrounding_noise() -> None:
    result = parse_extraction_response(
        'noise {"companyName":"Acme","skills":"Go,Rust"} trailing',
        SOURCE_URL,
    )

    assert result.company_name == "Acme"
    assert result.skills == "Go,Rust"
    assert result.soft_skills is None
    assert result.job_title is None
    assert result.status == "applied"
    assert result.source_url == SOURCE_URL


def test_parse_reads_fenced_model_output() -> None:
    raw = """```json
{
  "companyName": "Globex",
  "jobTitle": "Platform Engineer",
  "location": "Remote",
  "sourceUrl": "https://globex.example.com/careers/7",
  "status": "interview",
  "applyTime": null,
  "softSkills": "Ownership, Communication",
  "skills": "Kubernetes, Terraform"
}
```"""

    result = parse_extraction_response(raw, SOURCE_URL)

    assert result.company_name == "Globex"
    assert result.job_title == "Platform Engineer"
    assert result.location == "Remote"
    assert result.source_url == "https://globex.example.com/careers/7"
    assert result.status == "interview"
    assert result.apply_time is None
    assert result.soft_skills == "Ownership, Communication"


def test_parse_coerces_non_string_fields_to_defaults() -> None:
    result = parse_extraction_response(
        '{"companyName": 7, "jobTitle": ["x"], "status": null, "sourceUrl": 1, "skills": {}}',
        SOURCE_URL,
    )

    assert result.company_name == ""
    assert result.job_title is None
    assert result.status == "applied"
    assert result.source_url == SOURCE_URL
    assert result.skills is None


def test_parse_keeps_unknown_status_for_the_caller_to_validate() -> None:
    result = parse_extraction_response('{"companyName": "Acme", "status": "ghosted"}', SOURCE_URL)
    assert result.status == "ghosted"


def test_parse_recovers_object_when_prose_contains_braces() -> None:
    raw = 'Here you go {"companyName": "Initech"} hope this helps :}'
    assert parse_extraction_response(raw, SOURCE_URL).company_name == "Initech"


@pytest.mark.parametrize(
    "raw",
    [
        "no json here at all",
        "only a closing brace }",
        "inverted } then {",
        "{not valid json}",
        '["companyName", "Acme"]',
    ],
)
def test_parse_rejects_text_without_a_json_object(raw: str) -> None:
    with pytest.raises(ParseError):
        parse_extraction_response(raw, SOURCE_URL)


def test_parse_rejects_deeply_nested_object() -> None:
    with pytest.raises(ParseError):
        parse_extraction_response("{" * 100_000 + "}", SOURCE_URL)


def test_parse_rejects_deeply_nested_object_after_prose() -> None:
    raw = 'Result: {"note": "unbalanced" ' + '{"a": ' * 100_000 + "}"
    with pytest.raises(ParseError):
        parse_extraction_response(raw, SOURCE_URL)


class StubModels:
    def __init__(self, capture: dict[str, Any], text: str | None = None, error=None) -> None:
        self.capture = capture
        self.text = text
        self.error = error

    def generate_content(self, *, model: str, contents: str) -> Any:
        self.capture["model"] = model
        self.capture["contents"] = contents
        if self.error is not None:
            raise self.error

        class StubResponse:
            text = self.text

        return StubResponse()


def install_stub_genai(
    monkeypatch: pytest.MonkeyPatch,
    capture: dict[str, Any],
    *,
    text: str | None = None,
    error: Exception | None = None,
) -> None:
    class StubGenaiClient:
        def __init__(self, **kwargs: Any) -> None:
            capture["client_kwargs"] = kwargs
            self.models = StubModels(capture, text=text, error=error)

    monkeypatch.setattr(extraction_module.genai, "Client", StubGenaiClient)


def test_gemini_client_returns_response_text(monkeypatch: pytest.MonkeyPatch) -> None:
    capture: dict[str, Any] = {}
    install_stub_genai(monkeypatch, capture, text='{"companyName": "Acme"}')

    client = GeminiExtractionClient(api_key="test-key", model="gemini-test", timeout_seconds=2)
    text = client.generate("extract this")

    assert text == '{"companyName": "Acme"}'
    assert capture["model"] == "gemini-test"
    assert capture["contents"] == "extract this"
    assert capture["client_kwargs"]["api_key"] == "test-key"
    assert capture["client_kwargs"]["http_options"].timeout == 2000


def test_gemini_client_requires_api_key() -> None:
    with pytest.raises(ServiceError, match="GEMINI_API_KEY"):
        GeminiExtractionClient(api_key="  ").generate("ping")


def test_gemini_client_wraps_transport_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    install_stub_genai(monkeypatch, {}, error=httpx.ConnectError("connection refused"))

    with pytest.raises(ServiceError, match="Gemini request failed"):
        GeminiExtractionClient(api_key="test-key").generate("ping")


def test_gemini_client_rejects_empty_response(monkeypatch: pytest.MonkeyPatch) -> None:
    install_stub_genai(monkeypatch, {}, text=None)

    with pytest.raises(ServiceError, match="empty response"):
        GeminiExtractionClient(api_key="test-key").generate("ping")
