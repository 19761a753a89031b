from __future__ import annotations

from typing import Any

import httpx
import pytest
import tracker.fetcher as fetcher_module
from tracker.errors import FetchError
from tracker.fetcher import PageFetcher, sanitize_html

pytestmark = pytest.mark.unit


class StubResponse:
    def __init__(self, status_code: int, text: str) -> None:
        self.status_code = status_code
        self.text = text


class StubClient:
    def __init__(self, response: StubResponse, capture: dict[str, Any], **kwargs: Any) -> None:
        self.response = response
        self.capture = capture
        self.capture["client_kwargs"] = kwargs

    def __enter__(self) -> StubClient:
        return self

    def __exit__(self, *_: object) -> bool:
        return False

    def get(self, url: str, headers: dict[str, str] | None = None) -> StubResponse:
        self.capture["url"] = url
        self.capture["headers"] = headers or {}
        return self.response


class ErroringClient:
    def __init__(self, **_: Any) -> None:
        pass

    def __enter__(self) -> ErroringClient:
        return self

    def __exit__(self, *_: object) -> bool:
        return False

    def get(self, url: str, headers: dict[str, str] | None = None) -> StubResponse:
        del headers
        raise httpx.ConnectTimeout("timed out", request=httpx.Request("GET", url))


def test_sanitize_html_drops_script_and_style_blocks() -> None:
    html = """
    <html>
      <head><style type="text/css">body { color: red; }</style></head>
      <body>
        <SCRIPT>var secret = "<b>hidden</b>";</SCRIPT>
        <h1>Backend   Engineer</h1>
        <p>Acme&nbsp;Corp is hiring.</p>
      </body>
    </html>
    """

    text = sanitize_html(html)

    assert text == "Backend Engineer Acme Corp is hiring."
    assert "secret" not in text
    assert "color" not in text


def test_sanitize_html_truncates_to_budget() -> None:
    assert sanitize_html("<p>" + "x" * 50 + "</p>", max_chars=10) == "x" * 10


def test_fetch_text_sanitizes_successful_response(monkeypatch: pytest.MonkeyPatch) -> None:
    capture: dict[str, Any] = {}
    response = StubResponse(200, "<div>Staff <em>Engineer</em></div>" + "<p>y</p>" * 20)
    monkeypatch.setattr(
        fetcher_module.httpx,
        "Client",
        lambda **kwargs: StubClient(response, capture, **kwargs),
    )

    text = PageFetcher(timeout_seconds=3, max_chars=20).fetch_text("https://jobs.example.com/1")

    assert text == "Staff Engineer y y y"
    assert capture["url"] == "https://jobs.example.com/1"
    assert capture["client_kwargs"] == {"timeout": 3, "follow_redirects": True}
    assert "User-Agent" in capture["headers"]


def test_fetch_text_raises_on_non_success_status(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        fetcher_module.httpx,
        "Client",
        lambda **kwargs: StubClient(StubResponse(404, "missing"), {}, **kwargs),
    )

    with pytest.raises(FetchError, match="HTTP 404"):
        PageFetcher().fetch_text("https://jobs.example.com/gone")


def test_fetch_text_wraps_transport_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(fetcher_module.httpx, "Client", ErroringClient)

    with pytest.raises(FetchError) as exc_info:
        PageFetcher().fetch_text("https://jobs.example.com/slow")

    assert isinstance(exc_info.value.__cause__, httpx.TimeoutException)


def test_page_fetcher_requires_positive_budget() -> None:
    with pytest.raises(ValueError):
        PageFetcher(max_chars=0)
