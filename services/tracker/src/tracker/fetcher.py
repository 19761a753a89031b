from __future__ import annotations

import html as html_lib
import json
import logging
import re

import httpx
from common.utils import normalize_whitespace

from tracker.errors import FetchError

LOGGER = logging.getLogger("tracker.fetcher")

DEFAULT_PAGE_TEXT_LIMIT = 12000
DEFAULT_FETCH_TIMEOUT_SECONDS = 15.0
USER_AGENT = "Mozilla/5.0 (compatible; job-tracker/0.1)"

_SCRIPT_OR_STYLE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]*>")


def sanitize_html(html: str, max_chars: int = DEFAULT_PAGE_TEXT_LIMIT) -> str:
    without_blocks = _SCRIPT_OR_STYLE.sub(" ", html)
    text = html_lib.unescape(_TAG.sub(" ", without_blocks))
    return normalize_whitespace(text)[:max_chars]


class PageFetcher:
    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        max_chars: int = DEFAULT_PAGE_TEXT_LIMIT,
    ) -> None:
        if max_chars < 1:
            raise ValueError("max_chars must be positive")
        self.timeout_seconds = timeout_seconds
        self.max_chars = max_chars

    def fetch_html(self, url: str) -> str:
        try:
            with httpx.Client(timeout=self.timeout_seconds, follow_redirects=True) as client:
                response = client.get(url, headers={"User-Agent": USER_AGENT})
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise FetchError(f"Failed to fetch {url}: HTTP {response.status_code}")
        return response.text

    def fetch_text(self, url: str) -> str:
        text = sanitize_html(self.fetch_html(url), self.max_chars)
        LOGGER.debug(json.dumps({"event": "page_fetched", "url": url, "chars": len(text)}))
        return text
