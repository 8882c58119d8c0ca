"""
File content extraction: URL -> plain text.

Plain-text formats are downloaded and returned as-is. Everything else is
handed to an Apache Tika server (PUT /tika), which returns plain text, or
HTML for spreadsheets so that table structure survives.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".csv", ".json", ".html", ".htm", ".xml", ".log"}
SPREADSHEET_EXTENSIONS = {".xls", ".xlsx"}


class ExtractionError(Exception):
    """A file could not be downloaded or converted to text."""


def url_extension(url: str) -> str:
    return PurePosixPath(urlparse(url).path).suffix.lower()


class FileExtractor:
    """Downloads a file and returns its text content."""

    def __init__(
        self,
        timeout: float = 60.0,
        max_chars: int = 0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self.max_chars = max_chars
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def read(self, url: str, tika_host: str = "") -> str:
        """Return the text of the file at `url`. Raises ExtractionError."""
        ext = url_extension(url)
        try:
            async with self._client() as client:
                resp = await client.get(url, follow_redirects=True)
                resp.raise_for_status()
                content_type = resp.headers.get("content-type", "")

                if ext in TEXT_EXTENSIONS or content_type.startswith("text/"):
                    text = resp.text
                else:
                    if not tika_host:
                        raise ExtractionError(f"no extraction service configured for {ext or url}")
                    accept = "text/html" if ext in SPREADSHEET_EXTENSIONS else "text/plain"
                    tika = await client.put(
                        f"{tika_host.rstrip('/')}/tika",
                        content=resp.content,
                        headers={"Accept": accept},
                    )
                    tika.raise_for_status()
                    text = tika.text
        except httpx.HTTPError as e:
            raise ExtractionError(f"{url}: {e}") from e

        text = text.strip()
        if self.max_chars and len(text) > self.max_chars:
            logger.debug("Truncating %s from %d to %d chars", url, len(text), self.max_chars)
            text = text[: self.max_chars]
        return text
