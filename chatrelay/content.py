"""
Content resolution: raw prompt + attachments -> final user message content.

  1. Document URLs (inline or attached) are downloaded and converted to
     text, then prefixed to the question as "<name> file content: ..." blocks.
     Models that read files natively (see chat.extract_exempt_models) get
     the raw URLs instead.
  2. The composite prompt is re-counted against the model's max context.
  3. Image URLs that pass an extension + HEAD content-type check become
     image_url parts; the leftover text becomes the trailing text part.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from urllib.parse import unquote, urlparse

import httpx

from chatrelay.errors import ChatError, ErrorKind
from chatrelay.extract import ExtractionError, FileExtractor, url_extension
from chatrelay.storage.models import ChatModel, File
from chatrelay.tokens import TokenAccountant

logger = logging.getLogger(__name__)

URL_RE = re.compile(r"https?://[^\s<>\"'()\[\]{}]+")
_TRAILING_PUNCT = ".,;:!?。，；：！？"

FILE_EXTENSIONS = {
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".txt", ".md", ".csv", ".json", ".html", ".htm",
}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"}

FILE_BLOCK_TEMPLATE = "{name} file content: {content}"
PROMPT_TEMPLATE = (
    "Answer the question based on the provided file contents "
    "(Excel files have been converted to HTML):\n\n {contents}\n\n Question: {question}"
)


def _urls(text: str) -> list[str]:
    found = []
    for match in URL_RE.finditer(text or ""):
        url = match.group(0).rstrip(_TRAILING_PUNCT)
        if url not in found:
            found.append(url)
    return found


def extract_file_urls(text: str) -> list[str]:
    """Document URLs embedded in text, in order of appearance."""
    return [u for u in _urls(text) if url_extension(u) in FILE_EXTENSIONS]


def extract_image_urls(text: str) -> list[str]:
    """URLs with an image extension, in order of appearance."""
    return [u for u in _urls(text) if url_extension(u) in IMAGE_EXTENSIONS]


def is_extract_exempt(model_value: str, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatch(model_value, p) for p in patterns)


class ImageClassifier:
    """Confirms image URLs with a HEAD request."""

    def __init__(self, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    async def is_image(self, url: str) -> bool:
        if url_extension(url) not in IMAGE_EXTENSIONS:
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.head(url, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.debug("Image check failed for %s: %s", url, e)
            return False
        if resp.status_code >= 400:
            return False
        return resp.headers.get("content-type", "").startswith("image/")


@dataclass
class ResolvedContent:
    content: str | list[dict]
    prompt: str                          # composite text prompt
    images: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)


class ContentResolver:
    def __init__(
        self,
        accountant: TokenAccountant,
        extractor: FileExtractor,
        classifier: ImageClassifier,
        store=None,
        tika_host: str = "",
        exempt_models: list[str] | None = None,
    ):
        self.accountant = accountant
        self.extractor = extractor
        self.classifier = classifier
        self.store = store
        self.tika_host = tika_host
        self.exempt_models = exempt_models if exempt_models is not None else []

    def _file_name(self, url: str) -> str:
        if self.store is not None:
            record = self.store.get_file_by_url(url)
            if record and record.name:
                return record.name
        return unquote(PurePosixPath(urlparse(url).path).name) or url

    async def _read_files(self, refs: list[tuple[str, str]]) -> list[str]:
        contents = []
        for url, name in refs:
            try:
                body = await self.extractor.read(url, self.tika_host)
            except ExtractionError as e:
                logger.error("Error reading file %s: %s", url, e)
                continue
            contents.append(FILE_BLOCK_TEMPLATE.format(name=name or self._file_name(url), content=body))
        return contents

    async def resolve(
        self, prompt: str, model: ChatModel, attachments: list[File] | None = None
    ) -> ResolvedContent:
        attachments = attachments or []
        text = prompt
        full_prompt = prompt

        file_refs = [(u, "") for u in extract_file_urls(prompt)]
        image_refs = extract_image_urls(prompt)
        for f in attachments:
            ext = (f.ext or url_extension(f.url)).lower()
            if not ext.startswith("."):
                ext = "." + ext
            if ext in IMAGE_EXTENSIONS:
                if f.url not in image_refs:
                    image_refs.append(f.url)
            elif f.url and f.url not in {u for u, _ in file_refs}:
                file_refs.append((f.url, f.name))
        logger.debug("Detected files: %s, images: %s", file_refs, image_refs)

        files_read: list[str] = []
        if file_refs and not is_extract_exempt(model.value, self.exempt_models):
            contents = await self._read_files(file_refs)
            for url, _ in file_refs:
                text = text.replace(url, "", 1)
            files_read = [u for u, _ in file_refs]
            if contents:
                full_prompt = PROMPT_TEMPLATE.format(
                    contents="\n".join(contents), question=text.strip()
                )
            tokens = self.accountant.estimate(full_prompt, model.value)
            if tokens > model.max_context:
                raise ChatError(
                    ErrorKind.FILE_CONTENT_TOO_LARGE,
                    "The file content exceeds the maximum context length of the model, "
                    "please reduce the number or size of files.",
                    tokens=tokens,
                    max_context=model.max_context,
                )
        logger.debug("Final prompt: %s", full_prompt)

        checks = await asyncio.gather(*(self.classifier.is_image(u) for u in image_refs))
        images = [u for u, ok in zip(image_refs, checks) if ok]
        if not images:
            return ResolvedContent(content=full_prompt, prompt=full_prompt, files=files_read)

        residual = full_prompt
        parts: list[dict] = []
        for url in images:
            residual = residual.replace(url, "", 1)
            parts.append({"type": "image_url", "image_url": {"url": url}})
        parts.append({"type": "text", "text": residual.strip()})
        return ResolvedContent(content=parts, prompt=full_prompt, images=images, files=files_read)
