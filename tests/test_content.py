"""
Tests for content resolution: file extraction, image parts, size checks.
"""

import httpx
import pytest

from chatrelay.content import (
    ContentResolver,
    ImageClassifier,
    extract_file_urls,
    extract_image_urls,
    is_extract_exempt,
)
from chatrelay.errors import ChatError, ErrorKind
from chatrelay.extract import ExtractionError, FileExtractor, url_extension
from chatrelay.storage.models import ChatModel, File

MODEL = ChatModel(id=1, value="gpt-4o", max_context=4096)


def _resolver(accountant, handler, tika_host="", exempt=None, store=None):
    transport = httpx.MockTransport(handler)
    return ContentResolver(
        accountant,
        FileExtractor(transport=transport),
        ImageClassifier(transport=transport),
        store=store,
        tika_host=tika_host,
        exempt_models=exempt or [],
    )


def test_url_helpers():
    text = "see https://f.example/a.pdf and https://img.example/cat.PNG, thanks"
    assert extract_file_urls(text) == ["https://f.example/a.pdf"]
    assert extract_image_urls(text) == ["https://img.example/cat.PNG"]
    assert url_extension("https://x.example/path/Report.DOCX?x=1") == ".docx"


def test_exempt_patterns():
    patterns = ["*-all", "gpt-4-gizmo*", "claude*"]
    assert is_extract_exempt("gpt-4-all", patterns)
    assert is_extract_exempt("gpt-4-gizmo-g-abc", patterns)
    assert is_extract_exempt("claude-3-opus", patterns)
    assert not is_extract_exempt("gpt-4o", patterns)


@pytest.mark.asyncio
async def test_plain_prompt_passes_through(accountant):
    def handler(request):
        raise AssertionError("no HTTP expected")

    resolved = await _resolver(accountant, handler).resolve("just a question", MODEL)
    assert resolved.content == "just a question"
    assert resolved.files == []


@pytest.mark.asyncio
async def test_text_file_is_inlined(accountant):
    def handler(request):
        return httpx.Response(200, text="line one\nline two", headers={"content-type": "text/plain"})

    resolver = _resolver(accountant, handler)
    resolved = await resolver.resolve("summarise https://f.example/notes.txt please", MODEL)

    assert "notes.txt file content: line one\nline two" in resolved.content
    assert resolved.content.endswith("Question: summarise  please")
    assert resolved.files == ["https://f.example/notes.txt"]


@pytest.mark.asyncio
async def test_attachment_uses_stored_name(accountant):
    def handler(request):
        return httpx.Response(200, text="data", headers={"content-type": "text/csv"})

    attachment = File(name="Q3 numbers.csv", url="https://f.example/x1.csv", ext=".csv")
    resolved = await _resolver(accountant, handler).resolve("totals?", MODEL, [attachment])
    assert "Q3 numbers.csv file content: data" in resolved.content


@pytest.mark.asyncio
async def test_binary_file_goes_through_tika(accountant):
    seen = []

    def handler(request):
        seen.append((request.method, str(request.url), request.headers.get("accept")))
        if request.method == "GET":
            return httpx.Response(200, content=b"%PDF-1.4", headers={"content-type": "application/pdf"})
        return httpx.Response(200, text="extracted text")

    resolver = _resolver(accountant, handler, tika_host="http://tika:9998")
    resolved = await resolver.resolve("https://f.example/a.pdf what is this", MODEL)

    assert ("PUT", "http://tika:9998/tika", "text/plain") in seen
    assert "a.pdf file content: extracted text" in resolved.content


@pytest.mark.asyncio
async def test_spreadsheet_asks_tika_for_html(accountant):
    seen = []

    def handler(request):
        seen.append(request.headers.get("accept"))
        if request.method == "GET":
            return httpx.Response(200, content=b"PK", headers={"content-type": "application/octet-stream"})
        return httpx.Response(200, text="<table></table>")

    await _resolver(accountant, handler, tika_host="http://tika:9998").resolve("https://f.example/b.xlsx", MODEL)
    assert "text/html" in seen


@pytest.mark.asyncio
async def test_extractor_without_tika_fails():
    def handler(request):
        return httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"})

    with pytest.raises(ExtractionError):
        await FileExtractor(transport=httpx.MockTransport(handler)).read("https://f.example/a.pdf")


@pytest.mark.asyncio
async def test_extractor_truncates():
    def handler(request):
        return httpx.Response(200, text="abcdefghij", headers={"content-type": "text/plain"})

    extractor = FileExtractor(max_chars=4, transport=httpx.MockTransport(handler))
    assert await extractor.read("https://f.example/a.txt") == "abcd"


@pytest.mark.asyncio
async def test_unreadable_file_is_skipped(accountant):
    def handler(request):
        return httpx.Response(404)

    resolved = await _resolver(accountant, handler).resolve("https://f.example/gone.txt hi", MODEL)
    assert resolved.content == "https://f.example/gone.txt hi"


@pytest.mark.asyncio
async def test_file_too_large(accountant):
    def handler(request):
        return httpx.Response(200, text="word " * 5000, headers={"content-type": "text/plain"})

    with pytest.raises(ChatError) as exc:
        await _resolver(accountant, handler).resolve("read https://f.example/big.txt", MODEL)
    assert exc.value.kind is ErrorKind.FILE_CONTENT_TOO_LARGE


@pytest.mark.asyncio
async def test_exempt_model_keeps_urls(accountant):
    def handler(request):
        raise AssertionError("exempt models are not extracted")

    model = ChatModel(value="gpt-4-all", max_context=4096)
    resolver = _resolver(accountant, handler, exempt=["*-all"])
    resolved = await resolver.resolve("read https://f.example/a.pdf", model)
    assert resolved.content == "read https://f.example/a.pdf"


@pytest.mark.asyncio
async def test_image_becomes_part(accountant):
    def handler(request):
        assert request.method == "HEAD"
        return httpx.Response(200, headers={"content-type": "image/png"})

    resolved = await _resolver(accountant, handler).resolve(
        "what is in https://img.example/cat.png ?", MODEL
    )
    assert resolved.content == [
        {"type": "image_url", "image_url": {"url": "https://img.example/cat.png"}},
        {"type": "text", "text": "what is in  ?"},
    ]
    assert resolved.images == ["https://img.example/cat.png"]


@pytest.mark.asyncio
async def test_image_url_that_is_not_an_image(accountant):
    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/html"})

    resolved = await _resolver(accountant, handler).resolve("see https://img.example/x.jpg", MODEL)
    assert resolved.content == "see https://img.example/x.jpg"


@pytest.mark.asyncio
async def test_image_turn_keeps_file_contents(accountant):
    def handler(request):
        if request.method == "HEAD":
            return httpx.Response(200, headers={"content-type": "image/jpeg"})
        return httpx.Response(200, text="menu items", headers={"content-type": "text/plain"})

    resolved = await _resolver(accountant, handler).resolve(
        "compare https://f.example/menu.txt with https://img.example/dish.jpg", MODEL
    )
    assert resolved.content[0]["type"] == "image_url"
    assert "menu.txt file content: menu items" in resolved.content[-1]["text"]
