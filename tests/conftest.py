"""
Shared fixtures.

Token counts use a whitespace tokenizer so tests run offline and the budget
arithmetic is easy to follow: one token per whitespace-separated word.
All outbound HTTP goes through httpx.MockTransport.
"""

import json

import httpx
import pytest
import tiktoken

from chatrelay.billing import PowerBilling
from chatrelay.cancellation import CancellationRegistry
from chatrelay.content import ContentResolver, ImageClassifier
from chatrelay.context import ContextAssembler
from chatrelay.extract import FileExtractor
from chatrelay.gateway import CompletionGateway
from chatrelay.ledger import SessionLedger
from chatrelay.policy import ApiUrlPolicy
from chatrelay.proxy import ChatProxy
from chatrelay.state import LockedMap
from chatrelay.storage.models import ApiKey, ChatModel, ChatRole, User
from chatrelay.storage.sqlite_store import SQLiteStore
from chatrelay.tokens import TokenAccountant
from chatrelay.tools import ToolInvoker


class WordEncoding:
    def encode(self, text, disallowed_special="all"):
        return text.split()


def word_loader(name):
    return WordEncoding()


def byte_loader(name):
    """A real tiktoken encoding, built offline: one token per byte plus <|endoftext|>."""
    return tiktoken.Encoding(
        name,
        pat_str=r"\S+|\s+",
        mergeable_ranks={bytes([i]): i for i in range(256)},
        special_tokens={"<|endoftext|>": 256},
    )


def sse_body(*frames) -> bytes:
    """Build an event-stream body from frame dicts (or raw strings)."""
    lines = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {payload}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def content_frame(text, finish_reason=None) -> dict:
    return {"choices": [{"delta": {"content": text}, "finish_reason": finish_reason}]}


@pytest.fixture
def accountant():
    return TokenAccountant(loader=word_loader)


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    return SQLiteStore(str(tmp_path / "test.db"))


@pytest.fixture
def seeded(store):
    """One user, one chat key, one model and one role."""
    user = store.add_user(User(username="alice", nickname="Alice", avatar="/a.png", power=10))
    key = store.add_api_key(ApiKey(name="main", value="sk-test", api_url="https://api.openai.com"))
    model = store.add_model(ChatModel(name="GPT-4o", value="gpt-4o", max_tokens=1024, max_context=4096))
    role = store.add_role(ChatRole(
        key="assistant",
        name="Assistant",
        context=[{"role": "system", "content": "You are helpful."}],
        icon="/bot.png",
    ))
    return {"user": user, "key": key, "model": model, "role": role}


def make_proxy(store, accountant, handler, tika_host="", exempt_models=None) -> ChatProxy:
    """A fully wired ChatProxy whose HTTP traffic all goes to `handler`."""
    transport = httpx.MockTransport(handler)
    cache = LockedMap()
    return ChatProxy(
        store=store,
        accountant=accountant,
        assembler=ContextAssembler(store, cache, accountant, enabled=True, max_depth=10),
        resolver=ContentResolver(
            accountant,
            FileExtractor(transport=transport),
            ImageClassifier(transport=transport),
            store=store,
            tika_host=tika_host,
            exempt_models=exempt_models or [],
        ),
        gateway=CompletionGateway(store, ApiUrlPolicy([]), transport=transport),
        ledger=SessionLedger(store, cache, accountant, PowerBilling(store)),
        invoker=ToolInvoker(transport=transport),
        cancellations=CancellationRegistry(LockedMap()),
    )


def parse_sse(frames) -> list[dict]:
    """SSE strings (or one joined body) -> list of event dicts."""
    if isinstance(frames, (bytes, str)):
        text = frames.decode() if isinstance(frames, bytes) else frames
    else:
        text = "".join(frames)
    events = []
    for block in text.split("\n\n"):
        for line in block.splitlines():
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: "):]))
    return events
