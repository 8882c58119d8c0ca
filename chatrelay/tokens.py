"""
Token accounting.

Counts tokens with the model's tiktoken encoding (cl100k_base for model
names tiktoken does not know). Structured content such as message lists or
tool schemas is serialised to JSON before counting, so the same budget
arithmetic applies to everything that goes over the wire.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable

import tiktoken

from chatrelay.errors import TokenizerError

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"


def _default_loader(encoding_name: str):
    return tiktoken.get_encoding(encoding_name)


def encoding_name_for(model: str) -> str:
    """tiktoken's encoding for a model name, with the cl100k_base fallback."""
    try:
        return tiktoken.encoding_name_for_model(model)
    except KeyError:
        return DEFAULT_ENCODING


def to_text(content: Any) -> str:
    """Strings pass through; anything else is JSON-encoded."""
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False)


class TokenAccountant:
    """
    Token counter with a per-encoding cache.

    `loader` maps an encoding name to an object with tiktoken's `encode` method.
    It defaults to tiktoken and is swappable for offline tests.
    """

    def __init__(self, loader: Callable[[str], Any] | None = None):
        self._loader = loader or _default_loader
        self._encodings: dict[str, Any] = {}
        self._lock = threading.Lock()

    def _encoding(self, model: str):
        name = encoding_name_for(model)
        with self._lock:
            enc = self._encodings.get(name)
        if enc is not None:
            return enc
        try:
            enc = self._loader(name)
        except Exception as e:
            raise TokenizerError(f"cannot load encoding {name} for {model!r}: {e}") from e
        with self._lock:
            self._encodings[name] = enc
        return enc

    def count(self, text: str, model: str) -> int:
        """Exact count. Raises TokenizerError if no encoding is available."""
        enc = self._encoding(model)
        # Special-token text in user content counts as ordinary text.
        return len(enc.encode(text, disallowed_special=()))

    def estimate(self, content: Any, model: str) -> int:
        """
        Count tokens of a string or JSON-serialisable value.
        Returns 0 when the tokenizer is unavailable; callers treat that as
        "unknown" and do not block on it.
        """
        try:
            return self.count(to_text(content), model)
        except TokenizerError as e:
            logger.warning("Token count unavailable: %s", e)
            return 0

    def total_message_tokens(self, messages: list[dict], model: str) -> int:
        """Sum of the content tokens of every message that has content."""
        total = 0
        for msg in messages:
            content = msg.get("content")
            if content in (None, "", [], {}):
                continue
            total += self.estimate(content, model)
        return total
