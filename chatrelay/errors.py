"""
Error taxonomy for the chat pipeline.

Every failure the pipeline reports to a client is a ChatError tagged with
an ErrorKind. The proxy turns it into a single `error` event; Cancelled is
the one kind that ends a stream without being reported.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_ARGS = "InvalidArgs"
    UNAUTHORIZED = "Unauthorized"
    QUOTA_EXHAUSTED = "QuotaExhausted"
    ACCOUNT_EXPIRED = "AccountExpired"
    CONTEXT_OVERFLOW = "ContextOverflow"
    FILE_CONTENT_TOO_LARGE = "FileContentTooLarge"
    NO_AVAILABLE_KEY = "NoAvailableKey"
    KEY_NOT_PERMITTED = "KeyNotPermitted"
    UPSTREAM_HTTP_ERROR = "UpstreamHTTPError"
    STREAM_DECODE_ERROR = "StreamDecodeError"
    CANCELLED = "Cancelled"
    TOOL_INVOCATION_ERROR = "ToolInvocationError"


class ChatError(Exception):
    """A pipeline failure with a machine-readable kind and a user-facing message."""

    def __init__(self, kind: ErrorKind, message: str = "", **detail):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value
        self.detail = detail

    def __repr__(self) -> str:
        return f"<ChatError kind={self.kind.value} message={self.message!r}>"


class TokenizerError(Exception):
    """No tokenizer could be loaded for a model."""


class BillingError(Exception):
    """The billing ledger refused a debit."""
