"""
Data models for chat storage.
These define the shape of the rows the chat pipeline reads and writes.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field

PROMPT_MSG = "prompt"
REPLY_MSG = "reply"


def _now() -> int:
    return int(time.time())


@dataclass
class User:
    id: int = 0
    username: str = ""
    nickname: str = ""
    avatar: str = ""
    power: int = 0
    status: bool = True
    expired_time: int = 0  # unix seconds, 0 = never


@dataclass
class ChatRole:
    """A chat persona: seed context plus an optional bound model."""
    id: int = 0
    key: str = ""
    name: str = ""
    context: list[dict] = field(default_factory=list)
    icon: str = ""
    model_id: int = 0
    enabled: bool = True


@dataclass
class ChatModel:
    id: int = 0
    name: str = ""
    value: str = ""          # model name sent to the upstream API
    temperature: float = 1.0
    max_tokens: int = 1024
    max_context: int = 4096
    power: int = 1
    key_id: int = 0
    enabled: bool = True
    options: dict = field(default_factory=dict)


@dataclass
class ApiKey:
    id: int = 0
    name: str = ""
    type: str = "chat"       # "chat", "tts", ...
    value: str = ""
    api_url: str = ""
    proxy_url: str = ""
    enabled: bool = True
    last_used_at: int = 0


@dataclass
class Function:
    """A server-side tool the model may call."""
    id: int = 0
    name: str = ""
    label: str = ""
    description: str = ""
    parameters: str = "{}"   # JSON schema, decoded at request time
    action: str = ""         # URL the call is POSTed to
    token: str = ""
    enabled: bool = True


@dataclass
class File:
    id: int = 0
    user_id: int = 0
    name: str = ""
    url: str = ""
    ext: str = ""
    size: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "File":
        return cls(
            id=int(data.get("id") or 0),
            user_id=int(data.get("user_id") or 0),
            name=str(data.get("name") or ""),
            url=str(data.get("url") or ""),
            ext=str(data.get("ext") or ""),
            size=int(data.get("size") or 0),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "url": self.url,
            "ext": self.ext,
            "size": self.size,
        }


@dataclass
class ChatMessage:
    """One persisted history row: a prompt or a reply."""
    id: int = 0
    user_id: int = 0
    chat_id: str = ""
    role_id: int = 0
    model: str = ""
    type: str = PROMPT_MSG
    icon: str = ""
    tokens: int = 0
    total_tokens: int = 0
    content: str = ""        # JSON: {"text": ..., "files": [...]}
    use_context: bool = True
    created_at: int = field(default_factory=_now)
    updated_at: int = field(default_factory=_now)

    @staticmethod
    def encode_content(text: str, files: list[File] | None = None) -> str:
        return json.dumps(
            {"text": text, "files": [f.to_dict() for f in files or []]},
            ensure_ascii=False,
        )

    @property
    def text(self) -> str:
        """Message text, tolerating rows written before content was JSON."""
        try:
            data = json.loads(self.content)
        except (TypeError, ValueError):
            return self.content
        if isinstance(data, dict):
            return str(data.get("text", ""))
        return self.content


@dataclass
class ChatItem:
    """Chat summary record shown in the conversation list."""
    id: int = 0
    chat_id: str = ""
    user_id: int = 0
    role_id: int = 0
    model_id: int = 0
    model: str = ""
    title: str = ""
    created_at: int = field(default_factory=_now)


@dataclass
class PowerLog:
    user_id: int = 0
    type: str = "consume"
    amount: int = 0
    balance: int = 0
    model: str = ""
    remark: str = ""
    created_at: int = field(default_factory=_now)
