"""
Session ledger: everything that happens after a turn produced content.

  - refresh the in-memory context for the chat
  - work out prompt / reply / total token counts
  - store the prompt and reply history rows
  - debit the user's power
  - create the chat summary item on the first turn
"""

from __future__ import annotations

import html
import logging
import sqlite3
from dataclasses import dataclass, field

from chatrelay.errors import BillingError
from chatrelay.state import KeyValueStore
from chatrelay.storage.models import (
    PROMPT_MSG,
    REPLY_MSG,
    ChatItem,
    ChatMessage,
    ChatModel,
    ChatRole,
    File,
    PowerLog,
    User,
)
from chatrelay.tokens import TokenAccountant

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 30


def derive_title(prompt: str) -> str:
    """First 30 characters of the prompt, with an ellipsis if it was longer."""
    if len(prompt) > TITLE_MAX_CHARS:
        return prompt[:TITLE_MAX_CHARS] + "..."
    return prompt


@dataclass
class Usage:
    prompt: str = ""
    content: str = ""
    prompt_tokens: int = 0       # 0 = unknown, compute locally
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_upstream(cls, prompt: str, content: str, usage: dict | None) -> "Usage":
        usage = usage or {}
        return cls(
            prompt=prompt,
            content=content,
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
            total_tokens=int(usage.get("total_tokens") or 0),
        )


@dataclass
class ChatSession:
    """Per-turn facts the ledger needs besides the request and the reply."""
    chat_id: str
    user: User
    role: ChatRole
    model: ChatModel
    files: list[File] = field(default_factory=list)
    prompt_created_at: int = 0
    reply_created_at: int = 0


class SessionLedger:
    def __init__(
        self,
        store,
        cache: KeyValueStore[str, list],
        accountant: TokenAccountant,
        billing,
        enable_context: bool = True,
    ):
        self.store = store
        self.cache = cache
        self.accountant = accountant
        self.billing = billing
        self.enable_context = enable_context

    def _debit(self, session: ChatSession, model_value: str, prompt_tokens: int, reply_tokens: int):
        power = session.model.power
        entry = PowerLog(
            user_id=session.user.id,
            type="consume",
            amount=power,
            model=model_value,
            remark=(
                f"Model: {session.model.name}, prompt tokens: {prompt_tokens}, "
                f"reply tokens: {reply_tokens}"
            ),
        )
        try:
            self.billing.debit(session.user.id, power, entry)
        except (BillingError, sqlite3.Error) as e:
            logger.error("Failed to debit power for user %s: %s", session.user.id, e)

    def commit(self, request: dict, usage: Usage, message: dict, session: ChatSession):
        model_value = request.get("model", session.model.value)
        messages = list(request.get("messages", []))

        if self.enable_context:
            self.cache.put(session.chat_id, messages + [message])

        if usage.prompt_tokens > 0:
            prompt_tokens = usage.prompt_tokens
        else:
            prompt_tokens = self.accountant.estimate(usage.prompt, model_value)

        if usage.completion_tokens > 0:
            reply_tokens = usage.completion_tokens
            total_tokens = usage.total_tokens or prompt_tokens + reply_tokens
        else:
            reply_tokens = self.accountant.estimate(message.get("content", ""), model_value)
            total_tokens = reply_tokens + self.accountant.total_message_tokens(messages, model_value)

        prompt_row = ChatMessage(
            user_id=session.user.id,
            chat_id=session.chat_id,
            role_id=session.role.id,
            model=model_value,
            type=PROMPT_MSG,
            icon=session.user.avatar,
            tokens=prompt_tokens,
            total_tokens=prompt_tokens,
            content=ChatMessage.encode_content(html.escape(usage.prompt), session.files),
            use_context=True,
            created_at=session.prompt_created_at,
            updated_at=session.prompt_created_at,
        )
        reply_row = ChatMessage(
            user_id=session.user.id,
            chat_id=session.chat_id,
            role_id=session.role.id,
            model=model_value,
            type=REPLY_MSG,
            icon=session.role.icon,
            tokens=reply_tokens,
            total_tokens=total_tokens,
            content=ChatMessage.encode_content(usage.content),
            use_context=True,
            created_at=session.reply_created_at,
            updated_at=session.reply_created_at,
        )
        for row in (prompt_row, reply_row):
            try:
                self.store.save_message(row)
            except sqlite3.Error as e:
                logger.error("Failed to save %s history message: %s", row.type, e)

        if session.model.power > 0:
            self._debit(session, model_value, prompt_tokens, reply_tokens)

        item = ChatItem(
            chat_id=session.chat_id,
            user_id=session.user.id,
            role_id=session.role.id,
            model_id=session.model.id,
            model=model_value,
            title=derive_title(usage.prompt),
        )
        try:
            if self.store.create_chat_item(item):
                logger.debug("Created chat item %s: %s", session.chat_id, item.title)
        except sqlite3.Error as e:
            logger.error("Failed to save chat item: %s", e)
