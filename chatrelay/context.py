"""
Context assembly: which prior messages go out with the next prompt.

MaxContext = Response + Tools + Prompt + History

The response reservation, tool schemas and the prompt are charged first.
History is then scanned newest to oldest and included while it still fits
under the model's max context and the configured context depth. The result
is returned oldest first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chatrelay.errors import ChatError, ErrorKind
from chatrelay.state import KeyValueStore
from chatrelay.storage.models import REPLY_MSG, ChatModel, ChatRole
from chatrelay.tokens import TokenAccountant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextBudget:
    max_context: int
    max_depth: int
    reserved_tokens: int = 0   # max response tokens
    tool_tokens: int = 0
    prompt_tokens: int = 0

    @property
    def fixed_tokens(self) -> int:
        return self.reserved_tokens + self.tool_tokens + self.prompt_tokens


def select_history(
    history: list[dict],
    budget: ContextBudget,
    accountant: TokenAccountant,
    model: str,
) -> list[dict]:
    """Budgeted reverse scan over `history` (oldest first in, oldest first out)."""
    tokens = budget.fixed_tokens
    picked: list[dict] = []
    for msg in reversed(history):
        if len(picked) >= budget.max_depth:
            break
        tks = accountant.estimate(msg, model)
        if tokens + tks >= budget.max_context:
            break
        tokens += tks
        picked.append(msg)
    picked.reverse()
    return picked


class ContextAssembler:
    """Builds the bounded history for a turn from the cache or the store."""

    def __init__(
        self,
        store,
        cache: KeyValueStore[str, list],
        accountant: TokenAccountant,
        enabled: bool = True,
        max_depth: int = 10,
    ):
        self.store = store
        self.cache = cache
        self.accountant = accountant
        self.enabled = enabled
        self.max_depth = max_depth

    def check_prompt(self, prompt: str, model: ChatModel) -> int:
        """Prompt token count; raises ContextOverflow if the prompt alone is too long."""
        tokens = self.accountant.estimate(prompt, model.value)
        if tokens > model.max_context:
            raise ChatError(
                ErrorKind.CONTEXT_OVERFLOW,
                "The message exceeds the maximum context length of the current model.",
                tokens=tokens,
                max_context=model.max_context,
            )
        return tokens

    def history_for(
        self, chat_id: str, role: ChatRole, last_msg_id: int | None = None
    ) -> list[dict]:
        """Cached context if there is one, otherwise role seed + stored history."""
        if not last_msg_id:
            cached = self.cache.get(chat_id)
            if cached is not None:
                return list(cached)

        history = [dict(m) for m in role.context]
        if self.max_depth > 0:
            for row in self.store.get_context_messages(chat_id, self.max_depth, last_msg_id):
                history.append({
                    "role": "assistant" if row.type == REPLY_MSG else "user",
                    "content": row.text,
                })
        return history

    def assemble(
        self,
        chat_id: str,
        role: ChatRole,
        model: ChatModel,
        prompt_tokens: int,
        tools: list[dict] | None = None,
        last_msg_id: int | None = None,
    ) -> list[dict]:
        if not self.enabled:
            return []

        tool_tokens = self.accountant.estimate(tools, model.value) if tools else 0
        budget = ContextBudget(
            max_context=model.max_context,
            max_depth=self.max_depth,
            reserved_tokens=model.max_tokens,
            tool_tokens=tool_tokens,
            prompt_tokens=prompt_tokens,
        )
        history = self.history_for(chat_id, role, last_msg_id)
        picked = select_history(history, budget, self.accountant, model.value)
        logger.debug(
            "Context for chat %s: %d/%d messages (fixed tokens %d, max %d)",
            chat_id, len(picked), len(history), budget.fixed_tokens, model.max_context,
        )
        return picked
