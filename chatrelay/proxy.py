"""
Proxy: the core of ChatRelay.
Takes a chat request from the web client, builds a token-budgeted,
context-aware request for an OpenAI-compatible API, streams the answer back
as SSE frames, and records the exchange.

Pipeline per turn:
  validate role / model / user / quota
  -> context assembly (cached or stored history within the token budget)
  -> content resolution (file extraction, image parts)
  -> upstream dispatch (cancellable)
  -> stream processing (tool calls intercepted and executed)
  -> ledger (history, context cache, power debit, chat item)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from chatrelay.cancellation import CancellationRegistry, CancelToken
from chatrelay.content import ContentResolver
from chatrelay.context import ContextAssembler
from chatrelay.errors import ChatError, ErrorKind
from chatrelay.gateway import CompletionGateway
from chatrelay.ledger import ChatSession, SessionLedger, Usage
from chatrelay.storage.models import ChatModel, ChatRole, File, User
from chatrelay.stream import (
    EVENT_END,
    EVENT_ERROR,
    ChatEvent,
    StreamProcessor,
    complete_once,
    text_delta,
)
from chatrelay.tokens import TokenAccountant
from chatrelay.tools import ToolInvoker, ToolRegistry

logger = logging.getLogger(__name__)

COMPLETION_TOKENS_PREFIXES = ("o1-", "o3-", "gpt")
NO_TOOLS_PREFIXES = ("o1-",)


def _as_int(value, name: str, default: int | None = 0) -> int | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ChatError(ErrorKind.INVALID_ARGS, f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ChatError(ErrorKind.INVALID_ARGS, f"{name} must be an integer")


@dataclass(frozen=True)
class ChatInput:
    user_id: int
    role_id: int
    model_id: int
    chat_id: str
    content: str
    tools: tuple[int, ...] = ()
    stream: bool = True
    files: tuple[File, ...] = ()
    last_msg_id: int | None = None
    session_id: str = ""

    @classmethod
    def from_dict(cls, body) -> "ChatInput":
        """Validate a request body. Raises ChatError(InvalidArgs)."""
        if not isinstance(body, dict):
            raise ChatError(ErrorKind.INVALID_ARGS, "request body must be a JSON object")

        chat_id = body.get("chat_id")
        if not isinstance(chat_id, str) or not chat_id:
            raise ChatError(ErrorKind.INVALID_ARGS, "chat_id is required")
        content = body.get("content", body.get("prompt", ""))
        if not isinstance(content, str):
            raise ChatError(ErrorKind.INVALID_ARGS, "content must be a string")

        tools = body.get("tools") or []
        files = body.get("files") or []
        if not isinstance(tools, list) or not isinstance(files, list):
            raise ChatError(ErrorKind.INVALID_ARGS, "tools and files must be lists")
        if not all(isinstance(f, dict) for f in files):
            raise ChatError(ErrorKind.INVALID_ARGS, "files must be objects")

        session_id = body.get("session_id") or chat_id
        return cls(
            user_id=_as_int(body.get("user_id"), "user_id"),
            role_id=_as_int(body.get("role_id"), "role_id"),
            model_id=_as_int(body.get("model_id"), "model_id"),
            chat_id=chat_id,
            content=content,
            tools=tuple(_as_int(t, "tools") for t in tools),
            stream=bool(body.get("stream", True)),
            files=tuple(File.from_dict(f) for f in files),
            last_msg_id=_as_int(body.get("last_msg_id"), "last_msg_id", default=None),
            session_id=str(session_id),
        )


@dataclass
class TurnResult:
    content: str = ""
    usage: dict = field(default_factory=dict)


class ChatProxy:
    """Runs chat turns against the upstream API."""

    def __init__(
        self,
        store,
        accountant: TokenAccountant,
        assembler: ContextAssembler,
        resolver: ContentResolver,
        gateway: CompletionGateway,
        ledger: SessionLedger,
        invoker: ToolInvoker,
        cancellations: CancellationRegistry,
        settings: Callable[[], dict] | None = None,
    ):
        self.store = store
        self.accountant = accountant
        self.assembler = assembler
        self.resolver = resolver
        self.gateway = gateway
        self.ledger = ledger
        self.invoker = invoker
        self.cancellations = cancellations
        self._settings = settings

    def _refresh_settings(self):
        """Pick up hot-reloaded chat settings (context mode and depth)."""
        if self._settings is None:
            return
        s = self._settings()
        self.assembler.enabled = s["enable_context"]
        self.assembler.max_depth = s["context_deep"]
        self.ledger.enable_context = s["enable_context"]
        self.resolver.exempt_models = s["extract_exempt_models"]

    def _validate_user(self, user_id: int, model: ChatModel) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise ChatError(
                ErrorKind.UNAUTHORIZED,
                "Unauthorized user, you are performing an illegal operation!",
            )
        if not user.status:
            raise ChatError(
                ErrorKind.UNAUTHORIZED,
                "Your account has been disabled. Please contact the administrator.",
            )
        if user.power < model.power:
            raise ChatError(
                ErrorKind.QUOTA_EXHAUSTED,
                f"Your remaining power {user.power} is not enough to pay for one "
                f"conversation with the current model ({model.power}).",
            )
        if 0 < user.expired_time <= int(time.time()):
            raise ChatError(
                ErrorKind.ACCOUNT_EXPIRED,
                "Your account has expired. Please contact the administrator.",
            )
        return user

    @staticmethod
    def _build_request(model: ChatModel, stream: bool) -> dict:
        request = {
            "model": model.value,
            "stream": stream,
            "temperature": model.temperature,
        }
        if model.value.startswith(COMPLETION_TOKENS_PREFIXES):
            request["max_completion_tokens"] = model.max_tokens
        else:
            request["max_tokens"] = model.max_tokens
        return request

    def _load_tools(self, data: ChatInput, model: ChatModel) -> ToolRegistry:
        if not data.tools or model.value.startswith(NO_TOOLS_PREFIXES):
            return ToolRegistry()
        return ToolRegistry.load(self.store, list(data.tools))

    async def chat(self, data: ChatInput) -> AsyncIterator[str]:
        """Run one turn, yielding SSE frames."""
        self._refresh_settings()

        role = self.store.get_role(data.role_id)
        if role is None or not role.enabled:
            yield ChatEvent(
                EVENT_ERROR,
                "The chat role does not exist or is disabled. Please choose another role.",
            ).to_sse()
            return

        model_id = role.model_id if role.model_id > 0 else data.model_id
        model = self.store.get_model(model_id)
        if model is None or not model.enabled:
            yield ChatEvent(
                EVENT_ERROR,
                "The AI model is not enabled. Please choose another model.",
            ).to_sse()
            return

        token = self.cancellations.register(data.session_id)
        try:
            async for event in self._send_message(data, role, model, token):
                yield event.to_sse()
        except ChatError as e:
            if e.kind is ErrorKind.CANCELLED:
                logger.info("User cancelled the request: %s", data.content[:80])
            else:
                logger.warning("Chat %s failed (%s): %s", data.chat_id, e.kind.value, e.message)
                yield ChatEvent(EVENT_ERROR, e.message).to_sse()
                return
        finally:
            self.cancellations.release(data.session_id, token)

        yield ChatEvent(EVENT_END, "Conversation complete").to_sse()

    async def _send_message(
        self, data: ChatInput, role: ChatRole, model: ChatModel, token: CancelToken
    ) -> AsyncIterator[ChatEvent]:
        user = self._validate_user(data.user_id, model)
        prompt_tokens = self.assembler.check_prompt(data.content, model)

        request = self._build_request(model, data.stream)
        started_at = time.time()

        registry = self._load_tools(data, model)
        tools = registry.specs()
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        history = self.assembler.assemble(
            data.chat_id, role, model, prompt_tokens, tools, data.last_msg_id
        )
        resolved = await self.resolver.resolve(data.content, model, list(data.files))
        request["messages"] = history + [{"role": "user", "content": resolved.content}]

        session = ChatSession(
            chat_id=data.chat_id,
            user=user,
            role=role,
            model=model,
            files=list(data.files),
            prompt_created_at=int(time.time()),
        )
        result = TurnResult()
        async with self.gateway.dispatch(request, model, token) as response:
            if response.is_event_stream:
                session.reply_created_at = int(time.time())
                processor = StreamProcessor(self.invoker, registry.functions, user.id)
                async for event in processor.run(response):
                    yield event
                result.content = processor.state.text
                result.usage = processor.state.usage
            else:
                completion = await complete_once(response, model.value, started_at)
                yield text_delta(completion.content)
                result.content = completion.content
                result.usage = completion.usage
                session.reply_created_at = int(time.time())

        if result.content:
            usage = Usage.from_upstream(data.content, result.content, result.usage)
            self.ledger.commit(
                request, usage, {"role": "assistant", "content": result.content}, session
            )

    def stop(self, session_id: str) -> bool:
        return self.cancellations.cancel(session_id)

    def count_tokens(self, text: str, model: str, chat_id: str = "", user_id: int = 0) -> int:
        """
        Token count of `text`, or, with no text, the stored token total of the
        user's last message in `chat_id`.
        """
        if not text and chat_id:
            msg = self.store.last_message(user_id, chat_id)
            if msg is None:
                raise ChatError(ErrorKind.INVALID_ARGS, f"no messages in chat {chat_id}")
            return msg.tokens
        return self.accountant.count(text, model)
