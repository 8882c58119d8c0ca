"""
FastAPI application, the ChatRelay entry point.

Endpoints:
  POST /api/chat/message   one chat turn, streamed back as SSE
  GET  /api/chat/stop      cancel the running generation of a session
  POST /api/chat/tokens    token count of a text, or of a chat's last message
  GET  /api/health         liveness
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from chatrelay import __version__
from chatrelay.billing import PowerBilling
from chatrelay.cancellation import CancellationRegistry
from chatrelay.config import get_chat_settings, get_config
from chatrelay.content import ContentResolver, ImageClassifier
from chatrelay.context import ContextAssembler
from chatrelay.errors import ChatError, TokenizerError
from chatrelay.extract import FileExtractor
from chatrelay.gateway import CompletionGateway
from chatrelay.ledger import SessionLedger
from chatrelay.policy import ApiUrlPolicy
from chatrelay.proxy import ChatInput, ChatProxy
from chatrelay.state import LockedMap
from chatrelay.storage.sqlite_store import SQLiteStore
from chatrelay.tokens import TokenAccountant
from chatrelay.tools import ToolInvoker


# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
proxy: ChatProxy | None = None
sqlite_store: SQLiteStore | None = None


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def build_proxy(cfg: dict, store: SQLiteStore, accountant: TokenAccountant | None = None) -> ChatProxy:
    """Wire the chat pipeline from config."""
    accountant = accountant or TokenAccountant()
    settings = get_chat_settings(cfg)
    content_cfg = cfg.get("content", {})

    context_cache = LockedMap()
    assembler = ContextAssembler(
        store,
        context_cache,
        accountant,
        enabled=settings["enable_context"],
        max_depth=settings["context_deep"],
    )
    resolver = ContentResolver(
        accountant,
        FileExtractor(
            timeout=content_cfg.get("extract_timeout", 60),
            max_chars=content_cfg.get("max_file_chars", 0),
        ),
        ImageClassifier(timeout=content_cfg.get("image_check_timeout", 5)),
        store=store,
        tika_host=content_cfg.get("tika_host", ""),
        exempt_models=settings["extract_exempt_models"],
    )
    gateway = CompletionGateway(
        store,
        ApiUrlPolicy(cfg.get("policy", {}).get("allowed_api_hosts", [])),
        timeout=cfg.get("upstream", {}).get("timeout", 120),
    )
    ledger = SessionLedger(
        store,
        context_cache,
        accountant,
        PowerBilling(store),
        enable_context=settings["enable_context"],
    )
    return ChatProxy(
        store=store,
        accountant=accountant,
        assembler=assembler,
        resolver=resolver,
        gateway=gateway,
        ledger=ledger,
        invoker=ToolInvoker(timeout=cfg.get("tools", {}).get("timeout", 30)),
        cancellations=CancellationRegistry(LockedMap()),
        settings=lambda: get_chat_settings(cfg),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global proxy, sqlite_store

    cfg = get_config()
    _setup_logging(cfg)
    logger = logging.getLogger(__name__)

    sqlite_store = SQLiteStore(cfg["storage"]["sqlite_path"])
    proxy = build_proxy(cfg, sqlite_store)

    settings = get_chat_settings(cfg)
    logger.info(
        "ChatRelay started, listening on %s:%s",
        cfg["server"]["host"],
        cfg["server"]["port"],
    )
    logger.info("Storage: SQLite=%s", cfg["storage"]["sqlite_path"])
    logger.info(
        "Context: %s (depth %d)",
        "enabled" if settings["enable_context"] else "disabled",
        settings["context_deep"],
    )
    tika = cfg.get("content", {}).get("tika_host", "")
    logger.info("File extraction: %s", tika or "text files only (no tika_host)")
    allowed = cfg.get("policy", {}).get("allowed_api_hosts", [])
    if not allowed:
        logger.warning("API URL allow-list is empty, any upstream host is accepted")

    yield

    logger.info("ChatRelay shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="ChatRelay",
    description="Context-aware chat relay for OpenAI-compatible APIs.",
    version=__version__,
    lifespan=lifespan,
)


def _success(data=None) -> JSONResponse:
    body = {"code": 0, "message": "success"}
    if data is not None:
        body["data"] = data
    return JSONResponse(body)


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse({"code": 1, "message": message}, status_code=status_code)


# ---------------------------------------------------------------------------
# Chat endpoints
# ---------------------------------------------------------------------------

@app.post("/api/chat/message")
async def chat_message(request: Request):
    """Run one chat turn and stream the events back."""
    try:
        body = await request.json()
    except ValueError:
        return _error("invalid JSON")
    try:
        data = ChatInput.from_dict(body)
    except ChatError as e:
        return _error(e.message)

    return StreamingResponse(
        proxy.chat(data),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/api/chat/stop")
async def chat_stop(session_id: str = ""):
    """Cancel a running generation. Unknown sessions are not an error."""
    if session_id:
        proxy.stop(session_id)
    return _success()


@app.post("/api/chat/tokens")
async def chat_tokens(request: Request):
    try:
        body = await request.json()
    except ValueError:
        return _error("invalid JSON")
    if not isinstance(body, dict):
        return _error("request body must be a JSON object")

    try:
        user_id = int(body.get("user_id") or 0)
    except (TypeError, ValueError):
        return _error("user_id must be an integer")

    try:
        tokens = proxy.count_tokens(
            text=str(body.get("text") or ""),
            model=str(body.get("model") or ""),
            chat_id=str(body.get("chat_id") or ""),
            user_id=user_id,
        )
    except ChatError as e:
        return _error(e.message)
    except TokenizerError as e:
        return _error(str(e), status_code=500)
    return _success(tokens)


@app.get("/api/health")
async def health():
    """Health check."""
    return JSONResponse({
        "status": "ok",
        "version": __version__,
        "active_sessions": len(proxy.cancellations) if proxy else 0,
    })
