"""
SQLite storage for users, roles, models, keys, tools and chat history.
This is the source of truth for everything the chat pipeline looks up.
Single portable file. Query with SQL.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from chatrelay.storage.models import (
    ApiKey,
    ChatItem,
    ChatMessage,
    ChatModel,
    ChatRole,
    File,
    Function,
    User,
)

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL,
    nickname TEXT DEFAULT '',
    avatar TEXT DEFAULT '',
    power INTEGER DEFAULT 0,
    status BOOLEAN DEFAULT 1,
    expired_time INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS chat_roles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT DEFAULT '',
    name TEXT NOT NULL,
    context_json TEXT DEFAULT '[]',
    icon TEXT DEFAULT '',
    model_id INTEGER DEFAULT 0,
    enabled BOOLEAN DEFAULT 1
);

CREATE TABLE IF NOT EXISTS chat_models (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    value TEXT NOT NULL,
    temperature REAL DEFAULT 1.0,
    max_tokens INTEGER DEFAULT 1024,
    max_context INTEGER DEFAULT 4096,
    power INTEGER DEFAULT 1,
    key_id INTEGER DEFAULT 0,
    enabled BOOLEAN DEFAULT 1,
    options TEXT DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS api_keys (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT DEFAULT '',
    type TEXT DEFAULT 'chat',
    value TEXT NOT NULL,
    api_url TEXT NOT NULL,
    proxy_url TEXT DEFAULT '',
    enabled BOOLEAN DEFAULT 1,
    last_used_at INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS functions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    label TEXT DEFAULT '',
    description TEXT DEFAULT '',
    parameters TEXT DEFAULT '{}',
    action TEXT DEFAULT '',
    token TEXT DEFAULT '',
    enabled BOOLEAN DEFAULT 1
);

CREATE TABLE IF NOT EXISTS files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER DEFAULT 0,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    ext TEXT DEFAULT '',
    size INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS chat_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    chat_id TEXT NOT NULL,
    role_id INTEGER DEFAULT 0,
    model TEXT DEFAULT '',
    type TEXT NOT NULL,
    icon TEXT DEFAULT '',
    tokens INTEGER DEFAULT 0,
    total_tokens INTEGER DEFAULT 0,
    content TEXT NOT NULL,
    use_context BOOLEAN DEFAULT 1,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id TEXT NOT NULL UNIQUE,
    user_id INTEGER NOT NULL,
    role_id INTEGER DEFAULT 0,
    model_id INTEGER DEFAULT 0,
    model TEXT DEFAULT '',
    title TEXT DEFAULT '',
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS power_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    type TEXT NOT NULL,
    amount INTEGER NOT NULL,
    balance INTEGER NOT NULL,
    model TEXT DEFAULT '',
    remark TEXT DEFAULT '',
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chat_messages_chat
    ON chat_messages(chat_id);
CREATE INDEX IF NOT EXISTS idx_api_keys_type
    ON api_keys(type, enabled, last_used_at);
CREATE INDEX IF NOT EXISTS idx_files_url
    ON files(url);
"""


def _role_from_row(row) -> ChatRole:
    try:
        context = json.loads(row["context_json"] or "[]")
    except ValueError:
        logger.warning("Role %s has undecodable context, ignoring it", row["id"])
        context = []
    return ChatRole(
        id=row["id"],
        key=row["key"],
        name=row["name"],
        context=context if isinstance(context, list) else [],
        icon=row["icon"],
        model_id=row["model_id"],
        enabled=bool(row["enabled"]),
    )


def _model_from_row(row) -> ChatModel:
    try:
        options = json.loads(row["options"] or "{}")
    except ValueError:
        options = {}
    return ChatModel(
        id=row["id"],
        name=row["name"],
        value=row["value"],
        temperature=row["temperature"],
        max_tokens=row["max_tokens"],
        max_context=row["max_context"],
        power=row["power"],
        key_id=row["key_id"],
        enabled=bool(row["enabled"]),
        options=options,
    )


def _key_from_row(row) -> ApiKey:
    return ApiKey(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        value=row["value"],
        api_url=row["api_url"],
        proxy_url=row["proxy_url"],
        enabled=bool(row["enabled"]),
        last_used_at=row["last_used_at"],
    )


def _function_from_row(row) -> Function:
    return Function(
        id=row["id"],
        name=row["name"],
        label=row["label"],
        description=row["description"],
        parameters=row["parameters"],
        action=row["action"],
        token=row["token"],
        enabled=bool(row["enabled"]),
    )


def _message_from_row(row) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        user_id=row["user_id"],
        chat_id=row["chat_id"],
        role_id=row["role_id"],
        model=row["model"],
        type=row["type"],
        icon=row["icon"],
        tokens=row["tokens"],
        total_tokens=row["total_tokens"],
        content=row["content"],
        use_context=bool(row["use_context"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SQLiteStore:
    """Thread-safe SQLite store (one connection per operation)."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Seeding (admin CRUD lives elsewhere; these exist so data can be loaded)
    # ------------------------------------------------------------------

    def add_user(self, user: User) -> User:
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT INTO users (username, nickname, avatar, power, status, expired_time)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (user.username, user.nickname, user.avatar, user.power,
                 user.status, user.expired_time),
            )
            user.id = cur.lastrowid
        return user

    def add_role(self, role: ChatRole) -> ChatRole:
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT INTO chat_roles (key, name, context_json, icon, model_id, enabled)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (role.key, role.name, json.dumps(role.context, ensure_ascii=False),
                 role.icon, role.model_id, role.enabled),
            )
            role.id = cur.lastrowid
        return role

    def add_model(self, model: ChatModel) -> ChatModel:
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT INTO chat_models
                   (name, value, temperature, max_tokens, max_context, power, key_id, enabled, options)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (model.name, model.value, model.temperature, model.max_tokens,
                 model.max_context, model.power, model.key_id, model.enabled,
                 json.dumps(model.options)),
            )
            model.id = cur.lastrowid
        return model

    def add_api_key(self, key: ApiKey) -> ApiKey:
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT INTO api_keys (name, type, value, api_url, proxy_url, enabled, last_used_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (key.name, key.type, key.value, key.api_url, key.proxy_url,
                 key.enabled, key.last_used_at),
            )
            key.id = cur.lastrowid
        return key

    def add_function(self, fn: Function) -> Function:
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT INTO functions (name, label, description, parameters, action, token, enabled)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (fn.name, fn.label, fn.description, fn.parameters, fn.action,
                 fn.token, fn.enabled),
            )
            fn.id = cur.lastrowid
        return fn

    def add_file(self, file: File) -> File:
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO files (user_id, name, url, ext, size) VALUES (?, ?, ?, ?, ?)",
                (file.user_id, file.name, file.url, file.ext, file.size),
            )
            file.id = cur.lastrowid
        return file

    # ------------------------------------------------------------------
    # Lookups used by the chat pipeline
    # ------------------------------------------------------------------

    def get_user(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return User(
            id=row["id"],
            username=row["username"],
            nickname=row["nickname"],
            avatar=row["avatar"],
            power=row["power"],
            status=bool(row["status"]),
            expired_time=row["expired_time"],
        )

    def get_role(self, role_id: int) -> ChatRole | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM chat_roles WHERE id = ?", (role_id,)).fetchone()
        return _role_from_row(row) if row else None

    def get_model(self, model_id: int) -> ChatModel | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM chat_models WHERE id = ?", (model_id,)).fetchone()
        return _model_from_row(row) if row else None

    def get_api_key(self, key_id: int) -> ApiKey | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM api_keys WHERE id = ?", (key_id,)).fetchone()
        return _key_from_row(row) if row else None

    def least_recently_used_key(self, key_type: str) -> ApiKey | None:
        """Enabled key of the given type that has been idle the longest."""
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM api_keys
                   WHERE type = ? AND enabled = 1
                   ORDER BY last_used_at ASC, id ASC
                   LIMIT 1""",
                (key_type,),
            ).fetchone()
        return _key_from_row(row) if row else None

    def touch_api_key(self, key_id: int, used_at: int):
        with self._connect() as conn:
            conn.execute(
                "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
                (used_at, key_id),
            )

    def get_functions(self, ids: list[int], enabled_only: bool = True) -> list[Function]:
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        sql = f"SELECT * FROM functions WHERE id IN ({placeholders})"
        if enabled_only:
            sql += " AND enabled = 1"
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id", list(ids)).fetchall()
        return [_function_from_row(r) for r in rows]

    def get_file_by_url(self, url: str) -> File | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM files WHERE url = ? ORDER BY id LIMIT 1", (url,)
            ).fetchone()
        if row is None:
            return None
        return File(
            id=row["id"], user_id=row["user_id"], name=row["name"],
            url=row["url"], ext=row["ext"], size=row["size"],
        )

    def get_context_messages(
        self, chat_id: str, limit: int, before_id: int | None = None
    ) -> list[ChatMessage]:
        """
        The newest `limit` context-eligible messages of a chat, oldest first.
        With before_id, only messages older than that id are considered
        (used when a reply is regenerated).
        """
        if limit <= 0:
            return []
        sql = "SELECT * FROM chat_messages WHERE chat_id = ? AND use_context = 1"
        params: list = [chat_id]
        if before_id:
            sql += " AND id < ?"
            params.append(before_id)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_message_from_row(r) for r in reversed(rows)]

    def get_messages(self, chat_id: str) -> list[ChatMessage]:
        """All messages of a chat in insertion order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_messages WHERE chat_id = ? ORDER BY id", (chat_id,)
            ).fetchall()
        return [_message_from_row(r) for r in rows]

    def last_message(self, user_id: int, chat_id: str) -> ChatMessage | None:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM chat_messages WHERE user_id = ? AND chat_id = ?
                   ORDER BY id DESC LIMIT 1""",
                (user_id, chat_id),
            ).fetchone()
        return _message_from_row(row) if row else None

    def save_message(self, msg: ChatMessage) -> ChatMessage:
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT INTO chat_messages
                   (user_id, chat_id, role_id, model, type, icon, tokens, total_tokens,
                    content, use_context, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (msg.user_id, msg.chat_id, msg.role_id, msg.model, msg.type, msg.icon,
                 msg.tokens, msg.total_tokens, msg.content, msg.use_context,
                 msg.created_at, msg.updated_at),
            )
            msg.id = cur.lastrowid
        logger.debug("Stored %s message %s (chat=%s)", msg.type, msg.id, msg.chat_id)
        return msg

    def get_chat_item(self, chat_id: str) -> ChatItem | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_items WHERE chat_id = ?", (chat_id,)
            ).fetchone()
        if row is None:
            return None
        return ChatItem(
            id=row["id"], chat_id=row["chat_id"], user_id=row["user_id"],
            role_id=row["role_id"], model_id=row["model_id"], model=row["model"],
            title=row["title"], created_at=row["created_at"],
        )

    def create_chat_item(self, item: ChatItem) -> bool:
        """Insert the chat summary unless one exists. Returns True if created."""
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO chat_items
                   (chat_id, user_id, role_id, model_id, model, title, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (item.chat_id, item.user_id, item.role_id, item.model_id,
                 item.model, item.title, item.created_at),
            )
            created = cur.rowcount > 0
            if created:
                item.id = cur.lastrowid
        return created
