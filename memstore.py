# memstore.py
import os
import time
import uuid
import sqlite3
import asyncio
import logging
import datetime as _dt
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import orjson

from appconfig import DB_PATH
from errors import InvalidRequest, StorageError, UnsupportedMemoryType

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
# SQLite binds LIMIT as a signed 64-bit integer
MAX_LIMIT = 2**63 - 1


def _now_iso() -> str:
    # fixed width so created_at sorts lexically
    return _dt.datetime.now(_dt.timezone.utc).isoformat(timespec="microseconds")


def _as_json(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def _from_json(raw: Optional[str], default: Any) -> Any:
    if raw is None:
        return default
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        return default


def _get(payload: Any, key: str) -> Any:
    if isinstance(payload, dict):
        return payload.get(key)
    return None


def _get_str(payload: Any, key: str, default: str) -> str:
    v = _get(payload, key)
    return v if isinstance(v, str) else default


def _like(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _history_row(payload: Any) -> Tuple[str, Tuple[Any, ...]]:
    # {"messages": [...], "model": ..., "provider": ...} or the bare message list
    if isinstance(payload, dict) and "messages" in payload:
        messages = payload.get("messages")
        model = _get(payload, "model")
        provider = _get(payload, "provider")
    else:
        messages, model, provider = payload, None, None
    return (
        "INSERT INTO history (id, created_at, messages_json, model, provider) VALUES (?,?,?,?,?)",
        (_as_json(messages), model if isinstance(model, str) else None, provider if isinstance(provider, str) else None),
    )


def _pinned_row(payload: Any) -> Tuple[str, Tuple[Any, ...]]:
    tags = _get(payload, "tags")
    return (
        "INSERT INTO pinned (id, created_at, text, tags_json) VALUES (?,?,?,?)",
        (_get_str(payload, "text", ""), _as_json(tags if tags is not None else [])),
    )


def _preset_row(payload: Any) -> Tuple[str, Tuple[Any, ...]]:
    constraints = _get(payload, "constraints")
    routing = _get(payload, "routing_policy")
    return (
        "INSERT INTO presets (id, created_at, name, system_prompt, constraints_json, routing_policy_json) "
        "VALUES (?,?,?,?,?,?)",
        (
            _get_str(payload, "name", "Untitled"),
            _get_str(payload, "system_prompt", ""),
            _as_json(constraints if constraints is not None else {}),
            _as_json(routing if routing is not None else {}),
        ),
    )


def _settings_row(payload: Any) -> Tuple[str, Tuple[Any, ...]]:
    return (
        "INSERT INTO settings (id, created_at, key, value_json) VALUES (?,?,?,?)",
        (_get_str(payload, "key", "unknown"), _as_json(_get(payload, "value"))),
    )


_ROW_BUILDERS = {
    "history": _history_row,
    "pinned": _pinned_row,
    "preset": _preset_row,
    "settings": _settings_row,
}


class MemoryStore:
    """
    Append-only SQLite store for four record kinds (history, pinned, preset, settings).
    - One connection, one asyncio.Lock: every read and write is serialized.
    - SQLite calls run in a worker thread so the event loop keeps serving other requests.
    - Structured fields are stored as JSON text.
    """

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        parent = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(parent, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ——— SQLite schema
    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS history (
              id TEXT PRIMARY KEY,
              created_at TEXT NOT NULL,
              messages_json TEXT NOT NULL,
              model TEXT,
              provider TEXT
            );
            CREATE TABLE IF NOT EXISTS pinned (
              id TEXT PRIMARY KEY,
              created_at TEXT NOT NULL,
              text TEXT NOT NULL,
              tags_json TEXT
            );
            CREATE TABLE IF NOT EXISTS presets (
              id TEXT PRIMARY KEY,
              created_at TEXT NOT NULL,
              name TEXT NOT NULL,
              system_prompt TEXT,
              constraints_json TEXT,
              routing_policy_json TEXT
            );
            CREATE TABLE IF NOT EXISTS settings (
              id TEXT PRIMARY KEY,
              created_at TEXT NOT NULL,
              key TEXT NOT NULL,
              value_json TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        async with self._lock:
            work = asyncio.ensure_future(asyncio.to_thread(fn, *args))
            try:
                return await asyncio.shield(work)
            except asyncio.CancelledError:
                # the worker thread still owns the connection; hold the lock until it returns
                await asyncio.wait([work])
                raise
            except sqlite3.Error as e:
                raise StorageError(f"{type(e).__name__}: {e}") from e

    def _insert(self, sql: str, params: Sequence[Any]) -> None:
        with self._conn:
            self._conn.execute(sql, params)

    # ——— Writes
    async def store(self, kind: str, payload: Any) -> Dict[str, str]:
        builder = _ROW_BUILDERS.get(kind)
        if builder is None:
            raise UnsupportedMemoryType(kind)
        try:
            sql, fields = builder(payload)
        except orjson.JSONEncodeError as e:
            raise InvalidRequest(f"Payload cannot be stored: {e}") from e
        rid = str(uuid.uuid4())
        created_at = _now_iso()
        await self._run(self._insert, sql, (rid, created_at) + fields)
        logger.debug("Stored %s record %s", kind, rid)
        return {"id": rid, "stored_at": created_at}

    async def store_history_from_turn(
        self,
        messages: List[Dict[str, Any]],
        assistant_text: str,
        model: str,
        provider: str,
    ) -> str:
        """Write one history record for a chat turn, with the reply appended when non-blank."""
        all_msgs = list(messages)
        if assistant_text.strip():
            all_msgs.append({"role": "assistant", "content": assistant_text})
        res = await self.store("history", {"messages": all_msgs, "model": model, "provider": provider})
        return res["id"]

    # ——— Substring search
    def _query_sync(self, text: str, limit: int) -> List[Dict[str, Any]]:
        like = _like(text)
        c = self._conn.cursor()
        items: List[Dict[str, Any]] = []

        c.execute(
            "SELECT id, created_at, messages_json, model, provider FROM history "
            "WHERE messages_json LIKE ? ESCAPE '\\' ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (like, limit),
        )
        for r in c.fetchall():
            raw = r["messages_json"]
            items.append({
                "type": "history",
                "payload": {
                    "id": r["id"],
                    "created_at": r["created_at"],
                    "messages": _from_json(raw, raw),
                    "model": r["model"],
                    "provider": r["provider"],
                },
            })

        c.execute(
            "SELECT id, created_at, text, tags_json FROM pinned "
            "WHERE text LIKE ? ESCAPE '\\' ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (like, limit),
        )
        for r in c.fetchall():
            items.append({
                "type": "pinned",
                "payload": {
                    "id": r["id"],
                    "created_at": r["created_at"],
                    "text": r["text"],
                    "tags": _from_json(r["tags_json"], []),
                },
            })

        c.execute(
            "SELECT id, created_at, name, system_prompt, constraints_json, routing_policy_json FROM presets "
            "WHERE name LIKE ? ESCAPE '\\' ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (like, limit),
        )
        for r in c.fetchall():
            items.append({
                "type": "preset",
                "payload": {
                    "id": r["id"],
                    "created_at": r["created_at"],
                    "name": r["name"],
                    "system_prompt": r["system_prompt"],
                    "constraints": _from_json(r["constraints_json"], {}),
                    "routing_policy": _from_json(r["routing_policy_json"], {}),
                },
            })
        return items

    async def query(self, text: str, limit: Optional[int] = None) -> Dict[str, Any]:
        """Substring search over history, pinned and presets; ``limit`` applies per table."""
        start = time.perf_counter()
        n = limit if isinstance(limit, int) and limit > 0 else DEFAULT_LIMIT
        n = min(n, MAX_LIMIT)
        items = await self._run(self._query_sync, text or "", n)
        took_ms = int((time.perf_counter() - start) * 1000)
        logger.debug("Memory query %r -> %d items in %d ms", text, len(items), took_ms)
        return {"items": items, "took_ms": took_ms}

    def close(self) -> None:
        self._conn.close()


_STORE: Optional[MemoryStore] = None


def init_store(*, db_path: Optional[str] = None) -> MemoryStore:
    global _STORE
    if _STORE is None:
        _STORE = MemoryStore(db_path=db_path or DB_PATH)
    return _STORE
