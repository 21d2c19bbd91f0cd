"""Persistence adapters: whole-document writes of gacha state and user records."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from .errors import StorageError
from .models import GachaState, UserRecord
from .utils import to_iso, utc_now

logger = logging.getLogger("gachabot.storage")

_STATE_KEY = "gacha"


class GachaStore(Protocol):
    async def init(self) -> None: ...

    async def get_gacha_state(self) -> GachaState: ...

    async def save_gacha_state(self, state: GachaState) -> None: ...

    async def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    async def save_user(self, user_id: str, user: UserRecord) -> None: ...

    async def get_all_users(self) -> List[Tuple[str, UserRecord]]: ...


class SQLiteStore:
    """Stores each document as a JSON payload in a local SQLite database."""

    def __init__(self, db_path: Path) -> None:
        db_path = Path(db_path)
        if str(db_path) != ":memory:" and not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    def _connect_db(self) -> sqlite3.Connection:
        if str(self._db_path) != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(str(self._db_path), isolation_level=None, check_same_thread=False)

    def _create_tables(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gacha_state (
                    key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gacha_users (
                    user_id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    async def init(self) -> None:
        async with self._lock:
            if self._conn is not None:
                return
            try:
                self._conn = self._connect_db()
                self._create_tables()
            except sqlite3.Error as exc:
                raise StorageError(f"Could not open gacha database {self._db_path}: {exc}") from exc
            logger.info("Gacha database ready at %s", self._db_path)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("SQLiteStore.init() must be awaited before use.")
        return self._conn

    async def get_gacha_state(self) -> GachaState:
        async with self._lock:
            conn = self._require_conn()
            try:
                row = conn.execute("SELECT payload FROM gacha_state WHERE key = ?", (_STATE_KEY,)).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"Could not read gacha state: {exc}") from exc
        if row is None:
            return GachaState()
        return GachaState.from_dict(_loads(row[0], "gacha state"))

    async def save_gacha_state(self, state: GachaState) -> None:
        payload = json.dumps(state.to_dict(), ensure_ascii=False)
        async with self._lock:
            conn = self._require_conn()
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO gacha_state (key, payload, updated_at) VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
                        """,
                        (_STATE_KEY, payload, to_iso(utc_now())),
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"Could not save gacha state: {exc}") from exc

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        async with self._lock:
            conn = self._require_conn()
            try:
                row = conn.execute("SELECT payload FROM gacha_users WHERE user_id = ?", (str(user_id),)).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"Could not read user {user_id}: {exc}") from exc
        if row is None:
            return None
        return UserRecord.from_dict(_loads(row[0], f"user {user_id}"))

    async def save_user(self, user_id: str, user: UserRecord) -> None:
        payload = json.dumps(user.to_dict(), ensure_ascii=False)
        async with self._lock:
            conn = self._require_conn()
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO gacha_users (user_id, payload, updated_at) VALUES (?, ?, ?)
                        ON CONFLICT(user_id) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
                        """,
                        (str(user_id), payload, to_iso(utc_now())),
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"Could not save user {user_id}: {exc}") from exc

    async def get_all_users(self) -> List[Tuple[str, UserRecord]]:
        async with self._lock:
            conn = self._require_conn()
            try:
                rows = conn.execute("SELECT user_id, payload FROM gacha_users ORDER BY user_id").fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"Could not list users: {exc}") from exc
        users: List[Tuple[str, UserRecord]] = []
        for user_id, payload in rows:
            try:
                users.append((str(user_id), UserRecord.from_dict(_loads(payload, f"user {user_id}"))))
            except StorageError as exc:
                logger.warning("Skipping unreadable user record: %s", exc)
        return users


class InMemoryStore:
    """Process-local store that deep-copies documents in and out."""

    def __init__(self) -> None:
        self._state: Dict[str, object] = {}
        self._users: Dict[str, Dict[str, object]] = {}
        self.state_saves = 0
        self.user_saves = 0

    async def init(self) -> None:
        return None

    async def get_gacha_state(self) -> GachaState:
        return GachaState.from_dict(copy.deepcopy(self._state))

    async def save_gacha_state(self, state: GachaState) -> None:
        self._state = copy.deepcopy(state.to_dict())
        self.state_saves += 1

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        raw = self._users.get(str(user_id))
        return UserRecord.from_dict(copy.deepcopy(raw)) if raw is not None else None

    async def save_user(self, user_id: str, user: UserRecord) -> None:
        self._users[str(user_id)] = copy.deepcopy(user.to_dict())
        self.user_saves += 1

    async def get_all_users(self) -> List[Tuple[str, UserRecord]]:
        return [(user_id, UserRecord.from_dict(copy.deepcopy(raw))) for user_id, raw in sorted(self._users.items())]


def _loads(payload: str, label: str) -> Dict[str, object]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StorageError(f"Corrupt JSON for {label}: {exc}") from exc
    if not isinstance(data, dict):
        raise StorageError(f"Stored {label} is not a JSON object.")
    return data


__all__ = ["GachaStore", "InMemoryStore", "SQLiteStore"]
