"""Database layer for the Agapefy onboarding service.

Uses aiosqlite for async SQLite with WAL mode.
All tables are created on first startup via init_db().
"""

import json
import logging
import os
import sqlite3
import uuid
from pathlib import Path
from typing import Optional

import aiosqlite

logger = logging.getLogger(__name__)

DB_PATH = Path(os.environ.get("DB_PATH", Path(__file__).parent / "data" / "agapefy.db"))

ROUTINE_PLAYLIST_TITLE = "Minha Rotina"


class QueryError(Exception):
    """A backend query failed.

    Carries the same context the hosted backend reports for a failed request
    (message, details, hint, code) so callers can log it as structured fields.
    """

    def __init__(self, message: str, details: str | None = None, hint: str | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details
        self.hint = hint
        self.code = code

    @classmethod
    def from_sqlite(cls, exc: sqlite3.Error, query: str) -> "QueryError":
        return cls(
            message=str(exc),
            details=" ".join(query.split())[:200],
            hint=type(exc).__name__,
            code=getattr(exc, "sqlite_errorname", None),
        )

    def as_log_fields(self) -> dict:
        return {"error": self.message, "details": self.details, "hint": self.hint, "code": self.code}


class DatabaseManager:
    """Centralized database connection management.

    Uses the module-level DB_PATH so that monkeypatching DB_PATH in tests
    automatically applies to all queries. Every sqlite error is re-raised
    as QueryError.
    """

    def _path(self) -> str:
        return str(DB_PATH)

    async def fetch_one(self, query: str, params: tuple = ()) -> dict | None:
        """Execute query and return one row as dict, or None."""
        try:
            async with aiosqlite.connect(self._path()) as conn:
                await conn.execute("PRAGMA busy_timeout=5000")
                conn.row_factory = aiosqlite.Row
                cursor = await conn.execute(query, params)
                row = await cursor.fetchone()
                return dict(row) if row else None
        except sqlite3.Error as e:
            raise QueryError.from_sqlite(e, query) from e

    async def fetch_all(self, query: str, params: tuple = ()) -> list[dict]:
        """Execute query and return all rows as list of dicts."""
        try:
            async with aiosqlite.connect(self._path()) as conn:
                await conn.execute("PRAGMA busy_timeout=5000")
                conn.row_factory = aiosqlite.Row
                cursor = await conn.execute(query, params)
                rows = await cursor.fetchall()
                return [dict(r) for r in rows]
        except sqlite3.Error as e:
            raise QueryError.from_sqlite(e, query) from e

    async def execute(self, query: str, params: tuple = ()) -> None:
        """Execute a write query (INSERT/UPDATE/DELETE) with auto-commit."""
        await self.execute_returning_rowcount(query, params)

    async def execute_batch(self, queries: list[tuple[str, tuple]]) -> None:
        """Execute several write queries in one transaction."""
        current = ""
        try:
            async with aiosqlite.connect(self._path()) as conn:
                await conn.execute("PRAGMA busy_timeout=5000")
                await conn.execute("PRAGMA foreign_keys=ON")
                for query, params in queries:
                    current = query
                    await conn.execute(query, params)
                await conn.commit()
        except sqlite3.Error as e:
            raise QueryError.from_sqlite(e, current) from e

    async def execute_returning_row(self, queries: list[tuple[str, tuple]], fetch_query: str, fetch_params: tuple) -> dict | None:
        """Execute write queries then fetch a row in the same connection."""
        current = fetch_query
        try:
            async with aiosqlite.connect(self._path()) as conn:
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA busy_timeout=5000")
                await conn.execute("PRAGMA foreign_keys=ON")
                for query, params in queries:
                    current = query
                    await conn.execute(query, params)
                await conn.commit()
                current = fetch_query
                cursor = await conn.execute(fetch_query, fetch_params)
                row = await cursor.fetchone()
                return dict(row) if row else None
        except sqlite3.Error as e:
            raise QueryError.from_sqlite(e, current) from e

    async def execute_returning_rowcount(self, query: str, params: tuple = ()) -> int:
        """Execute a write query and return cursor.rowcount."""
        try:
            async with aiosqlite.connect(self._path()) as conn:
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA busy_timeout=5000")
                await conn.execute("PRAGMA foreign_keys=ON")
                cursor = await conn.execute(query, params)
                await conn.commit()
                return cursor.rowcount
        except sqlite3.Error as e:
            raise QueryError.from_sqlite(e, query) from e

    async def execute_returning_scalar(self, query: str, params: tuple = ()):
        """Execute query and return the first column of the first row."""
        try:
            async with aiosqlite.connect(self._path()) as conn:
                await conn.execute("PRAGMA busy_timeout=5000")
                cursor = await conn.execute(query, params)
                row = await cursor.fetchone()
                return row[0] if row else None
        except sqlite3.Error as e:
            raise QueryError.from_sqlite(e, query) from e


# Module-level singleton
_db = DatabaseManager()


async def init_db():
    """Create all tables if they don't exist. Called once at app startup."""
    logger.info("Initializing database at %s", DB_PATH)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(str(DB_PATH)) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA busy_timeout=5000")
        await db.execute("PRAGMA foreign_keys=ON")

        await db.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
                email TEXT UNIQUE COLLATE NOCASE,
                role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('admin','user')),
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)

        # is_active and form_type stay nullable: legacy rows predate both columns
        await db.execute("""
            CREATE TABLE IF NOT EXISTS admin_forms (
                id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
                name TEXT NOT NULL,
                description TEXT,
                schema TEXT NOT NULL DEFAULT '[]',
                onboard_step INTEGER,
                is_active INTEGER DEFAULT 1,
                form_type TEXT DEFAULT 'onboarding',
                parent_form_id TEXT REFERENCES admin_forms(id) ON DELETE SET NULL,
                allow_other_option INTEGER NOT NULL DEFAULT 0,
                other_option_label TEXT,
                created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
            )
        """)
        await db.execute("CREATE INDEX IF NOT EXISTS idx_admin_forms_step ON admin_forms(onboard_step)")

        await db.execute("""
            CREATE TABLE IF NOT EXISTS admin_form_responses (
                id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
                form_id TEXT NOT NULL REFERENCES admin_forms(id) ON DELETE CASCADE,
                user_id TEXT,
                answers TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
            )
        """)
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_form_responses_user ON admin_form_responses(user_id, form_id)"
        )

        # receives_daily_verse NULL means the user never answered the opt-in
        await db.execute("""
            CREATE TABLE IF NOT EXISTS whatsapp_users (
                id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
                user_id TEXT UNIQUE,
                phone_number TEXT UNIQUE,
                name TEXT,
                receives_daily_verse INTEGER,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
                updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS playlists (
                id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
                title TEXT NOT NULL,
                created_by TEXT,
                is_public INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        await db.execute("CREATE INDEX IF NOT EXISTS idx_playlists_owner ON playlists(created_by, title)")

        await db.execute("""
            CREATE TABLE IF NOT EXISTS playlist_audios (
                playlist_id TEXT NOT NULL REFERENCES playlists(id) ON DELETE CASCADE,
                audio_id TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                PRIMARY KEY (playlist_id, audio_id)
            )
        """)
        await db.commit()


def _to_bool(value) -> Optional[bool]:
    return None if value is None else bool(value)


def _load_json(raw, default):
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Could not decode JSON column value: %r", raw)
        return default


# --- Profiles ---

async def create_profile(email: str | None = None, role: str = "user", user_id: str | None = None) -> dict:
    """Insert a profile row. The id normally comes from the auth provider."""
    user_id = user_id or uuid.uuid4().hex
    return await _db.execute_returning_row(
        [("INSERT INTO profiles (id, email, role) VALUES (?, ?, ?)", (user_id, email, role))],
        "SELECT id, email, role, created_at FROM profiles WHERE id = ?",
        (user_id,),
    )


async def get_profile(user_id: str) -> dict | None:
    return await _db.fetch_one("SELECT id, email, role, created_at FROM profiles WHERE id = ?", (user_id,))


# --- App settings ---

async def get_settings(keys) -> dict[str, str]:
    """Return {key: value} for the requested keys that exist. Missing keys are omitted."""
    keys = list(keys)
    if not keys:
        return {}
    placeholders = ",".join("?" for _ in keys)
    rows = await _db.fetch_all(
        f"SELECT key, value FROM app_settings WHERE key IN ({placeholders})",
        tuple(keys),
    )
    return {r["key"]: r["value"] for r in rows if r["value"] is not None}


async def upsert_settings(values: dict[str, str]) -> None:
    """Insert or overwrite settings rows."""
    queries = [
        (
            "INSERT INTO app_settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = datetime('now')",
            (key, value),
        )
        for key, value in values.items()
    ]
    if queries:
        await _db.execute_batch(queries)


# --- Admin forms ---

_FORM_COLUMNS = (
    "id, name, description, schema, onboard_step, is_active, form_type, "
    "parent_form_id, allow_other_option, other_option_label, created_at"
)


def _form_from_row(row: dict) -> dict:
    form = dict(row)
    form["schema"] = _load_json(form.get("schema"), [])
    form["is_active"] = _to_bool(form.get("is_active"))
    form["allow_other_option"] = bool(form.get("allow_other_option"))
    return form


async def list_forms() -> list[dict]:
    """All forms ordered by onboard_step (NULLs first), then creation time."""
    rows = await _db.fetch_all(
        f"SELECT {_FORM_COLUMNS} FROM admin_forms "
        "ORDER BY onboard_step ASC NULLS FIRST, created_at ASC, rowid ASC"
    )
    return [_form_from_row(r) for r in rows]


async def get_form(form_id: str) -> dict | None:
    row = await _db.fetch_one(f"SELECT {_FORM_COLUMNS} FROM admin_forms WHERE id = ?", (form_id,))
    return _form_from_row(row) if row else None


async def create_form(
    name: str,
    description: str | None = None,
    schema: list | dict | None = None,
    form_type: str | None = "onboarding",
    onboard_step: int | None = None,
    is_active: bool | None = True,
    parent_form_id: str | None = None,
    allow_other_option: bool = False,
    other_option_label: str | None = None,
) -> dict:
    """Insert a form and return it."""
    form_id = uuid.uuid4().hex
    row = await _db.execute_returning_row(
        [(
            "INSERT INTO admin_forms (id, name, description, schema, onboard_step, is_active, "
            "form_type, parent_form_id, allow_other_option, other_option_label) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                form_id, name, description, json.dumps(schema if schema is not None else []),
                onboard_step, None if is_active is None else int(is_active), form_type,
                parent_form_id, int(allow_other_option), other_option_label,
            ),
        )],
        f"SELECT {_FORM_COLUMNS} FROM admin_forms WHERE id = ?",
        (form_id,),
    )
    return _form_from_row(row)


_UPDATABLE_FORM_FIELDS = {
    "name", "description", "schema", "onboard_step", "is_active", "form_type",
    "parent_form_id", "allow_other_option", "other_option_label",
}


async def update_form(form_id: str, **fields) -> dict | None:
    """Update the given columns. Returns the updated form or None if it doesn't exist."""
    sets, params = [], []
    for key, value in fields.items():
        if key not in _UPDATABLE_FORM_FIELDS:
            raise ValueError(f"Unknown form field: {key}")
        if key == "schema":
            value = json.dumps(value)
        elif key in ("is_active", "allow_other_option") and value is not None:
            value = int(value)
        sets.append(f"{key} = ?")
        params.append(value)
    if not sets:
        return await get_form(form_id)
    params.append(form_id)
    row = await _db.execute_returning_row(
        [(f"UPDATE admin_forms SET {', '.join(sets)} WHERE id = ?", tuple(params))],
        f"SELECT {_FORM_COLUMNS} FROM admin_forms WHERE id = ?",
        (form_id,),
    )
    return _form_from_row(row) if row else None


async def delete_form(form_id: str) -> bool:
    count = await _db.execute_returning_rowcount("DELETE FROM admin_forms WHERE id = ?", (form_id,))
    return count > 0


async def get_active_onboarding_form_ids() -> list[str]:
    rows = await _db.fetch_all(
        "SELECT id FROM admin_forms WHERE form_type = 'onboarding' AND is_active = 1"
    )
    return [r["id"] for r in rows]


async def find_onboarding_form_id_at_step(step: int) -> str | None:
    """Oldest onboarding form configured at the given step."""
    return await _db.execute_returning_scalar(
        "SELECT id FROM admin_forms WHERE form_type = 'onboarding' AND onboard_step = ? "
        "ORDER BY created_at ASC, rowid ASC LIMIT 1",
        (step,),
    )


# --- Form responses ---

async def save_form_response(form_id: str, answers: dict, user_id: str | None = None) -> str:
    """Insert a response row and return its id."""
    response_id = uuid.uuid4().hex
    await _db.execute(
        "INSERT INTO admin_form_responses (id, form_id, user_id, answers) VALUES (?, ?, ?, ?)",
        (response_id, form_id, user_id, json.dumps(answers)),
    )
    return response_id


async def get_answered_form_ids(user_id: str, form_ids: list[str]) -> set[str]:
    """Subset of form_ids the user has at least one response for."""
    if not form_ids:
        return set()
    placeholders = ",".join("?" for _ in form_ids)
    rows = await _db.fetch_all(
        f"SELECT DISTINCT form_id FROM admin_form_responses WHERE user_id = ? AND form_id IN ({placeholders})",
        (user_id, *form_ids),
    )
    return {r["form_id"] for r in rows}


async def get_latest_form_response(user_id: str, form_id: str) -> dict | None:
    row = await _db.fetch_one(
        "SELECT id, form_id, user_id, answers, created_at FROM admin_form_responses "
        "WHERE user_id = ? AND form_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
        (user_id, form_id),
    )
    if row:
        row["answers"] = _load_json(row.get("answers"), {})
    return row


async def delete_form_responses(user_id: str, form_ids: list[str]) -> int:
    if not form_ids:
        return 0
    placeholders = ",".join("?" for _ in form_ids)
    return await _db.execute_returning_rowcount(
        f"DELETE FROM admin_form_responses WHERE user_id = ? AND form_id IN ({placeholders})",
        (user_id, *form_ids),
    )


# --- WhatsApp users ---

_WHATSAPP_COLUMNS = "id, user_id, phone_number, name, receives_daily_verse, is_active, created_at, updated_at"


def _whatsapp_from_row(row: dict) -> dict:
    wa = dict(row)
    wa["receives_daily_verse"] = _to_bool(wa.get("receives_daily_verse"))
    wa["is_active"] = bool(wa.get("is_active"))
    return wa


async def get_whatsapp_user_by_user_id(user_id: str) -> dict | None:
    row = await _db.fetch_one(f"SELECT {_WHATSAPP_COLUMNS} FROM whatsapp_users WHERE user_id = ?", (user_id,))
    return _whatsapp_from_row(row) if row else None


async def get_whatsapp_user_by_phone(phone_number: str) -> dict | None:
    row = await _db.fetch_one(
        f"SELECT {_WHATSAPP_COLUMNS} FROM whatsapp_users WHERE phone_number = ?", (phone_number,)
    )
    return _whatsapp_from_row(row) if row else None


async def get_recent_unlinked_whatsapp_users(limit: int = 10) -> list[dict]:
    """Rows with a phone number but no user_id, most recently updated first."""
    rows = await _db.fetch_all(
        f"SELECT {_WHATSAPP_COLUMNS} FROM whatsapp_users "
        "WHERE user_id IS NULL AND phone_number IS NOT NULL "
        "ORDER BY updated_at DESC, rowid DESC LIMIT ?",
        (limit,),
    )
    return [_whatsapp_from_row(r) for r in rows]


async def create_whatsapp_user(
    phone_number: str | None,
    user_id: str | None = None,
    receives_daily_verse: bool | None = None,
    name: str | None = None,
) -> dict:
    row_id = uuid.uuid4().hex
    row = await _db.execute_returning_row(
        [(
            "INSERT INTO whatsapp_users (id, user_id, phone_number, name, receives_daily_verse) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                row_id, user_id, phone_number, name,
                None if receives_daily_verse is None else int(receives_daily_verse),
            ),
        )],
        f"SELECT {_WHATSAPP_COLUMNS} FROM whatsapp_users WHERE id = ?",
        (row_id,),
    )
    return _whatsapp_from_row(row)


async def update_whatsapp_phone(row_id: str, phone_number: str) -> dict | None:
    row = await _db.execute_returning_row(
        [(
            "UPDATE whatsapp_users SET phone_number = ?, "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now') WHERE id = ?",
            (phone_number, row_id),
        )],
        f"SELECT {_WHATSAPP_COLUMNS} FROM whatsapp_users WHERE id = ?",
        (row_id,),
    )
    return _whatsapp_from_row(row) if row else None


async def phone_in_use_by_other(phone_number: str, row_id: str) -> bool:
    found = await _db.execute_returning_scalar(
        "SELECT 1 FROM whatsapp_users WHERE phone_number = ? AND id != ?",
        (phone_number, row_id),
    )
    return found is not None


# --- Playlists ---

async def create_playlist(title: str, created_by: str | None, is_public: bool = False) -> dict:
    playlist_id = uuid.uuid4().hex
    return await _db.execute_returning_row(
        [(
            "INSERT INTO playlists (id, title, created_by, is_public) VALUES (?, ?, ?, ?)",
            (playlist_id, title, created_by, int(is_public)),
        )],
        "SELECT id, title, created_by, is_public, created_at FROM playlists WHERE id = ?",
        (playlist_id,),
    )


async def get_playlist(playlist_id: str) -> dict | None:
    return await _db.fetch_one(
        "SELECT id, title, created_by, is_public, created_at FROM playlists WHERE id = ?",
        (playlist_id,),
    )


async def get_routine_playlist(user_id: str) -> dict | None:
    """The user's private routine playlist, if it was ever created."""
    return await _db.fetch_one(
        "SELECT id, title, created_by, is_public, created_at FROM playlists "
        "WHERE created_by = ? AND title = ? AND is_public = 0 ORDER BY created_at ASC LIMIT 1",
        (user_id, ROUTINE_PLAYLIST_TITLE),
    )


async def add_playlist_audio(playlist_id: str, audio_id: str, position: int = 0) -> None:
    await _db.execute(
        "INSERT OR IGNORE INTO playlist_audios (playlist_id, audio_id, position) VALUES (?, ?, ?)",
        (playlist_id, audio_id, position),
    )


async def count_playlist_audios(playlist_id: str) -> int:
    count = await _db.execute_returning_scalar(
        "SELECT COUNT(*) FROM playlist_audios WHERE playlist_id = ?", (playlist_id,)
    )
    return count or 0
