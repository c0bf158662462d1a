from __future__ import annotations

import json
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from tracklog.auth import hash_password
from tracklog.utils import from_iso

SCHEMA_VERSION = 1


ROLE_ADMIN = "admin"
ROLE_USER = "user"


def now_ts() -> int:
    return int(time.time())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _opt_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


@dataclass(frozen=True)
class UserRow:
    id: int
    username: str
    role: str
    active: bool
    created_at: int
    updated_at: int


@dataclass(frozen=True)
class UserAuthRow:
    id: int
    username: str
    role: str
    password_hash: str
    active: bool


@dataclass(frozen=True)
class MarkerRow:
    user_id: int
    active_timer_start: Optional[str]
    active_timer_project_id: Optional[int]
    active_timer_category_id: Optional[int]


@dataclass(frozen=True)
class ProjectRow:
    id: int
    name: str
    description: str
    client_name: str
    active: bool
    created_at: int
    updated_at: int


@dataclass(frozen=True)
class CategoryRow:
    id: int
    name: str
    description: str
    color: str
    active: bool
    created_at: int
    updated_at: int


@dataclass(frozen=True)
class EntryRow:
    id: int
    user_id: int
    username: str
    project_id: Optional[int]
    project_name: Optional[str]
    category_id: Optional[int]
    category_name: Optional[str]
    start_time: str
    end_time: str
    duration_seconds: int
    notes: Optional[str]
    created_at: int
    updated_at: int

    @property
    def start(self) -> datetime:
        return from_iso(self.start_time)  # type: ignore[return-value]

    @property
    def end(self) -> datetime:
        return from_iso(self.end_time)  # type: ignore[return-value]

    def values(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "category_id": self.category_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_seconds": self.duration_seconds,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class AuditRow:
    id: int
    user_id: int
    action: str
    entity_type: str
    entity_id: str
    old_values: Optional[dict[str, Any]]
    new_values: Optional[dict[str, Any]]
    ip_address: Optional[str]
    created_at: int


class TracklogDB:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS settings (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            )
            """
        )
        version = self.get_setting_int("schema_version", 0)
        if version == 0:
            self.set_setting("schema_version", str(SCHEMA_VERSION))
            version = SCHEMA_VERSION
        if version > SCHEMA_VERSION:
            raise RuntimeError(f"Unsupported schema_version={version}")

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS projects (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              description TEXT NOT NULL DEFAULT '',
              client_name TEXT NOT NULL DEFAULT '',
              active INTEGER NOT NULL DEFAULT 1,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL
            )
            """
        )

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS categories (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              description TEXT NOT NULL DEFAULT '',
              color TEXT NOT NULL DEFAULT '',
              active INTEGER NOT NULL DEFAULT 1,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL
            )
            """
        )

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              username TEXT NOT NULL UNIQUE,
              password_hash TEXT NOT NULL,
              role TEXT NOT NULL DEFAULT 'user',
              active INTEGER NOT NULL DEFAULT 1,
              active_timer_start TEXT,
              active_timer_project_id INTEGER,
              active_timer_category_id INTEGER,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL,
              CHECK (active_timer_project_id IS NULL OR active_timer_category_id IS NULL),
              FOREIGN KEY(active_timer_project_id) REFERENCES projects(id) ON DELETE SET NULL,
              FOREIGN KEY(active_timer_category_id) REFERENCES categories(id) ON DELETE SET NULL
            )
            """
        )

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS time_entries (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id INTEGER NOT NULL,
              project_id INTEGER,
              category_id INTEGER,
              start_time TEXT NOT NULL,
              end_time TEXT NOT NULL,
              duration_seconds INTEGER NOT NULL,
              notes TEXT,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL,
              CHECK ((project_id IS NULL) <> (category_id IS NULL)),
              CHECK (end_time > start_time),
              CHECK (duration_seconds >= 0),
              FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
              FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE RESTRICT,
              FOREIGN KEY(category_id) REFERENCES categories(id) ON DELETE RESTRICT
            )
            """
        )

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_logs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id INTEGER NOT NULL,
              action TEXT NOT NULL,
              entity_type TEXT NOT NULL,
              entity_id TEXT NOT NULL,
              old_values TEXT,
              new_values TEXT,
              ip_address TEXT,
              created_at INTEGER NOT NULL
            )
            """
        )

        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_user_start ON time_entries(user_id, start_time)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_project ON time_entries(project_id)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_category ON time_entries(category_id)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_logs(entity_type, entity_id)")
        if version < SCHEMA_VERSION:
            self.set_setting("schema_version", str(SCHEMA_VERSION))
        self._conn.commit()

    def _write(self, sql: str, args: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                cur = self._conn.execute(sql, args)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return cur

    def _read_one(self, sql: str, args: tuple[Any, ...] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, args).fetchone()

    def _read_all(self, sql: str, args: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, args).fetchall()

    def set_setting(self, key: str, value: str) -> None:
        self._write(
            """
            INSERT INTO settings(key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """,
            (key, value),
        )

    def get_setting(self, key: str, default: str = "") -> str:
        row = self._read_one("SELECT value FROM settings WHERE key=?", (key,))
        if not row:
            return default
        value = row["value"]
        if value is None:
            return default
        return str(value)

    def get_setting_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get_setting(key, str(default)))
        except ValueError:
            return default

    def ensure_bootstrap_admin(self, username: str, password: str) -> None:
        user = (username or "admin").strip() or "admin"
        if self.get_user_by_name(user) is not None:
            return
        self.create_user(username=user, password_hash=hash_password(password), role=ROLE_ADMIN)

    def ensure_seed_data(self) -> None:
        p = self._read_one("SELECT COUNT(*) AS c FROM projects")
        c = self._read_one("SELECT COUNT(*) AS c FROM categories")
        if int(p["c"] or 0) > 0 or int(c["c"] or 0) > 0:
            return
        self.create_project(name="Internal", description="General internal work", client_name="")
        self.create_category(name="Meetings", description="Calls and meetings", color="#3B82F6")
        self.create_category(name="Admin", description="Email, planning, paperwork", color="#6B7280")

    def _to_user(self, row: sqlite3.Row) -> UserRow:
        return UserRow(
            id=int(row["id"]),
            username=str(row["username"]),
            role=str(row["role"]),
            active=bool(row["active"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )

    def get_user(self, user_id: int) -> UserRow | None:
        row = self._read_one("SELECT * FROM users WHERE id=?", (int(user_id),))
        if not row:
            return None
        return self._to_user(row)

    def get_user_by_name(self, username: str) -> UserRow | None:
        row = self._read_one("SELECT * FROM users WHERE username=?", (username,))
        if not row:
            return None
        return self._to_user(row)

    def get_user_auth(self, username: str) -> UserAuthRow | None:
        row = self._read_one("SELECT * FROM users WHERE username=?", (username,))
        if not row:
            return None
        return UserAuthRow(
            id=int(row["id"]),
            username=str(row["username"]),
            role=str(row["role"]),
            password_hash=str(row["password_hash"]),
            active=bool(row["active"]),
        )

    def create_user(self, *, username: str, password_hash: str, role: str = ROLE_USER) -> int:
        ts = now_ts()
        cur = self._write(
            """
            INSERT INTO users(username, password_hash, role, active, created_at, updated_at)
            VALUES (?, ?, ?, 1, ?, ?)
            """,
            (username, password_hash, role, ts, ts),
        )
        return int(cur.lastrowid)

    def set_user_password(self, *, username: str, new_password: str) -> bool:
        cur = self._write(
            "UPDATE users SET password_hash=?, updated_at=? WHERE username=?",
            (hash_password(new_password), now_ts(), username),
        )
        return int(cur.rowcount or 0) > 0

    def get_active_timer(self, user_id: int) -> MarkerRow | None:
        row = self._read_one(
            """
            SELECT id, active_timer_start, active_timer_project_id, active_timer_category_id
            FROM users WHERE id=?
            """,
            (int(user_id),),
        )
        if not row:
            return None
        return MarkerRow(
            user_id=int(row["id"]),
            active_timer_start=str(row["active_timer_start"]) if row["active_timer_start"] else None,
            active_timer_project_id=_opt_int(row["active_timer_project_id"]),
            active_timer_category_id=_opt_int(row["active_timer_category_id"]),
        )

    def set_active_timer(
        self,
        user_id: int,
        *,
        started_at: str,
        project_id: int | None,
        category_id: int | None,
    ) -> bool:
        cur = self._write(
            """
            UPDATE users
            SET active_timer_start=?, active_timer_project_id=?, active_timer_category_id=?, updated_at=?
            WHERE id=?
            """,
            (started_at, _opt_int(project_id), _opt_int(category_id), now_ts(), int(user_id)),
        )
        return int(cur.rowcount or 0) > 0

    def clear_active_timer(self, user_id: int) -> bool:
        cur = self._write(
            """
            UPDATE users
            SET active_timer_start=NULL, active_timer_project_id=NULL, active_timer_category_id=NULL, updated_at=?
            WHERE id=?
            """,
            (now_ts(), int(user_id)),
        )
        return int(cur.rowcount or 0) > 0

    def _to_project(self, row: sqlite3.Row) -> ProjectRow:
        return ProjectRow(
            id=int(row["id"]),
            name=str(row["name"]),
            description=str(row["description"] or ""),
            client_name=str(row["client_name"] or ""),
            active=bool(row["active"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )

    def list_projects(self, *, active_only: bool = True) -> list[ProjectRow]:
        sql = "SELECT * FROM projects"
        if active_only:
            sql += " WHERE active=1"
        rows = self._read_all(sql + " ORDER BY name")
        return [self._to_project(row) for row in rows]

    def get_project(self, project_id: int) -> ProjectRow | None:
        row = self._read_one("SELECT * FROM projects WHERE id=?", (int(project_id),))
        if not row:
            return None
        return self._to_project(row)

    def create_project(self, *, name: str, description: str = "", client_name: str = "") -> int:
        ts = now_ts()
        cur = self._write(
            """
            INSERT INTO projects(name, description, client_name, active, created_at, updated_at)
            VALUES (?, ?, ?, 1, ?, ?)
            """,
            (name, description, client_name, ts, ts),
        )
        return int(cur.lastrowid)

    def _to_category(self, row: sqlite3.Row) -> CategoryRow:
        return CategoryRow(
            id=int(row["id"]),
            name=str(row["name"]),
            description=str(row["description"] or ""),
            color=str(row["color"] or ""),
            active=bool(row["active"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )

    def list_categories(self, *, active_only: bool = True) -> list[CategoryRow]:
        sql = "SELECT * FROM categories"
        if active_only:
            sql += " WHERE active=1"
        rows = self._read_all(sql + " ORDER BY name")
        return [self._to_category(row) for row in rows]

    def get_category(self, category_id: int) -> CategoryRow | None:
        row = self._read_one("SELECT * FROM categories WHERE id=?", (int(category_id),))
        if not row:
            return None
        return self._to_category(row)

    def create_category(self, *, name: str, description: str = "", color: str = "") -> int:
        ts = now_ts()
        cur = self._write(
            """
            INSERT INTO categories(name, description, color, active, created_at, updated_at)
            VALUES (?, ?, ?, 1, ?, ?)
            """,
            (name, description, color, ts, ts),
        )
        return int(cur.lastrowid)

    def get_entry(self, entry_id: int) -> EntryRow | None:
        rows = self.list_entries(entry_id=int(entry_id))
        if rows:
            return rows[0]
        return None

    def list_entries(
        self,
        *,
        entry_id: int | None = None,
        user_id: int | None = None,
        from_time: str | None = None,
        to_time: str | None = None,
        project_id: int | None = None,
        category_id: int | None = None,
        covering: str | None = None,
        limit: int | None = None,
    ) -> list[EntryRow]:
        sql = """
            SELECT e.*,
                   u.username,
                   p.name AS project_name,
                   c.name AS category_name
            FROM time_entries e
            JOIN users u ON u.id=e.user_id
            LEFT JOIN projects p ON p.id=e.project_id
            LEFT JOIN categories c ON c.id=e.category_id
        """
        args: list[Any] = []
        clauses: list[str] = []
        if entry_id is not None:
            clauses.append("e.id=?")
            args.append(int(entry_id))
        if user_id is not None:
            clauses.append("e.user_id=?")
            args.append(int(user_id))
        if from_time:
            clauses.append("e.start_time>=?")
            args.append(from_time)
        if to_time:
            clauses.append("e.start_time<=?")
            args.append(to_time)
        if project_id is not None:
            clauses.append("e.project_id=?")
            args.append(int(project_id))
        if category_id is not None:
            clauses.append("e.category_id=?")
            args.append(int(category_id))
        if covering:
            clauses.append("e.start_time<=? AND e.end_time>?")
            args.extend([covering, covering])
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY e.start_time DESC, e.id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))

        rows = self._read_all(sql, tuple(args))
        out: list[EntryRow] = []
        for row in rows:
            out.append(
                EntryRow(
                    id=int(row["id"]),
                    user_id=int(row["user_id"]),
                    username=str(row["username"]),
                    project_id=_opt_int(row["project_id"]),
                    project_name=str(row["project_name"]) if row["project_name"] is not None else None,
                    category_id=_opt_int(row["category_id"]),
                    category_name=str(row["category_name"]) if row["category_name"] is not None else None,
                    start_time=str(row["start_time"]),
                    end_time=str(row["end_time"]),
                    duration_seconds=int(row["duration_seconds"]),
                    notes=str(row["notes"]) if row["notes"] is not None else None,
                    created_at=int(row["created_at"]),
                    updated_at=int(row["updated_at"]),
                )
            )
        return out

    def insert_entry(
        self,
        *,
        user_id: int,
        project_id: int | None,
        category_id: int | None,
        start_time: str,
        end_time: str,
        duration_seconds: int,
        notes: str | None,
    ) -> int:
        ts = now_ts()
        cur = self._write(
            """
            INSERT INTO time_entries(
              user_id, project_id, category_id, start_time, end_time,
              duration_seconds, notes, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(user_id),
                _opt_int(project_id),
                _opt_int(category_id),
                start_time,
                end_time,
                int(duration_seconds),
                notes,
                ts,
                ts,
            ),
        )
        return int(cur.lastrowid)

    def update_entry(
        self,
        *,
        entry_id: int,
        project_id: int | None,
        category_id: int | None,
        start_time: str,
        end_time: str,
        duration_seconds: int,
        notes: str | None,
    ) -> bool:
        cur = self._write(
            """
            UPDATE time_entries
            SET project_id=?, category_id=?, start_time=?, end_time=?,
                duration_seconds=?, notes=?, updated_at=?
            WHERE id=?
            """,
            (
                _opt_int(project_id),
                _opt_int(category_id),
                start_time,
                end_time,
                int(duration_seconds),
                notes,
                now_ts(),
                int(entry_id),
            ),
        )
        return int(cur.rowcount or 0) > 0

    def delete_entry(self, entry_id: int) -> bool:
        cur = self._write("DELETE FROM time_entries WHERE id=?", (int(entry_id),))
        return int(cur.rowcount or 0) > 0

    def add_audit_log(
        self,
        *,
        user_id: int,
        action: str,
        entity_type: str,
        entity_id: str,
        old_values: dict[str, Any] | None,
        new_values: dict[str, Any] | None,
        ip_address: str | None,
    ) -> int:
        cur = self._write(
            """
            INSERT INTO audit_logs(
              user_id, action, entity_type, entity_id, old_values, new_values, ip_address, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(user_id),
                action,
                entity_type,
                str(entity_id),
                _json_dumps(old_values) if old_values is not None else None,
                _json_dumps(new_values) if new_values is not None else None,
                ip_address,
                now_ts(),
            ),
        )
        return int(cur.lastrowid)

    def list_audit_logs(self, *, entity_type: str | None = None, entity_id: str | None = None) -> list[AuditRow]:
        sql = "SELECT * FROM audit_logs"
        args: list[Any] = []
        clauses: list[str] = []
        if entity_type:
            clauses.append("entity_type=?")
            args.append(entity_type)
        if entity_id is not None:
            clauses.append("entity_id=?")
            args.append(str(entity_id))
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        out: list[AuditRow] = []
        for row in self._read_all(sql, tuple(args)):
            out.append(
                AuditRow(
                    id=int(row["id"]),
                    user_id=int(row["user_id"]),
                    action=str(row["action"]),
                    entity_type=str(row["entity_type"]),
                    entity_id=str(row["entity_id"]),
                    old_values=json.loads(row["old_values"]) if row["old_values"] else None,
                    new_values=json.loads(row["new_values"]) if row["new_values"] else None,
                    ip_address=str(row["ip_address"]) if row["ip_address"] else None,
                    created_at=int(row["created_at"]),
                )
            )
        return out
