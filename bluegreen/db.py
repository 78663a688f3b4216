from __future__ import annotations

import os
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .settings import settings

_db_path: str = settings.db_path


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    When the state directory is bind-mounted into a container, Docker creates
    a *directory* at a missing file path; in that case the DB file is placed
    inside it.
    """

    p = os.path.abspath(_db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "bluegreen.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: str | None = None) -> None:
    """Point the module at ``path`` (if given) and create tables if they do not exist."""
    global _db_path
    if path:
        _db_path = path
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS routes (
              route TEXT PRIMARY KEY,
              active_slot TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS releases (
              id TEXT PRIMARY KEY,
              route TEXT NOT NULL,
              build_id TEXT NOT NULL,
              artifact_ref TEXT NOT NULL,
              target_slot TEXT,
              state TEXT NOT NULL,
              error_code TEXT,
              message TEXT NOT NULL,
              started_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS leases (
              route TEXT PRIMARY KEY,
              holder TEXT NOT NULL,
              expires_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              route TEXT,
              release_id TEXT,
              build_id TEXT,
              from_state TEXT,
              to_state TEXT,
              from_slot TEXT,
              to_slot TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_release ON events(release_id);
            CREATE INDEX IF NOT EXISTS idx_releases_route ON releases(route);
            """
        )


def log_event(
    level: str,
    message: str,
    route: str | None = None,
    release_id: str | None = None,
    build_id: str | None = None,
    from_state: str | None = None,
    to_state: str | None = None,
    from_slot: str | None = None,
    to_slot: str | None = None,
) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO events (ts, level, route, release_id, build_id, from_state, to_state, from_slot, to_slot, message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (utc_now(), level.upper(), route, release_id, build_id, from_state, to_state, from_slot, to_slot, message),
        )


def latest_events(limit: int = 100, release_id: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if release_id:
            rows = conn.execute(
                "SELECT * FROM events WHERE release_id=? ORDER BY id DESC LIMIT ?", (release_id, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


# --- routes (Docker backend's ActiveRoute store) ---


@dataclass(frozen=True)
class RouteRow:
    route: str
    active_slot: str
    updated_at: str


def get_route(route: str) -> RouteRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM routes WHERE route=?", (route,)).fetchone()
        return RouteRow(**dict(row)) if row else None


def insert_route_if_absent(route: str, active_slot: str) -> RouteRow:
    with connect() as conn:
        conn.execute(
            "INSERT INTO routes (route, active_slot, updated_at) VALUES (?, ?, ?) ON CONFLICT(route) DO NOTHING",
            (route, active_slot, utc_now()),
        )
        row = conn.execute("SELECT * FROM routes WHERE route=?", (route,)).fetchone()
        return RouteRow(**dict(row))


def set_route_slot(route: str, active_slot: str) -> bool:
    """Repoint a route in one UPDATE statement. Returns False if the route is unknown."""
    with connect() as conn:
        cur = conn.execute(
            "UPDATE routes SET active_slot=?, updated_at=? WHERE route=?",
            (active_slot, utc_now(), route),
        )
        return cur.rowcount == 1


def list_routes() -> list[RouteRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM routes ORDER BY route").fetchall()
        return _rows_to_dataclass(rows, RouteRow)


# --- release history ---


@dataclass(frozen=True)
class ReleaseRow:
    id: str
    route: str
    build_id: str
    artifact_ref: str
    target_slot: str | None
    state: str
    error_code: str | None
    message: str
    started_at: str
    updated_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def upsert_release(
    release_id: str,
    route: str,
    build_id: str,
    artifact_ref: str,
    target_slot: str | None,
    state: str,
    message: str,
    error_code: str | None = None,
) -> None:
    now = utc_now()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO releases (id, route, build_id, artifact_ref, target_slot, state, error_code, message, started_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              artifact_ref=excluded.artifact_ref,
              target_slot=COALESCE(excluded.target_slot, releases.target_slot),
              state=excluded.state,
              error_code=excluded.error_code,
              message=excluded.message,
              updated_at=excluded.updated_at
            """,
            (release_id, route, build_id, artifact_ref, target_slot, state, error_code, message, now, now),
        )


def get_release(release_id: str) -> ReleaseRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM releases WHERE id=?", (release_id,)).fetchone()
        return ReleaseRow(**dict(row)) if row else None


def list_releases(route: str | None = None, limit: int = 50) -> list[ReleaseRow]:
    with connect() as conn:
        if route:
            rows = conn.execute(
                "SELECT * FROM releases WHERE route=? ORDER BY started_at DESC, rowid DESC LIMIT ?", (route, limit)
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM releases ORDER BY started_at DESC, rowid DESC LIMIT ?", (limit,)
            ).fetchall()
        return _rows_to_dataclass(rows, ReleaseRow)


# --- leases (one in-flight release per route) ---


def acquire_lease(route: str, holder: str, ttl_s: float) -> bool:
    """Take the route's lease if it is free, expired or already ours."""
    now = time.time()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO leases (route, holder, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(route) DO UPDATE SET
              holder=excluded.holder,
              expires_at=excluded.expires_at
            WHERE leases.expires_at < ? OR leases.holder = excluded.holder
            """,
            (route, holder, now + ttl_s, now),
        )
        row = conn.execute("SELECT holder FROM leases WHERE route=?", (route,)).fetchone()
        return bool(row) and row["holder"] == holder


def renew_lease(route: str, holder: str, ttl_s: float) -> bool:
    """Extend a lease this holder still owns. Never re-takes a lease that another holder took or released."""
    with connect() as conn:
        cur = conn.execute(
            "UPDATE leases SET expires_at=? WHERE route=? AND holder=?",
            (time.time() + ttl_s, route, holder),
        )
        return cur.rowcount == 1


def release_lease(route: str, holder: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM leases WHERE route=? AND holder=?", (route, holder))


def lease_holder(route: str) -> str | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT holder FROM leases WHERE route=? AND expires_at >= ?", (route, time.time())
        ).fetchone()
        return row["holder"] if row else None
