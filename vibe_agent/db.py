from __future__ import annotations

import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS agent_sessions (
    session_id TEXT PRIMARY KEY,
    goal TEXT NOT NULL,
    status TEXT NOT NULL,
    failure_reason TEXT,
    summary TEXT,
    plan TEXT,
    prompt_tokens INTEGER NOT NULL DEFAULT 0,
    completion_tokens INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS agent_steps (
    session_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    kind TEXT NOT NULL,
    text TEXT NOT NULL,
    tool_name TEXT,
    tool_args TEXT,
    created_at REAL NOT NULL,
    PRIMARY KEY(session_id, seq),
    FOREIGN KEY(session_id) REFERENCES agent_sessions(session_id) ON DELETE CASCADE
);
"""


def ensure_db_permissions(db_path: str) -> None:
    db_path = os.path.abspath(db_path)
    os.makedirs(os.path.dirname(db_path), exist_ok=True)
    if not os.path.exists(db_path):
        try:
            fd = os.open(db_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            os.close(fd)
        except FileExistsError:
            pass
        except OSError:
            logging.warning("Failed to create database file %s securely.", db_path, exc_info=True)
    if os.name != "nt":
        try:
            os.chmod(db_path, 0o600)
        except OSError:
            logging.warning("Failed to chmod database file %s", db_path, exc_info=True)


@asynccontextmanager
async def get_connection(db_path: str) -> AsyncIterator[aiosqlite.Connection]:
    ensure_db_permissions(db_path)
    conn = await aiosqlite.connect(db_path)
    try:
        await conn.execute("PRAGMA foreign_keys=ON;")
        await conn.execute("PRAGMA journal_mode=WAL;")
        yield conn
    finally:
        await conn.close()


class SessionStore:
    """Append-only step log plus status for agent sessions."""

    def __init__(self, db_path: str) -> None:
        self.db_path = os.path.abspath(db_path)

    async def init(self) -> None:
        async with get_connection(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()

    async def create_session(self, session_id: str, goal: str, status: str) -> None:
        async with get_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO agent_sessions(session_id, goal, status, updated_at)
                VALUES(?,?,?, datetime('now'))
                ON CONFLICT(session_id) DO UPDATE SET
                  goal = excluded.goal,
                  status = excluded.status,
                  updated_at = datetime('now')
                """,
                (session_id, goal, status),
            )
            await db.commit()

    async def append_step(
        self,
        session_id: str,
        seq: int,
        kind: str,
        text: str,
        *,
        tool_name: Optional[str] = None,
        tool_args: Optional[Dict[str, Any]] = None,
        created_at: Optional[float] = None,
    ) -> None:
        async with get_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO agent_steps(session_id, seq, kind, text, tool_name, tool_args, created_at)
                VALUES(?,?,?,?,?,?,?)
                """,
                (
                    session_id,
                    int(seq),
                    kind,
                    text,
                    tool_name,
                    json.dumps(tool_args) if tool_args is not None else None,
                    float(created_at if created_at is not None else time.time()),
                ),
            )
            await db.commit()

    async def set_status(
        self,
        session_id: str,
        status: str,
        *,
        failure_reason: Optional[str] = None,
        summary: Optional[str] = None,
        usage: Optional[Dict[str, int]] = None,
    ) -> None:
        usage = usage or {}
        async with get_connection(self.db_path) as db:
            await db.execute(
                """
                UPDATE agent_sessions SET
                  status = ?,
                  failure_reason = ?,
                  summary = COALESCE(?, summary),
                  prompt_tokens = COALESCE(?, prompt_tokens),
                  completion_tokens = COALESCE(?, completion_tokens),
                  updated_at = datetime('now')
                WHERE session_id = ?
                """,
                (
                    status,
                    failure_reason,
                    summary,
                    usage.get("prompt_tokens"),
                    usage.get("completion_tokens"),
                    session_id,
                ),
            )
            await db.commit()

    async def save_plan(self, session_id: str, plan: List[Dict[str, Any]]) -> None:
        async with get_connection(self.db_path) as db:
            await db.execute(
                "UPDATE agent_sessions SET plan = ?, updated_at = datetime('now') WHERE session_id = ?",
                (json.dumps(plan), session_id),
            )
            await db.commit()

    async def load_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        async with get_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            rows = await db.execute_fetchall(
                "SELECT * FROM agent_sessions WHERE session_id = ?", (session_id,)
            )
            if not rows:
                return None
            row = dict(rows[0])
            steps = await db.execute_fetchall(
                "SELECT seq, kind, text, tool_name, tool_args, created_at FROM agent_steps "
                "WHERE session_id = ? ORDER BY seq",
                (session_id,),
            )
        row["plan"] = json.loads(row["plan"]) if row.get("plan") else []
        row["steps"] = [
            {
                "seq": s["seq"],
                "kind": s["kind"],
                "text": s["text"],
                "tool_name": s["tool_name"],
                "tool_args": json.loads(s["tool_args"]) if s["tool_args"] else None,
                "created_at": s["created_at"],
            }
            for s in steps
        ]
        return row

    async def list_sessions(self, limit: int = 20) -> List[Dict[str, Any]]:
        async with get_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            rows = await db.execute_fetchall(
                "SELECT session_id, goal, status, failure_reason, updated_at FROM agent_sessions "
                "ORDER BY updated_at DESC, rowid DESC LIMIT ?",
                (int(limit),),
            )
        return [dict(r) for r in rows]
