from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Optional

from prism.state.migrations import migrate
from prism.state.models import (
    DailyUsage,
    Message,
    ModelUsage,
    Project,
    StoreSnapshot,
    Thread,
    ToolCall,
)

_ACTIVE_PROJECT_KEY = "active_project_id"
_ACTIVE_THREAD_KEY = "active_thread_id"


class StateDB:
    """SQLite persistence for store snapshots."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def open(self) -> None:
        if self._conn is not None:
            return
        path = self._db_path
        if path != ":memory:":
            path = str(Path(path).expanduser())
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        migrate(conn)
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("StateDB not opened")
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def save_snapshot(self, snapshot: StoreSnapshot) -> None:
        """Rewrite every row in one transaction."""
        conn = self.conn
        with conn:
            for table in ("projects", "threads", "messages", "tool_calls", "daily_usage", "model_usage", "app_state"):
                conn.execute(f"DELETE FROM {table}")

            for p_pos, p in enumerate(snapshot.projects):
                conn.execute(
                    "INSERT INTO projects (id, position, name, work_dir, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (p.id, p_pos, p.name, p.work_dir, p.created_at, p.updated_at),
                )
                for t_pos, t in enumerate(p.threads):
                    self._insert_thread(conn, p.id, t_pos, t)

            conn.executemany(
                """
                INSERT INTO daily_usage (date, input_tokens, output_tokens, sessions, estimated_cost)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(d.date, d.input_tokens, d.output_tokens, d.sessions, d.estimated_cost) for d in snapshot.daily_usage],
            )
            conn.executemany(
                "INSERT INTO model_usage (model, input_tokens, output_tokens) VALUES (?, ?, ?)",
                [(m.model, m.input_tokens, m.output_tokens) for m in snapshot.model_usage],
            )
            conn.executemany(
                "INSERT INTO app_state (key, value) VALUES (?, ?)",
                [
                    (_ACTIVE_PROJECT_KEY, snapshot.active_project_id),
                    (_ACTIVE_THREAD_KEY, snapshot.active_thread_id),
                ],
            )

    @staticmethod
    def _insert_thread(conn: sqlite3.Connection, project_id: str, position: int, t: Thread) -> None:
        conn.execute(
            """
            INSERT INTO threads (
              id, project_id, position, title, work_dir, branch, has_worktree, status,
              total_input_tokens, total_output_tokens, error, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                t.id,
                project_id,
                position,
                t.title,
                t.work_dir,
                t.branch,
                1 if t.has_worktree else 0,
                t.status,
                t.total_input_tokens,
                t.total_output_tokens,
                t.error,
                t.created_at,
                t.updated_at,
            ),
        )
        for m_pos, m in enumerate(t.messages):
            conn.execute(
                """
                INSERT INTO messages (
                  id, thread_id, position, role, content, timestamp, input_tokens, output_tokens
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (m.id, t.id, m_pos, m.role, m.content, m.timestamp, m.input_tokens, m.output_tokens),
            )
            for tc_pos, tc in enumerate(m.tool_calls):
                conn.execute(
                    """
                    INSERT INTO tool_calls (
                      id, thread_id, message_id, position, name, input_json, output, status, expanded, timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tc.id,
                        t.id,
                        m.id,
                        tc_pos,
                        tc.name,
                        json.dumps(tc.input),
                        tc.output,
                        tc.status,
                        1 if tc.expanded else 0,
                        tc.timestamp,
                    ),
                )

    def load_snapshot(self) -> StoreSnapshot:
        conn = self.conn
        tool_calls: dict[tuple[str, str], list[ToolCall]] = {}
        for row in conn.execute("SELECT * FROM tool_calls ORDER BY thread_id, message_id, position"):
            tool_calls.setdefault((row["thread_id"], row["message_id"]), []).append(
                ToolCall(
                    id=str(row["id"]),
                    name=str(row["name"]),
                    input=_load_input(row["input_json"]),
                    timestamp=int(row["timestamp"]),
                    output=row["output"],
                    status=row["status"],
                    expanded=bool(row["expanded"]),
                )
            )

        messages: dict[str, list[Message]] = {}
        for row in conn.execute("SELECT * FROM messages ORDER BY thread_id, position"):
            thread_id = str(row["thread_id"])
            messages.setdefault(thread_id, []).append(
                Message(
                    id=str(row["id"]),
                    role=row["role"],
                    content=str(row["content"]),
                    timestamp=int(row["timestamp"]),
                    tool_calls=tool_calls.get((thread_id, str(row["id"])), []),
                    input_tokens=row["input_tokens"],
                    output_tokens=row["output_tokens"],
                )
            )

        threads: dict[str, list[Thread]] = {}
        for row in conn.execute("SELECT * FROM threads ORDER BY project_id, position"):
            threads.setdefault(str(row["project_id"]), []).append(
                Thread(
                    id=str(row["id"]),
                    project_id=str(row["project_id"]),
                    title=str(row["title"]),
                    work_dir=str(row["work_dir"]),
                    created_at=int(row["created_at"]),
                    updated_at=int(row["updated_at"]),
                    branch=row["branch"],
                    has_worktree=bool(row["has_worktree"]),
                    status=row["status"],
                    messages=messages.get(str(row["id"]), []),
                    total_input_tokens=int(row["total_input_tokens"]),
                    total_output_tokens=int(row["total_output_tokens"]),
                    error=row["error"],
                )
            )

        projects = [
            Project(
                id=str(row["id"]),
                name=str(row["name"]),
                work_dir=str(row["work_dir"]),
                created_at=int(row["created_at"]),
                updated_at=int(row["updated_at"]),
                threads=threads.get(str(row["id"]), []),
            )
            for row in conn.execute("SELECT * FROM projects ORDER BY position")
        ]

        daily = [
            DailyUsage(
                date=str(row["date"]),
                input_tokens=int(row["input_tokens"]),
                output_tokens=int(row["output_tokens"]),
                sessions=int(row["sessions"]),
                estimated_cost=float(row["estimated_cost"]),
            )
            for row in conn.execute("SELECT * FROM daily_usage ORDER BY date")
        ]
        models = [
            ModelUsage(model=str(row["model"]), input_tokens=int(row["input_tokens"]), output_tokens=int(row["output_tokens"]))
            for row in conn.execute("SELECT * FROM model_usage ORDER BY model")
        ]
        app_state = {str(row["key"]): row["value"] for row in conn.execute("SELECT key, value FROM app_state")}

        return StoreSnapshot(
            projects=projects,
            active_project_id=app_state.get(_ACTIVE_PROJECT_KEY),
            active_thread_id=app_state.get(_ACTIVE_THREAD_KEY),
            daily_usage=daily,
            model_usage=models,
        )


def _load_input(raw: Any) -> dict[str, Any]:
    try:
        v = json.loads(raw) if raw else {}
    except ValueError:
        return {}
    return v if isinstance(v, dict) else {}
