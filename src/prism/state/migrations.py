from __future__ import annotations

import sqlite3


def migrate(conn: sqlite3.Connection) -> None:
    # Minimal schema; rows carry a position column because list order is meaningful.
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS projects (
          id TEXT PRIMARY KEY,
          position INTEGER NOT NULL,
          name TEXT NOT NULL,
          work_dir TEXT NOT NULL,
          created_at INTEGER NOT NULL,
          updated_at INTEGER NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS threads (
          id TEXT PRIMARY KEY,
          project_id TEXT NOT NULL,
          position INTEGER NOT NULL,
          title TEXT NOT NULL,
          work_dir TEXT NOT NULL,
          branch TEXT,
          has_worktree INTEGER NOT NULL DEFAULT 0,
          status TEXT NOT NULL,
          total_input_tokens INTEGER NOT NULL DEFAULT 0,
          total_output_tokens INTEGER NOT NULL DEFAULT 0,
          error TEXT,
          created_at INTEGER NOT NULL,
          updated_at INTEGER NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS messages (
          id TEXT NOT NULL,
          thread_id TEXT NOT NULL,
          position INTEGER NOT NULL,
          role TEXT NOT NULL,
          content TEXT NOT NULL,
          timestamp INTEGER NOT NULL,
          input_tokens INTEGER,
          output_tokens INTEGER,
          PRIMARY KEY (thread_id, id)
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS tool_calls (
          id TEXT NOT NULL,
          thread_id TEXT NOT NULL,
          message_id TEXT NOT NULL,
          position INTEGER NOT NULL,
          name TEXT NOT NULL,
          input_json TEXT NOT NULL,
          output TEXT,
          status TEXT NOT NULL,
          expanded INTEGER NOT NULL DEFAULT 0,
          timestamp INTEGER NOT NULL,
          PRIMARY KEY (thread_id, id)
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS daily_usage (
          date TEXT PRIMARY KEY,
          input_tokens INTEGER NOT NULL DEFAULT 0,
          output_tokens INTEGER NOT NULL DEFAULT 0,
          sessions INTEGER NOT NULL DEFAULT 0,
          estimated_cost REAL NOT NULL DEFAULT 0
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS model_usage (
          model TEXT PRIMARY KEY,
          input_tokens INTEGER NOT NULL DEFAULT 0,
          output_tokens INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS app_state (
          key TEXT PRIMARY KEY,
          value TEXT
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_threads_project ON threads (project_id, position)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages (thread_id, position)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_tool_calls_message ON tool_calls (thread_id, message_id, position)")
    conn.commit()
