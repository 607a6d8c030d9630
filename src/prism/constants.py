from __future__ import annotations

DEFAULT_DB_PATH = "prism.sqlite3"
DEFAULT_CLAUDE_BIN = "claude"
DEFAULT_MODEL = "claude-sonnet-4"

# Claude Sonnet 4 list pricing, USD per million tokens.
DEFAULT_INPUT_COST_PER_MILLION = 3.0
DEFAULT_OUTPUT_COST_PER_MILLION = 15.0

DEFAULT_RETENTION_DAYS = 90
WEEK_DAYS = 7

DEFAULT_WORKTREES_DIR = "~/.prism/worktrees"

HIGH_RISK_TOOLS = ("Bash", "Write", "Edit", "MultiEdit", "NotebookEdit")
MEDIUM_RISK_TOOLS = ("Read", "Glob", "Grep")
