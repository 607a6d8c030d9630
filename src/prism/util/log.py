from __future__ import annotations

import sys


def log(msg: str) -> None:
    # stderr keeps diagnostics out of piped command output.
    try:
        print(f"[prism] {msg}", file=sys.stderr, flush=True)
    except Exception:
        pass
