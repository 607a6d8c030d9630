from __future__ import annotations


def format_tokens(count: int) -> str:
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}K"
    return str(count)


def format_cost(usd: float) -> str:
    if usd < 0.001:
        return "<$0.001"
    if usd < 0.01:
        return f"${usd:.4f}"
    return f"${usd:.3f}"


def truncate(s: str, *, max_chars: int) -> str:
    one = " ".join((s or "").split())
    if len(one) > max_chars:
        return one[:max_chars].rstrip() + "..."
    return one
