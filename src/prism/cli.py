from __future__ import annotations

import asyncio
import json
import signal
import sys
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterator, Optional


def _require(mod: str) -> None:
    try:
        __import__(mod)
    except Exception as exc:  # pragma: no cover
        raise SystemExit(f"Missing dependency '{mod}'. Install project deps first.") from exc


_require("typer")
_require("yaml")

import typer  # noqa: E402
import yaml  # noqa: E402

from prism.claude.adapter import RunSettings  # noqa: E402
from prism.claude.approvals import ApprovalGate  # noqa: E402
from prism.claude.events import (  # noqa: E402
    ClaudeEvent,
    ErrorEvent,
    TextDelta,
    ToolCallComplete,
    ToolCallStart,
    parse_line_events,
)
from prism.claude.supervisor import ClaudeSupervisor  # noqa: E402
from prism.claude.tool_inputs import parse_tool_input, summarize_tool_input  # noqa: E402
from prism.config import Config, load_config, validate_config  # noqa: E402
from prism.constants import DEFAULT_CLAUDE_BIN, DEFAULT_DB_PATH, DEFAULT_MODEL  # noqa: E402
from prism.errors import PrismError  # noqa: E402
from prism.machines.local import LocalMachine  # noqa: E402
from prism.sessions.manager import SessionManager  # noqa: E402
from prism.state.db import StateDB  # noqa: E402
from prism.state.ledger import Pricing, UsageLedger  # noqa: E402
from prism.state.models import Project, Thread  # noqa: E402
from prism.state.store import ThreadStore  # noqa: E402
from prism.util.format import format_cost, format_tokens, truncate  # noqa: E402
from prism.workspace.worktree import WorktreeManager  # noqa: E402

app = typer.Typer(add_completion=False, no_args_is_help=True)

# After a turn leaves `running`, claude may still ask for a permission or open the
# next message; wait this long for that before handing the prompt back.
_TURN_SETTLE_SECONDS = 0.5


def _load_or_exit(config: Path) -> Config:
    cfg = load_config(config)
    errors = validate_config(cfg, validate_binaries=False)
    if errors:
        for e in errors:
            typer.echo(f"ERROR: {e}")
        raise typer.Exit(2)
    return cfg


def _new_ledger(cfg: Config) -> UsageLedger:
    return UsageLedger(
        pricing=Pricing(
            input_per_million=cfg.pricing.input_per_million,
            output_per_million=cfg.pricing.output_per_million,
        ),
        retention_days=cfg.usage.retention_days,
        default_model=cfg.claude.model,
    )


def _open_store(cfg: Config) -> tuple[StateDB, ThreadStore]:
    db = StateDB(cfg.state.db_path)
    db.open()
    store = ThreadStore(ledger=_new_ledger(cfg), model=cfg.claude.model)
    store.restore(db.load_snapshot())
    return db, store


@app.command("validate-config")
def validate_config_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
    check_binaries: bool = typer.Option(True, "--check-binaries/--no-check-binaries"),
) -> None:
    cfg = load_config(config)
    errors = validate_config(cfg, validate_binaries=check_binaries)
    if errors:
        for e in errors:
            typer.echo(f"ERROR: {e}")
        raise typer.Exit(2)
    typer.echo("OK")


@app.command("setup")
def setup_cmd(
    config: Path = typer.Option(Path("config.yaml"), "--config", "-c", dir_okay=False),
    force: bool = typer.Option(False, "--force", "-f"),
) -> None:
    """
    Interactive setup wizard that writes a starter config.yaml.
    """

    if config.exists() and not force:
        typer.echo(f"ERROR: Refusing to overwrite existing file: {config}")
        raise typer.Exit(1)

    db_path = typer.prompt("Step 1/4: SQLite state DB path", default=DEFAULT_DB_PATH).strip()
    if not db_path:
        typer.echo("ERROR: db_path cannot be empty")
        raise typer.Exit(2)

    claude_bin = typer.prompt("Step 2/4: Claude binary", default=DEFAULT_CLAUDE_BIN).strip()
    if not claude_bin:
        typer.echo("ERROR: claude.bin cannot be empty")
        raise typer.Exit(2)

    model = typer.prompt("Step 3/4: Model", default=DEFAULT_MODEL).strip()
    if not model:
        typer.echo("ERROR: claude.model cannot be empty")
        raise typer.Exit(2)

    default_work_dir = typer.prompt("Step 4/4: Default project directory", default=str(Path.cwd())).strip()
    if not default_work_dir or not (Path(default_work_dir).is_absolute() or default_work_dir.startswith("~")):
        typer.echo("ERROR: default project directory must be absolute (or start with ~)")
        raise typer.Exit(2)

    cfg: dict[str, Any] = {
        "claude": {
            "bin": claude_bin,
            "args": [],
            "model": model,
            "skip_permissions": False,
        },
        "state": {"db_path": db_path},
        "pricing": {"input_per_million": 3.0, "output_per_million": 15.0},
        "usage": {"retention_days": 90, "token_alert": 0},
        "approvals": {
            "high_risk_tools": ["Bash", "Write", "Edit", "MultiEdit", "NotebookEdit"],
            "medium_risk_tools": ["Read", "Glob", "Grep"],
        },
        "workspaces": {
            "base_dir": "~/.prism/worktrees",
            "default_work_dir": default_work_dir,
        },
    }

    config.parent.mkdir(parents=True, exist_ok=True)
    config.write_text(yaml.safe_dump(cfg, sort_keys=False), encoding="utf-8")
    typer.echo(f"Wrote {config}")
    typer.echo(f"Next: prism validate-config --config {config}")


@app.command("decode")
def decode_cmd(
    source: str = typer.Argument("-", help="A captured stream-json file, or - for stdin."),
    as_json: bool = typer.Option(False, "--json", help="Print each event as a JSON object."),
) -> None:
    """
    Decode a captured `claude --output-format stream-json` stream, one event per line.
    """

    fh = sys.stdin if source == "-" else open(source, encoding="utf-8")
    try:
        for line in fh:
            for ev in parse_line_events(line):
                name = type(ev).__name__
                if as_json:
                    typer.echo(json.dumps({"event": name, **asdict(ev)}))
                else:
                    typer.echo(f"{name} {truncate(json.dumps(asdict(ev)), max_chars=160)}")
    finally:
        if fh is not sys.stdin:
            fh.close()


@app.command("usage")
def usage_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
) -> None:
    """
    Token usage and estimated cost: today, the last 7 days, and per model.
    """

    cfg = _load_or_exit(config)
    db, store = _open_store(cfg)
    try:
        ledger = store.ledger
        today = ledger.today()
        week = ledger.week_total()
        if today is None:
            typer.echo("Today: no usage")
        else:
            typer.echo(
                f"Today: {format_tokens(today.input_tokens)} in / {format_tokens(today.output_tokens)} out, "
                f"{today.sessions} sessions, {format_cost(today.estimated_cost)}"
            )
        typer.echo(
            f"Last 7 days: {format_tokens(week.input_tokens)} in / {format_tokens(week.output_tokens)} out, "
            f"{format_cost(week.estimated_cost)}"
        )
        for m in ledger.models():
            typer.echo(f"  {m.model}: {format_tokens(m.input_tokens)} in / {format_tokens(m.output_tokens)} out")
        if ledger.over_daily_alert(cfg.usage.token_alert):
            typer.echo(f"WARNING: today's usage is over the {format_tokens(cfg.usage.token_alert)} token alert")
    finally:
        db.close()


def _thread_line(t: Thread) -> str:
    where = f" [{t.branch}]" if t.branch else ""
    tokens = format_tokens(t.total_input_tokens + t.total_output_tokens)
    return f"  {t.id[:8]} {t.title}{where} ({t.status}, {tokens} tokens)"


@app.command("projects")
def projects_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
) -> None:
    """
    List persisted projects and their threads, newest first.
    """

    cfg = _load_or_exit(config)
    db, store = _open_store(cfg)
    try:
        projects = store.list_projects()
        if not projects:
            typer.echo("No projects.")
            return
        for p in projects:
            typer.echo(f"{p.name} ({p.work_dir})")
            for t in p.threads:
                typer.echo(_thread_line(t))
    finally:
        db.close()


def _find_project(store: ThreadStore, name: str) -> Optional[Project]:
    for p in store.list_projects():
        if p.name == name:
            return p
    return None


def _print_event(thread_id: str, ev: ClaudeEvent) -> None:
    if isinstance(ev, TextDelta):
        sys.stdout.write(ev.text)
        sys.stdout.flush()
    elif isinstance(ev, ToolCallStart):
        typer.echo(f"\n> {ev.name}")
    elif isinstance(ev, ToolCallComplete):
        mark = "failed" if ev.is_error else "done"
        typer.echo(f"  [{mark}] {truncate(ev.result, max_chars=120)}")
    elif isinstance(ev, ErrorEvent):
        typer.echo(f"\nERROR: {ev.message}")


async def _drive_turn(manager: SessionManager, thread_id: str, *, stop: Optional[asyncio.Event] = None) -> Thread:
    """
    Answer permission prompts until the turn settles.

    Setting `stop` (Ctrl-C in `prism chat`) stops the thread and ends the turn early.
    """
    store = manager.store
    stop = stop or asyncio.Event()
    while True:
        if stop.is_set():
            await manager.stop_thread(thread_id)
            typer.echo("\n(stopped)")
            return store.get_thread(thread_id)
        pending = manager.gate.pending(thread_id)
        if pending is not None:
            tc = store.find_tool_call(thread_id, pending.tool_call_id)
            summary = (
                summarize_tool_input(parse_tool_input(tc.name, tc.input)) if tc is not None else pending.tool_name
            )
            approved = await asyncio.to_thread(
                typer.confirm,
                f"\n[{pending.risk} risk] allow {pending.tool_name}: {summary}?",
                default=pending.risk != "high",
            )
            await manager.resolve_permission(thread_id, pending.tool_call_id, approved)
            continue
        try:
            thread = await manager.wait_for_turn(thread_id, timeout=_TURN_SETTLE_SECONDS)
        except asyncio.TimeoutError:
            continue
        if stop.is_set():
            continue
        await asyncio.sleep(_TURN_SETTLE_SECONDS)
        if manager.gate.pending(thread_id) is None and store.get_thread(thread_id).status != "running":
            return thread


@contextmanager
def _interrupt_sets(event: asyncio.Event) -> Iterator[None]:
    """Route Ctrl-C to `event` instead of KeyboardInterrupt while the block runs."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, event.set)
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers here (Windows, or not the main thread).
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def _chat(cfg: Config, *, project_name: str, work_dir: str, thread_id: Optional[str], branch: Optional[str]) -> None:
    db, store = _open_store(cfg)
    machine = LocalMachine()
    supervisor = ClaudeSupervisor(
        machine=machine,
        settings=RunSettings(
            claude_bin=cfg.claude.bin,
            claude_args=cfg.claude.args,
            model=cfg.claude.model,
            skip_permissions=cfg.claude.skip_permissions,
        ),
    )
    gate = ApprovalGate(
        store,
        supervisor,
        high_risk_tools=cfg.approvals.high_risk_tools,
        medium_risk_tools=cfg.approvals.medium_risk_tools,
    )
    manager = SessionManager(
        store=store,
        supervisor=supervisor,
        gate=gate,
        worktrees=WorktreeManager(machine=machine, base_dir=cfg.workspaces.base_dir),
        on_event=_print_event,
    )

    try:
        project = _find_project(store, project_name)
        if project is None:
            project = store.create_project(project_name, str(Path(work_dir).expanduser().resolve()))
            typer.echo(f"Created project {project.name} ({project.work_dir})")

        if thread_id is not None:
            matches = [t for t in project.threads if t.id == thread_id or t.id.startswith(thread_id)]
            if len(matches) != 1:
                typer.echo(f"ERROR: no unique thread matches {thread_id!r} in {project.name}")
                raise typer.Exit(2)
            thread = matches[0]
            store.set_active_thread(thread.id)
        else:
            title = f"Thread {len(project.threads) + 1}"
            thread = await manager.create_thread(project.id, title, branch=branch)
            typer.echo(f"Started {thread.title} in {thread.work_dir}")

        while True:
            text = await asyncio.to_thread(typer.prompt, "\nyou", default="", show_default=False)
            text = text.strip()
            if not text:
                continue
            if text in ("/quit", "/exit"):
                break
            if text == "/stop":
                await manager.stop_thread(thread.id)
                continue
            try:
                await manager.send_user_message(thread.id, text)
            except PrismError as exc:
                typer.echo(f"ERROR: {exc}")
                continue
            stop = asyncio.Event()
            with _interrupt_sets(stop):
                done = await _drive_turn(manager, thread.id, stop=stop)
            if done.status == "error" and done.error:
                typer.echo(f"\n(thread error: {done.error})")
            db.save_snapshot(store.snapshot())
            if store.ledger.over_daily_alert(cfg.usage.token_alert):
                typer.echo(f"\nWARNING: today's usage is over the {format_tokens(cfg.usage.token_alert)} token alert")
    finally:
        await manager.shutdown()
        db.save_snapshot(store.snapshot())
        db.close()


@app.command("chat")
def chat_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
    project: str = typer.Option(..., "--project", "-p", help="Project name; created on first use."),
    work_dir: Optional[str] = typer.Option(None, "--work-dir", "-w", help="Project directory for a new project."),
    thread: Optional[str] = typer.Option(None, "--thread", "-t", help="Resume a thread (id or id prefix)."),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Run a new thread in its own git worktree."),
) -> None:
    """
    Chat with claude in one thread. Ctrl-C stops the running turn, /stop ends the
    thread's claude session, /quit exits.
    """

    cfg = _load_or_exit(config)
    try:
        asyncio.run(
            _chat(
                cfg,
                project_name=project,
                work_dir=work_dir or cfg.workspaces.default_work_dir,
                thread_id=thread,
                branch=branch,
            )
        )
    except PrismError as exc:
        typer.echo(f"ERROR: {exc}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        raise typer.Exit(130)


if __name__ == "__main__":  # pragma: no cover
    app()
