from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from prism.constants import (
    DEFAULT_CLAUDE_BIN,
    DEFAULT_DB_PATH,
    DEFAULT_INPUT_COST_PER_MILLION,
    DEFAULT_MODEL,
    DEFAULT_OUTPUT_COST_PER_MILLION,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_WORKTREES_DIR,
    HIGH_RISK_TOOLS,
    MEDIUM_RISK_TOOLS,
)


class ConfigError(ValueError):
    pass


def _require_yaml() -> Any:
    try:
        import yaml  # type: ignore
    except Exception as exc:  # pragma: no cover
        raise ConfigError("PyYAML is required to load config. Install project deps.") from exc
    return yaml


def _as_dict(value: Any, *, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    raise ConfigError(f"Expected mapping at {where}, got {type(value).__name__}")


def _as_list(value: Any, *, where: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    raise ConfigError(f"Expected list at {where}, got {type(value).__name__}")


def _as_str(value: Any, *, where: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected string at {where}, got {type(value).__name__}")


def _as_int(value: Any, *, where: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Expected int at {where}, got bool")
    if isinstance(value, int):
        return value
    raise ConfigError(f"Expected int at {where}, got {type(value).__name__}")


def _as_float(value: Any, *, where: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise ConfigError(f"Expected number at {where}, got {type(value).__name__}")


def _as_opt_str(value: Any, *, where: str) -> Optional[str]:
    if value is None:
        return None
    return _as_str(value, where=where)


def _as_bool(value: Any, *, where: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected bool at {where}, got {type(value).__name__}")


def _as_str_tuple(value: Any, *, where: str) -> tuple[str, ...]:
    return tuple(_as_str(x, where=f"{where}[]") for x in _as_list(value, where=where))


@dataclass(frozen=True)
class ClaudeConfig:
    bin: str = DEFAULT_CLAUDE_BIN
    args: tuple[str, ...] = ()
    model: str = DEFAULT_MODEL
    skip_permissions: bool = False

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "ClaudeConfig":
        return ClaudeConfig(
            bin=_as_str(d.get("bin", DEFAULT_CLAUDE_BIN), where="claude.bin"),
            args=_as_str_tuple(d.get("args"), where="claude.args"),
            model=_as_str(d.get("model", DEFAULT_MODEL), where="claude.model"),
            skip_permissions=_as_bool(d.get("skip_permissions", False), where="claude.skip_permissions"),
        )


@dataclass(frozen=True)
class StateConfig:
    db_path: str = DEFAULT_DB_PATH

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "StateConfig":
        return StateConfig(db_path=_as_str(d.get("db_path", DEFAULT_DB_PATH), where="state.db_path"))


@dataclass(frozen=True)
class PricingConfig:
    input_per_million: float = DEFAULT_INPUT_COST_PER_MILLION
    output_per_million: float = DEFAULT_OUTPUT_COST_PER_MILLION

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "PricingConfig":
        return PricingConfig(
            input_per_million=_as_float(
                d.get("input_per_million", DEFAULT_INPUT_COST_PER_MILLION), where="pricing.input_per_million"
            ),
            output_per_million=_as_float(
                d.get("output_per_million", DEFAULT_OUTPUT_COST_PER_MILLION), where="pricing.output_per_million"
            ),
        )


@dataclass(frozen=True)
class UsageConfig:
    retention_days: int = DEFAULT_RETENTION_DAYS
    # Daily token threshold for a warning; 0 disables it.
    token_alert: int = 0

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "UsageConfig":
        return UsageConfig(
            retention_days=_as_int(d.get("retention_days", DEFAULT_RETENTION_DAYS), where="usage.retention_days"),
            token_alert=_as_int(d.get("token_alert", 0), where="usage.token_alert"),
        )


@dataclass(frozen=True)
class ApprovalsConfig:
    high_risk_tools: tuple[str, ...] = HIGH_RISK_TOOLS
    medium_risk_tools: tuple[str, ...] = MEDIUM_RISK_TOOLS

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "ApprovalsConfig":
        high = d.get("high_risk_tools")
        medium = d.get("medium_risk_tools")
        return ApprovalsConfig(
            high_risk_tools=HIGH_RISK_TOOLS if high is None else _as_str_tuple(high, where="approvals.high_risk_tools"),
            medium_risk_tools=(
                MEDIUM_RISK_TOOLS if medium is None else _as_str_tuple(medium, where="approvals.medium_risk_tools")
            ),
        )


@dataclass(frozen=True)
class WorkspacesConfig:
    base_dir: str = DEFAULT_WORKTREES_DIR
    default_work_dir: str = "~"

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "WorkspacesConfig":
        return WorkspacesConfig(
            base_dir=_as_str(d.get("base_dir", DEFAULT_WORKTREES_DIR), where="workspaces.base_dir"),
            default_work_dir=_as_str(d.get("default_work_dir", "~"), where="workspaces.default_work_dir"),
        )


@dataclass(frozen=True)
class Config:
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    state: StateConfig = field(default_factory=StateConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    approvals: ApprovalsConfig = field(default_factory=ApprovalsConfig)
    workspaces: WorkspacesConfig = field(default_factory=WorkspacesConfig)

    @staticmethod
    def from_dict(raw: Mapping[str, Any]) -> "Config":
        return Config(
            claude=ClaudeConfig.from_dict(_as_dict(raw.get("claude"), where="claude")),
            state=StateConfig.from_dict(_as_dict(raw.get("state"), where="state")),
            pricing=PricingConfig.from_dict(_as_dict(raw.get("pricing"), where="pricing")),
            usage=UsageConfig.from_dict(_as_dict(raw.get("usage"), where="usage")),
            approvals=ApprovalsConfig.from_dict(_as_dict(raw.get("approvals"), where="approvals")),
            workspaces=WorkspacesConfig.from_dict(_as_dict(raw.get("workspaces"), where="workspaces")),
        )


def load_config(path: Path) -> Config:
    yaml = _require_yaml()
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        raise ConfigError("Config file is empty")
    if not isinstance(raw, dict):
        raise ConfigError("Top-level config must be a mapping")
    return Config.from_dict(raw)


def validate_config(cfg: Config, *, validate_binaries: bool) -> list[str]:
    errors: list[str] = []

    if cfg.pricing.input_per_million < 0:
        errors.append("pricing.input_per_million must be >= 0")
    if cfg.pricing.output_per_million < 0:
        errors.append("pricing.output_per_million must be >= 0")

    if cfg.usage.retention_days < 7:
        # The weekly total reads the last 7 days of buckets.
        errors.append("usage.retention_days must be >= 7")
    if cfg.usage.token_alert < 0:
        errors.append("usage.token_alert must be >= 0")

    overlap = set(cfg.approvals.high_risk_tools) & set(cfg.approvals.medium_risk_tools)
    if overlap:
        errors.append(f"approvals: tools listed as both high and medium risk: {', '.join(sorted(overlap))}")

    if not cfg.workspaces.base_dir.strip():
        errors.append("workspaces.base_dir must be non-empty")
    elif not (Path(cfg.workspaces.base_dir).is_absolute() or cfg.workspaces.base_dir.startswith("~")):
        errors.append(f"workspaces.base_dir must be absolute: {cfg.workspaces.base_dir!r}")

    if not cfg.state.db_path.strip():
        errors.append("state.db_path must be non-empty")

    if validate_binaries:
        claude_bin = cfg.claude.bin
        if os.path.isabs(claude_bin):
            if not Path(claude_bin).exists():
                errors.append(f"claude.bin not found: {claude_bin!r}")
        elif not shutil.which(claude_bin):
            errors.append(f"claude.bin not found on PATH: {claude_bin!r}")
        if not shutil.which("git"):
            errors.append("git not found on PATH (needed for worktree isolation)")

    return errors
