"""Configuration loading and management for TaskPilot."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DATA_DIR = Path.home() / ".local" / "share" / "taskpilot"

LOG_LEVELS = ("minimal", "standard", "detailed")
EXPORT_FORMATS = ("json", "csv")


@dataclass
class CloudConfig:
    api_key: str = ""
    model: str = "gemini-1.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    max_attempts: int = 3
    retry_backoff: float = 1.0  # seconds; doubles each retry
    degraded_threshold: int = 3
    degraded_window: float = 60.0
    max_prompt_chars: int = 100_000


@dataclass
class LocalConfig:
    model_path: str = "auto"
    hf_repo: str = "ggml-org/gemma-3-1b-it-GGUF"
    hf_file: str = "gemma-3-1b-it-Q4_K_M.gguf"
    cache_dir: str = ""  # "" = ~/.local/share/taskpilot/models
    n_ctx: int = 0  # 0 = auto (inferred from model size)
    n_threads: int = 0
    n_gpu_layers: int = 0
    min_memory_mb: int = 4096
    max_queue_depth: int = 4
    idle_release_seconds: float = 0  # 0 = keep weights loaded
    max_prompt_chars: int = 32_000


@dataclass
class AgentConfig:
    default_provider: str = "cloud"
    temperature: float = 0.3
    max_tokens: int = 2048
    timeout_seconds: float = 120.0
    max_tool_rounds: int = 1
    max_session_turns: int = 50
    granted_permissions: list[str] = field(
        default_factory=lambda: ["read_only", "modify_tasks", "timer_control"]
    )


@dataclass
class LoggingConfig:
    enabled: bool = True
    log_level: str = "standard"
    retention_days: int = 30
    max_log_size: int = 10 * 1024 * 1024  # bytes
    max_log_count: int = 10_000
    include_system_prompts: bool = True
    include_tool_executions: bool = True
    include_performance_metrics: bool = True
    auto_cleanup: bool = True
    export_format: str = "json"

    def validate(self) -> None:
        """Raise ValueError when a field holds an unusable value."""
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        if self.export_format not in EXPORT_FORMATS:
            raise ValueError(f"export_format must be one of {', '.join(EXPORT_FORMATS)}")
        if self.retention_days <= 0:
            raise ValueError("retention_days must be positive")
        if self.max_log_size <= 0 or self.max_log_count <= 0:
            raise ValueError("max_log_size and max_log_count must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def merged(self, partial: dict[str, Any]) -> LoggingConfig:
        """Return a validated copy with *partial* applied on top."""
        names = {f.name for f in fields(self)}
        unknown = set(partial) - names
        if unknown:
            raise ValueError(f"Unknown logging config keys: {', '.join(sorted(unknown))}")
        updated = LoggingConfig(**{**self.to_dict(), **partial})
        updated.validate()
        return updated


@dataclass
class AuditConfig:
    db_path: str = ""  # "" = ~/.local/share/taskpilot/audit.db


@dataclass
class TaskPilotConfig:
    cloud: CloudConfig = field(default_factory=CloudConfig)
    local: LocalConfig = field(default_factory=LocalConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)

    def models_dir(self) -> Path:
        return Path(self.local.cache_dir).expanduser() if self.local.cache_dir else DATA_DIR / "models"

    def audit_db_path(self) -> Path:
        return Path(self.audit.db_path).expanduser() if self.audit.db_path else DATA_DIR / "audit.db"


def load_config(config_path: str | Path | None = None) -> TaskPilotConfig:
    """Load configuration from TOML file, falling back to defaults.

    Search order:
    1. Explicit config_path argument
    2. ~/.config/taskpilot/config.toml
    3. Built-in defaults
    """
    config = TaskPilotConfig()

    default_path = Path(__file__).parent / "config.default.toml"
    if default_path.exists():
        _merge_toml(config, default_path)

    if config_path:
        user_path = Path(config_path)
    else:
        user_path = Path.home() / ".config" / "taskpilot" / "config.toml"

    if user_path.exists():
        _merge_toml(config, user_path)

    env_api_key = os.environ.get("TASKPILOT_API_KEY")
    if env_api_key:
        config.cloud.api_key = env_api_key

    # Warn if config file contains an API key and has permissive permissions
    if config.cloud.api_key and user_path.exists():
        try:
            perms = user_path.stat().st_mode & 0o777
            if perms & 0o077:
                logger.warning(
                    "Config file %s has permissive permissions (%04o) and contains an API key. "
                    "Run: chmod 600 %s",
                    user_path,
                    perms,
                    user_path,
                )
        except OSError:
            pass

    config.logging.validate()
    return config


def _merge_toml(config: TaskPilotConfig, path: Path) -> None:
    """Merge a TOML file into the config, overwriting only specified fields."""
    with open(path, "rb") as f:
        data = tomllib.load(f)

    for section in ("cloud", "local", "agent", "logging", "audit"):
        if section not in data:
            continue
        target = getattr(config, section)
        for key, value in data[section].items():
            if hasattr(target, key):
                setattr(target, key, value)
            else:
                logger.warning("Ignoring unknown config key [%s].%s in %s", section, key, path)
