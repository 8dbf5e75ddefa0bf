"""Configuration management for Node Watchdog."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml

logger = logging.getLogger("node-watchdog.config")

DEFAULT_KEYWORDS = (
    "BlockingIOError",
    "EOFError",
    "RuntimeError",
    "ConnectionResetError",
    "CUDA out of memory",
    "P2PDaemonError",
    "OSError",
    "error was detected while running rl-swarm",
    "Connection refused",
    "requests.exceptions.ConnectionError",
)

# Processes killed after every stop, wherever they run from
DEFAULT_NUKE_PATTERNS = (
    "hivemind_cli/p2pd",
    "node_modules/.bin/next",
    "modal-login",
    "rgym_exp.runner.swarm_launcher",
)

# Environment variable -> RunConfig field
ENV_VARS = {
    "SCRIPT": "script",
    "TMP_LOG": "log_file",
    "MAX_IDLE": "idle_seconds",
    "CASE_INSENSITIVE": "case_insensitive",
    "BACKOFF_START": "backoff_start",
    "BACKOFF_MAX": "backoff_max",
    "KEYWORDS_FILE": "keywords_file",
    "WATCHDOG_LOCK_FILE": "lock_file",
}

_FLOAT_FIELDS = {
    "idle_seconds",
    "backoff_start",
    "backoff_max",
    "stdin_delay",
    "poll_interval",
    "kill_grace",
    "cleanup_grace",
    "sweep_grace",
    "settle_seconds",
}


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Invalid boolean: {value!r}")


def load_keywords(path: Union[str, Path]) -> tuple[str, ...]:
    """Read one literal keyword per line, skipping blank lines."""
    with open(path, encoding="utf-8") as f:
        return tuple(line.strip() for line in f if line.strip())


@dataclass
class NotifierConfig:
    """Configuration for a notification channel."""

    type: str  # telegram, slack, webhook
    enabled: bool = True

    # Telegram
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None

    # Slack
    webhook_url: Optional[str] = None

    # Webhook
    url: Optional[str] = None
    method: str = "POST"
    headers: dict = field(default_factory=dict)

    # Event filters
    on_restart: bool = True
    on_exit: bool = True
    on_spawn_failure: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotifierConfig":
        return cls(
            type=data["type"],
            enabled=data.get("enabled", True),
            bot_token=data.get("bot_token"),
            chat_id=data.get("chat_id"),
            webhook_url=data.get("webhook_url"),
            url=data.get("url"),
            method=data.get("method", "POST"),
            headers=data.get("headers", {}),
            on_restart=data.get("on_restart", True),
            on_exit=data.get("on_exit", True),
            on_spawn_failure=data.get("on_spawn_failure", True),
        )


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration for one supervisor run."""

    script: str = "./run_rl_swarm.sh"
    log_file: str = "/tmp/rlswarm_stdout.log"
    idle_seconds: float = 900
    case_insensitive: bool = True
    backoff_start: float = 3
    backoff_max: float = 60
    keywords: tuple[str, ...] = DEFAULT_KEYWORDS
    keywords_file: Optional[str] = None
    nuke_patterns: tuple[str, ...] = DEFAULT_NUKE_PATTERNS
    lock_file: str = "/tmp/rlswarm_guard.lock"

    # Child launch
    interpreter: Optional[str] = "bash"  # None or "" runs the script directly
    stdin_answers: str = "n\n\n\n"
    stdin_delay: float = 1.0
    echo_output: bool = True

    # Loop timing
    poll_interval: float = 5.0
    kill_grace: float = 10.0
    cleanup_grace: float = 5.0
    sweep_grace: float = 5.0
    settle_seconds: float = 1.0
    rotate_keep: int = 5

    # Supervisor's own logging
    log_level: str = "INFO"
    watchdog_log: Optional[str] = None

    notifiers: tuple[NotifierConfig, ...] = ()

    @property
    def script_path(self) -> Path:
        return Path(self.script).expanduser()

    @property
    def working_dir(self) -> Path:
        """Directory the child runs in; also the orphan sweep's anchor."""
        return self.script_path.resolve().parent

    @property
    def node_name(self) -> str:
        return self.script_path.name

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], base: Optional["RunConfig"] = None) -> "RunConfig":
        """Create configuration from a dictionary, layered over ``base``."""
        config = base or cls()
        known = {f.name for f in fields(cls)}
        updates: dict[str, Any] = {}

        for key, value in data.items():
            if key not in known:
                raise ValueError(f"Unknown configuration key: {key}")
            if value is None:
                continue
            if key == "notifiers":
                value = tuple(NotifierConfig.from_dict(n) for n in value)
            elif key in ("keywords", "nuke_patterns"):
                if isinstance(value, str):
                    value = [value]
                value = tuple(str(v) for v in value)
            elif key in _FLOAT_FIELDS:
                value = float(value)
            elif key in ("case_insensitive", "echo_output"):
                value = _to_bool(value)
            elif key == "rotate_keep":
                value = int(value)
            updates[key] = value

        return replace(config, **updates)

    @classmethod
    def from_yaml(cls, path: Union[str, Path], base: Optional["RunConfig"] = None) -> "RunConfig":
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data, base=base)

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, base: Optional["RunConfig"] = None
    ) -> "RunConfig":
        """Apply the watchdog's environment variables on top of ``base``."""
        environ = os.environ if environ is None else environ
        data = {}
        for var, key in ENV_VARS.items():
            if environ.get(var):
                data[key] = environ[var]
        try:
            return cls.from_dict(data, base=base)
        except ValueError as e:
            raise ValueError(f"Invalid environment configuration: {e}") from e

    def with_keywords_file(self) -> "RunConfig":
        """Replace the keyword list with the keywords file contents, if one is set."""
        if not self.keywords_file:
            return self
        try:
            keywords = load_keywords(self.keywords_file)
        except OSError as e:
            logger.warning(
                f"Cannot read keywords file {self.keywords_file}: {e}; keeping configured keywords"
            )
            return self
        return replace(self, keywords=keywords)

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.idle_seconds <= 0:
            errors.append(f"idle_seconds must be > 0 (got {self.idle_seconds})")
        if self.backoff_start <= 0:
            errors.append(f"backoff_start must be > 0 (got {self.backoff_start})")
        if self.backoff_max < self.backoff_start:
            errors.append(
                f"backoff_max ({self.backoff_max}) must be >= backoff_start ({self.backoff_start})"
            )
        if self.poll_interval <= 0:
            errors.append(f"poll_interval must be > 0 (got {self.poll_interval})")
        for name in ("kill_grace", "cleanup_grace", "sweep_grace", "settle_seconds", "stdin_delay"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be >= 0")
        if self.rotate_keep < 1:
            errors.append(f"rotate_keep must be >= 1 (got {self.rotate_keep})")

        return errors

    def to_dict(self) -> dict[str, Any]:
        """Export configuration to dictionary."""
        return {
            "script": self.script,
            "log_file": self.log_file,
            "idle_seconds": self.idle_seconds,
            "case_insensitive": self.case_insensitive,
            "backoff_start": self.backoff_start,
            "backoff_max": self.backoff_max,
            "keywords": list(self.keywords),
            "nuke_patterns": list(self.nuke_patterns),
            "lock_file": self.lock_file,
            "poll_interval": self.poll_interval,
            "kill_grace": self.kill_grace,
            "rotate_keep": self.rotate_keep,
            "notifiers": [{"type": n.type, "enabled": n.enabled} for n in self.notifiers],
        }


def resolve_config(
    config_path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> RunConfig:
    """Build the run configuration.

    Precedence, lowest first: built-in defaults, YAML file, environment,
    explicit overrides (CLI flags). ``None`` overrides are ignored.
    """
    config = RunConfig()
    if config_path:
        config = RunConfig.from_yaml(config_path, base=config)
    config = RunConfig.from_env(environ, base=config)
    config = RunConfig.from_dict({k: v for k, v in overrides.items() if v is not None}, base=config)
    return config.with_keywords_file()
