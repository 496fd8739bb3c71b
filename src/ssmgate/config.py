"""Configuration loader for ssmgate."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_PATH = Path("~/.ssmgate/config.yaml")
DEFAULT_PLUGIN = "session-manager-plugin"
DEFAULT_PROFILE = "default"


@dataclass
class SessionConfig:
    """Settings for proxied interactive sessions."""

    grace_period: float = 3.0


@dataclass
class SSHDefaults:
    """Defaults for ssh and scp through the broker."""

    user: str = "root"
    identity: str | None = None


@dataclass
class CommandConfig:
    """Settings for command dispatch."""

    document: str = "AWS-RunShellScript"
    timeout: int = 60
    poll_interval: float = 1.0
    warmup_delay: float = 3.0
    cloudwatch_output: bool = True


@dataclass
class Config:
    """Main configuration for ssmgate."""

    profile: str | None = None
    region: str | None = None
    plugin_path: str | None = None
    log_dir: Path = field(default_factory=lambda: Path("~/.ssmgate/logs").expanduser())
    no_logs: bool = False
    session: SessionConfig = field(default_factory=SessionConfig)
    ssh: SSHDefaults = field(default_factory=SSHDefaults)
    command: CommandConfig = field(default_factory=CommandConfig)
    source_path: Path | None = None  # Path to the config file, if one was read

    def resolve_profile(self) -> str:
        """Profile name handed to the plugin."""
        return self.profile or os.environ.get("AWS_PROFILE") or DEFAULT_PROFILE

    def resolve_region(self) -> str | None:
        return (
            self.region
            or os.environ.get("AWS_REGION")
            or os.environ.get("AWS_DEFAULT_REGION")
        )

    def resolve_plugin(self) -> str:
        """Locate the session-manager plugin executable."""
        candidate = self.plugin_path or os.environ.get("SSMGATE_PLUGIN") or DEFAULT_PLUGIN
        path = shutil.which(str(Path(candidate).expanduser()))
        if path is None:
            raise FileNotFoundError(f"Session manager plugin not found: {candidate}")
        return path


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from a YAML file.

    Without an explicit path the default location is tried, and a missing
    default file yields the built-in defaults.
    """
    if config_path is None:
        default_path = DEFAULT_CONFIG_PATH.expanduser()
        if not default_path.exists():
            return Config()
        config_path = default_path

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError("Configuration must be a mapping")

    config = _parse_config(raw)
    config.source_path = config_path
    return config


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' must be a mapping")
    return section


def _non_negative(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{name}' must be a number, got {value!r}") from None
    if number < 0:
        raise ValueError(f"'{name}' must not be negative")
    return number


def _parse_config(raw: dict[str, Any]) -> Config:
    """Parse raw YAML data into a Config object."""
    defaults = Config()

    session_raw = _section(raw, "session")
    session = SessionConfig(
        grace_period=_non_negative(
            session_raw.get("grace_period", defaults.session.grace_period),
            "session.grace_period",
        ),
    )

    ssh_raw = _section(raw, "ssh")
    identity = ssh_raw.get("identity")
    ssh = SSHDefaults(
        user=ssh_raw.get("user", defaults.ssh.user),
        identity=str(Path(identity).expanduser()) if identity else None,
    )

    command_raw = _section(raw, "command")
    command = CommandConfig(
        document=command_raw.get("document", defaults.command.document),
        timeout=int(_non_negative(command_raw.get("timeout", defaults.command.timeout), "command.timeout")),
        poll_interval=_non_negative(
            command_raw.get("poll_interval", defaults.command.poll_interval),
            "command.poll_interval",
        ),
        warmup_delay=_non_negative(
            command_raw.get("warmup_delay", defaults.command.warmup_delay),
            "command.warmup_delay",
        ),
        cloudwatch_output=bool(
            command_raw.get("cloudwatch_output", defaults.command.cloudwatch_output)
        ),
    )

    log_dir = defaults.log_dir
    if "log_dir" in raw:
        log_dir = Path(raw["log_dir"]).expanduser().resolve()

    return Config(
        profile=raw.get("profile"),
        region=raw.get("region"),
        plugin_path=raw.get("plugin_path"),
        log_dir=log_dir,
        no_logs=bool(raw.get("no_logs", False)),
        session=session,
        ssh=ssh,
        command=command,
    )
