"""Runtime configuration for the usbwatch engine and its HTTP surface."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

ENV_PREFIX = "USBWATCH_"

STRATEGY_NAMES = ("native-event", "native-poll", "command-poll")


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


@dataclass(slots=True)
class MonitorConfig:
    """Configuration bundle used by :class:`~usbwatch.monitor.UsbMonitor`."""

    native_poll_interval: float = 2.0
    command_poll_interval: float = 3.0
    grace_period: float = 5.0
    history_limit: int = 1000
    command_timeout: Optional[float] = 15.0
    strategy: Optional[str] = None
    api_host: str = "127.0.0.1"
    api_port: int = 3001

    def __post_init__(self) -> None:
        if self.native_poll_interval <= 0 or self.command_poll_interval <= 0:
            raise ValueError("poll intervals must be positive")
        if self.grace_period < 0:
            raise ValueError("grace_period must not be negative")
        if self.history_limit <= 0:
            raise ValueError("history_limit must be positive")
        if self.command_timeout is not None and self.command_timeout <= 0:
            self.command_timeout = None
        if self.strategy is not None:
            self.strategy = self.strategy.strip().lower() or None
        if self.strategy is not None and self.strategy not in STRATEGY_NAMES:
            raise ValueError(f"strategy must be one of {', '.join(STRATEGY_NAMES)}")
        if not 0 < self.api_port < 65536:
            raise ValueError("api_port must be a valid TCP port")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "MonitorConfig":
        """Build a config from ``USBWATCH_*`` environment variables."""
        env = os.environ if env is None else env
        return cls(
            native_poll_interval=_env_float(env, "NATIVE_POLL_INTERVAL", 2.0),
            command_poll_interval=_env_float(env, "COMMAND_POLL_INTERVAL", 3.0),
            grace_period=_env_float(env, "GRACE_PERIOD", 5.0),
            history_limit=_env_int(env, "HISTORY_LIMIT", 1000),
            command_timeout=_env_float(env, "COMMAND_TIMEOUT", 15.0),
            strategy=env.get(ENV_PREFIX + "STRATEGY") or None,
            api_host=env.get(ENV_PREFIX + "HOST", "127.0.0.1"),
            api_port=_env_int(env, "PORT", 3001),
        )


__all__ = ["MonitorConfig", "STRATEGY_NAMES", "ENV_PREFIX"]
