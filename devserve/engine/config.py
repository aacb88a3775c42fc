"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via DEVSERVE_* env vars,
or layer a YAML file on top with yaml_config.load_yaml_config().
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, swallowing and logging errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Never let callback errors break the orchestrator
        logger.debug(
            "Event callback failed for %s", event.get("event"), exc_info=True,
        )


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes"}


def _env_ports(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(int(p) for p in raw.split(",") if p.strip())


@dataclass
class DevServerConfig:
    """Dev server orchestrator configuration."""

    # Port allocation. Ports in [base_port, max_port] are treated as
    # private to this orchestrator; stale listeners there get killed.
    base_port: int = 3001
    max_port: int = 3099
    # Fixed live-reload ports some dev servers bind regardless of PORT.
    auxiliary_ports: tuple[int, ...] = (35729, 35730, 35731)
    # Wait after killing a port's occupant before probing it.
    reclaim_delay_seconds: float = 0.1
    # When False, occupied ports are skipped instead of reclaimed.
    force_reclaim: bool = True

    # Output pipeline
    scrollback_limit: int = 50_000
    output_batch_size: int = 4096
    output_throttle_seconds: float = 0.004

    # Process supervision
    startup_grace_seconds: float = 0.5
    # SIGTERM -> SIGKILL escalation window used at shutdown.
    kill_timeout_seconds: float = 5.0
    hostname: str = "localhost"
    dev_script: str = "dev"
    extra_env: dict[str, str] = field(default_factory=dict)

    # Logging
    log_level: str = "INFO"

    # Receives dicts like {"event": "dev_server_output", "worktree_path": ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.base_port < 1 or self.max_port > 65535:
            raise ValueError(
                f"Port range {self.base_port}-{self.max_port} is outside 1-65535"
            )
        if self.max_port < self.base_port:
            raise ValueError(
                f"max_port ({self.max_port}) must be >= base_port "
                f"({self.base_port})"
            )
        if self.scrollback_limit <= 0:
            raise ValueError("scrollback_limit must be positive")
        if self.output_batch_size <= 0:
            raise ValueError("output_batch_size must be positive")

    @classmethod
    def from_env(cls) -> DevServerConfig:
        """Load configuration from DEVSERVE_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("DEVSERVE_")
        }
        if overrides:
            logger.info(
                "DevServerConfig.from_env: DEVSERVE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug(
                "DevServerConfig.from_env: no DEVSERVE_* env vars set, using defaults"
            )

        config = cls(
            base_port=int(os.getenv(
                "DEVSERVE_BASE_PORT", str(cls.base_port)
            )),
            max_port=int(os.getenv(
                "DEVSERVE_MAX_PORT", str(cls.max_port)
            )),
            auxiliary_ports=_env_ports(
                "DEVSERVE_AUX_PORTS", cls.auxiliary_ports
            ),
            reclaim_delay_seconds=float(os.getenv(
                "DEVSERVE_RECLAIM_DELAY_MS",
                str(cls.reclaim_delay_seconds * 1000),
            )) / 1000,
            force_reclaim=_env_bool("DEVSERVE_FORCE_RECLAIM", cls.force_reclaim),
            scrollback_limit=int(os.getenv(
                "DEVSERVE_SCROLLBACK_LIMIT", str(cls.scrollback_limit)
            )),
            output_batch_size=int(os.getenv(
                "DEVSERVE_BATCH_SIZE", str(cls.output_batch_size)
            )),
            output_throttle_seconds=float(os.getenv(
                "DEVSERVE_THROTTLE_MS",
                str(cls.output_throttle_seconds * 1000),
            )) / 1000,
            startup_grace_seconds=float(os.getenv(
                "DEVSERVE_GRACE_MS",
                str(cls.startup_grace_seconds * 1000),
            )) / 1000,
            kill_timeout_seconds=float(os.getenv(
                "DEVSERVE_KILL_TIMEOUT", str(cls.kill_timeout_seconds)
            )),
            hostname=os.getenv("DEVSERVE_HOSTNAME", cls.hostname),
            dev_script=os.getenv("DEVSERVE_DEV_SCRIPT", cls.dev_script),
            log_level=os.getenv("DEVSERVE_LOG_LEVEL", cls.log_level).upper(),
        )
        logger.info(
            "DevServerConfig.from_env: ports=%d-%d hostname=%s grace=%.3fs",
            config.base_port, config.max_port,
            config.hostname, config.startup_grace_seconds,
        )
        return config
