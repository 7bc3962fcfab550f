"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via SANDFORGE_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .models import Alert

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Runner → orchestrator failure channel.
# Signature: def callback(alert: Alert) -> None
AlertCallback = Callable[[Alert], None]

DEFAULT_PROJECT_ROOT = "/home/project"

# Root tokens the generator sometimes emits instead of real paths.
DEFAULT_ALTERNATE_ROOTS: tuple[str, ...] = (
    "WORK_DIR",
    "$WORK_DIR",
    "${WORK_DIR}",
    "<WORK_DIR>",
    "~/project",
)

DEFAULT_MANIFEST_NAMES: tuple[str, ...] = ("package.json",)
DEFAULT_LOCKFILE_NAMES: tuple[str, ...] = (
    "package-lock.json",
    "npm-shrinkwrap.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "bun.lockb",
)


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, never letting it break the engine."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception as exc:
        logger.debug("Event callback error for %s: %s", event.get("event"), exc)


def _env_list(name: str) -> tuple[str, ...] | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass
class RuntimeConfig:
    """Orchestrator and auto-setup configuration."""

    # Canonical absolute project root inside the sandbox.
    project_root: str = DEFAULT_PROJECT_ROOT
    alternate_roots: tuple[str, ...] = DEFAULT_ALTERNATE_ROOTS

    # Dependency files
    manifest_names: tuple[str, ...] = DEFAULT_MANIFEST_NAMES
    lockfile_names: tuple[str, ...] = DEFAULT_LOCKFILE_NAMES

    # Auto-setup limits
    install_attempt_cap: int = 2
    start_attempt_cap: int = 2
    install_cooldown_seconds: float = 5.0
    start_cooldown_seconds: float = 5.0

    # Settle delays
    install_settle_seconds: float = 10.0
    artifact_settle_seconds: float = 2.0
    manifest_retry_seconds: float = 1.0
    start_guard_release_seconds: float = 1.0

    # Explicit command overrides; None picks from the manifest.
    install_command: str | None = None
    start_command: str | None = None

    # Retention
    max_alerts: int = 50
    terminal_max_entries: int = 2000

    # Logging
    log_level: str = "INFO"

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "file_changed", "file_path": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> RuntimeConfig:
        """Load configuration from SANDFORGE_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("SANDFORGE_")
        }
        if env_vars:
            logger.info(
                "RuntimeConfig.from_env: SANDFORGE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())),
            )
        else:
            logger.debug("RuntimeConfig.from_env: no SANDFORGE_* env vars set, using defaults")

        config = cls(
            project_root=os.getenv(
                "SANDFORGE_PROJECT_ROOT", cls.project_root
            ),
            alternate_roots=(
                _env_list("SANDFORGE_ALTERNATE_ROOTS") or cls.alternate_roots
            ),
            manifest_names=(
                _env_list("SANDFORGE_MANIFEST_NAMES") or cls.manifest_names
            ),
            lockfile_names=(
                _env_list("SANDFORGE_LOCKFILE_NAMES") or cls.lockfile_names
            ),
            install_attempt_cap=int(os.getenv(
                "SANDFORGE_INSTALL_ATTEMPT_CAP", str(cls.install_attempt_cap)
            )),
            start_attempt_cap=int(os.getenv(
                "SANDFORGE_START_ATTEMPT_CAP", str(cls.start_attempt_cap)
            )),
            install_cooldown_seconds=float(os.getenv(
                "SANDFORGE_INSTALL_COOLDOWN", str(cls.install_cooldown_seconds)
            )),
            start_cooldown_seconds=float(os.getenv(
                "SANDFORGE_START_COOLDOWN", str(cls.start_cooldown_seconds)
            )),
            install_settle_seconds=float(os.getenv(
                "SANDFORGE_INSTALL_SETTLE", str(cls.install_settle_seconds)
            )),
            artifact_settle_seconds=float(os.getenv(
                "SANDFORGE_ARTIFACT_SETTLE", str(cls.artifact_settle_seconds)
            )),
            manifest_retry_seconds=float(os.getenv(
                "SANDFORGE_MANIFEST_RETRY", str(cls.manifest_retry_seconds)
            )),
            start_guard_release_seconds=float(os.getenv(
                "SANDFORGE_START_GUARD_RELEASE",
                str(cls.start_guard_release_seconds),
            )),
            install_command=os.getenv("SANDFORGE_INSTALL_COMMAND") or None,
            start_command=os.getenv("SANDFORGE_START_COMMAND") or None,
            max_alerts=int(os.getenv(
                "SANDFORGE_MAX_ALERTS", str(cls.max_alerts)
            )),
            terminal_max_entries=int(os.getenv(
                "SANDFORGE_TERMINAL_MAX_ENTRIES", str(cls.terminal_max_entries)
            )),
            log_level=os.getenv("SANDFORGE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "RuntimeConfig.from_env: root=%s install_cap=%d start_cap=%d log_level=%s",
            config.project_root, config.install_attempt_cap,
            config.start_attempt_cap, config.log_level,
        )
        return config
