"""Sandbox capability consumed by the core.

A sandbox is a filesystem rooted at a fixed working directory plus a
process table. Paths crossing this boundary are root-relative ("src/App.tsx",
"." for the root); the core translates from its absolute convention with
``paths.to_sandbox_path``.

Listeners receive runtime notifications:

    server-ready   (port: int, url: str)
    port-closed    (port: int)
    preview-error  (payload: dict) with keys type, message, pathname, search, hash, stack
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import Any

logger = logging.getLogger(__name__)

SERVER_READY = "server-ready"
PORT_CLOSED = "port-closed"
PREVIEW_ERROR = "preview-error"

SANDBOX_EVENTS = (SERVER_READY, PORT_CLOSED, PREVIEW_ERROR)


class SandboxProcess(ABC):
    """A spawned command. Output is stdout and stderr merged."""

    command: str

    @abstractmethod
    def output(self) -> AsyncIterator[str]:
        """Yield decoded output chunks until the process closes its output."""

    @abstractmethod
    async def wait(self) -> int:
        """Wait for exit and return the exit code."""

    @abstractmethod
    async def kill(self) -> None:
        """Best-effort termination."""

    @property
    @abstractmethod
    def returncode(self) -> int | None:
        ...


class Sandbox(ABC):
    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[..., Any]]] = {
            name: [] for name in SANDBOX_EVENTS
        }

    def on(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        if event not in self._listeners:
            raise ValueError(f"Unknown sandbox event: {event}")
        self._listeners[event].append(callback)

        def _remove() -> None:
            try:
                self._listeners[event].remove(callback)
            except ValueError:
                pass

        return _remove

    def notify(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception:
                logger.exception("Sandbox %s listener failed", event)

    @abstractmethod
    async def readdir(self, path: str = ".") -> list[str]:
        ...

    @abstractmethod
    async def mkdir(self, path: str, recursive: bool = False) -> None:
        ...

    @abstractmethod
    async def write_file(self, path: str, data: str | bytes) -> None:
        ...

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        ...

    @abstractmethod
    async def rm(self, path: str, recursive: bool = False, force: bool = False) -> None:
        ...

    @abstractmethod
    async def spawn(self, command: str) -> SandboxProcess:
        ...

    async def close(self) -> None:
        """Release runtime resources. Default: nothing to release."""
