"""Core data models for the sandforge engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class ActionKind(str, Enum):
    """What an action asks the sandbox to do."""
    WRITE_FILE = "write-file"
    RUN_SHELL = "run-shell"
    START_PROCESS = "start-process"
    UNKNOWN = "unknown"


class ActionStatus(str, Enum):
    """Action execution states. See lifecycle.py for transition rules."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    ABORTED = "aborted"
    INTERCEPTED = "intercepted"


class Completeness(str, Enum):
    """Whether an action's payload is still arriving."""
    STREAMING = "streaming"
    CLOSED = "closed"


class CommandIntent(str, Enum):
    """Inferred purpose of a shell command."""
    INSTALL = "install"
    START = "start"
    OTHER = "other"


# Wire "type" attribute → ActionKind
WIRE_ACTION_KINDS: dict[str, ActionKind] = {
    "file": ActionKind.WRITE_FILE,
    "shell": ActionKind.RUN_SHELL,
    "start": ActionKind.START_PROCESS,
}


@dataclass
class ParsedAction:
    """Action payload as read off the stream, before path normalization."""
    kind: ActionKind
    content: str = ""
    file_path: str | None = None


@dataclass
class ArtifactEvent:
    """Fired by the parser on artifact open/close."""
    stream_id: str
    artifact_id: str
    title: str = "Untitled"
    kind: str | None = None


@dataclass
class ActionEvent:
    """Fired by the parser on action open/stream/close."""
    stream_id: str
    artifact_id: str
    action_id: str
    action: ParsedAction


@dataclass
class Action:
    """A single instruction inside an artifact.

    Identity is ``action_id``; the runner applies it to the sandbox at
    most once, and only once ``completeness`` is CLOSED.
    """
    action_id: str
    artifact_id: str
    kind: ActionKind
    content: str = ""
    file_path: str | None = None
    completeness: Completeness = Completeness.STREAMING
    status: ActionStatus = ActionStatus.PENDING
    executed: bool = False
    error: str | None = None

    @property
    def closed(self) -> bool:
        return self.completeness == Completeness.CLOSED


@dataclass
class Artifact:
    """One logical unit of generated output.

    ``runner`` is the ActionRunner that owns this artifact's actions;
    typed loosely to keep this module import-free.
    """
    artifact_id: str
    title: str = "Untitled"
    kind: str | None = None
    closed: bool = False
    synthetic: bool = False
    runner: object | None = field(default=None, repr=False)


@dataclass
class Alert:
    """A failure report surfaced to the UI.

    kind: "error" for runner/runtime failures, "preview" for errors
    forwarded from a running preview.
    source: "terminal", "filesystem", or "preview".
    """
    kind: str = "error"
    title: str = ""
    description: str = ""
    raw_output: str = ""
    source: str = "terminal"
    created_at: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        return "\n".join(
            part for part in (self.title, self.description, self.raw_output) if part
        )


@dataclass
class SetupState:
    """Auto-setup bookkeeping owned exclusively by the Orchestrator.

    Never persisted; ``reset()`` on session reset and project clear.
    """
    install_pending: bool = False
    start_pending: bool = False
    install_attempts: int = 0
    start_attempts: int = 0
    last_install_at: float | None = None
    last_start_at: float | None = None
    artifact_has_own_start: bool = False
    declared_start_command: str | None = None
    in_progress: bool = False
    restoring_history: bool = False

    def reset(self) -> None:
        fresh = SetupState()
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(fresh, name))
