"""Event types emitted by the orchestrator.

Each event corresponds to an orchestrator callback dict, parsed into
a typed dataclass for safe consumption by the server and CLI.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SandforgeEvent:
    """Base event from the orchestrator."""
    event_type: str = ""


@dataclass
class GenerationStarted(SandforgeEvent):
    event_type: str = "generation_started"
    stream_id: str = ""


@dataclass
class GenerationStopped(SandforgeEvent):
    event_type: str = "generation_stopped"
    aborted_artifacts: list[str] = field(default_factory=list)


@dataclass
class ArtifactOpened(SandforgeEvent):
    event_type: str = "artifact_opened"
    artifact_id: str = ""
    stream_id: str = ""
    title: str = ""
    kind: str | None = None


@dataclass
class ArtifactClosed(SandforgeEvent):
    event_type: str = "artifact_closed"
    artifact_id: str = ""


@dataclass
class ActionAdded(SandforgeEvent):
    event_type: str = "action_added"
    artifact_id: str = ""
    action_id: str = ""
    kind: str = ""
    file_path: str | None = None


@dataclass
class ActionStatusChanged(SandforgeEvent):
    event_type: str = "action_status_changed"
    artifact_id: str = ""
    action_id: str = ""
    kind: str = ""
    status: str = ""
    error: str | None = None


@dataclass
class FileChanged(SandforgeEvent):
    event_type: str = "file_changed"
    file_path: str = ""
    streaming: bool = False
    created_folders: list[str] = field(default_factory=list)


@dataclass
class FileDeleted(SandforgeEvent):
    event_type: str = "file_deleted"
    file_path: str = ""
    removed: list[str] = field(default_factory=list)


@dataclass
class SetupActionEnqueued(SandforgeEvent):
    event_type: str = "setup_action_enqueued"
    action_id: str = ""
    intent: str = ""
    command: str = ""
    attempt: int = 0


@dataclass
class SetupStateChanged(SandforgeEvent):
    event_type: str = "setup_state_changed"
    phase: str = ""
    install_pending: bool = False
    start_pending: bool = False
    install_attempts: int = 0
    start_attempts: int = 0


@dataclass
class PreviewReady(SandforgeEvent):
    event_type: str = "preview_ready"
    port: int = 0
    url: str = ""


@dataclass
class PreviewClosed(SandforgeEvent):
    event_type: str = "preview_closed"
    port: int = 0


@dataclass
class AlertRaised(SandforgeEvent):
    event_type: str = "alert_raised"
    kind: str = "error"
    title: str = ""
    description: str = ""
    raw_output: str = ""
    source: str = ""


@dataclass
class TerminalOutput(SandforgeEvent):
    event_type: str = "terminal_output"
    entry_id: int = 0
    stream: str = "stdout"
    text: str = ""


@dataclass
class ProjectCleared(SandforgeEvent):
    event_type: str = "project_cleared"


_EVENT_MAP: dict[str, type[SandforgeEvent]] = {
    "generation_started": GenerationStarted,
    "generation_stopped": GenerationStopped,
    "artifact_opened": ArtifactOpened,
    "artifact_closed": ArtifactClosed,
    "action_added": ActionAdded,
    "action_status_changed": ActionStatusChanged,
    "file_changed": FileChanged,
    "file_deleted": FileDeleted,
    "setup_action_enqueued": SetupActionEnqueued,
    "setup_state_changed": SetupStateChanged,
    "preview_ready": PreviewReady,
    "preview_closed": PreviewClosed,
    "alert_raised": AlertRaised,
    "terminal_output": TerminalOutput,
    "project_cleared": ProjectCleared,
}


def event_to_dict(event: SandforgeEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # "event" rather than "event_type", matching orchestrator callback dicts
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> SandforgeEvent:
    """Convert an orchestrator callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, SandforgeEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
