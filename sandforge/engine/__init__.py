"""Sandforge engine: streamed artifacts into a running sandboxed app."""
from .models import (
    Action,
    ActionEvent,
    ActionKind,
    ActionStatus,
    Alert,
    Artifact,
    ArtifactEvent,
    CommandIntent,
    Completeness,
    ParsedAction,
    SetupState,
)
from .config import RuntimeConfig
from .errors import (
    ActionNotFoundError,
    CommandFailedError,
    ManifestParseError,
    RunnerClosedError,
    SandboxError,
    SandforgeError,
    UnknownArtifactError,
)

__all__ = [
    # Core (lazy import to avoid circular deps)
    "Orchestrator",
    "ActionRunner",
    "StreamParser",
    "ParserCallbacks",
    "classify",
    "normalize_path",
    # Models
    "Action",
    "ActionEvent",
    "ActionKind",
    "ActionStatus",
    "Alert",
    "Artifact",
    "ArtifactEvent",
    "CommandIntent",
    "Completeness",
    "ParsedAction",
    "SetupState",
    "SetupPhase",
    # Config
    "RuntimeConfig",
    "load_yaml_config",
    # Errors
    "ActionNotFoundError",
    "CommandFailedError",
    "ManifestParseError",
    "RunnerClosedError",
    "SandboxError",
    "SandforgeError",
    "UnknownArtifactError",
]


def __getattr__(name: str):
    if name == "Orchestrator":
        from .orchestrator import Orchestrator
        return Orchestrator
    if name == "ActionRunner":
        from .runner import ActionRunner
        return ActionRunner
    if name == "StreamParser":
        from .parser import StreamParser
        return StreamParser
    if name == "ParserCallbacks":
        from .parser import ParserCallbacks
        return ParserCallbacks
    if name == "classify":
        from .commands import classify
        return classify
    if name == "normalize_path":
        from .paths import normalize_path
        return normalize_path
    if name == "SetupPhase":
        from .lifecycle import SetupPhase
        return SetupPhase
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
