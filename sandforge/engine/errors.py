"""Exception hierarchy for the sandforge engine.

Expected runtime failures (non-zero exits, filesystem errors) are turned
into alerts by the runner; these exceptions carry them until then.
"""
from __future__ import annotations


class SandforgeError(Exception):
    """Base exception for all sandforge errors."""


class UnknownArtifactError(SandforgeError):
    """An action referenced an artifact that was never opened."""
    def __init__(self, artifact_id: str, action_id: str | None = None):
        self.artifact_id = artifact_id
        self.action_id = action_id
        detail = f" (action {action_id})" if action_id is not None else ""
        super().__init__(f"Unknown artifact {artifact_id}{detail}")


class ActionNotFoundError(SandforgeError):
    """Runner was asked about an action it never registered."""
    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Action not registered: {action_id}")


class SandboxError(SandforgeError):
    """A sandbox filesystem or process operation failed."""
    def __init__(self, operation: str, path: str, reason: str):
        self.operation = operation
        self.path = path
        self.reason = reason
        super().__init__(f"Sandbox {operation} failed for '{path}': {reason}")


class CommandFailedError(SandforgeError):
    """A shell command exited non-zero."""
    def __init__(self, command: str, exit_code: int, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            f"Command failed with exit code {exit_code}: {command}"
        )


class ManifestParseError(SandforgeError):
    """Dependency manifest content is not (yet) valid."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot parse manifest {path}: {reason}")


class RunnerClosedError(SandforgeError):
    """Work was scheduled on a runner after it was closed."""
    def __init__(self, artifact_id: str):
        self.artifact_id = artifact_id
        super().__init__(f"Action runner for {artifact_id} is closed")
