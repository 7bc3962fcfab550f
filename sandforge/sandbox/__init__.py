"""Sandbox backends - filesystem + process capability behind the core."""
from __future__ import annotations

__all__ = [
    "Sandbox",
    "SandboxProcess",
    "LocalSandbox",
    "InMemorySandbox",
    "ScriptedResult",
]

from sandforge.sandbox.base import Sandbox, SandboxProcess
from sandforge.sandbox.local import LocalSandbox
from sandforge.sandbox.memory import InMemorySandbox, ScriptedResult
