"""Adapters package - Bridge between the orchestrator and its consumers.

Typed events and the async event bus used by the HTTP server and CLI.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "SandforgeEvent",
    "event_to_dict",
    "dict_to_event",
]

from sandforge.adapters.event_bus import EventBus
from sandforge.adapters.events import SandforgeEvent, dict_to_event, event_to_dict
