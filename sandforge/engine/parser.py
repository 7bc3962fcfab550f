"""Streaming parser for artifact/action markers in generated responses.

``parse(stream_id, text)`` is called repeatedly with the full text
received so far for a stream. Per stream the parser remembers how far it
has tokenized, so ever-growing input never re-fires an event. Callbacks
fire synchronously, in arrival order:

    Idle → ArtifactOpen → (ActionOpen → ActionStream* → ActionClose)* → ArtifactClose → Idle

A marker is only consumed once its closing ``>`` (or full close tag) is
present; until then the parser holds its position and re-examines the
same bytes on the next call. While an action is open, every call
delivers the whole accumulated partial payload via ``on_action_stream``.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from .models import (
    WIRE_ACTION_KINDS,
    ActionEvent,
    ActionKind,
    ArtifactEvent,
    ParsedAction,
)

logger = logging.getLogger(__name__)

ARTIFACT_TAG_OPEN = "<boltArtifact"
ARTIFACT_TAG_CLOSE = "</boltArtifact>"
ACTION_TAG_OPEN = "<boltAction"
ACTION_TAG_CLOSE = "</boltAction>"

ARTIFACT_PLACEHOLDER = '<div class="__sandforgeArtifact__" data-artifact-id="{artifact_id}"></div>'

_CODE_FENCE_RE = re.compile(r"^\s*```[\w+-]*\n([\s\S]*?)\n\s*```\s*$")

ArtifactCallback = Callable[[ArtifactEvent], None]
ActionCallback = Callable[[ActionEvent], None]


@dataclass
class ParserCallbacks:
    on_artifact_open: ArtifactCallback | None = None
    on_artifact_close: ArtifactCallback | None = None
    on_action_open: ActionCallback | None = None
    on_action_stream: ActionCallback | None = None
    on_action_close: ActionCallback | None = None


@dataclass
class _StreamState:
    position: int = 0
    inside_artifact: bool = False
    inside_action: bool = False
    artifact_counter: int = 0
    action_counter: int = 0
    current_artifact: ArtifactEvent | None = None
    current_action: ParsedAction | None = None
    current_action_id: str = ""


def strip_code_fence(content: str) -> str:
    """Remove a single Markdown code fence wrapping the whole payload."""
    match = _CODE_FENCE_RE.match(content)
    return match.group(1) if match else content


def unescape_tags(content: str) -> str:
    return content.replace("&lt;", "<").replace("&gt;", ">")


def extract_attribute(tag: str, name: str) -> str | None:
    match = re.search(rf'(?:^|\s){re.escape(name)}="([^"]*)"', tag, re.IGNORECASE)
    return match.group(1) if match else None


def _held_prefix_length(text: str, start: int, marker: str) -> int:
    """Length of the trailing slice of text[start:] that could begin *marker*."""
    longest = min(len(marker) - 1, len(text) - start)
    for k in range(longest, 0, -1):
        if text.endswith(marker[:k]):
            return k
    return 0


def _clean_file_content(file_path: str | None, content: str) -> str:
    if file_path and file_path.endswith(".md"):
        return content
    return unescape_tags(strip_code_fence(content))


class StreamParser:
    """Turns a growing text buffer into artifact/action lifecycle events."""

    def __init__(self, callbacks: ParserCallbacks | None = None) -> None:
        self._callbacks = callbacks or ParserCallbacks()
        self._streams: dict[str, _StreamState] = {}

    def parse(self, stream_id: str, text: str) -> str:
        """Consume *text* (cumulative) and return newly consumed display text.

        Display text is everything outside artifacts; each artifact is
        replaced by a placeholder element carrying its id.
        """
        state = self._streams.get(stream_id)
        if state is None:
            state = _StreamState()
            self._streams[stream_id] = state

        output: list[str] = []
        i = state.position
        end = len(text)

        while i < end:
            if state.inside_artifact:
                if state.inside_action:
                    close_index = text.find(ACTION_TAG_CLOSE, i)
                    if close_index == -1:
                        held = _held_prefix_length(text, i, ACTION_TAG_CLOSE)
                        self._stream_action(state, stream_id, text[i:end - held])
                        break
                    self._close_action(state, stream_id, text[i:close_index])
                    i = close_index + len(ACTION_TAG_CLOSE)
                    continue

                action_index = text.find(ACTION_TAG_OPEN, i)
                close_index = text.find(ARTIFACT_TAG_CLOSE, i)
                if action_index != -1 and (close_index == -1 or action_index < close_index):
                    tag_end = text.find(">", action_index)
                    if tag_end == -1:
                        break
                    self._open_action(state, stream_id, text[action_index:tag_end + 1])
                    i = tag_end + 1
                    continue
                if close_index != -1:
                    self._close_artifact(state)
                    i = close_index + len(ARTIFACT_TAG_CLOSE)
                    continue
                break

            open_index = text.find(ARTIFACT_TAG_OPEN, i)
            if open_index == -1:
                held = _held_prefix_length(text, i, ARTIFACT_TAG_OPEN)
                output.append(text[i:end - held])
                i = end - held
                break

            output.append(text[i:open_index])
            after = open_index + len(ARTIFACT_TAG_OPEN)
            if after >= end:
                i = open_index
                break
            if not (text[after].isspace() or text[after] == ">"):
                # e.g. "<boltArtifacts": plain text
                output.append(text[open_index:after])
                i = after
                continue
            tag_end = text.find(">", open_index)
            if tag_end == -1:
                i = open_index
                break
            artifact_id = self._open_artifact(state, stream_id, text[open_index:tag_end + 1])
            output.append(ARTIFACT_PLACEHOLDER.format(artifact_id=artifact_id))
            i = tag_end + 1

        state.position = i
        return "".join(output)

    def reset(self) -> None:
        """Forget all per-stream offsets (new session/conversation)."""
        self._streams.clear()

    def forget(self, stream_id: str) -> None:
        self._streams.pop(stream_id, None)

    def has_open_artifact(self, stream_id: str | None = None) -> bool:
        if stream_id is not None:
            state = self._streams.get(stream_id)
            return bool(state and state.inside_artifact)
        return any(s.inside_artifact for s in self._streams.values())

    # ── Transitions ──

    def _open_artifact(self, state: _StreamState, stream_id: str, tag: str) -> str:
        artifact_id = f"{stream_id}-{state.artifact_counter}"
        state.artifact_counter += 1
        event = ArtifactEvent(
            stream_id=stream_id,
            artifact_id=artifact_id,
            title=extract_attribute(tag, "title") or "Untitled",
            kind=extract_attribute(tag, "type"),
        )
        state.inside_artifact = True
        state.current_artifact = event
        logger.debug("Artifact open stream=%s artifact=%s", stream_id, artifact_id)
        if self._callbacks.on_artifact_open:
            self._callbacks.on_artifact_open(event)
        return artifact_id

    def _close_artifact(self, state: _StreamState) -> None:
        event = state.current_artifact
        state.inside_artifact = False
        state.current_artifact = None
        if event is None:
            return
        logger.debug("Artifact close stream=%s artifact=%s", event.stream_id, event.artifact_id)
        if self._callbacks.on_artifact_close:
            self._callbacks.on_artifact_close(event)

    def _open_action(self, state: _StreamState, stream_id: str, tag: str) -> None:
        wire_type = (extract_attribute(tag, "type") or "").strip().lower()
        kind = WIRE_ACTION_KINDS.get(wire_type, ActionKind.UNKNOWN)
        action = ParsedAction(kind=kind, content="")
        if kind == ActionKind.WRITE_FILE:
            action.file_path = extract_attribute(tag, "filePath") or ""
        state.inside_action = True
        state.current_action = action
        state.current_action_id = str(state.action_counter)
        state.action_counter += 1
        if self._callbacks.on_action_open:
            self._callbacks.on_action_open(self._action_event(state, stream_id, action))

    def _stream_action(self, state: _StreamState, stream_id: str, partial: str) -> None:
        current = state.current_action
        if current is None:
            return
        content = partial
        if current.kind == ActionKind.WRITE_FILE:
            content = _clean_file_content(current.file_path, content)
        snapshot = ParsedAction(kind=current.kind, content=content, file_path=current.file_path)
        if self._callbacks.on_action_stream:
            self._callbacks.on_action_stream(self._action_event(state, stream_id, snapshot))

    def _close_action(self, state: _StreamState, stream_id: str, raw: str) -> None:
        current = state.current_action
        state.inside_action = False
        state.current_action = None
        if current is None:
            return
        content = raw.strip()
        if current.kind == ActionKind.WRITE_FILE:
            content = _clean_file_content(current.file_path, content) + "\n"
        current.content = content
        if self._callbacks.on_action_close:
            self._callbacks.on_action_close(self._action_event(state, stream_id, current))

    @staticmethod
    def _action_event(
        state: _StreamState, stream_id: str, action: ParsedAction,
    ) -> ActionEvent:
        artifact = state.current_artifact
        return ActionEvent(
            stream_id=stream_id,
            artifact_id=artifact.artifact_id if artifact else "",
            action_id=state.current_action_id,
            action=action,
        )
