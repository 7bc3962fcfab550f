"""Orchestrator: stream → catalog (display) + runners (durable) + auto-setup.

One Orchestrator per session. It owns:

- the StreamParser, whose callbacks it routes;
- one ActionRunner per parsed artifact, plus the synthetic "auto" runner
  holding install/start actions it generates itself;
- the file catalog, editor, preview and terminal state a UI reads;
- SetupState, the bookkeeping of the auto-install/auto-start machine.

Auto-setup scheduler (``maybe_auto_setup``), run on every trigger:

    guard set or restoring history          → no-op
    no manifest in the catalog              → no-op
    manifest does not parse                 → retry after manifest_retry_seconds
    install pending, under cap, cooled down → enqueue install; check again after
                                              install_settle_seconds
    start wanted, under cap, cooled down    → enqueue start; release guard after
                                              start_guard_release_seconds
    otherwise                               → deferred (rate-limited or capped)

Triggers raised while any artifact is still open only set flags; the
artifact-close settle check runs the scheduler.
"""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import itertools
import logging
import posixpath
import re
import time
from collections.abc import Callable, Iterator
from typing import Any, cast

from sandforge.sandbox.base import PORT_CLOSED, PREVIEW_ERROR, SERVER_READY, Sandbox
from sandforge.shared.catalog import FileCatalog, FileEntry
from sandforge.shared.editor import EditorState
from sandforge.shared.previews import PreviewInfo, PreviewStore
from sandforge.shared.terminal import STDERR, TerminalChannel, TerminalEntry

from .commands import classify, split_trailing_start
from .config import EventCallback, RuntimeConfig, fire_event
from .errors import ManifestParseError, SandboxError, UnknownArtifactError
from .lifecycle import SetupPhase
from .manifest import (
    is_dependency_file,
    parse_manifest,
    pick_install_command,
    pick_start_command,
)
from .models import (
    Action,
    ActionEvent,
    ActionKind,
    Alert,
    Artifact,
    ArtifactEvent,
    CommandIntent,
    Completeness,
    SetupState,
)
from .parser import ParserCallbacks, StreamParser
from .paths import normalize_path, to_sandbox_path
from .runner import ActionRunner
from .scheduler import DeferredTasks

logger = logging.getLogger(__name__)

AUTO_ARTIFACT_ID = "auto"

# Timer purposes
ARTIFACT_SETTLE = "artifact-settle"
MANIFEST_RETRY = "manifest-retry"
INSTALL_SETTLE = "install-settle"
START_GUARD = "start-guard"

MISSING_MODULE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Cannot find module ['\"][^'\"]+['\"]", re.IGNORECASE),
    re.compile(r"Module not found:.*?Can't resolve ['\"][^'\"]+['\"]", re.IGNORECASE | re.DOTALL),
    re.compile(r"ERR_MODULE_NOT_FOUND", re.IGNORECASE),
    re.compile(r"Failed to resolve import ['\"][^'\"]+['\"]", re.IGNORECASE),
    re.compile(r"Cannot find package ['\"][^'\"]+['\"]", re.IGNORECASE),
)

PREVIEW_ERROR_TITLES = {
    "PREVIEW_UNCAUGHT_EXCEPTION": "Uncaught Exception",
    "PREVIEW_UNHANDLED_REJECTION": "Unhandled Promise Rejection",
}


def matches_missing_module(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in MISSING_MODULE_PATTERNS)


class Orchestrator:
    def __init__(
        self,
        sandbox: Sandbox,
        config: RuntimeConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or RuntimeConfig()
        self.sandbox = sandbox
        self._clock = clock

        self.catalog = FileCatalog(self.config.project_root)
        self.editor = EditorState(self.catalog)
        self.preview_store = PreviewStore()
        self.terminal = TerminalChannel(
            self.config.terminal_max_entries, on_entry=self._on_terminal_entry,
        )
        self._alerts: list[Alert] = []

        self._setup = SetupState()
        self._timers = DeferredTasks()
        # Manifest text that last failed to parse; retried once, then left
        # until a write or save changes it.
        self._unparsed_manifest: str | None = None
        self._parser = StreamParser(ParserCallbacks(
            on_artifact_open=self._guarded(self._on_artifact_open),
            on_artifact_close=self._guarded(self._on_artifact_close),
            on_action_open=self._guarded(self._on_action_open),
            on_action_stream=self._guarded(self._on_action_stream),
            on_action_close=self._guarded(self._on_action_close),
        ))

        self._artifacts: dict[str, Artifact] = {}
        self._auto_ids = itertools.count(1)
        self._auto_runner = self._install_auto_runner()

        self._subscribers: list[EventCallback] = []
        self._emit_tasks: set[asyncio.Task] = set()
        self._detach: list[Callable[[], None]] = []

    # ── Wiring ──

    def attach(self) -> None:
        """Listen to sandbox runtime notifications. Idempotent."""
        if self._detach:
            return
        self._detach = [
            self.sandbox.on(SERVER_READY, self._on_server_ready),
            self.sandbox.on(PORT_CLOSED, self._on_port_closed),
            self.sandbox.on(PREVIEW_ERROR, self._on_preview_error),
        ]

    async def shutdown(self) -> None:
        """Stop timers and processes, detach from the sandbox."""
        self._timers.cancel_all()
        for artifact in list(self._artifacts.values()):
            await self._runner_of(artifact).close()
        for remove in self._detach:
            remove()
        self._detach = []
        await self.sandbox.close()
        if self._emit_tasks:
            await asyncio.gather(*list(self._emit_tasks), return_exceptions=True)
        logger.info("Orchestrator shut down")

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register an async event callback; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    # ── Read-only state ──

    @property
    def files(self) -> dict[str, FileEntry]:
        return self.catalog.entries()

    @property
    def unsaved_files(self) -> set[str]:
        return self.editor.unsaved_files

    @property
    def previews(self) -> list[PreviewInfo]:
        return self.preview_store.items()

    @property
    def alerts(self) -> list[Alert]:
        return list(self._alerts)

    @property
    def terminal_output(self) -> list[TerminalEntry]:
        return self.terminal.entries

    @property
    def setup_state(self) -> SetupState:
        return dataclasses.replace(self._setup)

    @property
    def artifacts(self) -> dict[str, Artifact]:
        return dict(self._artifacts)

    @property
    def auto_runner(self) -> ActionRunner:
        return self._auto_runner

    @property
    def setup_phase(self) -> SetupPhase:
        running = self._auto_runner.running()
        if any(a.kind == ActionKind.RUN_SHELL for a in running):
            return SetupPhase.INSTALLING
        if self.preview_store.has_active:
            return SetupPhase.RUNNING
        if any(a.kind == ActionKind.START_PROCESS for a in running):
            return SetupPhase.STARTING
        if self._setup.install_pending:
            return SetupPhase.INSTALL_PENDING
        if self._setup.start_pending:
            return SetupPhase.START_PENDING
        return SetupPhase.IDLE

    def runner_for(self, artifact_id: str) -> ActionRunner:
        artifact = self._artifacts.get(artifact_id)
        if artifact is None:
            raise UnknownArtifactError(artifact_id)
        return self._runner_of(artifact)

    # ── Generation ──

    def start_generation(self, stream_id: str) -> None:
        logger.info("Generation started stream=%s", stream_id)
        self._emit({"event": "generation_started", "stream_id": stream_id})

    def parse(self, stream_id: str, text: str) -> str:
        """Feed the cumulative text of *stream_id*; returns new display text."""
        return self._parser.parse(stream_id, text)

    async def stop_generation(self) -> None:
        """User stop: abort artifact runners and close open artifacts."""
        aborted: list[str] = []
        for artifact in list(self._artifacts.values()):
            if artifact.synthetic:
                continue
            await self._runner_of(artifact).cancel_all()
            if not artifact.closed:
                artifact.closed = True
                aborted.append(artifact.artifact_id)
        # Open artifacts are closed here, not by the parser; drop its state
        # so no settle check is scheduled for them.
        self._parser.reset()
        logger.info("Generation stopped (closed %d open artifacts)", len(aborted))
        self._emit({"event": "generation_stopped", "aborted_artifacts": aborted})

    async def reset(self) -> None:
        """New session: forget parsed artifacts and setup state.

        The catalog and a running dev server (owned by the auto runner) survive.
        """
        self._timers.cancel_all()
        self._unparsed_manifest = None
        for artifact in list(self._artifacts.values()):
            if artifact.synthetic:
                continue
            await self._runner_of(artifact).close()
            del self._artifacts[artifact.artifact_id]
        self._parser.reset()
        self._setup.reset()
        logger.info("Session reset")
        self._emit_setup_state()

    @contextlib.contextmanager
    def restoring_history(self) -> Iterator[None]:
        """Replay stored messages without letting auto-setup act on them."""
        self._setup.restoring_history = True
        try:
            yield
        finally:
            self._setup.restoring_history = False
            self._trigger()

    # ── Parser callbacks ──

    def _guarded(self, handler: Callable[[Any], None]) -> Callable[[Any], None]:
        def _wrapper(event: Any) -> None:
            try:
                handler(event)
            except UnknownArtifactError as exc:
                logger.error("Dropping parser event: %s", exc)

        return _wrapper

    def _on_artifact_open(self, event: ArtifactEvent) -> None:
        if event.artifact_id in self._artifacts:
            logger.warning("Artifact %s opened twice; keeping the first", event.artifact_id)
            return
        artifact = Artifact(
            artifact_id=event.artifact_id,
            title=event.title,
            kind=event.kind,
        )
        artifact.runner = self._new_runner(event.artifact_id)
        self._artifacts[event.artifact_id] = artifact
        logger.info("Artifact opened id=%s title=%r", event.artifact_id, event.title)
        self._emit({
            "event": "artifact_opened",
            "artifact_id": event.artifact_id,
            "stream_id": event.stream_id,
            "title": event.title,
            "kind": event.kind,
        })

    def _on_artifact_close(self, event: ArtifactEvent) -> None:
        artifact = self._require_artifact(event.artifact_id)
        artifact.closed = True
        logger.info("Artifact closed id=%s", event.artifact_id)
        self._emit({"event": "artifact_closed", "artifact_id": event.artifact_id})
        self._timers.schedule(
            ARTIFACT_SETTLE, self.config.artifact_settle_seconds, self.maybe_auto_setup,
        )

    def _on_action_open(self, event: ActionEvent) -> None:
        artifact = self._require_artifact(event.artifact_id, event.action_id)
        if event.action.kind == ActionKind.UNKNOWN:
            logger.warning(
                "Ignoring action %s/%s of unknown type", event.artifact_id, event.action_id,
            )
            return
        action = self._register_action(artifact, event)
        self._emit({
            "event": "action_added",
            "artifact_id": action.artifact_id,
            "action_id": action.action_id,
            "kind": action.kind.value,
            "file_path": action.file_path,
        })

    def _on_action_stream(self, event: ActionEvent) -> None:
        if event.action.kind != ActionKind.WRITE_FILE:
            return
        artifact = self._require_artifact(event.artifact_id, event.action_id)
        action = self._register_action(artifact, event)
        if action.closed or not action.file_path:
            return
        action.content = event.action.content
        self._display_write(action.file_path, action.content, streaming=True)
        if self.editor.selected != action.file_path:
            self.editor.open_file(action.file_path)

    def _on_action_close(self, event: ActionEvent) -> None:
        artifact = self._require_artifact(event.artifact_id, event.action_id)
        if event.action.kind == ActionKind.UNKNOWN:
            return
        runner = self._runner_of(artifact)
        action = self._register_action(artifact, event)
        action.content = event.action.content
        action.completeness = Completeness.CLOSED

        if action.kind == ActionKind.WRITE_FILE:
            if not action.file_path:
                logger.warning("File action %s/%s has no path", action.artifact_id, action.action_id)
                runner.intercept(action.action_id)
                return
            self._display_write(action.file_path, action.content, streaming=False)
            runner.schedule(action)
            if self._is_dependency_file(action.file_path):
                logger.info("Dependency file written: %s", action.file_path)
                self._setup.install_pending = True
                self._setup.start_pending = True
                self._trigger()
            return

        if action.kind == ActionKind.START_PROCESS:
            self._intercept_start(runner, action)
            return

        intent = classify(action.content)
        if intent == CommandIntent.INSTALL:
            runner.intercept(action.action_id)
            logger.info("Intercepted install command: %s", action.content)
            self._setup.install_pending = True
            self._setup.start_pending = True
            self._trigger()
        elif intent == CommandIntent.START:
            self._intercept_start(runner, action)
        else:
            split = split_trailing_start(action.content)
            if split is None:
                runner.schedule(action)
                return
            action.content, start_command = split
            logger.info(
                "Split dev-server launch off %s/%s: %s",
                action.artifact_id, action.action_id, start_command,
            )
            runner.schedule(action)
            self._declare_start(start_command)

    def _intercept_start(self, runner: ActionRunner, action: Action) -> None:
        runner.intercept(action.action_id)
        logger.info("Intercepted start command: %s", action.content)
        self._declare_start(action.content)

    def _declare_start(self, command: str) -> None:
        self._setup.start_pending = True
        self._setup.artifact_has_own_start = True
        self._setup.declared_start_command = command.strip() or None
        self._trigger()

    def _register_action(self, artifact: Artifact, event: ActionEvent) -> Action:
        runner = self._runner_of(artifact)
        existing = runner.actions.get(event.action_id)
        if existing is not None:
            return existing
        file_path = None
        if event.action.kind == ActionKind.WRITE_FILE and event.action.file_path:
            file_path = self.normalize(event.action.file_path)
        return runner.add_action(Action(
            action_id=event.action_id,
            artifact_id=artifact.artifact_id,
            kind=event.action.kind,
            content=event.action.content,
            file_path=file_path,
        ))

    def _require_artifact(self, artifact_id: str, action_id: str | None = None) -> Artifact:
        artifact = self._artifacts.get(artifact_id)
        if artifact is None:
            raise UnknownArtifactError(artifact_id, action_id)
        return artifact

    # ── Auto-setup ──

    def _trigger(self) -> None:
        self._emit_setup_state()
        if self._parser.has_open_artifact():
            return
        self.maybe_auto_setup()

    def maybe_auto_setup(self) -> None:
        setup = self._setup
        if setup.in_progress or setup.restoring_history:
            logger.debug(
                "Auto-setup skipped (in_progress=%s restoring=%s)",
                setup.in_progress, setup.restoring_history,
            )
            return

        manifest_path = self._manifest_path()
        if manifest_path is None:
            logger.debug("Auto-setup skipped: no manifest")
            return
        text = self.catalog.content(manifest_path) or ""
        try:
            manifest = parse_manifest(text, manifest_path)
        except ManifestParseError as exc:
            if not (setup.install_pending or setup.start_pending) or text == self._unparsed_manifest:
                logger.debug("Manifest invalid, waiting for a new version: %s", exc)
                return
            self._unparsed_manifest = text
            logger.debug("Manifest not ready, retrying: %s", exc)
            self._timers.schedule(
                MANIFEST_RETRY, self.config.manifest_retry_seconds, self.maybe_auto_setup,
            )
            return
        self._unparsed_manifest = None

        now = self._clock()
        present = self.catalog.file_paths()

        if (
            setup.install_pending
            and setup.install_attempts < self.config.install_attempt_cap
            and self._cooled_down(setup.last_install_at, self.config.install_cooldown_seconds, now)
        ):
            rollback = (
                setup.install_pending, setup.start_pending,
                setup.install_attempts, setup.last_install_at,
            )
            setup.in_progress = True
            setup.install_pending = False
            setup.install_attempts += 1
            setup.last_install_at = now
            setup.start_pending = True
            command = pick_install_command(manifest, present, self.config.install_command)
            try:
                self._enqueue_setup_action(
                    CommandIntent.INSTALL, ActionKind.RUN_SHELL, command, setup.install_attempts,
                )
            except Exception:
                (setup.install_pending, setup.start_pending,
                 setup.install_attempts, setup.last_install_at) = rollback
                setup.in_progress = False
                logger.exception("Failed to enqueue install")
                return
            self._timers.schedule(
                INSTALL_SETTLE, self.config.install_settle_seconds, self._after_install_settle,
            )
            self._emit_setup_state()
            return

        start_wanted = setup.start_pending or (
            not self.preview_store.has_active
            and not setup.artifact_has_own_start
            and not self._auto_runner.running(ActionKind.START_PROCESS)
        )
        if (
            start_wanted
            and setup.start_attempts < self.config.start_attempt_cap
            and self._cooled_down(setup.last_start_at, self.config.start_cooldown_seconds, now)
        ):
            rollback_start = (setup.start_pending, setup.start_attempts, setup.last_start_at)
            setup.in_progress = True
            setup.start_pending = False
            setup.start_attempts += 1
            setup.last_start_at = now
            command = pick_start_command(
                manifest, present, self.config.start_command, setup.declared_start_command,
            )
            try:
                self._enqueue_setup_action(
                    CommandIntent.START, ActionKind.START_PROCESS, command, setup.start_attempts,
                )
            except Exception:
                setup.start_pending, setup.start_attempts, setup.last_start_at = rollback_start
                setup.in_progress = False
                logger.exception("Failed to enqueue start")
                return
            self._timers.schedule(
                START_GUARD, self.config.start_guard_release_seconds, self._release_guard,
            )
            self._emit_setup_state()
            return

        setup.in_progress = False
        logger.debug(
            "Auto-setup deferred (install_pending=%s attempts=%d, start_pending=%s attempts=%d)",
            setup.install_pending, setup.install_attempts,
            setup.start_pending, setup.start_attempts,
        )

    def _after_install_settle(self) -> None:
        self._setup.in_progress = False
        self.maybe_auto_setup()

    def _release_guard(self) -> None:
        self._setup.in_progress = False
        self._emit_setup_state()

    @staticmethod
    def _cooled_down(last: float | None, cooldown: float, now: float) -> bool:
        return last is None or now - last >= cooldown

    def _enqueue_setup_action(
        self,
        intent: CommandIntent,
        kind: ActionKind,
        command: str,
        attempt: int,
    ) -> Action:
        action = Action(
            action_id=f"auto-{intent.value}-{next(self._auto_ids)}",
            artifact_id=AUTO_ARTIFACT_ID,
            kind=kind,
            content=command,
            completeness=Completeness.CLOSED,
        )
        self._auto_runner.add_action(action)
        self._auto_runner.schedule(action)
        logger.info(
            "Auto-setup enqueued %s (attempt %d): %s", intent.value, attempt, command,
        )
        self._emit({
            "event": "setup_action_enqueued",
            "action_id": action.action_id,
            "intent": intent.value,
            "command": command,
            "attempt": attempt,
        })
        return action

    def ensure_dev_server_running(self) -> bool:
        """True if a preview is up; otherwise request a start and return False."""
        if self.preview_store.has_active:
            return True
        self._setup.start_pending = True
        self._trigger()
        return False

    def _manifest_path(self) -> str | None:
        for name in self.config.manifest_names:
            path = self.normalize(name)
            entry = self.catalog.get(path)
            if entry is not None and not entry.is_folder:
                return path
        return None

    def _is_dependency_file(self, path: str) -> bool:
        return is_dependency_file(path, self.config.manifest_names, self.config.lockfile_names)

    # ── Alerts ──

    def handle_alert(self, alert: Alert) -> None:
        """Record an alert and re-arm auto-setup on missing-module failures."""
        self._alerts.append(alert)
        if len(self._alerts) > self.config.max_alerts:
            del self._alerts[: len(self._alerts) - self.config.max_alerts]
        self._emit({
            "event": "alert_raised",
            "kind": alert.kind,
            "title": alert.title,
            "description": alert.description,
            "raw_output": alert.raw_output,
            "source": alert.source,
        })
        if matches_missing_module(alert.text):
            logger.info("Missing module detected in alert %r; re-arming setup", alert.title)
            self._setup.install_pending = True
            self._setup.start_pending = True
            self._trigger()

    def dismiss_alert(self, index: int) -> Alert:
        return self._alerts.pop(index)

    def clear_alerts(self) -> None:
        self._alerts.clear()

    # ── Sandbox notifications ──

    def _on_server_ready(self, port: int, url: str) -> None:
        self.preview_store.add(port, url)
        self._emit({"event": "preview_ready", "port": port, "url": url})
        self._emit_setup_state()

    def _on_port_closed(self, port: int) -> None:
        if self.preview_store.remove(port):
            self._emit({"event": "preview_closed", "port": port})
            self._emit_setup_state()

    def _on_preview_error(self, payload: dict[str, Any]) -> None:
        error_type = str(payload.get("type", ""))
        title = PREVIEW_ERROR_TITLES.get(error_type, "Preview Error")
        location = "{}{}{}".format(
            payload.get("pathname", ""), payload.get("search", ""), payload.get("hash", ""),
        )
        raw = f"{location}\n{payload.get('stack', '')}".strip()
        self.handle_alert(Alert(
            kind="preview",
            title=title,
            description=str(payload.get("message", "")),
            raw_output=raw,
            source="preview",
        ))

    # ── Editor / files ──

    def open_file(self, path: str) -> None:
        self.editor.open_file(self.normalize(path))

    def select_file(self, path: str | None) -> None:
        self.editor.select_file(self.normalize(path) if path is not None else None)

    def close_file(self, path: str) -> None:
        self.editor.close_file(self.normalize(path))

    def update_file(self, path: str, content: str) -> bool:
        return self.editor.update_file(self.normalize(path), content)

    def discard_changes(self, path: str) -> None:
        self.editor.discard_changes(self.normalize(path))

    def toggle_folder(self, path: str) -> bool:
        return self.catalog.toggle_folder(self.normalize(path))

    async def save_file(self, path: str) -> bool:
        """Persist the unsaved edit of *path*; False when there was nothing to save."""
        path = self.normalize(path)
        content = self.editor.pending_content(path)
        if content is None:
            return False
        if not await self._durable_write(path, content):
            return False
        self.editor.mark_saved(path)
        self._after_user_write(path, content)
        return True

    async def save_all_files(self) -> list[str]:
        saved: list[str] = []
        for path in sorted(self.editor.unsaved_files):
            if await self.save_file(path):
                saved.append(path)
        return saved

    async def add_file(self, path: str, content: str = "") -> str:
        path = self.normalize(path)
        if await self._durable_write(path, content):
            self._after_user_write(path, content)
        return path

    async def add_folder(self, path: str) -> str:
        path = self.normalize(path)
        try:
            await self.sandbox.mkdir(to_sandbox_path(path, self.config.project_root), recursive=True)
        except SandboxError as exc:
            self.handle_alert(Alert(title="Cannot create folder", description=str(exc), source="filesystem"))
            return path
        self.catalog.add_folder(path)
        return path

    async def delete_file(self, path: str) -> list[str]:
        path = self.normalize(path)
        removed = self.catalog.delete(path)
        self.editor.forget(removed)
        try:
            await self.sandbox.rm(
                to_sandbox_path(path, self.config.project_root), recursive=True, force=True,
            )
        except SandboxError as exc:
            logger.warning("Sandbox delete failed for %s: %s", path, exc)
        self._emit({"event": "file_deleted", "file_path": path, "removed": removed})
        return removed

    async def clear_project(self) -> None:
        """Wipe everything: processes, catalog, editor, previews, alerts, setup."""
        self._timers.cancel_all()
        self._unparsed_manifest = None
        for artifact in list(self._artifacts.values()):
            await self._runner_of(artifact).close()
        self._artifacts.clear()
        self._parser.reset()
        self._setup.reset()
        self._auto_runner = self._install_auto_runner()
        self.catalog.clear()
        self.editor.reset()
        self.preview_store.clear()
        self._alerts.clear()
        self.terminal.clear()
        try:
            await self.sandbox.rm(".", recursive=True, force=True)
        except SandboxError as exc:
            logger.warning("Failed to clear sandbox: %s", exc)
        logger.info("Project cleared")
        self._emit({"event": "project_cleared"})

    async def _durable_write(self, path: str, content: str) -> bool:
        rel = to_sandbox_path(path, self.config.project_root)
        try:
            folder = posixpath.dirname(rel)
            if folder and folder != ".":
                await self.sandbox.mkdir(folder, recursive=True)
            await self.sandbox.write_file(rel, content)
        except SandboxError as exc:
            self.handle_alert(Alert(title="File write failed", description=str(exc), source="filesystem"))
            return False
        return True

    def _after_user_write(self, path: str, content: str) -> None:
        self._display_write(path, content, streaming=False)
        if self._is_dependency_file(path):
            self._setup.install_pending = True
            self._setup.start_pending = True
            self._trigger()

    def _display_write(self, path: str, content: str, streaming: bool) -> None:
        created = self.catalog.ensure_folders(path)
        self.catalog.write(path, content)
        self._emit({
            "event": "file_changed",
            "file_path": path,
            "streaming": streaming,
            "created_folders": created,
        })

    # ── Terminal ──

    async def run_command(self, command: str) -> int | None:
        """Run a user command in the terminal; spawn errors go to stderr, not alerts."""
        self.terminal.echo_command(command)
        try:
            process = await self.sandbox.spawn(command)
            async for chunk in process.output():
                self.terminal.write(chunk)
            return await process.wait()
        except SandboxError as exc:
            self.terminal.write(f"{exc}\n", STDERR)
            return None

    # ── Internals ──

    def normalize(self, path: str) -> str:
        return normalize_path(path, self.config.project_root, self.config.alternate_roots)

    def _new_runner(self, artifact_id: str) -> ActionRunner:
        return ActionRunner(
            artifact_id,
            self.sandbox,
            self.terminal,
            on_alert=self.handle_alert,
            on_status=self._on_action_status,
            project_root=self.config.project_root,
        )

    def _install_auto_runner(self) -> ActionRunner:
        runner = self._new_runner(AUTO_ARTIFACT_ID)
        self._artifacts[AUTO_ARTIFACT_ID] = Artifact(
            artifact_id=AUTO_ARTIFACT_ID,
            title="Auto setup",
            closed=True,
            synthetic=True,
            runner=runner,
        )
        return runner

    @staticmethod
    def _runner_of(artifact: Artifact) -> ActionRunner:
        return cast(ActionRunner, artifact.runner)

    def _on_action_status(self, action: Action) -> None:
        self._emit({
            "event": "action_status_changed",
            "artifact_id": action.artifact_id,
            "action_id": action.action_id,
            "kind": action.kind.value,
            "status": action.status.value,
            "error": action.error,
        })
        if action.artifact_id == AUTO_ARTIFACT_ID:
            self._emit_setup_state()

    def _on_terminal_entry(self, entry: TerminalEntry) -> None:
        self._emit({
            "event": "terminal_output",
            "entry_id": entry.id,
            "stream": entry.stream,
            "text": entry.text,
        })

    def _emit_setup_state(self) -> None:
        self._emit({
            "event": "setup_state_changed",
            "phase": self.setup_phase.value,
            "install_pending": self._setup.install_pending,
            "start_pending": self._setup.start_pending,
            "install_attempts": self._setup.install_attempts,
            "start_attempts": self._setup.start_attempts,
        })

    def _emit(self, event: dict[str, Any]) -> None:
        callbacks = [self.config.event_callback, *self._subscribers]
        if not any(callbacks):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; dropping event %s", event.get("event"))
            return
        for callback in callbacks:
            if callback is None:
                continue
            task = loop.create_task(fire_event(callback, event))
            self._emit_tasks.add(task)
            task.add_done_callback(self._emit_tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for scheduled actions and pending event deliveries."""
        for artifact in list(self._artifacts.values()):
            await self._runner_of(artifact).wait_idle()
        while self._emit_tasks:
            await asyncio.gather(*list(self._emit_tasks), return_exceptions=True)
