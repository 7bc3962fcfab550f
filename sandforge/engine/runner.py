"""Per-artifact action runner.

Applies write-file, run-shell and start-process actions to the sandbox
exactly once each, in arrival order:

- ``add_action`` only registers; nothing touches the sandbox.
- ``run_action(action, is_partial=True)`` is a no-op for the sandbox:
  partial content is display-only and lives in the file catalog.
- ``run_action(action)`` marks the action executed synchronously, then
  waits on a FIFO lock, so a second call for the same id is a no-op and
  durable effects follow call order.
- ``schedule(action)`` wraps ``run_action`` in a task created right now.

Failures (non-zero exit, filesystem errors) are reported through the
alert callback. The runner never retries.
"""
from __future__ import annotations

import asyncio
import logging
import posixpath
from collections.abc import Callable

from sandforge.sandbox.base import Sandbox, SandboxProcess
from sandforge.shared.terminal import STDERR, TerminalChannel

from .config import DEFAULT_PROJECT_ROOT, AlertCallback
from .errors import (
    ActionNotFoundError,
    CommandFailedError,
    RunnerClosedError,
    SandboxError,
)
from .lifecycle import is_terminal, validate_transition
from .models import Action, ActionKind, ActionStatus, Alert, Completeness
from .paths import to_sandbox_path

logger = logging.getLogger(__name__)

# Characters of command output carried on a failure alert.
OUTPUT_TAIL_CHARS = 4000

StatusCallback = Callable[[Action], None]


class ActionRunner:
    def __init__(
        self,
        artifact_id: str,
        sandbox: Sandbox,
        terminal: TerminalChannel,
        *,
        on_alert: AlertCallback | None = None,
        on_status: StatusCallback | None = None,
        project_root: str = DEFAULT_PROJECT_ROOT,
    ) -> None:
        self.artifact_id = artifact_id
        self._sandbox = sandbox
        self._terminal = terminal
        self._on_alert = on_alert
        self._on_status = on_status
        self._project_root = project_root
        self._actions: dict[str, Action] = {}
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._watchers: set[asyncio.Task] = set()
        self._processes: dict[str, SandboxProcess] = {}
        self.closed = False

    # ── Registry ──

    @property
    def actions(self) -> dict[str, Action]:
        return dict(self._actions)

    def get(self, action_id: str) -> Action:
        try:
            return self._actions[action_id]
        except KeyError:
            raise ActionNotFoundError(action_id) from None

    def add_action(self, action: Action) -> Action:
        """Register *action*. Re-adding a known id returns the registered one."""
        if self.closed:
            raise RunnerClosedError(self.artifact_id)
        existing = self._actions.get(action.action_id)
        if existing is not None:
            return existing
        self._actions[action.action_id] = action
        return action

    def intercept(self, action_id: str) -> Action:
        """Mark an action as folded into auto-setup; it will never run."""
        action = self.get(action_id)
        action.executed = True
        if action.status == ActionStatus.PENDING:
            self._transition(action, ActionStatus.INTERCEPTED)
        return action

    def running(self, kind: ActionKind | None = None) -> list[Action]:
        return [
            a for a in self._actions.values()
            if a.status == ActionStatus.RUNNING and (kind is None or a.kind == kind)
        ]

    # ── Execution ──

    def schedule(self, action: Action) -> asyncio.Task:
        """Create the durable execution task for *action* immediately."""
        task = asyncio.get_running_loop().create_task(self.run_action(action))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def run_action(self, action: Action, is_partial: bool = False) -> None:
        registered = self._actions.get(action.action_id)
        if registered is None:
            raise ActionNotFoundError(action.action_id)
        if is_partial:
            return
        if registered.executed:
            logger.debug(
                "Skipping already-executed action %s/%s",
                self.artifact_id, registered.action_id,
            )
            return
        registered.executed = True
        registered.completeness = Completeness.CLOSED
        async with self._lock:
            await self._execute(registered)

    async def _execute(self, action: Action) -> None:
        if action.status != ActionStatus.PENDING:
            return
        self._transition(action, ActionStatus.RUNNING)
        try:
            if action.kind == ActionKind.WRITE_FILE:
                await self._write_file(action)
            elif action.kind == ActionKind.RUN_SHELL:
                await self._run_shell(action)
            elif action.kind == ActionKind.START_PROCESS:
                await self._start_process(action)
                return
            else:
                logger.warning(
                    "Ignoring action %s/%s of unknown kind",
                    self.artifact_id, action.action_id,
                )
        except asyncio.CancelledError:
            self._finish(action, ActionStatus.ABORTED)
            raise
        except CommandFailedError as exc:
            action.error = str(exc)
            self._finish(action, ActionStatus.FAILED)
            self._report(Alert(
                title="Command failed",
                description=f"`{exc.command}` exited with code {exc.exit_code}",
                raw_output=exc.output,
                source="terminal",
            ))
            return
        except (SandboxError, OSError) as exc:
            action.error = str(exc)
            self._finish(action, ActionStatus.FAILED)
            is_write = action.kind == ActionKind.WRITE_FILE
            self._report(Alert(
                title="File write failed" if is_write else "Command failed",
                description=str(exc),
                source="filesystem" if is_write else "terminal",
            ))
            return
        self._finish(action, ActionStatus.COMPLETE)

    async def _write_file(self, action: Action) -> None:
        rel = to_sandbox_path(action.file_path or "", self._project_root)
        folder = posixpath.dirname(rel)
        if folder and folder != ".":
            await self._sandbox.mkdir(folder, recursive=True)
        await self._sandbox.write_file(rel, action.content)
        logger.debug("Wrote %s (%d chars)", rel, len(action.content))

    async def _run_shell(self, action: Action) -> None:
        command = action.content.strip()
        self._terminal.echo_command(command)
        process = await self._sandbox.spawn(command)
        self._processes[action.action_id] = process
        try:
            tail = await self._pump_output(process)
            code = await process.wait()
        finally:
            self._processes.pop(action.action_id, None)
        if code != 0:
            raise CommandFailedError(command, code, tail)

    async def _start_process(self, action: Action) -> None:
        await self._stop_previous_starts(action)
        command = action.content.strip()
        self._terminal.echo_command(command)
        process = await self._sandbox.spawn(command)
        self._processes[action.action_id] = process
        watcher = asyncio.get_running_loop().create_task(self._watch(action, process))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        logger.info("Started %s/%s: %s", self.artifact_id, action.action_id, command)

    async def _stop_previous_starts(self, current: Action) -> None:
        for action_id, process in list(self._processes.items()):
            previous = self._actions.get(action_id)
            if previous is None or previous is current:
                continue
            if previous.kind != ActionKind.START_PROCESS:
                continue
            logger.info("Restarting: stopping %s/%s", self.artifact_id, action_id)
            self._finish(previous, ActionStatus.ABORTED)
            await process.kill()

    async def _watch(self, action: Action, process: SandboxProcess) -> None:
        try:
            tail = await self._pump_output(process)
            code = await process.wait()
        except (SandboxError, OSError) as exc:
            action.error = str(exc)
            self._finish(action, ActionStatus.FAILED)
            self._report(Alert(title="Process exited", description=str(exc), source="terminal"))
            return
        finally:
            if self._processes.get(action.action_id) is process:
                self._processes.pop(action.action_id, None)
        if action.status != ActionStatus.RUNNING:
            return
        if code == 0:
            self._finish(action, ActionStatus.COMPLETE)
            return
        action.error = f"exit code {code}"
        self._finish(action, ActionStatus.FAILED)
        self._report(Alert(
            title="Process exited",
            description=f"`{process.command}` exited with code {code}",
            raw_output=tail,
            source="terminal",
        ))

    async def _pump_output(self, process: SandboxProcess) -> str:
        tail = ""
        async for chunk in process.output():
            self._terminal.write(chunk)
            tail = (tail + chunk)[-OUTPUT_TAIL_CHARS:]
        return tail

    # ── Cancellation ──

    async def cancel_all(self) -> None:
        """Best-effort stop: abort pending work and kill tracked processes."""
        for action in self._actions.values():
            if not is_terminal(action.status):
                action.executed = True
                self._finish(action, ActionStatus.ABORTED)
        processes = list(self._processes.values())
        self._processes.clear()
        for task in list(self._tasks):
            task.cancel()
        if processes:
            results = await asyncio.gather(
                *(p.kill() for p in processes), return_exceptions=True,
            )
            for result in results:
                if isinstance(result, Exception):
                    logger.warning("Failed to kill process for %s: %s", self.artifact_id, result)
        logger.info(
            "Cancelled runner %s (killed=%d)", self.artifact_id, len(processes),
        )

    async def close(self) -> None:
        self.closed = True
        await self.cancel_all()
        for watcher in list(self._watchers):
            watcher.cancel()

    async def wait_idle(self) -> None:
        """Wait until every scheduled action has finished (not background processes)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Helpers ──

    def _transition(self, action: Action, target: ActionStatus) -> None:
        validate_transition(action.status, target)
        action.status = target
        if self._on_status is not None:
            try:
                self._on_status(action)
            except Exception:
                logger.exception("Status callback failed for %s", action.action_id)

    def _finish(self, action: Action, target: ActionStatus) -> None:
        if is_terminal(action.status):
            return
        self._transition(action, target)

    def _report(self, alert: Alert) -> None:
        logger.warning("Runner %s alert: %s", self.artifact_id, alert.title)
        if self._on_alert is None:
            return
        try:
            self._on_alert(alert)
        except Exception:
            logger.exception("Alert callback failed for runner %s", self.artifact_id)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Action task failed in %s: %s", self.artifact_id, exc, exc_info=exc)
