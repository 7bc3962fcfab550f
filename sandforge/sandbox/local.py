"""Directory-backed sandbox running commands as local subprocesses.

Every command runs in its own session so the whole process group can be
signalled on kill. Listening servers are detected from their output
("http://localhost:5173/") and reported as server-ready.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import signal
from collections.abc import AsyncIterator
from pathlib import Path

from sandforge.engine.errors import SandboxError
from sandforge.shared.services.durable_write import atomic_write_bytes

from .base import PORT_CLOSED, SERVER_READY, Sandbox, SandboxProcess

logger = logging.getLogger(__name__)

_LISTEN_URL_RE = re.compile(
    r"https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1?\]):(\d{2,5})"
)
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

SIGINT_GRACE_SECONDS = float(os.getenv("SANDFORGE_STOP_SIGINT_GRACE_SECONDS", "0.5"))
SIGTERM_GRACE_SECONDS = float(os.getenv("SANDFORGE_STOP_SIGTERM_GRACE_SECONDS", "1.0"))


def _signal_process_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> bool:
    """Send a signal to the process group when available."""
    if proc.returncode is not None:
        return False
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
        return True
    except ProcessLookupError:
        return False


class LocalProcess(SandboxProcess):
    def __init__(
        self,
        sandbox: LocalSandbox,
        command: str,
        proc: asyncio.subprocess.Process,
    ) -> None:
        self.command = command
        self._sandbox = sandbox
        self._proc = proc
        self._ports: set[int] = set()

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def output(self) -> AsyncIterator[str]:
        stream = self._proc.stdout
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            text = chunk.decode(errors="ignore")
            if not text:
                continue
            self._detect_ports(text)
            yield text

    def _detect_ports(self, text: str) -> None:
        for match in _LISTEN_URL_RE.finditer(_ANSI_RE.sub("", text)):
            port = int(match.group(1))
            if port in self._ports:
                continue
            self._ports.add(port)
            logger.info("Server ready on port %d (pid=%s)", port, self._proc.pid)
            self._sandbox.notify(SERVER_READY, port, f"http://localhost:{port}")

    async def wait(self) -> int:
        code = await self._proc.wait()
        for port in sorted(self._ports):
            self._sandbox.notify(PORT_CLOSED, port)
        self._ports.clear()
        self._sandbox.forget(self)
        return code

    async def kill(self) -> None:
        """Escalate SIGINT → SIGTERM → SIGKILL on the process group."""
        proc = self._proc
        if not _signal_process_group(proc, signal.SIGINT):
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=SIGINT_GRACE_SECONDS)
            return
        except asyncio.TimeoutError:
            pass
        term_sent = _signal_process_group(proc, signal.SIGTERM)
        logger.warning(
            "Process still running after SIGINT; escalating to SIGTERM pid=%s sent=%s",
            proc.pid, term_sent,
        )
        try:
            await asyncio.wait_for(proc.wait(), timeout=SIGTERM_GRACE_SECONDS)
            return
        except asyncio.TimeoutError:
            pass
        kill_sent = _signal_process_group(proc, signal.SIGKILL)
        logger.error(
            "Process still running after SIGTERM; escalating to SIGKILL pid=%s sent=%s",
            proc.pid, kill_sent,
        )


class LocalSandbox(Sandbox):
    """Sandbox whose root is a directory on the local filesystem."""

    def __init__(self, workdir: str | Path) -> None:
        super().__init__()
        self.workdir = Path(workdir).expanduser().resolve()
        self.workdir.mkdir(parents=True, exist_ok=True)
        self._processes: set[LocalProcess] = set()

    def _resolve(self, path: str, operation: str) -> Path:
        target = (self.workdir / str(path or ".").lstrip("/")).resolve()
        if target != self.workdir and self.workdir not in target.parents:
            raise SandboxError(operation, path, "path escapes the sandbox root")
        return target

    async def readdir(self, path: str = ".") -> list[str]:
        target = self._resolve(path, "readdir")
        try:
            return sorted(entry.name for entry in target.iterdir())
        except OSError as exc:
            raise SandboxError("readdir", path, str(exc)) from exc

    async def mkdir(self, path: str, recursive: bool = False) -> None:
        target = self._resolve(path, "mkdir")
        try:
            target.mkdir(parents=recursive, exist_ok=recursive)
        except OSError as exc:
            raise SandboxError("mkdir", path, str(exc)) from exc

    async def write_file(self, path: str, data: str | bytes) -> None:
        target = self._resolve(path, "write_file")
        payload = data.encode("utf-8") if isinstance(data, str) else data
        try:
            await asyncio.to_thread(atomic_write_bytes, target, payload)
        except OSError as exc:
            raise SandboxError("write_file", path, str(exc)) from exc

    async def read_file(self, path: str) -> bytes:
        target = self._resolve(path, "read_file")
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as exc:
            raise SandboxError("read_file", path, str(exc)) from exc

    async def rm(self, path: str, recursive: bool = False, force: bool = False) -> None:
        target = self._resolve(path, "rm")
        try:
            if target.is_dir() and not target.is_symlink():
                if target == self.workdir:
                    for child in target.iterdir():
                        await self.rm(child.name, recursive=recursive, force=force)
                    return
                if not recursive:
                    target.rmdir()
                else:
                    await asyncio.to_thread(shutil.rmtree, target)
            else:
                target.unlink()
        except FileNotFoundError as exc:
            if not force:
                raise SandboxError("rm", path, str(exc)) from exc
        except OSError as exc:
            raise SandboxError("rm", path, str(exc)) from exc

    async def spawn(self, command: str) -> LocalProcess:
        shell_executable = shutil.which("bash") or shutil.which("sh") or None
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=str(self.workdir),
                env={**os.environ, "FORCE_COLOR": "0"},
                start_new_session=True,
                executable=shell_executable,
            )
        except OSError as exc:
            raise SandboxError("spawn", command, str(exc)) from exc
        logger.info(
            "Spawned pid=%s cwd=%s command=%s",
            proc.pid, self.workdir,
            (command[:180] + "...") if len(command) > 180 else command,
        )
        process = LocalProcess(self, command, proc)
        self._processes.add(process)
        return process

    def forget(self, process: LocalProcess) -> None:
        self._processes.discard(process)

    async def close(self) -> None:
        processes = list(self._processes)
        self._processes.clear()
        if processes:
            await asyncio.gather(*(p.kill() for p in processes), return_exceptions=True)
