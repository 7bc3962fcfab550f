"""Dict-backed sandbox with scripted command results.

Used by ``sandforge replay --dry-run`` and throughout the tests. Every
durable write and every spawned command is recorded, in order, so
callers can assert exactly what reached the sandbox.
"""
from __future__ import annotations

import asyncio
import logging
import posixpath
from collections.abc import AsyncIterator
from dataclasses import dataclass

from sandforge.engine.errors import SandboxError

from .base import PORT_CLOSED, PREVIEW_ERROR, SERVER_READY, Sandbox, SandboxProcess

logger = logging.getLogger(__name__)


@dataclass
class ScriptedResult:
    """How a spawned command behaves.

    long_running: the process stays alive until killed (dev servers).
    port: announce server-ready on this port once spawned.
    """
    exit_code: int = 0
    output: str = ""
    port: int | None = None
    long_running: bool = False


def _clean(path: str) -> str:
    cleaned = posixpath.normpath(str(path or ".").lstrip("/"))
    return "" if cleaned == "." else cleaned


class MemoryProcess(SandboxProcess):
    def __init__(self, sandbox: InMemorySandbox, command: str, result: ScriptedResult) -> None:
        self.command = command
        self._sandbox = sandbox
        self._result = result
        self._returncode: int | None = None
        self._killed = asyncio.Event()
        self._done = asyncio.Event()

    @property
    def returncode(self) -> int | None:
        return self._returncode

    async def output(self) -> AsyncIterator[str]:
        if self._result.output:
            yield self._result.output
        if self._result.long_running:
            await self._killed.wait()

    async def wait(self) -> int:
        if self._returncode is None:
            if self._result.long_running:
                await self._killed.wait()
                self._finish(-15)
            else:
                await asyncio.sleep(0)
                self._finish(self._result.exit_code)
        await self._done.wait()
        return self._returncode if self._returncode is not None else -1

    def _finish(self, code: int) -> None:
        if self._returncode is not None:
            return
        self._returncode = code
        if self._result.port is not None:
            self._sandbox.notify(PORT_CLOSED, self._result.port)
        self._sandbox.running.discard(self)
        self._done.set()

    async def kill(self) -> None:
        self._sandbox.killed.append(self.command)
        self._finish(-15)
        self._killed.set()

    def exit(self, code: int) -> None:
        """Simulate the process dying on its own with *code*."""
        self._finish(code)
        self._killed.set()


class InMemorySandbox(Sandbox):
    def __init__(self) -> None:
        super().__init__()
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = {""}
        self.writes: list[tuple[str, bytes]] = []
        self.commands: list[str] = []
        self.killed: list[str] = []
        self.running: set[MemoryProcess] = set()
        self._scripts: list[tuple[str, ScriptedResult]] = []
        self._fail_writes: set[str] = set()

    # ── Scripting ──

    def script(self, command_prefix: str, result: ScriptedResult) -> None:
        """Commands starting with *command_prefix* behave as *result*; latest wins."""
        self._scripts.insert(0, (command_prefix, result))

    def fail_writes_to(self, path: str) -> None:
        self._fail_writes.add(_clean(path))

    def _result_for(self, command: str) -> ScriptedResult:
        for prefix, result in self._scripts:
            if command.startswith(prefix):
                return result
        return ScriptedResult()

    def announce_server(self, port: int, url: str | None = None) -> None:
        self.notify(SERVER_READY, port, url or f"http://localhost:{port}")

    def close_port(self, port: int) -> None:
        self.notify(PORT_CLOSED, port)

    def emit_preview_error(
        self,
        error_type: str,
        message: str,
        pathname: str = "/",
        stack: str = "",
    ) -> None:
        self.notify(PREVIEW_ERROR, {
            "type": error_type,
            "message": message,
            "pathname": pathname,
            "search": "",
            "hash": "",
            "stack": stack,
        })

    def text(self, path: str) -> str:
        return self.files[_clean(path)].decode("utf-8")

    def writes_to(self, path: str) -> list[bytes]:
        key = _clean(path)
        return [data for p, data in self.writes if p == key]

    # ── Sandbox API ──

    async def readdir(self, path: str = ".") -> list[str]:
        key = _clean(path)
        if key not in self.dirs:
            raise SandboxError("readdir", path, "no such directory")
        prefix = key + "/" if key else ""
        names = {
            p[len(prefix):].split("/", 1)[0]
            for p in list(self.files) + list(self.dirs)
            if p and p.startswith(prefix) and p != key
        }
        return sorted(names)

    async def mkdir(self, path: str, recursive: bool = False) -> None:
        key = _clean(path)
        parent = posixpath.dirname(key)
        if not recursive and parent not in self.dirs:
            raise SandboxError("mkdir", path, "parent directory does not exist")
        if key in self.files:
            raise SandboxError("mkdir", path, "a file exists at this path")
        while key and key not in self.dirs:
            self.dirs.add(key)
            key = posixpath.dirname(key)

    async def write_file(self, path: str, data: str | bytes) -> None:
        key = _clean(path)
        await asyncio.sleep(0)
        if key in self._fail_writes:
            raise SandboxError("write_file", path, "simulated write failure")
        if posixpath.dirname(key) not in self.dirs:
            raise SandboxError("write_file", path, "parent directory does not exist")
        payload = data.encode("utf-8") if isinstance(data, str) else data
        self.files[key] = payload
        self.writes.append((key, payload))

    async def read_file(self, path: str) -> bytes:
        key = _clean(path)
        if key not in self.files:
            raise SandboxError("read_file", path, "no such file")
        return self.files[key]

    async def rm(self, path: str, recursive: bool = False, force: bool = False) -> None:
        key = _clean(path)
        if key in self.files:
            del self.files[key]
            return
        if key in self.dirs:
            prefix = key + "/" if key else ""
            children = [p for p in list(self.files) + list(self.dirs) if p and p.startswith(prefix)]
            if children and not recursive:
                raise SandboxError("rm", path, "directory not empty")
            for child in children:
                self.files.pop(child, None)
                self.dirs.discard(child)
            if key:
                self.dirs.discard(key)
            return
        if not force:
            raise SandboxError("rm", path, "no such file or directory")

    async def spawn(self, command: str) -> MemoryProcess:
        self.commands.append(command)
        result = self._result_for(command)
        process = MemoryProcess(self, command, result)
        self.running.add(process)
        logger.debug("Spawned %r (scripted exit=%s)", command, result.exit_code)
        if result.port is not None:
            asyncio.get_running_loop().call_soon(self.announce_server, result.port)
        return process

    async def close(self) -> None:
        for process in list(self.running):
            await process.kill()
