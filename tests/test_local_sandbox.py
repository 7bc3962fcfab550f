"""Tests for the directory-backed sandbox."""
from __future__ import annotations

import asyncio
import sys

import pytest

from sandforge.engine.errors import SandboxError
from sandforge.sandbox.base import PORT_CLOSED, SERVER_READY
from sandforge.sandbox.local import LocalSandbox
from sandforge.shared.services.durable_write import atomic_write_text

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")


@pytest.fixture
def sandbox(tmp_path):
    return LocalSandbox(tmp_path / "project")


@pytest.mark.asyncio
async def test_file_roundtrip_and_listing(sandbox):
    await sandbox.mkdir("src/lib", recursive=True)
    await sandbox.write_file("src/lib/util.ts", "export {}\n")
    await sandbox.write_file("package.json", b"{}")

    assert await sandbox.read_file("src/lib/util.ts") == b"export {}\n"
    assert await sandbox.readdir(".") == ["package.json", "src"]
    assert await sandbox.readdir("src") == ["lib"]


@pytest.mark.asyncio
async def test_mkdir_without_recursive_needs_parent(sandbox):
    with pytest.raises(SandboxError):
        await sandbox.mkdir("a/b")


@pytest.mark.asyncio
async def test_paths_cannot_escape_root(sandbox):
    with pytest.raises(SandboxError, match="escapes"):
        await sandbox.write_file("../outside.txt", "x")


@pytest.mark.asyncio
async def test_rm_variants(sandbox):
    await sandbox.mkdir("dir/sub", recursive=True)
    await sandbox.write_file("dir/sub/a.txt", "a")
    await sandbox.write_file("top.txt", "t")

    with pytest.raises(SandboxError):
        await sandbox.rm("dir")
    await sandbox.rm("dir", recursive=True)
    await sandbox.rm("missing.txt", force=True)
    with pytest.raises(SandboxError):
        await sandbox.rm("missing.txt")

    await sandbox.rm(".", recursive=True, force=True)
    assert await sandbox.readdir(".") == []
    assert sandbox.workdir.is_dir()


@posix_only
@pytest.mark.asyncio
async def test_spawn_merges_output_and_reports_exit_code(sandbox):
    process = await sandbox.spawn("echo out; echo err 1>&2; exit 3")
    chunks = [chunk async for chunk in process.output()]
    code = await process.wait()

    output = "".join(chunks)
    assert "out" in output
    assert "err" in output
    assert code == 3
    assert process.returncode == 3


@posix_only
@pytest.mark.asyncio
async def test_spawn_runs_in_workdir(sandbox):
    await sandbox.write_file("marker.txt", "here")
    process = await sandbox.spawn("cat marker.txt")
    output = "".join([chunk async for chunk in process.output()])
    assert await process.wait() == 0
    assert output == "here"


@posix_only
@pytest.mark.asyncio
async def test_listening_url_announces_server_and_exit_closes_port(sandbox):
    ready, closed = [], []
    sandbox.on(SERVER_READY, lambda port, url: ready.append((port, url)))
    sandbox.on(PORT_CLOSED, closed.append)

    process = await sandbox.spawn("echo '  Local:   http://localhost:5173/'")
    async for _ in process.output():
        pass
    await process.wait()

    assert ready == [(5173, "http://localhost:5173")]
    assert closed == [5173]


@posix_only
@pytest.mark.asyncio
async def test_kill_stops_long_running_process(sandbox):
    process = await sandbox.spawn("sleep 30")
    await process.kill()
    code = await asyncio.wait_for(process.wait(), timeout=5)
    assert code != 0


@posix_only
@pytest.mark.asyncio
async def test_close_kills_tracked_processes(sandbox):
    process = await sandbox.spawn("sleep 30")
    await sandbox.close()
    assert await asyncio.wait_for(process.wait(), timeout=5) != 0


def test_listener_removal(sandbox):
    seen = []
    remove = sandbox.on(PORT_CLOSED, seen.append)
    sandbox.notify(PORT_CLOSED, 1)
    remove()
    sandbox.notify(PORT_CLOSED, 2)
    assert seen == [1]
    with pytest.raises(ValueError):
        sandbox.on("nope", seen.append)


def test_failing_listener_does_not_block_others(sandbox):
    seen = []

    def explode(port):
        raise RuntimeError("boom")

    sandbox.on(PORT_CLOSED, explode)
    sandbox.on(PORT_CLOSED, seen.append)
    sandbox.notify(PORT_CLOSED, 7)
    assert seen == [7]


def test_atomic_write_text_replaces_content(tmp_path):
    target = tmp_path / "nested" / "file.txt"
    atomic_write_text(target, "one")
    atomic_write_text(target, "two")
    assert target.read_text(encoding="utf-8") == "two"
    assert [p.name for p in target.parent.iterdir()] == ["file.txt"]
