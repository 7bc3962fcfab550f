"""Orchestrator editor, file, preview, alert and session operations."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from sandforge.engine.errors import UnknownArtifactError
from sandforge.engine.models import ActionStatus, Alert
from sandforge.engine.orchestrator import AUTO_ARTIFACT_ID, MANIFEST_RETRY, matches_missing_module
from sandforge.sandbox.memory import ScriptedResult
from sandforge.shared.terminal import COMMAND, STDERR

MANIFEST = '{"name": "x", "scripts": {"dev": "vite"}}'


@pytest.mark.asyncio
async def test_edit_and_save_file(orchestrator, sandbox):
    path = await orchestrator.add_file("src/app.js", "let a = 1;\n")
    assert path == "/home/project/src/app.js"
    assert sandbox.text("src/app.js") == "let a = 1;\n"

    orchestrator.open_file("src/app.js")
    assert orchestrator.update_file("src/app.js", "let a = 2;\n")
    assert orchestrator.unsaved_files == {path}
    assert sandbox.text("src/app.js") == "let a = 1;\n"

    assert await orchestrator.save_file("src/app.js")
    assert sandbox.text("src/app.js") == "let a = 2;\n"
    assert orchestrator.files[path].content == "let a = 2;\n"
    assert orchestrator.unsaved_files == set()
    assert not await orchestrator.save_file("src/app.js")


@pytest.mark.asyncio
async def test_save_all_files(orchestrator, sandbox):
    await orchestrator.add_file("a.txt", "a")
    await orchestrator.add_file("b.txt", "b")
    orchestrator.update_file("a.txt", "A")
    orchestrator.update_file("b.txt", "B")

    saved = await orchestrator.save_all_files()

    assert saved == ["/home/project/a.txt", "/home/project/b.txt"]
    assert sandbox.text("a.txt") == "A"
    assert sandbox.text("b.txt") == "B"


@pytest.mark.asyncio
async def test_failed_save_keeps_edit_and_raises_alert(orchestrator, sandbox):
    await orchestrator.add_file("a.txt", "a")
    orchestrator.update_file("a.txt", "changed")
    sandbox.fail_writes_to("a.txt")

    assert not await orchestrator.save_file("a.txt")
    assert orchestrator.unsaved_files == {"/home/project/a.txt"}
    assert orchestrator.alerts[-1].title == "File write failed"
    assert orchestrator.alerts[-1].source == "filesystem"


@pytest.mark.asyncio
async def test_discard_changes(orchestrator):
    await orchestrator.add_file("a.txt", "a")
    orchestrator.update_file("a.txt", "changed")
    orchestrator.discard_changes("a.txt")
    assert orchestrator.unsaved_files == set()
    assert orchestrator.editor.document("/home/project/a.txt") == "a"


@pytest.mark.asyncio
async def test_delete_folder_clears_selection_and_sandbox(orchestrator, sandbox):
    await orchestrator.add_file("src/a.js", "a")
    await orchestrator.add_file("src/lib/b.js", "b")
    orchestrator.open_file("src/lib/b.js")
    orchestrator.update_file("src/lib/b.js", "edited")

    removed = await orchestrator.delete_file("src")

    assert "/home/project/src/lib/b.js" in removed
    assert orchestrator.files == {}
    assert orchestrator.editor.selected is None
    assert orchestrator.unsaved_files == set()
    assert sandbox.files == {}
    assert "src" not in sandbox.dirs


@pytest.mark.asyncio
async def test_add_and_toggle_folder(orchestrator, sandbox):
    await orchestrator.add_folder("assets/img")
    assert "assets/img" in sandbox.dirs
    assert orchestrator.files["/home/project/assets/img"].is_folder
    assert orchestrator.toggle_folder("assets") is False
    assert orchestrator.toggle_folder("assets") is True


@pytest.mark.asyncio
async def test_saving_manifest_triggers_setup(orchestrator, sandbox, until):
    await orchestrator.add_file("package.json", MANIFEST)
    await until(lambda: orchestrator.setup_state.start_attempts == 1)
    assert sandbox.commands == ["npm install", "npm run dev"]


@pytest.mark.asyncio
async def test_invalid_manifest_is_retried(orchestrator, sandbox, until):
    await orchestrator.add_file("package.json", '{"name": ')
    await asyncio.sleep(0.05)
    assert sandbox.commands == []

    orchestrator.update_file("package.json", MANIFEST)
    await orchestrator.save_file("package.json")
    await until(lambda: orchestrator.setup_state.install_attempts == 1)
    await until(lambda: sandbox.commands)
    assert sandbox.commands[0] == "npm install"


@pytest.mark.asyncio
async def test_unchanged_invalid_manifest_stops_retrying(orchestrator, sandbox):
    await orchestrator.add_file("package.json", '{"name": ')
    assert orchestrator._timers.pending(MANIFEST_RETRY)

    await asyncio.sleep(0.05)
    assert not orchestrator._timers.pending(MANIFEST_RETRY)
    assert orchestrator.setup_state.install_pending
    assert sandbox.commands == []


@pytest.mark.asyncio
async def test_burst_of_alerts_enqueues_one_install(orchestrator, sandbox, until):
    await orchestrator.add_file("package.json", MANIFEST)
    for _ in range(5):
        orchestrator.handle_alert(Alert(raw_output="Error: Cannot find module 'react'"))
    await until(lambda: orchestrator.setup_state.start_attempts == 1)
    await asyncio.sleep(0.05)

    assert sandbox.commands.count("npm install") == 1
    assert orchestrator.setup_state.install_attempts == 1


@pytest.mark.asyncio
async def test_cooldown_defers_rearm_until_elapsed(orchestrator, sandbox, clock, until):
    await orchestrator.add_file("package.json", MANIFEST)
    await until(lambda: orchestrator.setup_state.start_attempts == 1)
    await until(lambda: not orchestrator.setup_state.in_progress)

    orchestrator.handle_alert(Alert(raw_output="Cannot find module 'x'"))
    await asyncio.sleep(0.05)
    assert sandbox.commands == ["npm install", "npm run dev"]
    assert orchestrator.setup_state.install_pending

    clock.advance(6)
    orchestrator.ensure_dev_server_running()
    await until(lambda: orchestrator.setup_state.install_attempts == 2)


@pytest.mark.asyncio
async def test_ensure_dev_server_running(orchestrator, sandbox, until):
    sandbox.script("npm run dev", ScriptedResult(long_running=True, port=3000))
    await orchestrator.add_file("package.json", MANIFEST)
    await until(lambda: len(orchestrator.previews) == 1)

    assert orchestrator.ensure_dev_server_running() is True
    assert orchestrator.setup_state.start_attempts == 1


@pytest.mark.asyncio
async def test_preview_lifecycle(orchestrator, sandbox):
    sandbox.announce_server(5173)
    sandbox.announce_server(8080, "http://127.0.0.1:8080")
    assert [p.port for p in orchestrator.previews] == [5173, 8080]
    assert orchestrator.preview_store.active.port == 5173

    sandbox.close_port(5173)
    assert [p.port for p in orchestrator.previews] == [8080]
    assert orchestrator.preview_store.active.port == 8080


@pytest.mark.asyncio
async def test_preview_errors_become_alerts(orchestrator, sandbox):
    sandbox.emit_preview_error(
        "PREVIEW_UNCAUGHT_EXCEPTION", "x is not defined",
        pathname="/about", stack="at App (App.jsx:3)",
    )
    sandbox.emit_preview_error("PREVIEW_UNHANDLED_REJECTION", "fetch failed")
    sandbox.emit_preview_error("SOMETHING_ELSE", "odd")

    first, second, third = orchestrator.alerts
    assert first.kind == "preview"
    assert first.source == "preview"
    assert first.title == "Uncaught Exception"
    assert first.description == "x is not defined"
    assert first.raw_output == "/about\nat App (App.jsx:3)"
    assert second.title == "Unhandled Promise Rejection"
    assert third.title == "Preview Error"


@pytest.mark.asyncio
async def test_preview_missing_import_rearms_setup(orchestrator, sandbox, until):
    await orchestrator.add_file("package.json", MANIFEST)
    await until(lambda: not orchestrator.setup_state.in_progress
                and orchestrator.setup_state.start_attempts == 1)
    sandbox.emit_preview_error(
        "PREVIEW_UNCAUGHT_EXCEPTION",
        'Failed to resolve import "lodash" from "src/App.jsx"',
    )
    assert orchestrator.setup_state.install_pending


@pytest.mark.asyncio
async def test_alert_retention_and_dismissal(sandbox, fast_config, clock):
    from sandforge.engine.orchestrator import Orchestrator

    fast_config.max_alerts = 3
    orch = Orchestrator(sandbox, fast_config, clock=clock)
    for n in range(5):
        orch.handle_alert(Alert(title=f"a{n}"))
    assert [a.title for a in orch.alerts] == ["a2", "a3", "a4"]
    assert orch.dismiss_alert(0).title == "a2"
    orch.clear_alerts()
    assert orch.alerts == []
    await orch.shutdown()


@pytest.mark.asyncio
async def test_stop_generation_aborts_and_skips_setup(orchestrator, sandbox, until):
    sandbox.script("npm run watch", ScriptedResult(long_running=True))
    partial = (
        '<boltArtifact title="App">'
        '<boltAction type="file" filePath="package.json">' + MANIFEST + "</boltAction>"
        '<boltAction type="shell">npm run watch</boltAction>'
        '<boltAction type="file" filePath="src/big.js">const a'
    )
    orchestrator.start_generation("m1")
    orchestrator.parse("m1", partial)
    await until(lambda: sandbox.commands == ["npm run watch"])

    await orchestrator.stop_generation()

    artifact = orchestrator.artifacts["m1-0"]
    assert artifact.closed
    actions = orchestrator.runner_for("m1-0").actions
    assert actions["1"].status == ActionStatus.ABORTED
    assert actions["2"].status == ActionStatus.ABORTED
    assert sandbox.killed == ["npm run watch"]

    await asyncio.sleep(0.05)
    assert orchestrator.setup_state.install_attempts == 0

    assert orchestrator.ensure_dev_server_running() is False
    await until(lambda: orchestrator.setup_state.install_attempts == 1)


@pytest.mark.asyncio
async def test_reset_keeps_catalog_and_forgets_artifacts(orchestrator, sandbox, until):
    orchestrator.parse("m1", '<boltArtifact title="x">' + '<boltAction type="file" filePath="a.txt">a</boltAction></boltArtifact>')
    await orchestrator.wait_idle()

    await orchestrator.reset()

    assert list(orchestrator.artifacts) == [AUTO_ARTIFACT_ID]
    assert "/home/project/a.txt" in orchestrator.files
    with pytest.raises(UnknownArtifactError):
        orchestrator.runner_for("m1-0")
    # Parser offsets were forgotten: the same stream id starts over.
    orchestrator.parse("m1", '<boltArtifact title="y"></boltArtifact>')
    assert "m1-0" in orchestrator.artifacts


@pytest.mark.asyncio
async def test_clear_project_wipes_everything(orchestrator, sandbox, until):
    sandbox.script("npm run dev", ScriptedResult(long_running=True, port=5173))
    await orchestrator.add_file("package.json", MANIFEST)
    await until(lambda: len(orchestrator.previews) == 1)
    old_runner = orchestrator.auto_runner

    await orchestrator.clear_project()

    assert sandbox.killed == ["npm run dev"]
    assert sandbox.files == {}
    assert orchestrator.files == {}
    assert orchestrator.previews == []
    assert orchestrator.alerts == []
    assert orchestrator.terminal_output == []
    assert orchestrator.setup_state.install_attempts == 0
    assert orchestrator.auto_runner is not old_runner
    assert list(orchestrator.artifacts) == [AUTO_ARTIFACT_ID]


@pytest.mark.asyncio
async def test_run_command_streams_to_terminal(orchestrator, sandbox):
    sandbox.script("echo hi", ScriptedResult(output="hi\n"))
    assert await orchestrator.run_command("echo hi") == 0
    entries = orchestrator.terminal_output
    assert entries[0].stream == COMMAND
    assert orchestrator.terminal.text == "$ echo hi\nhi\n"

    sandbox.script("false", ScriptedResult(exit_code=1))
    assert await orchestrator.run_command("false") == 1
    assert orchestrator.alerts == []


@pytest.mark.asyncio
async def test_run_command_spawn_error_goes_to_stderr(orchestrator, sandbox):
    from sandforge.engine.errors import SandboxError

    sandbox.spawn = AsyncMock(side_effect=SandboxError("spawn", "ls", "no shell"))
    assert await orchestrator.run_command("ls") is None
    assert orchestrator.terminal_output[-1].stream == STDERR


@pytest.mark.asyncio
async def test_subscribers_receive_events(orchestrator, until):
    events = []

    async def collect(event):
        events.append(event["event"])

    unsubscribe = orchestrator.subscribe(collect)
    orchestrator.start_generation("m1")
    orchestrator.parse(
        "m1",
        '<boltArtifact title="x"><boltAction type="file" filePath="a.txt">a</boltAction></boltArtifact>',
    )
    await orchestrator.wait_idle()

    for name in ("generation_started", "artifact_opened", "action_added",
                 "file_changed", "action_status_changed", "artifact_closed"):
        assert name in events

    unsubscribe()
    count = len(events)
    orchestrator.start_generation("m2")
    await orchestrator.wait_idle()
    assert len(events) == count


@pytest.mark.asyncio
async def test_config_event_callback_receives_events(sandbox, fast_config, clock):
    from sandforge.engine.orchestrator import Orchestrator

    seen = []

    async def callback(event):
        seen.append(event)

    fast_config.event_callback = callback
    orch = Orchestrator(sandbox, fast_config, clock=clock)
    await orch.add_file("a.txt", "x")
    await orch.wait_idle()
    assert seen[0]["event"] == "file_changed"
    assert seen[0]["file_path"] == "/home/project/a.txt"
    await orch.shutdown()


def test_missing_module_signatures():
    assert matches_missing_module("Error: Cannot find module 'lodash'")
    assert matches_missing_module("Module not found: Error: Can't resolve 'react-dom'")
    assert matches_missing_module("[vite] Failed to resolve import \"axios\" from \"src/a.js\"")
    assert matches_missing_module("code: 'ERR_MODULE_NOT_FOUND'")
    assert not matches_missing_module("TypeError: x is not a function")
