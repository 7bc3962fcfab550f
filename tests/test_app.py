"""Tests for the replay CLI."""
from __future__ import annotations

import logging

import pytest
from rich.console import Console

from sandforge.app import _chunks, main, render_summary, replay_transcript

TRANSCRIPT = (
    "Creating the project.\n"
    '<boltArtifact id="p" title="Project">'
    '<boltAction type="file" filePath="package.json">{"name": "demo", "scripts": {"dev": "vite"}}</boltAction>'
    '<boltAction type="file" filePath="index.html">&lt;h1&gt;Hi&lt;/h1&gt;</boltAction>'
    '<boltAction type="shell">npm install</boltAction>'
    "</boltArtifact>\n"
    "All set."
)


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_chunks():
    assert _chunks("abcde", 2) == ["ab", "cd", "e"]
    assert _chunks("abc", 0) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_replay_transcript_runs_setup(orchestrator, sandbox):
    display = await replay_transcript(
        orchestrator, TRANSCRIPT, chunk_size=7, settle_seconds=0.1,
    )

    assert display.startswith("Creating the project.\n<div")
    assert display.endswith("\nAll set.")
    assert sandbox.text("index.html") == "<h1>Hi</h1>\n"
    assert sandbox.commands == ["npm install", "npm run dev"]


@pytest.mark.asyncio
async def test_render_summary_lists_files_and_setup(orchestrator):
    await replay_transcript(orchestrator, TRANSCRIPT, settle_seconds=0.1)
    console = Console(record=True, width=160)
    render_summary(orchestrator, console)
    output = console.export_text()

    assert "/home/project/package.json" in output
    assert "intercepted" in output
    assert "installs=1 starts=1" in output


def test_main_replay_dry_run(tmp_path, capsys):
    transcript = tmp_path / "session.txt"
    transcript.write_text(TRANSCRIPT, encoding="utf-8")
    config = tmp_path / "sandforge.yaml"
    config.write_text(
        "runtime:\n"
        "  artifact_settle_seconds: 0.01\n"
        "  install_settle_seconds: 0.02\n"
        "  start_guard_release_seconds: 0.01\n",
        encoding="utf-8",
    )

    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(config), "replay", str(transcript), "--dry-run", "--wait", "0.2"])

    assert excinfo.value.code == 0
    out = capsys.readouterr().out
    assert "installs=1 starts=1" in out
    assert "setup_action_enqueued" in out


def test_main_replay_missing_transcript(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["replay", str(tmp_path / "missing.txt"), "--dry-run"])
    assert excinfo.value.code == 1


def test_main_requires_subcommand():
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 2
