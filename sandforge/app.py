"""Sandforge command-line entry point.

    sandforge serve  [--host HOST] [--port PORT] [--workdir DIR] [--config PATH]
    sandforge replay TRANSCRIPT [--workdir DIR | --dry-run] [--chunk-size N]
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
import tempfile
from collections import Counter
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.table import Table

from sandforge.adapters.event_bus import EventBus
from sandforge.adapters.events import SandforgeEvent
from sandforge.engine.config import RuntimeConfig
from sandforge.engine.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def _configure_logging(level_name: str, log_file: Path | None = None) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)


def _load_config(config_path: str | None) -> RuntimeConfig:
    if config_path:
        from sandforge.engine.yaml_config import load_yaml_config
        return load_yaml_config(config_path)
    return RuntimeConfig.from_env()


def _make_sandbox(workdir: str | None, dry_run: bool):
    if dry_run:
        from sandforge.sandbox.memory import InMemorySandbox
        return InMemorySandbox()
    from sandforge.sandbox.local import LocalSandbox
    target = workdir or tempfile.mkdtemp(prefix="sandforge-")
    return LocalSandbox(target)


def _chunks(text: str, size: int) -> list[str]:
    size = max(1, size)
    return [text[i:i + size] for i in range(0, len(text), size)]


async def replay_transcript(
    orchestrator: Orchestrator,
    transcript: str,
    *,
    stream_id: str = "replay",
    chunk_size: int = 64,
    settle_seconds: float | None = None,
) -> str:
    """Feed *transcript* through the orchestrator in growing prefixes.

    Returns the display text. Waits for the auto-setup checks that the
    transcript triggers before returning.
    """
    config = orchestrator.config
    if settle_seconds is None:
        settle_seconds = (
            config.artifact_settle_seconds
            + config.install_settle_seconds
            + config.start_guard_release_seconds
        )
    orchestrator.start_generation(stream_id)
    received = ""
    display: list[str] = []
    for chunk in _chunks(transcript, chunk_size):
        received += chunk
        display.append(orchestrator.parse(stream_id, received))
        await asyncio.sleep(0)
    logger.info("Replay fed %d chars; waiting %.1fs for setup", len(received), settle_seconds)
    await asyncio.sleep(settle_seconds)
    await orchestrator.wait_idle()
    return "".join(display)


def render_summary(
    orchestrator: Orchestrator,
    console: Console,
    events: list[SandforgeEvent] | None = None,
) -> None:
    files = Table(title="Files")
    files.add_column("Path")
    files.add_column("Kind")
    files.add_column("Size", justify="right")
    for entry in orchestrator.files.values():
        files.add_row(
            entry.path,
            entry.kind,
            "" if entry.is_folder else str(len(entry.content)),
        )
    console.print(files)

    actions = Table(title="Actions")
    actions.add_column("Artifact")
    actions.add_column("Action")
    actions.add_column("Kind")
    actions.add_column("Status")
    actions.add_column("Detail")
    for artifact_id in orchestrator.artifacts:
        runner = orchestrator.runner_for(artifact_id)
        for action in runner.actions.values():
            first_line = (action.content.strip().splitlines() or [""])[0]
            detail = action.file_path or first_line
            actions.add_row(
                artifact_id, action.action_id, action.kind.value,
                action.status.value, detail,
            )
    console.print(actions)

    state = orchestrator.setup_state
    console.print(
        f"[bold]Setup[/bold] phase={orchestrator.setup_phase.value} "
        f"installs={state.install_attempts} starts={state.start_attempts} "
        f"previews={len(orchestrator.previews)}"
    )
    for alert in orchestrator.alerts:
        console.print(f"[red]Alert[/red] {alert.title}: {alert.description}")

    if events:
        counts = Counter(event.event_type for event in events)
        table = Table(title="Events")
        table.add_column("Event")
        table.add_column("Count", justify="right")
        for name, count in sorted(counts.items()):
            table.add_row(name, str(count))
        console.print(table)


async def _run_replay(args, config: RuntimeConfig) -> int:
    transcript_path = Path(args.transcript)
    try:
        transcript = transcript_path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.error("Cannot read transcript %s: %s", transcript_path, exc)
        return 1

    sandbox = _make_sandbox(args.workdir, args.dry_run)
    orchestrator = Orchestrator(sandbox, config)
    orchestrator.attach()
    bus = EventBus(maxsize=0)
    orchestrator.subscribe(bus.make_callback())
    console = Console()
    try:
        display = await replay_transcript(
            orchestrator,
            transcript,
            chunk_size=args.chunk_size,
            settle_seconds=args.wait,
        )
        if args.show_text:
            console.print(display)
        render_summary(orchestrator, console, bus.drain())
    finally:
        await orchestrator.shutdown()
    return 0


async def _run_server(args, config: RuntimeConfig) -> None:
    from sandforge.web.server import SandforgeServer

    sandbox = _make_sandbox(args.workdir, args.dry_run)
    orchestrator = Orchestrator(sandbox, config)
    server = SandforgeServer(orchestrator, host=args.host, port=args.port)
    await server.start()


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="sandforge",
        description="Sandforge: run streamed AI artifacts in a sandbox",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (runtime, paths, commands sections)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Start the HTTP+SSE server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    serve.add_argument("--workdir", metavar="DIR", help="Sandbox directory")
    serve.add_argument(
        "--dry-run", action="store_true",
        help="Use an in-memory sandbox; nothing touches disk",
    )

    replay = sub.add_parser("replay", help="Replay a transcript through the orchestrator")
    replay.add_argument("transcript", metavar="TRANSCRIPT")
    target = replay.add_mutually_exclusive_group()
    target.add_argument("--workdir", metavar="DIR", help="Sandbox directory")
    target.add_argument(
        "--dry-run", action="store_true",
        help="Use an in-memory sandbox; commands are not executed",
    )
    replay.add_argument(
        "--chunk-size", type=int, default=64,
        help="Characters delivered per simulated stream chunk (default: 64)",
    )
    replay.add_argument(
        "--wait", type=float, default=None,
        help="Seconds to wait for auto-setup after the stream ends",
    )
    replay.add_argument(
        "--show-text", action="store_true",
        help="Print the display text (artifacts replaced by placeholders)",
    )

    args = parser.parse_args(argv)

    config = _load_config(args.config)
    level = "DEBUG" if args.verbose else os.getenv("SANDFORGE_LOG_LEVEL", config.log_level)

    if args.command == "serve":
        log_file = Path.home() / ".sandforge" / "logs" / "sandforge-server.log"
        _configure_logging(level, log_file)
        logger.info(
            "Starting sandforge server host=%s port=%s workdir=%s config=%s log=%s",
            args.host, args.port, args.workdir or "<temp>",
            args.config or "<none>", log_file,
        )
        try:
            asyncio.run(_run_server(args, config))
        except KeyboardInterrupt:
            pass
        return

    _configure_logging(level)
    sys.exit(asyncio.run(_run_replay(args, config)))


if __name__ == "__main__":
    main()
