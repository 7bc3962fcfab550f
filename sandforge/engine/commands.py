"""Infer the intent of generated shell commands.

``classify(command)`` is pure: it never looks at orchestrator state. The
orchestrator uses the result to fold installs and dev-server launches
into auto-setup instead of running them verbatim.
"""
from __future__ import annotations

import os
import re
import shlex

from .models import CommandIntent

PACKAGE_MANAGERS = frozenset({"npm", "pnpm", "yarn", "bun"})
INSTALL_VERBS = frozenset({"install", "i", "ci"})
START_SCRIPTS = frozenset({"dev", "start", "preview", "serve"})

# Runners that execute a package binary: npx vite, pnpm dlx vite, bunx vite.
_BINARY_RUNNERS = frozenset({"npx", "bunx"})
_DEV_SERVER_BINARIES = frozenset({
    "vite", "next", "nuxt", "astro", "serve", "http-server", "live-server",
    "webpack-dev-server", "remix",
})
_DEV_SUBCOMMAND_BINARIES = frozenset({"next", "nuxt", "astro", "remix"})
_SHELL_WRAPPERS = frozenset({"bash", "sh", "zsh"})
_ENV_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


def _operator_at(command: str, i: int) -> str:
    pair = command[i:i + 2]
    if pair in ("&&", "||"):
        return pair
    if command[i] in ";|\n":
        return command[i]
    return ""


def _scan_segments(command: str) -> list[tuple[str, str]]:
    """Split *command* into ``(segment, operator)`` pairs.

    ``operator`` is the separator that follows the segment, or ``""`` for
    the last one. Operators inside quotes or after a backslash are part of
    the segment.
    """
    pairs: list[tuple[str, str]] = []
    quote = ""
    start = i = 0
    while i < len(command):
        ch = command[i]
        if ch == "\\" and quote != "'":
            i += 2
            continue
        if quote:
            if ch == quote:
                quote = ""
        elif ch in "'\"":
            quote = ch
        else:
            op = _operator_at(command, i)
            if op:
                pairs.append((command[start:i].strip(), op))
                i += len(op)
                start = i
                continue
        i += 1
    pairs.append((command[start:].strip(), ""))
    return [(segment, op) for segment, op in pairs if segment]


def split_shell_segments(command: str) -> list[str]:
    """Split a shell command on ``&&``, ``||``, ``;``, ``|`` and newlines."""
    return [segment for segment, _ in _scan_segments(command or "")]


def _join_segments(pairs: list[tuple[str, str]]) -> str:
    text = ""
    for index, (segment, op) in enumerate(pairs):
        text += segment
        if index < len(pairs) - 1:
            text += "\n" if op == "\n" else f" {op} "
    return text


def _tokens(segment: str) -> list[str]:
    try:
        parts = shlex.split(segment)
    except ValueError:
        parts = segment.split()
    while parts and _ENV_ASSIGNMENT_RE.match(parts[0]):
        parts = parts[1:]
    return parts


def _is_bare_install(parts: list[str]) -> bool:
    prog = os.path.basename(parts[0])
    if prog not in PACKAGE_MANAGERS:
        return False
    args = [p for p in parts[1:] if not p.startswith("-")]
    if prog == "yarn" and not args:
        return True
    return len(args) == 1 and args[0] in INSTALL_VERBS


def _is_dev_server(parts: list[str]) -> bool:
    prog = os.path.basename(parts[0])
    args = [p for p in parts[1:] if not p.startswith("-")]

    if prog in PACKAGE_MANAGERS:
        if not args:
            return False
        if args[0] == "run" and len(args) > 1:
            return args[1] in START_SCRIPTS
        if prog == "npm":
            return args[0] == "start"
        if prog == "pnpm" and args[0] == "dlx" and len(args) > 1:
            return _is_dev_server(args[1:])
        return args[0] in START_SCRIPTS

    if prog in _BINARY_RUNNERS:
        return bool(args) and _is_dev_server(args)

    if prog in _DEV_SUBCOMMAND_BINARIES:
        return bool(args) and args[0] in {"dev", "start"}
    return prog in _DEV_SERVER_BINARIES


def _classify_segment(segment: str) -> CommandIntent:
    parts = _tokens(segment)
    if not parts:
        return CommandIntent.OTHER

    prog = os.path.basename(parts[0])
    if prog in _SHELL_WRAPPERS:
        for i, token in enumerate(parts[1:], start=1):
            if token in {"-c", "-lc"} and i + 1 < len(parts):
                return classify(parts[i + 1])
        return CommandIntent.OTHER

    if _is_bare_install(parts):
        return CommandIntent.INSTALL
    if _is_dev_server(parts):
        return CommandIntent.START
    return CommandIntent.OTHER


def _is_cd(segment: str) -> bool:
    parts = _tokens(segment)
    return bool(parts) and parts[0] == "cd"


def classify(command: str) -> CommandIntent:
    """Classify a shell command as INSTALL, START or OTHER.

    Compound commands are split on ``&&``, ``||``, ``;`` and ``|``; ``cd``
    segments are ignored. A compound command is INSTALL or START only
    when every remaining segment is a bare install or a dev-server launch;
    a single other segment makes the whole command OTHER so nothing in it
    is dropped. INSTALL wins over START when both appear
    ("npm install && npm run dev").
    """
    intents = {
        _classify_segment(segment)
        for segment in split_shell_segments(str(command or "").strip())
        if not _is_cd(segment)
    }
    if not intents or CommandIntent.OTHER in intents:
        return CommandIntent.OTHER
    if CommandIntent.INSTALL in intents:
        return CommandIntent.INSTALL
    return CommandIntent.START


def split_trailing_start(command: str) -> tuple[str, str] | None:
    """Separate trailing dev-server launches from an OTHER command.

    ``"npm install lodash && npm run dev"`` gives
    ``("npm install lodash", "npm run dev")``. ``cd`` segments before the
    launch are carried into the start command so it runs in the same
    directory. Returns None when the command does not end in a launch or
    consists of nothing else.
    """
    pairs = _scan_segments(str(command or "").strip())
    cut = len(pairs)
    while cut > 0 and _classify_segment(pairs[cut - 1][0]) == CommandIntent.START:
        cut -= 1
    head, tail = pairs[:cut], pairs[cut:]
    if not tail or not any(not _is_cd(segment) for segment, _ in head):
        return None
    if head[-1][1] not in ("&&", ";", "\n"):
        # "npm run build || npm run dev" and pipes depend on the left side.
        return None
    cds = [(segment, "&&") for segment, _ in head if _is_cd(segment)]
    return _join_segments(head), _join_segments(cds + tail)
