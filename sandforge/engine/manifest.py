"""Dependency manifest helpers.

Detects dependency files among written paths, parses the manifest and
picks the install/start commands auto-setup should run.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from .errors import ManifestParseError
from .paths import basename

logger = logging.getLogger(__name__)

# Lockfile basename → package manager
LOCKFILE_MANAGERS: dict[str, str] = {
    "pnpm-lock.yaml": "pnpm",
    "yarn.lock": "yarn",
    "bun.lockb": "bun",
    "package-lock.json": "npm",
    "npm-shrinkwrap.json": "npm",
}

KNOWN_MANAGERS = frozenset({"npm", "pnpm", "yarn", "bun"})


def is_dependency_file(
    path: str,
    manifest_names: Iterable[str],
    lockfile_names: Iterable[str],
) -> bool:
    """True when *path* names a manifest or a known lockfile."""
    name = basename(path)
    if name in tuple(manifest_names):
        return True
    return any(path.endswith("/" + lock) or path == lock for lock in lockfile_names)


def parse_manifest(content: str, path: str = "package.json") -> dict[str, Any]:
    """Parse manifest JSON. Raises ManifestParseError on invalid content."""
    try:
        data = json.loads(content)
    except (TypeError, ValueError) as exc:
        raise ManifestParseError(path, str(exc)) from exc
    if not isinstance(data, dict):
        raise ManifestParseError(path, "top level is not an object")
    return data


def detect_package_manager(
    manifest: dict[str, Any] | None,
    present_files: Iterable[str] = (),
) -> str:
    """Pick the package manager: ``packageManager`` field, then lockfiles, then npm."""
    declared = (manifest or {}).get("packageManager")
    if isinstance(declared, str) and declared:
        name = declared.split("@", 1)[0].strip()
        if name in KNOWN_MANAGERS:
            return name
    names = {basename(p) for p in present_files}
    for lockfile in ("pnpm-lock.yaml", "yarn.lock", "bun.lockb"):
        if lockfile in names:
            return LOCKFILE_MANAGERS[lockfile]
    return "npm"


def pick_install_command(
    manifest: dict[str, Any] | None,
    present_files: Iterable[str] = (),
    override: str | None = None,
) -> str:
    if override:
        return override
    return f"{detect_package_manager(manifest, present_files)} install"


def pick_start_command(
    manifest: dict[str, Any] | None,
    present_files: Iterable[str] = (),
    override: str | None = None,
    declared: str | None = None,
) -> str:
    """Start command precedence: override, declared start, manifest scripts, ``<pm> run dev``."""
    if override:
        return override
    if declared:
        return declared
    pm = detect_package_manager(manifest, present_files)
    scripts = (manifest or {}).get("scripts")
    if isinstance(scripts, dict):
        if "dev" in scripts:
            return f"{pm} run dev"
        if "start" in scripts:
            return f"{pm} start"
        if "preview" in scripts:
            return f"{pm} run preview"
    return f"{pm} run dev"
