"""Path normalization for file actions.

Every file-action path passes through ``normalize_path`` before it is
displayed or executed, so "src/App.tsx", "/src/App.tsx",
"/home/project/src/App.tsx" and "WORK_DIR/src/App.tsx" all land on the
same catalog entry. The sandbox runtime speaks root-relative paths;
``to_sandbox_path`` translates at that boundary.
"""
from __future__ import annotations

import posixpath
from collections.abc import Iterable

from .config import DEFAULT_ALTERNATE_ROOTS, DEFAULT_PROJECT_ROOT


def _canonical_root(project_root: str) -> str:
    token = str(project_root or "").strip().strip("/")
    return "/" + token if token else "/"


def _join(root: str, segments: list[str]) -> str:
    if not segments:
        return root
    if root == "/":
        return "/" + "/".join(segments)
    return root + "/" + "/".join(segments)


def _strip_prefixes(path: str, prefixes: list[str]) -> str:
    """Repeatedly strip leading separators, "./" and root tokens."""
    changed = True
    while changed:
        changed = False
        path = path.lstrip("/")
        while path.startswith("./"):
            path = path[2:].lstrip("/")
            changed = True
        for prefix in prefixes:
            if path == prefix:
                path = ""
                changed = True
                break
            if path.startswith(prefix + "/"):
                path = path[len(prefix) + 1:]
                changed = True
                break
    return path


def normalize_path(
    path: str,
    project_root: str = DEFAULT_PROJECT_ROOT,
    alternate_roots: Iterable[str] = DEFAULT_ALTERNATE_ROOTS,
) -> str:
    """Map a generator-supplied path onto the canonical absolute project root.

    Idempotent: normalizing an already-normalized path returns it unchanged.
    ``..`` segments never climb above the project root.
    """
    root = _canonical_root(project_root)
    prefixes = [root.lstrip("/")] if root != "/" else []
    for alt in alternate_roots:
        token = str(alt or "").strip().strip("/")
        if token and token not in prefixes:
            prefixes.append(token)

    raw = str(path or "").strip().replace("\\", "/")
    relative = _strip_prefixes(raw, prefixes)

    segments: list[str] = []
    for seg in relative.split("/"):
        if seg in ("", "."):
            continue
        if seg == "..":
            if segments:
                segments.pop()
            continue
        segments.append(seg)
    return _join(root, segments)


def to_sandbox_path(path: str, project_root: str = DEFAULT_PROJECT_ROOT) -> str:
    """Translate an absolute catalog path into the runtime's root-relative form."""
    root = _canonical_root(project_root)
    if path == root:
        return "."
    prefix = root if root == "/" else root + "/"
    if path.startswith(prefix):
        return path[len(prefix):]
    return path.lstrip("/")


def is_within(path: str, root: str) -> bool:
    root = _canonical_root(root)
    if root == "/":
        return path.startswith("/")
    return path == root or path.startswith(root + "/")


def ancestors(path: str, stop_at: str | None = None) -> list[str]:
    """Ancestor directories of *path*, outermost first.

    Excludes "/" itself; when *path* lies under *stop_at*, directories at
    or above *stop_at* are excluded too.
    """
    parents: list[str] = []
    current = posixpath.dirname(path.rstrip("/"))
    floor = _canonical_root(stop_at) if stop_at else None
    if floor is not None and not is_within(path, floor):
        floor = None
    while current and current != "/":
        if floor is not None and (current == floor or not is_within(current, floor)):
            break
        parents.append(current)
        current = posixpath.dirname(current)
    parents.reverse()
    return parents


def basename(path: str) -> str:
    return posixpath.basename(path.rstrip("/"))
