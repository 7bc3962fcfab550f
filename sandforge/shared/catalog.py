"""In-memory file catalog: absolute path → file or folder entry.

The catalog is what a UI displays. Streaming writes land here first;
the sandbox only ever sees complete content, written by the runner.
Every file write materializes its ancestor folders and expands them.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from sandforge.engine.config import DEFAULT_PROJECT_ROOT
from sandforge.engine.paths import ancestors, is_within

logger = logging.getLogger(__name__)

FILE = "file"
FOLDER = "folder"


@dataclass
class FileEntry:
    path: str
    kind: str = FILE
    content: str = ""
    is_binary: bool = False

    @property
    def is_folder(self) -> bool:
        return self.kind == FOLDER

    def to_dict(self) -> dict:
        return asdict(self)


class FileCatalog:
    def __init__(self, project_root: str = DEFAULT_PROJECT_ROOT) -> None:
        self.project_root = project_root
        self._entries: dict[str, FileEntry] = {}
        self.expanded: set[str] = set()
        self.selected: str | None = None

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, path: str) -> FileEntry | None:
        return self._entries.get(path)

    def content(self, path: str) -> str | None:
        entry = self._entries.get(path)
        if entry is None or entry.is_folder:
            return None
        return entry.content

    def entries(self) -> dict[str, FileEntry]:
        return dict(sorted(self._entries.items()))

    def file_paths(self) -> list[str]:
        return sorted(p for p, e in self._entries.items() if not e.is_folder)

    def ensure_folders(self, path: str) -> list[str]:
        """Create folder entries for every ancestor of *path*; returns the new ones."""
        created: list[str] = []
        for folder in ancestors(path, stop_at=self.project_root):
            entry = self._entries.get(folder)
            if entry is None:
                self._entries[folder] = FileEntry(path=folder, kind=FOLDER)
                created.append(folder)
            elif not entry.is_folder:
                logger.warning("Replacing file %s with a folder", folder)
                self._entries[folder] = FileEntry(path=folder, kind=FOLDER)
                created.append(folder)
            self.expanded.add(folder)
        return created

    def write(self, path: str, content: str, is_binary: bool = False) -> FileEntry:
        self.ensure_folders(path)
        entry = self._entries.get(path)
        if entry is None or entry.is_folder:
            entry = FileEntry(path=path)
            self._entries[path] = entry
        entry.content = content
        entry.is_binary = is_binary
        return entry

    def add_folder(self, path: str) -> FileEntry:
        self.ensure_folders(path)
        entry = self._entries.get(path)
        if entry is None or not entry.is_folder:
            entry = FileEntry(path=path, kind=FOLDER)
            self._entries[path] = entry
        return entry

    def delete(self, path: str) -> list[str]:
        """Remove *path* (and, for folders, everything beneath it)."""
        removed = [p for p in self._entries if p == path or is_within(p, path)]
        for p in removed:
            del self._entries[p]
            self.expanded.discard(p)
        if self.selected is not None and self.selected in removed:
            self.selected = None
        return removed

    def toggle_folder(self, path: str) -> bool:
        """Flip a folder's expansion; returns the new state."""
        entry = self._entries.get(path)
        if entry is None or not entry.is_folder:
            raise KeyError(path)
        if path in self.expanded:
            self.expanded.discard(path)
            return False
        self.expanded.add(path)
        return True

    def clear(self) -> None:
        self._entries.clear()
        self.expanded.clear()
        self.selected = None

    def snapshot(self) -> list[dict]:
        return [
            {**entry.to_dict(), "expanded": entry.path in self.expanded}
            for entry in self.entries().values()
        ]
