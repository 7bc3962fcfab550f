"""Open documents, selection and unsaved edits.

Selection lives on the catalog so deleting a selected path clears it.
"""
from __future__ import annotations

from .catalog import FileCatalog


class EditorState:
    def __init__(self, catalog: FileCatalog) -> None:
        self._catalog = catalog
        self.open_paths: list[str] = []
        self._unsaved: dict[str, str] = {}

    @property
    def selected(self) -> str | None:
        return self._catalog.selected

    @property
    def unsaved_files(self) -> set[str]:
        return set(self._unsaved)

    def open_file(self, path: str) -> None:
        if path not in self.open_paths:
            self.open_paths.append(path)
        self._catalog.selected = path

    def select_file(self, path: str | None) -> None:
        if path is not None and path not in self.open_paths:
            self.open_paths.append(path)
        self._catalog.selected = path

    def close_file(self, path: str) -> None:
        if path in self.open_paths:
            self.open_paths.remove(path)
        self._unsaved.pop(path, None)
        if self._catalog.selected == path:
            self._catalog.selected = self.open_paths[-1] if self.open_paths else None

    def update_file(self, path: str, content: str) -> bool:
        """Record an in-editor edit; returns True when it differs from the catalog."""
        if content == self._catalog.content(path):
            self._unsaved.pop(path, None)
            return False
        self._unsaved[path] = content
        return True

    def document(self, path: str) -> str | None:
        if path in self._unsaved:
            return self._unsaved[path]
        return self._catalog.content(path)

    def pending_content(self, path: str) -> str | None:
        return self._unsaved.get(path)

    def mark_saved(self, path: str) -> None:
        self._unsaved.pop(path, None)

    def discard_changes(self, path: str) -> None:
        self._unsaved.pop(path, None)

    def forget(self, paths: list[str]) -> None:
        for path in paths:
            self._unsaved.pop(path, None)
            if path in self.open_paths:
                self.open_paths.remove(path)

    def reset(self) -> None:
        self.open_paths.clear()
        self._unsaved.clear()
        self._catalog.selected = None
