"""The single interactive output channel shared by all runners."""
from __future__ import annotations

import itertools
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass

STDOUT = "stdout"
STDERR = "stderr"
COMMAND = "command"


@dataclass
class TerminalEntry:
    id: int
    stream: str
    text: str

    def to_dict(self) -> dict:
        return asdict(self)


class TerminalChannel:
    def __init__(
        self,
        max_entries: int = 2000,
        on_entry: Callable[[TerminalEntry], None] | None = None,
    ) -> None:
        self._entries: deque[TerminalEntry] = deque(maxlen=max(1, max_entries))
        self._ids = itertools.count(1)
        self.on_entry = on_entry

    def write(self, text: str, stream: str = STDOUT) -> TerminalEntry:
        entry = TerminalEntry(id=next(self._ids), stream=stream, text=text)
        self._entries.append(entry)
        if self.on_entry is not None:
            self.on_entry(entry)
        return entry

    def echo_command(self, command: str) -> TerminalEntry:
        return self.write(f"$ {command}\n", COMMAND)

    @property
    def entries(self) -> list[TerminalEntry]:
        return list(self._entries)

    @property
    def text(self) -> str:
        return "".join(entry.text for entry in self._entries)

    def since(self, entry_id: int) -> list[TerminalEntry]:
        return [e for e in self._entries if e.id > entry_id]

    def clear(self) -> None:
        self._entries.clear()
