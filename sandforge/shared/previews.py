"""Known preview endpoints, fed by sandbox server-ready / port-closed."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

logger = logging.getLogger(__name__)


@dataclass
class PreviewInfo:
    port: int
    url: str
    ready: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


class PreviewStore:
    def __init__(self) -> None:
        self._previews: list[PreviewInfo] = []
        self.active_index: int | None = None

    def __len__(self) -> int:
        return len(self._previews)

    def items(self) -> list[PreviewInfo]:
        return list(self._previews)

    def add(self, port: int, url: str) -> PreviewInfo:
        """Register or refresh the preview on *port*; the first one becomes active."""
        for preview in self._previews:
            if preview.port == port:
                preview.url = url
                preview.ready = True
                return preview
        preview = PreviewInfo(port=port, url=url)
        self._previews.append(preview)
        if self.active_index is None:
            self.active_index = len(self._previews) - 1
        logger.info("Preview ready port=%d url=%s", port, url)
        return preview

    def remove(self, port: int) -> bool:
        for index, preview in enumerate(self._previews):
            if preview.port != port:
                continue
            del self._previews[index]
            if not self._previews:
                self.active_index = None
            elif self.active_index is not None and self.active_index >= index:
                self.active_index = max(0, self.active_index - 1)
            logger.info("Preview closed port=%d", port)
            return True
        return False

    def set_active(self, index: int) -> None:
        if not 0 <= index < len(self._previews):
            raise IndexError(f"No preview at index {index}")
        self.active_index = index

    @property
    def active(self) -> PreviewInfo | None:
        if self.active_index is None:
            return None
        return self._previews[self.active_index]

    @property
    def has_active(self) -> bool:
        active = self.active
        return active is not None and active.ready

    def clear(self) -> None:
        self._previews.clear()
        self.active_index = None
