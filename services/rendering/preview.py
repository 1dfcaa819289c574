# services/rendering/preview.py
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional
from uuid import uuid4

from services.rendering.renderer import EncodedImage


class PreviewLimitError(RuntimeError):
    pass


@dataclass(frozen=True)
class PreviewHandle:
    id: str
    url: str


class PreviewRegistry:
    """
    Holds encoded preview images behind short-lived handles.
    Whoever acquires a handle releases it once the preview is no longer shown;
    open() does that automatically on exit.
    """

    def __init__(self, *, url_prefix: str = "/previews", max_entries: int = 64) -> None:
        self.url_prefix = url_prefix.rstrip("/")
        self.max_entries = int(max_entries)
        self._items: Dict[str, EncodedImage] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def acquire(self, image: EncodedImage) -> PreviewHandle:
        handle_id = uuid4().hex
        with self._lock:
            if len(self._items) >= self.max_entries:
                raise PreviewLimitError(f"too many open previews ({self.max_entries})")
            self._items[handle_id] = image
        return PreviewHandle(id=handle_id, url=f"{self.url_prefix}/{handle_id}")

    def get(self, handle_id: str) -> Optional[EncodedImage]:
        with self._lock:
            return self._items.get(handle_id)

    def release(self, handle_id: str) -> bool:
        with self._lock:
            return self._items.pop(handle_id, None) is not None

    @contextmanager
    def open(self, image: EncodedImage) -> Iterator[PreviewHandle]:
        handle = self.acquire(image)
        try:
            yield handle
        finally:
            self.release(handle.id)
