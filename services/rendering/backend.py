# services/rendering/backend.py
from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Protocol, Tuple

import numpy as np

log = logging.getLogger(__name__)


class BackendNotReadyError(RuntimeError):
    """Raised when rendering is attempted before ensure_backend_ready()."""


class DocumentLoadError(ValueError):
    """Bytes could not be opened as a document."""


class DocumentHandle(Protocol):
    @property
    def page_count(self) -> int: ...
    def page_size(self, index: int) -> Tuple[float, float]: ...
    def render(self, index: int, scale_x: float, scale_y: float) -> np.ndarray: ...
    def page_text(self, index: int) -> str: ...
    def close(self) -> None: ...


class DocumentBackend(Protocol):
    def load(self, data: bytes) -> DocumentHandle: ...


class _InitOnce:
    """
    Process-wide one-time initialisation token.
    The first caller runs the init function; later callers get the cached value.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = False
        self._value: Any = None

    @property
    def done(self) -> bool:
        return self._done

    @property
    def value(self) -> Any:
        return self._value

    def run(self, fn) -> Any:
        if self._done:
            return self._value
        with self._lock:
            if not self._done:
                self._value = fn()
                self._done = True
        return self._value

    def reset(self) -> None:
        with self._lock:
            self._done = False
            self._value = None


_BACKEND_TOKEN = _InitOnce()


class PyMuPDFDocument:
    def __init__(self, doc: Any, fitz_mod: Any) -> None:
        self._doc = doc
        self._fitz = fitz_mod

    @property
    def page_count(self) -> int:
        return int(self._doc.page_count)

    def page_size(self, index: int) -> Tuple[float, float]:
        rect = self._doc[index].rect
        return float(rect.width), float(rect.height)

    def render(self, index: int, scale_x: float, scale_y: float) -> np.ndarray:
        page = self._doc[index]
        mat = self._fitz.Matrix(scale_x, scale_y)
        pix = page.get_pixmap(matrix=mat, colorspace=self._fitz.csRGB, alpha=False)
        return np.frombuffer(pix.samples, dtype=np.uint8).reshape(pix.height, pix.width, pix.n).copy()

    def page_text(self, index: int) -> str:
        return self._doc[index].get_text("text")

    def close(self) -> None:
        self._doc.close()


class PyMuPDFBackend:
    def __init__(self, fitz_mod: Any) -> None:
        self._fitz = fitz_mod

    def load(self, data: bytes) -> PyMuPDFDocument:
        try:
            doc = self._fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise DocumentLoadError(f"could not open document: {e}") from e
        if doc.page_count < 1:
            doc.close()
            raise DocumentLoadError("document has no pages")
        return PyMuPDFDocument(doc, self._fitz)


def _init_pymupdf() -> PyMuPDFBackend:
    import fitz

    # MuPDF writes recoverable parse warnings to stderr by default.
    fitz.TOOLS.mupdf_display_errors(False)
    log.info("rendering backend ready: PyMuPDF %s", getattr(fitz, "VersionBind", "?"))
    return PyMuPDFBackend(fitz)


def ensure_backend_ready() -> PyMuPDFBackend:
    """Initialise the PyMuPDF backend once per process and return it."""
    return _BACKEND_TOKEN.run(_init_pymupdf)


def current_backend() -> Optional[PyMuPDFBackend]:
    return _BACKEND_TOKEN.value if _BACKEND_TOKEN.done else None


def require_backend() -> PyMuPDFBackend:
    backend = current_backend()
    if backend is None:
        raise BackendNotReadyError("call ensure_backend_ready() before rendering")
    return backend


def reset_backend() -> None:
    """Forget the initialised backend (tests only)."""
    _BACKEND_TOKEN.reset()
