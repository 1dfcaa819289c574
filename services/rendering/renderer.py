# services/rendering/renderer.py
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from io import BytesIO
from typing import Callable, Optional, Union

import cv2
import numpy as np
from PIL import Image

from services.artifacts import PNG_MIME, NamedArtifact, rename, wrap
from services.rendering.backend import DocumentBackend, DocumentLoadError, require_backend

log = logging.getLogger(__name__)

IMAGE_FORMAT = "png"
DEFAULT_SCALE = 2.0
DEFAULT_QUALITY = 0.92

# PDF header may appear anywhere in the first 1024 bytes.
_PDF_MAGIC = b"%PDF-"
_HEADER_WINDOW = 1024


class RenderErrorKind(str, Enum):
    INVALID_DOCUMENT = "invalid_document"
    PAGE_OUT_OF_RANGE = "page_out_of_range"
    ENCODE_FAILED = "encode_failed"


@dataclass(frozen=True)
class RenderError:
    kind: RenderErrorKind
    detail: str = ""


@dataclass(frozen=True)
class EncodedImage:
    width: int
    height: int
    format: str
    quality: float
    data: bytes = field(repr=False)


@dataclass(frozen=True)
class ConversionResult:
    image: EncodedImage
    artifact: NamedArtifact


@dataclass(frozen=True)
class RenderConfig:
    scale: float = DEFAULT_SCALE
    quality: float = DEFAULT_QUALITY

    def __post_init__(self) -> None:
        if not self.scale > 0:
            raise ValueError(f"scale must be positive, got {self.scale}")
        if not 0.0 <= self.quality <= 1.0:
            raise ValueError(f"quality must be within [0, 1], got {self.quality}")


RenderOutcome = Union[EncodedImage, RenderError]
Encoder = Callable[[np.ndarray, float], bytes]


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def png_compress_level(quality: float) -> int:
    # PNG is lossless; quality only selects zlib effort (0.92 -> 8).
    return max(0, min(9, round_half_up(quality * 9)))


def encode_png(surface: np.ndarray, quality: float) -> bytes:
    img = Image.fromarray(np.ascontiguousarray(surface, dtype=np.uint8))
    buf = BytesIO()
    img.save(buf, format="PNG", compress_level=png_compress_level(quality))
    return buf.getvalue()


def looks_like_pdf(data: bytes) -> bool:
    return bool(data) and _PDF_MAGIC in bytes(data[:_HEADER_WINDOW])


def _to_rgb(surface: np.ndarray) -> np.ndarray:
    if surface.ndim == 2:
        return cv2.cvtColor(surface, cv2.COLOR_GRAY2RGB)
    if surface.shape[2] == 4:
        return cv2.cvtColor(surface, cv2.COLOR_RGBA2RGB)
    return surface


def _fit_surface(surface: np.ndarray, width: int, height: int) -> np.ndarray:
    h, w = surface.shape[:2]
    if (w, h) == (width, height):
        return surface
    # Backends may round the device rect outward by a pixel.
    return cv2.resize(surface, (width, height), interpolation=cv2.INTER_AREA)


class RasterRenderer:
    """
    Renders a single page of a PDF into an encoded PNG.

    Failures come back as RenderError values, never as exceptions:
      - INVALID_DOCUMENT: empty / non-PDF bytes, or the backend refuses them
      - PAGE_OUT_OF_RANGE: page_index outside [0, page_count)
      - ENCODE_FAILED: the encoder produced no bytes

    The backend defaults to the process-wide one from ensure_backend_ready();
    rendering before that raises BackendNotReadyError.
    """

    def __init__(
        self,
        *,
        backend: Optional[DocumentBackend] = None,
        config: Optional[RenderConfig] = None,
        encoder: Encoder = encode_png,
    ) -> None:
        self._backend = backend
        self.config = config or RenderConfig()
        self._encoder = encoder

    @property
    def backend(self) -> DocumentBackend:
        return self._backend if self._backend is not None else require_backend()

    def render(
        self,
        document_bytes: bytes,
        page_index: int = 0,
        scale: Optional[float] = None,
    ) -> RenderOutcome:
        scale = self.config.scale if scale is None else float(scale)
        if not scale > 0:
            raise ValueError(f"scale must be positive, got {scale}")

        if not looks_like_pdf(document_bytes):
            return RenderError(RenderErrorKind.INVALID_DOCUMENT, "not a PDF document")

        backend = self.backend
        try:
            doc = backend.load(bytes(document_bytes))
        except DocumentLoadError as e:
            return RenderError(RenderErrorKind.INVALID_DOCUMENT, str(e))

        try:
            if page_index < 0 or page_index >= doc.page_count:
                return RenderError(
                    RenderErrorKind.PAGE_OUT_OF_RANGE,
                    f"page {page_index} not in [0, {doc.page_count})",
                )

            page_w, page_h = doc.page_size(page_index)
            width, height = round_half_up(page_w * scale), round_half_up(page_h * scale)
            if width < 1 or height < 1:
                return RenderError(RenderErrorKind.INVALID_DOCUMENT, f"degenerate page size {page_w}x{page_h}")

            try:
                surface = doc.render(page_index, width / page_w, height / page_h)
            except Exception as e:
                log.warning("page %d failed to render: %s", page_index, e)
                return RenderError(RenderErrorKind.INVALID_DOCUMENT, f"render failed: {e}")
        finally:
            doc.close()

        surface = _fit_surface(_to_rgb(surface), width, height)

        try:
            data = self._encoder(surface, self.config.quality)
        except Exception as e:
            log.warning("encoder raised: %s", e)
            data = b""
        if not data:
            return RenderError(RenderErrorKind.ENCODE_FAILED, "encoder returned no data")

        return EncodedImage(
            width=width,
            height=height,
            format=IMAGE_FORMAT,
            quality=self.config.quality,
            data=data,
        )

    def convert(
        self,
        document_bytes: bytes,
        original_name: str,
        page_index: int = 0,
    ) -> Union[ConversionResult, RenderError]:
        """Page -> PNG artifact named after the source document, plus the image for a preview handle."""
        out = self.render(document_bytes, page_index)
        if isinstance(out, RenderError):
            return out
        artifact = wrap(out.data, rename(original_name, IMAGE_FORMAT), PNG_MIME)
        return ConversionResult(image=out, artifact=artifact)
