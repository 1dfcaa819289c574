from __future__ import annotations

from io import BytesIO

import fitz
import numpy as np
import pytest
from PIL import Image

from services.rendering import backend as backend_mod
from services.rendering.preview import PreviewLimitError, PreviewRegistry
from services.rendering.renderer import (
    ConversionResult,
    EncodedImage,
    RasterRenderer,
    RenderConfig,
    RenderError,
    RenderErrorKind,
    png_compress_level,
    round_half_up,
)

PDF = b"%PDF-1.7 fake"


class FakeDoc:
    def __init__(self, sizes, pad=0, channels=3, fail_render=False):
        self.sizes = sizes
        self.pad = pad
        self.channels = channels
        self.fail_render = fail_render
        self.closed = False
        self.rendered = []

    @property
    def page_count(self):
        return len(self.sizes)

    def page_size(self, index):
        return self.sizes[index]

    def render(self, index, scale_x, scale_y):
        if self.fail_render:
            raise RuntimeError("corrupt content stream")
        self.rendered.append((index, scale_x, scale_y))
        w, h = self.sizes[index]
        shape = (round(h * scale_y) + self.pad, round(w * scale_x) + self.pad)
        if self.channels > 1:
            shape = shape + (self.channels,)
        return np.zeros(shape, dtype=np.uint8)

    def close(self):
        self.closed = True


class FakeBackend:
    def __init__(self, doc):
        self.doc = doc
        self.loads = 0

    def load(self, data):
        self.loads += 1
        return self.doc


def decode(img: EncodedImage) -> Image.Image:
    return Image.open(BytesIO(img.data))


@pytest.fixture
def real_backend():
    backend_mod.reset_backend()
    yield backend_mod.ensure_backend_ready()
    backend_mod.reset_backend()


def make_pdf(*sizes) -> bytes:
    doc = fitz.open()
    for w, h in sizes:
        page = doc.new_page(width=w, height=h)
        page.insert_text((10, 20), "Jane Doe - Resume", fontsize=8)
    data = doc.tobytes()
    doc.close()
    return data


def test_round_half_up_ties_go_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.49) == 2
    assert round_half_up(600.0) == 600


def test_png_compress_level_from_quality():
    assert png_compress_level(0.92) == 8
    assert png_compress_level(0.0) == 0
    assert png_compress_level(1.0) == 9


def test_dimensions_are_page_size_times_scale():
    doc = FakeDoc([(200.0, 300.0)])
    out = RasterRenderer(backend=FakeBackend(doc)).render(PDF, 0, 2.0)

    assert isinstance(out, EncodedImage)
    assert (out.width, out.height) == (400, 600)
    assert out.format == "png"
    assert out.quality == pytest.approx(0.92)
    assert decode(out).size == (400, 600)
    assert doc.closed


def test_fractional_sizes_round_half_up():
    doc = FakeDoc([(100.25, 50.25)])
    out = RasterRenderer(backend=FakeBackend(doc)).render(PDF, 0, 2.0)
    # 200.5 -> 201, 100.5 -> 101
    assert (out.width, out.height) == (201, 101)
    assert decode(out).size == (201, 101)


def test_surface_off_by_one_is_resized_to_target():
    doc = FakeDoc([(200.0, 300.0)], pad=1)
    out = RasterRenderer(backend=FakeBackend(doc)).render(PDF, 0, 1.0)
    assert decode(out).size == (200, 300)


@pytest.mark.parametrize("channels", [1, 4])
def test_gray_and_alpha_surfaces_are_encoded_as_rgb(channels):
    doc = FakeDoc([(20.0, 10.0)], channels=channels)
    out = RasterRenderer(backend=FakeBackend(doc)).render(PDF, 0, 1.0)
    assert decode(out).mode == "RGB"


def test_default_scale_comes_from_config():
    doc = FakeDoc([(10.0, 10.0)])
    out = RasterRenderer(backend=FakeBackend(doc), config=RenderConfig(scale=3.0)).render(PDF)
    assert (out.width, out.height) == (30, 30)


@pytest.mark.parametrize("data", [b"", b"hello world", b"\x89PNG\r\n\x1a\n"])
def test_empty_or_non_pdf_bytes_are_invalid(data):
    backend = FakeBackend(FakeDoc([(10.0, 10.0)]))
    out = RasterRenderer(backend=backend).render(data, 0, 2.0)
    assert isinstance(out, RenderError)
    assert out.kind is RenderErrorKind.INVALID_DOCUMENT
    assert backend.loads == 0


def test_backend_load_error_is_invalid_document():
    class Refusing:
        def load(self, data):
            raise backend_mod.DocumentLoadError("no objects found")

    out = RasterRenderer(backend=Refusing()).render(PDF, 0, 2.0)
    assert out.kind is RenderErrorKind.INVALID_DOCUMENT
    assert "no objects found" in out.detail


@pytest.mark.parametrize("index", [-1, 1, 7])
def test_page_out_of_range(index):
    doc = FakeDoc([(10.0, 10.0)])
    out = RasterRenderer(backend=FakeBackend(doc)).render(PDF, index, 2.0)
    assert out.kind is RenderErrorKind.PAGE_OUT_OF_RANGE
    assert doc.closed
    assert doc.rendered == []


def test_render_fault_is_invalid_document():
    doc = FakeDoc([(10.0, 10.0)], fail_render=True)
    out = RasterRenderer(backend=FakeBackend(doc)).render(PDF, 0, 2.0)
    assert out.kind is RenderErrorKind.INVALID_DOCUMENT
    assert doc.closed


@pytest.mark.parametrize("encoder", [lambda s, q: b"", lambda s, q: None])
def test_encoder_without_data_is_encode_failed(encoder):
    doc = FakeDoc([(10.0, 10.0)])
    out = RasterRenderer(backend=FakeBackend(doc), encoder=encoder).render(PDF, 0, 2.0)
    assert out.kind is RenderErrorKind.ENCODE_FAILED


def test_encoder_exception_is_encode_failed():
    def broken(surface, quality):
        raise OSError("zlib")

    out = RasterRenderer(backend=FakeBackend(FakeDoc([(10.0, 10.0)])), encoder=broken).render(PDF, 0, 2.0)
    assert out.kind is RenderErrorKind.ENCODE_FAILED


def test_non_positive_scale_is_rejected():
    renderer = RasterRenderer(backend=FakeBackend(FakeDoc([(10.0, 10.0)])))
    with pytest.raises(ValueError):
        renderer.render(PDF, 0, 0)
    with pytest.raises(ValueError):
        RenderConfig(scale=-1.0)
    with pytest.raises(ValueError):
        RenderConfig(quality=1.5)


def test_convert_names_the_artifact_after_the_document():
    out = RasterRenderer(backend=FakeBackend(FakeDoc([(10.0, 20.0)]))).convert(PDF, "Jane_CV.PDF")
    assert isinstance(out, ConversionResult)
    assert out.artifact.name == "Jane_CV.png"
    assert out.artifact.mime_type == "image/png"
    assert out.artifact.data == out.image.data


def test_convert_passes_render_errors_through():
    out = RasterRenderer(backend=FakeBackend(FakeDoc([(10.0, 20.0)]))).convert(b"", "x.pdf")
    assert isinstance(out, RenderError)


def test_rendering_before_backend_init_raises():
    backend_mod.reset_backend()
    with pytest.raises(backend_mod.BackendNotReadyError):
        RasterRenderer().render(PDF, 0, 2.0)


def test_ensure_backend_ready_initialises_once(real_backend):
    assert backend_mod.ensure_backend_ready() is real_backend
    assert backend_mod.current_backend() is real_backend


def test_real_pdf_renders_at_scale(real_backend):
    out = RasterRenderer().render(make_pdf((200, 300)), 0, 2.0)
    assert (out.width, out.height) == (400, 600)
    img = decode(out)
    assert img.size == (400, 600)
    assert img.format == "PNG"


def test_real_pdf_second_page_and_out_of_range(real_backend):
    pdf = make_pdf((200, 300), (100, 50))
    out = RasterRenderer(backend=real_backend).render(pdf, 1, 1.0)
    assert (out.width, out.height) == (100, 50)
    assert RasterRenderer(backend=real_backend).render(pdf, 2, 1.0).kind is RenderErrorKind.PAGE_OUT_OF_RANGE


def test_real_backend_rejects_garbage_with_pdf_header(real_backend):
    out = RasterRenderer(backend=real_backend).render(b"%PDF-1.4\nthis is not really a pdf", 0, 2.0)
    assert isinstance(out, RenderError)
    assert out.kind is RenderErrorKind.INVALID_DOCUMENT


def test_preview_handles_are_released():
    image = EncodedImage(width=1, height=1, format="png", quality=0.92, data=b"png")
    registry = PreviewRegistry()

    with registry.open(image) as handle:
        assert registry.get(handle.id) is image
        assert handle.url == f"/previews/{handle.id}"
        assert len(registry) == 1
    assert registry.get(handle.id) is None
    assert len(registry) == 0

    h = registry.acquire(image)
    assert registry.release(h.id)
    assert not registry.release(h.id)


def test_preview_registry_is_bounded():
    image = EncodedImage(width=1, height=1, format="png", quality=0.92, data=b"png")
    registry = PreviewRegistry(max_entries=1)
    registry.acquire(image)
    with pytest.raises(PreviewLimitError):
        registry.acquire(image)
