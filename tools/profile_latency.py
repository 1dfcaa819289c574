import time

import fitz

from services.rendering.backend import ensure_backend_ready
from services.rendering.renderer import RasterRenderer, RenderError


def make_sample_pdf(width: float = 612, height: float = 792, lines: int = 60) -> bytes:
    doc = fitz.open()
    page = doc.new_page(width=width, height=height)
    for i in range(lines):
        page.insert_text((48, 48 + i * 12), f"Line {i:03d}  Senior Engineer, 2019-2024, Python / FastAPI / Celery", fontsize=9)
    data = doc.tobytes()
    doc.close()
    return data


def profile(runs: int = 10):
    print("⏳ Loading renderer...")
    renderer = RasterRenderer(backend=ensure_backend_ready())

    # US Letter page with a column of text, like a typical resume
    pdf = make_sample_pdf()

    print("🚀 Starting Profiling (Warmup)...")
    out = renderer.render(pdf, 0)
    if isinstance(out, RenderError):
        raise SystemExit(f"render failed: {out.kind.value} {out.detail}")

    print(f"🚀 Profiling {runs} runs at scale {renderer.config.scale}...")
    times = []
    for _ in range(runs):
        t0 = time.time()
        renderer.render(pdf, 0)
        t1 = time.time()
        times.append(t1 - t0)

    avg = sum(times) / len(times)
    print(f"📊 Average Latency: {avg*1000:.2f} ms ({out.width}x{out.height}, {len(out.data)/1024:.0f} KiB)")

if __name__ == "__main__":
    profile()
