# services/artifacts.py
from __future__ import annotations

import re
from dataclasses import dataclass, field

PDF_MIME = "application/pdf"
PNG_MIME = "image/png"

_PDF_SUFFIX = re.compile(r"\.pdf$", re.IGNORECASE)


@dataclass(frozen=True)
class NamedArtifact:
    name: str
    mime_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)


def rename(original_name: str, new_extension: str) -> str:
    """
    report.pdf -> report.png, report.PDF -> report.png, notes.txt -> notes.txt.png
    Only a trailing .pdf is stripped.
    """
    base = _PDF_SUFFIX.sub("", original_name or "")
    return f"{base}.{new_extension.lstrip('.')}"


def wrap(buffer: bytes, name: str, mime_type: str) -> NamedArtifact:
    return NamedArtifact(name=name, mime_type=mime_type, data=bytes(buffer))
