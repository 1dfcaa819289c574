# services/ingestion/storage.py
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Optional, Protocol, Sequence
from uuid import uuid4

from services.artifacts import NamedArtifact

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._ -]+")


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredObject:
    path: str
    name: str
    size: int


class BlobStorage(Protocol):
    def upload(self, files: Sequence[NamedArtifact]) -> Optional[List[StoredObject]]: ...
    def read(self, path: str) -> bytes: ...


def safe_filename(name: str) -> str:
    base = PurePosixPath((name or "").replace("\\", "/")).name
    base = _UNSAFE_CHARS.sub("_", base).strip(" .")
    return base or "file"


class LocalStorage:
    """Blob storage on the local filesystem: <root>/<upload-id>/<filename>."""

    def __init__(self, root_dir: str) -> None:
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        root = self.root.resolve()
        p = (root / path.lstrip("/")).resolve()
        if root not in p.parents:
            raise StorageError(f"path escapes storage root: {path}")
        return p

    def upload(self, files: Sequence[NamedArtifact]) -> List[StoredObject]:
        if not files:
            raise StorageError("nothing to upload")

        out: List[StoredObject] = []
        for f in files:
            rel = f"{uuid4().hex}/{safe_filename(f.name)}"
            p = self.root / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            tmp = p.with_suffix(p.suffix + ".tmp")
            tmp.write_bytes(f.data)
            tmp.replace(p)
            out.append(StoredObject(path=f"/{rel}", name=p.name, size=len(f.data)))
        return out

    def read(self, path: str) -> bytes:
        p = self._resolve(path)
        if not p.is_file():
            raise StorageError(f"no such object: {path}")
        return p.read_bytes()


class JobStore:
    """Per-job scratch directory for queued submissions: inputs, status and results."""

    def __init__(self, root_dir: str) -> None:
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _job_dir(self, job_id: str) -> Path:
        return self.root / safe_filename(job_id)

    def put_bytes(self, *, job_id: str, blob: bytes, name: str = "input.bin") -> Path:
        p = self._job_dir(job_id) / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(blob)
        return p

    def get_bytes(self, *, job_id: str, name: str = "input.bin") -> bytes:
        p = self._job_dir(job_id) / name
        if not p.exists():
            raise StorageError(f"missing job artifact: {job_id}/{name}")
        return p.read_bytes()

    def put_json_atomic(self, *, job_id: str, obj: dict, name: str) -> Path:
        out = self._job_dir(job_id) / name
        out.parent.mkdir(parents=True, exist_ok=True)

        tmp = out.with_suffix(out.suffix + ".tmp")
        tmp.write_text(json.dumps(obj, indent=2), encoding="utf-8")
        tmp.replace(out)  # atomic on same filesystem

        return out

    def get_json_if_exists(self, *, job_id: str, name: str) -> dict | None:
        p = self._job_dir(job_id) / name
        if not p.exists():
            return None
        return json.loads(p.read_text(encoding="utf-8"))
