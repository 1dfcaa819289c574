# services/kv/store.py
from __future__ import annotations

import hashlib
import json
import threading
from pathlib import Path
from typing import Any, List, Optional, Protocol


class KVStoreError(RuntimeError):
    pass


class KeyValueStore(Protocol):
    def set(self, key: str, value: str) -> bool: ...
    def get(self, key: str) -> Optional[str]: ...
    def list(self, prefix: str) -> List[str]: ...


class LocalKVStore:
    """
    One JSON file per key. Writes go through a temp file + replace,
    so a reader sees either the previous or the new value.
    """

    def __init__(self, root_dir: str) -> None:
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.root / f"{digest}.json"

    def set(self, key: str, value: str) -> bool:
        if not isinstance(value, str):
            raise KVStoreError(f"value for {key!r} must be a string")
        out = self._path(key)
        tmp = out.with_suffix(".json.tmp")
        with self._lock:
            tmp.write_text(json.dumps({"key": key, "value": value}), encoding="utf-8")
            tmp.replace(out)
        return True

    def get(self, key: str) -> Optional[str]:
        p = self._path(key)
        if not p.exists():
            return None
        return json.loads(p.read_text(encoding="utf-8")).get("value")

    def list(self, prefix: str) -> List[str]:
        keys: List[str] = []
        for p in sorted(self.root.glob("*.json")):
            try:
                key = json.loads(p.read_text(encoding="utf-8")).get("key")
            except (OSError, json.JSONDecodeError):
                continue
            if isinstance(key, str) and key.startswith(prefix):
                keys.append(key)
        return sorted(keys)


class RedisKVStore:
    def __init__(self, client: Any) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKVStore":
        import redis

        return cls(redis.Redis.from_url(url, decode_responses=True))

    def set(self, key: str, value: str) -> bool:
        try:
            return bool(self.client.set(key, value))
        except Exception as e:
            raise KVStoreError(f"redis set failed for {key!r}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        try:
            v = self.client.get(key)
        except Exception as e:
            raise KVStoreError(f"redis get failed for {key!r}: {e}") from e
        if isinstance(v, bytes):
            return v.decode("utf-8")
        return v

    def list(self, prefix: str) -> List[str]:
        try:
            keys = [k.decode("utf-8") if isinstance(k, bytes) else k for k in self.client.scan_iter(match=f"{prefix}*")]
        except Exception as e:
            raise KVStoreError(f"redis scan failed for {prefix!r}: {e}") from e
        return sorted(keys)
