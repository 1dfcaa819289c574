# services/inference/client.py
from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, Optional, Protocol

from services.feedback.content import ChatResponse, FeedbackParseError, response_from_dict
from services.ingestion.storage import BlobStorage
from services.rendering.backend import DocumentBackend, DocumentLoadError, require_backend

log = logging.getLogger(__name__)

DEFAULT_OLLAMA_BASE_URL = (os.getenv("RESUME_OLLAMA_URL") or "http://127.0.0.1:11434").strip()
DEFAULT_OLLAMA_MODEL = (os.getenv("RESUME_OLLAMA_MODEL") or "llama3.2:3b").strip()
DEFAULT_TIMEOUT_S = float((os.getenv("RESUME_INFERENCE_TIMEOUT_S") or "120").strip() or "120")

OLLAMA_CHAT_PATH = "/api/chat"
OLLAMA_FORMAT_JSON = "json"
TEMPERATURE = 0.0
MAX_DOCUMENT_CHARS = 20_000

SYSTEM_PROMPT = (
    "You review resumes for job applications.\n"
    "You receive the plain text of a resume followed by instructions.\n"
    "Return ONLY a JSON object. No markdown. No commentary.\n"
)


class InferenceError(RuntimeError):
    pass


class FeedbackClient(Protocol):
    def feedback(self, document_path: str, instructions: str) -> Optional[ChatResponse]: ...


@dataclass(frozen=True)
class InferenceConfig:
    base_url: str = DEFAULT_OLLAMA_BASE_URL
    model: str = DEFAULT_OLLAMA_MODEL
    timeout_s: float = DEFAULT_TIMEOUT_S


def extract_document_text(
    data: bytes,
    *,
    backend: Optional[DocumentBackend] = None,
    max_chars: int = MAX_DOCUMENT_CHARS,
) -> str:
    # without an injected backend, ensure_backend_ready() must already have run
    backend = backend if backend is not None else require_backend()
    try:
        doc = backend.load(data)
    except DocumentLoadError as e:
        raise InferenceError(f"document unreadable: {e}") from e
    try:
        text = "\n".join(doc.page_text(i) for i in range(doc.page_count))
    finally:
        doc.close()
    return text.strip()[:max_chars]


class OllamaFeedbackClient:
    """
    Resume feedback through an Ollama chat model.
    Contract:
      - Input: storage path of the uploaded resume + free-text instructions
      - Output: ChatResponse whose message content is the model's JSON text
      - Raises InferenceError on transport, HTTP or protocol errors
    """

    def __init__(
        self,
        *,
        storage: BlobStorage,
        config: Optional[InferenceConfig] = None,
        backend: Optional[DocumentBackend] = None,
        text_extractor: Optional[Callable[[bytes], str]] = None,
    ) -> None:
        self.storage = storage
        self.config = config or InferenceConfig()
        self._extract_text = text_extractor or partial(extract_document_text, backend=backend)

    def feedback(self, document_path: str, instructions: str) -> ChatResponse:
        try:
            data = self.storage.read(document_path)
        except Exception as e:
            raise InferenceError(f"could not read {document_path}: {e}") from e

        resume_text = self._extract_text(data)
        if not resume_text:
            raise InferenceError("resume has no extractable text")

        payload = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f"Resume:\n{resume_text}\n\nInstructions:\n{instructions}"},
            ],
            "stream": False,
            "format": OLLAMA_FORMAT_JSON,
            "options": {"temperature": TEMPERATURE},
        }

        resp = self._post_json(self._build_url(OLLAMA_CHAT_PATH), payload, timeout_s=self.config.timeout_s)

        if resp.get("done") is not True:
            raise InferenceError(f"Ollama generation not done: done={resp.get('done')}")

        try:
            return response_from_dict(resp)
        except FeedbackParseError as e:
            raise InferenceError(f"Ollama response malformed: {e}") from e

    def _build_url(self, path: str) -> str:
        base = (self.config.base_url or "").strip()
        if not base:
            raise InferenceError("Missing Ollama base_url (RESUME_OLLAMA_URL)")
        return base.rstrip("/") + path

    def _post_json(self, url: str, payload: Dict[str, Any], *, timeout_s: float) -> Dict[str, Any]:
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(
            url=url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=timeout_s) as r:
                body = r.read().decode("utf-8", errors="replace")
        except (urllib.error.HTTPError, urllib.error.URLError, TimeoutError) as e:
            raise InferenceError(f"Ollama request failed: {e}") from e

        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as e:
            raise InferenceError(f"Ollama HTTP 200 but body was not JSON: {e}") from e

        if not isinstance(parsed, dict):
            raise InferenceError("Ollama HTTP 200 but JSON was not an object")

        err = parsed.get("error")
        if isinstance(err, str) and err.strip():
            raise InferenceError(f"Ollama error: {err.strip()}")

        log.debug("ollama %s answered in %s ns", self.config.model, parsed.get("total_duration"))
        return parsed
