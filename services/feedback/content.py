# services/feedback/content.py
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Tuple, Union

from services.validation.schema_validation import validate_with_schema

_FENCE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)


class FeedbackParseError(ValueError):
    pass


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class ContentBlock:
    type: str
    text: str = ""


@dataclass(frozen=True)
class BlockSequence:
    blocks: Tuple[ContentBlock, ...]


Content = Union[TextContent, BlockSequence]


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: Content


@dataclass(frozen=True)
class ChatResponse:
    message: ChatMessage


def content_from_raw(raw: Any) -> Content:
    if isinstance(raw, str):
        return TextContent(raw)
    if isinstance(raw, (list, tuple)):
        blocks = []
        for b in raw:
            if isinstance(b, dict):
                blocks.append(ContentBlock(type=str(b.get("type") or "text"), text=str(b.get("text") or "")))
            elif isinstance(b, str):
                blocks.append(ContentBlock(type="text", text=b))
            else:
                raise FeedbackParseError(f"unsupported content block: {type(b).__name__}")
        return BlockSequence(tuple(blocks))
    raise FeedbackParseError(f"unsupported message content: {type(raw).__name__}")


def response_from_dict(d: Dict[str, Any]) -> ChatResponse:
    """{"message": {"role": ..., "content": str | [{"type": ..., "text": ...}]}}"""
    msg = d.get("message") if isinstance(d, dict) else None
    if not isinstance(msg, dict) or "content" not in msg:
        raise FeedbackParseError("response has no message content")
    return ChatResponse(
        message=ChatMessage(role=str(msg.get("role") or "assistant"), content=content_from_raw(msg["content"]))
    )


def extract_text(content: Content) -> str:
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, BlockSequence):
        if not content.blocks:
            raise FeedbackParseError("empty block sequence")
        return content.blocks[0].text
    raise FeedbackParseError(f"unknown content type: {type(content).__name__}")


def parse_feedback(text: str) -> Dict[str, Any]:
    if not isinstance(text, str) or not text.strip():
        raise FeedbackParseError("feedback text is empty")

    m = _FENCE.match(text)
    body = m.group(1) if m else text

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as e:
        raise FeedbackParseError(f"feedback is not valid JSON: {e}") from e

    ok, msg = validate_with_schema(parsed, "feedback")
    if not ok:
        raise FeedbackParseError(f"feedback has the wrong shape: {msg}")
    return parsed
