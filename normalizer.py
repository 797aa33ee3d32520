"""
Message normalization: client-shaped chat messages -> provider content schema.

Accepted client shapes per message:
  - content as a string
  - content as a list of parts: {"type": "text", "text": ...} or
    {"type": "image_url", "image_url": {"url": ...}}
  - legacy single-image messages carrying a top-level "image_url" next to a
    string (or missing) content

Normalization is total: malformed input degrades to an empty or stringified
message, never to an exception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

log = logging.getLogger("chat_relay")

PART_TEXT = "text"
PART_IMAGE = "image"

# Client/provider tag for each part kind.
_WIRE_TAGS = {"text": PART_TEXT, "image_url": PART_IMAGE}

VALID_ROLES = frozenset({"system", "user", "assistant"})


@dataclass(frozen=True)
class ContentPart:
    """One typed piece of message content: text or an image reference."""

    kind: str
    text: str = ""
    url: str = ""

    @classmethod
    def of_text(cls, text: str) -> ContentPart:
        return cls(kind=PART_TEXT, text=text)

    @classmethod
    def of_image(cls, url: str) -> ContentPart:
        return cls(kind=PART_IMAGE, url=url)

    @property
    def is_image(self) -> bool:
        return self.kind == PART_IMAGE

    def to_dict(self) -> Dict[str, Any]:
        if self.is_image:
            return {"type": "image_url", "image_url": {"url": self.url}}
        return {"type": "text", "text": self.text}


Content = Union[str, List[ContentPart]]


@dataclass
class ChatMessage:
    """A message in the exact shape the upstream provider accepts."""

    role: str
    content: Content
    # Legacy top-level image reference; kept for routing, never sent upstream.
    image_ref: Optional[str] = None

    @property
    def has_images(self) -> bool:
        if self.image_ref:
            return True
        if isinstance(self.content, list):
            return any(p.is_image for p in self.content)
        return False

    @property
    def text(self) -> str:
        """Plain text of the message (text parts joined by a space)."""
        if isinstance(self.content, str):
            return self.content
        return " ".join(p.text for p in self.content if p.kind == PART_TEXT)

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.content, list):
            return {"role": self.role, "content": [p.to_dict() for p in self.content]}
        return {"role": self.role, "content": self.content}


def _coerce_text(value: Any) -> str:
    """String form of a scalar; None and other falsy values become ""."""
    if isinstance(value, str):
        return value
    if not value:
        return ""
    return str(value)


def _image_url_of(value: Any) -> str:
    """Extract a URL from either {"url": ...} or a bare string."""
    if isinstance(value, dict):
        return _coerce_text(value.get("url"))
    return _coerce_text(value)


def _parse_part(item: Any) -> Optional[ContentPart]:
    if not isinstance(item, dict):
        return None
    tag = item.get("type")
    kind = _WIRE_TAGS.get(tag) if isinstance(tag, str) else None
    if kind == PART_TEXT:
        return ContentPart.of_text(_coerce_text(item.get("text")))
    if kind == PART_IMAGE:
        return ContentPart.of_image(_image_url_of(item.get("image_url")))
    return None


def _normalize_role(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return "user"


def normalize_message(raw: Any, index: int = 0) -> ChatMessage:
    """Normalize a single client message."""
    if not isinstance(raw, dict):
        log.warning("Message %d is not an object (%s); treating it as user content", index, type(raw).__name__)
        return ChatMessage(role="user", content=_coerce_text(raw))

    role = _normalize_role(raw.get("role"))
    if role not in VALID_ROLES:
        log.debug("Message %d has non-standard role %r", index, role)

    content = raw.get("content")
    image_ref = _image_url_of(raw.get("image_url")) or None

    if image_ref and not isinstance(content, list):
        return ChatMessage(
            role=role,
            content=[ContentPart.of_text(_coerce_text(content)), ContentPart.of_image(image_ref)],
            image_ref=image_ref,
        )

    if isinstance(content, list):
        parts = [p for p in (_parse_part(item) for item in content) if p is not None]
        if len(parts) != len(content):
            log.debug("Message %d: dropped %d invalid content part(s)", index, len(content) - len(parts))
        if not parts:
            return ChatMessage(role=role, content="", image_ref=image_ref)
        return ChatMessage(role=role, content=parts, image_ref=image_ref)

    if not isinstance(content, str):
        log.warning("Message %d has non-string content: %s", index, type(content).__name__)
    return ChatMessage(role=role, content=_coerce_text(content))


def normalize_messages(raw_messages: Any) -> List[ChatMessage]:
    """Normalize a client message array; anything that is not a list yields []."""
    if not isinstance(raw_messages, list):
        return []
    return [normalize_message(m, i) for i, m in enumerate(raw_messages)]


def last_user_text(messages: List[ChatMessage]) -> Optional[str]:
    """Text of the most recent user message, or None if there is none."""
    for m in reversed(messages):
        if m.role == "user":
            return m.text
    return None
