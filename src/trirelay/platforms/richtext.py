"""Decoding of OneBot message segments into plain text."""

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from trirelay.platforms.models import FileType, is_image_filename

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"@__QQ_USER_(\d+)__")


def mention_placeholder(user_id: str) -> str:
    """Placeholder substituted for a mention whose name is not yet known."""
    return f"@__QQ_USER_{user_id}__"


@dataclass
class DecodedMessage:
    """Flattened text plus the first image/file found in a message."""

    text: str = ""
    image_url: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[FileType] = None
    mention_ids: list[str] = field(default_factory=list)


def decode_message(payload: Any) -> DecodedMessage:
    """Flatten a message payload into text.

    The payload is normally a list of ``{"type": ..., "data": {...}}``
    segments. Plain strings are used as-is.

    Args:
        payload: The ``message`` field of an event or history entry

    Returns:
        DecodedMessage with text and attachment references
    """
    decoded = DecodedMessage()

    if payload is None:
        return decoded

    if isinstance(payload, str):
        decoded.text = payload
        return decoded

    if isinstance(payload, dict):
        logger.debug(f"Unexpected message format (object): {payload}")
        if "text" in payload:
            decoded.text = str(payload["text"])
        else:
            decoded.text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        return decoded

    if not isinstance(payload, list):
        decoded.text = str(payload)
        return decoded

    parts: list[str] = []
    for segment in payload:
        if not isinstance(segment, dict) or "type" not in segment or "data" not in segment:
            continue

        segment_type = str(segment["type"])
        data = segment["data"] or {}

        if segment_type == "text":
            parts.append(str(data.get("text", "")))

        elif segment_type == "image":
            url = data.get("url")
            if url and decoded.image_url is None:
                decoded.image_url = url
            parts.append("[Image]")

        elif segment_type == "face":
            parts.append("[Emoji]")

        elif segment_type == "at":
            target = data.get("qq")
            if target is None:
                continue
            target = str(target)
            name = data.get("name")
            if target == "all":
                parts.append("@all ")
            elif name:
                parts.append(f"@{name} ")
            else:
                parts.append(mention_placeholder(target) + " ")
                decoded.mention_ids.append(target)

        elif segment_type == "file":
            _decode_file(data, decoded)
            parts.append("[File]")

        elif segment_type == "reply":
            continue

        else:
            parts.append(f"[{segment_type}]")

    decoded.text = "".join(parts)
    return decoded


def _decode_file(data: dict, decoded: DecodedMessage) -> None:
    url = data.get("url")
    name = data.get("name") or data.get("file")
    if not url or not name or decoded.file_url or decoded.image_url:
        return

    # image files travel as images
    if is_image_filename(name):
        decoded.image_url = url
        return

    decoded.file_url = url
    decoded.file_name = name
    decoded.file_type = FileType.from_filename(name)


def find_placeholders(text: str) -> list[str]:
    """Return the distinct user ids with unresolved mention placeholders."""
    return list(dict.fromkeys(PLACEHOLDER_PATTERN.findall(text)))


async def resolve_placeholders(
    text: str, lookup: Callable[[str], Awaitable[str]]
) -> str:
    """Replace mention placeholders with display names.

    All lookups run concurrently. A lookup that fails leaves the numeric
    user id in place of the name.

    Args:
        text: Text containing ``@__QQ_USER_<id>__`` placeholders
        lookup: Coroutine mapping a user id to a display name

    Returns:
        Text with every placeholder replaced by ``@<name>``
    """
    user_ids = find_placeholders(text)
    if not user_ids:
        return text

    results = await asyncio.gather(
        *(lookup(user_id) for user_id in user_ids), return_exceptions=True
    )

    for user_id, result in zip(user_ids, results):
        if isinstance(result, BaseException) or not result:
            if isinstance(result, BaseException):
                logger.error(f"Error getting nickname for QQ user {user_id}: {result}")
            result = user_id
        text = text.replace(mention_placeholder(user_id), f"@{result}")

    return text
