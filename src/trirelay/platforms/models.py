"""Data models for cross-platform relaying."""

import uuid
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import Optional

from pydantic import BaseModel, Field

# Used when a transport cannot tell us the sender's avatar
DEFAULT_AVATAR_URL = "https://avatars.githubusercontent.com/u/197464182"


class MessageSource(str, Enum):
    """Transports a message can originate from."""

    DISCORD = "discord"
    QQ = "qq"
    TELEGRAM = "telegram"
    SYSTEM = "system"


class FileType(str, Enum):
    """Kinds of non-image file attachments."""

    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    ANIMATION = "animation"

    @classmethod
    def from_content_type(cls, content_type: Optional[str]) -> "FileType":
        """Classify a MIME type. Anything unknown is a document."""
        content_type = (content_type or "").lower()
        if content_type == "image/gif":
            return cls.ANIMATION
        if content_type.startswith("video/"):
            return cls.VIDEO
        if content_type.startswith("audio/"):
            return cls.AUDIO
        return cls.DOCUMENT

    @classmethod
    def from_filename(cls, filename: Optional[str]) -> "FileType":
        """Classify a file by its extension. Anything unknown is a document."""
        extension = PurePosixPath(filename or "").suffix.lower().lstrip(".")
        if extension in VIDEO_EXTENSIONS:
            return cls.VIDEO
        if extension in AUDIO_EXTENSIONS:
            return cls.AUDIO
        if extension == "gif":
            return cls.ANIMATION
        return cls.DOCUMENT


IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "bmp", "webp"})
VIDEO_EXTENSIONS = frozenset({"mp4", "avi", "mov", "wmv", "flv", "mkv"})
AUDIO_EXTENSIONS = frozenset({"mp3", "wav", "ogg", "flac", "aac", "m4a"})


def is_image_filename(filename: Optional[str]) -> bool:
    """Check whether a file name has a still-image extension."""
    return PurePosixPath(filename or "").suffix.lower().lstrip(".") in IMAGE_EXTENSIONS


class AttachmentKind(str, Enum):
    """Which URL field of a message an attachment lives in."""

    IMAGE = "image"
    FILE = "file"


class AttachmentState(str, Enum):
    """Where a message's attachment is in the download pipeline.

    A message is emitted once as ``PENDING`` with the remote URL and once
    more as ``RESOLVED`` (local URL) or ``FAILED`` (URL cleared, content
    annotated).
    """

    NONE = "none"
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


class Message(BaseModel):
    """A chat message normalized across transports."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    content: str = ""
    sender_name: str = "Unknown"
    sender_id: str = "Unknown"
    source: MessageSource
    timestamp: datetime = Field(default_factory=datetime.now)
    avatar_url: Optional[str] = None
    image_url: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[FileType] = None
    attachment_state: AttachmentState = AttachmentState.NONE

    def formatted_username(self) -> str:
        """Sender name in the form ``<user>@<platform>``."""
        return f"{self.sender_name}@{self.source.value}"

    def append_content(self, text: str) -> None:
        """Append text to the content. Content is never replaced."""
        self.content += text

    @property
    def has_attachment(self) -> bool:
        """Whether the message carries an image or file URL."""
        return bool(self.image_url or self.file_url)

    def __str__(self) -> str:
        return self.content
