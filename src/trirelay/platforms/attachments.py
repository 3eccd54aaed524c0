"""Attachment download and localization pipeline."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from trirelay.exceptions import TransportError, error_code
from trirelay.platforms.models import AttachmentKind, AttachmentState, Message
from trirelay.storage.paths import ensure_directory, get_attachment_temp_dir

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 30 * 60


class AttachmentPipeline:
    """Downloads remote attachments into a process-local temp directory.

    Every downloaded file is deleted after a fixed retention window whether
    or not the message carrying it was forwarded. ``localize`` is the
    boundary used by adapters: it never raises.
    """

    def __init__(
        self,
        temp_dir: Optional[Path] = None,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        timeout: float = 60.0,
    ) -> None:
        """Initialize the pipeline.

        Args:
            temp_dir: Directory for downloaded files (default: system temp)
            retention_seconds: Seconds before a downloaded file is deleted
            timeout: Per-download HTTP timeout in seconds
        """
        self._temp_dir = Path(temp_dir) if temp_dir else get_attachment_temp_dir()
        self._retention_seconds = retention_seconds
        self._timeout = timeout
        self._cleanup_tasks: set[asyncio.Task] = set()

    @property
    def temp_dir(self) -> Path:
        """Directory downloaded files are written to."""
        return self._temp_dir

    async def download(self, url: str, suggested_name: Optional[str] = None) -> str:
        """Download a remote file and return a ``file://`` reference to it.

        Args:
            url: Remote URL (``file://`` URLs are returned unchanged)
            suggested_name: Preferred file name; derived from the URL if absent

        Returns:
            ``file://`` URL of the local copy

        Raises:
            TransportError: If the download fails
        """
        if url.startswith("file://"):
            return url

        ensure_directory(self._temp_dir)
        target = self._unique_path(suggested_name or self._name_from_url(url))

        try:
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with target.open("wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
        except (httpx.HTTPError, OSError) as e:
            target.unlink(missing_ok=True)
            status = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
            raise TransportError(
                f"Failed to download {url}: {e}", status_code=status
            ) from e

        logger.info(f"Downloaded attachment from {url} to {target}")
        self._schedule_cleanup(target)
        return target.as_uri()

    async def localize(self, message: Message, kind: AttachmentKind) -> Message:
        """Replace a message's remote attachment URL with a local one.

        On failure the URL field is cleared and a note describing the
        attachment and an error code is appended to the content.

        Args:
            message: Message to update in place
            kind: Which attachment field to localize

        Returns:
            The same message instance
        """
        remote_url = message.image_url if kind == AttachmentKind.IMAGE else message.file_url
        if not remote_url:
            return message

        name = message.file_name if kind == AttachmentKind.FILE else None
        original_name = name or self._name_from_url(remote_url)

        try:
            local_url = await self.download(remote_url, name)
        except Exception as e:
            logger.error(f"Failed to localize {kind.value} attachment {remote_url}: {e}")
            self._set_url(message, kind, None)
            message.attachment_state = AttachmentState.FAILED
            message.append_content(
                f"\n[FILE]\n{self._label(message, kind)}: {original_name}\ncode: {error_code(e)}"
            )
            return message

        self._set_url(message, kind, local_url)
        message.attachment_state = AttachmentState.RESOLVED
        return message

    def cleanup_all(self) -> None:
        """Cancel pending deletion timers and delete every downloaded file."""
        for task in list(self._cleanup_tasks):
            task.cancel()
        self._cleanup_tasks.clear()

        if not self._temp_dir.exists():
            return

        for path in self._temp_dir.iterdir():
            if not path.is_file():
                continue
            try:
                path.unlink()
                logger.debug(f"Deleted temporary file: {path}")
            except OSError as e:
                logger.error(f"Error deleting temporary file {path}: {e}")

    @staticmethod
    def local_path(url: str) -> Optional[Path]:
        """Map a ``file://`` URL back to a filesystem path (None for remote URLs)."""
        if not url or not url.startswith("file://"):
            return None
        return Path(unquote(urlparse(url).path))

    def _schedule_cleanup(self, path: Path) -> None:
        task = asyncio.create_task(self._expire(path), name=f"expire-{path.name}")
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _expire(self, path: Path) -> None:
        await asyncio.sleep(self._retention_seconds)
        try:
            path.unlink(missing_ok=True)
            logger.debug(f"Deleted temporary file: {path}")
        except OSError as e:
            logger.error(f"Error deleting temporary file {path}: {e}")

    def _unique_path(self, filename: str) -> Path:
        # <stem>_<timestamp><suffix>, with a counter if that name is taken
        safe = PurePosixPath(filename.replace("\\", "/")).name or "file"
        stem = PurePosixPath(safe).stem or "file"
        suffix = PurePosixPath(safe).suffix
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")

        candidate = self._temp_dir / f"{stem}_{timestamp}{suffix}"
        counter = 1
        while candidate.exists():
            candidate = self._temp_dir / f"{stem}_{timestamp}_{counter}{suffix}"
            counter += 1
        return candidate

    @staticmethod
    def _name_from_url(url: str) -> str:
        name = PurePosixPath(unquote(urlparse(url).path)).name
        return name or f"file_{datetime.now().strftime('%Y%m%d%H%M%S')}"

    @staticmethod
    def _set_url(message: Message, kind: AttachmentKind, url: Optional[str]) -> None:
        if kind == AttachmentKind.IMAGE:
            message.image_url = url
        else:
            message.file_url = url

    @staticmethod
    def _label(message: Message, kind: AttachmentKind) -> str:
        if kind == AttachmentKind.IMAGE:
            return "Image"
        if message.file_type is not None:
            return message.file_type.value.capitalize()
        return "File"
