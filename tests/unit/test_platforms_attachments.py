"""Tests for the attachment download pipeline."""

import asyncio
import zlib
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from trirelay.exceptions import TransportError
from trirelay.platforms.attachments import AttachmentPipeline
from trirelay.platforms.models import (
    AttachmentKind,
    AttachmentState,
    FileType,
    Message,
    MessageSource,
)

_RealAsyncClient = httpx.AsyncClient


def mock_http(handler):
    """Patch httpx.AsyncClient so every request is answered by ``handler``."""

    def factory(*args, **kwargs):
        return _RealAsyncClient(*args, transport=httpx.MockTransport(handler), **kwargs)

    return patch("trirelay.platforms.attachments.httpx.AsyncClient", side_effect=factory)


def serve(body: bytes = b"payload", status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, content=body)

    return handler


def refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


@pytest.fixture
def pipeline(temp_dir: Path):
    """Pipeline writing into a temporary directory."""
    return AttachmentPipeline(temp_dir=temp_dir / "attachments", retention_seconds=60)


def make_message(**kwargs) -> Message:
    return Message(content="look", sender_name="bob", source=MessageSource.DISCORD, **kwargs)


class TestDownload:
    """Tests for AttachmentPipeline.download."""

    @pytest.mark.asyncio
    async def test_download_writes_file(self, pipeline):
        """Test that a download lands in the temp directory."""
        with mock_http(serve(b"image-bytes")):
            url = await pipeline.download("https://cdn.example.com/pics/cat.png")

        path = AttachmentPipeline.local_path(url)
        assert url.startswith("file://")
        assert path.parent == pipeline.temp_dir
        assert path.name.startswith("cat_")
        assert path.suffix == ".png"
        assert path.read_bytes() == b"image-bytes"
        pipeline.cleanup_all()

    @pytest.mark.asyncio
    async def test_download_uses_suggested_name(self, pipeline):
        """Test that the suggested name overrides the URL name."""
        with mock_http(serve()):
            url = await pipeline.download("https://cdn.example.com/abc123", "report.pdf")

        assert AttachmentPipeline.local_path(url).name.startswith("report_")
        assert url.endswith(".pdf")
        pipeline.cleanup_all()

    @pytest.mark.asyncio
    async def test_local_url_passthrough(self, pipeline):
        """Test that file:// URLs are returned unchanged."""
        assert await pipeline.download("file:///tmp/x.png") == "file:///tmp/x.png"

    @pytest.mark.asyncio
    async def test_http_error_status(self, pipeline):
        """Test that a 404 raises TransportError carrying the status."""
        with mock_http(serve(status=404)):
            with pytest.raises(TransportError) as exc_info:
                await pipeline.download("https://cdn.example.com/missing.png")

        assert exc_info.value.status_code == 404
        assert list(pipeline.temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_expired_file_is_deleted(self, temp_dir):
        """Test that files are removed after the retention window."""
        pipeline = AttachmentPipeline(temp_dir=temp_dir, retention_seconds=0.01)

        with mock_http(serve()):
            url = await pipeline.download("https://cdn.example.com/a.txt")
        path = AttachmentPipeline.local_path(url)
        assert path.exists()

        for _ in range(100):
            if not path.exists():
                break
            await asyncio.sleep(0.01)
        assert not path.exists()

    def test_unique_path_on_collision(self, pipeline):
        """Test that a taken name gets a numeric suffix."""
        pipeline.temp_dir.mkdir(parents=True, exist_ok=True)
        with patch("trirelay.platforms.attachments.datetime") as mock_datetime:
            mock_datetime.now.return_value.strftime.return_value = "20240101120000"

            first = pipeline._unique_path("notes.txt")
            first.write_text("taken")
            second = pipeline._unique_path("notes.txt")

        assert first.name == "notes_20240101120000.txt"
        assert second.name == "notes_20240101120000_1.txt"

    def test_unique_path_strips_directories(self, pipeline):
        """Test that path separators in names cannot escape the temp directory."""
        path = pipeline._unique_path("..\\..\\evil.sh")

        assert path.parent == pipeline.temp_dir
        assert path.name.startswith("evil_")

    def test_local_path(self):
        """Test mapping URLs back to paths."""
        assert AttachmentPipeline.local_path("file:///tmp/a%20b.png") == Path("/tmp/a b.png")
        assert AttachmentPipeline.local_path("https://example.com/a.png") is None
        assert AttachmentPipeline.local_path("") is None


class TestLocalize:
    """Tests for AttachmentPipeline.localize."""

    @pytest.mark.asyncio
    async def test_localize_image(self, pipeline):
        """Test that a successful download swaps in the local URL."""
        message = make_message(image_url="https://cdn.example.com/cat.png")

        with mock_http(serve()):
            result = await pipeline.localize(message, AttachmentKind.IMAGE)

        assert result is message
        assert message.image_url.startswith("file://")
        assert message.attachment_state == AttachmentState.RESOLVED
        assert message.content == "look"
        pipeline.cleanup_all()

    @pytest.mark.asyncio
    async def test_localize_http_failure_annotates(self, pipeline):
        """Test the failure note for an HTTP error."""
        message = make_message(image_url="https://cdn.example.com/cat.png")

        with mock_http(serve(status=404)):
            await pipeline.localize(message, AttachmentKind.IMAGE)

        assert message.image_url is None
        assert message.attachment_state == AttachmentState.FAILED
        assert message.content == "look\n[FILE]\nImage: cat.png\ncode: HTTP404"

    @pytest.mark.asyncio
    async def test_localize_connection_failure_annotates(self, pipeline):
        """Test the failure note for a network error."""
        message = make_message(
            file_url="https://cdn.example.com/dl?id=1",
            file_name="clip.mp4",
            file_type=FileType.VIDEO,
        )

        with mock_http(refuse):
            await pipeline.localize(message, AttachmentKind.FILE)

        expected_code = f"{zlib.crc32(b'ConnectError'):08X}"
        assert message.file_url is None
        assert message.attachment_state == AttachmentState.FAILED
        assert message.content == f"look\n[FILE]\nVideo: clip.mp4\ncode: {expected_code}"

    @pytest.mark.asyncio
    async def test_localize_without_url(self, pipeline):
        """Test that a message without the attachment is left alone."""
        message = make_message()

        await pipeline.localize(message, AttachmentKind.FILE)

        assert message.attachment_state == AttachmentState.NONE
        assert message.content == "look"


class TestCleanup:
    """Tests for AttachmentPipeline.cleanup_all."""

    @pytest.mark.asyncio
    async def test_cleanup_all(self, pipeline):
        """Test that every downloaded file is deleted."""
        with mock_http(serve()):
            first = await pipeline.download("https://cdn.example.com/a.txt")
            second = await pipeline.download("https://cdn.example.com/b.txt")

        pipeline.cleanup_all()

        assert not AttachmentPipeline.local_path(first).exists()
        assert not AttachmentPipeline.local_path(second).exists()

    def test_cleanup_missing_directory(self, temp_dir):
        """Test cleanup when nothing was ever downloaded."""
        pipeline = AttachmentPipeline(temp_dir=temp_dir / "never-created")

        pipeline.cleanup_all()
