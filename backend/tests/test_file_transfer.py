"""Tests for attachment validation, image processing and uploads."""
import asyncio
import io

import httpx
import pytest
from PIL import Image

from conftest import FakeClock, make_image_bytes
from forkflow_mobile.services.file_transfer import (
    AttachmentFile,
    FileTransferService,
    UploadOptions,
    calculate_dimensions,
    format_file_size,
)
from forkflow_mobile.services.telemetry import PerformanceTelemetryCollector

ENDPOINT = "https://files.example.test/upload"


def pdf(size: int = 1024, name: str = "price-sheet.pdf") -> AttachmentFile:
    return AttachmentFile(name=name, content_type="application/pdf", data=b"%" * size)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("num_bytes,expected", [
    (0, "0 Bytes"),
    (512, "512 Bytes"),
    (1024, "1 KB"),
    (1536, "1.5 KB"),
    (10 * 1024 * 1024, "10 MB"),
    (3 * 1024 ** 3, "3 GB"),
])
def test_format_file_size(num_bytes, expected):
    assert format_file_size(num_bytes) == expected


def test_calculate_dimensions_keeps_aspect_ratio():
    assert calculate_dimensions(3840, 2160, 1920, 1080) == (1920, 1080)
    assert calculate_dimensions(1000, 3000, 1920, 1080) == (360, 1080)


def test_calculate_dimensions_never_upscales():
    assert calculate_dimensions(800, 600, 1920, 1080) == (800, 600)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidateFile:
    def setup_method(self):
        self.service = FileTransferService()

    def test_valid_pdf(self):
        result = self.service.validate_file(pdf())
        assert result.valid
        assert result.error is None

    def test_too_large(self):
        result = self.service.validate_file(pdf(), UploadOptions(max_size_bytes=512))
        assert not result.valid
        assert result.error == "File size (1 KB) exceeds maximum allowed size (512 Bytes)"

    def test_type_not_allowed(self):
        result = self.service.validate_file(AttachmentFile("tool.exe", "application/x-msdownload", b"MZ"))
        assert not result.valid
        assert result.error.startswith("File type application/x-msdownload is not allowed")

    def test_bad_name(self):
        assert not self.service.validate_file(pdf(name="")).valid
        assert not self.service.validate_file(pdf(name="a" * 252 + ".pdf")).valid
        assert self.service.validate_file(pdf(name="a" * 251 + ".pdf")).valid


class TestFileTypeIcon:
    def setup_method(self):
        self.service = FileTransferService()

    @pytest.mark.parametrize("content_type,icon", [
        ("image/png", "image"),
        ("application/pdf", "pdf"),
        ("application/vnd.openxmlformats-officedocument.wordprocessingml.document", "document"),
        ("text/plain", "text"),
        ("application/zip", "file"),
    ])
    def test_icons(self, content_type, icon):
        assert self.service.file_type_icon(AttachmentFile("f", content_type)) == icon


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

class TestImageProcessing:
    def setup_method(self):
        self.service = FileTransferService()

    def test_compress_resizes_large_photo(self):
        photo = AttachmentFile("storefront.jpg", "image/jpeg", make_image_bytes(4000, 3000))
        compressed = self.service.compress_image(photo, max_width=1920, max_height=1080, quality=0.6)

        img = Image.open(io.BytesIO(compressed.data))
        assert img.size == (1440, 1080)
        assert img.format == "JPEG"
        assert compressed.name == "storefront.jpg"
        assert compressed.content_type == "image/jpeg"

    def test_compress_keeps_small_png_dimensions(self):
        logo = AttachmentFile("logo.png", "image/png", make_image_bytes(200, 100, fmt="PNG"))
        compressed = self.service.compress_image(logo)
        img = Image.open(io.BytesIO(compressed.data))
        assert img.size == (200, 100)
        assert img.format == "PNG"

    def test_compress_passes_non_images_through(self):
        doc = pdf()
        assert self.service.compress_image(doc) is doc

    def test_compress_rejects_corrupt_image(self):
        with pytest.raises(ValueError, match="Failed to load image"):
            self.service.compress_image(AttachmentFile("bad.jpg", "image/jpeg", b"not a jpeg"))

    def test_thumbnail_is_square_jpeg(self):
        photo = AttachmentFile("menu.png", "image/png", make_image_bytes(600, 300, fmt="PNG"))
        thumb = self.service.create_thumbnail(photo, size=100)

        img = Image.open(io.BytesIO(thumb.thumbnail.data))
        assert img.size == (100, 100)
        assert img.format == "JPEG"
        assert thumb.thumbnail.name == "thumb_menu.png"
        assert thumb.preview_data_uri.startswith("data:image/jpeg;base64,")

    def test_thumbnail_of_document_is_none(self):
        assert self.service.create_thumbnail(pdf()) is None


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------

def recording_transport(responder):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responder(request)

    return httpx.MockTransport(handler), seen


@pytest.mark.asyncio
async def test_upload_success_reports_progress_and_telemetry():
    transport, seen = recording_transport(
        lambda request: httpx.Response(200, json={"fileName": "stored.pdf", "url": "https://cdn.test/stored.pdf"})
    )
    telemetry = PerformanceTelemetryCollector(clock=FakeClock())
    service = FileTransferService(telemetry=telemetry, transport=transport)
    progress = []

    result = await service.upload_file(pdf(200 * 1024), ENDPOINT, on_progress=progress.append)

    assert result.success
    assert result.file_name == "stored.pdf"
    assert result.url == "https://cdn.test/stored.pdf"
    assert result.upload_id.startswith("upload_")

    body = seen[0].content
    assert b'name="file"; filename="price-sheet.pdf"' in body
    assert b'name="uploadId"' in body
    assert result.upload_id.encode() in body
    assert seen[0].headers["Content-Type"].startswith("multipart/form-data; boundary=")

    assert len(progress) > 1
    assert progress[-1].percentage == 100
    assert progress[-1].loaded == progress[-1].total == len(body)
    assert [p.loaded for p in progress] == sorted(p.loaded for p in progress)

    assert len(telemetry.upload_metrics) == 1
    assert telemetry.upload_metrics[0].success is True
    assert service.active_uploads() == []


@pytest.mark.asyncio
async def test_upload_non_json_response_still_succeeds():
    transport, _ = recording_transport(lambda request: httpx.Response(201, text="OK"))
    service = FileTransferService(transport=transport)

    result = await service.upload_file(pdf(), ENDPOINT)

    assert result.success
    assert result.file_name == "price-sheet.pdf"
    assert result.url is None


@pytest.mark.asyncio
async def test_upload_http_error_status():
    transport, _ = recording_transport(lambda request: httpx.Response(413))
    telemetry = PerformanceTelemetryCollector(clock=FakeClock())
    service = FileTransferService(telemetry=telemetry, transport=transport)

    result = await service.upload_file(pdf(), ENDPOINT)

    assert not result.success
    assert result.error == "Upload failed with status 413"
    assert telemetry.upload_metrics[0].success is False


@pytest.mark.asyncio
async def test_upload_network_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    service = FileTransferService(transport=httpx.MockTransport(refuse))

    result = await service.upload_file(pdf(), ENDPOINT)

    assert not result.success
    assert result.error == "Upload failed due to network error"


@pytest.mark.asyncio
async def test_invalid_file_never_hits_network():
    transport, seen = recording_transport(lambda request: httpx.Response(200))
    service = FileTransferService(transport=transport)

    result = await service.upload_file(pdf(15 * 1024 * 1024), ENDPOINT)

    assert not result.success
    assert "exceeds maximum allowed size" in result.error
    assert seen == []


@pytest.mark.asyncio
async def test_image_is_compressed_before_upload():
    transport, seen = recording_transport(lambda request: httpx.Response(200, json={}))
    telemetry = PerformanceTelemetryCollector(clock=FakeClock())
    service = FileTransferService(telemetry=telemetry, transport=transport)
    photo = AttachmentFile("dock.png", "image/png", make_image_bytes(3000, 2000, fmt="PNG"))

    result = await service.upload_file(photo, ENDPOINT)

    assert result.success
    assert result.file_name == "dock.png"
    assert len(seen[0].content) < 3000 * 2000
    names = [m.name for m in telemetry.metrics]
    assert "file_upload_time" in names
    assert "file_upload_size" in names


@pytest.mark.asyncio
async def test_corrupt_image_upload_fails_cleanly():
    transport, seen = recording_transport(lambda request: httpx.Response(200))
    service = FileTransferService(transport=transport)

    result = await service.upload_file(AttachmentFile("x.jpg", "image/jpeg", b"garbage"), ENDPOINT)

    assert not result.success
    assert result.error == "Failed to load image"
    assert seen == []


@pytest.mark.asyncio
async def test_cancel_upload():
    started = asyncio.Event()

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        started.set()
        await asyncio.sleep(5)
        return httpx.Response(200)

    service = FileTransferService(transport=httpx.MockTransport(slow_handler))
    upload = asyncio.ensure_future(service.upload_file(pdf(), ENDPOINT, upload_id="upload_test_1"))
    await asyncio.wait_for(started.wait(), timeout=1)

    assert service.active_uploads() == ["upload_test_1"]
    assert service.cancel_upload("upload_test_1") is True
    result = await upload

    assert not result.success
    assert result.error == "Upload was cancelled"
    assert service.active_uploads() == []
    assert service.cancel_upload("upload_test_1") is False


@pytest.mark.asyncio
async def test_cancel_all_uploads():
    started = asyncio.Event()

    async def slow_handler(request):
        started.set()
        await asyncio.sleep(5)
        return httpx.Response(200)

    service = FileTransferService(transport=httpx.MockTransport(slow_handler))
    uploads = [
        asyncio.ensure_future(service.upload_file(pdf(name=f"doc{i}.pdf"), ENDPOINT))
        for i in range(2)
    ]
    await asyncio.wait_for(started.wait(), timeout=1)
    await asyncio.sleep(0)

    service.cancel_all_uploads()
    results = await asyncio.gather(*uploads)

    assert all(r.error == "Upload was cancelled" for r in results)
