"""
Mobile-optimised attachment transfer.
Validates files, shrinks images before sending, builds thumbnails, and runs
cancellable multipart uploads with progress callbacks.
"""
import asyncio
import base64
import io
import json
import logging
import math
import random
import string
import time
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError

from .telemetry import PerformanceTelemetryCollector

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Upload was cancelled"
NETWORK_ERROR_MESSAGE = "Upload failed due to network error"
UPLOAD_CHUNK_SIZE = 64 * 1024

DEFAULT_ALLOWED_TYPES = [
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
    "text/csv",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
]

# MIME type -> Pillow encoder
PIL_FORMATS = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/gif": "GIF",
    "image/webp": "WEBP",
}


@dataclass
class AttachmentFile:
    name: str
    content_type: str
    data: bytes = b""

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")


@dataclass
class UploadOptions:
    max_size_bytes: int = 10 * 1024 * 1024
    allowed_types: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TYPES))
    compression: bool = True
    max_width: int = 1920
    max_height: int = 1080
    quality: float = 0.8  # 0-1


@dataclass
class UploadProgress:
    loaded: int
    total: int
    percentage: int


@dataclass
class UploadResult:
    success: bool
    file_name: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None
    upload_id: Optional[str] = None


@dataclass
class FileValidation:
    valid: bool
    error: Optional[str] = None


@dataclass
class Thumbnail:
    thumbnail: AttachmentFile
    preview_data_uri: str


@dataclass
class UploadHandle:
    id: str
    task: asyncio.Task
    cancelled: bool = False


class UploadFailed(Exception):
    pass


def format_file_size(num_bytes: int) -> str:
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(num_bytes, 1024))), len(units) - 1)
    value = round(num_bytes / (1024 ** i), 2)
    return f"{value:g} {units[i]}"


def calculate_dimensions(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Fit ``width x height`` inside the bounds, keeping aspect ratio. Never upscales."""
    if width <= max_width and height <= max_height:
        return width, height
    scale = min(max_width / width, max_height / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


def _generate_upload_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"upload_{int(time.time() * 1000)}_{suffix}"


class FileTransferService:
    """
    Upload pipeline for interaction attachments.

    Every in-flight upload is registered by id with the asyncio task doing the
    transfer; ``cancel_upload`` cancels that task and the upload resolves with
    ``"Upload was cancelled"``.
    """

    def __init__(
        self,
        telemetry: Optional[PerformanceTelemetryCollector] = None,
        default_options: Optional[UploadOptions] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.telemetry = telemetry
        self.default_options = default_options or UploadOptions()
        self.transport = transport
        self.timeout = timeout
        self._uploads: Dict[str, UploadHandle] = {}

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_file(self, file: AttachmentFile, options: Optional[UploadOptions] = None) -> FileValidation:
        opts = options or self.default_options

        if file.size > opts.max_size_bytes:
            return FileValidation(
                valid=False,
                error=(
                    f"File size ({format_file_size(file.size)}) exceeds maximum allowed size "
                    f"({format_file_size(opts.max_size_bytes)})"
                ),
            )

        if opts.allowed_types and file.content_type not in opts.allowed_types:
            return FileValidation(
                valid=False,
                error=f"File type {file.content_type} is not allowed. Allowed types: {', '.join(opts.allowed_types)}",
            )

        if not file.name or len(file.name) > 255:
            return FileValidation(valid=False, error="File name is invalid or too long")

        return FileValidation(valid=True)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload_file(
        self,
        file: AttachmentFile,
        endpoint: str,
        options: Optional[UploadOptions] = None,
        on_progress: Optional[Callable[[UploadProgress], None]] = None,
        upload_id: Optional[str] = None,
    ) -> UploadResult:
        opts = options or self.default_options
        upload_id = upload_id or _generate_upload_id()

        validation = self.validate_file(file, opts)
        if not validation.valid:
            return UploadResult(success=False, error=validation.error, upload_id=upload_id)

        start = time.time()
        compression_ratio = None
        try:
            processed = self._process_file(file, opts)
        except ValueError as exc:
            return self._finish(file, start, UploadResult(success=False, error=str(exc), upload_id=upload_id))
        if processed is not file and file.size:
            compression_ratio = round(processed.size / file.size * 100, 2)

        task = asyncio.ensure_future(self._perform_upload(processed, endpoint, upload_id, on_progress))
        handle = UploadHandle(id=upload_id, task=task)
        self._uploads[upload_id] = handle
        try:
            result = await task
        except asyncio.CancelledError:
            if not handle.cancelled:
                raise
            result = UploadResult(success=False, error=CANCELLED_MESSAGE, upload_id=upload_id)
        except UploadFailed as exc:
            result = UploadResult(success=False, error=str(exc), upload_id=upload_id)
        finally:
            self._uploads.pop(upload_id, None)

        return self._finish(processed, start, result, compression_ratio)

    def _finish(
        self,
        file: AttachmentFile,
        start: float,
        result: UploadResult,
        compression_ratio: Optional[float] = None,
    ) -> UploadResult:
        if self.telemetry:
            self.telemetry.track_file_upload(file.size, start, result.success, compression_ratio, result.error)
        if not result.success:
            logger.info("Upload of %s failed: %s", file.name, result.error)
        return result

    def cancel_upload(self, upload_id: str) -> bool:
        handle = self._uploads.pop(upload_id, None)
        if handle is None:
            return False
        handle.cancelled = True
        handle.task.cancel()
        return True

    def cancel_all_uploads(self) -> None:
        for upload_id in list(self._uploads):
            self.cancel_upload(upload_id)

    def active_uploads(self) -> List[str]:
        return list(self._uploads)

    def _process_file(self, file: AttachmentFile, opts: UploadOptions) -> AttachmentFile:
        if file.is_image and opts.compression:
            return self.compress_image(file, opts.max_width, opts.max_height, opts.quality)
        return file

    async def _perform_upload(
        self,
        file: AttachmentFile,
        endpoint: str,
        upload_id: str,
        on_progress: Optional[Callable[[UploadProgress], None]],
    ) -> UploadResult:
        # Encode the multipart body up front so progress can be reported against a known total
        encoded = httpx.Request(
            "POST",
            endpoint,
            files={"file": (file.name, file.data, file.content_type)},
            data={"uploadId": upload_id},
        )
        body = encoded.read()
        total = len(body)

        async def chunks() -> AsyncIterator[bytes]:
            loaded = 0
            for offset in range(0, total, UPLOAD_CHUNK_SIZE):
                chunk = body[offset:offset + UPLOAD_CHUNK_SIZE]
                yield chunk
                loaded += len(chunk)
                if on_progress:
                    on_progress(UploadProgress(loaded=loaded, total=total, percentage=round(loaded / total * 100)))

        headers = {
            "Content-Type": encoded.headers["Content-Type"],
            "Content-Length": str(total),
        }
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                resp = await client.post(endpoint, content=chunks(), headers=headers)
        except httpx.TransportError as exc:
            logger.warning("Upload %s transport error: %s", upload_id, exc)
            raise UploadFailed(NETWORK_ERROR_MESSAGE) from exc

        if not 200 <= resp.status_code < 300:
            raise UploadFailed(f"Upload failed with status {resp.status_code}")

        try:
            payload = resp.json()
        except (json.JSONDecodeError, ValueError):
            return UploadResult(success=True, file_name=file.name, upload_id=upload_id)
        if not isinstance(payload, dict):
            payload = {}
        return UploadResult(
            success=True,
            file_name=payload.get("fileName") or file.name,
            url=payload.get("url"),
            upload_id=upload_id,
        )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def compress_image(
        self,
        file: AttachmentFile,
        max_width: int = 1920,
        max_height: int = 1080,
        quality: float = 0.8,
    ) -> AttachmentFile:
        """Resize to fit the bounds and re-encode. Non-images are returned unchanged."""
        if not file.is_image:
            return file

        img = _open_image(file, "Failed to load image")
        width, height = calculate_dimensions(img.width, img.height, max_width, max_height)
        if (width, height) != img.size:
            img = img.resize((width, height), Image.LANCZOS)

        fmt = PIL_FORMATS.get(file.content_type, img.format or "PNG")
        out = io.BytesIO()
        save_kwargs = {}
        if fmt in ("JPEG", "WEBP"):
            save_kwargs["quality"] = max(1, min(95, int(round(quality * 100))))
        if fmt == "JPEG" and img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        if fmt == "PNG":
            save_kwargs["optimize"] = True
        try:
            img.save(out, format=fmt, **save_kwargs)
        except (OSError, ValueError) as exc:
            raise ValueError("Image compression failed") from exc
        return replace(file, data=out.getvalue())

    def create_thumbnail(self, file: AttachmentFile, size: int = 150) -> Optional[Thumbnail]:
        """Centre-cropped square JPEG preview, or None for non-images."""
        if not file.is_image:
            return None

        img = _open_image(file, "Failed to load image for thumbnail")
        side = min(img.width, img.height)
        left = (img.width - side) // 2
        top = (img.height - side) // 2
        thumb = img.crop((left, top, left + side, top + side)).resize((size, size), Image.LANCZOS)
        if thumb.mode != "RGB":
            thumb = thumb.convert("RGB")

        out = io.BytesIO()
        thumb.save(out, format="JPEG", quality=70)
        data = out.getvalue()
        return Thumbnail(
            thumbnail=AttachmentFile(name=f"thumb_{file.name}", content_type="image/jpeg", data=data),
            preview_data_uri="data:image/jpeg;base64," + base64.b64encode(data).decode("ascii"),
        )

    # ------------------------------------------------------------------
    # Display helpers
    # ------------------------------------------------------------------

    def format_file_size(self, num_bytes: int) -> str:
        return format_file_size(num_bytes)

    def file_type_icon(self, file: AttachmentFile) -> str:
        if file.is_image:
            return "image"
        if file.content_type == "application/pdf":
            return "pdf"
        if "word" in file.content_type:
            return "document"
        if "text" in file.content_type:
            return "text"
        return "file"


def _open_image(file: AttachmentFile, error_message: str) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(file.data))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(error_message) from exc
    return ImageOps.exif_transpose(img)
