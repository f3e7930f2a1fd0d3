"""Attachment pipeline: vet, recompress and store files sent in a chat.

The same ``validate``/``compress`` functions run in the client before upload
and on the server when the bytes arrive. Content sniffing with libmagic covers
images and PDF only; it is not a malware scan.
"""
from dataclasses import dataclass
from typing import Optional
import io
import logging
import os

from bson import ObjectId
from bson.errors import InvalidId
from gridfs.errors import NoFile
import magic
from PIL import Image, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from src.configs import settings
from .errors import AttachmentRejected, UploadFailed, NotFound
from .models import Attachment

logger = logging.getLogger(__name__)

DISALLOWED_EXTENSIONS = {
    ".exe", ".bat", ".cmd", ".scr", ".js", ".vbs", ".jar", ".msi", ".app", ".deb", ".rpm",
}

ALLOWED_MIME_TYPES = {
    "image/jpeg": "image",
    "image/jpg": "image",
    "image/png": "image",
    "image/gif": "image",
    "image/webp": "image",
    "video/mp4": "video",
    "video/quicktime": "video",
    "video/x-msvideo": "video",
    "video/x-matroska": "video",
    "video/webm": "video",
    "application/pdf": "pdf",
}

SIZE_LIMITS = {
    "image": settings.MAX_IMAGE_BYTES,
    "video": settings.MAX_VIDEO_BYTES,
    "pdf": settings.MAX_DOCUMENT_BYTES,
}

FOLDERS = {"image": "images", "video": "videos", "pdf": "documents"}


# video containers have too many header layouts to sniff reliably
SNIFFED_MIME_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp", "application/pdf"}

MIME_ALIASES = {"image/jpg": "image/jpeg"}

# libmagic only needs the leading bytes
SNIFF_BYTES = 2048

_magic = magic.Magic(mime=True)


def detect_mime(data: bytes) -> Optional[str]:
    """MIME type libmagic reads from the file content, or None if it cannot tell."""
    if not data:
        return None
    try:
        return _magic.from_buffer(data[:SNIFF_BYTES])
    except magic.MagicException as e:
        logger.warning("Content type detection failed: %s", e)
        return None


@dataclass
class ProcessedFile:
    data: bytes
    mime: str
    filename: str
    kind: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class StoredBlob:
    url: str
    file_id: str


def validate(filename: str, declared_mime: str, data: bytes, kind: Optional[str] = None) -> str:
    """Vet a raw file. Returns its kind (image, video or pdf).

    Checks run extension -> MIME -> size -> signature and stop at the first
    failure, so nothing is decoded for a file that is already too large.
    """
    name = (filename or "").strip().lower()
    _, ext = os.path.splitext(name)
    if ext in DISALLOWED_EXTENSIONS:
        raise AttachmentRejected("file type not allowed for security reasons", reason="disallowed-extension")

    mime = (declared_mime or "").split(";")[0].strip().lower()
    detected = ALLOWED_MIME_TYPES.get(mime)
    if detected is None:
        raise AttachmentRejected(f"file type {mime or 'unknown'} is not supported", reason="unsupported-mime")
    if kind and kind != detected:
        raise AttachmentRejected(f"expected a {kind} but got {mime}", reason="kind-mismatch")

    limit = SIZE_LIMITS[detected]
    if len(data) > limit:
        raise AttachmentRejected(
            f"{detected} size should be less than {limit // (1024 * 1024)}MB", reason="too-large"
        )

    expected = MIME_ALIASES.get(mime, mime)
    if expected in SNIFFED_MIME_TYPES and detect_mime(data) != expected:
        raise AttachmentRejected("file appears to be corrupted or not a valid file", reason="signature-mismatch")
    return detected


def compress(data: bytes, mime: str, filename: str, kind: str,
             max_size=(settings.IMAGE_MAX_WIDTH, settings.IMAGE_MAX_HEIGHT),
             quality: int = settings.IMAGE_QUALITY) -> ProcessedFile:
    """Re-encode images as JPEG within the pixel envelope; pass other files through."""
    if kind != "image":
        return ProcessedFile(data=data, mime=mime, filename=filename, kind=kind)

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise AttachmentRejected(f"could not decode image: {e}", reason="undecodable-image")

    # Flatten transparency onto white before JPEG encoding
    if img.mode in ("RGBA", "LA", "P"):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[3])
        img = background
    elif img.mode != "RGB":
        img = img.convert("RGB")

    img.thumbnail(max_size, Image.Resampling.LANCZOS)

    output = io.BytesIO()
    img.save(output, format="JPEG", quality=quality, optimize=True)
    stem, _ = os.path.splitext(filename or "image")
    out = output.getvalue()
    logger.debug("Compressed %s: %d -> %d bytes (%sx%s)", filename, len(data), len(out), *img.size)
    return ProcessedFile(data=out, mime="image/jpeg", filename=f"{stem}.jpg", kind=kind)


async def prepare(filename: str, declared_mime: str, data: bytes, kind: Optional[str] = None) -> ProcessedFile:
    detected = validate(filename, declared_mime, data, kind)
    mime = declared_mime.split(";")[0].strip().lower()
    return await run_in_threadpool(compress, data, mime, filename, detected)


def folder_for(conversation_id: str, kind: str) -> str:
    return f"chat/{conversation_id}/{FOLDERS.get(kind, 'files')}"


async def upload(processed: ProcessedFile, conversation_id: str, sender_id: str, blob_store) -> Attachment:
    """Hand the processed bytes to the blob store. Any store error is UploadFailed."""
    try:
        blob = await blob_store.upload(
            processed.data,
            filename=processed.filename,
            mime=processed.mime,
            folder=folder_for(conversation_id, processed.kind),
            metadata={"conversation_id": conversation_id, "sender_id": sender_id},
        )
    except Exception as e:
        logger.error("Upload of %s for %s failed: %s", processed.filename, conversation_id, e)
        raise UploadFailed("failed to upload file") from e

    logger.info("Stored %s (%d bytes) as %s", processed.filename, processed.size, blob.file_id)
    return Attachment(
        url=blob.url,
        file_id=blob.file_id,
        filename=processed.filename,
        size=processed.size,
        mime=processed.mime,
    )


class GridFSBlobStore:
    """Blob store on a Motor GridFS bucket; files are served from ``url_prefix``."""

    def __init__(self, bucket, url_prefix: str = settings.FILES_URL_PREFIX):
        self.bucket = bucket
        self.url_prefix = url_prefix.rstrip("/")

    async def upload(self, data: bytes, filename: str, mime: str, folder: str, metadata: dict = None) -> StoredBlob:
        file_id = await self.bucket.upload_from_stream(
            filename,
            data,
            metadata={**(metadata or {}), "folder": folder, "mime": mime, "size": len(data)},
        )
        return StoredBlob(url=f"{self.url_prefix}/{file_id}", file_id=str(file_id))

    async def delete(self, file_id: str) -> None:
        try:
            await self.bucket.delete(ObjectId(file_id))
        except (InvalidId, NoFile):
            logger.warning("Blob %s already gone", file_id)

    async def open(self, file_id: str):
        try:
            return await self.bucket.open_download_stream(ObjectId(file_id))
        except (InvalidId, NoFile):
            raise NotFound("file not found")
