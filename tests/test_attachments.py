import io

import pytest
from PIL import Image

from src.chat import attachments
from src.chat.attachments import compress, detect_mime, prepare, upload, validate, folder_for, ProcessedFile
from src.chat.errors import AttachmentRejected, UploadFailed

PDF = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n1 0 obj\n"
MP4 = b"\x00\x00\x00\x1cftypisom" + b"\x00" * 64


def make_image(size=(64, 48), fmt="JPEG", mode="RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, (200, 30, 30) if mode == "RGB" else (200, 30, 30, 128)).save(buf, format=fmt)
    return buf.getvalue()


def reason_of(call):
    with pytest.raises(AttachmentRejected) as exc:
        call()
    return exc.value.reason


def test_executable_extension_rejected_whatever_the_mime():
    for mime in ("application/pdf", "image/png", "application/octet-stream"):
        assert reason_of(lambda: validate("invoice.pdf.exe", mime, PDF)) == "disallowed-extension"
    assert reason_of(lambda: validate("SETUP.MSI", "application/pdf", PDF)) == "disallowed-extension"


def test_unsupported_mime():
    assert reason_of(lambda: validate("notes.txt", "text/plain", b"hello")) == "unsupported-mime"
    assert reason_of(lambda: validate("blob", "", b"hello")) == "unsupported-mime"


def test_signature_must_match_declared_type():
    png = make_image(fmt="PNG")
    assert reason_of(lambda: validate("photo.jpg", "image/jpeg", png)) == "signature-mismatch"
    assert reason_of(lambda: validate("doc.pdf", "application/pdf", png)) == "signature-mismatch"
    assert validate("photo.png", "image/png", png) == "image"
    assert validate("doc.pdf", "application/pdf", PDF) == "pdf"


def test_webp_and_gif_signatures():
    assert validate("a.gif", "image/gif", make_image(fmt="GIF")) == "image"
    assert validate("a.webp", "image/webp", make_image(fmt="WEBP")) == "image"
    assert reason_of(lambda: validate("a.webp", "image/webp", make_image(fmt="PNG"))) == "signature-mismatch"


def test_jpg_alias_is_sniffed_as_jpeg():
    assert validate("a.jpg", "image/jpg", make_image()) == "image"
    assert reason_of(lambda: validate("a.jpg", "image/jpg", PDF)) == "signature-mismatch"


def test_detect_mime_reads_content():
    assert detect_mime(make_image(fmt="PNG")) == "image/png"
    assert detect_mime(PDF) == "application/pdf"
    assert detect_mime(b"") is None


def test_video_is_not_sniffed():
    assert validate("tour.mp4", "video/mp4", MP4) == "video"
    assert validate("tour.webm", "video/webm", b"\x1a\x45\xdf\xa3" + b"\x00" * 16) == "video"


def test_declared_kind_must_agree_with_mime():
    assert reason_of(lambda: validate("doc.pdf", "application/pdf", PDF, kind="image")) == "kind-mismatch"


@pytest.mark.parametrize("mime,limit", [
    ("image/jpeg", 5 * 1024 * 1024),
    ("video/mp4", 50 * 1024 * 1024),
    ("application/pdf", 10 * 1024 * 1024),
])
def test_size_limits(mime, limit):
    head = {"image/jpeg": make_image(), "video/mp4": MP4, "application/pdf": PDF}[mime]
    assert reason_of(lambda: validate("f", mime, head + b"\x00" * (limit + 1 - len(head)))) == "too-large"
    validate("f", mime, head + b"\x00" * (limit - len(head)))


@pytest.mark.asyncio
async def test_oversized_image_rejected_before_compression(monkeypatch):
    def explode(*args, **kwargs):
        raise AssertionError("compress must not run")

    monkeypatch.setattr(attachments, "compress", explode)
    six_mb = make_image() + b"\x00" * (6 * 1024 * 1024)
    with pytest.raises(AttachmentRejected) as exc:
        await prepare("big.jpg", "image/jpeg", six_mb)
    assert exc.value.reason == "too-large"


def test_compress_bounds_image_and_keeps_aspect_ratio():
    out = compress(make_image(size=(4000, 3000)), "image/jpeg", "house.png", "image")

    assert out.mime == "image/jpeg"
    assert out.filename == "house.jpg"
    img = Image.open(io.BytesIO(out.data))
    assert img.format == "JPEG"
    assert img.size[0] <= 1920 and img.size[1] <= 1080
    assert img.size == (1440, 1080)


def test_compress_does_not_upscale_and_flattens_alpha():
    out = compress(make_image(size=(300, 200), fmt="PNG", mode="RGBA"), "image/png", "logo.png", "image")
    img = Image.open(io.BytesIO(out.data))
    assert img.size == (300, 200)
    assert img.mode == "RGB"


def test_compress_passes_other_types_through():
    out = compress(PDF, "application/pdf", "doc.pdf", "pdf")
    assert out.data == PDF
    assert out.filename == "doc.pdf"
    assert out.mime == "application/pdf"


def test_compress_rejects_undecodable_image():
    assert reason_of(lambda: compress(b"definitely not an image", "image/jpeg", "x.jpg", "image")) == "undecodable-image"


@pytest.mark.asyncio
async def test_prepare_runs_validate_then_compress():
    processed = await prepare("photo.jpg", "image/jpeg", make_image(size=(2500, 500)))
    assert processed.kind == "image"
    assert Image.open(io.BytesIO(processed.data)).size == (1920, 384)


@pytest.mark.asyncio
async def test_upload_returns_descriptor(blob_store):
    processed = ProcessedFile(data=PDF, mime="application/pdf", filename="doc.pdf", kind="pdf")
    attachment = await upload(processed, "conv1", "alice", blob_store)

    assert attachment.file_id in blob_store.blobs
    assert blob_store.blobs[attachment.file_id]["folder"] == folder_for("conv1", "pdf") == "chat/conv1/documents"
    assert attachment.url.endswith(attachment.file_id)
    assert attachment.size == len(PDF)
    assert attachment.mime == "application/pdf"


@pytest.mark.asyncio
async def test_upload_failure_is_upload_failed(blob_store):
    blob_store.fail = True
    processed = ProcessedFile(data=PDF, mime="application/pdf", filename="doc.pdf", kind="pdf")
    with pytest.raises(UploadFailed):
        await upload(processed, "conv1", "alice", blob_store)
    assert blob_store.blobs == {}
