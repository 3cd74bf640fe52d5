from __future__ import annotations

import asyncio
import logging
import uuid
from io import BytesIO
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from custody.config import settings
from custody.errors import ValidationError

logger = logging.getLogger(__name__)

ARTIFACT_KINDS = frozenset({"photo", "signature", "attachment"})
_EXTENSIONS = {"PNG": "png", "JPEG": "jpg", "WEBP": "webp"}


def _detect_format(data: bytes) -> str:
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = (img.format or "").upper()
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        raise ValidationError("artifact is not a readable image", field="file") from None
    if fmt not in _EXTENSIONS:
        raise ValidationError(f"unsupported image format: {fmt or 'unknown'}", field="file")
    return _EXTENSIONS[fmt]


def _write(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


async def store_artifact(data: bytes, *, kind: str, filename: str | None = None) -> str:
    """Persist an uploaded proof image and return its path reference.

    The returned path is relative to ``UPLOAD_DIR`` and is what callers pass
    as ``recipientPhotoPath`` / ``signaturePath``.
    """
    if kind not in ARTIFACT_KINDS:
        raise ValidationError(f"unknown artifact kind: {kind}", field="kind")
    if not data:
        raise ValidationError("uploaded file is empty", field="file")
    if len(data) > settings.upload_max_bytes:
        raise ValidationError(
            f"uploaded file exceeds {settings.upload_max_bytes} bytes", field="file"
        )
    ext = _detect_format(data)
    rel = Path(kind) / f"{uuid.uuid4().hex}.{ext}"
    await asyncio.to_thread(_write, Path(settings.upload_dir) / rel, data)
    logger.info(
        "artifact stored",
        extra={"extra": {"kind": kind, "path": rel.as_posix(), "bytes": len(data), "original": filename}},
    )
    return rel.as_posix()

