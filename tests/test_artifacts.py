from __future__ import annotations

from pathlib import Path

import pytest

from conftest import png_bytes
from custody.config import settings
from custody.errors import ValidationError
from custody.services.artifacts import store_artifact


@pytest.mark.asyncio
async def test_store_png_under_upload_dir():
    data = png_bytes()
    ref = await store_artifact(data, kind="photo", filename="me.png")
    assert ref.startswith("photo/") and ref.endswith(".png")
    path = Path(settings.upload_dir) / ref
    assert path.read_bytes() == data
    assert path.parent.name == "photo"


@pytest.mark.asyncio
async def test_jpeg_gets_jpg_extension():
    ref = await store_artifact(png_bytes(fmt="JPEG"), kind="signature")
    assert ref.endswith(".jpg")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data, kind, field",
    [
        (b"", "photo", "file"),
        (b"not an image at all", "photo", "file"),
        (b"\x89PNG", "selfie", "kind"),
    ],
)
async def test_rejects_bad_uploads(data, kind, field):
    with pytest.raises(ValidationError) as ei:
        await store_artifact(data, kind=kind)
    assert ei.value.field == field


@pytest.mark.asyncio
async def test_rejects_oversize(monkeypatch):
    monkeypatch.setattr(settings, "upload_max_bytes", 10)
    with pytest.raises(ValidationError):
        await store_artifact(png_bytes(), kind="photo")


@pytest.mark.asyncio
async def test_rejects_gif():
    with pytest.raises(ValidationError):
        await store_artifact(png_bytes(fmt="GIF"), kind="photo")
