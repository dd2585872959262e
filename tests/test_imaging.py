"""Tests for resizing, metadata stripping and the ExifTool read/write helpers."""

from io import BytesIO
from pathlib import Path
from typing import Any

import pytest
from PIL import Image

import photo_captioner.imaging as im


class FakeExifTool:
    """Stand-in for ExifToolHelper that records calls and returns canned tag blocks."""

    def __init__(
        self,
        blocks: list[dict[str, Any]] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.blocks = blocks or []
        self.error = error
        self.set_calls: list[dict[str, Any]] = []

    def __call__(self) -> "FakeExifTool":
        return self

    def __enter__(self) -> "FakeExifTool":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def get_tags(self, files: list[str], tags: list[str]) -> list[dict[str, Any]]:
        if self.error:
            raise self.error
        return self.blocks

    def set_tags(
        self,
        files: list[str],
        tags: dict[str, str],
        params: list[str] | None = None,
    ) -> str:
        if self.error:
            raise self.error
        self.set_calls.append({"files": files, "tags": tags, "params": params})
        if params and "-o" in params:
            written = Path(params[params.index("-o") + 1])
            written.parent.mkdir(parents=True, exist_ok=True)
            written.write_text(tags["IPTC:Caption-Abstract"])
        return ""


def _write_image(path: Path, size: tuple[int, int], mode: str = "RGB") -> Path:
    color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
    Image.new(mode, size, color).save(path)
    return path


def _dimensions(data: bytes) -> tuple[int, int]:
    with Image.open(BytesIO(data)) as img:
        assert img.format == "JPEG"
        return img.size


def test_resize_caps_longer_side_and_keeps_aspect_ratio(tmp_path: Path) -> None:
    """A 4000x2000 photo shrinks to 1248x624."""
    source = _write_image(tmp_path / "wide.jpg", (4000, 2000))

    assert _dimensions(im.resize_image(source, 1248)) == (1248, 624)


def test_resize_never_upscales(tmp_path: Path) -> None:
    """Images already under the limit keep their size."""
    source = _write_image(tmp_path / "small.jpg", (120, 80))

    assert _dimensions(im.resize_image(source, 1248)) == (120, 80)


def test_resize_flattens_alpha_to_jpeg(tmp_path: Path) -> None:
    """Transparent PNGs are composited and re-encoded as RGB JPEG."""
    source = _write_image(tmp_path / "logo.png", (300, 600), mode="RGBA")

    data = im.resize_image(source, 100)
    with Image.open(BytesIO(data)) as img:
        assert img.mode == "RGB"
        assert img.size == (50, 100)


def test_strip_metadata_removes_exif() -> None:
    """EXIF payloads present in the input are absent from the output."""
    exif = Image.Exif()
    exif[0x010E] = "Old description"
    buf = BytesIO()
    Image.new("RGB", (64, 64), (10, 20, 30)).save(buf, format="JPEG", exif=exif.tobytes())
    with Image.open(BytesIO(buf.getvalue())) as original:
        assert len(original.getexif()) == 1

    stripped = im.strip_metadata(buf.getvalue())

    with Image.open(BytesIO(stripped)) as img:
        assert len(img.getexif()) == 0
        assert "exif" not in img.info
        assert img.size == (64, 64)


def test_read_tags_drops_group_prefixes(monkeypatch: pytest.MonkeyPatch) -> None:
    """Group-qualified keys come back as bare tag names; SourceFile is skipped."""
    fake = FakeExifTool(
        blocks=[
            {
                "SourceFile": "/photos/a.jpg",
                "IPTC:Caption-Abstract": "Grandma at the lake",
                "IPTC:Keywords": ["Family", "Summer"],
                "XMP:Subject": ["Ignored"],
            },
        ],
    )
    monkeypatch.setattr(im, "ExifToolHelper", fake)

    tags = im.read_tags(Path("/photos/a.jpg"))

    assert tags == {
        "Caption-Abstract": "Grandma at the lake",
        "Keywords": ["Family", "Summer"],
        "Subject": ["Ignored"],
    }


def test_read_tags_returns_empty_mapping_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """Any ExifTool problem means 'no context' rather than an error."""
    monkeypatch.setattr(im, "ExifToolHelper", FakeExifTool(error=FileNotFoundError("exiftool")))

    assert im.read_tags(Path("/photos/a.jpg")) == {}


def test_extract_existing_metadata_prefers_first_non_empty_caption() -> None:
    """Caption-Abstract wins over Description; blank values are skipped."""
    existing = im.extract_existing_metadata(
        {
            "Caption-Abstract": "  ",
            "Description": "Sunset over the bay",
            "ImageDescription": "Camera default",
            "Subject": "Bay",
        },
    )

    assert existing.caption == "Sunset over the bay"
    assert existing.tags == ["Bay"]


def test_extract_existing_metadata_normalizes_keywords() -> None:
    """Keywords win over Subject and scalar values become lists."""
    assert im.extract_existing_metadata({"Keywords": 2024, "Subject": ["X"]}).tags == ["2024"]
    assert im.extract_existing_metadata({"Keywords": ["A", "", "B"]}).tags == ["A", "B"]
    assert im.extract_existing_metadata({}).is_empty


def test_write_caption_targets_copy_in_output_dir(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """All three caption fields get the same text and ExifTool writes to the output copy."""
    fake = FakeExifTool()
    monkeypatch.setattr(im, "ExifToolHelper", fake)
    source = tmp_path / "input" / "IMG_0001.jpg"
    output_dir = tmp_path / "output"

    target = im.write_caption_and_relocate(source, "A heron on the dock.", output_dir)

    assert target == output_dir / "IMG_0001.jpg"
    assert fake.set_calls == [
        {
            "files": [str(source)],
            "tags": {
                "IPTC:Caption-Abstract": "A heron on the dock.",
                "XMP-dc:Description": "A heron on the dock.",
                "EXIF:ImageDescription": "A heron on the dock.",
            },
            "params": ["-o", str(target)],
        },
    ]


def test_write_caption_refuses_existing_output(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """An existing destination is an error unless overwrite is requested."""
    fake = FakeExifTool()
    monkeypatch.setattr(im, "ExifToolHelper", fake)
    output_dir = tmp_path / "output"
    output_dir.mkdir()
    existing = output_dir / "IMG_0001.jpg"
    existing.write_bytes(b"old")
    source = tmp_path / "IMG_0001.jpg"

    with pytest.raises(im.MetadataWriteError, match="already exists"):
        im.write_caption_and_relocate(source, "Caption", output_dir)
    assert fake.set_calls == []

    im.write_caption_and_relocate(source, "Caption", output_dir, overwrite=True)
    assert existing.read_text() == "Caption"
    assert len(fake.set_calls) == 1
    assert fake.set_calls[0]["params"] == ["-o", str(im.staging_path_for(existing))]
    assert sorted(p.name for p in output_dir.iterdir()) == ["IMG_0001.jpg"]


def test_write_caption_failure_propagates(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """ExifTool errors surface as MetadataWriteError chained to the original."""
    monkeypatch.setattr(im, "ExifToolHelper", FakeExifTool(error=ValueError("bad tag")))

    with pytest.raises(im.MetadataWriteError, match="Failed to write caption") as info:
        im.write_caption_and_relocate(tmp_path / "a.jpg", "Caption", tmp_path / "out")

    assert isinstance(info.value.__cause__, ValueError)


def test_write_caption_collapses_line_breaks(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """A multi-line caption reaches ExifTool as one single-line value per field."""
    fake = FakeExifTool()
    monkeypatch.setattr(im, "ExifToolHelper", fake)

    im.write_caption_and_relocate(
        tmp_path / "a.jpg",
        "A heron.\nOn the dock.\r\n\tAt dawn.",
        tmp_path / "out",
    )

    (call,) = fake.set_calls
    assert set(call["tags"].values()) == {"A heron. On the dock. At dawn."}


def test_failed_overwrite_keeps_previous_output(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """When the replacement cannot be written the existing captioned copy survives."""
    monkeypatch.setattr(im, "ExifToolHelper", FakeExifTool(error=ValueError("bad tag")))
    output_dir = tmp_path / "output"
    output_dir.mkdir()
    existing = output_dir / "IMG_0001.jpg"
    existing.write_bytes(b"previous caption")

    with pytest.raises(im.MetadataWriteError):
        im.write_caption_and_relocate(
            tmp_path / "IMG_0001.jpg",
            "Caption",
            output_dir,
            overwrite=True,
        )

    assert existing.read_bytes() == b"previous caption"
    assert not im.staging_path_for(existing).exists()
