"""
Image and metadata helpers: resize/strip with Pillow (rawpy for RAW), tags via ExifTool.

Requirements:
 - Exiftool installed and available in PATH.

The blocking helpers have ``*_async`` counterparts that run in a worker thread, so the
event loop keeps other images moving while ExifTool or the JPEG encoder is busy.
"""

import asyncio
import os
from io import BytesIO
from pathlib import Path
from typing import Any

import rawpy
from exiftool import ExifToolHelper  # type: ignore[attr-defined]
from exiftool.exceptions import ExifToolExecuteError
from loguru import logger
from PIL import Image
from pydantic import BaseModel, Field


DEFAULT_MAX_DIMENSION = int(os.getenv("JPEG_DIMENSIONS", "1248"))
DEFAULT_JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "70"))

NON_RAW_EXTENSIONS = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".jpe",
        ".png",
        ".webp",
        ".bmp",
        ".gif",
        ".jp2",
        ".tif",
        ".tiff",
        ".heic",
        ".heif",
        ".avif",
    },
)

# Fields checked for an existing caption, first non-empty wins.
CAPTION_SOURCE_TAGS = ("Caption-Abstract", "Description", "ImageDescription")
KEYWORD_SOURCE_TAGS = ("Keywords", "Subject")

# Fields that receive the generated caption.
CAPTION_TARGET_TAGS = (
    "IPTC:Caption-Abstract",
    "XMP-dc:Description",
    "EXIF:ImageDescription",
)


class MetadataWriteError(RuntimeError):
    """ExifTool could not write the caption or create the output copy."""


class ExistingMetadata(BaseModel):
    """Caption and keyword context already present in an image."""

    caption: str | None = None
    tags: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.caption and not self.tags


def _pil_from_image_path(image_path: Path) -> Image.Image:
    """Open an image from a path with PIL, using rawpy unless format is known non-RAW."""
    suffix = image_path.suffix.lower()
    if suffix not in NON_RAW_EXTENSIONS:
        try:
            with rawpy.imread(str(image_path)) as raw:  # type: ignore[no-untyped-call]
                rgb = raw.postprocess()  # 8-bit RGB np.ndarray
            logger.debug("image_opened_with_rawpy")
            return Image.fromarray(rgb)
        except Exception as exc:  # noqa: BLE001
            logger.warning("rawpy_failed_falling_back_to_pil", error=str(exc))

    return Image.open(image_path)


def _to_rgb(img: Image.Image) -> Image.Image:
    """Composite alpha onto white, otherwise convert to plain RGB."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        alpha = img.convert("RGBA")
        bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
        return Image.alpha_composite(bg, alpha).convert("RGB")
    return img.convert("RGB")


def resize_image(
    image_path: Path,
    max_dimension: int = DEFAULT_MAX_DIMENSION,
    *,
    quality: int = DEFAULT_JPEG_QUALITY,
) -> bytes:
    """
    Re-encode an image as JPEG with its longer side capped at ``max_dimension``.

    Aspect ratio is preserved and smaller images are never upscaled.

    Args:
        image_path: Path to the input image (RAW formats are decoded with rawpy)
        max_dimension: Maximum size in pixels of the longer side
        quality: JPEG quality (1-100)

    Returns:
        JPEG bytes

    """
    if max_dimension < 1:
        msg = f"max_dimension must be positive, got {max_dimension}"
        raise ValueError(msg)

    with _pil_from_image_path(image_path) as opened:
        if not opened.width or not opened.height:
            msg = f"Unable to get image dimensions for {image_path.name}"
            raise ValueError(msg)
        img = _to_rgb(opened)

    # thumbnail() only ever shrinks
    img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    buf = BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    jpeg_bytes = buf.getvalue()
    logger.debug(
        "image_resized",
        width=img.width,
        height=img.height,
        size_kb=len(jpeg_bytes) // 1024,
    )
    return jpeg_bytes


def strip_metadata(image_bytes: bytes, *, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    """
    Return JPEG bytes without EXIF, XMP or ICC payloads.

    Examples:
        >>> strip_metadata(resize_image(Path("photo.jpg")))  # doctest: +SKIP
        b'\\xff\\xd8...'

    """
    with Image.open(BytesIO(image_bytes)) as img:
        clean = Image.new(img.mode, img.size)
        clean.paste(img)
    if clean.mode != "RGB":
        clean = _to_rgb(clean)

    buf = BytesIO()
    clean.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def read_tags(image_path: Path) -> dict[str, Any]:
    """
    Read the caption and keyword fields of an image with ExifTool.

    Keys are returned without their group prefix (``IPTC:Keywords`` -> ``Keywords``); when the
    same tag appears in several groups the first one reported wins.
    Best-effort: any failure is logged and an empty mapping is returned.

    Examples:
        >>> read_tags(Path("/photos/image.jpg"))  # doctest: +SKIP
        {'Caption-Abstract': 'Grandma at the lake', 'Keywords': ['Family', 'Summer']}

    """
    try:
        with ExifToolHelper() as et:  # type: ignore[no-untyped-call]
            metadata_blocks = et.get_tags(
                files=[str(image_path)],
                tags=[*CAPTION_SOURCE_TAGS, *KEYWORD_SOURCE_TAGS],
            )
    except Exception as exc:  # noqa: BLE001
        logger.warning("failed_to_read_tags", error=str(exc))
        return {}

    collected: dict[str, Any] = {}
    for block in metadata_blocks:
        for key, value in block.items():
            if key == "SourceFile":
                continue
            collected.setdefault(key.split(":")[-1], value)

    logger.debug("tags_read", tags=sorted(collected))
    return collected


def _first_text(value: Any) -> str | None:  # noqa: ANN401
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = next((v for v in value if str(v).strip()), None)
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def _as_string_list(value: Any) -> list[str]:  # noqa: ANN401
    """
    Normalize a scalar or list tag value to a list of non-blank strings.

    Examples:
        >>> _as_string_list("Beach")
        ['Beach']
        >>> _as_string_list(["Beach", "", 42])
        ['Beach', '42']

    """
    if value is None:
        return []
    values = value if isinstance(value, (list, tuple, set)) else [value]
    return [str(v).strip() for v in values if str(v).strip()]


def extract_existing_metadata(tags: dict[str, Any]) -> ExistingMetadata:
    """
    Pick the caption and keyword context out of ``read_tags`` output.

    Examples:
        >>> extract_existing_metadata({"Description": "Lake", "Subject": "Family"})
        ExistingMetadata(caption='Lake', tags=['Family'])

    """
    caption = next(
        (text for tag in CAPTION_SOURCE_TAGS if (text := _first_text(tags.get(tag)))),
        None,
    )
    keywords = next(
        (values for tag in KEYWORD_SOURCE_TAGS if (values := _as_string_list(tags.get(tag)))),
        [],
    )
    return ExistingMetadata(caption=caption, tags=keywords)


def output_path_for(source_path: Path, output_dir: Path) -> Path:
    return output_dir / source_path.name


def staging_path_for(target_path: Path) -> Path:
    """
    Temporary name used while a replacement for ``target_path`` is written.

    Examples:
        >>> staging_path_for(Path("out/IMG_0001.jpg")).name
        '.IMG_0001.captioning.jpg'

    """
    return target_path.with_name(f".{target_path.stem}.captioning{target_path.suffix}")


def write_caption_and_relocate(
    source_path: Path,
    caption: str,
    output_dir: Path,
    *,
    overwrite: bool = False,
) -> Path:
    """
    Write the caption to a copy of the image placed in ``output_dir``.

    The same text goes to IPTC:Caption-Abstract, XMP-dc:Description and
    EXIF:ImageDescription. ExifTool writes the copy directly (``-o``); the source file is
    left untouched.

    Args:
        source_path: Image to caption
        caption: Caption text
        output_dir: Destination folder; the copy keeps the source's file name
        overwrite: Replace an existing file at the destination instead of failing

    Returns:
        Path of the captioned copy

    Raises:
        MetadataWriteError: If the destination exists (without ``overwrite``) or ExifTool fails

    """
    target_path = output_path_for(source_path, output_dir)
    replacing = target_path.exists()
    if replacing and not overwrite:
        msg = f"Output file already exists: {target_path}"
        raise MetadataWriteError(msg)

    # ExifTool refuses to overwrite with -o, so a replacement is staged next to the target
    write_path = target_path
    if replacing:
        write_path = staging_path_for(target_path)
        write_path.unlink(missing_ok=True)

    # pyexiftool passes one argument per line; a newline would split the tag value
    single_line = " ".join(caption.split())
    tags_to_write = dict.fromkeys(CAPTION_TARGET_TAGS, single_line)
    try:
        with ExifToolHelper() as et:  # type: ignore[no-untyped-call]
            et.set_tags(
                files=[str(source_path)],
                tags=tags_to_write,
                params=["-o", str(write_path)],
            )
    except (ValueError, TypeError, ExifToolExecuteError) as exc:
        logger.exception("caption_write_failed", error=str(exc), target=str(target_path))
        if replacing:
            write_path.unlink(missing_ok=True)
        msg = f"Failed to write caption to image: {exc}"
        stderr = getattr(exc, "stderr", None)
        if stderr:
            msg += f"\nDetails: {stderr}"
        raise MetadataWriteError(msg) from exc

    if replacing:
        write_path.replace(target_path)
        logger.debug("replaced_existing_output", target=str(target_path))

    logger.info("caption_written", target=str(target_path), fields=len(tags_to_write))
    return target_path


async def resize_image_async(
    image_path: Path,
    max_dimension: int = DEFAULT_MAX_DIMENSION,
    *,
    quality: int = DEFAULT_JPEG_QUALITY,
) -> bytes:
    return await asyncio.to_thread(resize_image, image_path, max_dimension, quality=quality)


async def strip_metadata_async(image_bytes: bytes, *, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    return await asyncio.to_thread(strip_metadata, image_bytes, quality=quality)


async def read_tags_async(image_path: Path) -> dict[str, Any]:
    return await asyncio.to_thread(read_tags, image_path)


async def write_caption_and_relocate_async(
    source_path: Path,
    caption: str,
    output_dir: Path,
    *,
    overwrite: bool = False,
) -> Path:
    return await asyncio.to_thread(
        write_caption_and_relocate,
        source_path,
        caption,
        output_dir,
        overwrite=overwrite,
    )
