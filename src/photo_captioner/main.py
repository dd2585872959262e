#!/usr/bin/env python3
"""
Photo Captioner: CLI app to caption photos with a vision-language model.

For every image in the input folder:
 - read the caption/keywords it already carries (used as prompt context),
 - send a resized, metadata-free JPEG copy to the model,
 - write the caption to IPTC:Caption-Abstract, XMP-dc:Description and EXIF:ImageDescription
   of a copy placed in the output folder. The input file is never modified.

Images are processed concurrently (--concurrency, default 4). A JSON report of every run is
written to the log folder.

Requirements:
 - Exiftool installed and available in PATH.
 - An OpenAI API key (or a key for another OpenAI-compatible endpoint passed with --url).

"""
# ruff: noqa: PLR0913, E402

import asyncio
import os
import sys
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Literal

from cyclopts import App, Parameter, validators
from dotenv import load_dotenv
from loguru import logger
from pydantic_ai import Agent


# Load .env before the modules below read their env-based defaults
load_dotenv()

from photo_captioner.captioning import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL_NAME,
    DEFAULT_RETRIES,
    DEFAULT_TEMPERATURE,
    create_agent,
    generate_caption,
)
from photo_captioner.imaging import (
    DEFAULT_JPEG_QUALITY,
    DEFAULT_MAX_DIMENSION,
    extract_existing_metadata,
    read_tags_async,
    resize_image_async,
    strip_metadata_async,
    write_caption_and_relocate_async,
)
from photo_captioner.run_log import CaptionResult, ImageProcessingError, RunLog
from photo_captioner.runner import DEFAULT_CONCURRENCY, BoundedRunner, Outcome


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]

# Configuration defaults
DEFAULT_EXTENSIONS = os.getenv("IMAGE_EXTENSIONS", "jpg,jpeg")


# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="photo-captioner",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    # Remove default handler
    logger.remove()

    # Add file logging
    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-photo_captioner.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    # Add console logging
    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def _parse_extensions(image_extensions: str) -> set[str]:
    """
    Normalize comma-separated extensions into a lowercase set like {".jpg", ".jpeg"}.

    Examples:
        >>> sorted(_parse_extensions("jpg, JPEG ,.png"))
        ['.jpeg', '.jpg', '.png']

    """
    return {
        f".{ext.strip().lstrip('.').lower()}"
        for ext in image_extensions.split(",")
        if ext.strip().lstrip(".")
    }


def find_image_files(input_dir: Path, ext_set: set[str], *, recursive: bool = False) -> list[Path]:
    """
    List image files in ``input_dir`` whose extension (case-insensitive) is in ``ext_set``.

    Raises:
        FileNotFoundError: If ``input_dir`` does not exist or is not a directory

    """
    if not input_dir.is_dir():
        msg = f"Input directory not found. Please create: {input_dir}"
        raise FileNotFoundError(msg)

    candidates = input_dir.rglob("*") if recursive else input_dir.iterdir()
    return sorted(
        path for path in candidates if path.is_file() and path.suffix.lower() in ext_set
    )


async def process_image(
    image_path: Path,
    *,
    agent: Agent[None, str],
    output_dir: Path,
    max_dimension: int = DEFAULT_MAX_DIMENSION,
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overwrite_output: bool = False,
) -> CaptionResult:
    """
    Caption one image and write the captioned copy to ``output_dir``.

    Steps: read existing tags (best-effort), resize and strip, ask the model, write the
    caption and relocate.

    Raises:
        ImageProcessingError: If any step other than reading tags fails

    """
    start = time.perf_counter()
    with logger.contextualize(file=image_path.name):
        logger.info("processing_photo")
        try:
            tags = await read_tags_async(image_path)
            existing = extract_existing_metadata(tags)
            if not existing.is_empty:
                logger.info(
                    "existing_metadata_found",
                    has_caption=bool(existing.caption),
                    tag_count=len(existing.tags),
                )

            resized = await resize_image_async(image_path, max_dimension, quality=jpeg_quality)
            stripped = await strip_metadata_async(resized, quality=jpeg_quality)

            caption = await generate_caption(
                stripped,
                agent,
                existing=existing,
                temperature=temperature,
                max_tokens=max_tokens,
            )

            output_path = await write_caption_and_relocate_async(
                image_path,
                caption,
                output_dir,
                overwrite=overwrite_output,
            )
        except Exception as exc:
            elapsed = time.perf_counter() - start
            logger.error("processing_failed", error=str(exc), seconds=round(elapsed, 3))
            raise ImageProcessingError(image_path, str(exc), round(elapsed, 3)) from exc

        elapsed = time.perf_counter() - start
        logger.info("processing_success", seconds=round(elapsed, 3))
        return CaptionResult(
            image_path=image_path,
            output_path=output_path,
            caption=caption,
            processing_seconds=round(elapsed, 3),
            existing_caption=existing.caption,
            existing_tags=existing.tags,
        )


def report_outcomes(outcomes: list[Outcome[Path, CaptionResult]], run_log: RunLog) -> int:
    """Feed every outcome to the run log, print the summary and return the failure count."""
    for outcome in outcomes:
        run_log.log_outcome(outcome)

    summary = run_log.summary()
    logger.info(
        "processing_summary",
        total_files=summary.total_images,
        successful=summary.successful,
        failed=summary.failed,
        average_seconds=summary.average_processing_seconds,
    )

    if summary.failed:
        for outcome in outcomes:
            if not outcome.ok:
                logger.error("file_failed", file=outcome.item.name, error=str(outcome.error))
        logger.warning("check_run_log_for_details", path=str(run_log.log_path))

    return summary.failed


async def caption_directory(
    image_files: list[Path],
    *,
    agent: Agent[None, str],
    output_dir: Path,
    run_log: RunLog,
    concurrency: int = DEFAULT_CONCURRENCY,
    item_timeout: float | None = None,
    max_dimension: int = DEFAULT_MAX_DIMENSION,
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overwrite_output: bool = False,
) -> list[Outcome[Path, CaptionResult]]:
    """Run every image through ``process_image`` with bounded concurrency and save the report."""
    runner: BoundedRunner[Path, CaptionResult] = BoundedRunner(concurrency, timeout=item_timeout)

    async def _process(image_path: Path) -> CaptionResult:
        return await process_image(
            image_path,
            agent=agent,
            output_dir=output_dir,
            max_dimension=max_dimension,
            jpeg_quality=jpeg_quality,
            temperature=temperature,
            max_tokens=max_tokens,
            overwrite_output=overwrite_output,
        )

    logger.info("processing_images", count=len(image_files), concurrency=concurrency)
    outcomes = await runner.process(image_files, _process)

    report_outcomes(outcomes, run_log)
    run_log.save()
    return outcomes


@app.default
def caption(
    input_dir: Annotated[
        Path,
        Parameter(
            name=("--input-dir", "-i"),
            help="Folder containing the images to caption",
        ),
    ] = Path("input"),
    output_dir: Annotated[
        Path,
        Parameter(
            name=("--output-dir", "-o"),
            help="Folder receiving the captioned copies (created if missing)",
        ),
    ] = Path("output"),
    *,
    image_extensions: Annotated[
        str,
        Parameter(
            name=("--ext", "--extensions"),
            help="Comma-separated image file extensions to process (case insensitive)",
        ),
    ] = DEFAULT_EXTENSIONS,
    recursive: Annotated[
        bool,
        Parameter(
            name=("--recursive", "-r"),
            help="Process files in subdirectories recursively",
        ),
    ] = False,
    model_name: Annotated[
        str,
        Parameter(
            name=("--model", "-m"),
            help="Vision-language model name",
        ),
    ] = DEFAULT_MODEL_NAME,
    api_base_url: Annotated[
        str | None,
        Parameter(
            name=("--url", "-u"),
            help="OpenAI-compatible API base URL (defaults to OpenAI)",
        ),
    ] = None,
    api_key: Annotated[
        str | None,
        Parameter(name=("--api-key", "-k"), help="API key. Falls back to OPENAI_API_KEY"),
    ] = None,
    concurrency: Annotated[
        int,
        Parameter(
            name=("--concurrency", "-c"),
            validator=validators.Number(gte=1),
            help="Maximum number of images processed at the same time",
        ),
    ] = DEFAULT_CONCURRENCY,
    item_timeout: Annotated[
        float | None,
        Parameter(
            name=("--item-timeout",),
            validator=validators.Number(gt=0),
            help="Give up on a single image after this many seconds (no limit by default)",
        ),
    ] = None,
    overwrite_output: Annotated[
        bool,
        Parameter(
            name=("--overwrite-output",),
            help="Replace files that already exist in the output folder",
        ),
    ] = False,
    temperature: Annotated[
        float,
        Parameter(
            name=("--temperature",),
            help="Sampling temperature (0.0-1.0)",
        ),
    ] = DEFAULT_TEMPERATURE,
    max_tokens: Annotated[
        int,
        Parameter(
            name=("--max-tokens",),
            help="Maximum tokens to generate",
        ),
    ] = DEFAULT_MAX_TOKENS,
    jpeg_dimensions: Annotated[
        int,
        Parameter(
            name=("--jpeg-dimensions",),
            validator=validators.Number(gte=1),
            help="Max dimension in pixels for the resized JPEG sent to the model",
        ),
    ] = DEFAULT_MAX_DIMENSION,
    jpeg_quality: Annotated[
        int,
        Parameter(
            name=("--jpeg-quality",),
            validator=validators.Number(gte=1, lte=100),
            help="JPEG quality (1-100) for the image sent to the model",
        ),
    ] = DEFAULT_JPEG_QUALITY,
    retries: Annotated[
        int,
        Parameter(
            name=("--retries",),
            help="Number of automatic model retries",
        ),
    ] = DEFAULT_RETRIES,
    file_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--file-log-level",
            help="Log level for file (use 'OFF' to disable)",
        ),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(
            name=("--log-folder",),
            help="Folder where log files and run reports are stored",
        ),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--console-log-level",
            help="Log level for console (use 'OFF' to disable)",
        ),
    ] = "INFO",
) -> None:
    """
    Caption images with AI and write the caption into a copy of each image.

    Requirements:
    - ExifTool installed and on PATH.
    - OPENAI_API_KEY set (a .env file in the working directory is honored) or --api-key.

    Behavior:
    - Finds images in --input-dir matching --ext (add --recursive for subfolders).
    - Reads existing caption/keywords and passes them to the model as context.
    - Sends a resized, metadata-free JPEG to the model and asks for a short caption.
    - Writes the caption to three metadata fields of a copy in --output-dir.
    - Saves a JSON report (caption-log-<timestamp>.json) to --log-folder.

    Exit status: 1 if the API key or the input folder is missing, 0 otherwise (also when no
    images are found or some images fail; see the report for details).

    Examples:
        photo-captioner
        photo-captioner -i ./photos -o ./captioned --concurrency 8
        photo-captioner -i ./photos --ext jpg,cr3 -r --url http://localhost:1234/v1

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    resolved_api_key = api_key or os.getenv("OPENAI_API_KEY")
    logger.info(
        "starting_photo_captioner",
        input_dir=str(input_dir),
        output_dir=str(output_dir),
        extensions=image_extensions,
        model=model_name,
        api_base_url=api_base_url,
        api_key_present=bool(resolved_api_key),
        concurrency=concurrency,
        item_timeout=item_timeout,
        recursive=recursive,
    )

    if not resolved_api_key:
        logger.error("missing_api_key", hint="Set OPENAI_API_KEY or pass --api-key")
        raise SystemExit(1)

    ext_set = _parse_extensions(image_extensions)
    if not ext_set:
        logger.error("no_valid_extensions_provided", raw_input=image_extensions)
        raise SystemExit(1)

    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        image_files = find_image_files(input_dir, ext_set, recursive=recursive)
    except FileNotFoundError as exc:
        logger.error("input_dir_not_found", error=str(exc))
        raise SystemExit(1) from exc

    if not image_files:
        logger.warning(
            "no_image_files_found",
            input_dir=str(input_dir),
            extensions=sorted(ext_set),
        )
        return
    logger.info("image_files_discovered", count=len(image_files))

    agent = create_agent(
        model_name,
        api_key=resolved_api_key,
        api_base_url=api_base_url,
        retries=retries,
        key_source="--api-key" if api_key else "OPENAI_API_KEY",
    )

    try:
        asyncio.run(
            caption_directory(
                image_files,
                agent=agent,
                output_dir=output_dir,
                run_log=RunLog(log_folder),
                concurrency=concurrency,
                item_timeout=item_timeout,
                max_dimension=jpeg_dimensions,
                jpeg_quality=jpeg_quality,
                temperature=temperature,
                max_tokens=max_tokens,
                overwrite_output=overwrite_output,
            ),
        )
    except Exception as exc:
        logger.exception("orchestration_failed", error=str(exc))
        raise SystemExit(1) from exc


if __name__ == "__main__":
    app()
