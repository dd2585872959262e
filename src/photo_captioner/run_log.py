"""Per-run JSON report: one entry per processed image plus aggregate counts."""

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from photo_captioner.runner import Outcome


class CaptionResult(BaseModel):
    """Successful processing of one image."""

    image_path: Path
    output_path: Path
    caption: str
    processing_seconds: float
    existing_caption: str | None = None
    existing_tags: list[str] = Field(default_factory=list)


class ImageProcessingError(Exception):
    """Failure of one image, with the time spent before it failed."""

    def __init__(self, image_path: Path, error: str, processing_seconds: float) -> None:
        super().__init__(error)
        self.image_path = image_path
        self.error = error
        self.processing_seconds = processing_seconds


class LogEntry(BaseModel):
    timestamp: datetime
    image_path: str
    caption: str | None = None
    error: str | None = None
    processing_seconds: float = 0.0
    metadata: dict[str, Any] | None = None


class RunSummary(BaseModel):
    total_images: int
    successful: int
    failed: int
    average_processing_seconds: float
    logs: list[LogEntry]


class RunLog:
    """
    Accumulate log entries during a run and write them as one JSON document.

    Args:
        log_folder: Directory for the report; created on save
        started_at: Run timestamp used in the file name (defaults to now, UTC)

    """

    def __init__(self, log_folder: Path = Path("logs"), started_at: datetime | None = None) -> None:
        started_at = started_at or datetime.now(tz=UTC)
        stamp = started_at.isoformat().replace(":", "-").replace(".", "-")
        self.log_path = log_folder / f"caption-log-{stamp}.json"
        self.entries: list[LogEntry] = []

    def log(
        self,
        image_path: Path | str,
        *,
        caption: str | None = None,
        error: str | None = None,
        processing_seconds: float = 0.0,
        metadata: dict[str, Any] | None = None,
    ) -> LogEntry:
        entry = LogEntry(
            timestamp=datetime.now(tz=UTC),
            image_path=str(image_path),
            caption=caption,
            error=error,
            processing_seconds=processing_seconds,
            metadata=metadata or None,
        )
        self.entries.append(entry)
        return entry

    def log_outcome(self, outcome: Outcome[Path, CaptionResult]) -> LogEntry:
        """Record a runner outcome, success or failure."""
        if outcome.ok and outcome.value is not None:
            result = outcome.value
            metadata: dict[str, Any] = {}
            if result.existing_caption:
                metadata["existing_caption"] = result.existing_caption
            if result.existing_tags:
                metadata["existing_tags"] = result.existing_tags
            return self.log(
                result.image_path,
                caption=result.caption,
                processing_seconds=result.processing_seconds,
                metadata=metadata,
            )

        error = outcome.error
        if isinstance(error, ImageProcessingError):
            return self.log(
                error.image_path,
                error=error.error,
                processing_seconds=error.processing_seconds,
            )
        return self.log(outcome.item, error=str(error) or type(error).__name__)

    def summary(self) -> RunSummary:
        total = len(self.entries)
        failed = sum(1 for entry in self.entries if entry.error)
        average = sum(entry.processing_seconds for entry in self.entries) / total if total else 0.0
        return RunSummary(
            total_images=total,
            successful=total - failed,
            failed=failed,
            average_processing_seconds=round(average, 3),
            logs=list(self.entries),
        )

    def save(self) -> Path:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path.write_text(self.summary().model_dump_json(indent=2), encoding="utf-8")
        logger.info("run_log_saved", path=str(self.log_path))
        return self.log_path
