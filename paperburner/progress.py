"""Processing log and progress events.

:class:`ProcessingLogger` keeps a timestamped, human-readable history of
a run, mirrors every line into :mod:`logging`, and emits structured
:class:`~paperburner.models.ProgressEvent` objects for observers such as
the CLI progress bar. Observers are a side channel: a failing callback is
logged and ignored.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .keys import mask_key
from .models import ProgressEvent

log = logging.getLogger(__name__)

LogCallback = Callable[[str], None]
EventCallback = Callable[[ProgressEvent], None]


class ProcessingLogger:
    def __init__(
        self,
        on_log: Optional[LogCallback] = None,
        on_event: Optional[EventCallback] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.on_log = on_log
        self.on_event = on_event
        self._logger = logger or log
        self._lines: list[str] = []

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    @staticmethod
    def timestamp() -> str:
        return datetime.now().strftime("[%H:%M:%S]")

    def log(self, message: str, level: int = logging.INFO) -> str:
        line = f"{self.timestamp()} {message}"
        self._lines.append(line)
        self._logger.log(level, message)
        if self.on_log is not None:
            try:
                self.on_log(line)
            except Exception:
                self._logger.exception("on_log callback failed")
        return line

    def emit(
        self,
        kind: str,
        message: str,
        *,
        file_name: Optional[str] = None,
        status: Optional[str] = None,
        progress: Optional[int] = None,
        **data: Any,
    ) -> None:
        if self.on_event is None:
            return
        event = ProgressEvent(
            kind=kind,
            message=message,
            file_name=file_name,
            status=status,
            progress=progress,
            data=data,
        )
        try:
            self.on_event(event)
        except Exception:
            self._logger.exception("on_event callback failed")

    def all_logs(self) -> list[str]:
        return list(self._lines)

    def clear(self) -> None:
        self._lines.clear()

    def export_logs(self) -> str:
        return "\n".join(self._lines)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def batch_start(
        self,
        file_count: int,
        concurrency: int,
        translation_concurrency: int,
        max_attempts: int,
        skip_processed: bool = False,
    ) -> None:
        self.log(f"Batch processing started: {file_count} files")
        self.log(
            f"File concurrency: {concurrency}, Translation concurrency: "
            f"{translation_concurrency}, Max attempts: {max_attempts}, "
            f"Skip processed: {skip_processed}"
        )
        self.emit(
            "batch_start",
            "batch started",
            file_count=file_count,
            concurrency=concurrency,
            translation_concurrency=translation_concurrency,
        )

    def batch_complete(self, succeeded: int, failed: int, elapsed_s: float) -> None:
        self.log("Batch processing complete")
        self.log(f"Succeeded: {succeeded} files")
        if failed:
            self.log(f"Failed: {failed} files", logging.WARNING)
        self.log(f"Total time: {elapsed_s:.1f}s")
        self.emit(
            "batch_complete",
            "batch complete",
            succeeded=succeeded,
            failed=failed,
            elapsed_s=elapsed_s,
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def file_start(self, index: int, total: int, file_name: str) -> None:
        self.log(f"--- [{index}/{total}] Processing file: {file_name} ---")
        self.emit("file_start", "file started", file_name=file_name, index=index, total=total)

    def file_step(self, file_name: str, step: str, details: str = "") -> None:
        self.log(f"[{file_name}] {step} {details}".rstrip())

    def status_change(
        self,
        file_name: str,
        from_status: str,
        to_status: str,
        progress: Optional[int] = None,
    ) -> None:
        suffix = f" ({progress}%)" if progress is not None else ""
        self.file_step(file_name, f"Status: {from_status} -> {to_status}{suffix}")
        self.emit(
            "status",
            to_status,
            file_name=file_name,
            status=to_status,
            progress=progress,
            previous=from_status,
        )

    def progress(self, file_name: str, status: str, progress: int) -> None:
        """Report a percentage without a log line."""
        self.emit("status", status, file_name=file_name, status=status, progress=progress)

    def key_usage(self, file_name: str, pool: str, key: str) -> None:
        self.file_step(file_name, f"Using {pool} key {mask_key(key)}")

    def ocr_stats(self, file_name: str, pages: int, images: int, chars: int) -> None:
        self.file_step(file_name, f"OCR complete: {pages} pages, {images} images, {chars} chars")

    def segmentation(self, file_name: str, tokens: int, limit: int, chunks: int) -> None:
        self.file_step(
            file_name,
            f"Estimated ~{tokens} tokens (limit {limit}), split into {chunks} parts",
        )

    def chunk_start(self, file_name: str, index: int, total: int, attempt: int) -> None:
        self.file_step(file_name, f"(Part {index + 1}/{total}) translating, attempt {attempt}")
        self.emit(
            "chunk_start",
            "chunk started",
            file_name=file_name,
            chunk_index=index,
            total=total,
            attempt=attempt,
        )

    def chunk_complete(
        self, file_name: str, index: int, total: int, success: bool, duration_s: float
    ) -> None:
        outcome = "success" if success else "failure"
        self.file_step(
            file_name,
            f"(Part {index + 1}/{total}) {outcome} in {duration_s:.2f}s",
        )
        self.emit(
            "chunk_complete",
            outcome,
            file_name=file_name,
            chunk_index=index,
            total=total,
            success=success,
            duration_s=duration_s,
        )

    def retry(
        self, file_name: str, step: str, attempt: int, max_attempts: int, delay_s: float
    ) -> None:
        self.file_step(
            file_name,
            f"Retrying {step} ({attempt}/{max_attempts}) in {delay_s:.1f}s",
        )
        self.emit("retry", step, file_name=file_name, attempt=attempt, delay_s=delay_s)

    def cleanup(self, file_name: str, resource: str, success: bool) -> None:
        self.file_step(file_name, f"Cleanup {resource}: {'ok' if success else 'failed'}")

    def performance(self, file_name: str, step: str, duration_s: float) -> None:
        self.file_step(file_name, f"{step} took {duration_s:.2f}s")

    def file_complete(
        self, file_name: str, success: bool, error: Optional[str] = None
    ) -> None:
        if success:
            self.file_step(file_name, "File processing complete")
        else:
            self.log(
                f"[{file_name}] File processing failed: {error or 'unknown error'}",
                logging.ERROR,
            )
        self.emit(
            "file_complete",
            "success" if success else (error or "failed"),
            file_name=file_name,
            success=success,
        )

    def warning(self, file_name: str, message: str) -> None:
        self.log(f"[{file_name}] Warning: {message}", logging.WARNING)
        self.emit("warning", message, file_name=file_name)

    def error(self, file_name: str, message: str, step: str = "") -> None:
        where = f" ({step})" if step else ""
        self.log(f"[{file_name}] Error{where}: {message}", logging.ERROR)
        self.emit("error", message, file_name=file_name, step=step)
