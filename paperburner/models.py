"""Shared data models for the OCR and translation pipeline."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class FileStatus(str, Enum):
    """Per-file status stored in a processing session."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    TRANSLATING = "translating"


@dataclass
class ImageData:
    """One image extracted by OCR, kept as base64 payload."""

    filename: str
    base64: str
    mime_type: str = "image/png"

    @property
    def id(self) -> str:
        return self.filename.rsplit(".", 1)[0]


@dataclass
class ProcessedOcr:
    """Markdown and images assembled from a page-by-page OCR response."""

    markdown: str
    images: list[ImageData] = field(default_factory=list)
    num_pages: int = 0


@dataclass
class ProcessingResult:
    """Final outcome of processing one PDF.

    A successful result always carries Markdown; a failed one always
    carries an error message.
    """

    success: bool
    file_name: str
    markdown: str = ""
    translation: Optional[str] = None
    images: list[ImageData] = field(default_factory=list)
    error: Optional[str] = None
    file_path: str = ""
    session_id: str = ""
    attempts: int = 1
    elapsed_s: float = 0.0

    def __post_init__(self) -> None:
        if self.success and self.error:
            raise ValueError("successful result cannot carry an error")
        if not self.success and not self.error:
            raise ValueError("failed result must carry an error message")

    @classmethod
    def failure(cls, file_name: str, error: str, **kwargs: Any) -> "ProcessingResult":
        return cls(success=False, file_name=file_name, error=error or "unknown error", **kwargs)

    def to_dict(self, *, include_images: bool = False) -> dict[str, Any]:
        data = asdict(self)
        if include_images:
            return data
        data["images"] = [img["filename"] for img in data["images"]]
        return data


@dataclass
class DocumentTask:
    """A queued PDF plus the keys and attempts it has used so far."""

    file_path: str
    index: int
    total: int
    ocr_key: str = ""
    translation_key: str = ""
    attempt: int = 0
    max_attempts: int = 3
    tried_ocr_keys: set[str] = field(default_factory=set)
    tried_translation_keys: set[str] = field(default_factory=set)


@dataclass
class ChunkTask:
    """One slice of a document queued for translation."""

    file_name: str
    chunk_index: int
    total_chunks: int
    text: str
    key: str = ""
    attempt: int = 0
    max_attempts: int = 3


@dataclass
class ChunkResult:
    """Outcome of translating one chunk."""

    success: bool
    chunk_index: int
    translated: str = ""
    error: Optional[str] = None
    key_used: str = ""
    attempts: int = 0
    duration_s: float = 0.0


@dataclass
class ProgressEvent:
    """Structured progress notification for observers."""

    kind: str
    message: str
    file_name: Optional[str] = None
    status: Optional[str] = None
    progress: Optional[int] = None
    timestamp: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)
