"""Exception hierarchy for OCR, translation and batch processing."""

from __future__ import annotations

from typing import Optional


class PaperBurnerError(Exception):
    """Base class for every error raised by the package."""


class ProviderError(PaperBurnerError):
    """A remote provider call failed in a way worth retrying."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        key: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.key = key


class AuthenticationError(ProviderError):
    """The provider rejected the credential (HTTP 401/403)."""


class MalformedResponseError(ProviderError):
    """A successful response carried no usable payload."""


class CredentialExhaustedError(PaperBurnerError):
    """No untried, non-blacklisted key is left for a task."""

    def __init__(self, pool: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"credential exhaustion: no usable {pool} key left")
        self.pool = pool


class NoCredentialsError(PaperBurnerError):
    """A batch was started without any key for a required pool."""


class ChunkTranslationError(PaperBurnerError):
    """One chunk of a document could not be translated."""

    def __init__(self, file_name: str, chunk_index: int, reason: str) -> None:
        super().__init__(
            f"{file_name}: translation of chunk {chunk_index + 1} failed: {reason}"
        )
        self.file_name = file_name
        self.chunk_index = chunk_index
        self.reason = reason


class DocumentProcessingError(PaperBurnerError):
    """The single-document pipeline failed; the cause is chained."""

    def __init__(self, file_name: str, message: str, session_id: str = "") -> None:
        super().__init__(message)
        self.file_name = file_name
        self.session_id = session_id


class ProcessingCancelledError(PaperBurnerError):
    """The processing run was cancelled."""


def find_cause(exc: BaseException, kind: type) -> Optional[BaseException]:
    """Walk the ``__cause__``/``__context__`` chain looking for *kind*."""
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, kind):
            return current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return None
