"""Concurrent executors for chunk translation and whole-document processing.

Both executors share the same shape: fan tasks out with
``asyncio.gather(return_exceptions=True)``, bound in-flight work with a
:class:`~paperburner.concurrency.FifoSemaphore`, retry each task through
:func:`~paperburner.concurrency.run_with_key_rotation`, and reassemble
results by index.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Sequence

from .concurrency import (
    CHUNK_RETRY,
    DOCUMENT_RETRY,
    CancellationToken,
    FifoSemaphore,
    RetryPolicy,
    run_with_key_rotation,
)
from .errors import (
    ChunkTranslationError,
    CredentialExhaustedError,
    DocumentProcessingError,
    NoCredentialsError,
    ProcessingCancelledError,
)
from .keys import OCR_POOL, TRANSLATION_POOL, KeyPoolManager
from .models import ChunkResult, ChunkTask, DocumentTask, ProcessingResult
from .progress import ProcessingLogger
from .utils import strip_pdf_suffix

if TYPE_CHECKING:
    from .conversion import DocumentPipeline
    from .translation import TranslationPrompts

log = logging.getLogger(__name__)

TRANSLATION_PROGRESS_START = 70
TRANSLATION_PROGRESS_SPAN = 25


def _is_cancellation(exc: BaseException) -> bool:
    return isinstance(exc, (asyncio.CancelledError, ProcessingCancelledError))


async def _gather_tolerant(
    coros: Sequence[Any], cancel_token: Optional[CancellationToken]
) -> list[Any]:
    """Run *coros* concurrently; failures come back as exception objects."""
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    if cancel_token is not None:
        for task in tasks:
            cancel_token.register(task)
    results = await asyncio.gather(*tasks, return_exceptions=True)
    if (cancel_token is not None and cancel_token.cancelled) or any(
        _is_cancellation(r) for r in results if isinstance(r, BaseException)
    ):
        raise ProcessingCancelledError("processing cancelled")
    return results


# ---------------------------------------------------------------------------
# Chunk translation
# ---------------------------------------------------------------------------


class ChunkTranslationExecutor:
    """Translates the chunks of one document against the translation pool.

    *translator* is any object with an async
    ``translate(content, key, target_language, prompts)`` method, normally
    a :class:`~paperburner.translation.TranslationClient`. Pass
    *semaphore* to share admission control with other documents;
    otherwise a private one with *max_concurrency* permits is created.
    """

    def __init__(
        self,
        key_pools: KeyPoolManager,
        translator: Any,
        *,
        max_concurrency: int = 1,
        retry: RetryPolicy = CHUNK_RETRY,
        semaphore: Optional[FifoSemaphore] = None,
        progress: Optional[ProcessingLogger] = None,
        cancel_token: Optional[CancellationToken] = None,
        pool: str = TRANSLATION_POOL,
    ) -> None:
        self.key_pools = key_pools
        self.translator = translator
        self.max_concurrency = max(1, max_concurrency)
        self.retry = retry
        self.semaphore = semaphore or FifoSemaphore(self.max_concurrency)
        self.progress = progress or ProcessingLogger()
        self.cancel_token = cancel_token
        self.pool = pool

    async def translate_chunks(
        self,
        chunks: Sequence[str],
        file_name: str,
        target_language: str,
        prompts: Optional["TranslationPrompts"] = None,
        *,
        keys: Optional[Sequence[str]] = None,
        sequential: bool = False,
    ) -> list[str]:
        """Translate *chunks* and return them in their original order.

        Keys are drawn from the pool (up to ``max_concurrency``) unless
        *keys* is given, and assigned to chunks round-robin. Raises
        :class:`ChunkTranslationError` for the first chunk that could not
        be translated.
        """
        if not chunks:
            return []
        t0 = time.time()
        assigned = list(keys) if keys else self.key_pools.get_multiple_keys(
            self.pool, self.max_concurrency
        )
        if not assigned:
            raise CredentialExhaustedError(self.pool)

        total = len(chunks)
        tasks = [
            ChunkTask(
                file_name=file_name,
                chunk_index=i,
                total_chunks=total,
                text=text,
                key=assigned[i % len(assigned)],
                max_attempts=self.retry.max_attempts,
            )
            for i, text in enumerate(chunks)
        ]
        done = {"count": 0}
        log.info(
            "translate_chunks: %s -> %s chunks, %s keys, %s mode",
            file_name,
            total,
            len(assigned),
            "sequential" if sequential else "concurrent",
        )

        results: list[Any]
        if sequential:
            results = []
            for task in tasks:
                result = await self._run_chunk(task, target_language, prompts, done)
                results.append(result)
                if not result.success:
                    break
        else:
            results = await _gather_tolerant(
                [self._run_chunk(t, target_language, prompts, done) for t in tasks],
                self.cancel_token,
            )

        ordered: list[Optional[ChunkResult]] = [None] * total
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                result = ChunkResult(
                    success=False, chunk_index=task.chunk_index, error=str(result)
                )
            ordered[result.chunk_index] = result

        log.info(
            "translate_chunks: %s finished in %.2fs", file_name, time.time() - t0
        )
        for index, result in enumerate(ordered):
            if result is None or not result.success:
                reason = result.error if result is not None else "not attempted"
                raise ChunkTranslationError(file_name, index, reason or "unknown error")
        return [r.translated for r in ordered if r is not None]

    async def _run_chunk(
        self,
        task: ChunkTask,
        target_language: str,
        prompts: Optional["TranslationPrompts"],
        done: dict[str, int],
    ) -> ChunkResult:
        t0 = time.time()

        async def attempt(keys: dict[str, str], number: int) -> str:
            task.attempt = number
            task.key = keys[self.pool]
            self.progress.chunk_start(
                task.file_name, task.chunk_index, task.total_chunks, number
            )
            return await self.translator.translate(
                task.text, task.key, target_language, prompts
            )

        def on_retry(number: int, exc: BaseException, delay: float) -> None:
            self.progress.retry(
                task.file_name,
                f"part {task.chunk_index + 1}",
                number + 1,
                task.max_attempts,
                delay,
            )

        outcome = await run_with_key_rotation(
            attempt,
            key_pools=self.key_pools,
            pools=[self.pool],
            semaphore=self.semaphore,
            policy=self.retry,
            initial_keys={self.pool: task.key},
            cancel_token=self.cancel_token,
            label=f"{task.file_name} part {task.chunk_index + 1}",
            on_retry=on_retry,
        )
        duration = time.time() - t0
        result = ChunkResult(
            success=outcome.success,
            chunk_index=task.chunk_index,
            translated=outcome.value or "",
            error=None if outcome.success else str(outcome.error),
            key_used=task.key,
            attempts=outcome.attempts,
            duration_s=duration,
        )
        self.progress.chunk_complete(
            task.file_name, task.chunk_index, task.total_chunks, result.success, duration
        )
        if result.success:
            done["count"] += 1
            pct = TRANSLATION_PROGRESS_START + round(
                done["count"] / task.total_chunks * TRANSLATION_PROGRESS_SPAN
            )
            self.progress.progress(task.file_name, "translating", pct)
        return result


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class DocumentExecutor:
    """Runs the single-document pipeline over a batch of PDFs.

    Individual failures come back as ``success=False`` results. Only
    cancellation and a batch started without keys raise.
    """

    def __init__(
        self,
        key_pools: KeyPoolManager,
        pipeline: "DocumentPipeline",
        *,
        concurrency_level: int = 1,
        retry: RetryPolicy = DOCUMENT_RETRY,
        progress: Optional[ProcessingLogger] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self.key_pools = key_pools
        self.pipeline = pipeline
        self.concurrency_level = max(1, concurrency_level)
        self.retry = retry
        self.progress = progress or pipeline.progress
        self.cancel_token = cancel_token

    def effective_concurrency(self, file_count: int) -> int:
        """Configured level clamped to key supply (and file count)."""
        limits = [self.concurrency_level, self.key_pools.available_count(OCR_POOL)]
        if self.pipeline.translation_enabled:
            limits.append(self.key_pools.available_count(TRANSLATION_POOL))
        else:
            limits.append(file_count)
        return max(1, min(limits))

    async def process_documents(
        self, files: Sequence[Path | str], *, skip_processed: bool = False
    ) -> list[ProcessingResult]:
        paths = [Path(f) for f in files]
        if not paths:
            return []
        if self.key_pools.available_count(OCR_POOL) == 0:
            raise NoCredentialsError("no usable OCR API key configured")
        translating = self.pipeline.translation_enabled
        if translating and self.key_pools.available_count(TRANSLATION_POOL) == 0:
            raise NoCredentialsError(
                "translation requested but no usable translation API key configured"
            )

        t0 = time.time()
        concurrency = self.effective_concurrency(len(paths))
        semaphore = FifoSemaphore(concurrency)
        self.progress.batch_start(
            len(paths),
            concurrency,
            self.pipeline.settings.translation_concurrency_level,
            self.retry.max_attempts,
            skip_processed,
        )

        tasks = [
            DocumentTask(
                file_path=str(path),
                index=i,
                total=len(paths),
                max_attempts=self.retry.max_attempts,
            )
            for i, path in enumerate(paths)
        ]
        raw = await _gather_tolerant(
            [self._run_document(task, semaphore, translating) for task in tasks],
            self.cancel_token,
        )

        indexed: list[tuple[int, ProcessingResult]] = []
        for task, result in zip(tasks, raw):
            if isinstance(result, BaseException):
                log.error("Unexpected failure for %s: %s", task.file_path, result)
                result = ProcessingResult.failure(
                    strip_pdf_suffix(Path(task.file_path).name),
                    str(result) or result.__class__.__name__,
                    file_path=task.file_path,
                    attempts=task.attempt,
                )
            indexed.append((task.index, result))
        results = [r for _, r in sorted(indexed, key=lambda item: item[0])]

        succeeded = sum(1 for r in results if r.success)
        self.progress.batch_complete(succeeded, len(results) - succeeded, time.time() - t0)
        return results

    async def _run_document(
        self, task: DocumentTask, semaphore: FifoSemaphore, translating: bool
    ) -> ProcessingResult:
        path = Path(task.file_path)
        file_name = path.name
        session_ids: list[str] = []
        pools = [OCR_POOL, TRANSLATION_POOL] if translating else [OCR_POOL]
        self.progress.file_start(task.index + 1, task.total, file_name)

        async def attempt(keys: dict[str, str], number: int) -> ProcessingResult:
            task.attempt = number
            task.ocr_key = keys[OCR_POOL]
            task.translation_key = keys.get(TRANSLATION_POOL, "")
            try:
                return await self.pipeline.run(path, task.ocr_key, task.translation_key)
            except DocumentProcessingError as exc:
                session_ids.append(exc.session_id)
                raise

        def on_retry(number: int, exc: BaseException, delay: float) -> None:
            self.progress.retry(file_name, "document", number + 1, task.max_attempts, delay)

        outcome = await run_with_key_rotation(
            attempt,
            key_pools=self.key_pools,
            pools=pools,
            semaphore=semaphore,
            policy=self.retry,
            cancel_token=self.cancel_token,
            label=file_name,
            on_retry=on_retry,
        )
        task.tried_ocr_keys = outcome.tried.get(OCR_POOL, set())
        task.tried_translation_keys = outcome.tried.get(TRANSLATION_POOL, set())

        if outcome.success and outcome.value is not None:
            result = outcome.value
            result.attempts = outcome.attempts
        else:
            result = ProcessingResult.failure(
                strip_pdf_suffix(file_name),
                str(outcome.error),
                file_path=str(path),
                session_id=session_ids[-1] if session_ids else "",
                attempts=outcome.attempts,
            )
        self.progress.file_complete(file_name, result.success, result.error)
        return result
