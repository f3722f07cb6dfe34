"""Single-PDF pipeline: OCR upload, parsing, translation and cleanup."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Any, Optional

from .chunking import smart_split
from .concurrency import CancellationToken, FifoSemaphore
from .config import Settings
from .errors import DocumentProcessingError, ProcessingCancelledError
from .executors import ChunkTranslationExecutor
from .keys import TRANSLATION_POOL, KeyPoolManager
from .models import FileStatus, ImageData, ProcessedOcr, ProcessingResult
from .ocr import MistralOcrClient
from .progress import ProcessingLogger
from .translation import TranslationPrompts, get_final_translation_prompts
from .utils import SessionStore, strip_pdf_suffix

log = logging.getLogger(__name__)

IMAGE_DIR = "images"


def process_ocr_results(payload: dict[str, Any]) -> ProcessedOcr:
    """Join OCR pages into one Markdown document and collect images.

    Image references ``![alt](<id>)`` are rewritten to
    ``![alt](images/<id>.png)``; an empty alt text becomes the image id.
    """
    pages = payload.get("pages") or []
    parts: list[str] = []
    images: list[ImageData] = []

    for page in pages:
        if not isinstance(page, dict):
            continue
        page_markdown = page.get("markdown") or ""
        for img in page.get("images") or []:
            img_id = img.get("id") if isinstance(img, dict) else None
            data = img.get("image_base64") if isinstance(img, dict) else None
            if not img_id or not data:
                log.warning("process_ocr_results: skipping image without id or data")
                continue
            images.append(ImageData(filename=f"{img_id}.png", base64=data))
            target = f"{IMAGE_DIR}/{img_id}.png"
            pattern = re.compile(r"!\[([^\]]*?)\]\(" + re.escape(img_id) + r"\)")
            page_markdown = pattern.sub(
                lambda m, _id=img_id, _target=target: f"![{m.group(1) or _id}]({_target})",
                page_markdown,
            )
        parts.append(page_markdown)

    markdown = "".join(f"{part}\n\n" for part in parts).strip()
    return ProcessedOcr(markdown=markdown, images=images, num_pages=len(pages))


class DocumentPipeline:
    """Processes one PDF at a time with keys chosen by the caller.

    ``run`` raises :class:`DocumentProcessingError` (chained to the
    cause) after cleaning up the remote file; :func:`process_single_pdf`
    wraps it into a never-raising call.
    """

    def __init__(
        self,
        ocr_client: MistralOcrClient,
        key_pools: KeyPoolManager,
        settings: Settings,
        *,
        translator: Any = None,
        store: Optional[SessionStore] = None,
        progress: Optional[ProcessingLogger] = None,
        cancel_token: Optional[CancellationToken] = None,
        translation_semaphore: Optional[FifoSemaphore] = None,
    ) -> None:
        self.ocr = ocr_client
        self.key_pools = key_pools
        self.settings = settings
        self.translator = translator
        self.store = store or SessionStore()
        self.progress = progress or ProcessingLogger()
        self.cancel_token = cancel_token
        self.translation_semaphore = translation_semaphore or FifoSemaphore(
            max(1, settings.translation_concurrency_level)
        )
        self.prompts: TranslationPrompts = get_final_translation_prompts(
            settings.target_language,
            settings.custom_target_language,
            settings.use_custom_prompts,
            settings.default_system_prompt,
            settings.default_user_prompt_template,
        )

    @property
    def translation_enabled(self) -> bool:
        return self.translator is not None and self.settings.translation_enabled

    @property
    def target_language_name(self) -> str:
        if self.settings.target_language == "custom":
            return self.settings.custom_target_language.strip() or "English"
        return self.settings.target_language

    async def _sleep(self, delay: float) -> None:
        if self.cancel_token is not None:
            await self.cancel_token.sleep(delay)
        elif delay > 0:
            await asyncio.sleep(delay)

    def _check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    async def run(self, path: Path, ocr_key: str, translation_key: str = "") -> ProcessingResult:
        file_name = path.name
        progress = self.progress
        session_id = self.store.create_session(file_name, str(path))
        self.store.update_record(session_id, status=FileStatus.PROCESSING, progress=0)
        file_id: Optional[str] = None
        t0 = time.time()

        try:
            self._check_cancelled()
            progress.status_change(file_name, "pending", "processing", 0)
            progress.key_usage(file_name, "OCR", ocr_key)
            self.store.record_checkpoint(session_id, "upload", file_path=str(path))

            progress.status_change(file_name, "processing", "uploading", 10)
            t1 = time.time()
            file_id = await self.ocr.upload(path, ocr_key)
            progress.file_step(file_name, f"Uploaded, file id {file_id}")
            progress.performance(file_name, "Upload", time.time() - t1)
            progress.status_change(file_name, "uploading", "uploaded", 20)

            await self._sleep(self.settings.upload_settle_delay_s)

            progress.status_change(file_name, "uploaded", "preparing OCR", 25)
            signed_url = await self.ocr.get_signed_url(file_id, ocr_key)

            progress.status_change(file_name, "preparing OCR", "OCR", 30)
            t1 = time.time()
            payload = await self.ocr.run_ocr(signed_url, ocr_key)
            progress.performance(file_name, "OCR", time.time() - t1)
            progress.status_change(file_name, "OCR", "OCR done", 50)

            processed = process_ocr_results(payload)
            progress.ocr_stats(
                file_name, processed.num_pages, len(processed.images), len(processed.markdown)
            )
            progress.status_change(file_name, "OCR done", "markdown ready", 60)
            self.store.record_checkpoint(
                session_id,
                "ocr",
                file_id=file_id,
                chars=len(processed.markdown),
                images=len(processed.images),
            )

            translation: Optional[str] = None
            if self.translation_enabled and processed.markdown and translation_key:
                self.store.update_record(session_id, status=FileStatus.TRANSLATING, progress=65)
                progress.status_change(file_name, "markdown ready", "preparing translation", 65)
                progress.key_usage(file_name, "translation", translation_key)
                translation = await self._translate(file_name, processed.markdown, translation_key)
                self.store.record_checkpoint(session_id, "translation", chars=len(translation))
                progress.status_change(file_name, "translating", "translated", 95)
            else:
                progress.file_step(
                    file_name,
                    f"Translation skipped (model={self.settings.translation_model}, "
                    f"content={'yes' if processed.markdown else 'no'}, "
                    f"key={'yes' if translation_key else 'no'})",
                )
                progress.status_change(file_name, "markdown ready", "translation skipped", 95)
        except (asyncio.CancelledError, ProcessingCancelledError):
            await self._cleanup(file_name, file_id, ocr_key)
            self.store.update_record(session_id, status=FileStatus.FAILED, error="cancelled")
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            progress.error(file_name, message)
            progress.status_change(file_name, "processing", "failed", 0)
            await self._cleanup(file_name, file_id, ocr_key)
            self.store.update_record(
                session_id, status=FileStatus.FAILED, progress=0, error=message
            )
            raise DocumentProcessingError(file_name, message, session_id) from exc

        await self._cleanup(file_name, file_id, ocr_key)
        result = ProcessingResult(
            success=True,
            file_name=strip_pdf_suffix(file_name),
            markdown=processed.markdown,
            translation=translation or None,
            images=processed.images,
            file_path=str(path),
            session_id=session_id,
            elapsed_s=round(time.time() - t0, 2),
        )
        self.store.record_checkpoint(session_id, "complete")
        self.store.update_record(
            session_id,
            status=FileStatus.COMPLETED,
            progress=100,
            result=result.to_dict(),
        )
        previous = "translated" if translation else "translation skipped"
        progress.status_change(file_name, previous, "complete", 100)
        return result

    async def _translate(self, file_name: str, markdown: str, translation_key: str) -> str:
        settings = self.settings
        estimator = settings.estimator()
        limit = settings.max_tokens_per_chunk
        tokens = estimator.estimate(markdown)
        chunks = smart_split(markdown, limit, f"[{file_name}]", estimator=estimator)
        progress = self.progress
        progress.segmentation(file_name, tokens, limit, len(chunks))
        progress.status_change(file_name, "preparing translation", "translating", 70)

        available = self.key_pools.available_count(TRANSLATION_POOL)
        level = settings.translation_concurrency_level
        t0 = time.time()
        if len(chunks) > 1 and available > 1 and level > 1:
            progress.file_step(
                file_name,
                f"Concurrent translation with {min(level, available)} slots ({available} keys)",
            )
            executor = ChunkTranslationExecutor(
                self.key_pools,
                self.translator,
                max_concurrency=min(level, available),
                retry=settings.chunk_retry(),
                progress=progress,
                cancel_token=self.cancel_token,
            )
            translated = await executor.translate_chunks(
                chunks, file_name, self.target_language_name, self.prompts
            )
        else:
            progress.file_step(
                file_name,
                f"Sequential translation ({len(chunks)} parts, {available} keys)",
            )
            executor = ChunkTranslationExecutor(
                self.key_pools,
                self.translator,
                retry=settings.chunk_retry(),
                semaphore=self.translation_semaphore,
                progress=progress,
                cancel_token=self.cancel_token,
            )
            translated = await executor.translate_chunks(
                chunks,
                file_name,
                self.target_language_name,
                self.prompts,
                keys=[translation_key],
                sequential=True,
            )

        text = "\n\n".join(chunk for chunk in translated if chunk and chunk.strip())
        progress.performance(file_name, "Translation", time.time() - t0)
        progress.file_step(
            file_name, f"Translated {len(markdown)} chars -> {len(text)} chars"
        )
        return text

    async def _cleanup(self, file_name: str, file_id: Optional[str], key: str) -> None:
        if not file_id:
            return
        deleted = await self.ocr.delete_file(file_id, key)
        self.progress.cleanup(file_name, "remote file", deleted)
        if not deleted:
            self.progress.warning(file_name, f"remote file {file_id} could not be deleted")


async def process_single_pdf(
    pipeline: DocumentPipeline,
    path: Path,
    ocr_key: str,
    translation_key: str = "",
) -> ProcessingResult:
    """Run *pipeline* once for *path*.

    Never raises for processing errors; they are captured inside the
    returned result. Cancellation still propagates.
    """
    t0 = time.time()
    log.info("process_single_pdf: START - %s", path.name)
    try:
        result = await pipeline.run(path, ocr_key, translation_key)
    except DocumentProcessingError as exc:
        result = ProcessingResult.failure(
            strip_pdf_suffix(path.name),
            str(exc),
            file_path=str(path),
            session_id=exc.session_id,
        )
    pipeline.progress.file_complete(path.name, result.success, result.error)
    log.info(
        "process_single_pdf: DONE - %s (%s) in %.2fs",
        path.name,
        "success" if result.success else "failed",
        time.time() - t0,
    )
    return result
