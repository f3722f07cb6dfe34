"""CLI entrypoint for the PDF -> Markdown (OCR) -> translation engine.

Usage:
    python -m paperburner ./papers
    python -m paperburner paper.pdf --translation-model deepseek --target-language japanese
    python -m paperburner ./papers --concurrency 3 --translation-concurrency 4 --zip
    python -m paperburner ./papers --skip-processed --epub --upload-drive
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from logging.handlers import RotatingFileHandler
import sys
import time
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from .concurrency import CancellationToken
from .config import Settings, load_api_keys, load_settings
from .conversion import DocumentPipeline
from .errors import NoCredentialsError, ProcessingCancelledError
from .executors import DocumentExecutor
from .keys import OCR_POOL, TRANSLATION_POOL, KeyPoolManager
from .models import FileStatus, ProcessingResult, ProgressEvent
from .ocr import MistralOcrClient
from .progress import ProcessingLogger
from .translation import TRANSLATION_MODELS, TranslationClient, build_backend, translate_file_name
from .utils import SessionStore, generate_file_names, sanitize_file_name

log = logging.getLogger(__name__)


def _setup_logging(
    *,
    verbose: bool,
    detailed_logging: bool,
    output_dir: Path,
    log_file: Path | None,
) -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    root_level = logging.DEBUG if verbose else logging.INFO
    root_logger.setLevel(root_level)

    console_fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    detailed_fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "%(threadName)s | %(filename)s:%(lineno)d | %(message)s"
    )
    formatter = logging.Formatter(
        detailed_fmt if detailed_logging else console_fmt,
        "%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    resolved_log_file = log_file
    if resolved_log_file is None and detailed_logging:
        resolved_log_file = output_dir / "paperburner.log"

    if resolved_log_file is not None:
        resolved_log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            resolved_log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(detailed_fmt, "%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="PDF -> Markdown (Mistral OCR) -> translation engine"
    )
    parser.add_argument(
        "inputs",
        nargs="+",
        type=Path,
        help="PDF files or directories (searched recursively)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Output directory (default: save_location setting, output/)",
    )
    parser.add_argument(
        "--settings",
        type=Path,
        default=None,
        help="JSON settings file merged over the defaults",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="dotenv file with MISTRAL_API_KEYS / TRANSLATION_API_KEYS (default: .env)",
    )
    parser.add_argument(
        "--ocr-keys",
        default=None,
        help="Mistral API keys, comma separated (overrides the environment)",
    )
    parser.add_argument(
        "--translation-keys",
        default=None,
        help="Translation API keys, comma separated (overrides the environment)",
    )
    parser.add_argument(
        "--translation-model",
        choices=TRANSLATION_MODELS,
        default=None,
        help="Translation backend, or 'none' for OCR only",
    )
    parser.add_argument(
        "--target-language",
        default=None,
        help="Target language (chinese, japanese, korean, french, english, custom)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Documents processed at once (clamped to available keys)",
    )
    parser.add_argument(
        "--translation-concurrency",
        type=int,
        default=None,
        help="Chunk translations in flight per document",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=None,
        help="Estimated token limit per translation chunk",
    )
    resume = parser.add_mutually_exclusive_group()
    resume.add_argument(
        "--skip-processed",
        dest="skip_processed",
        action="store_true",
        default=None,
        help="Skip PDFs that are unchanged since their last successful run",
    )
    resume.add_argument(
        "--force-reprocess",
        dest="skip_processed",
        action="store_false",
        help="Process every PDF even if unchanged in saved state",
    )
    parser.add_argument(
        "--zip",
        action="store_true",
        help="Also bundle all successful results into one ZIP archive",
    )
    parser.add_argument(
        "--epub",
        action="store_true",
        help="Convert saved Markdown to EPUB with pandoc",
    )
    parser.add_argument(
        "--upload-drive",
        action="store_true",
        help="Upload saved outputs to Google Drive",
    )
    parser.add_argument(
        "--credentials",
        type=Path,
        default=Path("credentials.json"),
        help="Google OAuth2 credentials file (default: credentials.json)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--detailed-logging",
        action="store_true",
        help="Enable detailed logging (thread, file/line, rotating log file)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help=(
            "Optional log file path "
            "(default: <output-dir>/paperburner.log in detailed mode)"
        ),
    )
    return parser.parse_args(argv)


def _build_settings(args: argparse.Namespace) -> Settings:
    settings = load_settings(args.settings)
    overrides: dict[str, Any] = {
        "translation_model": args.translation_model,
        "target_language": args.target_language,
        "concurrency_level": args.concurrency,
        "translation_concurrency_level": args.translation_concurrency,
        "max_tokens_per_chunk": args.max_tokens,
        "skip_processed_files": args.skip_processed,
    }
    if args.output_dir is not None:
        overrides["save_location"] = str(args.output_dir)
    if args.epub:
        overrides["enable_recognition_to_epub"] = True
        overrides["enable_translation_to_epub"] = True
    if args.upload_drive:
        overrides["enable_google_drive"] = True
        overrides["google_drive_auto_upload"] = True
    return settings.with_overrides(**overrides)


async def run_batch(
    pdf_files: Sequence[Path],
    settings: Settings,
    key_pools: KeyPoolManager,
    *,
    store: Optional[SessionStore] = None,
    on_event: Optional[Callable[[ProgressEvent], None]] = None,
    ocr_client: Optional[MistralOcrClient] = None,
    translator: Any = None,
    cancel_token: Optional[CancellationToken] = None,
) -> tuple[list[ProcessingResult], dict[str, str]]:
    """Process *pdf_files* and translate the names of successful results.

    Returns the results in input order and a ``file_name -> translated
    name`` map for exports. Clients not passed in are created from
    *settings* and closed before returning.
    """
    owned: list[Any] = []
    if ocr_client is None:
        ocr_client = MistralOcrClient(timeout_s=settings.request_timeout_s)
        owned.append(ocr_client)
    if translator is None and settings.translation_enabled:
        translator = TranslationClient(
            build_backend(settings.translation_model, settings),
            timeout_s=settings.request_timeout_s,
        )
        owned.append(translator)

    progress = ProcessingLogger(on_event=on_event)
    pipeline = DocumentPipeline(
        ocr_client,
        key_pools,
        settings,
        translator=translator,
        store=store,
        progress=progress,
        cancel_token=cancel_token,
    )
    executor = DocumentExecutor(
        key_pools,
        pipeline,
        concurrency_level=settings.concurrency_level,
        retry=settings.document_retry(),
        progress=progress,
        cancel_token=cancel_token,
    )

    translated_names: dict[str, str] = {}
    try:
        results = await executor.process_documents(
            list(pdf_files), skip_processed=settings.skip_processed_files
        )
        if pipeline.translation_enabled:
            for result in results:
                if not result.success or not result.translation:
                    continue
                key = key_pools.get_next_key(TRANSLATION_POOL)
                if key is None:
                    break
                named = await translate_file_name(
                    translator, result.file_name, key, pipeline.target_language_name
                )
                if named.success and named.translated_name != result.file_name:
                    translated_names[result.file_name] = named.translated_name
    finally:
        for client in owned:
            await client.aclose()
    return results, translated_names


def _already_processed(store: SessionStore, path: Path, output_dir: Path) -> bool:
    stem = sanitize_file_name(path.stem)
    md_file = output_dir / stem / generate_file_names(stem)["markdown"]
    return md_file.exists() and store.is_processed(path)


def main(argv: list[str] | None = None) -> None:
    """Run the full pipeline."""
    from tqdm import tqdm

    from .exporters import (
        convert_markdown_to_epub,
        save_result,
        write_results_zip,
        zip_file_name,
    )
    from .sources import build_drive_service, discover_pdfs, upload_to_drive

    args = parse_args(argv)
    settings = _build_settings(args)
    output_dir = Path(settings.save_location)
    _setup_logging(
        verbose=args.verbose,
        detailed_logging=args.detailed_logging,
        output_dir=output_dir,
        log_file=args.log_file,
    )

    overall_t0 = time.perf_counter()
    log.info(
        "Settings: model=%s target=%s concurrency=%s translation_concurrency=%s "
        "max_tokens=%s attempts=%s",
        settings.translation_model,
        settings.target_language,
        settings.concurrency_level,
        settings.translation_concurrency_level,
        settings.max_tokens_per_chunk,
        settings.max_attempts,
    )

    # --- Step 1: Keys and inputs ---
    ocr_keys, translation_keys = load_api_keys(
        args.env_file,
        ocr_keys=[args.ocr_keys] if args.ocr_keys else None,
        translation_keys=[args.translation_keys] if args.translation_keys else None,
    )
    key_pools = KeyPoolManager()
    key_pools.set_keys(OCR_POOL, ocr_keys)
    key_pools.set_keys(TRANSLATION_POOL, translation_keys)
    log.info(
        "API keys: %s OCR, %s translation", len(ocr_keys), len(translation_keys)
    )

    pdf_files = discover_pdfs(args.inputs)
    log.info("Total PDFs discovered: %s", len(pdf_files))
    if not pdf_files:
        log.warning("No PDFs found. Exiting.")
        sys.exit(0)

    output_dir.mkdir(parents=True, exist_ok=True)
    store = (
        SessionStore.in_dir(output_dir)
        if settings.enable_processing_record
        else SessionStore()
    )

    # --- Resume check: skip unchanged PDFs ---
    to_process: list[Path] = []
    skipped_unchanged = 0
    for pdf_path in pdf_files:
        if settings.skip_processed_files and _already_processed(store, pdf_path, output_dir):
            skipped_unchanged += 1
            continue
        to_process.append(pdf_path)
    log.info(
        "Resume check: %s unchanged skipped, %s queued for processing",
        skipped_unchanged,
        len(to_process),
    )

    # --- Step 2: OCR and translation ---
    step2_t0 = time.perf_counter()
    results: list[ProcessingResult] = []
    translated_names: dict[str, str] = {}
    if to_process:
        bar = tqdm(total=len(to_process), desc="Processing PDFs", unit="pdf")

        def on_event(event: ProgressEvent) -> None:
            if event.kind == "file_complete":
                bar.update(1)

        try:
            results, translated_names = asyncio.run(
                run_batch(to_process, settings, key_pools, store=store, on_event=on_event)
            )
        except NoCredentialsError as exc:
            log.error("%s", exc)
            log.error("Set MISTRAL_API_KEYS (and TRANSLATION_API_KEYS) in the environment or .env")
            sys.exit(1)
        except (KeyboardInterrupt, ProcessingCancelledError):
            log.warning("Processing cancelled")
            sys.exit(130)
        finally:
            bar.close()
    else:
        log.info("No new/changed PDFs detected; processing stage skipped.")
    step2_elapsed = time.perf_counter() - step2_t0

    success = [r for r in results if r.success]
    failed = [r for r in results if not r.success]
    log.info(
        "Processing: %s succeeded, %s failed (%.2fs)",
        len(success),
        len(failed),
        step2_elapsed,
    )

    # --- Step 3: Save outputs ---
    step3_t0 = time.perf_counter()
    saved: list[Path] = []
    epub_count = 0
    for result in success:
        if not settings.auto_save_completed:
            break
        translated = translated_names.get(result.file_name)
        try:
            written = save_result(result, output_dir, translated)
        except OSError as exc:
            log.error("Could not save %s: %s", result.file_name, exc)
            continue
        for role in ("markdown", "translation"):
            if role in written:
                saved.append(written[role])

        epub_jobs = []
        if settings.enable_recognition_to_epub and "markdown" in written:
            epub_jobs.append((written["markdown"], result.file_name))
        if settings.enable_translation_to_epub and "translation" in written:
            epub_jobs.append((written["translation"], translated or result.file_name))
        for md_path, title in epub_jobs:
            epub = convert_markdown_to_epub(
                md_path,
                pandoc_path=settings.pandoc_path,
                pandoc_args=settings.pandoc_args,
                title=title,
            )
            if epub.success and epub.epub_path is not None:
                saved.append(epub.epub_path)
                epub_count += 1

    for result in results:
        if result.file_path:
            status = FileStatus.COMPLETED if result.success else FileStatus.FAILED
            store.remember_file(Path(result.file_path), status.value, result.error)

    zip_path: Optional[Path] = None
    if args.zip and success:
        name = success[0].file_name if len(success) == 1 else "batch"
        try:
            zip_path = write_results_zip(
                success, output_dir / zip_file_name(name), translated_names
            )
            saved.append(zip_path)
        except OSError as exc:
            log.error("Could not write ZIP: %s", exc)
    log.info("Save stage completed in %.2fs", time.perf_counter() - step3_t0)

    # --- Step 4: Google Drive ---
    uploaded = 0
    if settings.enable_google_drive and settings.google_drive_auto_upload and saved:
        step4_t0 = time.perf_counter()
        log.info("Authenticating with Google Drive...")
        service = build_drive_service(args.credentials, args.credentials.parent / "token.json")
        for path in tqdm(saved, desc="Uploading"):
            upload = upload_to_drive(service, path, settings.google_drive_folder_id or None)
            uploaded += int(upload.success)
        log.info("Drive stage completed in %.2fs", time.perf_counter() - step4_t0)

    # --- Summary ---
    log.info("=" * 60)
    log.info("PAPERBURNER COMPLETE")
    log.info("  PDFs discovered: %s", len(pdf_files))
    log.info("  Processed now:   %s", len(results))
    log.info("  Skipped cached:  %s", skipped_unchanged)
    log.info("  Succeeded:       %s", len(success))
    log.info("  Failed:          %s", len(failed))
    log.info("  Translated:      %s", sum(1 for r in success if r.translation))
    log.info("  EPUBs:           %s", epub_count)
    log.info("  Output dir:      %s", output_dir)
    if zip_path is not None:
        log.info("  ZIP:             %s", zip_path)
    if uploaded:
        log.info("  Drive uploads:   %s", uploaded)
    if store.path is not None:
        log.info("  State:           %s", store.path)
    log.info("  Total runtime:   %.1fs", time.perf_counter() - overall_t0)
    if failed:
        log.warning("Failed files:")
        for r in failed:
            log.warning("  - %s: %s", r.file_name, (r.error or "unknown")[:200])
