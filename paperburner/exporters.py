"""Result persistence: Markdown and images on disk, ZIP archives, EPUB."""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
import shlex
import subprocess
import time
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .conversion import IMAGE_DIR
from .models import ImageData, ProcessingResult
from .utils import generate_file_names, sanitize_file_name

log = logging.getLogger(__name__)

ZIP_PREFIX = "PaperBurner"
PANDOC_TIMEOUT_S = 300


def _image_bytes(image: ImageData) -> Optional[bytes]:
    data = image.base64.split(",", 1)[1] if "," in image.base64 else image.base64
    try:
        return base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError) as exc:
        log.warning("Skipping undecodable image %s: %s", image.filename, exc)
        return None


def _document_files(
    result: ProcessingResult, translated_name: Optional[str]
) -> list[tuple[str, str, bytes]]:
    """(role, relative path, content) for everything a result exports."""
    translated = sanitize_file_name(translated_name) if translated_name else None
    names = generate_file_names(sanitize_file_name(result.file_name), translated)
    files: list[tuple[str, str, bytes]] = []
    if result.markdown:
        files.append(("markdown", names["markdown"], result.markdown.encode("utf-8")))
    if result.translation:
        translation_name = names["translation"]
        if translation_name == names["markdown"]:
            translation_name = f"{Path(translation_name).stem}_translation.md"
        files.append(("translation", translation_name, result.translation.encode("utf-8")))
    for image in result.images:
        data = _image_bytes(image)
        if data is not None:
            files.append(("images", f"{IMAGE_DIR}/{image.filename}", data))
    return files


# ---------------------------------------------------------------------------
# Folder output
# ---------------------------------------------------------------------------


def save_result(
    result: ProcessingResult,
    output_dir: Path,
    translated_name: Optional[str] = None,
) -> dict[str, Path]:
    """Write a successful result under ``output_dir/<name>/``.

    Returns the written paths keyed by ``markdown``, ``translation`` and
    ``images`` (whichever exist).
    """
    if not result.success:
        raise ValueError(f"cannot save failed result for {result.file_name}")
    folder = output_dir / sanitize_file_name(result.file_name)
    folder.mkdir(parents=True, exist_ok=True)

    written: dict[str, Path] = {}
    for role, rel, data in _document_files(result, translated_name):
        path = folder / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        written[role] = path.parent if role == "images" else path
    log.info("Saved %s to %s (%s files)", result.file_name, folder, len(written))
    return written


# ---------------------------------------------------------------------------
# ZIP
# ---------------------------------------------------------------------------


def zip_file_name(name: str, when: Optional[datetime] = None) -> str:
    stamp = re.sub(r"[:.]", "-", (when or datetime.now()).isoformat())
    return f"{ZIP_PREFIX}_{sanitize_file_name(name)}_{stamp}.zip"


def build_result_zip(result: ProcessingResult, translated_name: Optional[str] = None) -> bytes:
    """ZIP one result as ``<name>/...`` with an ``images/`` subfolder."""
    folder = sanitize_file_name(result.file_name)
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
        for _, rel, data in _document_files(result, translated_name):
            zf.writestr(f"{folder}/{rel}", data)
    return buffer.getvalue()


def write_results_zip(
    results: list[ProcessingResult],
    path: Path,
    translated_names: Optional[dict[str, str]] = None,
) -> Path:
    """Bundle every successful result into one archive at *path*."""
    translated_names = translated_names or {}
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
        for result in results:
            if not result.success:
                continue
            folder = sanitize_file_name(result.file_name)
            files = _document_files(result, translated_names.get(result.file_name))
            for _, rel, data in files:
                zf.writestr(f"{folder}/{rel}", data)
            count += 1
    log.info("ZIP written: %s (%s documents)", path, count)
    return path


# ---------------------------------------------------------------------------
# EPUB
# ---------------------------------------------------------------------------


@dataclass
class EpubConversionResult:
    success: bool
    epub_path: Optional[Path] = None
    error: Optional[str] = None
    duration_s: float = 0.0


def convert_markdown_to_epub(
    markdown_path: Path,
    output_path: Optional[Path] = None,
    *,
    pandoc_path: str = "pandoc",
    pandoc_args: str = "-f markdown -s -t epub",
    title: Optional[str] = None,
    author: Optional[str] = None,
) -> EpubConversionResult:
    """Run pandoc on *markdown_path*; errors are returned, not raised."""
    output_path = output_path or markdown_path.with_suffix(".epub")
    command = [pandoc_path, str(markdown_path), "-o", str(output_path)]
    command.extend(shlex.split(pandoc_args.replace("${outputPath}", str(output_path))))
    if title:
        command.extend(["--metadata", f"title={title}"])
    if author:
        command.extend(["--metadata", f"author={author}"])

    t0 = time.time()
    log.debug("convert_markdown_to_epub: %s", " ".join(command))
    try:
        subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
            timeout=PANDOC_TIMEOUT_S,
            cwd=str(markdown_path.parent),
        )
    except subprocess.CalledProcessError as exc:
        error = (exc.stderr or exc.stdout or str(exc)).strip()
        log.error("pandoc failed for %s: %s", markdown_path.name, error)
        return EpubConversionResult(False, error=error, duration_s=time.time() - t0)
    except (subprocess.SubprocessError, OSError) as exc:
        log.error("pandoc could not run for %s: %s", markdown_path.name, exc)
        return EpubConversionResult(False, error=str(exc), duration_s=time.time() - t0)

    log.info("EPUB written: %s", output_path)
    return EpubConversionResult(True, epub_path=output_path, duration_s=time.time() - t0)


def pandoc_version(pandoc_path: str = "pandoc") -> Optional[str]:
    """Return the installed pandoc version, or None if it cannot run."""
    try:
        completed = subprocess.run(
            [pandoc_path, "--version"],
            check=True,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (subprocess.SubprocessError, OSError):
        return None
    match = re.search(r"pandoc\S*\s+([\d.]+)", completed.stdout)
    return match.group(1) if match else None
