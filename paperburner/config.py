"""Run settings and API key loading."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Iterable, Optional

from dotenv import load_dotenv

from .chunking import TokenEstimator
from .concurrency import RetryPolicy

log = logging.getLogger(__name__)

SETTINGS_FILE_NAME = "paperburner_settings.json"
OCR_KEYS_ENV = "MISTRAL_API_KEYS"
TRANSLATION_KEYS_ENV = "TRANSLATION_API_KEYS"

_KEY_SPLIT_RE = re.compile(r"[\s,;]+")


@dataclass
class Settings:
    """User-tunable settings; defaults match a fresh install."""

    max_tokens_per_chunk: int = 9000
    skip_processed_files: bool = False
    concurrency_level: int = 1
    translation_concurrency_level: int = 2

    translation_model: str = "none"
    target_language: str = "chinese"
    custom_target_language: str = ""

    use_custom_prompts: bool = False
    default_system_prompt: str = ""
    default_user_prompt_template: str = ""

    custom_api_endpoint: str = ""
    custom_model_id: str = ""
    custom_request_format: str = "openai"
    custom_temperature: float = 0.5
    custom_max_tokens: int = 8000

    save_location: str = "output"
    auto_save_completed: bool = True
    enable_processing_record: bool = True

    enable_google_drive: bool = False
    google_drive_folder_id: str = ""
    google_drive_auto_upload: bool = False

    enable_recognition_to_epub: bool = False
    enable_translation_to_epub: bool = False
    pandoc_path: str = "pandoc"
    pandoc_args: str = "-f markdown -s -t epub"

    max_attempts: int = 3
    chunk_backoff_s: float = 1.0
    document_backoff_s: float = 2.0
    upload_settle_delay_s: float = 1.0
    request_timeout_s: float = 300.0

    cjk_threshold: float = 0.3
    cjk_tokens_per_char: float = 1.1
    latin_chars_per_token: float = 3.5

    @property
    def translation_enabled(self) -> bool:
        return bool(self.translation_model) and self.translation_model != "none"

    def estimator(self) -> TokenEstimator:
        return TokenEstimator(
            cjk_threshold=self.cjk_threshold,
            cjk_tokens_per_char=self.cjk_tokens_per_char,
            latin_chars_per_token=self.latin_chars_per_token,
        )

    def chunk_retry(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, backoff_base=self.chunk_backoff_s)

    def document_retry(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, backoff_base=self.document_backoff_s)

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Copy with every non-None override applied."""
        data = asdict(self)
        data.update({k: v for k, v in overrides.items() if v is not None})
        return Settings(**data)


def _known_fields() -> set[str]:
    return {f.name for f in fields(Settings)}


def load_settings(path: Optional[Path]) -> Settings:
    """Merge a JSON settings file over the defaults.

    Missing, unreadable or invalid files yield the defaults; unknown keys
    are ignored.
    """
    settings = Settings()
    if path is None or not path.exists():
        return settings
    try:
        with open(path, "r", encoding="utf-8") as fh:
            stored = json.load(fh)
    except (json.JSONDecodeError, OSError, ValueError) as exc:
        log.warning("Could not read settings from %s: %s", path, exc)
        return settings
    if not isinstance(stored, dict):
        log.warning("Ignoring settings file %s: not a JSON object", path)
        return settings

    known = _known_fields()
    unknown = sorted(set(stored) - known)
    if unknown:
        log.debug("Ignoring unknown settings keys: %s", ", ".join(unknown))
    return settings.with_overrides(**{k: v for k, v in stored.items() if k in known})


def save_settings(path: Path, settings: Settings) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(asdict(settings), fh, indent=2, ensure_ascii=False)
    return path


def parse_keys(raw: Optional[str | Iterable[str]]) -> list[str]:
    """Split newline/comma separated keys, dropping blanks and duplicates."""
    if raw is None:
        return []
    if isinstance(raw, str):
        parts = _KEY_SPLIT_RE.split(raw)
    else:
        parts = [p for item in raw for p in _KEY_SPLIT_RE.split(item)]
    return list(dict.fromkeys(p.strip() for p in parts if p.strip()))


def load_api_keys(
    env_file: Optional[Path] = None,
    *,
    ocr_keys: Optional[Iterable[str]] = None,
    translation_keys: Optional[Iterable[str]] = None,
) -> tuple[list[str], list[str]]:
    """Return (ocr_keys, translation_keys).

    Explicit keys win; otherwise they come from ``MISTRAL_API_KEYS`` and
    ``TRANSLATION_API_KEYS`` after loading *env_file* (or ``.env``).
    """
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()
    ocr = parse_keys(list(ocr_keys)) if ocr_keys else parse_keys(os.environ.get(OCR_KEYS_ENV))
    translation = (
        parse_keys(list(translation_keys))
        if translation_keys
        else parse_keys(os.environ.get(TRANSLATION_KEYS_ENV))
    )
    log.debug("Loaded %s OCR keys and %s translation keys", len(ocr), len(translation))
    return ocr, translation
