"""PDF -> Markdown (Mistral OCR) -> translation engine.

Public API -- all symbols that tests and external code import live here.
Internally the code is split across focused submodules; this file
re-exports the stable public surface so ``from paperburner import X`` works.
"""

from .chunking import (
    TokenEstimator,
    estimate_tokens,
    smart_split,
    split_by_structural_units,
)
from .concurrency import (
    CHUNK_RETRY,
    DOCUMENT_RETRY,
    CancellationToken,
    FifoSemaphore,
    RetryPolicy,
    run_with_key_rotation,
)
from .config import Settings, load_api_keys, load_settings, parse_keys, save_settings
from .conversion import DocumentPipeline, process_ocr_results, process_single_pdf
from .errors import (
    AuthenticationError,
    ChunkTranslationError,
    CredentialExhaustedError,
    DocumentProcessingError,
    MalformedResponseError,
    NoCredentialsError,
    PaperBurnerError,
    ProcessingCancelledError,
    ProviderError,
)
from .executors import ChunkTranslationExecutor, DocumentExecutor
from .exporters import (
    EpubConversionResult,
    build_result_zip,
    convert_markdown_to_epub,
    save_result,
    write_results_zip,
)
from .keys import OCR_POOL, TRANSLATION_POOL, KeyPoolManager
from .models import (
    ChunkResult,
    ChunkTask,
    DocumentTask,
    FileStatus,
    ImageData,
    ProcessingResult,
    ProgressEvent,
)
from .ocr import MistralOcrClient
from .progress import ProcessingLogger
from .sources import DriveUploadResult, authenticate_drive, discover_pdfs, upload_to_drive
from .translation import (
    TranslationBackend,
    TranslationClient,
    TranslationPrompts,
    build_backend,
    get_final_translation_prompts,
    translate_file_name,
)
from .utils import SessionStore, generate_file_names, sanitize_file_name

__version__ = "0.1.0"

__all__ = [
    # Models
    "FileStatus",
    "ImageData",
    "ProcessingResult",
    "DocumentTask",
    "ChunkTask",
    "ChunkResult",
    "ProgressEvent",
    # Errors
    "PaperBurnerError",
    "ProviderError",
    "AuthenticationError",
    "MalformedResponseError",
    "CredentialExhaustedError",
    "NoCredentialsError",
    "ChunkTranslationError",
    "DocumentProcessingError",
    "ProcessingCancelledError",
    # Config
    "Settings",
    "load_settings",
    "save_settings",
    "parse_keys",
    "load_api_keys",
    # Utils
    "SessionStore",
    "sanitize_file_name",
    "generate_file_names",
    # Chunking
    "TokenEstimator",
    "estimate_tokens",
    "smart_split",
    "split_by_structural_units",
    # Keys and concurrency
    "OCR_POOL",
    "TRANSLATION_POOL",
    "KeyPoolManager",
    "FifoSemaphore",
    "CancellationToken",
    "RetryPolicy",
    "CHUNK_RETRY",
    "DOCUMENT_RETRY",
    "run_with_key_rotation",
    # Providers
    "MistralOcrClient",
    "TranslationBackend",
    "TranslationClient",
    "TranslationPrompts",
    "build_backend",
    "get_final_translation_prompts",
    "translate_file_name",
    # Conversion and executors
    "ProcessingLogger",
    "process_ocr_results",
    "DocumentPipeline",
    "process_single_pdf",
    "ChunkTranslationExecutor",
    "DocumentExecutor",
    # Exporters
    "EpubConversionResult",
    "save_result",
    "build_result_zip",
    "write_results_zip",
    "convert_markdown_to_epub",
    # Sources
    "DriveUploadResult",
    "discover_pdfs",
    "authenticate_drive",
    "upload_to_drive",
]
