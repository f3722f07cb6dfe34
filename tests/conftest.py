"""Shared fixtures for the paperburner test suite.

Providers are replaced by in-memory fakes; nothing touches the network.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import random
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from paperburner.config import Settings
from paperburner.errors import AuthenticationError, MalformedResponseError, ProviderError
from paperburner.keys import OCR_POOL, TRANSLATION_POOL, KeyPoolManager
from paperburner.utils import SessionStore

# ---------------------------------------------------------------------------
# Configure verbose logging for test debugging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)
log = logging.getLogger("conftest")

PNG_BASE64 = base64.b64encode(b"\x89PNG\r\n\x1a\nfake-image").decode("ascii")


def default_pages(name: str) -> list[dict[str, Any]]:
    """Three OCR pages, one of them carrying an image."""
    return [
        {"index": 0, "markdown": f"# {name}\n\nFirst page of {name}.", "images": []},
        {
            "index": 1,
            "markdown": "Second page.\n\n![img-0.jpeg](img-0.jpeg)",
            "images": [{"id": "img-0.jpeg", "image_base64": PNG_BASE64}],
        },
        {"index": 2, "markdown": "Third page.", "images": []},
    ]


class FakeOcrClient:
    """In-memory stand-in for :class:`paperburner.ocr.MistralOcrClient`.

    Keys in *auth_fail_keys* get a 401 on upload; keys in
    *soft_fail_keys* get a 500. Files named in *broken_files* fail OCR with a
    malformed response; *delays* slows OCR per file name.
    """

    def __init__(
        self,
        *,
        auth_fail_keys: tuple[str, ...] = (),
        soft_fail_keys: tuple[str, ...] = (),
        pages_for: Callable[[str], list[dict[str, Any]]] = default_pages,
        broken_files: tuple[str, ...] = (),
        delays: Optional[dict[str, float]] = None,
    ) -> None:
        self.auth_fail_keys = set(auth_fail_keys)
        self.soft_fail_keys = set(soft_fail_keys)
        self.pages_for = pages_for
        self.broken_files = set(broken_files)
        self.delays = delays or {}
        self.uploads: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._names: dict[str, str] = {}
        self.closed = False

    async def upload(self, path: Path, key: str) -> str:
        self.uploads.append((path.name, key))
        if key in self.auth_fail_keys:
            raise AuthenticationError("upload failed: Unauthorized", status=401, key=key)
        if key in self.soft_fail_keys:
            raise ProviderError("upload failed: Internal Server Error", status=500, key=key)
        file_id = f"file-{len(self.uploads)}"
        self._names[file_id] = Path(path).stem
        return file_id

    async def get_signed_url(self, file_id: str, key: str) -> str:
        return f"https://signed.example/{file_id}"

    async def run_ocr(self, document_url: str, key: str) -> dict[str, Any]:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            file_id = document_url.rsplit("/", 1)[-1]
            name = self._names.get(file_id, file_id)
            await asyncio.sleep(self.delays.get(name, 0))
            if name in self.broken_files:
                raise MalformedResponseError("ocr: response has no pages", key=key)
            return {"pages": self.pages_for(name)}
        finally:
            self.in_flight -= 1

    async def delete_file(self, file_id: str, key: str) -> bool:
        self.deleted.append(file_id)
        return True

    async def aclose(self) -> None:
        self.closed = True


class FakeTranslator:
    """Translator that upper-cases its input and records calls.

    *fail_keys* raise a soft provider error, *auth_fail_keys* a 401 and
    *malformed_keys* a malformed-response error.
    """

    def __init__(
        self,
        *,
        fail_keys: tuple[str, ...] = (),
        auth_fail_keys: tuple[str, ...] = (),
        malformed_keys: tuple[str, ...] = (),
        max_delay_s: float = 0.0,
        seed: int = 7,
    ) -> None:
        self.fail_keys = set(fail_keys)
        self.auth_fail_keys = set(auth_fail_keys)
        self.malformed_keys = set(malformed_keys)
        self.max_delay_s = max_delay_s
        self._rng = random.Random(seed)
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def translate(
        self, content: str, key: str, target_language: str, prompts: Optional[Any] = None
    ) -> str:
        self.calls.append((content, key))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.max_delay_s:
                await asyncio.sleep(self._rng.uniform(0, self.max_delay_s))
            else:
                await asyncio.sleep(0)
            if key in self.auth_fail_keys:
                raise AuthenticationError("translation failed: Unauthorized", status=401, key=key)
            if key in self.fail_keys:
                raise ProviderError("translation failed: Bad Gateway", status=502, key=key)
            if key in self.malformed_keys:
                raise MalformedResponseError("no text in response", status=200, key=key)
            return content.upper()
        finally:
            self.in_flight -= 1

    @property
    def keys_used(self) -> set[str]:
        return {key for _, key in self.calls}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with every backoff and settle delay set to zero."""
    return Settings(
        chunk_backoff_s=0.0,
        document_backoff_s=0.0,
        upload_settle_delay_s=0.0,
    )


@pytest.fixture
def key_pools() -> KeyPoolManager:
    pools = KeyPoolManager()
    pools.set_keys(OCR_POOL, ["ocr-key-aaaa", "ocr-key-bbbb"])
    pools.set_keys(TRANSLATION_POOL, ["tr-key-1111", "tr-key-2222"])
    return pools


@pytest.fixture
def memory_store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def make_pdfs(tmp_path: Path) -> Callable[..., list[Path]]:
    """Create placeholder PDF files named ``doc0.pdf``, ``doc1.pdf``..."""

    def _make(count: int, prefix: str = "doc") -> list[Path]:
        folder = tmp_path / "pdfs"
        folder.mkdir(exist_ok=True)
        paths = []
        for i in range(count):
            path = folder / f"{prefix}{i}.pdf"
            path.write_bytes(b"%PDF-1.4\n% fake\n")
            paths.append(path)
        return paths

    return _make


@pytest.fixture
def tmp_output(tmp_path: Path) -> Path:
    """Return a temporary output directory for a single test."""
    return tmp_path / "output"
