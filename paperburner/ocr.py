"""Mistral OCR client: upload, signed URL, OCR call and cleanup."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

import httpx

from .errors import AuthenticationError, MalformedResponseError, ProviderError
from .keys import mask_key

log = logging.getLogger(__name__)

MISTRAL_BASE_URL = "https://api.mistral.ai"
OCR_MODEL = "mistral-ocr-latest"
SIGNED_URL_EXPIRY_HOURS = 24
DEFAULT_TIMEOUT_S = 300.0


def api_error_message(response: httpx.Response, default: str) -> str:
    """Pull a readable message out of a provider error response."""
    text = response.text
    try:
        body = json.loads(text)
    except ValueError:
        return text.strip() or f"HTTP {response.status_code} {response.reason_phrase}"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        for field in ("message", "detail"):
            if body.get(field):
                return str(body[field])
    return json.dumps(body, ensure_ascii=False) if body else default


def raise_for_status(response: httpx.Response, key: str, action: str) -> None:
    """Map non-2xx responses onto the provider error taxonomy."""
    if response.is_success:
        return
    message = api_error_message(response, f"{action} failed")
    status = response.status_code
    text = f"{action} failed ({status}): {message}"
    if status in (401, 403):
        raise AuthenticationError(text, status=status, key=key)
    raise ProviderError(text, status=status, key=key)


class MistralOcrClient:
    """Thin async wrapper over the Mistral files and OCR endpoints.

    Pass *client* to share a connection pool or inject a mock transport;
    otherwise one is created and closed with :meth:`aclose`.
    """

    def __init__(
        self,
        *,
        base_url: str = MISTRAL_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "MistralOcrClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _request(
        self, method: str, path: str, key: str, action: str, **kwargs: Any
    ) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {key}"
        try:
            response = await self._client.request(
                method, f"{self.base_url}{path}", headers=headers, **kwargs
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"{action} failed: {exc}", key=key) from exc
        raise_for_status(response, key, action)
        return response

    @staticmethod
    def _json(response: httpx.Response, key: str, action: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                f"{action}: response is not JSON", status=response.status_code, key=key
            ) from exc
        if not isinstance(payload, dict):
            raise MalformedResponseError(
                f"{action}: unexpected response shape", status=response.status_code, key=key
            )
        return payload

    async def upload(self, path: Path, key: str) -> str:
        """Upload *path* for OCR and return the remote file id."""
        t0 = time.time()
        with open(path, "rb") as fh:
            response = await self._request(
                "POST",
                "/v1/files",
                key,
                "upload",
                files={"file": (path.name, fh.read(), "application/pdf")},
                data={"purpose": "ocr"},
            )
        file_id = self._json(response, key, "upload").get("id")
        if not file_id:
            raise MalformedResponseError("upload: no file id returned", key=key)
        log.debug(
            "upload: %s -> %s with %s in %.2fs",
            path.name,
            file_id,
            mask_key(key),
            time.time() - t0,
        )
        return str(file_id)

    async def get_signed_url(self, file_id: str, key: str) -> str:
        response = await self._request(
            "GET",
            f"/v1/files/{file_id}/url",
            key,
            "signed url",
            params={"expiry": SIGNED_URL_EXPIRY_HOURS},
            headers={"Accept": "application/json"},
        )
        url = self._json(response, key, "signed url").get("url")
        if not url:
            raise MalformedResponseError("signed url: no url returned", key=key)
        return str(url)

    async def run_ocr(self, document_url: str, key: str) -> dict[str, Any]:
        """Run OCR on a signed URL and return the raw page payload."""
        response = await self._request(
            "POST",
            "/v1/ocr",
            key,
            "ocr",
            json={
                "model": OCR_MODEL,
                "document": {"type": "document_url", "document_url": document_url},
                "include_image_base64": True,
            },
            headers={"Accept": "application/json"},
        )
        payload = self._json(response, key, "ocr")
        if not isinstance(payload.get("pages"), list):
            raise MalformedResponseError("ocr: response has no pages", key=key)
        return payload

    async def delete_file(self, file_id: str, key: str) -> bool:
        """Delete an uploaded file; failures are logged, never raised."""
        try:
            await self._request("DELETE", f"/v1/files/{file_id}", key, "delete")
        except ProviderError as exc:
            log.warning("delete_file: could not delete %s: %s", file_id, exc)
            return False
        log.debug("delete_file: removed %s", file_id)
        return True
