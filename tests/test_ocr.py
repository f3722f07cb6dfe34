"""Mistral OCR client against an ``httpx.MockTransport``."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from paperburner.errors import AuthenticationError, MalformedResponseError, ProviderError
from paperburner.ocr import OCR_MODEL, MistralOcrClient, api_error_message


def _client(handler) -> MistralOcrClient:
    transport = httpx.MockTransport(handler)
    return MistralOcrClient(
        base_url="https://mock.mistral", client=httpx.AsyncClient(transport=transport)
    )


def _run(coro):
    return asyncio.run(coro)


class TestUpload:
    def test_posts_multipart_with_bearer_key(self, tmp_path):
        pdf = tmp_path / "paper.pdf"
        pdf.write_bytes(b"%PDF-1.4 test")
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = request.read()
            return httpx.Response(200, json={"id": "file-123"})

        file_id = _run(_client(handler).upload(pdf, "key-abcd"))
        assert file_id == "file-123"
        assert seen["method"] == "POST"
        assert seen["path"] == "/v1/files"
        assert seen["auth"] == "Bearer key-abcd"
        assert b'name="purpose"' in seen["body"]
        assert b"ocr" in seen["body"]
        assert b"paper.pdf" in seen["body"]

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_rejection_raises_authentication_error(self, tmp_path, status):
        pdf = tmp_path / "paper.pdf"
        pdf.write_bytes(b"%PDF")

        def handler(request):
            return httpx.Response(status, json={"message": "Unauthorized"})

        with pytest.raises(AuthenticationError) as excinfo:
            _run(_client(handler).upload(pdf, "bad-key1"))
        assert excinfo.value.status == status
        assert excinfo.value.key == "bad-key1"
        assert "Unauthorized" in str(excinfo.value)

    def test_server_error_is_soft(self, tmp_path):
        pdf = tmp_path / "paper.pdf"
        pdf.write_bytes(b"%PDF")

        def handler(request):
            return httpx.Response(500, text="upstream exploded")

        with pytest.raises(ProviderError) as excinfo:
            _run(_client(handler).upload(pdf, "key-1"))
        assert not isinstance(excinfo.value, AuthenticationError)
        assert excinfo.value.status == 500

    def test_missing_id_is_malformed(self, tmp_path):
        pdf = tmp_path / "paper.pdf"
        pdf.write_bytes(b"%PDF")

        def handler(request):
            return httpx.Response(200, json={"object": "file"})

        with pytest.raises(MalformedResponseError):
            _run(_client(handler).upload(pdf, "key-1"))

    def test_network_error_becomes_provider_error(self, tmp_path):
        pdf = tmp_path / "paper.pdf"
        pdf.write_bytes(b"%PDF")

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError):
            _run(_client(handler).upload(pdf, "key-1"))


class TestSignedUrlAndOcr:
    def test_signed_url_requests_24h_expiry(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["expiry"] = request.url.params.get("expiry")
            return httpx.Response(200, json={"url": "https://signed.example/abc"})

        url = _run(_client(handler).get_signed_url("file-9", "k"))
        assert url == "https://signed.example/abc"
        assert seen == {"path": "/v1/files/file-9/url", "expiry": "24"}

    def test_run_ocr_body(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"pages": [{"markdown": "hi", "images": []}]})

        payload = _run(_client(handler).run_ocr("https://signed.example/abc", "k"))
        assert payload["pages"][0]["markdown"] == "hi"
        assert seen["model"] == OCR_MODEL
        assert seen["document"] == {
            "type": "document_url",
            "document_url": "https://signed.example/abc",
        }
        assert seen["include_image_base64"] is True

    def test_run_ocr_without_pages_is_malformed(self):
        def handler(request):
            return httpx.Response(200, json={"usage": {}})

        with pytest.raises(MalformedResponseError):
            _run(_client(handler).run_ocr("https://signed.example/abc", "k"))

    def test_non_json_response_is_malformed(self):
        def handler(request):
            return httpx.Response(200, text="<html>oops</html>")

        with pytest.raises(MalformedResponseError):
            _run(_client(handler).run_ocr("https://signed.example/abc", "k"))


class TestDeleteFile:
    def test_success(self):
        def handler(request):
            assert request.method == "DELETE"
            assert request.url.path == "/v1/files/file-1"
            return httpx.Response(200, json={"deleted": True})

        assert _run(_client(handler).delete_file("file-1", "k")) is True

    def test_failure_is_reported_not_raised(self):
        def handler(request):
            return httpx.Response(404, json={"detail": "not found"})

        assert _run(_client(handler).delete_file("file-1", "k")) is False


def test_api_error_message_prefers_nested_error():
    response = httpx.Response(400, json={"error": {"message": "quota exceeded"}})
    assert api_error_message(response, "fallback") == "quota exceeded"


def test_api_error_message_plain_text():
    response = httpx.Response(502, text="Bad Gateway")
    assert api_error_message(response, "fallback") == "Bad Gateway"
