"""Tests for local document storage and signed downloads."""

import time

import pytest
from fastapi.testclient import TestClient

from factoring.core.exceptions import ValidationFailed
from factoring.main import app
from factoring.services.document_storage import DocumentStage, LocalDocumentStorage
from tests.conftest import PDF_BYTES


@pytest.fixture
def client():
    """Create test client."""
    return TestClient(app)


# ---------------------------------------------------------------------------
# Storage backend
# ---------------------------------------------------------------------------


class TestLocalDocumentStorage:
    def test_upload(self, storage):
        stored = storage.upload(PDF_BYTES, "invoice.pdf", "application/pdf", {"invoice_id": "INV-1"})

        assert stored.storage_id.endswith(".pdf")
        assert stored.url == f"/v1/documents/{stored.storage_id}"
        assert stored.size == len(PDF_BYTES)
        assert stored.mime_type == "application/pdf"
        assert storage.visibility(stored.storage_id) == "draft"
        path, mime_type = storage.open_path(stored.storage_id)
        assert mime_type == "application/pdf"
        with open(path, "rb") as f:
            assert f.read() == PDF_BYTES

    def test_rejects_unsupported_type(self, storage):
        with pytest.raises(ValidationFailed) as exc_info:
            storage.upload(b"MZ", "tool.exe", "application/x-msdownload", {})
        assert exc_info.value.details["field"] == "file"
        assert "application/pdf" in exc_info.value.details["allowed"]

    def test_rejects_oversized_and_empty(self, storage, monkeypatch):
        from factoring.core.config import settings

        monkeypatch.setattr(settings, "DOCUMENT_MAX_SIZE_BYTES", 10)
        with pytest.raises(ValidationFailed, match="too large"):
            storage.upload(b"x" * 11, "big.png", "image/png", {})
        with pytest.raises(ValidationFailed, match="empty"):
            storage.upload(b"", "empty.png", "image/png", {})

    def test_delete(self, storage):
        stored = storage.upload(PDF_BYTES, "invoice.pdf", "application/pdf", {})
        assert storage.delete(stored.storage_id) is True
        assert storage.open_path(stored.storage_id) is None
        assert storage.delete(stored.storage_id) is False

    def test_update_visibility(self, storage):
        stored = storage.upload(PDF_BYTES, "invoice.pdf", "application/pdf", {})
        assert storage.update_visibility(stored.storage_id, DocumentStage.LISTED) is True
        assert storage.visibility(stored.storage_id) == "listed"
        assert storage.update_visibility("missing.pdf", DocumentStage.LISTED) is False

    def test_refuses_paths_outside_base(self, storage):
        with pytest.raises(ValidationFailed):
            storage.open_path("../etc/passwd")

    def test_signed_urls(self, storage):
        url = storage.generate_secure_url("abc.pdf", expires_in=60)
        query = dict(part.split("=") for part in url.split("?", 1)[1].split("&"))
        expires = int(query["expires"])

        assert storage.verify_secure_url("abc.pdf", expires, query["signature"])
        assert not storage.verify_secure_url("other.pdf", expires, query["signature"])
        assert not storage.verify_secure_url("abc.pdf", expires + 1, query["signature"])

    def test_expired_signature(self, storage):
        expires = int(time.time()) - 1
        signature = storage._signature("abc.pdf", expires)
        assert not storage.verify_secure_url("abc.pdf", expires, signature)

    def test_signature_depends_on_secret(self, storage, tmp_path):
        other = LocalDocumentStorage(str(tmp_path), secret="another-secret")
        expires = int(time.time()) + 60
        assert other._signature("abc.pdf", expires) != storage._signature("abc.pdf", expires)


# ---------------------------------------------------------------------------
# Download endpoint
# ---------------------------------------------------------------------------


class TestDocumentDownload:
    def test_download_with_valid_signature(self, client, storage):
        stored = storage.upload(PDF_BYTES, "invoice.pdf", "application/pdf", {})
        url = storage.generate_secure_url(stored.storage_id)

        resp = client.get(url)

        assert resp.status_code == 200
        assert resp.content == PDF_BYTES
        assert resp.headers["content-type"] == "application/pdf"

    def test_tampered_signature(self, client, storage):
        stored = storage.upload(PDF_BYTES, "invoice.pdf", "application/pdf", {})
        expires = int(time.time()) + 60
        resp = client.get(
            f"/v1/documents/{stored.storage_id}?expires={expires}&signature=deadbeef"
        )
        assert resp.status_code == 403

    def test_signed_but_deleted(self, client, storage):
        stored = storage.upload(PDF_BYTES, "invoice.pdf", "application/pdf", {})
        url = storage.generate_secure_url(stored.storage_id)
        storage.delete(stored.storage_id)
        assert client.get(url).status_code == 404

    def test_missing_query_params(self, client):
        assert client.get("/v1/documents/abc.pdf").status_code == 422
