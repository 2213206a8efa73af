"""Document storage abstraction for invoice files.

The lifecycle services only talk to ``DocumentStorage``; the local
implementation keeps files on disk next to a JSON sidecar holding the
visibility stage, and hands out HMAC-signed, expiring download URLs.
"""

import hashlib
import hmac
import json
import logging
import os
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import urlencode

from factoring.core.config import settings
from factoring.core.exceptions import ValidationFailed

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    "application/pdf": ".pdf",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


class DocumentStage(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    VERIFIED = "verified"
    LISTED = "listed"
    FUNDED = "funded"


@dataclass
class StoredDocument:
    """Result of an upload."""

    url: str
    storage_id: str
    size: int
    mime_type: str


class DocumentStorage(ABC):
    """Abstract base class for document storage backends."""

    @abstractmethod
    def upload(
        self,
        content: bytes,
        filename: str,
        mime_type: str,
        owner_context: dict[str, Any],
    ) -> StoredDocument:
        """Store a file and return where it lives."""
        pass  # pragma: no cover

    @abstractmethod
    def delete(self, storage_id: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    def update_visibility(self, storage_id: str, stage: DocumentStage) -> bool:
        """Record the invoice lifecycle stage a document is visible at."""
        pass  # pragma: no cover

    @abstractmethod
    def generate_secure_url(self, storage_id: str, expires_in: int = 3600) -> str:
        pass  # pragma: no cover

    @abstractmethod
    def verify_secure_url(self, storage_id: str, expires: int, signature: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    def open_path(self, storage_id: str) -> tuple[str, str] | None:
        pass  # pragma: no cover

    def validate(self, content: bytes, mime_type: str) -> None:
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationFailed(
                "Unsupported file type; upload a PDF, JPEG, PNG or WEBP file",
                field="file",
                mime_type=mime_type,
                allowed=sorted(ALLOWED_MIME_TYPES),
            )
        if len(content) > settings.DOCUMENT_MAX_SIZE_BYTES:
            raise ValidationFailed(
                "File is too large",
                field="file",
                size=len(content),
                max_size=settings.DOCUMENT_MAX_SIZE_BYTES,
            )
        if not content:
            raise ValidationFailed("File is empty", field="file")


class LocalDocumentStorage(DocumentStorage):
    """Stores documents under ``DOCUMENT_STORAGE_PATH``."""

    def __init__(self, base_path: str | None = None, secret: str | None = None):
        self.base_path = base_path or settings.DOCUMENT_STORAGE_PATH
        self.secret = secret or settings.DOCUMENT_URL_SECRET

    def _path(self, storage_id: str) -> str:
        # storage ids are generated here; refuse anything that escapes the base path
        if "/" in storage_id or "\\" in storage_id or storage_id.startswith("."):
            raise ValidationFailed("Invalid storage id", storage_id=storage_id)
        return os.path.join(self.base_path, storage_id)

    def _sidecar(self, storage_id: str) -> str:
        return self._path(storage_id) + ".json"

    def _read_meta(self, storage_id: str) -> dict[str, Any] | None:
        try:
            with open(self._sidecar(storage_id)) as f:
                return json.load(f)  # type: ignore[no-any-return]
        except FileNotFoundError:
            return None

    def _write_meta(self, storage_id: str, meta: dict[str, Any]) -> None:
        with open(self._sidecar(storage_id), "w") as f:
            json.dump(meta, f)

    def upload(
        self,
        content: bytes,
        filename: str,
        mime_type: str,
        owner_context: dict[str, Any],
    ) -> StoredDocument:
        self.validate(content, mime_type)
        os.makedirs(self.base_path, exist_ok=True)
        storage_id = f"{uuid.uuid4().hex}{ALLOWED_MIME_TYPES[mime_type]}"

        with open(self._path(storage_id), "wb") as f:
            f.write(content)
        self._write_meta(
            storage_id,
            {
                "original_name": filename,
                "mime_type": mime_type,
                "size": len(content),
                "stage": DocumentStage.DRAFT.value,
                "owner": owner_context,
            },
        )
        logger.info("Stored document %s (%d bytes) for %s", storage_id, len(content), owner_context)
        return StoredDocument(
            url=f"/v1/documents/{storage_id}",
            storage_id=storage_id,
            size=len(content),
            mime_type=mime_type,
        )

    def delete(self, storage_id: str) -> bool:
        removed = False
        for path in (self._path(storage_id), self._sidecar(storage_id)):
            try:
                os.remove(path)
                removed = True
            except FileNotFoundError:
                continue
        return removed

    def update_visibility(self, storage_id: str, stage: DocumentStage) -> bool:
        meta = self._read_meta(storage_id)
        if meta is None:
            logger.warning("No metadata for document %s, visibility not updated", storage_id)
            return False
        meta["stage"] = stage.value
        self._write_meta(storage_id, meta)
        return True

    def visibility(self, storage_id: str) -> str | None:
        meta = self._read_meta(storage_id)
        return meta.get("stage") if meta else None

    def _signature(self, storage_id: str, expires: int) -> str:
        return hmac.new(
            self.secret.encode(),
            f"{storage_id}:{expires}".encode(),
            hashlib.sha256,
        ).hexdigest()

    def generate_secure_url(self, storage_id: str, expires_in: int = 3600) -> str:
        expires = int(time.time()) + expires_in
        query = urlencode({"expires": expires, "signature": self._signature(storage_id, expires)})
        return f"/v1/documents/{storage_id}?{query}"

    def verify_secure_url(self, storage_id: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(storage_id, expires), signature)

    def open_path(self, storage_id: str) -> tuple[str, str] | None:
        """(file path, mime type) of a stored document, or None."""
        meta = self._read_meta(storage_id)
        path = self._path(storage_id)
        if meta is None or not os.path.exists(path):
            return None
        return path, str(meta.get("mime_type", "application/octet-stream"))


def get_document_storage() -> DocumentStorage:
    """FastAPI dependency returning the configured document storage."""
    return LocalDocumentStorage()
