from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Protocol
from uuid import uuid4

logger = logging.getLogger("itam.blob_storage")

ATTACHMENT_ROOT = os.getenv("ATTACHMENT_ROOT", "data/attachments")


class BlobStorageError(Exception):
    pass


class BlobStorage(Protocol):
    def put(self, tenant_id: str, content: bytes, filename: str, content_type: str) -> str: ...

    def get(self, storage_key: str) -> bytes: ...

    def delete(self, storage_key: str) -> bool: ...


class LocalBlobStorage:
    """Filesystem-backed blobs laid out as ``<root>/<tenant_id>/<random name><ext>``."""

    def __init__(self, root_dir: Path | None = None) -> None:
        self._root_dir = root_dir or Path(ATTACHMENT_ROOT)
        self._root_dir.mkdir(parents=True, exist_ok=True)

    def _safe_path(self, storage_key: str) -> Path:
        key_path = PurePosixPath(storage_key)
        if key_path.is_absolute() or ".." in key_path.parts:
            raise BlobStorageError("invalid storage key")
        if not key_path.parts:
            raise BlobStorageError("storage key is empty")
        return self._root_dir / Path(*key_path.parts)

    def _new_key(self, tenant_id: str, filename: str) -> str:
        tenant_part = tenant_id.strip()
        if not tenant_part or "/" in tenant_part or tenant_part in {".", ".."}:
            raise BlobStorageError("invalid tenant id for storage key")
        ext = PurePosixPath(filename).suffix.lower()
        if not ext[1:].isalnum():
            ext = ""
        return f"{tenant_part}/{uuid4().hex}{ext}"

    def put(self, tenant_id: str, content: bytes, filename: str, content_type: str) -> str:
        storage_key = self._new_key(tenant_id, filename)
        path = self._safe_path(storage_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        logger.debug("stored %s bytes (%s) at %s", len(content), content_type, storage_key)
        return storage_key

    def get(self, storage_key: str) -> bytes:
        path = self._safe_path(storage_key)
        if not path.is_file():
            raise BlobStorageError(f"blob not found: {storage_key}")
        return path.read_bytes()

    def delete(self, storage_key: str) -> bool:
        path = self._safe_path(storage_key)
        if not path.is_file():
            return False
        path.unlink()
        return True
