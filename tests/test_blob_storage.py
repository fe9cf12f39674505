from __future__ import annotations

from pathlib import Path

import pytest

from itam.services.blob_storage import BlobStorageError, LocalBlobStorage


def test_put_get_delete(tmp_path: Path) -> None:
    storage = LocalBlobStorage(tmp_path)
    key = storage.put("tenant-a", b"hello", "Notes.TXT", "text/plain")

    assert key.startswith("tenant-a/")
    assert key.endswith(".txt")
    assert (tmp_path / key).read_bytes() == b"hello"
    assert storage.get(key) == b"hello"

    assert storage.delete(key) is True
    assert storage.delete(key) is False
    with pytest.raises(BlobStorageError):
        storage.get(key)


def test_keys_are_unique_per_upload(tmp_path: Path) -> None:
    storage = LocalBlobStorage(tmp_path)
    first = storage.put("tenant-a", b"one", "scan.pdf", "application/pdf")
    second = storage.put("tenant-a", b"two", "scan.pdf", "application/pdf")
    assert first != second
    assert storage.get(first) == b"one"


@pytest.mark.parametrize("key", ["../escape.txt", "/etc/passwd", "tenant-a/../../x", ""])
def test_unsafe_keys_are_rejected(tmp_path: Path, key: str) -> None:
    storage = LocalBlobStorage(tmp_path)
    with pytest.raises(BlobStorageError):
        storage.get(key)


def test_tenant_id_cannot_escape_root(tmp_path: Path) -> None:
    storage = LocalBlobStorage(tmp_path)
    with pytest.raises(BlobStorageError):
        storage.put("..", b"x", "a.txt", "text/plain")
    with pytest.raises(BlobStorageError):
        storage.put("a/b", b"x", "a.txt", "text/plain")
