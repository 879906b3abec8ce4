"""Blob storage backends."""
import pytest

from speakeval.errors import StorageError
from speakeval.infrastructure.storage import InMemoryBlobStorage, LocalBlobStorage, RetryingStorage


def test_local_storage_round_trip(tmp_path):
    storage = LocalBlobStorage(str(tmp_path))
    ref = storage.put("uploads/test-1/part1-q1.wav", b"RIFF")
    assert storage.get(ref) == b"RIFF"
    assert storage.delete(ref)
    assert not storage.delete(ref)
    with pytest.raises(StorageError):
        storage.get(ref)


def test_local_storage_rejects_escaping_references(tmp_path):
    storage = LocalBlobStorage(str(tmp_path / "root"))
    with pytest.raises(StorageError):
        storage.put("../outside.wav", b"x")


class FlakyStorage(InMemoryBlobStorage):
    def __init__(self, failures):
        super().__init__({"a": b"data"})
        self.failures = failures
        self.calls = 0

    def get(self, reference):
        self.calls += 1
        if self.calls <= self.failures:
            raise StorageError("temporarily unavailable")
        return super().get(reference)


def test_retrying_storage_recovers():
    inner = FlakyStorage(failures=2)
    storage = RetryingStorage(inner, attempts=3, sleep=lambda _: None)
    assert storage.get("a") == b"data"
    assert inner.calls == 3


def test_retrying_storage_gives_up():
    inner = FlakyStorage(failures=5)
    storage = RetryingStorage(inner, attempts=3, sleep=lambda _: None)
    with pytest.raises(StorageError):
        storage.get("a")
    assert inner.calls == 3
