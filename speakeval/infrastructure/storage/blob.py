"""
Blob storage collaborators: get/put/delete of opaque audio and result blobs.
"""
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict

from ...config import STORAGE_ATTEMPTS
from ...errors import StorageError
from ...utils.retry import call_with_retries

logger = logging.getLogger("storage")


class BlobStorage(ABC):
    """Opaque blob store addressed by string references."""

    @abstractmethod
    def get(self, reference: str) -> bytes:
        """Return the blob, raising StorageError if it cannot be read."""

    @abstractmethod
    def put(self, reference: str, data: bytes) -> str:
        """Store the blob and return its reference."""

    @abstractmethod
    def delete(self, reference: str) -> bool:
        """Delete the blob. Returns False if it did not exist."""


class InMemoryBlobStorage(BlobStorage):
    """Dictionary-backed storage for tests and local runs."""

    def __init__(self, blobs: Dict[str, bytes] = None):
        self._blobs: Dict[str, bytes] = dict(blobs or {})
        self._lock = threading.Lock()

    def get(self, reference: str) -> bytes:
        with self._lock:
            if reference not in self._blobs:
                raise StorageError(f"Blob not found: {reference}")
            return self._blobs[reference]

    def put(self, reference: str, data: bytes) -> str:
        with self._lock:
            self._blobs[reference] = bytes(data)
        return reference

    def delete(self, reference: str) -> bool:
        with self._lock:
            return self._blobs.pop(reference, None) is not None

    def exists(self, reference: str) -> bool:
        with self._lock:
            return reference in self._blobs


class LocalBlobStorage(BlobStorage):
    """Blobs as files below a root directory. References are relative paths."""

    def __init__(self, root_dir: str):
        self.root_dir = os.path.abspath(root_dir)
        os.makedirs(self.root_dir, exist_ok=True)

    def _path(self, reference: str) -> str:
        path = os.path.abspath(os.path.join(self.root_dir, reference))
        if os.path.commonpath([path, self.root_dir]) != self.root_dir:
            raise StorageError(f"Reference escapes storage root: {reference}")
        return path

    def get(self, reference: str) -> bytes:
        try:
            with open(self._path(reference), 'rb') as f:
                return f.read()
        except OSError as e:
            raise StorageError(f"Failed to read {reference}: {e}")

    def put(self, reference: str, data: bytes) -> str:
        path = self._path(reference)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f"Failed to write {reference}: {e}")
        return reference

    def delete(self, reference: str) -> bool:
        path = self._path(reference)
        if not os.path.exists(path):
            return False
        try:
            os.remove(path)
        except OSError as e:
            raise StorageError(f"Failed to delete {reference}: {e}")
        return True


class RetryingStorage(BlobStorage):
    """Wraps another store and retries each call a bounded number of times."""

    def __init__(self, inner: BlobStorage, attempts: int = STORAGE_ATTEMPTS,
                 sleep: Callable[[float], None] = time.sleep, base_seconds: float = 0.5):
        self.inner = inner
        self.attempts = attempts
        self._sleep = sleep
        self._base_seconds = base_seconds

    def _call(self, label: str, func):
        return call_with_retries(func, self.attempts, (StorageError, OSError), label=label,
                                 sleep=self._sleep, base_seconds=self._base_seconds)

    def get(self, reference: str) -> bytes:
        return self._call(f"storage get {reference}", lambda: self.inner.get(reference))

    def put(self, reference: str, data: bytes) -> str:
        return self._call(f"storage put {reference}", lambda: self.inner.put(reference, data))

    def delete(self, reference: str) -> bool:
        return self._call(f"storage delete {reference}", lambda: self.inner.delete(reference))
