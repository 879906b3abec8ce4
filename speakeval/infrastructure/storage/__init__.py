"""Blob storage collaborators."""

from .blob import BlobStorage, InMemoryBlobStorage, LocalBlobStorage, RetryingStorage

__all__ = ["BlobStorage", "InMemoryBlobStorage", "LocalBlobStorage", "RetryingStorage"]
