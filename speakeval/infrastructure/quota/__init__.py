"""Credential pool shared by every concurrent job."""

from .pool import Capability, Credential, QuotaPool

__all__ = ["Capability", "Credential", "QuotaPool"]
