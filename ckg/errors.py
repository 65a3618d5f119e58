"""
Exception taxonomy for the Code Knowledge Graph.

Only ``StoreError`` and ``InvalidStateError`` are expected to reach callers
of public operations.  ``ProviderUnavailable`` is recovered by the local
embedding fallback and ``ExtractionError`` is logged and skipped by the
indexer.
"""


class CKGError(Exception):
    """Base class for all CKG errors."""


class ProviderUnavailable(CKGError):
    """Raised when an embedding provider is unconfigured or its call fails."""


class ExtractionError(CKGError):
    """Raised when a single file cannot be read or parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class StoreError(CKGError):
    """Raised when a store query or transaction fails."""


class InvalidStateError(CKGError):
    """Raised when an indexer operation is invalid for the project's state."""
