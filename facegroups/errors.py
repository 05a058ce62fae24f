"""Exception types raised by the clustering engine."""

from __future__ import annotations


class InvalidEmbeddingError(ValueError):
    """Embedding is malformed (wrong size, NaN, zero norm). Rejects one face, never the batch."""


class ConstraintViolationError(ValueError):
    """A user operation would place a CANNOT_LINK pair in the same cluster."""


class StorageUnavailableError(RuntimeError):
    """The persistence sink refused a write. Aborts the current batch."""


class ScanStateError(RuntimeError):
    """Illegal scan control transition (e.g. resuming a completed scan)."""
