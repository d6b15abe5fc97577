"""Error taxonomy shared by the book, normalizer and ingest loop."""

from __future__ import annotations


class BookError(RuntimeError):
    """Base class for order book errors."""


class SeedError(BookError):
    """Snapshot is empty or malformed and cannot seed the book."""


class BookNotConsistentError(BookError):
    """Apply or read attempted while the book is not sequence-consistent."""


class EmptyBookError(BookError):
    """One side of the book is empty; mid price is undefined."""


class TransportError(RuntimeError):
    """Diff stream or snapshot source failed at the transport level."""


class DeadlineExceeded(RuntimeError):
    """The run's wall-clock budget is used up."""


class SchemaEvolutionError(ValueError):
    """Output schema change is not additive."""
