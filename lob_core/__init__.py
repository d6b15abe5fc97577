"""Core data structures and sync logic for the L2 book, free of I/O."""

from .errors import (
    BookError,
    BookNotConsistentError,
    DeadlineExceeded,
    EmptyBookError,
    SchemaEvolutionError,
    SeedError,
    TransportError,
)
from .local_orderbook import BookSide, BookView, OrderBookState
from .normalizer import DEFAULT_DEPTHS, NormalizedView, normalize, normalize_depths
from .schema import SCHEMA_VERSION, OutputRecord, encode_record, decode_record, write_schema
from .sync_engine import Applied, BookPhase, BookStateMachine, GapDetected, Stale, classify
from .types import Diff, PriceLevel, Snapshot, TickScale

__all__ = [
    "Applied",
    "BookError",
    "BookNotConsistentError",
    "BookPhase",
    "BookSide",
    "BookStateMachine",
    "BookView",
    "DEFAULT_DEPTHS",
    "DeadlineExceeded",
    "Diff",
    "EmptyBookError",
    "GapDetected",
    "NormalizedView",
    "OrderBookState",
    "OutputRecord",
    "PriceLevel",
    "SCHEMA_VERSION",
    "SchemaEvolutionError",
    "SeedError",
    "Snapshot",
    "Stale",
    "TickScale",
    "TransportError",
    "classify",
    "decode_record",
    "encode_record",
    "normalize",
    "normalize_depths",
    "write_schema",
]
