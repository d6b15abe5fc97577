"""Output record contract: Avro schema, encoding and schema.json descriptor."""

from __future__ import annotations

import copy
import io
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import fastavro

from .errors import SchemaEvolutionError

SCHEMA_VERSION = 2

# Fields may only be appended with defaults; see check_additive_evolution.
ORDERBOOK_RECORD_SCHEMA: Dict[str, Any] = {
    "type": "record",
    "name": "OrderBookRecord",
    "namespace": "lob.ingest",
    "fields": [
        {"name": "venue", "type": "string"},
        {"name": "symbol", "type": "string"},
        {"name": "event_ts", "type": "long"},
        {"name": "ingest_ts", "type": "long"},
        {"name": "last_update_id", "type": "long"},
        {"name": "depth", "type": "int"},
        {
            "name": "levels",
            "type": {
                "type": "array",
                "items": {
                    "type": "record",
                    "name": "Level",
                    "fields": [
                        {"name": "side", "type": {"type": "enum", "name": "Side", "symbols": ["bid", "ask"]}},
                        {"name": "price", "type": "double"},
                        {"name": "quantity", "type": "double"},
                    ],
                },
            },
        },
        {"name": "mid", "type": "double"},
        {"name": "spread_bps", "type": "double"},
        {"name": "imbalance", "type": "double"},
        {"name": "gap_detected", "type": "boolean", "default": False},
        {"name": "recovered", "type": "boolean", "default": False},
        # v2
        {"name": "spread", "type": "double", "default": 0.0},
        {"name": "band_bps", "type": {"type": "array", "items": "double"}, "default": []},
        {"name": "bid_band_qty", "type": {"type": "array", "items": "double"}, "default": []},
        {"name": "ask_band_qty", "type": {"type": "array", "items": "double"}, "default": []},
    ],
}

_PARSED_SCHEMA = fastavro.parse_schema(copy.deepcopy(ORDERBOOK_RECORD_SCHEMA))


def parsed_schema():
    return _PARSED_SCHEMA


@dataclass(frozen=True)
class OutputRecord:
    venue: str
    symbol: str
    event_ts: int  # micros
    ingest_ts: int  # micros
    last_update_id: int
    depth: int
    levels: Tuple[Tuple[str, float, float], ...]
    mid: float
    spread_bps: float
    imbalance: float
    gap_detected: bool = False
    recovered: bool = False
    spread: float = 0.0
    band_bps: Tuple[float, ...] = field(default_factory=tuple)
    bid_band_qty: Tuple[float, ...] = field(default_factory=tuple)
    ask_band_qty: Tuple[float, ...] = field(default_factory=tuple)

    def to_avro(self) -> Dict[str, Any]:
        return {
            "venue": self.venue,
            "symbol": self.symbol,
            "event_ts": int(self.event_ts),
            "ingest_ts": int(self.ingest_ts),
            "last_update_id": int(self.last_update_id),
            "depth": int(self.depth),
            "levels": [
                {"side": side, "price": float(price), "quantity": float(qty)}
                for side, price, qty in self.levels
            ],
            "mid": float(self.mid),
            "spread_bps": float(self.spread_bps),
            "imbalance": float(self.imbalance),
            "gap_detected": bool(self.gap_detected),
            "recovered": bool(self.recovered),
            "spread": float(self.spread),
            "band_bps": [float(v) for v in self.band_bps],
            "bid_band_qty": [float(v) for v in self.bid_band_qty],
            "ask_band_qty": [float(v) for v in self.ask_band_qty],
        }


def encode_record(record: Mapping[str, Any]) -> bytes:
    """Schemaless single-record Avro encoding for the storage hand-off."""
    buf = io.BytesIO()
    fastavro.schemaless_writer(buf, _PARSED_SCHEMA, dict(record))
    return buf.getvalue()


def decode_record(
    payload: bytes,
    writer_schema: Optional[Mapping[str, Any]] = None,
    reader_schema: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    writer = _PARSED_SCHEMA if writer_schema is None else fastavro.parse_schema(copy.deepcopy(dict(writer_schema)))
    reader = None
    if reader_schema is not None:
        reader = fastavro.parse_schema(copy.deepcopy(dict(reader_schema)))
    return fastavro.schemaless_reader(io.BytesIO(payload), writer, reader)


def _fields_by_name(schema: Mapping[str, Any]) -> Dict[str, Mapping[str, Any]]:
    return {f["name"]: f for f in schema.get("fields", [])}


def check_additive_evolution(old: Mapping[str, Any], new: Mapping[str, Any]) -> List[str]:
    """Return the names of fields added by `new`.

    Raises SchemaEvolutionError when a field is removed, retyped or added
    without a default.
    """
    old_fields = _fields_by_name(old)
    new_fields = _fields_by_name(new)
    problems: List[str] = []
    for name, field_def in old_fields.items():
        if name not in new_fields:
            problems.append(f"field {name!r} removed")
        elif json.dumps(new_fields[name]["type"], sort_keys=True) != json.dumps(field_def["type"], sort_keys=True):
            problems.append(f"field {name!r} changed type")
    added = [name for name in new_fields if name not in old_fields]
    for name in added:
        if "default" not in new_fields[name]:
            problems.append(f"field {name!r} added without default")
    if problems:
        raise SchemaEvolutionError("; ".join(problems))
    return added


def write_schema(path: Path, files: Mapping[str, Any]) -> None:
    """Write a `schema.json` file next to the records it describes.

    The content is intentionally small and stable so it can be consumed by
    notebooks and unit tests.
    """
    schema = {
        "schema_version": SCHEMA_VERSION,
        "created_utc": datetime.now(timezone.utc).isoformat(),
        "record_schema": ORDERBOOK_RECORD_SCHEMA,
        "files": dict(files),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(schema, indent=2, sort_keys=True))
