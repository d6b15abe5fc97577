from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y")


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_decimal(name: str, default: str) -> Decimal:
    raw = _env_str(name, default)
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return Decimal(default)
    if value <= 0:
        return Decimal(default)
    return value


def parse_depths(raw: Optional[str], default: Tuple[int, ...] = (10, 20, 50)) -> Tuple[int, ...]:
    """Parse "10,20,50" into sorted unique positive ints."""
    if raw is None or not raw.strip():
        return default
    out = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            depth = int(part)
        except ValueError as exc:
            raise ValueError(f"DEPTHS entry {part!r} is not an int") from exc
        if depth <= 0:
            raise ValueError(f"DEPTHS entry {depth} must be positive")
        out.add(depth)
    if not out:
        return default
    return tuple(sorted(out))


def parse_floats(raw: Optional[str], default: Tuple[float, ...]) -> Tuple[float, ...]:
    if raw is None or not raw.strip():
        return default
    try:
        return tuple(float(p) for p in raw.split(",") if p.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class IngestSettings:
    symbol: str
    venue: str = "binance"
    tick_size: Decimal = Decimal("0.01")
    lot_size: Decimal = Decimal("0.00001")
    depths: Tuple[int, ...] = (10, 20, 50)
    band_bps: Tuple[float, ...] = (1.0, 5.0, 10.0, 50.0, 100.0)

    # Run budget; the host kills the invocation shortly after this.
    run_budget_s: float = 840.0
    shutdown_grace_s: float = 5.0
    recovery_buffer_max: int = 1000
    heartbeat_s: float = 30.0

    snapshot_limit: int = 1000
    snapshot_timeout_s: float = 10.0
    # 0 means keep retrying until the run budget runs out.
    snapshot_retry_max: int = 0
    snapshot_retry_backoff_s: float = 0.5
    snapshot_retry_backoff_max_s: float = 5.0

    ws_ping_interval_s: int = 20
    ws_ping_timeout_s: int = 60
    ws_reconnect_backoff_s: float = 1.0
    ws_reconnect_backoff_max_s: float = 30.0
    ws_max_session_s: float = float(23 * 3600 + 50 * 60)
    ws_recv_poll_s: float = 1.0
    ws_max_queue: int = 1024
    # TLS verification should remain enabled by default.
    insecure_tls: bool = False

    output_dir: str = "out"
    log_dir: str = "out/logs"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "IngestSettings":
        """Read settings at call time so tests and launchers can override them."""
        return cls(
            symbol=_env_str("SYMBOL", ""),
            venue=_env_str("VENUE", "binance").lower(),
            tick_size=_env_decimal("TICK_SIZE", "0.01"),
            lot_size=_env_decimal("LOT_SIZE", "0.00001"),
            depths=parse_depths(os.getenv("DEPTHS")),
            band_bps=parse_floats(os.getenv("BAND_BPS"), (1.0, 5.0, 10.0, 50.0, 100.0)),
            run_budget_s=_env_float("RUN_BUDGET_S", 840.0),
            shutdown_grace_s=_env_float("SHUTDOWN_GRACE_S", 5.0),
            recovery_buffer_max=max(1, _env_int("RECOVERY_BUFFER_MAX", 1000)),
            heartbeat_s=_env_float("HEARTBEAT_SEC", 30.0),
            snapshot_limit=_env_int("SNAPSHOT_LIMIT", 1000),
            snapshot_timeout_s=_env_float("SNAPSHOT_TIMEOUT_S", 10.0),
            snapshot_retry_max=max(0, _env_int("SNAPSHOT_RETRY_MAX", 0)),
            snapshot_retry_backoff_s=_env_float("SNAPSHOT_RETRY_BACKOFF_S", 0.5),
            snapshot_retry_backoff_max_s=_env_float("SNAPSHOT_RETRY_BACKOFF_MAX_S", 5.0),
            ws_ping_interval_s=_env_int("WS_PING_INTERVAL_S", 20),
            ws_ping_timeout_s=_env_int("WS_PING_TIMEOUT_S", 60),
            ws_reconnect_backoff_s=_env_float("WS_RECONNECT_BACKOFF_S", 1.0),
            ws_reconnect_backoff_max_s=_env_float("WS_RECONNECT_BACKOFF_MAX_S", 30.0),
            ws_max_session_s=_env_float("WS_MAX_SESSION_S", float(23 * 3600 + 50 * 60)),
            ws_recv_poll_s=_env_float("WS_RECV_POLL_S", 1.0),
            ws_max_queue=max(1, _env_int("WS_MAX_QUEUE", 1024)),
            insecure_tls=_env_bool("INSECURE_TLS", False),
            output_dir=_env_str("OUTPUT_DIR", "out"),
            log_dir=_env_str("LOG_DIR", "out/logs"),
            log_level=_env_str("LOG_LEVEL", "INFO"),
        )
