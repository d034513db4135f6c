"""Per-request-kind timestamp conventions.

The remote peer does not use one clock origin everywhere. Some request kinds
count seconds from a fixed custom epoch (2020-01-01T00:00:00Z) and are only
accepted inside a short validity window; others use the conventional Unix
epoch, in seconds or milliseconds. The table below is the single place that
records which convention each kind uses.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Union

CUSTOM_EPOCH = datetime(2020, 1, 1, tzinfo=timezone.utc)
CUSTOM_EPOCH_SECONDS = int(CUSTOM_EPOCH.timestamp())
CUSTOM_EPOCH_MS = CUSTOM_EPOCH_SECONDS * 1000

DEFAULT_VALIDITY_WINDOW = 300


class Epoch(Enum):
    UNIX = "unix"
    CUSTOM_2020 = "custom-2020"


class Unit(Enum):
    SECONDS = "s"
    MILLISECONDS = "ms"


@dataclass(frozen=True)
class Convention:
    epoch: Epoch
    unit: Unit
    windowed: bool = False


class RequestKind(Enum):
    FLOW_APPLY = "flow-apply"
    CAPSULE_ADDRESS = "capsule-address"
    TX_HISTORY = "tx-history"
    UTXO_TIME = "utxo-time"
    ACCOUNT_UPDATE = "account-update"


CONVENTIONS: Dict[RequestKind, Convention] = {
    RequestKind.FLOW_APPLY: Convention(Epoch.CUSTOM_2020, Unit.SECONDS, windowed=True),
    RequestKind.CAPSULE_ADDRESS: Convention(Epoch.CUSTOM_2020, Unit.SECONDS, windowed=True),
    RequestKind.TX_HISTORY: Convention(Epoch.CUSTOM_2020, Unit.SECONDS),
    RequestKind.UTXO_TIME: Convention(Epoch.UNIX, Unit.MILLISECONDS),
    RequestKind.ACCOUNT_UPDATE: Convention(Epoch.UNIX, Unit.SECONDS),
}


def convention_for(kind: RequestKind) -> Convention:
    return CONVENTIONS[kind]


def timestamp_for(kind: RequestKind, now: Optional[float] = None) -> int:
    """Timestamp for `kind` at Unix time `now` (seconds, defaults to the clock)."""
    if now is None:
        now = time.time()
    conv = CONVENTIONS[kind]
    seconds = now - CUSTOM_EPOCH_SECONDS if conv.epoch is Epoch.CUSTOM_2020 else now
    if conv.unit is Unit.MILLISECONDS:
        return int(seconds * 1000)
    return int(seconds)


def to_unix_seconds(kind: RequestKind, value: Union[int, float]) -> float:
    conv = CONVENTIONS[kind]
    seconds = value / 1000.0 if conv.unit is Unit.MILLISECONDS else float(value)
    if conv.epoch is Epoch.CUSTOM_2020:
        seconds += CUSTOM_EPOCH_SECONDS
    return seconds


def to_datetime(kind: RequestKind, value: Union[int, float]) -> datetime:
    return datetime.fromtimestamp(to_unix_seconds(kind, value), tz=timezone.utc)


def within_window(
    kind: RequestKind,
    value: Union[int, float],
    now: Optional[float] = None,
    window_seconds: int = DEFAULT_VALIDITY_WINDOW,
) -> bool:
    """Local pre-check of the peer's validity window.

    Kinds the peer does not window are always accepted.
    """
    if not CONVENTIONS[kind].windowed:
        return True
    if now is None:
        now = time.time()
    return abs(now - to_unix_seconds(kind, value)) <= window_seconds


def normalize_history_timestamp(raw: Union[None, int, float, str], now_ms: Optional[int] = None) -> int:
    """Best-effort conversion of a stored history timestamp to Unix milliseconds.

    History entries were written over time with mixed conventions: custom
    epoch seconds, custom epoch milliseconds, Unix seconds, Unix
    milliseconds and accidental microsecond values.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    try:
        value = float(raw) if raw is not None else 0.0
    except (TypeError, ValueError):
        return now_ms
    if not math.isfinite(value) or value <= 0:
        return now_ms

    while value > 1e13:
        value = float(int(value // 1000))

    if value < 1e12:
        if value < CUSTOM_EPOCH_SECONDS:
            return int(CUSTOM_EPOCH_MS + value * 1000)
        if value < 1e10:
            return int(value * 1000)
        return int(CUSTOM_EPOCH_MS + value)

    if value < CUSTOM_EPOCH_MS:
        return int(CUSTOM_EPOCH_MS + value)
    return int(value)
