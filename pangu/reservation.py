"""
Resource Reservation Manager

Time-leased holds on spendable-unit ids. While a reservation is live, every
external change touching one of its ids is queued instead of applied. On
release the queue is either replayed in arrival order (success, or lease
expiry) or discarded (failure).

    reserve(ids) ──► live ──┬── release(success=True) ──► replay queue
                            ├── lease expiry ───────────► replay queue
                            └── release(success=False) ─► discard queue

The id -> reservation table is the only shared mutable state; every public
operation updates it under one re-entrant lock before any callback runs.

Copyright (c) 2026 Pangu. All rights reserved.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from pangu.config import PanguConfig, get_config
from pangu.errors import ReservationConflict, UnknownReservation
from pangu.observability import PanguLayer, get_logger
from pangu.wallet import ResourceChange, normalize_unit_id

logger = get_logger("reservation", PanguLayer.RESERVATION)

_RETIRED_LIMIT = 1024


@dataclass(frozen=True)
class ReservationHandle:
    reservation_id: str
    ids: FrozenSet[str]
    reason: str = ""


@dataclass
class Reservation:
    reservation_id: str
    ids: FrozenSet[str]
    reason: str
    created_at: float
    lease_seconds: float
    queue: List[ResourceChange] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def expires_at(self) -> float:
        return self.created_at + self.lease_seconds

    def handle(self) -> ReservationHandle:
        return ReservationHandle(self.reservation_id, self.ids, self.reason)


class ReservationManager:
    """Owns the reservation table; construct one per wallet and close it on teardown.

    `apply` receives every change that is applied, immediately or on replay.
    `clock` must share its time base with the running event loop (both
    default to the monotonic clock) so timer and lazy expiry agree.
    """

    def __init__(
        self,
        apply: Callable[[ResourceChange], None],
        config: Optional[PanguConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._apply = apply
        self._config = config or get_config()
        self._clock = clock
        self._lock = threading.RLock()
        self._reservations: Dict[str, Reservation] = {}
        self._holders: Dict[str, str] = {}
        self._retired: "OrderedDict[str, str]" = OrderedDict()
        self._closed = False

    # =========================================================================
    # RESERVE / RELEASE
    # =========================================================================

    def reserve(
        self,
        ids: Iterable[str],
        reason: str = "",
        lease_seconds: Optional[float] = None,
    ) -> ReservationHandle:
        """Hold every id in `ids` or none of them.

        Raises ReservationConflict naming the ids already held elsewhere.
        """
        wanted = frozenset(normalize_unit_id(i) for i in ids)
        if lease_seconds is None:
            lease_seconds = self._config.reservation.draft_lease_seconds.get()
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        with self._lock:
            self._ensure_open()
            self.sweep()
            taken = {i for i in wanted if i in self._holders}
            if taken:
                holders = sorted({self._holders[i] for i in taken})
                holder = ", ".join(self._reservations[h].reason or h for h in holders)
                logger.info(
                    "Reservation conflict",
                    reason=reason,
                    conflicting=sorted(taken),
                )
                raise ReservationConflict(taken, holder)
            rid = f"rsv-{uuid.uuid4().hex[:12]}"
            reservation = Reservation(rid, wanted, reason, self._clock(), lease_seconds)
            self._reservations[rid] = reservation
            for i in wanted:
                self._holders[i] = rid
            reservation.timer = self._schedule_expiry(rid, lease_seconds)
        logger.info(
            "Reserved units",
            reservation_id=rid,
            reason=reason,
            count=len(wanted),
            lease_seconds=lease_seconds,
        )
        return reservation.handle()

    def release(self, handle: ReservationHandle, success: bool) -> int:
        """Release `handle`; returns the number of changes replayed successfully.

        Releasing a reservation that already expired is a no-op.
        """
        with self._lock:
            reservation = self._reservations.get(handle.reservation_id)
            if reservation is None:
                if handle.reservation_id in self._retired:
                    logger.warning(
                        "Release of retired reservation ignored",
                        reservation_id=handle.reservation_id,
                        retired=self._retired[handle.reservation_id],
                    )
                    return 0
                raise UnknownReservation(handle.reservation_id)
            queued = self._retire(reservation, "released")
            if not success:
                logger.info(
                    "Released reservation, queued changes discarded",
                    reservation_id=reservation.reservation_id,
                    discarded=len(queued),
                )
                return 0
            logger.info(
                "Released reservation, replaying queued changes",
                reservation_id=reservation.reservation_id,
                replayed=len(queued),
            )
            return len(queued) - self._replay(queued)

    # =========================================================================
    # EVENT INTAKE
    # =========================================================================

    def on_resource_changed(self, change: ResourceChange) -> bool:
        """Apply `change` now, or queue it behind the reservation holding its id.

        Returns True when applied immediately.
        """
        with self._lock:
            self.sweep()
            uid = normalize_unit_id(change.unit_id) if change.unit_id else ""
            rid = self._holders.get(uid) if uid else None
            if rid is not None:
                self._reservations[rid].queue.append(change)
                logger.debug(
                    "Queued change behind reservation",
                    reservation_id=rid,
                    unit_id=uid,
                    kind=change.kind.value,
                )
                return False
            self._apply(change)
            return True

    # =========================================================================
    # EXPIRY
    # =========================================================================

    def _schedule_expiry(self, rid: str, lease_seconds: float) -> Optional[asyncio.TimerHandle]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        return loop.call_later(lease_seconds, self._expire, rid)

    def _expire(self, rid: str) -> None:
        with self._lock:
            reservation = self._reservations.get(rid)
            if reservation is None:
                return
            queued = self._retire(reservation, "expired")
            logger.warning(
                "Reservation lease expired, replaying queued changes",
                reservation_id=rid,
                reason=reservation.reason,
                replayed=len(queued),
            )
            self._replay(queued)

    def sweep(self) -> int:
        """Expire every reservation whose lease has lapsed; returns how many."""
        with self._lock:
            now = self._clock()
            lapsed = [r.reservation_id for r in self._reservations.values() if now >= r.expires_at]
            for rid in lapsed:
                self._expire(rid)
            return len(lapsed)

    async def run_sweeper(self) -> None:
        """Periodic sweep for callers without timer-driven expiry."""
        interval = self._config.reservation.sweep_interval_seconds.get()
        while not self._closed:
            await asyncio.sleep(interval)
            self.sweep()

    # =========================================================================
    # INTROSPECTION / TEARDOWN
    # =========================================================================

    def is_reserved(self, uid: str) -> bool:
        with self._lock:
            self.sweep()
            return normalize_unit_id(uid) in self._holders

    def reserved_ids(self) -> FrozenSet[str]:
        with self._lock:
            self.sweep()
            return frozenset(self._holders)

    def active(self) -> List[ReservationHandle]:
        with self._lock:
            self.sweep()
            return [r.handle() for r in self._reservations.values()]

    def queued(self, handle: ReservationHandle) -> List[ResourceChange]:
        with self._lock:
            reservation = self._reservations.get(handle.reservation_id)
            return list(reservation.queue) if reservation else []

    def close(self) -> None:
        """Tear down: cancel timers and release everything as if it expired."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for rid in list(self._reservations):
                self._expire(rid)
        logger.info("Reservation manager closed")

    def __enter__(self) -> "ReservationManager":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("reservation manager is closed")

    def _retire(self, reservation: Reservation, how: str) -> List[ResourceChange]:
        # Bookkeeping first so replayed changes see the ids as free.
        rid = reservation.reservation_id
        del self._reservations[rid]
        for i in reservation.ids:
            if self._holders.get(i) == rid:
                del self._holders[i]
        if reservation.timer is not None:
            reservation.timer.cancel()
            reservation.timer = None
        self._retired[rid] = how
        while len(self._retired) > _RETIRED_LIMIT:
            self._retired.popitem(last=False)
        queued, reservation.queue = reservation.queue, []
        return queued

    def _replay(self, queued: List[ResourceChange]) -> int:
        """Re-deliver retired changes in arrival order; returns how many failed.

        The queue is already detached from its reservation, so a change that
        fails to apply is logged and skipped rather than stopping the rest.
        """
        failed = 0
        for change in queued:
            try:
                self.on_resource_changed(change)
            except Exception as ex:
                failed += 1
                logger.error(
                    "Replayed change failed to apply",
                    error_code=type(ex).__name__,
                    exc_info=True,
                    unit_id=change.unit_id,
                    kind=change.kind.value,
                )
        return failed
