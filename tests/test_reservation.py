"""
Resource reservation manager: all-or-none holds, queued changes, replay on
success and expiry, discard on failure.
"""

import asyncio

import pytest

from pangu.errors import ReservationConflict, UnknownReservation
from pangu.reservation import ReservationHandle, ReservationManager
from pangu.wallet import ChangeKind, ResourceChange


def _spent(uid: str) -> ResourceChange:
    return ResourceChange("", uid, ChangeKind.UNIT_SPENT)


@pytest.fixture
def applied():
    return []


@pytest.fixture
def manager(applied, config, clock):
    mgr = ReservationManager(applied.append, config=config, clock=clock)
    yield mgr
    mgr.close()


class TestReserve:

    def test_reserve_holds_every_id(self, manager):
        handle = manager.reserve(["u1", "u2"], reason="build")
        assert handle.ids == frozenset({"u1", "u2"})
        assert manager.is_reserved("u1") and manager.is_reserved("u2")
        assert manager.reserved_ids() == frozenset({"u1", "u2"})

    def test_conflict_is_all_or_none(self, manager):
        manager.reserve(["u1", "u2"], reason="first")
        with pytest.raises(ReservationConflict) as exc:
            manager.reserve(["u2", "u3"], reason="second")
        assert exc.value.conflicting_ids == frozenset({"u2"})
        assert "first" in exc.value.holder
        assert not manager.is_reserved("u3")
        assert len(manager.active()) == 1

    def test_peer_id_form_is_normalized(self, manager):
        manager.reserve(["abcd + 1"])
        assert manager.is_reserved("abcd_1")

    def test_non_positive_lease_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.reserve(["u1"], lease_seconds=0)

    def test_default_lease_comes_from_config(self, config, clock, applied):
        config.reservation.draft_lease_seconds.set(4.0)
        mgr = ReservationManager(applied.append, config=config, clock=clock)
        mgr.reserve(["u1"])
        clock.advance(3.9)
        assert mgr.is_reserved("u1")
        clock.advance(0.2)
        assert not mgr.is_reserved("u1")


class TestIntake:

    def test_unreserved_change_applies_immediately(self, manager, applied):
        change = _spent("u9")
        assert manager.on_resource_changed(change) is True
        assert applied == [change]

    def test_change_without_unit_id_applies_immediately(self, manager, applied):
        manager.reserve(["u1"])
        change = ResourceChange("", "", ChangeKind.HEIGHT_ADVANCED, 5)
        assert manager.on_resource_changed(change) is True
        assert applied == [change]

    def test_reserved_change_is_queued(self, manager, applied):
        handle = manager.reserve(["u1"])
        change = _spent("u1")
        assert manager.on_resource_changed(change) is False
        assert applied == []
        assert manager.queued(handle) == [change]

    def test_queued_by_normalized_id(self, manager, applied):
        manager.reserve(["abcd_1"])
        assert manager.on_resource_changed(_spent("abcd + 1")) is False


class TestRelease:

    def test_success_replays_in_arrival_order(self, manager, applied):
        handle = manager.reserve(["u1", "u2"])
        first, second = _spent("u2"), _spent("u1")
        manager.on_resource_changed(first)
        manager.on_resource_changed(second)
        assert manager.release(handle, success=True) == 2
        assert applied == [first, second]
        assert not manager.is_reserved("u1")

    def test_failure_discards_queue(self, manager, applied):
        handle = manager.reserve(["u1"])
        manager.on_resource_changed(_spent("u1"))
        assert manager.release(handle, success=False) == 0
        assert applied == []
        assert not manager.is_reserved("u1")

    def test_failed_replay_does_not_drop_later_changes(self, config, clock):
        applied = []

        def apply(change):
            if change.unit_id == "u1":
                raise KeyError(change.unit_id)
            applied.append(change.unit_id)

        mgr = ReservationManager(apply, config=config, clock=clock)
        handle = mgr.reserve(["u1", "u2"])
        mgr.on_resource_changed(_spent("u1"))
        mgr.on_resource_changed(_spent("u2"))
        assert mgr.release(handle, success=True) == 1
        assert applied == ["u2"]
        assert mgr.reserved_ids() == frozenset()
        mgr.close()

    def test_ids_reservable_again_after_release(self, manager):
        handle = manager.reserve(["u1"])
        manager.release(handle, success=False)
        manager.reserve(["u1"])

    def test_unknown_handle_raises(self, manager):
        with pytest.raises(UnknownReservation):
            manager.release(ReservationHandle("rsv-missing", frozenset()), success=True)

    def test_double_release_is_noop(self, manager):
        handle = manager.reserve(["u1"])
        manager.release(handle, success=True)
        assert manager.release(handle, success=True) == 0

    def test_replayed_change_held_by_newer_reservation_is_requeued(self, manager, applied):
        handle = manager.reserve(["u1"])
        manager.on_resource_changed(_spent("u1"))
        manager.release(handle, success=False)
        newer = manager.reserve(["u1"])
        change = _spent("u1")
        manager.on_resource_changed(change)
        manager.release(newer, success=True)
        assert applied == [change]


class TestExpiry:

    def test_lazy_expiry_replays_queue(self, manager, applied, clock):
        handle = manager.reserve(["u1"], lease_seconds=10)
        change = _spent("u1")
        manager.on_resource_changed(change)
        clock.advance(10.5)
        assert not manager.is_reserved("u1")
        assert applied == [change]
        assert manager.release(handle, success=False) == 0

    def test_sweep_reports_expired_count(self, manager, clock):
        manager.reserve(["u1"], lease_seconds=1)
        manager.reserve(["u2"], lease_seconds=5)
        clock.advance(2)
        assert manager.sweep() == 1
        assert manager.reserved_ids() == frozenset({"u2"})

    def test_timer_expiry_inside_event_loop(self, applied):
        async def scenario():
            mgr = ReservationManager(applied.append)
            mgr.reserve(["u1"], lease_seconds=0.05)
            change = _spent("u1")
            assert mgr.on_resource_changed(change) is False
            await asyncio.sleep(0.2)
            assert applied == [change]
            assert mgr.active() == []
            mgr.close()

        asyncio.run(scenario())

    def test_released_reservation_timer_does_not_fire(self, applied):
        async def scenario():
            mgr = ReservationManager(applied.append)
            handle = mgr.reserve(["u1"], lease_seconds=0.05)
            mgr.on_resource_changed(_spent("u1"))
            mgr.release(handle, success=False)
            await asyncio.sleep(0.15)
            assert applied == []
            mgr.close()

        asyncio.run(scenario())

    def test_run_sweeper_expires_without_timers(self, config, clock, applied):
        config.reservation.sweep_interval_seconds.set(0.01)
        mgr = ReservationManager(applied.append, config=config, clock=clock)
        mgr.reserve(["u1"], lease_seconds=1)
        mgr.on_resource_changed(_spent("u1"))

        async def scenario():
            task = asyncio.ensure_future(mgr.run_sweeper())
            clock.advance(2)
            await asyncio.sleep(0.05)
            mgr.close()
            await asyncio.sleep(0.02)
            task.cancel()

        asyncio.run(scenario())
        assert len(applied) == 1


class TestTeardown:

    def test_close_replays_and_refuses_new_reservations(self, applied, config, clock):
        mgr = ReservationManager(applied.append, config=config, clock=clock)
        mgr.reserve(["u1"])
        mgr.on_resource_changed(_spent("u1"))
        mgr.close()
        assert len(applied) == 1
        with pytest.raises(RuntimeError):
            mgr.reserve(["u2"])

    def test_context_manager_closes(self, applied, config, clock):
        with ReservationManager(applied.append, config=config, clock=clock) as mgr:
            mgr.reserve(["u1"])
            mgr.on_resource_changed(_spent("u1"))
        assert len(applied) == 1
