"""Account-update decoding, schema validation and the polling synchronizer."""

import asyncio
import json
import pathlib

import pytest

from pangu.errors import PayloadValidationError
from pangu.reservation import ReservationManager
from pangu.sync import (
    AccountSynchronizer,
    ChangeKind,
    decode_account_update,
    validate_account_update,
)

FIXTURES = pathlib.Path(__file__).resolve().parent / "fixtures"


def _update_for(address: str) -> dict:
    text = (FIXTURES / "account_update.json").read_text(encoding="utf-8")
    return json.loads(text.replace("ADDRESS_PLACEHOLDER", address))


class TestDecode:

    def test_changes_in_document_order(self, keys):
        a = keys["a"]["address"]
        changes = decode_account_update(_update_for(a))
        assert [c.kind for c in changes] == [
            ChangeKind.UNIT_ADDED,
            ChangeKind.UNIT_SPENT,
            ChangeKind.CERT_REVOKED,
            ChangeKind.CERT_INTEREST,
            ChangeKind.HEIGHT_ADVANCED,
        ]

    def test_unit_added_payload(self, keys):
        a = keys["a"]["address"]
        added = decode_account_update(_update_for(a))[0]
        assert added.address_id == a
        assert added.unit_id == "d1d1d1d1d1d1d1d1_0"
        unit = added.payload
        assert unit.value == 12.5
        assert unit.position.blocknum == 42
        assert unit.source_output.to_address == a

    def test_spent_ids_normalized(self, keys):
        spent = decode_account_update(_update_for(keys["a"]["address"]))[1]
        assert spent.unit_id == "bbbbbbbbbbbbbbbb_1"

    def test_interest_and_height_values(self, keys):
        changes = decode_account_update(_update_for(keys["a"]["address"]))
        assert changes[3].payload == 0.25
        assert changes[4].payload == 43

    def test_accepts_bytes(self, keys):
        raw = json.dumps(_update_for(keys["a"]["address"])).encode("utf-8")
        assert len(decode_account_update(raw)) == 5

    def test_no_wallet_change_yields_height_only(self, keys):
        doc = _update_for(keys["a"]["address"])
        doc["IsNoWalletChange"] = True
        changes = decode_account_update(doc)
        assert [c.kind for c in changes] == [ChangeKind.HEIGHT_ADVANCED]

    def test_null_sections_are_empty(self):
        doc = {"BlockHeight": 3, "WalletChangeData": None, "TXCerChangeData": None}
        assert [c.kind for c in decode_account_update(doc)] == [ChangeKind.HEIGHT_ADVANCED]


class TestSchema:

    def test_fixture_is_valid(self, keys):
        assert validate_account_update(_update_for(keys["a"]["address"])) == []

    def test_missing_height_rejected(self):
        with pytest.raises(PayloadValidationError) as exc:
            decode_account_update({"UserID": "u"})
        assert any("BlockHeight" in e for e in exc.value.errors)

    def test_bad_certificate_status_rejected(self, keys):
        doc = _update_for(keys["a"]["address"])
        doc["TXCerChangeData"][0]["Status"] = 7
        with pytest.raises(PayloadValidationError):
            decode_account_update(doc)

    def test_bad_unit_rejected_through_reference(self, keys):
        doc = _update_for(keys["a"]["address"])
        entry = doc["WalletChangeData"]["In"][keys["a"]["address"]][0]
        del entry["UTXOData"]["Value"]
        errors = validate_account_update(doc)
        assert errors and "Value" in errors[0]

    def test_invalid_json_rejected(self):
        with pytest.raises(PayloadValidationError):
            decode_account_update(b"{not json")


# =============================================================================
# SYNCHRONIZER
# =============================================================================

class _Source:
    def __init__(self, batches):
        self.batches = list(batches)

    async def fetch_updates(self):
        if not self.batches:
            return []
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch


class TestSynchronizer:

    def test_poll_delivers_into_wallet(self, wallet, keys, config, clock):
        a = keys["a"]["address"]
        sink = ReservationManager(wallet.apply_change, config=config, clock=clock)
        sync = AccountSynchronizer(_Source([[_update_for(a)]]), sink, config=config)
        assert asyncio.run(sync.poll_once()) == 5
        assert wallet.find_unit("d1d1d1d1d1d1d1d1_0") is not None
        assert wallet.height == 43
        assert wallet.address(a).interest == 5.25

    def test_reserved_unit_change_is_queued(self, wallet, keys, config, clock):
        a = keys["a"]["address"]
        doc = {"BlockHeight": 1, "WalletChangeData": {"Out": ["aaaaaaaaaaaaaaaa + 0"]}}
        sink = ReservationManager(wallet.apply_change, config=config, clock=clock)
        handle = sink.reserve(["aaaaaaaaaaaaaaaa_0"])
        asyncio.run(AccountSynchronizer(_Source([[doc]]), sink, config=config).poll_once())
        assert wallet.find_unit("aaaaaaaaaaaaaaaa_0") is not None
        sink.release(handle, success=True)
        assert wallet.find_unit("aaaaaaaaaaaaaaaa_0") is None
        assert a in wallet

    def test_run_pauses_after_repeated_failures(self, wallet, config, clock):
        config.sync.max_consecutive_failures.set(2)
        config.sync.poll_interval_seconds.set(0.001)
        sink = ReservationManager(wallet.apply_change, config=config, clock=clock)
        source = _Source([OSError("down"), OSError("still down"), []])
        sync = AccountSynchronizer(source, sink, config=config)
        asyncio.run(sync.run())
        assert sync.paused
        assert sync.consecutive_failures == 2
        sync.resume()
        assert not sync.paused and sync.consecutive_failures == 0

    def test_failure_count_resets_on_success(self, wallet, config, clock):
        sink = ReservationManager(wallet.apply_change, config=config, clock=clock)
        sync = AccountSynchronizer(_Source([[]]), sink, config=config)
        sync.consecutive_failures = 3
        asyncio.run(sync.poll_once())
        assert sync.consecutive_failures == 0
