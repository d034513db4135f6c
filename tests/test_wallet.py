"""Wallet live state, change application and unit selection."""

import pytest

from conftest import ACCOUNT_ID, make_unit

from pangu.errors import InsufficientResources, ValidationError
from pangu.records import SubATX, TxCertificate, TXOutput, TxPosition, UTXOData
from pangu.selection import select_units
from pangu.wallet import (
    CertificateState,
    CertificateUnit,
    ChangeKind,
    ResourceChange,
    SpendableUnit,
    Wallet,
    normalize_unit_id,
    unit_id,
)


# =============================================================================
# UNITS
# =============================================================================

class TestUnits:

    def test_unit_id_forms(self):
        assert unit_id("abcd", 2) == "abcd_2"
        assert normalize_unit_id("abcd + 2") == "abcd_2"
        assert normalize_unit_id("abcd_2") == "abcd_2"

    def test_from_utxo_data_resolves_source_output(self):
        outputs = [TXOutput(to_address="x", to_value=v) for v in (1.0, 2.0, 3.0)]
        data = UTXOData(
            utxo=SubATX(txid="feed", tx_outputs=outputs),
            value=3.0,
            coin_type=0,
            time=1700000000000,
            position=TxPosition(blocknum=5, index_x=1, index_y=2, index_z=2),
        )
        unit = SpendableUnit.from_utxo_data(data)
        assert unit.unit_id == "feed_2"
        assert unit.source_output is outputs[2]
        assert (unit.position.blocknum, unit.position.index_z) == (5, 2)

    def test_from_utxo_data_with_suffixed_txid(self):
        outputs = [TXOutput(to_value=1.0), TXOutput(to_value=4.0)]
        data = UTXOData(utxo=SubATX(txid="feed + 1", tx_outputs=outputs), value=4.0)
        unit = SpendableUnit.from_utxo_data(data)
        assert unit.unit_id == "feed_1"
        assert unit.source_txid == "feed"
        assert unit.source_output is outputs[1]

    def test_certificate_unit(self):
        cert = TxCertificate(to_address="x", value=4.0)
        unit = CertificateUnit.from_certificate("cer-1", cert)
        assert unit.is_certificate and unit.unit_id == "cer-1" and unit.value == 4.0


# =============================================================================
# WALLET
# =============================================================================

class TestWallet:

    def test_addresses_are_lowercased(self, wallet, keys):
        upper = keys["a"]["address"].upper()
        assert upper in wallet
        assert wallet.address(upper).address == keys["a"]["address"]

    def test_unknown_address_raises(self, wallet):
        with pytest.raises(ValidationError):
            wallet.address("00" * 20)

    def test_unknown_asset_type_rejected(self, wallet, keys):
        with pytest.raises(ValidationError):
            wallet.add_address("11" * 20, keys["a"]["public_key"], asset_type=7)

    def test_balances(self, wallet):
        assert wallet.balances() == {0: 100.0, 1: 2.0, 2: 0.0}
        assert wallet.gas_total() == 5.0

    def test_pending_units_are_not_eligible(self, wallet, keys):
        a = keys["a"]["address"]
        wallet.mark_pending(["aa" * 8 + "_0"], "tx1")
        assert [u.value for u in wallet.eligible_units(a)] == [30.0]
        assert wallet.clear_pending("tx1") == ["aa" * 8 + "_0"]
        assert len(wallet.eligible_units(a)) == 2

    def test_pending_mark_expires(self, wallet, config, clock):
        config.wallet.pending_spend_ttl_seconds.set(60.0)
        wallet.mark_pending(["u1"], "tx1")
        assert wallet.is_pending("u1")
        clock.advance(61)
        assert not wallet.is_pending("u1")
        assert wallet.pending_ids() == set()

    def test_unit_spent_removes_unit_and_pending_mark(self, wallet, keys):
        uid = "aa" * 8 + "_0"
        wallet.mark_pending([uid], "tx1")
        wallet.apply_change(ResourceChange("", "aa" * 8 + " + 0", ChangeKind.UNIT_SPENT))
        assert wallet.find_unit(uid) is None
        assert not wallet.is_pending(uid)

    def test_unit_added_is_idempotent(self, wallet, keys):
        a = keys["a"]["address"]
        unit = make_unit(a, "dd" * 8, 0, 5.0)
        change = ResourceChange(a, unit.unit_id, ChangeKind.UNIT_ADDED, unit)
        wallet.apply_change(change)
        wallet.apply_change(change)
        assert wallet.balances()[0] == 105.0

    def test_unit_for_unknown_address_skipped(self, wallet):
        unit = make_unit("ee" * 20, "dd" * 8, 0, 5.0)
        wallet.apply_change(ResourceChange("ee" * 20, unit.unit_id, ChangeKind.UNIT_ADDED, unit))
        assert wallet.find_unit(unit.unit_id) is None

    def test_certificate_lifecycle(self, wallet, keys):
        a = keys["a"]["address"]
        cert = CertificateUnit.from_certificate("cer-1", TxCertificate(value=4.0))
        wallet.add_certificate(a, cert)
        assert wallet.address(a).cert_value == 4.0

        wallet.apply_change(ResourceChange("", "cer-1", ChangeKind.CERT_REVOKED))
        assert cert.state is CertificateState.REVOKED
        assert wallet.eligible_certificates(a) == []

        wallet.apply_change(ResourceChange("", "cer-1", ChangeKind.CERT_CLEARED))
        assert cert.state is CertificateState.ACTIVE

        wallet.apply_change(ResourceChange("", "cer-1", ChangeKind.CERT_CONFIRMED))
        assert wallet.find_certificate("cer-1") is None

    def test_interest_and_height(self, wallet, keys):
        a = keys["a"]["address"]
        wallet.apply_change(ResourceChange(a, "cer-2", ChangeKind.CERT_INTEREST, 0.5))
        assert wallet.address(a).interest == 5.5
        wallet.apply_change(ResourceChange("", "", ChangeKind.HEIGHT_ADVANCED, 10))
        wallet.apply_change(ResourceChange("", "", ChangeKind.HEIGHT_ADVANCED, 8))
        assert wallet.height == 10


# =============================================================================
# SELECTION
# =============================================================================

class TestSelection:

    def test_largest_first_covers_amount_plus_fee(self, wallet, keys):
        a = keys["a"]["address"]
        selection = select_units(wallet, [a], {0: 51.0})
        assert [p.unit.value for p in selection.picks] == [70.0]
        assert selection.leftover(0) == 19.0

    def test_takes_more_units_when_needed(self, wallet, keys):
        a = keys["a"]["address"]
        selection = select_units(wallet, [a], {0: 80.0})
        assert [p.unit.value for p in selection.picks] == [70.0, 30.0]
        assert selection.totals[0] == 100.0

    def test_insufficient_reports_shortfall(self, wallet, keys):
        a = keys["a"]["address"]
        with pytest.raises(InsufficientResources) as exc:
            select_units(wallet, [a], {0: 120.0})
        assert exc.value.available == 100.0
        assert exc.value.shortfall == 20.0

    def test_float_sum_within_epsilon_covers_target(self, keys, config, clock):
        a = keys["a"]["address"]
        w = Wallet(ACCOUNT_ID, config=config, clock=clock)
        w.add_address(a, keys["a"]["public_key"], asset_type=0)
        for i, value in enumerate((0.7, 0.2, 0.1)):
            w.add_unit(a, make_unit(a, "ee" * 8, i, value))
        selection = select_units(w, [a], {0: 1.0})
        assert len(selection.picks) == 3
        assert abs(selection.leftover(0)) < 1e-8
        with pytest.raises(InsufficientResources):
            select_units(w, [a], {0: 1.001})

    def test_excluded_ids_are_skipped(self, wallet, keys):
        a = keys["a"]["address"]
        selection = select_units(wallet, [a], {0: 20.0}, exclude=["aa" * 8 + "_0"])
        assert selection.unit_ids == ["bb" * 8 + "_1"]

    def test_multiple_asset_types_and_sources(self, wallet, keys):
        a, b = keys["a"]["address"], keys["b"]["address"]
        selection = select_units(wallet, [a, b], {0: 10.0, 1: 1.5, 2: 0.0})
        assert selection.contributing_addresses() == [a, b]
        assert selection.leftover(1) == 0.5
        assert 2 not in selection.totals

    def test_certificates_only_when_enabled(self, wallet, keys):
        b = keys["b"]["address"]
        cert = CertificateUnit(
            "cer-9", 10.0, 1, TxCertificate(to_address=b, value=10.0)
        )
        wallet.add_certificate(b, cert)
        with pytest.raises(InsufficientResources):
            select_units(wallet, [b], {1: 5.0})
        selection = select_units(wallet, [b], {1: 5.0}, use_certificates=True)
        assert [p.unit_id for p in selection.certificates] == ["cer-9"]
        assert selection.spendable == []
