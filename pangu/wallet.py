"""
Wallet Live State

Addresses, their spendable units and certificate units, and the change
events that mutate them. `Wallet.apply_change` is the single entry point for
external state changes; the reservation manager calls it either immediately
or, for reserved ids, on replay.

Copyright (c) 2026 Pangu. All rights reserved.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from pangu.config import PanguConfig, get_config
from pangu.errors import ValidationError
from pangu.observability import PanguLayer, get_logger
from pangu.records import PublicKeyNew, TxCertificate, TxPosition, TXOutput, UTXOData

logger = get_logger("wallet", PanguLayer.WALLET)

ASSET_TYPES = (0, 1, 2)


def unit_id(txid: str, index_z: int) -> str:
    return f"{txid}_{index_z}"


def normalize_unit_id(raw: str) -> str:
    """Map the peer's "<txid> + <indexZ>" form onto "<txid>_<indexZ>"."""
    if " + " in raw:
        return raw.replace(" + ", "_", 1)
    return raw


# =============================================================================
# UNITS
# =============================================================================

@dataclass
class SpendableUnit:
    """A confirmed unspent output owned by one address."""
    unit_id: str
    value: float
    asset_type: int
    source_txid: str
    position: TxPosition = field(default_factory=TxPosition)
    source_output: Optional[TXOutput] = None
    time_ms: int = 0
    from_certificate: bool = False

    is_certificate = False

    @classmethod
    def from_utxo_data(cls, data: UTXOData) -> "SpendableUnit":
        """Build a unit from an update's UTXOData, resolving the referenced output."""
        txid = data.utxo.txid
        index_z = data.position.index_z
        # Older peers append " + <indexZ>" to the txid itself.
        if " + " in txid:
            txid, _, suffix = txid.partition(" + ")
            if index_z == 0 and suffix.strip().isdigit():
                index_z = int(suffix.strip())
        outputs = data.utxo.tx_outputs or []
        source = outputs[index_z] if 0 <= index_z < len(outputs) else None
        position = TxPosition(
            data.position.blocknum,
            data.position.index_x,
            data.position.index_y,
            index_z,
        )
        return cls(
            unit_id=unit_id(txid, index_z),
            value=data.value,
            asset_type=data.coin_type,
            source_txid=txid,
            position=position,
            source_output=source,
            time_ms=data.time,
            from_certificate=data.is_txcer_utxo,
        )


class CertificateState(Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


@dataclass
class CertificateUnit:
    """A provisional claim; never persisted, always rehydrated from sync."""
    unit_id: str
    value: float
    asset_type: int
    certificate: TxCertificate
    state: CertificateState = CertificateState.ACTIVE

    is_certificate = True

    @classmethod
    def from_certificate(cls, cert_id: str, cert: TxCertificate, asset_type: int = 0) -> "CertificateUnit":
        return cls(cert_id, cert.value, asset_type, cert)


@dataclass
class AddressRecord:
    address: str
    public_key: PublicKeyNew
    asset_type: int = 0
    units: Dict[str, SpendableUnit] = field(default_factory=dict)
    certificates: Dict[str, CertificateUnit] = field(default_factory=dict)
    interest: float = 0.0

    @property
    def utxo_value(self) -> float:
        return sum(u.value for u in self.units.values())

    @property
    def cert_value(self) -> float:
        return sum(
            c.value for c in self.certificates.values() if c.state is CertificateState.ACTIVE
        )

    @property
    def total_value(self) -> float:
        return self.utxo_value + self.cert_value


# =============================================================================
# CHANGE EVENTS
# =============================================================================

class ChangeKind(Enum):
    UNIT_ADDED = "unit_added"
    UNIT_SPENT = "unit_spent"
    CERT_CONFIRMED = "cert_confirmed"
    CERT_REVOKED = "cert_revoked"
    CERT_CLEARED = "cert_cleared"
    CERT_INTEREST = "cert_interest"
    HEIGHT_ADVANCED = "height_advanced"


@dataclass(frozen=True)
class ResourceChange:
    """One external state change.

    `address_id` is empty when the peer does not say which address owns
    the unit; `unit_id` is empty for changes that touch no unit.
    """
    address_id: str
    unit_id: str
    kind: ChangeKind
    payload: Any = None


@dataclass(frozen=True)
class PendingSpend:
    txid: str
    marked_at: float


# =============================================================================
# WALLET
# =============================================================================

class Wallet:
    """Live view of one account's addresses and holdings."""

    def __init__(
        self,
        account_id: str,
        config: Optional[PanguConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.account_id = account_id
        self._config = config or get_config()
        self._clock = clock
        self._addresses: Dict[str, AddressRecord] = {}
        self._pending: Dict[str, PendingSpend] = {}
        self.height = 0

    # -- addresses ---------------------------------------------------------

    def add_address(
        self,
        address: str,
        public_key: PublicKeyNew,
        asset_type: int = 0,
        interest: float = 0.0,
    ) -> AddressRecord:
        if asset_type not in ASSET_TYPES:
            raise ValidationError("asset_type", f"unknown asset type {asset_type}", asset_type)
        record = AddressRecord(address.lower(), public_key, asset_type, interest=interest)
        self._addresses[record.address] = record
        return record

    def get_address(self, address: str) -> Optional[AddressRecord]:
        return self._addresses.get(address.lower())

    def address(self, address: str) -> AddressRecord:
        record = self.get_address(address)
        if record is None:
            raise ValidationError("address", f"address {address} is not in the wallet", address)
        return record

    def addresses(self) -> List[AddressRecord]:
        return list(self._addresses.values())

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and address.lower() in self._addresses

    def __iter__(self) -> Iterator[AddressRecord]:
        return iter(list(self._addresses.values()))

    # -- holdings ----------------------------------------------------------

    def add_unit(self, address: str, unit: SpendableUnit) -> None:
        self.address(address).units[unit.unit_id] = unit

    def add_certificate(self, address: str, cert: CertificateUnit) -> None:
        self.address(address).certificates[cert.unit_id] = cert

    def find_unit(self, uid: str) -> Optional[Tuple[AddressRecord, SpendableUnit]]:
        uid = normalize_unit_id(uid)
        for record in self._addresses.values():
            unit = record.units.get(uid)
            if unit is not None:
                return record, unit
        return None

    def find_certificate(self, cid: str) -> Optional[Tuple[AddressRecord, CertificateUnit]]:
        for record in self._addresses.values():
            cert = record.certificates.get(cid)
            if cert is not None:
                return record, cert
        return None

    def balances(self) -> Dict[int, float]:
        totals = {t: 0.0 for t in ASSET_TYPES}
        for record in self._addresses.values():
            for unit in record.units.values():
                totals[unit.asset_type] = totals.get(unit.asset_type, 0.0) + unit.value
            for cert in record.certificates.values():
                if cert.state is CertificateState.ACTIVE:
                    totals[cert.asset_type] = totals.get(cert.asset_type, 0.0) + cert.value
        return totals

    def gas_total(self) -> float:
        return sum(record.interest for record in self._addresses.values())

    # -- pending spends ----------------------------------------------------

    def mark_pending(self, unit_ids: Iterable[str], txid: str) -> None:
        now = self._clock()
        for uid in unit_ids:
            self._pending[uid] = PendingSpend(txid, now)
        logger.info("Marked units pending", txid=txid, count=len(self._pending))

    def clear_pending(self, txid: str) -> List[str]:
        """Drop every pending mark placed for `txid`; returns the freed ids."""
        freed = [uid for uid, mark in self._pending.items() if mark.txid == txid]
        for uid in freed:
            del self._pending[uid]
        return freed

    def is_pending(self, uid: str) -> bool:
        mark = self._pending.get(uid)
        if mark is None:
            return False
        ttl = self._config.wallet.pending_spend_ttl_seconds.get()
        if self._clock() - mark.marked_at >= ttl:
            del self._pending[uid]
            logger.info("Pending mark expired", unit_id=uid, txid=mark.txid)
            return False
        return True

    def pending_ids(self) -> Set[str]:
        return {uid for uid in list(self._pending) if self.is_pending(uid)}

    # -- selection views ---------------------------------------------------

    def eligible_units(self, address: str, exclude: Iterable[str] = ()) -> List[SpendableUnit]:
        """Units of `address` that are not pending and not excluded, in holding order."""
        skip = set(exclude)
        return [
            unit for unit in self.address(address).units.values()
            if unit.unit_id not in skip and not self.is_pending(unit.unit_id)
        ]

    def eligible_certificates(self, address: str, exclude: Iterable[str] = ()) -> List[CertificateUnit]:
        skip = set(exclude)
        return [
            cert for cert in self.address(address).certificates.values()
            if cert.state is CertificateState.ACTIVE
            and cert.unit_id not in skip
            and not self.is_pending(cert.unit_id)
        ]

    # -- change application ------------------------------------------------

    def apply_change(self, change: ResourceChange) -> None:
        kind = change.kind
        if kind is ChangeKind.UNIT_ADDED:
            self._apply_unit_added(change)
        elif kind is ChangeKind.UNIT_SPENT:
            self._apply_unit_spent(change)
        elif kind is ChangeKind.CERT_CONFIRMED:
            # The promoted output arrives separately as UNIT_ADDED.
            self._remove_certificate(change.unit_id)
            self._pending.pop(change.unit_id, None)
        elif kind is ChangeKind.CERT_REVOKED:
            found = self.find_certificate(change.unit_id)
            if found is not None:
                found[1].state = CertificateState.REVOKED
        elif kind is ChangeKind.CERT_CLEARED:
            found = self.find_certificate(change.unit_id)
            if found is not None:
                found[1].state = CertificateState.ACTIVE
        elif kind is ChangeKind.CERT_INTEREST:
            record = self.get_address(change.address_id)
            if record is None:
                logger.warning("Interest for unknown address", address=change.address_id)
                return
            record.interest += float(change.payload or 0.0)
        elif kind is ChangeKind.HEIGHT_ADVANCED:
            height = int(change.payload or 0)
            if height > self.height:
                self.height = height
        logger.debug("Applied change", kind=kind.value, unit_id=change.unit_id)

    def _apply_unit_added(self, change: ResourceChange) -> None:
        record = self.get_address(change.address_id)
        if record is None:
            logger.warning("Unit for unknown address skipped", address=change.address_id)
            return
        unit: SpendableUnit = change.payload
        if unit.unit_id in record.units:
            return
        record.units[unit.unit_id] = unit

    def _apply_unit_spent(self, change: ResourceChange) -> None:
        uid = normalize_unit_id(change.unit_id)
        self._pending.pop(uid, None)
        for record in self._addresses.values():
            if change.address_id and record.address != change.address_id.lower():
                continue
            record.units.pop(uid, None)
            record.units.pop(change.unit_id, None)

    def _remove_certificate(self, cid: str) -> None:
        for record in self._addresses.values():
            record.certificates.pop(cid, None)
