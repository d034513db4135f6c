"""
Account Synchronization

Decodes account-update documents from the assigning node into ordered
ResourceChange events and feeds them, in arrival order, into the
reservation manager's intake path.

Change order within one document:

    1. In       new units, per address, in document order
    2. Out      spent unit ids
    3. TXCer    certificate status changes
    4. Used     interest returned for used certificates
    5. Height   block height advance

Copyright (c) 2026 Pangu. All rights reserved.
"""

from __future__ import annotations

import asyncio
import functools
import json
from typing import Any, List, Mapping, Optional, Protocol, Sequence, Union

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from pangu.config import PanguConfig, get_config
from pangu.core import SCHEMAS_DIR, load_json
from pangu.errors import PayloadValidationError
from pangu.observability import (
    PanguLayer,
    generate_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
)
from pangu.records import UTXOData
from pangu.wallet import ChangeKind, ResourceChange, SpendableUnit, normalize_unit_id

logger = get_logger("sync", PanguLayer.SYNC)

ACCOUNT_UPDATE_SCHEMA = SCHEMAS_DIR / "account-update.schema.json"

_CERT_STATUS = {
    0: ChangeKind.CERT_CONFIRMED,
    1: ChangeKind.CERT_REVOKED,
    2: ChangeKind.CERT_CLEARED,
}

__all__ = [
    "AccountSynchronizer",
    "ChangeKind",
    "ResourceChange",
    "UpdateSource",
    "decode_account_update",
    "validate_account_update",
]


# =============================================================================
# SCHEMA VALIDATION
# =============================================================================

@functools.lru_cache(maxsize=None)
def _schema_registry() -> Registry:
    """In-memory registry of the packaged schemas keyed by $id."""
    reg = Registry()
    for path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        contents = load_json(path)
        reg = reg.with_resource(
            contents["$id"],
            Resource.from_contents(contents, default_specification=DRAFT202012),
        )
    return reg


@functools.lru_cache(maxsize=None)
def account_update_validator() -> Draft202012Validator:
    return Draft202012Validator(load_json(ACCOUNT_UPDATE_SCHEMA), registry=_schema_registry())


def validate_account_update(doc: Any) -> List[str]:
    errors = []
    for e in sorted(account_update_validator().iter_errors(doc), key=str):
        errors.append(f"{list(e.absolute_path)}: {e.message}")
    return errors


# =============================================================================
# DECODING
# =============================================================================

def _parse(payload: Union[bytes, str, Mapping[str, Any]]) -> Mapping[str, Any]:
    if isinstance(payload, Mapping):
        return payload
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    try:
        return json.loads(payload)
    except ValueError as ex:
        raise PayloadValidationError("account-update", [f"invalid JSON: {ex}"]) from ex


def decode_account_update(payload: Union[bytes, str, Mapping[str, Any]]) -> List[ResourceChange]:
    """Validate an account-update document and expand it into ordered changes."""
    doc = _parse(payload)
    errors = validate_account_update(doc)
    if errors:
        raise PayloadValidationError("account-update", errors)

    height = ResourceChange("", "", ChangeKind.HEIGHT_ADVANCED, int(doc["BlockHeight"]))
    if doc.get("IsNoWalletChange"):
        return [height]

    changes: List[ResourceChange] = []
    wallet_change = doc.get("WalletChangeData") or {}

    for address, entries in (wallet_change.get("In") or {}).items():
        for entry in entries or []:
            try:
                data = UTXOData.from_wire(entry["UTXOData"])
            except ValueError as ex:
                raise PayloadValidationError("account-update", [f"In[{address}]: {ex}"]) from ex
            if entry.get("IsTXCerUTXO"):
                data.is_txcer_utxo = True
            unit = SpendableUnit.from_utxo_data(data)
            changes.append(ResourceChange(address.lower(), unit.unit_id, ChangeKind.UNIT_ADDED, unit))

    for raw in wallet_change.get("Out") or []:
        changes.append(ResourceChange("", normalize_unit_id(raw), ChangeKind.UNIT_SPENT))

    for cert in doc.get("TXCerChangeData") or []:
        kind = _CERT_STATUS[cert["Status"]]
        promoted = normalize_unit_id(cert.get("UTXO") or "")
        changes.append(ResourceChange("", cert["TXCerID"], kind, promoted or None))

    for used in doc.get("UsedTXCerChangeData") or []:
        changes.append(ResourceChange(
            used["ToAddress"].lower(),
            used["TXCerID"],
            ChangeKind.CERT_INTEREST,
            float(used["ToInterest"]),
        ))

    changes.append(height)
    return changes


# =============================================================================
# SYNCHRONIZER
# =============================================================================

class UpdateSource(Protocol):
    """Where account-update documents come from (push buffer or poll endpoint)."""

    async def fetch_updates(self) -> Sequence[Union[bytes, str, Mapping[str, Any]]]:
        ...


class ChangeSink(Protocol):
    def on_resource_changed(self, change: ResourceChange) -> bool:
        ...


class AccountSynchronizer:
    """Polls an UpdateSource and delivers every change to a sink in arrival order."""

    def __init__(
        self,
        source: UpdateSource,
        sink: ChangeSink,
        config: Optional[PanguConfig] = None,
    ):
        self._source = source
        self._sink = sink
        self._config = config or get_config()
        self.consecutive_failures = 0
        self.paused = False
        self.delivered = 0

    async def poll_once(self) -> int:
        """Fetch and deliver one batch; returns the number of changes delivered."""
        token = set_correlation_id(generate_correlation_id("sync"))
        try:
            documents = await self._source.fetch_updates()
            count = 0
            for doc in documents:
                for change in decode_account_update(doc):
                    self._sink.on_resource_changed(change)
                    count += 1
            self.consecutive_failures = 0
            self.delivered += count
            if count:
                logger.info("Delivered account changes", documents=len(documents), changes=count)
            return count
        finally:
            reset_correlation_id(token)

    async def run(self) -> None:
        """Poll until cancelled or paused by repeated failures."""
        interval = self._config.sync.poll_interval_seconds.get()
        limit = self._config.sync.max_consecutive_failures.get()
        while not self.paused:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                self.consecutive_failures += 1
                logger.error(
                    "Account poll failed",
                    error_code="SYNC_POLL_FAILED",
                    exc_info=True,
                    failures=self.consecutive_failures,
                    error=str(ex),
                )
                if self.consecutive_failures >= limit:
                    self.paused = True
                    logger.warning("Account polling paused", failures=self.consecutive_failures)
                    break
            await asyncio.sleep(interval)

    def resume(self) -> None:
        self.paused = False
        self.consecutive_failures = 0
