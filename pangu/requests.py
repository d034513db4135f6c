"""Timestamped signed requests: guarantor-group membership and capsule addresses.

Both carry a custom-epoch timestamp the peer only accepts inside its validity
window, and both are signed over their canonical bytes with the signature
field excluded.
"""

from __future__ import annotations

from typing import Mapping, Optional

from pangu.config import PanguConfig, get_config
from pangu.errors import SerializationContractViolation, ValidationError
from pangu.observability import PanguLayer, get_logger
from pangu.records import (
    AddressData,
    CapsuleAddressRequest,
    FlowAddressEntry,
    FlowApply,
    PublicKeyNew,
    WireRecord,
)
from pangu.signing import Secret, public_key_from_secret, sign, verify
from pangu.timestamps import RequestKind, timestamp_for, within_window

logger = get_logger("requests", PanguLayer.REQUESTS)

FLOW_JOIN = 1
FLOW_LEAVE = 0


def _signed(record: WireRecord, field_name: str, secret: Secret) -> None:
    public_key = public_key_from_secret(secret)
    signature = sign(record, (field_name,), secret)
    # Catch drift before the peer does.
    if not verify(record, signature, (field_name,), public_key):
        raise SerializationContractViolation(type(record).WIRE_NAME, "local signature check failed")
    setattr(record, record.spec(field_name).attr, signature)


def build_flow_apply(
    account_id: str,
    group_id: str,
    account_secret: Secret,
    join: bool = True,
    addresses: Optional[Mapping[str, PublicKeyNew]] = None,
    now: Optional[float] = None,
) -> FlowApply:
    """Join (with the wallet's address keys) or leave a guarantor group.

    A leave carries an empty address map; the peer re-serializes whatever it
    decodes, and an empty map round-trips where populated entries would not.
    """
    if not account_id:
        raise ValidationError("account_id", "account id is required")
    if not group_id:
        raise ValidationError("group_id", "guarantor group id is required")
    address_msg = {}
    if join:
        for address, key in (addresses or {}).items():
            address_msg[address.lower()] = FlowAddressEntry(AddressData(key))
        if not address_msg:
            raise ValidationError("addresses", "joining a group needs at least one wallet address")

    request = FlowApply(
        status=FLOW_JOIN if join else FLOW_LEAVE,
        user_id=account_id,
        user_peer_id="",
        guar_group_id=group_id,
        user_public_key=public_key_from_secret(account_secret),
        address_msg=address_msg,
        time_stamp=timestamp_for(RequestKind.FLOW_APPLY, now),
    )
    _signed(request, "UserSig", account_secret)
    logger.info(
        "Built flow apply",
        group_id=group_id,
        status=request.status,
        addresses=len(address_msg),
    )
    return request


def build_capsule_request(
    address: str,
    secret: Secret,
    account_id: str = "",
    now: Optional[float] = None,
) -> CapsuleAddressRequest:
    """Ask for a capsule address.

    Group members sign with the account key and name their account;
    otherwise the address key signs and UserID stays empty.
    """
    normalized = address.strip().lower()
    if normalized.startswith("0x"):
        normalized = normalized[2:]
    if len(normalized) != 40 or any(c not in "0123456789abcdef" for c in normalized):
        raise ValidationError("address", f"malformed address {address!r}", address)
    request = CapsuleAddressRequest(
        user_id=account_id,
        address=normalized,
        timestamp=timestamp_for(RequestKind.CAPSULE_ADDRESS, now),
    )
    _signed(request, "Sig", secret)
    return request


def is_fresh(request: WireRecord, now: Optional[float] = None, config: Optional[PanguConfig] = None) -> bool:
    """Whether a built request is still inside the peer's validity window."""
    window = (config or get_config()).timestamps.validity_window_seconds.get()
    if isinstance(request, FlowApply):
        return within_window(RequestKind.FLOW_APPLY, request.time_stamp, now, window)
    if isinstance(request, CapsuleAddressRequest):
        return within_window(RequestKind.CAPSULE_ADDRESS, request.timestamp, now, window)
    raise TypeError(f"{type(request).__name__} carries no windowed timestamp")
