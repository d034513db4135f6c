"""
Wire Record Types

Typed records exchanged with the remote peer, each with a hand-maintained
field table. The peer marshals its structures through runtime reflection, so
field order, declared kinds and zero values cannot be derived here; they are
written down per record, in the peer's declaration order, and checked at
import time.

Kinds follow the peer's type system:

    STRING  string               INT    any integer type
    FLOAT   float64              BOOL   bool
    BIGINT  *big.Int (nullable)  BYTES  []byte (base64 on the wire, nullable)
    STRUCT  nested struct        LIST   slice (nullable)
    MAP     map (nullable, the only values serialized with sorted keys)

Copyright (c) 2026 Pangu. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import (
    Any,
    ClassVar,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
)

from pangu.core import coerce_bytes, hex_to_int
from pangu.errors import SerializationContractViolation


# =============================================================================
# FIELD TABLES
# =============================================================================

class Kind(Enum):
    STRING = "string"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    BIGINT = "bigint"
    BYTES = "bytes"
    STRUCT = "struct"
    LIST = "list"
    MAP = "map"


# Field names that carry arbitrary-precision integers. Only these are
# emitted as bare numeric literals.
BIGINT_FIELD_NAMES: FrozenSet[str] = frozenset({"X", "Y", "R", "S", "D"})

SCALAR_KINDS = frozenset({Kind.STRING, Kind.INT, Kind.FLOAT, Kind.BOOL, Kind.BIGINT, Kind.BYTES})


@dataclass(frozen=True)
class FieldSpec:
    """One declared field: wire name, Python attribute and declared kind.

    `elem` is the element kind of a LIST or the value kind of a MAP;
    `record` is the struct type of a STRUCT field or of LIST/MAP elements;
    `key` is the key kind of a MAP (STRING or INT).
    """
    wire: str
    attr: str
    kind: Kind
    elem: Optional[Kind] = None
    record: Optional[Type["WireRecord"]] = None
    key: Kind = Kind.STRING


def F(
    wire: str,
    attr: str,
    kind: Kind,
    elem: Optional[Kind] = None,
    record: Optional[Type["WireRecord"]] = None,
    key: Kind = Kind.STRING,
) -> FieldSpec:
    return FieldSpec(wire, attr, kind, elem, record, key)


def _lookup(data: Mapping[str, Any], name: str) -> Tuple[bool, Any]:
    # The peer's decoder matches keys case-insensitively, preferring exact.
    if name in data:
        return True, data[name]
    folded = name.casefold()
    for key, value in data.items():
        if isinstance(key, str) and key.casefold() == folded:
            return True, value
    return False, None


def _decode_value(kind: Kind, record: Optional[Type["WireRecord"]], raw: Any, where: str) -> Any:
    if kind is Kind.STRING:
        return "" if raw is None else str(raw)
    if kind is Kind.INT:
        if raw is None:
            return 0
        if isinstance(raw, float) and not raw.is_integer():
            raise ValueError(f"{where}: expected integer, got {raw!r}")
        return int(raw)
    if kind is Kind.FLOAT:
        return 0.0 if raw is None else float(raw)
    if kind is Kind.BOOL:
        return bool(raw)
    if kind is Kind.BIGINT:
        if raw is None:
            return None
        if isinstance(raw, bool):
            raise ValueError(f"{where}: expected big integer, got {raw!r}")
        if isinstance(raw, int):
            return raw
        if isinstance(raw, float):
            if not raw.is_integer():
                raise ValueError(f"{where}: expected big integer, got {raw!r}")
            return int(raw)
        return int(str(raw).strip(), 10)
    if kind is Kind.BYTES:
        return coerce_bytes(raw)
    if kind is Kind.STRUCT:
        assert record is not None
        if raw is None:
            return record()
        return record.from_wire(raw)
    raise ValueError(f"{where}: unsupported element kind {kind}")


class WireRecord:
    """Base for all wire records.

    Subclasses are dataclasses declaring `WIRE_NAME` and `FIELDS`.
    """

    WIRE_NAME: ClassVar[str] = ""
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = ()

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.wire for f in cls.FIELDS)

    @classmethod
    def spec(cls, wire_name: str) -> FieldSpec:
        for f in cls.FIELDS:
            if f.wire == wire_name:
                return f
        raise SerializationContractViolation(
            cls.WIRE_NAME, f"no field named {wire_name!r}"
        )

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "WireRecord":
        """Decode a parsed JSON object the way the peer's decoder would."""
        if not isinstance(data, Mapping):
            raise ValueError(f"{cls.WIRE_NAME}: expected object, got {type(data).__name__}")
        kwargs: Dict[str, Any] = {}
        for f in cls.FIELDS:
            present, raw = _lookup(data, f.wire)
            if not present:
                continue
            where = f"{cls.WIRE_NAME}.{f.wire}"
            if f.kind is Kind.LIST:
                kwargs[f.attr] = None if raw is None else [
                    _decode_value(f.elem, f.record, item, f"{where}[{i}]")  # type: ignore[arg-type]
                    for i, item in enumerate(raw)
                ]
            elif f.kind is Kind.MAP:
                if raw is None:
                    kwargs[f.attr] = None
                else:
                    kwargs[f.attr] = {
                        (int(k) if f.key is Kind.INT else str(k)):
                            _decode_value(f.elem, f.record, v, f"{where}[{k}]")  # type: ignore[arg-type]
                        for k, v in raw.items()
                    }
            else:
                kwargs[f.attr] = _decode_value(f.kind, f.record, raw, where)
        return cls(**kwargs)  # type: ignore[call-arg]


# =============================================================================
# CRYPTOGRAPHIC SUB-RECORDS
# =============================================================================

@dataclass
class EcdsaSignature(WireRecord):
    """Signature components; the zero value has both components null."""
    r: Optional[int] = None
    s: Optional[int] = None

    WIRE_NAME: ClassVar[str] = "EcdsaSignature"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("R", "r", Kind.BIGINT),
        F("S", "s", Kind.BIGINT),
    )

    def is_zero(self) -> bool:
        return self.r is None and self.s is None


@dataclass
class PublicKeyNew(WireRecord):
    curve_name: str = ""
    x: Optional[int] = None
    y: Optional[int] = None

    WIRE_NAME: ClassVar[str] = "PublicKeyNew"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("CurveName", "curve_name", Kind.STRING),
        F("X", "x", Kind.BIGINT),
        F("Y", "y", Kind.BIGINT),
    )

    @classmethod
    def from_hex(cls, x_hex: str, y_hex: str, curve_name: str = "P256") -> "PublicKeyNew":
        """Empty coordinates give the zero point, as used by gas outputs."""
        return cls(curve_name, hex_to_int(x_hex), hex_to_int(y_hex))

    @classmethod
    def zero_point(cls) -> "PublicKeyNew":
        return cls("P256", 0, 0)


@dataclass
class TxPosition(WireRecord):
    blocknum: int = 0
    index_x: int = 0
    index_y: int = 0
    index_z: int = 0

    WIRE_NAME: ClassVar[str] = "TxPosition"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("Blocknum", "blocknum", Kind.INT),
        F("IndexX", "index_x", Kind.INT),
        F("IndexY", "index_y", Kind.INT),
        F("IndexZ", "index_z", Kind.INT),
    )


# =============================================================================
# TRANSACTION RECORDS
# =============================================================================

@dataclass
class TXOutput(WireRecord):
    to_address: str = ""
    to_value: float = 0.0
    to_guar_group_id: str = ""
    to_public_key: PublicKeyNew = field(default_factory=PublicKeyNew)
    to_interest: float = 0.0
    coin_type: int = 0
    to_peer_id: str = ""
    is_pay_for_gas: bool = False
    is_cross_chain: bool = False
    is_guar_make: bool = False

    WIRE_NAME: ClassVar[str] = "TXOutput"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("ToAddress", "to_address", Kind.STRING),
        F("ToValue", "to_value", Kind.FLOAT),
        F("ToGuarGroupID", "to_guar_group_id", Kind.STRING),
        F("ToPublicKey", "to_public_key", Kind.STRUCT, record=PublicKeyNew),
        F("ToInterest", "to_interest", Kind.FLOAT),
        F("Type", "coin_type", Kind.INT),
        F("ToPeerID", "to_peer_id", Kind.STRING),
        F("IsPayForGas", "is_pay_for_gas", Kind.BOOL),
        F("IsCrossChain", "is_cross_chain", Kind.BOOL),
        F("IsGuarMake", "is_guar_make", Kind.BOOL),
    )


@dataclass
class TXInputNormal(WireRecord):
    from_txid: str = ""
    from_tx_position: TxPosition = field(default_factory=TxPosition)
    from_address: str = ""
    is_guar_make: bool = False
    is_committee_make: bool = False
    is_cross_chain: bool = False
    input_signature: EcdsaSignature = field(default_factory=EcdsaSignature)
    tx_output_hash: Optional[bytes] = None

    WIRE_NAME: ClassVar[str] = "TXInputNormal"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("FromTXID", "from_txid", Kind.STRING),
        F("FromTxPosition", "from_tx_position", Kind.STRUCT, record=TxPosition),
        F("FromAddress", "from_address", Kind.STRING),
        F("IsGuarMake", "is_guar_make", Kind.BOOL),
        F("IsCommitteeMake", "is_committee_make", Kind.BOOL),
        F("IsCrossChain", "is_cross_chain", Kind.BOOL),
        F("InputSignature", "input_signature", Kind.STRUCT, record=EcdsaSignature),
        F("TXOutputHash", "tx_output_hash", Kind.BYTES),
    )


@dataclass
class TxCertificate(WireRecord):
    """A guarantor-issued provisional claim, spent as-is.

    The certificate id travels beside the record, never inside it.
    """
    to_address: str = ""
    value: float = 0.0
    guarantor_group: str = ""
    sig: EcdsaSignature = field(default_factory=EcdsaSignature)

    WIRE_NAME: ClassVar[str] = "TxCertificate"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("ToAddress", "to_address", Kind.STRING),
        F("Value", "value", Kind.FLOAT),
        F("GuarantorGroup", "guarantor_group", Kind.STRING),
        F("Sig", "sig", Kind.STRUCT, record=EcdsaSignature),
    )


@dataclass
class InterestAssign(WireRecord):
    gas: float = 0.0
    output: float = 0.0
    back_assign: Optional[Dict[str, float]] = field(default_factory=dict)

    WIRE_NAME: ClassVar[str] = "InterestAssign"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("Gas", "gas", Kind.FLOAT),
        F("Output", "output", Kind.FLOAT),
        F("BackAssign", "back_assign", Kind.MAP, elem=Kind.FLOAT),
    )


@dataclass
class Transaction(WireRecord):
    txid: str = ""
    size: int = 0
    version: float = 0.0
    guarantor_group: str = ""
    tx_type: int = 0
    value: float = 0.0
    value_division: Optional[Dict[int, float]] = field(default_factory=dict)
    new_value: float = 0.0
    new_value_div: Optional[Dict[int, float]] = field(default_factory=dict)
    interest_assign: InterestAssign = field(default_factory=InterestAssign)
    user_signature: EcdsaSignature = field(default_factory=EcdsaSignature)
    tx_inputs_normal: Optional[List[TXInputNormal]] = field(default_factory=list)
    tx_inputs_certificate: Optional[List[TxCertificate]] = field(default_factory=list)
    tx_outputs: Optional[List[TXOutput]] = field(default_factory=list)
    data: Optional[bytes] = b""

    WIRE_NAME: ClassVar[str] = "Transaction"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("TXID", "txid", Kind.STRING),
        F("Size", "size", Kind.INT),
        F("Version", "version", Kind.FLOAT),
        F("GuarantorGroup", "guarantor_group", Kind.STRING),
        F("TXType", "tx_type", Kind.INT),
        F("Value", "value", Kind.FLOAT),
        F("ValueDivision", "value_division", Kind.MAP, elem=Kind.FLOAT, key=Kind.INT),
        F("NewValue", "new_value", Kind.FLOAT),
        F("NewValueDiv", "new_value_div", Kind.MAP, elem=Kind.FLOAT, key=Kind.INT),
        F("InterestAssign", "interest_assign", Kind.STRUCT, record=InterestAssign),
        F("UserSignature", "user_signature", Kind.STRUCT, record=EcdsaSignature),
        F("TXInputsNormal", "tx_inputs_normal", Kind.LIST, elem=Kind.STRUCT, record=TXInputNormal),
        F("TXInputsCertificate", "tx_inputs_certificate", Kind.LIST, elem=Kind.STRUCT, record=TxCertificate),
        F("TXOutputs", "tx_outputs", Kind.LIST, elem=Kind.STRUCT, record=TXOutput),
        F("Data", "data", Kind.BYTES),
    )


@dataclass
class UserNewTX(WireRecord):
    """Submission envelope: the transaction plus the account signature."""
    tx: Transaction = field(default_factory=Transaction)
    user_id: str = ""
    height: int = 0
    sig: EcdsaSignature = field(default_factory=EcdsaSignature)

    WIRE_NAME: ClassVar[str] = "UserNewTX"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("TX", "tx", Kind.STRUCT, record=Transaction),
        F("UserID", "user_id", Kind.STRING),
        F("Height", "height", Kind.INT),
        F("Sig", "sig", Kind.STRUCT, record=EcdsaSignature),
    )


# =============================================================================
# ACCOUNT UPDATE RECORDS
# =============================================================================

@dataclass
class SubATX(WireRecord):
    """Source transaction of a spendable output, as carried by updates."""
    txid: str = ""
    tx_type: int = 0
    tx_inputs_normal: Optional[List[TXInputNormal]] = field(default_factory=list)
    tx_inputs_certificate: Optional[List[TxCertificate]] = field(default_factory=list)
    tx_outputs: Optional[List[TXOutput]] = field(default_factory=list)
    interest_assign: InterestAssign = field(default_factory=InterestAssign)
    ex_txcer_id: Optional[List[str]] = field(default_factory=list)
    data: Optional[bytes] = b""

    WIRE_NAME: ClassVar[str] = "SubATX"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("TXID", "txid", Kind.STRING),
        F("TXType", "tx_type", Kind.INT),
        F("TXInputsNormal", "tx_inputs_normal", Kind.LIST, elem=Kind.STRUCT, record=TXInputNormal),
        F("TXInputsCertificate", "tx_inputs_certificate", Kind.LIST, elem=Kind.STRUCT, record=TxCertificate),
        F("TXOutputs", "tx_outputs", Kind.LIST, elem=Kind.STRUCT, record=TXOutput),
        F("InterestAssign", "interest_assign", Kind.STRUCT, record=InterestAssign),
        F("ExTXCerID", "ex_txcer_id", Kind.LIST, elem=Kind.STRING),
        F("Data", "data", Kind.BYTES),
    )


@dataclass
class UTXOData(WireRecord):
    utxo: SubATX = field(default_factory=SubATX)
    value: float = 0.0
    coin_type: int = 0
    time: int = 0
    position: TxPosition = field(default_factory=TxPosition)
    is_txcer_utxo: bool = False

    WIRE_NAME: ClassVar[str] = "UTXOData"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("UTXO", "utxo", Kind.STRUCT, record=SubATX),
        F("Value", "value", Kind.FLOAT),
        F("Type", "coin_type", Kind.INT),
        F("Time", "time", Kind.INT),
        F("Position", "position", Kind.STRUCT, record=TxPosition),
        F("IsTXCerUTXO", "is_txcer_utxo", Kind.BOOL),
    )


# =============================================================================
# TIMESTAMPED REQUESTS
# =============================================================================

@dataclass
class AddressData(WireRecord):
    public_key_new: PublicKeyNew = field(default_factory=PublicKeyNew)

    WIRE_NAME: ClassVar[str] = "AddressData"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("PublicKeyNew", "public_key_new", Kind.STRUCT, record=PublicKeyNew),
    )


@dataclass
class FlowAddressEntry(WireRecord):
    address_data: AddressData = field(default_factory=AddressData)

    WIRE_NAME: ClassVar[str] = "FlowAddressEntry"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("AddressData", "address_data", Kind.STRUCT, record=AddressData),
    )


@dataclass
class FlowApply(WireRecord):
    """Join (status 1) or leave (status 0) a guarantor group."""
    status: int = 0
    user_id: str = ""
    user_peer_id: str = ""
    guar_group_id: str = ""
    user_public_key: PublicKeyNew = field(default_factory=PublicKeyNew)
    address_msg: Optional[Dict[str, FlowAddressEntry]] = None
    time_stamp: int = 0
    user_sig: EcdsaSignature = field(default_factory=EcdsaSignature)

    WIRE_NAME: ClassVar[str] = "FlowApply"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("Status", "status", Kind.INT),
        F("UserID", "user_id", Kind.STRING),
        F("UserPeerID", "user_peer_id", Kind.STRING),
        F("GuarGroupID", "guar_group_id", Kind.STRING),
        F("UserPublicKey", "user_public_key", Kind.STRUCT, record=PublicKeyNew),
        F("AddressMsg", "address_msg", Kind.MAP, elem=Kind.STRUCT, record=FlowAddressEntry),
        F("TimeStamp", "time_stamp", Kind.INT),
        F("UserSig", "user_sig", Kind.STRUCT, record=EcdsaSignature),
    )


@dataclass
class CapsuleAddressRequest(WireRecord):
    user_id: str = ""
    address: str = ""
    timestamp: int = 0
    sig: EcdsaSignature = field(default_factory=EcdsaSignature)

    WIRE_NAME: ClassVar[str] = "CapsuleAddressRequest"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        F("UserID", "user_id", Kind.STRING),
        F("Address", "address", Kind.STRING),
        F("Timestamp", "timestamp", Kind.INT),
        F("Sig", "sig", Kind.STRUCT, record=EcdsaSignature),
    )


# =============================================================================
# REGISTRY
# =============================================================================

RECORD_TYPES: Dict[str, Type[WireRecord]] = {
    cls.WIRE_NAME: cls
    for cls in (
        EcdsaSignature,
        PublicKeyNew,
        TxPosition,
        TXOutput,
        TXInputNormal,
        TxCertificate,
        InterestAssign,
        Transaction,
        UserNewTX,
        SubATX,
        UTXOData,
        AddressData,
        FlowAddressEntry,
        FlowApply,
        CapsuleAddressRequest,
    )
}


def record_type(name: str) -> Type[WireRecord]:
    try:
        return RECORD_TYPES[name]
    except KeyError:
        raise SerializationContractViolation(name, "unknown record type") from None


def check_field_table(cls: Type[WireRecord]) -> None:
    """Reject field tables the serializer cannot honor."""
    name = cls.WIRE_NAME
    attrs = {a.name for a in fields(cls)}
    seen = set()
    for f in cls.FIELDS:
        if f.wire in seen:
            raise SerializationContractViolation(name, f"duplicate field {f.wire}")
        seen.add(f.wire)
        if f.attr not in attrs:
            raise SerializationContractViolation(name, f"{f.wire} maps to missing attribute {f.attr}")
        if (f.kind is Kind.BIGINT) != (f.wire in BIGINT_FIELD_NAMES):
            raise SerializationContractViolation(
                name, f"{f.wire}: big-integer fields must use an allow-listed name, and only they may"
            )
        if f.kind is Kind.STRUCT and f.record is None:
            raise SerializationContractViolation(name, f"{f.wire}: struct field without record type")
        if f.kind in (Kind.LIST, Kind.MAP):
            if f.elem is None:
                raise SerializationContractViolation(name, f"{f.wire}: missing element kind")
            if f.elem is Kind.STRUCT and f.record is None:
                raise SerializationContractViolation(name, f"{f.wire}: struct elements without record type")
            if f.elem not in SCALAR_KINDS and f.elem is not Kind.STRUCT:
                raise SerializationContractViolation(name, f"{f.wire}: nested containers are not supported")
            if f.elem is Kind.BIGINT:
                raise SerializationContractViolation(name, f"{f.wire}: big integers must be named struct fields")
        if f.kind is Kind.MAP and f.key not in (Kind.STRING, Kind.INT):
            raise SerializationContractViolation(name, f"{f.wire}: map keys must be strings or integers")
    if len(seen) != len(attrs):
        raise SerializationContractViolation(name, "field table does not cover every attribute")


for _cls in RECORD_TYPES.values():
    check_field_table(_cls)
