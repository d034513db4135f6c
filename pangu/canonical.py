"""
Canonical Serializer

Produces the exact bytes the remote peer's reflection-based marshaller emits
for a record, so that a digest computed here matches the digest the peer
computes when it verifies a signature.

Rules honored:
    - fields in declared order, never sorted
    - excluded fields set to the zero value of their declared kind, never removed
      (a signature field becomes {"R":null,"S":null})
    - map-typed fields are the only values emitted with sorted keys
    - big integers rendered as decimal strings, then unquoted by a targeted
      substitution on allow-listed field names; the number of substitutions
      must equal the number of big integers emitted
    - floats in the peer's shortest-representation format
    - the peer's HTML-safe string escaping

Copyright (c) 2026 Pangu. All rights reserved.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pangu.core import b64encode
from pangu.errors import SerializationContractViolation
from pangu.observability import PanguLayer, get_logger
from pangu.records import BIGINT_FIELD_NAMES, FieldSpec, Kind, WireRecord

logger = get_logger("canonical", PanguLayer.SERIALIZER)

_BIGINT_LITERAL = re.compile(
    r'"(' + "|".join(sorted(BIGINT_FIELD_NAMES)) + r')":"(-?\d+)"'
)

_HTML_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


class _BigInt(str):
    """Decimal rendering of a big integer, quoted until the unquote pass."""


# =============================================================================
# SCALAR FORMATTING
# =============================================================================

def go_float(value: float) -> str:
    """Format a float64 the way the peer's JSON encoder does.

    Shortest round-trip digits; plain notation unless the magnitude is below
    1e-6 or at least 1e21, where exponent notation with a minimal exponent
    is used.
    """
    if not math.isfinite(value):
        raise SerializationContractViolation("float", f"unsupported value {value!r}")
    magnitude = abs(value)
    if magnitude != 0 and (magnitude < 1e-6 or magnitude >= 1e21):
        text = repr(value)
        # e-07 becomes e-7; positive exponents keep two digits
        n = len(text)
        if n >= 4 and text[n - 4] == "e" and text[n - 3] == "-" and text[n - 2] == "0":
            text = text[: n - 2] + text[n - 1]
        return text
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def go_string(value: str) -> str:
    """Quote a string with the peer's escaping, including HTML-safe escapes."""
    if any(0xD800 <= ord(ch) <= 0xDFFF for ch in value):
        value = "".join("\ufffd" if 0xD800 <= ord(ch) <= 0xDFFF else ch for ch in value)
    text = json.dumps(value, ensure_ascii=False)
    for raw, escaped in _HTML_ESCAPES:
        if raw in text:
            text = text.replace(raw, escaped)
    return text


# =============================================================================
# WIRE TREE
# =============================================================================

class _TreeBuilder:
    """Turns a record into an ordered tree of JSON-ready values."""

    def __init__(self, root: str):
        self.root = root
        self.bigints = 0

    def fail(self, where: str, detail: str) -> SerializationContractViolation:
        return SerializationContractViolation(self.root, f"{where}: {detail}")

    def zero(self, spec: FieldSpec) -> Any:
        kind = spec.kind
        if kind is Kind.STRING:
            return ""
        if kind is Kind.INT:
            return 0
        if kind is Kind.FLOAT:
            return 0.0
        if kind is Kind.BOOL:
            return False
        if kind is Kind.STRUCT:
            assert spec.record is not None
            return {f.wire: self.zero(f) for f in spec.record.FIELDS}
        # BIGINT, BYTES, LIST and MAP are nil-able on the peer side
        return None

    def scalar(self, kind: Kind, value: Any, where: str) -> Any:
        if kind is Kind.STRING:
            if not isinstance(value, str):
                raise self.fail(where, f"expected string, got {type(value).__name__}")
            return value
        if kind is Kind.INT:
            if isinstance(value, bool) or not isinstance(value, int):
                raise self.fail(where, f"expected integer, got {type(value).__name__}")
            return value
        if kind is Kind.FLOAT:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise self.fail(where, f"expected float, got {type(value).__name__}")
            value = float(value)
            if not math.isfinite(value):
                raise self.fail(where, f"non-finite float {value!r}")
            return value
        if kind is Kind.BOOL:
            if not isinstance(value, bool):
                raise self.fail(where, f"expected bool, got {type(value).__name__}")
            return value
        if kind is Kind.BIGINT:
            if value is None:
                return None
            if isinstance(value, bool) or not isinstance(value, int):
                raise self.fail(where, f"expected big integer, got {type(value).__name__}")
            self.bigints += 1
            return _BigInt(str(value))
        if kind is Kind.BYTES:
            if value is None:
                return None
            if not isinstance(value, (bytes, bytearray)):
                raise self.fail(where, f"expected bytes, got {type(value).__name__}")
            return b64encode(bytes(value))
        raise self.fail(where, f"unsupported scalar kind {kind}")

    def element(self, kind: Kind, spec: FieldSpec, value: Any, where: str) -> Any:
        if kind is Kind.STRUCT:
            assert spec.record is not None
            if not isinstance(value, spec.record):
                raise self.fail(where, f"expected {spec.record.WIRE_NAME}, got {type(value).__name__}")
            return self.record(value, (), where)
        return self.scalar(kind, value, where)

    def value(self, spec: FieldSpec, value: Any, where: str) -> Any:
        if spec.kind is Kind.LIST:
            if value is None:
                return None
            if not isinstance(value, (list, tuple)):
                raise self.fail(where, f"expected list, got {type(value).__name__}")
            return [
                self.element(spec.elem, spec, item, f"{where}[{i}]")  # type: ignore[arg-type]
                for i, item in enumerate(value)
            ]
        if spec.kind is Kind.MAP:
            if value is None:
                return None
            if not isinstance(value, dict):
                raise self.fail(where, f"expected map, got {type(value).__name__}")
            keyed: Dict[str, Any] = {}
            for key, item in value.items():
                if spec.key is Kind.INT:
                    if isinstance(key, bool) or not isinstance(key, int):
                        raise self.fail(where, f"expected integer key, got {key!r}")
                    text = str(key)
                else:
                    if not isinstance(key, str):
                        raise self.fail(where, f"expected string key, got {key!r}")
                    text = key
                keyed[text] = self.element(spec.elem, spec, item, f"{where}[{text}]")  # type: ignore[arg-type]
            return {k: keyed[k] for k in sorted(keyed)}
        if spec.kind is Kind.STRUCT:
            return self.element(Kind.STRUCT, spec, value, where)
        return self.scalar(spec.kind, value, where)

    def record(self, rec: WireRecord, exclude: Iterable[str], where: str) -> Dict[str, Any]:
        cls = type(rec)
        excluded = set(exclude)
        unknown = excluded - set(cls.field_names())
        if unknown:
            raise self.fail(where, f"unknown excluded field(s) {sorted(unknown)} on {cls.WIRE_NAME}")
        out: Dict[str, Any] = {}
        for spec in cls.FIELDS:
            if spec.wire in excluded:
                out[spec.wire] = self.zero(spec)
            else:
                out[spec.wire] = self.value(spec, getattr(rec, spec.attr), f"{where}.{spec.wire}")
        return out


# =============================================================================
# EMISSION
# =============================================================================

def _emit(node: Any, parts: List[str]) -> None:
    if node is None:
        parts.append("null")
    elif node is True:
        parts.append("true")
    elif node is False:
        parts.append("false")
    elif isinstance(node, str):
        parts.append(go_string(node))
    elif isinstance(node, int):
        parts.append(str(node))
    elif isinstance(node, float):
        parts.append(go_float(node))
    elif isinstance(node, dict):
        parts.append("{")
        first = True
        for key, value in node.items():
            if not first:
                parts.append(",")
            first = False
            parts.append(go_string(key))
            parts.append(":")
            _emit(value, parts)
        parts.append("}")
    elif isinstance(node, list):
        parts.append("[")
        for i, value in enumerate(node):
            if i:
                parts.append(",")
            _emit(value, parts)
        parts.append("]")
    else:
        raise SerializationContractViolation("emit", f"unexpected node {type(node).__name__}")


def wire_tree(record: WireRecord, exclude: Iterable[str] = ()) -> Tuple[Dict[str, Any], int]:
    """Ordered JSON-ready tree plus the count of big integers it carries."""
    if not isinstance(record, WireRecord):
        raise SerializationContractViolation(type(record).__name__, "not a wire record")
    builder = _TreeBuilder(type(record).WIRE_NAME)
    tree = builder.record(record, exclude, type(record).WIRE_NAME)
    return tree, builder.bigints


def canonical_text(record: WireRecord, exclude: Iterable[str] = ()) -> str:
    tree, expected = wire_tree(record, exclude)
    parts: List[str] = []
    _emit(tree, parts)
    text, substituted = _BIGINT_LITERAL.subn(r'"\1":\2', "".join(parts))
    if substituted != expected:
        logger.critical(
            "Big-integer literal count mismatch",
            error_code="BIGINT_MISMATCH",
            record=type(record).WIRE_NAME,
            expected=expected,
            substituted=substituted,
        )
        raise SerializationContractViolation(
            type(record).WIRE_NAME,
            f"expected {expected} big-integer literals, unquoted {substituted}",
        )
    return text


def canonicalize(record: WireRecord, exclude: Iterable[str] = ()) -> bytes:
    """Canonical bytes of `record` with the `exclude` fields zeroed."""
    return canonical_text(record, exclude).encode("utf-8")


def parse_canonical(data: bytes) -> Any:
    """Parse canonical bytes back into plain JSON values (big integers exact)."""
    return json.loads(data.decode("utf-8"))


def strip_guarantor_made(tx: Any) -> Any:
    """Copy of a Transaction without guarantor-constructed inputs and outputs."""
    return replace(
        tx,
        tx_inputs_normal=None if tx.tx_inputs_normal is None else [
            i for i in tx.tx_inputs_normal if not i.is_guar_make
        ],
        tx_outputs=None if tx.tx_outputs is None else [
            o for o in tx.tx_outputs if not o.is_guar_make
        ],
    )


def first_difference(a: bytes, b: bytes) -> Optional[int]:
    """Offset of the first differing byte, for drift diagnostics."""
    for i, (x, y) in enumerate(zip(a, b)):
        if x != y:
            return i
    if len(a) != len(b):
        return min(len(a), len(b))
    return None
