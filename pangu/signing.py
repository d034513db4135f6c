"""
Digest & Signature

SHA-256 over canonical bytes and ECDSA (P-256) signatures over that digest,
with signature components carried as plain integers the way the peer's
EcdsaSignature record holds them.

Every function here is a pure computation over its inputs; nothing is cached
or shared between calls.

Copyright (c) 2026 Pangu. All rights reserved.
"""

from __future__ import annotations

import secrets
from typing import Iterable, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, utils

from pangu.canonical import canonicalize, strip_guarantor_made
from pangu.core import int_to_hex, sha256_digest, sha256_hex
from pangu.errors import SerializationContractViolation
from pangu.observability import PanguLayer, get_logger
from pangu.records import (
    EcdsaSignature,
    Kind,
    PublicKeyNew,
    Transaction,
    TXOutput,
    WireRecord,
)

logger = get_logger("signing", PanguLayer.SIGNING)

CURVE_NAME = "P256"
_CURVE = ec.SECP256R1()
_ALGORITHM = ec.ECDSA(utils.Prehashed(hashes.SHA256()))

# Order of the P-256 group; valid scalars lie in [1, N-1].
CURVE_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551

# Fields zeroed when hashing a Transaction.
TX_HASH_EXCLUDE: Tuple[str, ...] = ("TXID", "Size", "NewValue", "UserSignature", "TXType")

# Fields zeroed when the account key signs the submission envelope.
ENVELOPE_EXCLUDE: Tuple[str, ...] = ("Sig", "Height")

Secret = Union[bytes, bytearray, str, int, ec.EllipticCurvePrivateKey]
PublicKeyLike = Union[PublicKeyNew, ec.EllipticCurvePublicKey]


# =============================================================================
# KEYS
# =============================================================================

def private_key_from_secret(secret: Secret) -> ec.EllipticCurvePrivateKey:
    """Load a P-256 private key.

    Accepts a cryptography key object, a 32-byte big-endian scalar, a hex
    scalar (with or without 0x) or an integer.
    """
    if isinstance(secret, ec.EllipticCurvePrivateKey):
        return secret
    if isinstance(secret, (bytes, bytearray)):
        if len(secret) != 32:
            raise ValueError(f"private scalar must be 32 bytes, got {len(secret)}")
        scalar = int.from_bytes(bytes(secret), "big")
    elif isinstance(secret, str):
        text = secret.strip()
        if text.lower().startswith("0x"):
            text = text[2:]
        if not text:
            raise ValueError("empty private key")
        scalar = int(text, 16)
    elif isinstance(secret, int) and not isinstance(secret, bool):
        scalar = secret
    else:
        raise TypeError(f"unsupported secret type {type(secret).__name__}")
    if not 1 <= scalar < CURVE_ORDER:
        raise ValueError("private scalar out of range")
    return ec.derive_private_key(scalar, _CURVE)


def generate_private_key() -> bytes:
    """Fresh 32-byte private scalar."""
    while True:
        scalar = int.from_bytes(secrets.token_bytes(32), "big")
        if 1 <= scalar < CURVE_ORDER:
            return scalar.to_bytes(32, "big")


def private_key_hex(secret: Secret) -> str:
    key = private_key_from_secret(secret)
    return int_to_hex(key.private_numbers().private_value)


def public_key_from_secret(secret: Secret) -> PublicKeyNew:
    numbers = private_key_from_secret(secret).public_key().public_numbers()
    return PublicKeyNew(CURVE_NAME, numbers.x, numbers.y)


def to_crypto_public_key(public_key: PublicKeyLike) -> ec.EllipticCurvePublicKey:
    """Raises ValueError for a point that is not on the curve."""
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return public_key
    if public_key.x is None or public_key.y is None:
        raise ValueError("public key has no coordinates")
    return ec.EllipticCurvePublicNumbers(public_key.x, public_key.y, _CURVE).public_key()


def derive_address(public_key: PublicKeyLike) -> str:
    """Address of a public key: first 40 hex chars of sha256(04 || X || Y)."""
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        numbers = public_key.public_numbers()
        x, y = numbers.x, numbers.y
    else:
        x, y = public_key.x or 0, public_key.y or 0
    uncompressed = b"\x04" + x.to_bytes(32, "big") + y.to_bytes(32, "big")
    return sha256_hex(uncompressed)[:40]


# =============================================================================
# DIGEST AND SIGNATURE
# =============================================================================

def digest(data: bytes) -> bytes:
    """256-bit digest of canonical bytes."""
    return sha256_digest(data)


def _check_signature_excluded(record: WireRecord, exclude: Iterable[str]) -> Tuple[str, ...]:
    # A record never signs over its own top-level signature value.
    excluded = tuple(exclude)
    cls = type(record)
    for spec in cls.FIELDS:
        if spec.kind is Kind.STRUCT and spec.record is EcdsaSignature and spec.wire not in excluded:
            raise SerializationContractViolation(
                cls.WIRE_NAME, f"signature field {spec.wire} must be excluded when signing"
            )
    return excluded


def record_digest(record: WireRecord, exclude: Iterable[str] = ()) -> bytes:
    return digest(canonicalize(record, exclude))


def sign_digest(message_digest: bytes, secret: Secret) -> EcdsaSignature:
    if len(message_digest) != 32:
        raise ValueError(f"digest must be 32 bytes, got {len(message_digest)}")
    der = private_key_from_secret(secret).sign(message_digest, _ALGORITHM)
    r, s = utils.decode_dss_signature(der)
    return EcdsaSignature(r, s)


def verify_digest(message_digest: bytes, signature: EcdsaSignature, public_key: PublicKeyLike) -> bool:
    if signature is None or signature.r is None or signature.s is None:
        return False
    if not (0 < signature.r < CURVE_ORDER and 0 < signature.s < CURVE_ORDER):
        return False
    try:
        key = to_crypto_public_key(public_key)
        key.verify(utils.encode_dss_signature(signature.r, signature.s), message_digest, _ALGORITHM)
    except (InvalidSignature, ValueError):
        return False
    return True


def sign(record: WireRecord, exclude: Iterable[str], secret: Secret) -> EcdsaSignature:
    """Sign the canonical bytes of `record` with `exclude` zeroed.

    The exclusion set must contain every top-level signature field of the
    record.
    """
    excluded = _check_signature_excluded(record, exclude)
    message_digest = record_digest(record, excluded)
    signature = sign_digest(message_digest, secret)
    logger.debug(
        "Signed record",
        record=type(record).WIRE_NAME,
        digest=message_digest.hex()[:16],
    )
    return signature


def verify(
    record: WireRecord,
    signature: EcdsaSignature,
    exclude: Iterable[str],
    public_key: PublicKeyLike,
) -> bool:
    """Check `signature` against the same canonical bytes `sign` would hash."""
    excluded = _check_signature_excluded(record, exclude)
    ok = verify_digest(record_digest(record, excluded), signature, public_key)
    if not ok:
        logger.warning("Signature verification failed", record=type(record).WIRE_NAME)
    return ok


# =============================================================================
# TRANSACTION HASHES
# =============================================================================

def output_hash(output: TXOutput) -> bytes:
    """Hash of a referenced source output, carried as TXOutputHash."""
    return digest(canonicalize(output))


def transaction_hash(tx: Transaction) -> bytes:
    """Digest signed by UserSignature and truncated into TXID.

    Guarantor-constructed inputs and outputs are dropped before hashing.
    """
    return digest(canonicalize(strip_guarantor_made(tx), TX_HASH_EXCLUDE))


def compute_txid(tx: Transaction) -> str:
    return transaction_hash(tx)[:8].hex()
