"""
PANGU Wallet Client Core

Builds, signs and tracks value transfers against a guarantor-group peer.

Architecture
────────────

    WIRE
      records.py       Wire record field tables (declaration order)
      canonical.py     Byte-exact canonical serialization
      signing.py       P-256 keys, addresses, digest and signatures

    WALLET
      wallet.py        Addresses, spendable units, certificates, pending marks
      selection.py     Largest-first unit selection per asset type
      reservation.py   Leases over unit ids with queued change replay

    FLOW
      assembly.py      Transfer build/submit state machine
      sync.py          Account-update decoding and polling
      requests.py      Group membership and capsule address requests
      transport.py     Submission contract and rejection classification

    AMBIENT
      config.py        YAML configuration with validation
      observability.py Structured logging and correlation ids
      errors.py        Error hierarchy

Copyright (c) 2026 Pangu. All rights reserved.
"""

__version__ = "0.3.1"


# Lazy imports to avoid pulling cryptography in for config-only callers
def __getattr__(name):
    """Resolve the public names on first access."""

    if name in ("canonicalize", "canonical_text", "go_float", "strip_guarantor_made"):
        from pangu import canonical
        return getattr(canonical, name)

    if name in ("sign", "verify", "derive_address", "generate_private_key",
                "public_key_from_secret", "compute_txid", "transaction_hash"):
        from pangu import signing
        return getattr(signing, name)

    if name in ("Wallet", "SpendableUnit", "CertificateUnit", "ChangeKind", "ResourceChange"):
        from pangu import wallet
        return getattr(wallet, name)

    if name in ("ReservationManager", "ReservationHandle"):
        from pangu import reservation
        return getattr(reservation, name)

    if name in ("TransactionAssembler", "TransferRequest", "Recipient", "TransferMode",
                "BuildState", "StaticSecretProvider"):
        from pangu import assembly
        return getattr(assembly, name)

    if name in ("AccountSynchronizer", "decode_account_update"):
        from pangu import sync
        return getattr(sync, name)

    if name in ("InMemoryTransport", "RejectionCode", "classify_rejection"):
        from pangu import transport
        return getattr(transport, name)

    if name in ("PanguConfig", "ConfigManager", "get_config"):
        from pangu import config
        return getattr(config, name)

    if name == "PanguError":
        from pangu.errors import PanguError
        return PanguError

    raise AttributeError(f"module 'pangu' has no attribute {name!r}")


__all__ = [
    "__version__",
    "AccountSynchronizer",
    "BuildState",
    "CertificateUnit",
    "ChangeKind",
    "ConfigManager",
    "InMemoryTransport",
    "PanguConfig",
    "PanguError",
    "Recipient",
    "RejectionCode",
    "ReservationHandle",
    "ReservationManager",
    "ResourceChange",
    "SpendableUnit",
    "StaticSecretProvider",
    "TransactionAssembler",
    "TransferMode",
    "TransferRequest",
    "Wallet",
    "canonical_text",
    "canonicalize",
    "classify_rejection",
    "compute_txid",
    "decode_account_update",
    "derive_address",
    "generate_private_key",
    "get_config",
    "go_float",
    "public_key_from_secret",
    "sign",
    "strip_guarantor_made",
    "transaction_hash",
    "verify",
]
