"""
Pangu Error Taxonomy

Every failure the wallet core can surface, grouped by recoverability:

    Fatal (implementation bug):
        SerializationContractViolation

    Recoverable (caller re-selects, re-prompts or informs the user):
        ValidationError, ModeConstraintViolation, MissingChangeAddress,
        ReservationConflict, InsufficientResources, InsufficientGas,
        SecretUnavailable, RemoteRejection, PayloadValidationError

Copyright (c) 2026 Pangu. All rights reserved.
"""

from __future__ import annotations

from typing import Any, FrozenSet, Iterable, List, Optional


class PanguError(Exception):
    """Base class for all wallet core errors."""

    recoverable: bool = True


# =============================================================================
# SERIALIZATION
# =============================================================================

class SerializationContractViolation(PanguError):
    """The canonical byte contract was broken internally.

    Raised for unknown excluded field names, malformed field tables,
    non-finite floats and big-integer literal mismatches. Never coerced.
    """

    recoverable = False

    def __init__(self, record: str, detail: str):
        self.record = record
        self.detail = detail
        super().__init__(f"{record}: {detail}")


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationError(PanguError):
    """Local validation failure; nothing was sent to the network."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ModeConstraintViolation(ValidationError):
    """A constrained transfer mode's structural rule was violated."""

    def __init__(self, rule: str, message: str, value: Any = None):
        self.rule = rule
        super().__init__(rule, message, value)


class MissingChangeAddress(ModeConstraintViolation):
    """No usable change address for an asset type that produces change."""

    def __init__(self, asset_type: int, message: str = ""):
        self.asset_type = asset_type
        super().__init__(
            "change_address",
            message or f"change address required for asset type {asset_type}",
            asset_type,
        )


class PayloadValidationError(ValidationError):
    """An inbound document failed schema validation."""

    def __init__(self, document: str, errors: List[str]):
        self.errors = list(errors)
        super().__init__(document, "; ".join(self.errors) or "invalid document")


# =============================================================================
# RESOURCES
# =============================================================================

class ReservationConflict(PanguError):
    """One or more requested ids are held by an unreleased reservation."""

    def __init__(self, conflicting_ids: Iterable[str], holder: str = ""):
        self.conflicting_ids: FrozenSet[str] = frozenset(conflicting_ids)
        self.holder = holder
        ids = ", ".join(sorted(self.conflicting_ids))
        super().__init__(f"already reserved by {holder or 'another build'}: {ids}")


class UnknownReservation(PanguError):
    """Release was requested for a handle the manager does not hold."""

    recoverable = False

    def __init__(self, reservation_id: str):
        self.reservation_id = reservation_id
        super().__init__(f"unknown reservation: {reservation_id}")


class InsufficientResources(PanguError):
    """Eligible units cannot cover the target for an asset type."""

    def __init__(self, asset_type: int, required: float, available: float):
        self.asset_type = asset_type
        self.required = required
        self.available = available
        self.shortfall = required - available
        super().__init__(
            f"insufficient balance for asset type {asset_type}: "
            f"required {required}, available {available}, short {self.shortfall}"
        )


class InsufficientGas(InsufficientResources):
    """Interest-funded gas exceeds the wallet's gas budget."""

    def __init__(self, required: float, available: float):
        super().__init__(0, required, available)
        self.args = (
            f"insufficient gas: required {required}, budget {available}",
        )


# =============================================================================
# COLLABORATORS
# =============================================================================

class SecretUnavailable(PanguError):
    """The secret provider was cancelled or failed to produce a key."""

    def __init__(self, key_id: str, reason: str = "cancelled"):
        self.key_id = key_id
        self.reason = reason
        super().__init__(f"secret unavailable for {key_id}: {reason}")


class RemoteRejection(PanguError):
    """The transport reported a failure after submission."""

    def __init__(self, code: str, message: str, txid: Optional[str] = None):
        self.code = code
        self.message = message
        self.txid = txid
        super().__init__(f"[{code}] {message}")


class ConfigError(PanguError):
    """Configuration error."""
