"""
Transport Contract

The wallet core hands the transport a canonical payload and reads back an
accept/reject outcome; endpoint shape and connection handling live with the
transport implementation. Rejection messages from the peer are classified
into stable codes so callers can react without parsing text.

Copyright (c) 2026 Pangu. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple

from pangu.observability import PanguLayer, get_logger

logger = get_logger("transport", PanguLayer.TRANSPORT)


class RejectionCode(str, Enum):
    USER_NOT_IN_ORG = "USER_NOT_IN_ORG"
    ADDRESS_REVOKED = "ADDRESS_REVOKED"
    SIGNATURE_FAILED = "SIGNATURE_FAILED"
    UTXO_SPENT = "UTXO_SPENT"
    UNKNOWN = "UNKNOWN"


# Checked in order; a later match overrides an earlier one.
_REJECTION_MARKERS: Tuple[Tuple[RejectionCode, Tuple[str, ...]], ...] = (
    (RejectionCode.USER_NOT_IN_ORG, (
        "user is not in the guarantor",
        "user not found in group",
        "not in the guarantor organization",
    )),
    (RejectionCode.ADDRESS_REVOKED, ("address revoked", "already revoked")),
    (RejectionCode.SIGNATURE_FAILED, ("signature verification",)),
    (RejectionCode.UTXO_SPENT, ("utxo already spent", "double spend")),
)


def classify_rejection(message: str) -> RejectionCode:
    text = (message or "").lower()
    code = RejectionCode.UNKNOWN
    for candidate, markers in _REJECTION_MARKERS:
        if any(m in text for m in markers):
            code = candidate
    return code


class TxStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class SubmissionResult:
    accepted: bool
    txid: Optional[str] = None
    error: str = ""
    code: RejectionCode = RejectionCode.UNKNOWN

    @classmethod
    def rejected(cls, error: str, txid: Optional[str] = None) -> "SubmissionResult":
        return cls(False, txid, error, classify_rejection(error))


# =============================================================================
# INTERFACE
# =============================================================================

class Transport(Protocol):
    """What the assembler needs from the network side."""

    async def submit(self, payload: bytes, guarantor_group: str) -> SubmissionResult:
        """Submit exact canonical bytes; never re-encode them."""
        ...

    async def query_status(self, txid: str) -> TxStatus:
        ...


# =============================================================================
# IN-MEMORY IMPLEMENTATION (tests and dry runs)
# =============================================================================

@dataclass
class InMemoryTransport:
    """Records payloads and answers with scripted outcomes."""
    reject_with: str = ""
    statuses: Dict[str, List[TxStatus]] = field(default_factory=dict)
    submitted: List[Tuple[str, bytes]] = field(default_factory=list)
    queries: List[str] = field(default_factory=list)

    async def submit(self, payload: bytes, guarantor_group: str) -> SubmissionResult:
        self.submitted.append((guarantor_group, payload))
        if self.reject_with:
            logger.info("Scripted rejection", guarantor_group=guarantor_group)
            return SubmissionResult.rejected(self.reject_with)
        return SubmissionResult(True)

    async def query_status(self, txid: str) -> TxStatus:
        self.queries.append(txid)
        script = self.statuses.get(txid)
        if not script:
            return TxStatus.PENDING
        # The last scripted status repeats once the script runs out.
        return script.pop(0) if len(script) > 1 else script[0]
