"""
Transaction Assembly

Builds, signs and submits a transfer as one attempt through the states

    IDLE -> SELECTING -> RESERVING -> SIGNING -> SERIALIZED -> SUBMITTED
                                                            -> CONFIRMED | FAILED
                                   (any error after RESERVING) -> RELEASED

Validation, selection and change planning all finish before anything is
reserved, so a request that is locally invalid never touches the reservation
manager. Once reserved, every exit path releases: failures and cancellation
with success=False, an accepted submission with success=True.

Secrets are fetched per build from a SecretProvider and dropped when the
build returns; they are never stored on the assembler and never logged.

Copyright (c) 2026 Pangu. All rights reserved.
"""

from __future__ import annotations

import asyncio
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple

from pangu.canonical import canonicalize
from pangu.config import PanguConfig, get_config
from pangu.errors import (
    InsufficientGas,
    MissingChangeAddress,
    ModeConstraintViolation,
    PanguError,
    RemoteRejection,
    ReservationConflict,
    SecretUnavailable,
    SerializationContractViolation,
    ValidationError,
)
from pangu.observability import (
    PanguLayer,
    generate_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
    timed_operation,
)
from pangu.records import (
    InterestAssign,
    PublicKeyNew,
    Transaction,
    TXInputNormal,
    TXOutput,
    TxPosition,
    UserNewTX,
)
from pangu.reservation import ReservationHandle, ReservationManager
from pangu.selection import Selection, select_units
from pangu.signing import (
    ENVELOPE_EXCLUDE,
    Secret,
    compute_txid,
    output_hash,
    public_key_from_secret,
    sign,
    sign_digest,
    transaction_hash,
    verify,
    verify_digest,
)
from pangu.transport import SubmissionResult, Transport, TxStatus
from pangu.wallet import ASSET_TYPES, SpendableUnit, Wallet

logger = get_logger("assembly", PanguLayer.ASSEMBLY)

ADDRESS_PATTERN = re.compile(r"^[0-9a-f]{40}$")


class BuildState(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    RESERVING = "reserving"
    SIGNING = "signing"
    SERIALIZED = "serialized"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    RELEASED = "released"


class TransferMode(str, Enum):
    NORMAL = "normal"
    CROSS_CHAIN = "cross_chain"


# =============================================================================
# REQUEST / RESULT
# =============================================================================

@dataclass
class Recipient:
    address: str
    amount: float
    asset_type: int = 0
    public_key: Optional[PublicKeyNew] = None
    guarantor_group: str = ""
    interest: float = 0.0
    peer_id: str = ""


@dataclass
class TransferRequest:
    account_id: str
    guarantor_group: str
    sources: List[str]
    recipients: List[Recipient]
    change_addresses: Dict[int, str] = field(default_factory=dict)
    gas: Optional[float] = None
    pay_for_gas: float = 0.0
    mode: TransferMode = TransferMode.NORMAL
    use_certificates: bool = False
    data: bytes = b""


class SecretProvider(Protocol):
    """Unlock capability; returns None when the user cancels."""

    async def obtain_secret(self, key_id: str, prompt_context: str) -> Optional[bytes]:
        ...


@dataclass
class StaticSecretProvider:
    """Serves secrets from a mapping; missing ids behave like a cancelled prompt."""
    secrets: Dict[str, bytes] = field(default_factory=dict)
    requested: List[str] = field(default_factory=list)

    async def obtain_secret(self, key_id: str, prompt_context: str) -> Optional[bytes]:
        self.requested.append(key_id)
        return self.secrets.get(key_id)


@dataclass
class BuildAttempt:
    """State path of one build, from IDLE to its latest state."""
    correlation_id: str
    history: List[BuildState] = field(default_factory=lambda: [BuildState.IDLE])

    @property
    def state(self) -> BuildState:
        return self.history[-1]

    def enter(self, state: BuildState) -> None:
        self.history.append(state)
        logger.debug("Build state", state=state.value)


@dataclass
class BuiltTransaction:
    envelope: UserNewTX
    payload: bytes
    txid: str
    selection: Selection
    handle: Optional[ReservationHandle]
    attempt: BuildAttempt
    result: Optional[SubmissionResult] = None

    @property
    def correlation_id(self) -> str:
        return self.attempt.correlation_id

    @property
    def state(self) -> BuildState:
        return self.attempt.state

    @state.setter
    def state(self, value: BuildState) -> None:
        self.attempt.enter(value)

    @property
    def transaction(self) -> Transaction:
        return self.envelope.tx

    @property
    def spent_ids(self) -> List[str]:
        return self.selection.unit_ids


@dataclass
class _ChangePlan:
    outputs: List[TXOutput]
    back_assign: Dict[str, float]


def address_key_id(account_id: str, address: str) -> str:
    return f"{account_id}_{address}"


# =============================================================================
# ASSEMBLER
# =============================================================================

class TransactionAssembler:
    """Runs build attempts against one wallet and one reservation manager."""

    def __init__(
        self,
        wallet: Wallet,
        reservations: ReservationManager,
        secrets: SecretProvider,
        transport: Optional[Transport] = None,
        config: Optional[PanguConfig] = None,
        synchronizer: Optional[object] = None,
    ):
        self.wallet = wallet
        self.reservations = reservations
        self.secrets = secrets
        self.transport = transport
        self.synchronizer = synchronizer
        self._config = config or get_config()
        self.last_attempt: Optional[BuildAttempt] = None

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, request: TransferRequest) -> None:
        """Local checks; raises before anything is reserved or sent."""
        if not request.account_id:
            raise ValidationError("account_id", "account id is required")
        if not request.guarantor_group:
            raise ValidationError("guarantor_group", "user has not joined a guarantor group")
        if not request.sources:
            raise ValidationError("sources", "at least one source address is required")
        if not request.recipients:
            raise ValidationError("recipients", "at least one recipient is required")
        for source in request.sources:
            if source not in self.wallet:
                raise ValidationError("sources", f"source address {source} is not in the wallet", source)
        if len(set(s.lower() for s in request.sources)) != len(request.sources):
            raise ValidationError("sources", "duplicate source address")

        gas = self._gas(request)
        if gas < 0 or not math.isfinite(gas):
            raise ValidationError("gas", "gas must be a non-negative number", gas)
        if request.pay_for_gas < 0 or not math.isfinite(request.pay_for_gas):
            raise ValidationError("pay_for_gas", "pay_for_gas must be a non-negative number", request.pay_for_gas)

        seen = set()
        for r in request.recipients:
            if r.asset_type not in ASSET_TYPES:
                raise ValidationError("asset_type", f"unknown asset type {r.asset_type}", r.asset_type)
            if not math.isfinite(r.amount) or r.amount <= 0:
                raise ValidationError("amount", "amount must be positive", r.amount)
            if r.interest < 0 or not math.isfinite(r.interest):
                raise ValidationError("interest", "interest must be non-negative", r.interest)
            key = r.address.lower()
            if key in seen:
                raise ValidationError("recipients", f"duplicate recipient {r.address}", r.address)
            seen.add(key)
            if request.mode is TransferMode.NORMAL and not ADDRESS_PATTERN.fullmatch(key):
                raise ValidationError("address", f"malformed recipient address {r.address!r}", r.address)

        if request.mode is TransferMode.CROSS_CHAIN:
            self._validate_cross_chain(request)

    def _validate_cross_chain(self, request: TransferRequest) -> None:
        if len(request.sources) != 1:
            raise ModeConstraintViolation(
                "single_source", "cross-chain transfers use exactly one source address", len(request.sources)
            )
        if len(request.recipients) != 1:
            raise ModeConstraintViolation(
                "single_recipient", "cross-chain transfers have exactly one recipient", len(request.recipients)
            )
        recipient = request.recipients[0]
        if recipient.asset_type != 0:
            raise ModeConstraintViolation(
                "asset_type", "cross-chain transfers move the primary asset only", recipient.asset_type
            )
        if self.wallet.address(request.sources[0]).asset_type != 0:
            raise ModeConstraintViolation(
                "source_asset_type", "cross-chain source must hold the primary asset", request.sources[0]
            )
        if not float(recipient.amount).is_integer():
            raise ModeConstraintViolation(
                "integer_amount", "cross-chain amount must be an integer", recipient.amount
            )
        pattern = self._config.assembly.cross_chain_destination_pattern.get()
        if not re.fullmatch(pattern, recipient.address):
            raise ModeConstraintViolation(
                "destination_format", f"destination {recipient.address!r} does not match {pattern}", recipient.address
            )
        if request.use_certificates:
            raise ModeConstraintViolation(
                "no_certificates", "cross-chain transfers cannot spend certificates", True
            )
        self._change_address(request, 0)

    def _change_address(self, request: TransferRequest, asset_type: int) -> str:
        address = request.change_addresses.get(asset_type, "")
        if not address:
            raise MissingChangeAddress(asset_type)
        record = self.wallet.get_address(address)
        if record is None:
            raise MissingChangeAddress(asset_type, f"change address {address} is not in the wallet")
        if record.asset_type != asset_type:
            raise MissingChangeAddress(
                asset_type, f"change address {address} holds asset type {record.asset_type}"
            )
        return record.address

    def _gas(self, request: TransferRequest) -> float:
        if request.gas is None:
            return self._config.assembly.default_gas.get()
        return request.gas

    def required_amounts(self, request: TransferRequest) -> Dict[int, float]:
        required = {t: 0.0 for t in ASSET_TYPES}
        for r in request.recipients:
            required[r.asset_type] += r.amount
        required[0] += request.pay_for_gas
        return required

    def check_gas(self, request: TransferRequest) -> None:
        needed = self._gas(request) + sum(r.interest for r in request.recipients)
        budget = self.wallet.gas_total() + request.pay_for_gas
        if needed > budget:
            raise InsufficientGas(needed, budget)

    # -------------------------------------------------------------------------
    # Outputs
    # -------------------------------------------------------------------------

    def _plan_outputs(self, request: TransferRequest, selection: Selection) -> _ChangePlan:
        cross_chain = request.mode is TransferMode.CROSS_CHAIN
        outputs: List[TXOutput] = []
        for r in request.recipients:
            outputs.append(TXOutput(
                to_address=r.address if cross_chain else r.address.lower(),
                to_value=r.amount,
                to_guar_group_id=r.guarantor_group,
                to_public_key=r.public_key or PublicKeyNew.zero_point(),
                to_interest=r.interest,
                coin_type=r.asset_type,
                to_peer_id=r.peer_id,
                is_cross_chain=cross_chain,
            ))

        epsilon = self._config.assembly.change_epsilon.get()
        for asset_type in ASSET_TYPES:
            leftover = selection.leftover(asset_type)
            if leftover <= epsilon:
                continue
            address = self._change_address(request, asset_type)
            outputs.append(TXOutput(
                to_address=address,
                to_value=leftover,
                to_guar_group_id=request.guarantor_group,
                to_public_key=self.wallet.address(address).public_key,
                coin_type=asset_type,
            ))

        if request.pay_for_gas > 0:
            outputs.append(TXOutput(
                to_value=request.pay_for_gas,
                to_public_key=PublicKeyNew.zero_point(),
                coin_type=0,
                is_pay_for_gas=True,
            ))

        # interest refunds go to the first requested source only
        back_assign = {self.wallet.address(request.sources[0]).address: 1.0}
        return _ChangePlan(outputs, back_assign)

    # -------------------------------------------------------------------------
    # Select + reserve
    # -------------------------------------------------------------------------

    def _select_and_reserve(
        self, request: TransferRequest, required: Dict[int, float], attempt: BuildAttempt
    ) -> Tuple[Selection, _ChangePlan, ReservationHandle]:
        excluded: set = set()
        sources = [self.wallet.address(s).address for s in request.sources]
        attempts = self._config.assembly.max_reselect_attempts.get()
        while True:
            selection = select_units(
                self.wallet,
                sources,
                required,
                exclude=excluded,
                use_certificates=request.use_certificates,
                epsilon=self._config.assembly.change_epsilon.get(),
            )
            plan = self._plan_outputs(request, selection)
            attempt.enter(BuildState.RESERVING)
            try:
                handle = self.reservations.reserve(selection.unit_ids, reason=f"build:{request.account_id}")
            except ReservationConflict as conflict:
                if attempts <= 0:
                    raise
                attempts -= 1
                excluded |= conflict.conflicting_ids
                logger.info(
                    "Re-selecting without reserved units",
                    excluded=sorted(conflict.conflicting_ids),
                    attempts_left=attempts,
                )
                attempt.enter(BuildState.SELECTING)
                continue
            return selection, plan, handle

    # -------------------------------------------------------------------------
    # Signing
    # -------------------------------------------------------------------------

    async def _secret(self, key_id: str, prompt_context: str) -> bytes:
        secret = await self.secrets.obtain_secret(key_id, prompt_context)
        if secret is None:
            raise SecretUnavailable(key_id)
        return secret

    async def _address_secret(self, request: TransferRequest, address: str) -> bytes:
        key_id = address_key_id(request.account_id, address)
        secret = await self._secret(key_id, f"sign inputs from {address}")
        try:
            derived = public_key_from_secret(secret)
        except (TypeError, ValueError) as ex:
            raise SecretUnavailable(key_id, f"unusable secret: {ex}") from None
        expected = self.wallet.address(address).public_key
        if (derived.x, derived.y) != (expected.x, expected.y):
            raise SecretUnavailable(key_id, "secret does not match the address key")
        return secret

    def _inputs(
        self,
        request: TransferRequest,
        selection: Selection,
        keys: Dict[str, Secret],
    ) -> List[TXInputNormal]:
        cross_chain = request.mode is TransferMode.CROSS_CHAIN
        inputs: List[TXInputNormal] = []
        for pick in selection.spendable:
            unit: SpendableUnit = pick.unit  # type: ignore[assignment]
            if unit.source_output is None:
                raise ValidationError(
                    "unit", f"unit {unit.unit_id} does not carry its source output", unit.unit_id
                )
            hashed = output_hash(unit.source_output)
            inputs.append(TXInputNormal(
                from_txid=unit.source_txid,
                from_tx_position=TxPosition(
                    unit.position.blocknum,
                    unit.position.index_x,
                    unit.position.index_y,
                    unit.position.index_z,
                ),
                from_address=pick.address,
                is_cross_chain=cross_chain,
                input_signature=sign_digest(hashed, keys[pick.address]),
                tx_output_hash=hashed,
            ))
        return inputs

    def _self_verify(
        self,
        envelope: UserNewTX,
        account_key: PublicKeyNew,
        first_address: str,
    ) -> None:
        tx = envelope.tx
        for i, txin in enumerate(tx.tx_inputs_normal or []):
            public_key = self.wallet.address(txin.from_address).public_key
            if not verify_digest(txin.tx_output_hash or b"", txin.input_signature, public_key):
                raise SerializationContractViolation("TXInputNormal", f"input {i} signature does not verify")
        first_key = self.wallet.address(first_address).public_key
        if not verify_digest(transaction_hash(tx), tx.user_signature, first_key):
            raise SerializationContractViolation("Transaction", "user signature does not verify")
        if not verify(envelope, envelope.sig, ENVELOPE_EXCLUDE, account_key):
            raise SerializationContractViolation("UserNewTX", "envelope signature does not verify")

    async def _sign(
        self,
        request: TransferRequest,
        selection: Selection,
        plan: _ChangePlan,
        required: Dict[int, float],
    ) -> Tuple[UserNewTX, str]:
        keys: Dict[str, Secret] = {}
        try:
            for address in selection.contributing_addresses():
                keys[address] = await self._address_secret(request, address)
            account_secret = await self._secret(request.account_id, "sign transfer")

            rates = self._config.assembly.exchange_rates.get()
            certificates = [p.unit.certificate for p in selection.certificates]  # type: ignore[union-attr]
            tx = Transaction(
                version=self._config.assembly.tx_version.get(),
                guarantor_group=request.guarantor_group,
                tx_type=1 if certificates else 0,
                value=sum(amount * rates.get(t, 1.0) for t, amount in required.items()),
                value_division=dict(required),
                new_value_div={},
                interest_assign=InterestAssign(
                    gas=self._gas(request),
                    output=sum(r.interest for r in request.recipients),
                    back_assign=plan.back_assign,
                ),
                tx_inputs_normal=self._inputs(request, selection, keys),
                tx_inputs_certificate=certificates,
                tx_outputs=plan.outputs,
                data=bytes(request.data),
            )
            tx.txid = compute_txid(tx)
            first_address = selection.picks[0].address
            tx.user_signature = sign_digest(transaction_hash(tx), keys[first_address])

            envelope = UserNewTX(tx=tx, user_id=request.account_id, height=0)
            envelope.sig = sign(envelope, ENVELOPE_EXCLUDE, account_secret)

            if self._config.assembly.self_verify.get():
                self._self_verify(envelope, public_key_from_secret(account_secret), first_address)
            return envelope, tx.txid
        finally:
            keys.clear()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def _drain(self) -> None:
        if self.synchronizer is None:
            return
        try:
            await self.synchronizer.poll_once()  # type: ignore[attr-defined]
        except PanguError as ex:
            logger.warning("Pre-build sync skipped", error=str(ex))
        except OSError as ex:
            logger.warning("Pre-build sync skipped", error=str(ex))

    @timed_operation(logger, "build_transaction")
    async def build(self, request: TransferRequest) -> BuiltTransaction:
        """Validate, select, reserve, sign and serialize one transfer.

        The returned transaction holds its reservation until `submit` or
        `cancel`; its lease is the backstop if neither is called.
        """
        correlation_id = generate_correlation_id("build")
        token = set_correlation_id(correlation_id)
        attempt = BuildAttempt(correlation_id)
        self.last_attempt = attempt
        try:
            attempt.enter(BuildState.SELECTING)
            self.validate(request)
            self.check_gas(request)
            await self._drain()
            required = self.required_amounts(request)
            selection, plan, handle = self._select_and_reserve(request, required, attempt)

            attempt.enter(BuildState.SIGNING)
            logger.info(
                "Reserved inputs, signing",
                reservation_id=handle.reservation_id,
                inputs=len(selection.picks),
                mode=request.mode.value,
            )
            try:
                envelope, txid = await self._sign(request, selection, plan, required)
                payload = canonicalize(envelope)
            except BaseException as ex:
                failed_in = attempt.state
                self.reservations.release(handle, success=False)
                attempt.enter(BuildState.RELEASED)
                logger.warning(
                    "Build failed after reserving; reservation released",
                    state=failed_in.value,
                    error=type(ex).__name__,
                )
                raise

            attempt.enter(BuildState.SERIALIZED)
            logger.info("Transaction serialized", txid=txid, size=len(payload))
            return BuiltTransaction(
                envelope=envelope,
                payload=payload,
                txid=txid,
                selection=selection,
                handle=handle,
                attempt=attempt,
            )
        finally:
            reset_correlation_id(token)

    async def submit(self, built: BuiltTransaction) -> BuiltTransaction:
        """Send the serialized payload and resolve the reservation."""
        if built.state is not BuildState.SERIALIZED:
            raise ValidationError("state", f"cannot submit a transaction in state {built.state.value}")
        if self.transport is None:
            raise ValidationError("transport", "no transport configured")
        token = set_correlation_id(built.correlation_id)
        try:
            try:
                result = await self.transport.submit(built.payload, built.envelope.tx.guarantor_group)
            except BaseException:
                self._release(built, success=False)
                built.state = BuildState.FAILED
                raise
            built.result = result
            if not result.accepted:
                self._release(built, success=False)
                built.state = BuildState.FAILED
                logger.warning("Transaction rejected", txid=built.txid, code=result.code.value)
                raise RemoteRejection(result.code.value, result.error, built.txid)
            if result.txid and result.txid != built.txid:
                logger.warning("Peer reported a different txid", txid=built.txid, peer_txid=result.txid)
            # marked before release so a replayed spend clears its own mark
            self.wallet.mark_pending(built.spent_ids, built.txid)
            self._release(built, success=True)
            built.state = BuildState.SUBMITTED
            logger.info("Transaction submitted", txid=built.txid)
            return built
        finally:
            reset_correlation_id(token)

    async def transfer(self, request: TransferRequest) -> BuiltTransaction:
        return await self.submit(await self.build(request))

    def cancel(self, built: BuiltTransaction) -> None:
        """Abandon a built but unsubmitted transaction."""
        if built.state is BuildState.SERIALIZED:
            self._release(built, success=False)
            built.state = BuildState.RELEASED
            logger.info("Build cancelled", txid=built.txid)

    async def await_confirmation(
        self,
        built: BuiltTransaction,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> BuildState:
        """Poll the transport until the transaction settles or `timeout` passes.

        On timeout the state stays SUBMITTED.
        """
        if built.state is not BuildState.SUBMITTED or self.transport is None:
            return built.state
        if timeout is None:
            timeout = self._config.transport.confirmation_timeout_seconds.get()
        if poll_interval is None:
            poll_interval = self._config.transport.confirmation_poll_seconds.get()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            status = await self.transport.query_status(built.txid)
            if status is TxStatus.SUCCESS:
                built.state = BuildState.CONFIRMED
                logger.info("Transaction confirmed", txid=built.txid)
                return built.state
            if status is TxStatus.FAILED:
                built.state = BuildState.FAILED
                freed = self.wallet.clear_pending(built.txid)
                logger.warning("Transaction failed on chain", txid=built.txid, freed=len(freed))
                return built.state
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info("Confirmation wait timed out", txid=built.txid)
                return built.state
            await asyncio.sleep(min(poll_interval, remaining))

    def _release(self, built: BuiltTransaction, success: bool) -> None:
        if built.handle is None:
            return
        handle, built.handle = built.handle, None
        self.reservations.release(handle, success=success)
