"""
Account provisioning pipeline.

    VALIDATING -> BUILDING -> SIGNING -> SUBMITTING -> DONE | FAILED
                                 ^            |
                                 +-- RETRYING +

``AccountProvisioner.provision(account_id, public_key)`` is the only
entry point the HTTP layer uses.  It always returns one of three
terminal outcomes; every retry decision is made here:

  NONCE_CONFLICT          resync the nonce, re-sign, bounded retries
  TRANSIENT_NETWORK_ERROR resend the same signed tx, bounded retries
  ACCOUNT_ALREADY_EXISTS  Rejected, never retried
  OTHER_REJECTION         Failed, never retried

A request keeps running when its HTTP client goes away, because the
signed transaction may already be on the ledger.  A second request for
the same account and key joins the one in flight instead of submitting
again; one with a different key is rejected as already existing.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Union

from account_creator.errors import AccountCreatorError, InvalidInput, RpcError, RpcTransportError
from account_creator.keys import (
    AccountId,
    normalize_account_id,
    parse_account_id,
    parse_public_key,
)
from account_creator.rpc import TRANSIENT_CAUSES, NearRpcClient, SubmitResult, SubmitStatus
from account_creator.signer import NonceTrackedSigner
from account_creator.transaction import (
    Action,
    ProvisioningRequest,
    SignedTransaction,
    build_actions,
)

logger = logging.getLogger("creator_provisioning")

GENERIC_FAILURE = "account creation failed, please try again later"


class State(Enum):
    VALIDATING = "validating"
    BUILDING = "building"
    SIGNING = "signing"
    SUBMITTING = "submitting"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


class RejectionReason(str, Enum):
    INVALID_ACCOUNT_ID = "InvalidAccountId"
    INVALID_PUBLIC_KEY = "InvalidPublicKey"
    ACCOUNT_ALREADY_EXISTS = "AccountAlreadyExists"


# ===================================================================
#  Outcomes
# ===================================================================

@dataclass(frozen=True)
class Created:
    transaction_hash: str
    account_id: str
    public_key: str

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "public_key": self.public_key,
            "transaction_hash": self.transaction_hash,
        }


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    detail: str = ""


@dataclass(frozen=True)
class Failed:
    """Submission gave up.  ``cause`` is for logs, not for users."""
    cause: str
    reason: str = GENERIC_FAILURE


ProvisioningOutcome = Union[Created, Rejected, Failed]


@dataclass(frozen=True)
class RetryPolicy:
    max_nonce_retries: int = 5
    max_network_retries: int = 3
    backoff_seconds: float = 0.25

    def delay(self, attempt: int) -> float:
        """Linear backoff before retry number *attempt* (1-based)."""
        return self.backoff_seconds * attempt


# ===================================================================
#  Orchestrator
# ===================================================================

class AccountProvisioner:
    """
    Validates, builds, signs and submits account-creation transactions
    on behalf of one shared base signer.
    """

    def __init__(
        self,
        signer: NonceTrackedSigner,
        rpc: NearRpcClient,
        funding_amount: int,
        retry: RetryPolicy | None = None,
        *,
        auto_suffix: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if funding_amount < 0:
            raise ValueError("funding amount must not be negative")
        self.signer = signer
        self.rpc = rpc
        self.funding_amount = funding_amount
        self.retry = retry or RetryPolicy()
        self.auto_suffix = auto_suffix
        self._sleep = sleep
        # account id -> (request, running pipeline); keeps shielded tasks referenced
        self._in_flight: dict[str, tuple[ProvisioningRequest, asyncio.Task]] = {}

    @property
    def parent(self) -> AccountId:
        return self.signer.account_id

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # ── public API ───────────────────────────────────────────────

    def validate(self, account_id: str, public_key: str) -> ProvisioningRequest:
        """Raises ``InvalidAccountId`` / ``InvalidPublicKey``."""
        text = normalize_account_id(account_id, self.parent) if self.auto_suffix else account_id
        return ProvisioningRequest(
            account_id=parse_account_id(text, parent=self.parent),
            public_key=parse_public_key(public_key.strip()),
            funding_amount=self.funding_amount,
        )

    async def provision(self, account_id: str, public_key: str) -> ProvisioningOutcome:
        logger.debug(f"[{State.VALIDATING.value}] account {account_id!r} key {public_key!r}")
        try:
            request = self.validate(account_id, public_key)
        except InvalidInput as exc:
            logger.info(f"Rejected {account_id!r}: {exc}")
            return Rejected(RejectionReason(exc.reason), str(exc))

        key = str(request.account_id)
        entry = self._in_flight.get(key)
        if entry is None:
            task = asyncio.ensure_future(self._run(request))
            self._in_flight[key] = (request, task)
            task.add_done_callback(lambda _t: self._in_flight.pop(key, None))
        elif entry[0].public_key != request.public_key:
            # the pending creation would attach someone else's key
            logger.info(f"Rejected {key}: creation with another key is in flight")
            return Rejected(RejectionReason.ACCOUNT_ALREADY_EXISTS, f"{key} already exists")
        else:
            task = entry[1]
            logger.info(f"Request for {key} joins the one already in flight")
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for every in-flight submission (used at shutdown)."""
        pending = [task for _request, task in self._in_flight.values()]
        if pending:
            logger.info(f"Waiting for {len(pending)} in-flight account creation(s)")
            await asyncio.gather(*pending, return_exceptions=True)

    # ── pipeline ─────────────────────────────────────────────────

    async def _run(self, request: ProvisioningRequest) -> ProvisioningOutcome:
        try:
            return await self._submit_with_retry(request)
        except (AccountCreatorError, ValueError, KeyError) as exc:
            logger.exception(f"Creating {request.account_id} failed unexpectedly")
            return Failed(cause=f"{type(exc).__name__}: {exc}")

    async def _prepare(
        self,
        request: ProvisioningRequest,
        actions: tuple[Action, ...],
        conflict: SubmitResult | None,
    ) -> SignedTransaction:
        """Pick a nonce (fresh, or resynced after *conflict*) and sign."""
        if conflict is None:
            nonce = await self.signer.reserve_nonce()
        else:
            nonce = await self.signer.resync_nonce(conflict.ak_nonce)
            logger.debug(
                f"[{State.RETRYING.value}] retrying creating {request.account_id} with nonce "
                f"{nonce} after nonce {conflict.tx_nonce} was rejected with current access "
                f"key nonce {conflict.ak_nonce}"
            )
        logger.debug(f"[{State.SIGNING.value}] {request.account_id} with nonce {nonce}")
        block_hash = await self.signer.block_hash()
        return self.signer.sign(actions, request.account_id, nonce, block_hash)

    async def _submit_with_retry(self, request: ProvisioningRequest) -> ProvisioningOutcome:
        account = request.account_id
        logger.debug(f"[{State.BUILDING.value}] {account}")
        actions = build_actions(request)

        nonce_retries = 0
        network_retries = 0
        conflict: SubmitResult | None = None
        signed: SignedTransaction | None = None
        # transactions whose submission ended in a transient error; they may have landed
        uncertain: list[SignedTransaction] = []

        while True:
            if signed is None:
                try:
                    signed = await self._prepare(request, actions, conflict)
                except RpcTransportError as exc:
                    result = SubmitResult(SubmitStatus.TRANSIENT_NETWORK_ERROR, detail=str(exc))
                except RpcError as exc:
                    if exc.cause not in TRANSIENT_CAUSES:
                        raise
                    result = SubmitResult(SubmitStatus.TRANSIENT_NETWORK_ERROR, detail=str(exc))
            if signed is not None:
                logger.debug(
                    f"[{State.SUBMITTING.value}] Sending transaction creating {account} "
                    f"with nonce {signed.transaction.nonce} to NEAR RPC node..."
                )
                result = await self.rpc.broadcast_tx_commit(signed)
            status = result.status

            if status is SubmitStatus.ACCEPTED:
                logger.info(f"transaction execution succeeded for {account}: {signed.hash_base58}")
                return self._created(request, signed)

            if status in (SubmitStatus.NONCE_CONFLICT, SubmitStatus.ACCOUNT_ALREADY_EXISTS) and uncertain:
                landed = await self._find_landed(uncertain)
                if landed is not None:
                    logger.info(f"earlier copy for {account} landed: {landed.hash_base58}")
                    return self._created(request, landed)

            if status is SubmitStatus.ACCOUNT_ALREADY_EXISTS:
                logger.info(f"Rejected {account}: account already exists")
                return Rejected(RejectionReason.ACCOUNT_ALREADY_EXISTS, f"{account} already exists")

            if status is SubmitStatus.OTHER_REJECTION:
                return self._failed(account, f"transaction rejected: {result.detail}")

            if status is SubmitStatus.NONCE_CONFLICT:
                if nonce_retries >= self.retry.max_nonce_retries:
                    return self._failed(
                        account, f"nonce conflict persisted after {nonce_retries} retries",
                    )
                nonce_retries += 1
                self._warn_nonce_mismatch(signed, result)
                conflict, signed = result, None
                await self._backoff(nonce_retries)
                continue

            # TRANSIENT_NETWORK_ERROR: resend the identical transaction, if one was signed
            if signed is not None and signed not in uncertain:
                uncertain.append(signed)
            if network_retries >= self.retry.max_network_retries:
                return self._failed(
                    account, f"network error persisted after {network_retries} retries: {result.detail}",
                )
            network_retries += 1
            logger.debug(
                f"[{State.RETRYING.value}] transient error for {account} ({result.detail}), "
                f"retry {network_retries}/{self.retry.max_network_retries}"
            )
            await self._backoff(network_retries)

    async def _backoff(self, attempt: int) -> None:
        delay = self.retry.delay(attempt)
        if delay > 0:
            await self._sleep(delay)

    async def _find_landed(self, candidates: list[SignedTransaction]) -> SignedTransaction | None:
        for signed in candidates:
            found = await self.rpc.tx_status(signed.hash_base58, self.signer.account_id)
            if found is not None and found.accepted:
                return signed
        return None

    @staticmethod
    def _warn_nonce_mismatch(signed: SignedTransaction, result: SubmitResult) -> None:
        sent = signed.transaction.nonce
        if result.tx_nonce is not None and result.tx_nonce != sent:
            logger.warning(
                f"NEAR RPC node reported that our transaction's nonce was {result.tx_nonce}, "
                f"when we remember sending {sent}"
            )

    @staticmethod
    def _created(request: ProvisioningRequest, signed: SignedTransaction) -> Created:
        logger.debug(f"[{State.DONE.value}] {request.account_id}")
        return Created(
            transaction_hash=signed.hash_hex,
            account_id=str(request.account_id),
            public_key=str(request.public_key),
        )

    @staticmethod
    def _failed(account: AccountId, cause: str) -> Failed:
        logger.warning(f"[{State.FAILED.value}] transaction execution failed for {account}: {cause}")
        return Failed(cause=cause)
