"""
JSON-RPC client for a NEAR node, built on ``aiohttp``.

Methods used by the account creator:
    query / view_access_key   nonce of the base signer's access key
    status                    latest block hash
    broadcast_tx_commit       submit a signed transaction and wait for it
    tx                        look up a transaction sent earlier

Query helpers raise ``RpcTransportError`` / ``RpcError``.  Submission
never raises for expected ledger answers: ``broadcast_tx_commit`` returns
a ``SubmitResult`` whose ``status`` drives the orchestrator's retries.

Response classification is done by pure functions at the bottom of the
module so it can be tested against canned node responses.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiohttp

from account_creator.crypto_utils import base58_decode
from account_creator.errors import RpcError, RpcTransportError
from account_creator.keys import AccountId, PublicKey
from account_creator.transaction import SignedTransaction

logger = logging.getLogger("creator_rpc")

DEFAULT_TIMEOUT = 10.0
DEFAULT_BROADCAST_TIMEOUT = 30.0

# Node-side error causes that say nothing about the transaction itself.
TRANSIENT_CAUSES = frozenset({"TIMEOUT_ERROR", "INTERNAL_ERROR", "NO_SYNCED_BLOCKS"})
TRANSIENT_HTTP_STATUSES = frozenset({408, 429})

_request_ids = itertools.count(1)


class SubmitStatus(Enum):
    ACCEPTED = "accepted"
    NONCE_CONFLICT = "nonce_conflict"
    ACCOUNT_ALREADY_EXISTS = "account_already_exists"
    TRANSIENT_NETWORK_ERROR = "transient_network_error"
    OTHER_REJECTION = "other_rejection"


@dataclass(frozen=True)
class SubmitResult:
    """Classified answer to a submission.

    ``tx_nonce`` / ``ak_nonce`` are only set for ``NONCE_CONFLICT`` and
    only when the node reported them.
    """
    status: SubmitStatus
    tx_hash: str | None = None
    detail: str | None = None
    tx_nonce: int | None = None
    ak_nonce: int | None = None

    @property
    def accepted(self) -> bool:
        return self.status is SubmitStatus.ACCEPTED


@dataclass(frozen=True)
class AccessKeyView:
    nonce: int
    block_hash: bytes
    block_height: int
    permission: Any


class NearRpcClient:
    """
    Thin async JSON-RPC client.  One ``aiohttp.ClientSession`` is opened
    lazily and reused; call ``close()`` on shutdown.
    """

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_TIMEOUT,
        broadcast_timeout: float = DEFAULT_BROADCAST_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.broadcast_timeout = broadcast_timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> NearRpcClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── transport ────────────────────────────────────────────────

    async def call(self, method: str, params: Any, timeout: float | None = None) -> dict:
        """
        POST one JSON-RPC request and return the decoded response body.

        Raises ``RpcTransportError`` when no JSON-RPC answer was obtained.
        A body carrying an ``error`` object is returned as-is.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": str(next(_request_ids)),
            "method": method,
            "params": params,
        }
        session = await self._get_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)
        try:
            async with session.post(self.url, json=payload, timeout=client_timeout) as resp:
                if resp.status >= 500 or resp.status in TRANSIENT_HTTP_STATUSES:
                    raise RpcTransportError(f"{method}: HTTP {resp.status}", status=resp.status)
                try:
                    body = await resp.json(content_type=None)
                except ValueError as exc:
                    raise RpcTransportError(
                        f"{method}: response is not JSON (HTTP {resp.status})", status=resp.status,
                    ) from exc
        except asyncio.TimeoutError as exc:
            raise RpcTransportError(f"{method}: timed out") from exc
        except aiohttp.ClientError as exc:
            raise RpcTransportError(f"{method}: {exc}") from exc
        if not isinstance(body, dict):
            raise RpcTransportError(f"{method}: unexpected response shape")
        return body

    async def _call_result(self, method: str, params: Any) -> dict:
        body = await self.call(method, params)
        error = body.get("error")
        if error:
            raise RpcError(error if isinstance(error, dict) else {"message": str(error)})
        result = body.get("result")
        if not isinstance(result, dict):
            raise RpcError({"name": "MALFORMED_RESPONSE", "message": f"{method}: no result"})
        return result

    # ── queries ──────────────────────────────────────────────────

    async def view_access_key(self, account_id: AccountId, public_key: PublicKey) -> AccessKeyView:
        result = await self._call_result("query", {
            "request_type": "view_access_key",
            "finality": "final",
            "account_id": str(account_id),
            "public_key": str(public_key),
        })
        # Older nodes report a missing key inside the result instead of an error object.
        if "error" in result:
            raise RpcError({"name": "HANDLER_ERROR",
                            "cause": {"name": "UNKNOWN_ACCESS_KEY"},
                            "message": str(result["error"])})
        return AccessKeyView(
            nonce=int(result["nonce"]),
            block_hash=base58_decode(result["block_hash"]),
            block_height=int(result.get("block_height", 0)),
            permission=result.get("permission"),
        )

    async def latest_block_hash(self) -> bytes:
        logger.debug("Fetching current block hash from NEAR RPC node...")
        result = await self._call_result("status", [])
        return base58_decode(result["sync_info"]["latest_block_hash"])

    # ── submission ───────────────────────────────────────────────

    async def broadcast_tx_commit(self, signed: SignedTransaction) -> SubmitResult:
        try:
            body = await self.call(
                "broadcast_tx_commit", [signed.to_base64()], timeout=self.broadcast_timeout,
            )
        except RpcTransportError as exc:
            return SubmitResult(SubmitStatus.TRANSIENT_NETWORK_ERROR, signed.hash_hex, str(exc))
        return classify_broadcast_response(body, signed.hash_hex)

    async def tx_status(self, tx_hash_b58: str, sender_id: AccountId) -> SubmitResult | None:
        """
        Outcome of a previously sent transaction, or ``None`` when the node
        does not know it (or cannot be reached).
        """
        try:
            body = await self.call("tx", [tx_hash_b58, str(sender_id)])
        except RpcTransportError as exc:
            logger.warning(f"tx status lookup for {tx_hash_b58} failed: {exc}")
            return None
        error = body.get("error")
        if error:
            cause = error.get("cause") if isinstance(error, dict) else None
            cause = cause.get("name", "") if isinstance(cause, dict) else ""
            if cause != "UNKNOWN_TRANSACTION":
                logger.warning(f"tx status lookup for {tx_hash_b58} returned {cause or error}")
            return None
        return classify_broadcast_response(body, base58_decode(tx_hash_b58).hex())


# ===================================================================
#  Classification (pure)
# ===================================================================

def _find(obj: Any, key: str) -> Any:
    """Depth-first search for *key* in nested dicts/lists; ``None`` if absent."""
    if isinstance(obj, dict):
        if key in obj:
            return obj[key]
        children = obj.values()
    elif isinstance(obj, list):
        children = obj
    else:
        return None
    for child in children:
        found = _find(child, key)
        if found is not None:
            return found
    return None


def _classify_failure(failure: Any, tx_hash: str | None) -> SubmitResult:
    invalid_nonce = _find(failure, "InvalidNonce")
    if isinstance(invalid_nonce, dict):
        tx_nonce = invalid_nonce.get("tx_nonce")
        ak_nonce = invalid_nonce.get("ak_nonce")
        return SubmitResult(
            SubmitStatus.NONCE_CONFLICT,
            tx_hash,
            f"nonce {tx_nonce} rejected, access key nonce is {ak_nonce}",
            tx_nonce=int(tx_nonce) if tx_nonce is not None else None,
            ak_nonce=int(ak_nonce) if ak_nonce is not None else None,
        )
    if _find(failure, "AccountAlreadyExists") is not None:
        return SubmitResult(SubmitStatus.ACCOUNT_ALREADY_EXISTS, tx_hash, "account already exists")
    return SubmitResult(SubmitStatus.OTHER_REJECTION, tx_hash, str(failure))


def classify_error(error: dict, tx_hash: str | None = None) -> SubmitResult:
    """Classify a JSON-RPC ``error`` object returned for a submission."""
    cause = error.get("cause") or {}
    cause_name = cause.get("name", "") if isinstance(cause, dict) else ""
    if cause_name in TRANSIENT_CAUSES:
        return SubmitResult(SubmitStatus.TRANSIENT_NETWORK_ERROR, tx_hash, cause_name)
    # Structured details live in ``cause.info`` on current nodes, ``data`` on older ones.
    details = [cause.get("info") if isinstance(cause, dict) else None, error.get("data")]
    result = _classify_failure(details, tx_hash)
    if result.status is SubmitStatus.OTHER_REJECTION:
        detail = cause_name or error.get("name") or "RPC error"
        return SubmitResult(SubmitStatus.OTHER_REJECTION, tx_hash, f"{detail}: {error.get('data')}")
    return result


def classify_broadcast_response(body: dict, tx_hash: str | None = None) -> SubmitResult:
    """Map a ``broadcast_tx_commit`` / ``tx`` response body to a ``SubmitResult``."""
    error = body.get("error")
    if error:
        if not isinstance(error, dict):
            return SubmitResult(SubmitStatus.OTHER_REJECTION, tx_hash, str(error))
        return classify_error(error, tx_hash)

    result = body.get("result")
    if not isinstance(result, dict):
        return SubmitResult(SubmitStatus.TRANSIENT_NETWORK_ERROR, tx_hash, "response has no result")

    status = result.get("status")
    if isinstance(status, dict):
        if "SuccessValue" in status or "SuccessReceiptId" in status:
            return SubmitResult(SubmitStatus.ACCEPTED, tx_hash)
        if "Failure" in status:
            return _classify_failure(status["Failure"], tx_hash)
    return SubmitResult(SubmitStatus.OTHER_REJECTION, tx_hash, f"unexpected status: {status!r}")
