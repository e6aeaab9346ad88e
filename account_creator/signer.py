"""
Base-signer identity and shared nonce tracking.

``BaseSigner`` owns the provisioning account's key and turns an action
list into a ``SignedTransaction``.  It is pure: it never reads or
updates nonce state.

``NonceTrackedSigner`` wraps it with the process-wide ``NonceState``:
the last nonce known to be used by the base access key and the block
hash used for transaction freshness.  Every provisioning request shares
this state, so reads and increments go through one ``asyncio.Lock``.
The lock is never held across an RPC call.

Nonce bookkeeping:
  - reserve:  cached += 1 and return it (optimistic, before submitting)
  - conflict: cached = max(cached, ak_nonce) + 1 and return it
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from account_creator.errors import (
    InvalidAccountId,
    InvalidSecretKey,
    RpcError,
    RpcTransportError,
    SignerUnavailable,
    SigningError,
)
from account_creator.keys import AccountId, KeyPair, PublicKey, parse_account_id
from account_creator.transaction import (
    BLOCK_HASH_LEN,
    Action,
    SignedTransaction,
    Transaction,
)

if TYPE_CHECKING:
    from account_creator.rpc import NearRpcClient

logger = logging.getLogger("creator_signer")

DEFAULT_BLOCK_HASH_REFRESH = 30.0


class BaseSigner:
    """The top-level account that signs every provisioning transaction."""

    def __init__(self, account_id: AccountId, key_pair: KeyPair):
        self.account_id = account_id
        self.key_pair = key_pair

    @property
    def public_key(self) -> PublicKey:
        return self.key_pair.public_key

    @classmethod
    def from_secret_key(cls, account_id: str, secret_key: str) -> BaseSigner:
        return cls(parse_account_id(account_id), KeyPair.from_secret_key(secret_key))

    @classmethod
    def from_key_file(cls, path: str | Path, account_id: str | None = None) -> BaseSigner:
        """
        Load a NEAR credentials file::

            {"account_id": "statelessnet",
             "public_key": "ed25519:...",
             "private_key": "ed25519:..."}

        ``secret_key`` is accepted in place of ``private_key``.
        """
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        secret = data.get("private_key") or data.get("secret_key")
        if not secret:
            raise InvalidSecretKey(f"{path}: no private_key entry")
        acct = account_id or data.get("account_id")
        if not acct:
            raise InvalidAccountId(f"{path}: no account_id entry")
        signer = cls.from_secret_key(acct, secret)
        listed = data.get("public_key")
        if listed and listed != str(signer.public_key):
            raise InvalidSecretKey(f"{path}: public_key does not match private_key")
        return signer

    def sign(
        self,
        actions: Sequence[Action],
        receiver_id: AccountId,
        nonce: int,
        block_hash: bytes,
    ) -> SignedTransaction:
        if not actions:
            raise SigningError("cannot sign a transaction without actions")
        if len(block_hash) != BLOCK_HASH_LEN:
            raise SigningError(f"block hash must be {BLOCK_HASH_LEN} bytes")
        if nonce <= 0:
            raise SigningError(f"nonce must be positive, got {nonce}")
        tx = Transaction(
            signer_id=self.account_id,
            public_key=self.public_key,
            nonce=nonce,
            receiver_id=receiver_id,
            block_hash=block_hash,
            actions=tuple(actions),
        )
        return SignedTransaction(tx, self.key_pair.sign(tx.hash()))

    def __repr__(self) -> str:
        return f"BaseSigner({self.account_id}, {self.public_key})"


@dataclass
class NonceState:
    nonce: int | None = None
    block_hash: bytes | None = None
    block_hash_fetched_at: float = 0.0


class NonceTrackedSigner:
    """``BaseSigner`` plus the shared nonce / block-hash cache."""

    def __init__(self, base: BaseSigner, rpc: NearRpcClient):
        self.base = base
        self.rpc = rpc
        self.state = NonceState()
        self._lock = asyncio.Lock()

    @property
    def account_id(self) -> AccountId:
        return self.base.account_id

    @property
    def public_key(self) -> PublicKey:
        return self.base.public_key

    # ── startup ──────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Seed the nonce and block hash; a missing access key is fatal."""
        try:
            view = await self.rpc.view_access_key(self.account_id, self.public_key)
        except RpcError as exc:
            raise SignerUnavailable(
                f"access key {self.public_key} not found on {self.account_id}: {exc}"
            ) from exc
        async with self._lock:
            self._store_nonce(view.nonce)
            self._store_block_hash(view.block_hash)
        logger.info(
            f"Base signer {self.account_id} ready (nonce {self.state.nonce}, "
            f"block height {view.block_height})"
        )

    # ── nonce ────────────────────────────────────────────────────

    def _store_nonce(self, nonce: int) -> None:
        # Never move backwards: concurrent requests may already have reserved higher values.
        if self.state.nonce is None or nonce > self.state.nonce:
            self.state.nonce = nonce

    async def _fetch_access_key_nonce(self) -> int:
        view = await self.rpc.view_access_key(self.account_id, self.public_key)
        async with self._lock:
            self._store_block_hash(view.block_hash, only_if_missing=True)
        return view.nonce

    async def current_nonce(self) -> int:
        """Best-known nonce; the first call asks the RPC node."""
        if self.state.nonce is None:
            fetched = await self._fetch_access_key_nonce()
            async with self._lock:
                self._store_nonce(fetched)
        return self.state.nonce  # type: ignore[return-value]

    async def reserve_nonce(self) -> int:
        await self.current_nonce()
        async with self._lock:
            self.state.nonce += 1  # type: ignore[operator]
            return self.state.nonce  # type: ignore[return-value]

    async def resync_nonce(self, ak_nonce: int | None = None) -> int:
        """
        Pick a new nonce after ``InvalidNonce``.  Uses the access-key nonce
        the node reported, or re-reads it when the node did not say.
        """
        if ak_nonce is None:
            ak_nonce = await self._fetch_access_key_nonce()
        async with self._lock:
            known = self.state.nonce if self.state.nonce is not None else ak_nonce
            self.state.nonce = max(known, ak_nonce) + 1
            return self.state.nonce

    # ── block hash ───────────────────────────────────────────────

    def _store_block_hash(self, block_hash: bytes, only_if_missing: bool = False) -> None:
        if only_if_missing and self.state.block_hash is not None:
            return
        self.state.block_hash = block_hash
        self.state.block_hash_fetched_at = time.monotonic()

    async def block_hash(self) -> bytes:
        if self.state.block_hash is None:
            await self.refresh_block_hash()
        return self.state.block_hash  # type: ignore[return-value]

    async def refresh_block_hash(self) -> bytes:
        fresh = await self.rpc.latest_block_hash()
        async with self._lock:
            self._store_block_hash(fresh)
        return fresh

    async def run_block_hash_refresher(self, interval: float = DEFAULT_BLOCK_HASH_REFRESH) -> None:
        """Keep the cached block hash recent; runs until cancelled."""
        while True:
            await asyncio.sleep(interval)
            logger.debug("Updating block hash...")
            try:
                await self.refresh_block_hash()
            except (RpcError, RpcTransportError, KeyError, ValueError) as exc:
                logger.warning(f"failed to fetch current block hash: {exc}")

    # ── signing ──────────────────────────────────────────────────

    def sign(
        self,
        actions: Sequence[Action],
        receiver_id: AccountId,
        nonce: int,
        block_hash: bytes,
    ) -> SignedTransaction:
        return self.base.sign(actions, receiver_id, nonce, block_hash)
