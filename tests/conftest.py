"""
Shared pytest fixtures for the account creator test suite.
"""

from __future__ import annotations

import asyncio

import pytest

from account_creator.config import ONE_NEAR
from account_creator.crypto_utils import base58_encode
from account_creator.keys import AccountId, KeyPair
from account_creator.provisioning import AccountProvisioner, RetryPolicy
from account_creator.rpc import AccessKeyView, SubmitResult, SubmitStatus
from account_creator.signer import BaseSigner, NonceTrackedSigner
from account_creator.transaction import ProvisioningRequest, build_actions

BASE_ACCOUNT = "statelessnet"
BASE_SEED = bytes(range(32))
USER_SEED = bytes([7] * 32)
BLOCK_HASH = bytes(range(32, 64))
AK_NONCE = 100


def secret_key_text(seed: bytes) -> str:
    """NEAR secret-key text: base58 of seed followed by public key."""
    pair = KeyPair(seed)
    return "ed25519:" + base58_encode(seed + pair.public_key.data)


class FakeRpc:
    """
    Stands in for ``NearRpcClient``.

    ``script`` holds the answers for successive broadcasts: a
    ``SubmitStatus`` (hash filled in), a full ``SubmitResult``, or an
    exception to raise.  An empty script accepts everything.  When
    ``gate`` is set, broadcasts block until it is released.
    """

    def __init__(self, ak_nonce: int = AK_NONCE, block_hash: bytes = BLOCK_HASH):
        self.ak_nonce = ak_nonce
        self.block_hash = block_hash
        self.script: list = []
        self.broadcasts: list = []
        self.view_calls = 0
        self.view_errors: list[Exception] = []
        self.status_calls = 0
        self.status_errors: list[Exception] = []
        self.tx_status_calls: list[str] = []
        self.tx_status_result: SubmitResult | None = None
        self.gate: asyncio.Event | None = None

    async def view_access_key(self, account_id, public_key) -> AccessKeyView:
        self.view_calls += 1
        if self.view_errors:
            raise self.view_errors.pop(0)
        return AccessKeyView(self.ak_nonce, self.block_hash, 42, "FullAccess")

    async def latest_block_hash(self) -> bytes:
        self.status_calls += 1
        if self.status_errors:
            raise self.status_errors.pop(0)
        return self.block_hash

    async def broadcast_tx_commit(self, signed) -> SubmitResult:
        self.broadcasts.append(signed)
        if self.gate is not None:
            await self.gate.wait()
        item = self.script.pop(0) if self.script else SubmitStatus.ACCEPTED
        if isinstance(item, Exception):
            raise item
        if isinstance(item, SubmitStatus):
            return SubmitResult(item, signed.hash_hex)
        return item

    async def tx_status(self, tx_hash_b58: str, sender_id) -> SubmitResult | None:
        self.tx_status_calls.append(tx_hash_b58)
        return self.tx_status_result

    @property
    def broadcast_nonces(self) -> list[int]:
        return [s.transaction.nonce for s in self.broadcasts]


@pytest.fixture
def base_key():
    """Deterministic key pair of the base account."""
    return KeyPair(BASE_SEED)


@pytest.fixture
def base_signer(base_key):
    return BaseSigner(AccountId(BASE_ACCOUNT), base_key)


@pytest.fixture
def user_key():
    """Public key a user submits for the new account."""
    return KeyPair(USER_SEED).public_key


@pytest.fixture
def fake_rpc():
    return FakeRpc()


@pytest.fixture
def signer(base_signer, fake_rpc):
    return NonceTrackedSigner(base_signer, fake_rpc)


@pytest.fixture
def provisioner(signer, fake_rpc):
    """Provisioner with zero backoff so retries never sleep."""
    return AccountProvisioner(
        signer, fake_rpc, ONE_NEAR, RetryPolicy(backoff_seconds=0),
    )


@pytest.fixture
def signed_tx(base_signer, user_key):
    """A signed provisioning transaction for ``alice.statelessnet``."""
    request = ProvisioningRequest(AccountId("alice.statelessnet"), user_key, ONE_NEAR)
    return base_signer.sign(build_actions(request), request.account_id, AK_NONCE + 1, BLOCK_HASH)
