"""
Tests for the base signer and shared nonce tracking.

Covers:
  - Loading the base signer from a secret key or a credentials file
  - Startup seeding and the missing-access-key failure
  - reserve / resync arithmetic and the cold-start query
  - Concurrent reservations never hand out the same nonce
  - Block-hash cache and the background refresher, which outlives bad answers
"""

from __future__ import annotations

import asyncio
import json

import pytest

from account_creator.errors import (
    InvalidAccountId,
    InvalidSecretKey,
    RpcError,
    RpcTransportError,
    SignerUnavailable,
)
from account_creator.signer import BaseSigner

from conftest import AK_NONCE, BASE_SEED, BLOCK_HASH, USER_SEED, secret_key_text


# ═══════════════════════════════════════════════════════════════════
#  BaseSigner loading
# ═══════════════════════════════════════════════════════════════════

class TestBaseSignerLoading:
    def test_from_secret_key(self, base_key):
        signer = BaseSigner.from_secret_key("statelessnet", secret_key_text(BASE_SEED))
        assert str(signer.account_id) == "statelessnet"
        assert signer.public_key == base_key.public_key

    def test_from_key_file(self, tmp_path, base_key):
        path = tmp_path / "statelessnet.json"
        path.write_text(json.dumps({
            "account_id": "statelessnet",
            "public_key": str(base_key.public_key),
            "private_key": secret_key_text(BASE_SEED),
        }))
        signer = BaseSigner.from_key_file(path)
        assert str(signer.account_id) == "statelessnet"
        assert signer.public_key == base_key.public_key

    def test_key_file_secret_key_field_and_account_override(self, tmp_path):
        path = tmp_path / "key.json"
        path.write_text(json.dumps({"secret_key": secret_key_text(BASE_SEED)}))
        signer = BaseSigner.from_key_file(str(path), account_id="creator")
        assert str(signer.account_id) == "creator"

    def test_key_file_public_key_mismatch(self, tmp_path):
        from account_creator.keys import KeyPair
        path = tmp_path / "key.json"
        path.write_text(json.dumps({
            "account_id": "statelessnet",
            "public_key": str(KeyPair(USER_SEED).public_key),
            "private_key": secret_key_text(BASE_SEED),
        }))
        with pytest.raises(InvalidSecretKey, match="does not match"):
            BaseSigner.from_key_file(path)

    def test_key_file_without_private_key(self, tmp_path):
        path = tmp_path / "key.json"
        path.write_text(json.dumps({"account_id": "statelessnet"}))
        with pytest.raises(InvalidSecretKey):
            BaseSigner.from_key_file(path)

    def test_key_file_without_account(self, tmp_path):
        path = tmp_path / "key.json"
        path.write_text(json.dumps({"private_key": secret_key_text(BASE_SEED)}))
        with pytest.raises(InvalidAccountId):
            BaseSigner.from_key_file(path)

    def test_repr_has_no_secret(self, base_signer):
        assert "statelessnet" in repr(base_signer)
        assert secret_key_text(BASE_SEED) not in repr(base_signer)


# ═══════════════════════════════════════════════════════════════════
#  Startup
# ═══════════════════════════════════════════════════════════════════

class TestInitialize:
    @pytest.mark.asyncio
    async def test_seeds_nonce_and_block_hash(self, signer, fake_rpc):
        await signer.initialize()
        assert signer.state.nonce == AK_NONCE
        assert signer.state.block_hash == BLOCK_HASH
        assert fake_rpc.view_calls == 1

    @pytest.mark.asyncio
    async def test_missing_access_key_is_fatal(self, signer, fake_rpc):
        fake_rpc.view_errors.append(RpcError({
            "name": "HANDLER_ERROR",
            "cause": {"name": "UNKNOWN_ACCESS_KEY"},
        }))
        with pytest.raises(SignerUnavailable, match="UNKNOWN_ACCESS_KEY"):
            await signer.initialize()
        assert signer.state.nonce is None


# ═══════════════════════════════════════════════════════════════════
#  Nonce arithmetic
# ═══════════════════════════════════════════════════════════════════

class TestNonce:
    @pytest.mark.asyncio
    async def test_cold_start_queries_once(self, signer, fake_rpc):
        assert await signer.reserve_nonce() == AK_NONCE + 1
        assert await signer.reserve_nonce() == AK_NONCE + 2
        assert fake_rpc.view_calls == 1

    @pytest.mark.asyncio
    async def test_current_nonce_does_not_reserve(self, signer):
        await signer.initialize()
        assert await signer.current_nonce() == AK_NONCE
        assert await signer.current_nonce() == AK_NONCE

    @pytest.mark.asyncio
    async def test_resync_jumps_past_reported_nonce(self, signer, fake_rpc):
        await signer.initialize()
        assert await signer.resync_nonce(250) == 251
        assert signer.state.nonce == 251
        assert fake_rpc.view_calls == 1

    @pytest.mark.asyncio
    async def test_resync_never_moves_backwards(self, signer):
        await signer.initialize()
        for _ in range(5):
            await signer.reserve_nonce()
        # node reports an older nonce: stay ahead of what we already handed out
        assert await signer.resync_nonce(AK_NONCE) == AK_NONCE + 6

    @pytest.mark.asyncio
    async def test_resync_without_hint_queries_node(self, signer, fake_rpc):
        await signer.initialize()
        fake_rpc.ak_nonce = 300
        assert await signer.resync_nonce() == 301
        assert fake_rpc.view_calls == 2

    @pytest.mark.asyncio
    async def test_resync_on_cold_state(self, signer):
        assert await signer.resync_nonce(40) == 41

    @pytest.mark.asyncio
    async def test_stale_query_does_not_rewind(self, signer, fake_rpc):
        await signer.initialize()
        await signer.reserve_nonce()
        signer._store_nonce(AK_NONCE - 10)
        assert signer.state.nonce == AK_NONCE + 1

    @pytest.mark.asyncio
    async def test_concurrent_reservations_are_unique(self, signer):
        nonces = await asyncio.gather(*(signer.reserve_nonce() for _ in range(25)))
        assert sorted(nonces) == list(range(AK_NONCE + 1, AK_NONCE + 26))

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, signer, fake_rpc):
        fake_rpc.view_errors.append(RpcTransportError("query: timed out"))
        with pytest.raises(RpcTransportError):
            await signer.reserve_nonce()
        assert signer.state.nonce is None


# ═══════════════════════════════════════════════════════════════════
#  Block hash
# ═══════════════════════════════════════════════════════════════════

class TestBlockHash:
    @pytest.mark.asyncio
    async def test_initialized_hash_needs_no_status_call(self, signer, fake_rpc):
        await signer.initialize()
        assert await signer.block_hash() == BLOCK_HASH
        assert fake_rpc.status_calls == 0

    @pytest.mark.asyncio
    async def test_missing_hash_is_fetched(self, signer, fake_rpc):
        assert await signer.block_hash() == BLOCK_HASH
        assert fake_rpc.status_calls == 1

    @pytest.mark.asyncio
    async def test_refresh_replaces_hash(self, signer, fake_rpc):
        await signer.initialize()
        fake_rpc.block_hash = bytes(32)
        await signer.refresh_block_hash()
        assert await signer.block_hash() == bytes(32)

    @pytest.mark.asyncio
    async def test_refresher_survives_errors(self, signer, fake_rpc):
        await signer.initialize()
        fake_rpc.status_errors.append(RpcTransportError("status: HTTP 502", status=502))
        fake_rpc.block_hash = bytes(32)
        task = asyncio.create_task(signer.run_block_hash_refresher(interval=0))
        for _ in range(50):
            await asyncio.sleep(0)
            if fake_rpc.status_calls >= 2:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert fake_rpc.status_calls >= 2
        assert signer.state.block_hash == bytes(32)

    @pytest.mark.asyncio
    async def test_refresher_survives_malformed_hash(self, signer, fake_rpc):
        await signer.initialize()
        fake_rpc.status_errors.append(ValueError("invalid base58 character '0'"))
        fake_rpc.block_hash = bytes(32)
        task = asyncio.create_task(signer.run_block_hash_refresher(interval=0))
        for _ in range(50):
            await asyncio.sleep(0)
            if fake_rpc.status_calls >= 2:
                break
        assert not task.done()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert signer.state.block_hash == bytes(32)
