"""
NEAR transactions for account provisioning.

A provisioning transaction is sent by the base account to the new
account id and carries three actions, applied atomically and in order:

    CreateAccount  ->  AddKey(public_key, FullAccess)  ->  Transfer(amount)

Encoding follows the ledger's Borsh layout for ``Transaction`` and
``SignedTransaction``; the transaction hash is the SHA-256 of the
encoded (unsigned) transaction and is what the base key signs.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from account_creator.borsh import U128_MAX, BorshWriter
from account_creator.crypto_utils import base58_encode, sha256
from account_creator.keys import AccountId, PublicKey, Signature

BLOCK_HASH_LEN = 32


class ActionKind(IntEnum):
    """Borsh enum tags of ``Action``; only three are ever produced here."""
    CREATE_ACCOUNT = 0
    DEPLOY_CONTRACT = 1
    FUNCTION_CALL = 2
    TRANSFER = 3
    STAKE = 4
    ADD_KEY = 5
    DELETE_KEY = 6
    DELETE_ACCOUNT = 7


class AccessKeyPermission(IntEnum):
    FUNCTION_CALL = 0
    FULL_ACCESS = 1


# ===================================================================
#  Actions
# ===================================================================

@dataclass(frozen=True)
class CreateAccount:
    kind = ActionKind.CREATE_ACCOUNT

    def write(self, w: BorshWriter) -> None:
        w.write_u8(self.kind)

    def to_dict(self) -> dict:
        return {"CreateAccount": {}}


@dataclass(frozen=True)
class AddKey:
    """Attach a full-access key; the new key's own nonce starts at 0."""
    public_key: PublicKey
    nonce: int = 0
    kind = ActionKind.ADD_KEY

    def write(self, w: BorshWriter) -> None:
        w.write_u8(self.kind)
        self.public_key.write(w)
        w.write_u64(self.nonce).write_u8(AccessKeyPermission.FULL_ACCESS)

    def to_dict(self) -> dict:
        return {"AddKey": {
            "public_key": str(self.public_key),
            "access_key": {"nonce": self.nonce, "permission": "FullAccess"},
        }}


@dataclass(frozen=True)
class Transfer:
    deposit: int
    kind = ActionKind.TRANSFER

    def __post_init__(self):
        if not 0 <= self.deposit <= U128_MAX:
            raise ValueError(f"deposit out of u128 range: {self.deposit}")

    def write(self, w: BorshWriter) -> None:
        w.write_u8(self.kind).write_u128(self.deposit)

    def to_dict(self) -> dict:
        return {"Transfer": {"deposit": str(self.deposit)}}


Action = Union[CreateAccount, AddKey, Transfer]


# ===================================================================
#  Request & builder
# ===================================================================

@dataclass(frozen=True)
class ProvisioningRequest:
    """A validated form submission plus the configured funding (yoctoNEAR)."""
    account_id: AccountId
    public_key: PublicKey
    funding_amount: int


def build_actions(request: ProvisioningRequest) -> tuple[Action, ...]:
    """Account creation first, so a failure cannot leave a keyless or unfunded account."""
    return (
        CreateAccount(),
        AddKey(request.public_key),
        Transfer(request.funding_amount),
    )


# ===================================================================
#  Envelope
# ===================================================================

@dataclass(frozen=True)
class Transaction:
    signer_id: AccountId
    public_key: PublicKey
    nonce: int
    receiver_id: AccountId
    block_hash: bytes
    actions: tuple[Action, ...]

    def write(self, w: BorshWriter) -> None:
        w.write_string(str(self.signer_id))
        self.public_key.write(w)
        w.write_u64(self.nonce)
        w.write_string(str(self.receiver_id))
        w.write_fixed(self.block_hash)
        w.write_len(len(self.actions))
        for action in self.actions:
            action.write(w)

    def serialize(self) -> bytes:
        w = BorshWriter()
        self.write(w)
        return w.getvalue()

    def hash(self) -> bytes:
        return sha256(self.serialize())

    def to_dict(self) -> dict:
        return {
            "signer_id": str(self.signer_id),
            "public_key": str(self.public_key),
            "nonce": self.nonce,
            "receiver_id": str(self.receiver_id),
            "block_hash": base58_encode(self.block_hash),
            "actions": [a.to_dict() for a in self.actions],
        }


@dataclass(frozen=True)
class SignedTransaction:
    transaction: Transaction
    signature: Signature

    def serialize(self) -> bytes:
        w = BorshWriter()
        self.transaction.write(w)
        self.signature.write(w)
        return w.getvalue()

    def to_base64(self) -> str:
        """Payload for ``broadcast_tx_commit``."""
        return base64.b64encode(self.serialize()).decode("ascii")

    @property
    def hash(self) -> bytes:
        return self.transaction.hash()

    @property
    def hash_hex(self) -> str:
        return self.hash.hex()

    @property
    def hash_base58(self) -> str:
        """The form explorers and the ``tx`` RPC method expect."""
        return base58_encode(self.hash)

    def verify(self) -> bool:
        return self.transaction.public_key.verify(self.hash, self.signature)
