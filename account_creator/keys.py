"""
Account identifiers and Ed25519 keys.

Pure validation, no network access:
  - ``AccountId``   NEAR account-naming grammar, optional parent check
  - ``PublicKey``   ``ed25519:<base58>`` decoding to exactly 32 bytes
  - ``KeyPair``     base-signer secret key (``ed25519:<base58 of 64 bytes>``)
  - ``Signature``   64-byte Ed25519 signature

Usage:
    account = parse_account_id("alice.statelessnet", parent=base.account_id)
    key = parse_public_key("ed25519:11111111111111111111111111111111")
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import IntEnum

from account_creator.borsh import BorshWriter
from account_creator.crypto_utils import (
    ED25519_PUBLIC_KEY_LEN,
    ED25519_SEED_LEN,
    ED25519_SIGNATURE_LEN,
    base58_decode,
    base58_encode,
    ed25519_public_key,
    ed25519_sign,
    ed25519_verify,
)
from account_creator.errors import InvalidAccountId, InvalidPublicKey, InvalidSecretKey

MIN_ACCOUNT_ID_LEN = 2
MAX_ACCOUNT_ID_LEN = 64

# Dot-separated parts of [a-z0-9] runs joined by single '-' or '_'.
_ACCOUNT_ID_RE = re.compile(r"(([a-z\d]+[-_])*[a-z\d]+\.)*([a-z\d]+[-_])*[a-z\d]+")


class KeyType(IntEnum):
    """Curve tags as they appear in Borsh and in the textual prefix."""
    ED25519 = 0

    @property
    def prefix(self) -> str:
        return f"{self.name.lower()}:"


# ===================================================================
#  Account ids
# ===================================================================

@dataclass(frozen=True)
class AccountId:
    value: str

    def __post_init__(self):
        v = self.value
        if not isinstance(v, str) or not v:
            raise InvalidAccountId("account id is empty")
        if not MIN_ACCOUNT_ID_LEN <= len(v) <= MAX_ACCOUNT_ID_LEN:
            raise InvalidAccountId(
                f"account id must be {MIN_ACCOUNT_ID_LEN}-{MAX_ACCOUNT_ID_LEN} characters long"
            )
        if _ACCOUNT_ID_RE.fullmatch(v) is None:
            raise InvalidAccountId(
                "account id may only contain lowercase letters, digits and "
                "single '-', '_' or '.' separators"
            )

    @property
    def parent(self) -> str | None:
        """``alice.statelessnet`` -> ``statelessnet``; top-level ids have none."""
        if "." not in self.value:
            return None
        return self.value.split(".", 1)[1]

    def is_direct_child_of(self, parent: AccountId | str) -> bool:
        return self.parent == str(parent)

    def __str__(self) -> str:
        return self.value


def parse_account_id(text: str, parent: AccountId | str | None = None) -> AccountId:
    """
    Validate *text* against the account-naming grammar.

    When *parent* is given the id must be a direct sub-account of it,
    since only the parent may create ``<name>.<parent>``.
    """
    account = AccountId(text)
    if parent is not None and not account.is_direct_child_of(parent):
        raise InvalidAccountId(f"account id must have the form <name>.{parent}")
    return account


def normalize_account_id(text: str, parent: AccountId | str) -> str:
    """Trim *text* and append ``.<parent>`` unless it already ends with it."""
    text = text.strip()
    suffix = f".{parent}"
    if text.endswith(suffix):
        return text
    return f"{text}{suffix}"


# ===================================================================
#  Keys and signatures
# ===================================================================

@dataclass(frozen=True)
class PublicKey:
    key_type: KeyType
    data: bytes

    def __post_init__(self):
        if self.key_type is not KeyType.ED25519:
            raise InvalidPublicKey(f"unsupported key type: {self.key_type!r}")
        if len(self.data) != ED25519_PUBLIC_KEY_LEN:
            raise InvalidPublicKey(
                f"ed25519 public key must be {ED25519_PUBLIC_KEY_LEN} bytes, got {len(self.data)}"
            )

    def write(self, w: BorshWriter) -> None:
        w.write_u8(self.key_type).write_fixed(self.data)

    def verify(self, message: bytes, signature: Signature) -> bool:
        return ed25519_verify(self.data, message, signature.data)

    def __str__(self) -> str:
        return self.key_type.prefix + base58_encode(self.data)


def parse_public_key(text: str) -> PublicKey:
    """Parse ``ed25519:<base58>``; any other curve tag or length is rejected."""
    if not isinstance(text, str) or not text:
        raise InvalidPublicKey("public key is empty")
    prefix = KeyType.ED25519.prefix
    if not text.startswith(prefix):
        raise InvalidPublicKey(f"public key must start with '{prefix}'")
    try:
        data = base58_decode(text[len(prefix):])
    except ValueError as exc:
        raise InvalidPublicKey(f"public key is not valid base58: {exc}") from exc
    return PublicKey(KeyType.ED25519, data)


@dataclass(frozen=True)
class Signature:
    key_type: KeyType
    data: bytes

    def __post_init__(self):
        if len(self.data) != ED25519_SIGNATURE_LEN:
            raise ValueError(f"ed25519 signature must be {ED25519_SIGNATURE_LEN} bytes")

    def write(self, w: BorshWriter) -> None:
        w.write_u8(self.key_type).write_fixed(self.data)

    def __str__(self) -> str:
        return self.key_type.prefix + base58_encode(self.data)


class KeyPair:
    """
    An Ed25519 secret key together with its public key.

    NEAR stores secret keys as 64 bytes: the 32-byte seed followed by the
    public key.  ``repr`` never shows key material.
    """

    __slots__ = ("_seed", "public_key")

    def __init__(self, seed: bytes):
        if len(seed) != ED25519_SEED_LEN:
            raise InvalidSecretKey(f"ed25519 seed must be {ED25519_SEED_LEN} bytes")
        self._seed = bytes(seed)
        self.public_key = PublicKey(KeyType.ED25519, ed25519_public_key(self._seed))

    @classmethod
    def from_secret_key(cls, text: str) -> KeyPair:
        prefix = KeyType.ED25519.prefix
        text = text.strip()
        if not text.startswith(prefix):
            raise InvalidSecretKey(f"secret key must start with '{prefix}'")
        try:
            raw = base58_decode(text[len(prefix):])
        except ValueError as exc:
            raise InvalidSecretKey("secret key is not valid base58") from exc
        if len(raw) != ED25519_SEED_LEN + ED25519_PUBLIC_KEY_LEN:
            raise InvalidSecretKey(
                f"secret key must decode to {ED25519_SEED_LEN + ED25519_PUBLIC_KEY_LEN} bytes"
            )
        pair = cls(raw[:ED25519_SEED_LEN])
        if pair.public_key.data != raw[ED25519_SEED_LEN:]:
            raise InvalidSecretKey("secret key does not match its embedded public key")
        return pair

    def secret_key_text(self) -> str:
        return KeyType.ED25519.prefix + base58_encode(self._seed + self.public_key.data)

    def sign(self, message: bytes) -> Signature:
        return Signature(KeyType.ED25519, ed25519_sign(self._seed, message))

    def __repr__(self) -> str:
        return f"KeyPair({self.public_key})"
