"""
Encoding and hashing primitives for the account creator.

NEAR renders keys, signatures and hashes as base58 (Bitcoin alphabet,
no checksum) and identifies a transaction by the SHA-256 of its Borsh
encoding.  Ed25519 signing is delegated to PyNaCl.
"""

from __future__ import annotations

import hashlib

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {ch: i for i, ch in enumerate(B58_ALPHABET)}

ED25519_SEED_LEN = 32
ED25519_PUBLIC_KEY_LEN = 32
ED25519_SIGNATURE_LEN = 64


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


# ===================================================================
#  Base58
# ===================================================================

def base58_encode(data: bytes) -> str:
    """Encode *data* as base58; each leading zero byte becomes a ``1``."""
    n = int.from_bytes(data, "big")
    chars: list[str] = []
    while n > 0:
        n, rem = divmod(n, 58)
        chars.append(B58_ALPHABET[rem])
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + "".join(reversed(chars))


def base58_decode(text: str) -> bytes:
    """Decode base58 *text*.  Raises ``ValueError`` on foreign characters."""
    n = 0
    for ch in text:
        try:
            n = n * 58 + _B58_INDEX[ch]
        except KeyError:
            raise ValueError(f"invalid base58 character {ch!r}") from None
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    pad = len(text) - len(text.lstrip("1"))
    return b"\x00" * pad + body


# ===================================================================
#  Ed25519
# ===================================================================

def ed25519_public_key(seed: bytes) -> bytes:
    """Derive the 32-byte public key for a 32-byte Ed25519 seed."""
    return bytes(SigningKey(seed).verify_key)


def ed25519_sign(seed: bytes, message: bytes) -> bytes:
    """Return the detached 64-byte Ed25519 signature of *message*."""
    return bytes(SigningKey(seed).sign(message).signature)


def ed25519_verify(public_key: bytes, message: bytes, signature: bytes) -> bool:
    try:
        VerifyKey(public_key).verify(message, signature)
        return True
    except BadSignatureError:
        return False
