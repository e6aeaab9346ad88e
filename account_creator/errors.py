"""
Exception hierarchy for the account creator.

Only input, configuration and query failures are raised.  Submission
outcomes (nonce races, existing accounts, transient network trouble,
permanent rejections) travel as ``SubmitResult`` values so the
orchestrator can decide on retries without try/except ladders.
"""

from __future__ import annotations

from typing import Any


class AccountCreatorError(Exception):
    """Base class for all errors raised by this package."""


# ── user input ───────────────────────────────────────────────────

class InvalidInput(AccountCreatorError, ValueError):
    """User-correctable input problem; never retried."""

    reason = "InvalidInput"


class InvalidAccountId(InvalidInput):
    reason = "InvalidAccountId"


class InvalidPublicKey(InvalidInput):
    reason = "InvalidPublicKey"


# ── keys & signing ───────────────────────────────────────────────

class InvalidSecretKey(AccountCreatorError, ValueError):
    """The configured base-signer secret key cannot be decoded."""


class SigningError(AccountCreatorError, ValueError):
    """Malformed input handed to the signer (e.g. an empty action list)."""


# ── startup ──────────────────────────────────────────────────────

class ConfigError(AccountCreatorError):
    """Missing or inconsistent configuration detected at startup."""


class SignerUnavailable(AccountCreatorError):
    """The base signer's access key could not be found on the ledger."""


# ── RPC ──────────────────────────────────────────────────────────

class RpcTransportError(AccountCreatorError):
    """The request never produced a JSON-RPC answer (timeout, socket, HTTP)."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class RpcError(AccountCreatorError):
    """The node answered with a JSON-RPC ``error`` object."""

    def __init__(self, error: dict[str, Any]):
        self.error = error
        self.name: str = str(error.get("name", ""))
        cause = error.get("cause") or {}
        self.cause: str = str(cause.get("name", "")) if isinstance(cause, dict) else ""
        self.data: Any = error.get("data")
        message = error.get("message") or self.cause or self.name or "RPC error"
        label = self.cause or self.name
        super().__init__(f"{message} ({label})" if label else str(message))
