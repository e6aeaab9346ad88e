"""
TOML-based configuration for the account creator.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.  The result is
built once at startup and handed to constructors; nothing below the
entry point reads the environment.

Usage:
    from account_creator.config import load_config, build_base_signer
    cfg = load_config("creator.toml")
    signer = build_base_signer(cfg.signer)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from account_creator.errors import ConfigError, InvalidAccountId, InvalidSecretKey
from account_creator.signer import BaseSigner

ONE_NEAR = 10 ** 24  # yoctoNEAR


@dataclass
class RPCConfig:
    """NEAR JSON-RPC endpoint."""
    url: str = "https://rpc.statelessnet.near.org"
    timeout_seconds: float = 10.0
    # broadcast_tx_commit waits for execution, so it gets a longer budget
    broadcast_timeout_seconds: float = 30.0


@dataclass
class SignerConfig:
    """The base (top-level) account that pays for and creates sub-accounts.

    Either ``secret_key`` (``ed25519:<base58>``) or ``key_file`` (a NEAR
    credentials JSON file) must be set.  ``secret_key`` wins when both are.
    """
    account_id: str = ""
    secret_key: str = ""
    key_file: str = ""


@dataclass
class FundingConfig:
    amount: int = ONE_NEAR
    # append ".<base account>" to ids submitted without it
    auto_suffix: bool = True


@dataclass
class RetryConfig:
    max_nonce_retries: int = 5
    max_network_retries: int = 3
    backoff_seconds: float = 0.25
    block_hash_refresh_seconds: float = 30.0


@dataclass
class ServerConfig:
    """HTTP front end."""
    host: str = "0.0.0.0"
    port: int = 8080
    rate_limit_rpm: int = 30          # per IP, 0 = unlimited
    cors_origins: list[str] = field(default_factory=list)  # empty = no CORS
    max_body_bytes: int = 16_384


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class CreatorConfig:
    """Top-level configuration container."""
    rpc: RPCConfig = field(default_factory=RPCConfig)
    signer: SignerConfig = field(default_factory=SignerConfig)
    funding: FundingConfig = field(default_factory=FundingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _env_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def _env_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}") from None


def load_config(path: str | None = None) -> CreatorConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        CREATOR_RPC_URL               -> rpc.url
        CREATOR_RPC_TIMEOUT           -> rpc.timeout_seconds
        CREATOR_SIGNER_ACCOUNT_ID     -> signer.account_id
        CREATOR_SIGNER_SECRET_KEY     -> signer.secret_key
        CREATOR_SIGNER_KEY_FILE       -> signer.key_file
        CREATOR_FUNDING_AMOUNT        -> funding.amount   (yoctoNEAR)
        CREATOR_MAX_NONCE_RETRIES     -> retry.max_nonce_retries
        CREATOR_MAX_NETWORK_RETRIES   -> retry.max_network_retries
        CREATOR_RETRY_BACKOFF         -> retry.backoff_seconds
        CREATOR_HOST / CREATOR_PORT   -> server.host / server.port
        CREATOR_RATE_LIMIT_RPM        -> server.rate_limit_rpm
        CREATOR_CORS_ORIGINS          -> server.cors_origins (comma-separated)
        CREATOR_LOG_LEVEL             -> logging.level
        CREATOR_LOG_FMT               -> logging.format
    """
    cfg = CreatorConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                try:
                    data = tomllib.load(f)
                except tomllib.TOMLDecodeError as exc:
                    raise ConfigError(f"{path}: {exc}") from exc
            for section_name, section_dc in [
                ("rpc", cfg.rpc),
                ("signer", cfg.signer),
                ("funding", cfg.funding),
                ("retry", cfg.retry),
                ("server", cfg.server),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    env = os.environ
    if v := env.get("CREATOR_RPC_URL"):
        cfg.rpc.url = v
    if v := env.get("CREATOR_RPC_TIMEOUT"):
        cfg.rpc.timeout_seconds = _env_float("CREATOR_RPC_TIMEOUT", v)
    if v := env.get("CREATOR_SIGNER_ACCOUNT_ID"):
        cfg.signer.account_id = v
    if v := env.get("CREATOR_SIGNER_SECRET_KEY"):
        cfg.signer.secret_key = v
    if v := env.get("CREATOR_SIGNER_KEY_FILE"):
        cfg.signer.key_file = v
    if v := env.get("CREATOR_FUNDING_AMOUNT"):
        cfg.funding.amount = _env_int("CREATOR_FUNDING_AMOUNT", v)
    if v := env.get("CREATOR_MAX_NONCE_RETRIES"):
        cfg.retry.max_nonce_retries = _env_int("CREATOR_MAX_NONCE_RETRIES", v)
    if v := env.get("CREATOR_MAX_NETWORK_RETRIES"):
        cfg.retry.max_network_retries = _env_int("CREATOR_MAX_NETWORK_RETRIES", v)
    if v := env.get("CREATOR_RETRY_BACKOFF"):
        cfg.retry.backoff_seconds = _env_float("CREATOR_RETRY_BACKOFF", v)
    if v := env.get("CREATOR_HOST"):
        cfg.server.host = v
    if v := env.get("CREATOR_PORT"):
        cfg.server.port = _env_int("CREATOR_PORT", v)
    if v := env.get("CREATOR_RATE_LIMIT_RPM"):
        cfg.server.rate_limit_rpm = _env_int("CREATOR_RATE_LIMIT_RPM", v)
    if v := env.get("CREATOR_CORS_ORIGINS"):
        cfg.server.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := env.get("CREATOR_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := env.get("CREATOR_LOG_FMT"):
        cfg.logging.format = v

    # TOML may hand us a string for very large amounts
    try:
        cfg.funding.amount = int(cfg.funding.amount)
    except (TypeError, ValueError):
        raise ConfigError(f"funding.amount must be an integer, got {cfg.funding.amount!r}") from None
    if cfg.funding.amount < 0:
        raise ConfigError("funding.amount must not be negative")
    return cfg


def build_base_signer(signer_cfg: SignerConfig) -> BaseSigner:
    """Turn the signer section into a ``BaseSigner``; any problem is fatal."""
    try:
        if signer_cfg.secret_key:
            if not signer_cfg.account_id:
                raise ConfigError("signer.account_id is required with signer.secret_key")
            return BaseSigner.from_secret_key(signer_cfg.account_id, signer_cfg.secret_key)
        if signer_cfg.key_file:
            return BaseSigner.from_key_file(signer_cfg.key_file, signer_cfg.account_id or None)
    except (InvalidSecretKey, InvalidAccountId) as exc:
        raise ConfigError(f"invalid base signer: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"cannot read signer key file: {exc}") from exc
    except ValueError as exc:  # malformed JSON in the key file
        raise ConfigError(f"malformed signer key file: {exc}") from exc
    raise ConfigError("no base signer key configured (signer.secret_key or signer.key_file)")
