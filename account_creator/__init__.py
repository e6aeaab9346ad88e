"""
Account Creator - provisions NEAR sub-accounts from a web form.

Key features:
- Ed25519 keys and NEAR account-id validation
- Borsh transaction encoding signed by a single base account
- Shared nonce tracking with bounded retry on nonce conflicts
- aiohttp JSON-RPC client and a thin aiohttp front end
"""

__version__ = "0.3.0"
__all__ = [
    "errors",
    "crypto_utils",
    "borsh",
    "keys",
    "transaction",
    "rpc",
    "signer",
    "provisioning",
    "config",
    "api",
    "logging_config",
]
