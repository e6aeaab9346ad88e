#!/usr/bin/env python3
"""
Account Creator runner - starts the HTTP front end with:
  - the base signer loaded from config
  - nonce state seeded from the RPC node (fatal if the key is missing)
  - a background block-hash refresher
  - graceful shutdown that lets in-flight submissions finish

Usage:
    python run_server.py --config creator.toml --port 8080

Environment variables (alternative to a config file):
    CREATOR_RPC_URL, CREATOR_SIGNER_ACCOUNT_ID, CREATOR_SIGNER_SECRET_KEY,
    CREATOR_FUNDING_AMOUNT, CREATOR_PORT, CREATOR_LOG_LEVEL
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from account_creator.api import APIServer  # noqa: E402
from account_creator.config import CreatorConfig, build_base_signer, load_config  # noqa: E402
from account_creator.errors import ConfigError, RpcTransportError, SignerUnavailable  # noqa: E402
from account_creator.logging_config import setup_logging  # noqa: E402
from account_creator.provisioning import AccountProvisioner, RetryPolicy  # noqa: E402
from account_creator.rpc import NearRpcClient  # noqa: E402
from account_creator.signer import NonceTrackedSigner  # noqa: E402

logger = logging.getLogger("server")


class CreatorService:
    """Wires config into the RPC client, signer, provisioner and HTTP server."""

    def __init__(self, cfg: CreatorConfig):
        self.cfg = cfg
        self.rpc = NearRpcClient(
            cfg.rpc.url,
            timeout=cfg.rpc.timeout_seconds,
            broadcast_timeout=cfg.rpc.broadcast_timeout_seconds,
        )
        self.signer = NonceTrackedSigner(build_base_signer(cfg.signer), self.rpc)
        self.provisioner = AccountProvisioner(
            self.signer,
            self.rpc,
            cfg.funding.amount,
            RetryPolicy(
                max_nonce_retries=cfg.retry.max_nonce_retries,
                max_network_retries=cfg.retry.max_network_retries,
                backoff_seconds=cfg.retry.backoff_seconds,
            ),
            auto_suffix=cfg.funding.auto_suffix,
        )
        self.api = APIServer(
            self.provisioner, cfg.server.host, cfg.server.port, server_config=cfg.server,
        )
        self._bg_tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        await self.signer.initialize()
        self._bg_tasks.append(asyncio.create_task(
            self.signer.run_block_hash_refresher(self.cfg.retry.block_hash_refresh_seconds)
        ))
        await self.api.start()

    async def stop(self) -> None:
        await self.api.stop()
        await self.provisioner.drain()
        for task in self._bg_tasks:
            task.cancel()
        for task in self._bg_tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._bg_tasks.clear()
        await self.rpc.close()


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="NEAR account creator")
    p.add_argument("--config", default=os.environ.get("CREATOR_CONFIG"),
                   help="Path to a creator.toml config file")
    p.add_argument("--host", default=None, help="Listen host")
    p.add_argument("--port", type=int, default=None, help="Listen port, default 8080")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    return p.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2

    # CLI flags override config
    if args.host:
        cfg.server.host = args.host
    if args.port is not None:
        cfg.server.port = args.port
    if args.log_level:
        cfg.logging.level = args.log_level.upper()

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    try:
        service = CreatorService(cfg)
    except ConfigError as exc:
        logger.error(f"cannot start: {exc}")
        return 2

    try:
        await service.start()
    except (SignerUnavailable, RpcTransportError) as exc:
        logger.error(f"cannot start: {exc}")
        await service.rpc.close()
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await service.stop()
    return 0


def main_sync() -> None:
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    main_sync()
