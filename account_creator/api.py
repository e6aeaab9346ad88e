"""
HTTP front end for the account creator.

Built on ``aiohttp``; it only translates requests into
``AccountProvisioner.provision`` calls and renders the outcome.

Endpoints
---------
GET  /                  Account request form
POST /create_account    Form submission, answers with an HTML page
POST /account/create    JSON submission: {"account_id": ..., "public_key": ...}
GET  /health            Signer and nonce summary

Gating
------
- Per-IP token-bucket rate limiter (``rate_limit_rpm``), since every
  accepted request spends the base account's funds.
- CORS allow-list (``cors_origins``); no wildcard.
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(provisioner, host="0.0.0.0", port=8080, server_config=cfg.server)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import html
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING

from aiohttp import web

from account_creator.provisioning import (
    AccountProvisioner,
    Created,
    ProvisioningOutcome,
    Rejected,
    RejectionReason,
)

if TYPE_CHECKING:
    from account_creator.config import ServerConfig

logger = logging.getLogger("creator_api")


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token bucket refilled at ``rpm`` tokens per minute."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> [tokens, last_refill_timestamp]
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):
    """Only POSTs cost a token; the form and health check stay reachable."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        if request.method == "POST":
            ip = request.remote or "unknown"
            if not bucket.allow(ip):
                raise web.HTTPTooManyRequests(
                    text="Rate limit exceeded. Try again later.",
                    headers={"Retry-After": "10"},
                )
        return await handler(request)

    return rate_limit_middleware


def _make_cors_middleware(origins: list[str]):
    allowed = set(origins)
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)
        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


# ═══════════════════════════════════════════════════════════════════
#  HTML
# ═══════════════════════════════════════════════════════════════════

_PAGE = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>{title}</title></head>
<body>
<h1>{title}</h1>
{body}
</body>
</html>
"""

_FORM = """<form method="post" action="/create_account">
  <label>Account ID <input name="account_id" placeholder="alice.{parent}" required></label>
  <label>Public key <input name="public_key" placeholder="ed25519:..." required></label>
  <button type="submit">Create account</button>
</form>
"""

_REASON_TEXT = {
    RejectionReason.INVALID_ACCOUNT_ID: "The account ID is not valid.",
    RejectionReason.INVALID_PUBLIC_KEY: "The public key is not a valid ed25519 key.",
    RejectionReason.ACCOUNT_ALREADY_EXISTS: "That account already exists.",
}


def _page(title: str, body: str, status: int = 200) -> web.Response:
    return web.Response(
        text=_PAGE.format(title=html.escape(title), body=body),
        content_type="text/html",
        status=status,
    )


def _status_for(outcome: ProvisioningOutcome) -> int:
    if isinstance(outcome, Created):
        return 200
    if isinstance(outcome, Rejected):
        return 409 if outcome.reason is RejectionReason.ACCOUNT_ALREADY_EXISTS else 400
    return 503


class APIServer:
    """aiohttp wrapper around an ``AccountProvisioner``."""

    def __init__(
        self,
        provisioner: AccountProvisioner,
        host: str = "0.0.0.0",
        port: int = 8080,
        *,
        server_config: ServerConfig | None = None,
    ):
        self.provisioner = provisioner
        self.host = host
        self.port = port
        self._server_config = server_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 16_384
        cfg = self._server_config
        if cfg is not None:
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"Starting server at: http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/", self._index)
        app.router.add_post("/create_account", self._create_account_form)
        app.router.add_post("/account/create", self._create_account_json)
        app.router.add_get("/health", self._health)

    # ── handlers ─────────────────────────────────────────────────

    async def _index(self, _request: web.Request) -> web.Response:
        parent = html.escape(str(self.provisioner.parent))
        return _page("Create a NEAR account", _FORM.format(parent=parent))

    async def _create_account_form(self, request: web.Request) -> web.Response:
        form = await request.post()
        account_id = str(form.get("account_id", ""))
        public_key = str(form.get("public_key", ""))
        outcome = await self.provisioner.provision(account_id, public_key)

        if isinstance(outcome, Created):
            body = (
                f"<p>Account <b>{html.escape(outcome.account_id)}</b> was created with key "
                f"<code>{html.escape(outcome.public_key)}</code>.</p>"
                f"<p>Transaction hash: <code>{outcome.transaction_hash}</code></p>"
            )
            return _page("Account created", body)
        if isinstance(outcome, Rejected):
            body = (
                f"<p>{html.escape(_REASON_TEXT[outcome.reason])}</p>"
                f"<p>{html.escape(outcome.detail)}</p>"
                f'<p><a href="/">Back</a></p>'
            )
            return _page("Request rejected", body, status=_status_for(outcome))
        return _page("Something went wrong", f"<p>{html.escape(outcome.reason)}</p>",
                     status=_status_for(outcome))

    async def _create_account_json(self, request: web.Request) -> web.Response:
        """
        POST /account/create
        Body: {"account_id": "alice", "public_key": "ed25519:..."}
        """
        try:
            body = await request.json()
        except ValueError as exc:
            raise web.HTTPBadRequest(text="Invalid JSON body") from exc
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text="JSON object expected")
        account_id = body.get("account_id")
        public_key = body.get("public_key")
        if not isinstance(account_id, str) or not isinstance(public_key, str):
            raise web.HTTPBadRequest(text="account_id and public_key must be strings")

        outcome = await self.provisioner.provision(account_id, public_key)
        if isinstance(outcome, Created):
            payload = {"result": outcome.to_dict(), "error": None}
        elif isinstance(outcome, Rejected):
            payload = {"result": None,
                       "error": {"reason": outcome.reason.value, "message": outcome.detail}}
        else:
            payload = {"result": None, "error": {"reason": "Failed", "message": outcome.reason}}
        return web.json_response(payload, status=_status_for(outcome))

    async def _health(self, _request: web.Request) -> web.Response:
        signer = self.provisioner.signer
        return web.json_response({
            "ok": signer.state.nonce is not None,
            "signer": str(signer.account_id),
            "public_key": str(signer.public_key),
            "nonce": signer.state.nonce,
            "in_flight": self.provisioner.in_flight,
        })

