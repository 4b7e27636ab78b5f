"""
warden_http.py — Starlette endpoints in front of the grant engine.

  POST /oauth2/token                        — RFC 6749 §3.2 / RFC 8628 §3.4
  POST /oauth2/device_authorization         — RFC 8628 §3.1
  POST /oauth2/revoke                       — RFC 7009
  GET  /.well-known/oauth-authorization-server — RFC 8414 metadata

Client authentication happens here (client_secret_basic,
client_secret_post, or none for public clients) and produces the
ClientPrincipal the engine works with. Resource-owner login, consent
and the device verification page are not served here; they call
GrantEngine.issue_code / verify_user_code directly.
"""

import base64
import json
import logging
import time
from typing import Any
from urllib.parse import unquote_plus

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from warden_config import (
    MAX_CODE_TTL,
    ClientAuthenticationMethod,
    ClientRegistry,
    GrantType,
    ServerSettings,
)
from warden_errors import InvalidClient, InvalidRequest, OAuth2Error
from warden_grants import PKCE_METHOD, ClientPrincipal, GrantEngine, GrantRequest, server_errors
from warden_scopes import parse_scope

logger = logging.getLogger("warden-http")
audit_logger = logging.getLogger("warden-audit")

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}
CLEANUP_EVERY = 300  # seconds


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


class DevicePollGuard:
    """Minimum polling interval per device code (RFC 8628 §3.5).

    Plugged into GrantEngine as its poll_guard: returns False when a
    device code is polled again before ``interval`` seconds have passed.
    """

    def __init__(self, interval: int):
        self.interval = interval
        self._last_poll: dict[str, float] = {}

    def __call__(self, device_code: str) -> bool:
        now = time.monotonic()
        last = self._last_poll.get(device_code)
        self._last_poll[device_code] = now
        return last is None or now - last >= self.interval

    def cleanup(self, max_age: float) -> None:
        """Forget device codes not polled for ``max_age`` seconds."""
        cutoff = time.monotonic() - max_age
        stale = [k for k, t in self._last_poll.items() if t < cutoff]
        for k in stale:
            del self._last_poll[k]


def _json(status: int, data: dict[str, Any]) -> JSONResponse:
    return JSONResponse(data, status_code=status, headers=NO_STORE)


def _error_response(error: OAuth2Error, basic_auth: bool = False) -> JSONResponse:
    response = _json(error.status_code, error.to_dict())
    if isinstance(error, InvalidClient) and basic_auth:
        response.headers["WWW-Authenticate"] = 'Basic realm="warden"'
    return response


async def _read_form(request: Request) -> dict[str, str]:
    form = await request.form()
    return {k: str(v) for k, v in form.items()}


class WardenEndpoints:
    def __init__(
        self,
        engine: GrantEngine,
        registry: ClientRegistry,
        settings: ServerSettings,
        poll_guard: DevicePollGuard | None = None,
    ):
        self.engine = engine
        self.registry = registry
        self.settings = settings
        self.poll_guard = poll_guard
        self._last_cleanup = time.monotonic()

    def routes(self) -> list[Route]:
        s = self.settings
        return [
            Route(s.token_endpoint, self.token, methods=["POST"]),
            Route(s.device_authorization_endpoint, self.device_authorization, methods=["POST"]),
            Route(s.token_revocation_endpoint, self.revoke, methods=["POST"]),
            Route("/.well-known/oauth-authorization-server", self.metadata, methods=["GET"]),
        ]

    async def authenticate(self, request: Request, form: dict[str, str]) -> ClientPrincipal:
        """Resolve the calling client from Basic auth or form parameters."""
        auth = request.headers.get("authorization", "")
        secret: str | None = None
        if auth.startswith("Basic "):
            method = ClientAuthenticationMethod.CLIENT_SECRET_BASIC
            try:
                decoded = base64.b64decode(auth[6:], validate=True).decode("utf-8")
            except ValueError:
                raise InvalidClient() from None
            raw_id, sep, raw_secret = decoded.partition(":")
            if not sep:
                raise InvalidClient()
            # RFC 6749 §2.3.1: both halves are form-urlencoded.
            client_id, secret = unquote_plus(raw_id), unquote_plus(raw_secret)
        elif form.get("client_secret"):
            method = ClientAuthenticationMethod.CLIENT_SECRET_POST
            client_id, secret = form.get("client_id", ""), form["client_secret"]
        else:
            method = ClientAuthenticationMethod.NONE
            client_id = form.get("client_id", "")

        if not client_id:
            raise InvalidClient()
        with server_errors("authenticate", client_id):
            client = await self.registry.find_by_client_id(client_id)
        if client is None or method not in client.authentication_methods:
            _audit("client_auth_failed", client_id=client_id, method=method.value)
            raise InvalidClient()
        if method is not ClientAuthenticationMethod.NONE and not client.verify_secret(secret or ""):
            _audit("client_auth_failed", client_id=client_id, method=method.value, reason="bad_secret")
            raise InvalidClient()
        return ClientPrincipal(client_id=client_id, authentication_method=method)

    def _periodic_cleanup(self) -> None:
        now = time.monotonic()
        if self.poll_guard is not None and now - self._last_cleanup > CLEANUP_EVERY:
            self.poll_guard.cleanup(max_age=2 * MAX_CODE_TTL)
            self._last_cleanup = now

    # --- Endpoint handlers ---

    async def token(self, request: Request) -> Response:
        form = await _read_form(request)
        self._periodic_cleanup()
        basic = request.headers.get("authorization", "").startswith("Basic ")
        logger.info("token: grant_type=%s client_id=%s",
                    form.get("grant_type", "?"), form.get("client_id", "-"))
        try:
            principal = await self.authenticate(request, form)
            token = await self.engine.token(principal, GrantRequest.from_form(form))
        except OAuth2Error as e:
            return _error_response(e, basic_auth=basic)
        return _json(200, token.model_dump(exclude_none=True))

    async def device_authorization(self, request: Request) -> Response:
        form = await _read_form(request)
        basic = request.headers.get("authorization", "").startswith("Basic ")
        try:
            principal = await self.authenticate(request, form)
            issued = await self.engine.authorize_device(principal, parse_scope(form.get("scope")))
        except OAuth2Error as e:
            return _error_response(e, basic_auth=basic)
        return _json(200, issued.to_dict())

    async def revoke(self, request: Request) -> Response:
        form = await _read_form(request)
        basic = request.headers.get("authorization", "").startswith("Basic ")
        try:
            principal = await self.authenticate(request, form)
            token = form.get("token")
            if not token:
                raise InvalidRequest("Missing token.")
            await self.engine.revoke(principal, token, form.get("token_type_hint"))
        except OAuth2Error as e:
            return _error_response(e, basic_auth=basic)
        return Response(status_code=200, headers=NO_STORE)

    async def metadata(self, request: Request) -> Response:
        s = self.settings
        return JSONResponse({
            "issuer": s.issuer,
            "authorization_endpoint": s.url(s.authorization_endpoint),
            "token_endpoint": s.url(s.token_endpoint),
            "device_authorization_endpoint": s.url(s.device_authorization_endpoint),
            "revocation_endpoint": s.url(s.token_revocation_endpoint),
            "response_types_supported": ["code"],
            "grant_types_supported": [g.value for g in GrantType],
            "token_endpoint_auth_methods_supported": [m.value for m in ClientAuthenticationMethod],
            "revocation_endpoint_auth_methods_supported": [m.value for m in ClientAuthenticationMethod],
            "code_challenge_methods_supported": [PKCE_METHOD],
        })


def build_app(
    engine: GrantEngine,
    registry: ClientRegistry,
    settings: ServerSettings,
    poll_guard: DevicePollGuard | None = None,
) -> Starlette:
    endpoints = WardenEndpoints(engine, registry, settings, poll_guard)
    return Starlette(routes=endpoints.routes())
