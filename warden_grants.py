"""
warden_grants.py — the grant engine.

One handler per grant type, selected through a single dispatch table:

  authorization_code   issue (code + PKCE snapshot) → exchange
  client_credentials   direct access token, no refresh
  refresh_token        new access token, rotate or reuse refresh token
  device_code          device authorization → user verification → poll

Every handler works the same way: fetch the Authorization, validate,
mutate the copy, mint tokens, commit. A commit that loses a race
surfaces as invalid_grant, so a code, device code or rotated refresh
token is honored at most once. Store and signer failures surface as
server_error and are never retried here.
"""

import base64
import dataclasses
import hashlib
import hmac
import json
import logging
import re
import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Mapping, NoReturn

from mcp.server.auth.provider import construct_redirect_uri
from mcp.shared.auth import OAuthToken

from warden_config import (
    ClientAuthenticationMethod,
    ClientRegistry,
    GrantType,
    RegisteredClient,
    ServerSettings,
)
from warden_errors import (
    AccessDenied,
    AuthorizationPending,
    ConcurrentUpdateError,
    DuplicateTokenError,
    ExpiredToken,
    InvalidClient,
    InvalidGrant,
    InvalidRequest,
    OAuth2Error,
    ServerError,
    SlowDown,
    UnauthorizedClient,
    UnsupportedGrantType,
)
from warden_model import (
    Authorization,
    AuthorizationRequest,
    AuthorizationStore,
    CodeGrantState,
    CodeStatus,
    DeviceGrantState,
    DeviceStatus,
    Token,
    TokenKind,
)
from warden_scopes import format_scope, narrow, negotiate, parse_scope
from warden_signer import ClaimsSet, TokenSigner

logger = logging.getLogger("warden-grants")
audit_logger = logging.getLogger("warden-audit")

PKCE_METHOD = "S256"
# RFC 7636 §4.1: 43-128 unreserved characters.
CODE_VERIFIER_RE = re.compile(r"[A-Za-z0-9\-._~]{43,128}")
# RFC 8628 §6.1: no vowels, so user codes never spell words.
USER_CODE_ALPHABET = "BCDFGHJKLMNPQRSTVWXZ"
USER_CODE_LENGTH = 8
USER_CODE_ATTEMPTS = 5

Clock = Callable[[], datetime]
PollGuard = Callable[[str], bool]


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# PKCE and code helpers
# ---------------------------------------------------------------------------

def s256_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(verifier: str, challenge: str, method: str) -> bool:
    if method != PKCE_METHOD:
        return False  # Only S256 is allowed
    if not CODE_VERIFIER_RE.fullmatch(verifier):
        return False
    return hmac.compare_digest(s256_challenge(verifier), challenge)


def generate_user_code() -> str:
    chars = "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_LENGTH))
    return f"{chars[:4]}-{chars[4:]}"


async def _find_client(registry: ClientRegistry, client_id: str) -> RegisteredClient:
    client = await registry.find_by_client_id(client_id)
    if client is None:
        _audit("client_unknown", client_id=client_id)
        raise InvalidClient()
    return client


def normalize_user_code(user_code: str) -> str:
    """Accept ``bcdf ghjk``, ``BCDFGHJK`` or ``BCDF-GHJK`` as the same code."""
    chars = "".join(c for c in user_code.upper() if c.isalnum())
    if len(chars) != USER_CODE_LENGTH:
        return chars
    return f"{chars[:4]}-{chars[4:]}"


# ---------------------------------------------------------------------------
# Request / response shapes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClientPrincipal:
    """A client as established by the request layer's authentication."""

    client_id: str
    authentication_method: ClientAuthenticationMethod
    authenticated: bool = True

    @property
    def is_confidential(self) -> bool:
        return self.authenticated and self.authentication_method is not ClientAuthenticationMethod.NONE


@dataclass(frozen=True)
class GrantRequest:
    """Token endpoint parameters (RFC 6749 §4, RFC 8628 §3.4)."""

    grant_type: str
    client_id: str | None = None
    scope: tuple[str, ...] | None = None
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None
    device_code: str | None = None

    @classmethod
    def from_form(cls, form: Mapping[str, str]) -> "GrantRequest":
        grant_type = form.get("grant_type")
        if not grant_type:
            raise InvalidRequest("Missing grant_type.")
        scope = form.get("scope")
        return cls(
            grant_type=grant_type,
            client_id=form.get("client_id") or None,
            scope=tuple(parse_scope(scope)) if scope is not None else None,
            code=form.get("code") or None,
            redirect_uri=form.get("redirect_uri") or None,
            code_verifier=form.get("code_verifier") or None,
            refresh_token=form.get("refresh_token") or None,
            device_code=form.get("device_code") or None,
        )


@dataclass(frozen=True)
class IssuedCode:
    code: str
    redirect_uri: str
    state: str | None
    expires_at: datetime

    def redirect_location(self) -> str:
        return construct_redirect_uri(self.redirect_uri, code=self.code, state=self.state)


@dataclass(frozen=True)
class DeviceAuthorization:
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

class GrantHandler:
    """Shared minting and commit logic for the four grant handlers."""

    grant_type: GrantType

    def __init__(
        self,
        settings: ServerSettings,
        registry: ClientRegistry,
        store: AuthorizationStore,
        signer: TokenSigner,
        clock: Clock = _utcnow,
    ):
        self.settings = settings
        self.registry = registry
        self.store = store
        self.signer = signer
        self.clock = clock

    async def handle(
        self,
        principal: ClientPrincipal,
        client: RegisteredClient,
        request: GrantRequest,
    ) -> OAuthToken:
        raise NotImplementedError

    async def _client(self, client_id: str) -> RegisteredClient:
        return await _find_client(self.registry, client_id)

    def _reject(self, reason: str, client_id: str) -> NoReturn:
        # The reason stays server-side; the client sees one generic message.
        logger.info("invalid_grant: %s (client=%s grant=%s)", reason, client_id, self.grant_type.value)
        _audit("grant_rejected", grant_type=self.grant_type.value, client_id=client_id, reason=reason)
        raise InvalidGrant()

    async def _commit(self, authorization: Authorization) -> Authorization:
        try:
            return await self.store.save(authorization)
        except ConcurrentUpdateError as e:
            logger.info("commit lost race: %s", e)
            self._reject("concurrent_update", authorization.client_id)

    def _mint_access_token(
        self,
        client: RegisteredClient,
        subject: str,
        scopes: list[str] | tuple[str, ...],
    ) -> Token:
        now = self.clock()
        claims = ClaimsSet(
            issuer=self.settings.issuer,
            subject=subject,
            audience=(client.client_id,),
            issued_at=now,
            expires_at=now + timedelta(seconds=client.token_settings.access_token_ttl),
            not_before=now,
            scope=tuple(scopes),
            extra_claims={"jti": secrets.token_hex(16)},
        )
        signed = self.signer.sign(claims)
        return Token(
            kind=TokenKind.ACCESS_TOKEN,
            value=signed.value,
            issued_at=signed.issued_at,
            expires_at=signed.expires_at,
            metadata={"scope": list(scopes), "jti": claims.extra_claims["jti"]},
        )

    def _mint_refresh_token(self, client: RegisteredClient) -> Token:
        now = self.clock()
        return Token(
            kind=TokenKind.REFRESH_TOKEN,
            value=secrets.token_urlsafe(32),
            issued_at=now,
            expires_at=now + timedelta(seconds=client.token_settings.refresh_token_ttl),
        )

    def _issue_tokens(
        self,
        authorization: Authorization,
        client: RegisteredClient,
    ) -> tuple[Token, Token | None]:
        """Token-minting tail shared by the code and device exchanges."""
        access = self._mint_access_token(client, authorization.principal_name,
                                         authorization.authorized_scopes)
        authorization.put_token(access)
        refresh = None
        if client.allows(GrantType.REFRESH_TOKEN):
            refresh = self._mint_refresh_token(client)
            authorization.put_token(refresh)
        return access, refresh

    @staticmethod
    def _response(access: Token, refresh: Token | None, scopes) -> OAuthToken:
        return OAuthToken(
            access_token=access.value,
            token_type="Bearer",
            expires_in=int((access.expires_at - access.issued_at).total_seconds()),
            scope=format_scope(scopes),
            refresh_token=refresh.value if refresh is not None else None,
        )


class ClientCredentialsGrant(GrantHandler):
    grant_type = GrantType.CLIENT_CREDENTIALS

    async def handle(self, principal, client, request):
        if not principal.is_confidential:
            _audit("client_rejected", client_id=principal.client_id, reason="not_authenticated")
            raise InvalidClient()

        granted = negotiate(request.scope, client.scopes)
        access = self._mint_access_token(client, client.client_id, granted)

        authorization = Authorization(
            client_id=client.client_id,
            principal_name=client.client_id,
            grant_type=self.grant_type,
            authorized_scopes=tuple(granted),
        )
        authorization.put_token(access)
        await self._commit(authorization)

        _audit("token_issued", grant_type=self.grant_type.value, client_id=client.client_id,
               client_name=client.client_name,
               scope=format_scope(granted), expires_in=client.token_settings.access_token_ttl)
        return self._response(access, None, granted)


class AuthorizationCodeGrant(GrantHandler):
    grant_type = GrantType.AUTHORIZATION_CODE

    async def issue(self, principal_name: str, request: AuthorizationRequest) -> IssuedCode:
        """Create an Authorization holding a fresh code for an approved request.

        ``principal_name`` is the resource owner, already authenticated
        and consenting by the time this is called.
        """
        client = await self._client(request.client_id)
        if not client.allows(self.grant_type):
            raise UnauthorizedClient()
        # Exact string match, no normalisation (RFC 6749 §3.1.2.3).
        if request.redirect_uri not in client.redirect_uris:
            raise InvalidRequest("redirect_uri does not match registration.")
        if request.code_challenge:
            if (request.code_challenge_method or PKCE_METHOD) != PKCE_METHOD:
                raise InvalidRequest("Only S256 code_challenge_method is supported.")
            request = dataclasses.replace(request, code_challenge_method=PKCE_METHOD)
        elif client.client_settings.require_proof_key:
            raise InvalidRequest("code_challenge is required.")

        granted = negotiate(request.scopes, client.scopes)

        now = self.clock()
        code = Token(
            kind=TokenKind.AUTHORIZATION_CODE,
            value=secrets.token_urlsafe(32),
            issued_at=now,
            expires_at=now + timedelta(seconds=client.token_settings.authorization_code_ttl),
        )
        authorization = Authorization(
            client_id=client.client_id,
            principal_name=principal_name,
            grant_type=self.grant_type,
            authorized_scopes=tuple(granted),
        )
        authorization.set_grant_state(CodeGrantState(request=request))
        authorization.put_token(code)
        await self._commit(authorization)

        _audit("code_issued", client_id=client.client_id, client_name=client.client_name,
               scope=format_scope(granted), pkce=bool(request.code_challenge))
        return IssuedCode(
            code=code.value,
            redirect_uri=request.redirect_uri,
            state=request.state,
            expires_at=code.expires_at,
        )

    async def handle(self, principal, client, request):
        if not request.code:
            raise InvalidRequest("Missing code.")

        authorization = await self.store.find_by_token(request.code, TokenKind.AUTHORIZATION_CODE)
        if authorization is None:
            self._reject("unknown_code", client.client_id)
        if authorization.client_id != client.client_id:
            self._reject("client_mismatch", client.client_id)

        code = authorization.find_token(request.code)
        state = authorization.grant_state()
        now = self.clock()
        if code.invalidated or code is not authorization.token(TokenKind.AUTHORIZATION_CODE):
            self._reject("code_reused", client.client_id)
        status = state.effective_status(code, now)
        if status is not CodeStatus.CODE_ISSUED:
            self._reject(f"code_{status.value}", client.client_id)
        if request.redirect_uri != state.request.redirect_uri:
            self._reject("redirect_uri_mismatch", client.client_id)

        challenge = state.request.code_challenge
        if challenge or client.client_settings.require_proof_key:
            if not (challenge and request.code_verifier
                    and verify_pkce(request.code_verifier, challenge,
                                    state.request.code_challenge_method or PKCE_METHOD)):
                self._reject("pkce_failed", client.client_id)

        authorization.invalidate(TokenKind.AUTHORIZATION_CODE)
        state.status = CodeStatus.EXCHANGED
        authorization.set_grant_state(state)
        access, refresh = self._issue_tokens(authorization, client)
        await self._commit(authorization)

        _audit("token_issued", grant_type=self.grant_type.value, client_id=client.client_id,
               client_name=client.client_name,
               scope=format_scope(authorization.authorized_scopes),
               refresh=refresh is not None)
        return self._response(access, refresh, authorization.authorized_scopes)


class RefreshTokenGrant(GrantHandler):
    grant_type = GrantType.REFRESH_TOKEN

    async def handle(self, principal, client, request):
        if not request.refresh_token:
            raise InvalidRequest("Missing refresh_token.")

        authorization = await self.store.find_by_token(request.refresh_token, TokenKind.REFRESH_TOKEN)
        if authorization is None:
            self._reject("unknown_refresh_token", client.client_id)
        if authorization.client_id != client.client_id:
            self._reject("client_mismatch", client.client_id)
        presented = authorization.find_token(request.refresh_token)
        if not presented.is_active(self.clock()):
            self._reject("refresh_token_inactive", client.client_id)

        scopes = narrow(request.scope, authorization.authorized_scopes)

        access = self._mint_access_token(client, authorization.principal_name, scopes)
        authorization.put_token(access)
        if client.token_settings.reuse_refresh_tokens:
            refresh = presented
        else:
            refresh = self._mint_refresh_token(client)
            authorization.put_token(refresh)
        await self._commit(authorization)

        _audit("token_refreshed", client_id=client.client_id, client_name=client.client_name,
               scope=format_scope(scopes), rotated=refresh is not presented)
        return self._response(access, refresh, scopes)


class DeviceCodeGrant(GrantHandler):
    grant_type = GrantType.DEVICE_CODE

    def __init__(self, *args: Any, poll_guard: PollGuard | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        # Returns False when the device code is polled faster than allowed.
        self.poll_guard = poll_guard

    async def authorize(self, principal: ClientPrincipal, scope: list[str] | None) -> DeviceAuthorization:
        """RFC 8628 §3.1–3.2: issue a device code / user code pair."""
        client = await self._client(principal.client_id)
        if not client.allows(self.grant_type):
            raise UnauthorizedClient()
        granted = negotiate(scope, client.scopes)

        now = self.clock()
        expires_at = now + timedelta(seconds=client.token_settings.device_code_ttl)
        verification_uri = self.settings.url(self.settings.device_verification_endpoint)
        state = DeviceGrantState(verification_uri=verification_uri,
                                 interval=self.settings.device_poll_interval)

        for attempt in range(1, USER_CODE_ATTEMPTS + 1):
            device_code = Token(TokenKind.DEVICE_CODE, secrets.token_urlsafe(32), now, expires_at)
            user_code = Token(TokenKind.USER_CODE, generate_user_code(), now, expires_at)
            authorization = Authorization(
                client_id=client.client_id,
                principal_name=client.client_id,
                grant_type=self.grant_type,
                authorized_scopes=tuple(granted),
            )
            authorization.set_grant_state(state)
            authorization.put_token(device_code)
            authorization.put_token(user_code)
            try:
                await self._commit(authorization)
                break
            except DuplicateTokenError:
                # A user code still on record for another device; draw again.
                logger.warning("user code collision (attempt %d/%d)", attempt, USER_CODE_ATTEMPTS)
                if attempt == USER_CODE_ATTEMPTS:
                    raise

        _audit("device_code_issued", client_id=client.client_id, client_name=client.client_name,
               scope=format_scope(granted))
        return DeviceAuthorization(
            device_code=device_code.value,
            user_code=user_code.value,
            verification_uri=verification_uri,
            verification_uri_complete=construct_redirect_uri(verification_uri, user_code=user_code.value),
            expires_in=client.token_settings.device_code_ttl,
            interval=state.interval,
        )

    async def verify(self, user_code: str, principal_name: str, approve: bool) -> None:
        """Record the resource owner's decision for a user code."""
        value = normalize_user_code(user_code)
        authorization = await self.store.find_by_token(value, TokenKind.USER_CODE)
        if authorization is None:
            self._reject("unknown_user_code", "-")
        token = authorization.find_token(value)
        state = authorization.grant_state()
        if not token.is_active(self.clock()) or state.status is not DeviceStatus.PENDING:
            self._reject("user_code_inactive", authorization.client_id)

        if approve:
            state.status = DeviceStatus.APPROVED
            authorization.principal_name = principal_name
        else:
            state.status = DeviceStatus.DENIED
        authorization.set_grant_state(state)
        authorization.invalidate(TokenKind.USER_CODE)
        await self._commit(authorization)

        _audit("device_approved" if approve else "device_denied",
               client_id=authorization.client_id, principal=principal_name)

    async def handle(self, principal, client, request):
        if not request.device_code:
            raise InvalidRequest("Missing device_code.")

        authorization = await self.store.find_by_token(request.device_code, TokenKind.DEVICE_CODE)
        if authorization is None:
            self._reject("unknown_device_code", client.client_id)
        if authorization.client_id != client.client_id:
            self._reject("client_mismatch", client.client_id)
        device_code = authorization.find_token(request.device_code)
        if device_code.invalidated:
            self._reject("device_code_reused", client.client_id)

        if self.poll_guard is not None and not self.poll_guard(request.device_code):
            raise SlowDown()
        if device_code.is_expired(self.clock()):
            raise ExpiredToken()
        state = authorization.grant_state()
        if state.status is DeviceStatus.DENIED:
            raise AccessDenied()
        if state.status is DeviceStatus.PENDING:
            raise AuthorizationPending()

        authorization.invalidate(TokenKind.DEVICE_CODE)
        access, refresh = self._issue_tokens(authorization, client)
        await self._commit(authorization)

        _audit("token_issued", grant_type=self.grant_type.value, client_id=client.client_id,
               client_name=client.client_name,
               scope=format_scope(authorization.authorized_scopes),
               refresh=refresh is not None)
        return self._response(access, refresh, authorization.authorized_scopes)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@contextmanager
def server_errors(operation: str, client_id: str) -> Iterator[None]:
    try:
        yield
    except OAuth2Error:
        raise
    except Exception as e:
        logger.exception("%s failed for client %s", operation, client_id)
        _audit("server_error", operation=operation, client_id=client_id, error=type(e).__name__)
        raise ServerError() from e


class GrantEngine:
    """Entry point for every grant operation.

    The request layer authenticates the client and passes a
    ClientPrincipal; the engine resolves the registered client, checks
    it may use the grant, and dispatches.
    """

    def __init__(
        self,
        settings: ServerSettings,
        registry: ClientRegistry,
        store: AuthorizationStore,
        signer: TokenSigner,
        *,
        poll_guard: PollGuard | None = None,
        clock: Clock = _utcnow,
    ):
        self.settings = settings
        self.registry = registry
        self.store = store
        args = (settings, registry, store, signer, clock)
        self.authorization_code = AuthorizationCodeGrant(*args)
        self.client_credentials = ClientCredentialsGrant(*args)
        self.refresh_token = RefreshTokenGrant(*args)
        self.device_code = DeviceCodeGrant(*args, poll_guard=poll_guard)

        self._handlers: dict[GrantType, GrantHandler] = {
            h.grant_type: h
            for h in (self.authorization_code, self.client_credentials,
                      self.refresh_token, self.device_code)
        }
        missing = set(GrantType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"no handler for grant types: {sorted(g.value for g in missing)}")

    async def token(self, principal: ClientPrincipal, request: GrantRequest) -> OAuthToken:
        try:
            grant_type = GrantType(request.grant_type)
        except ValueError:
            raise UnsupportedGrantType() from None
        if request.client_id and request.client_id != principal.client_id:
            raise InvalidClient()

        with server_errors(f"token:{grant_type.value}", principal.client_id):
            handler = self._handlers[grant_type]
            client = await _find_client(self.registry, principal.client_id)
            if not client.allows(grant_type):
                _audit("grant_type_denied", client_id=client.client_id, grant_type=grant_type.value)
                raise UnauthorizedClient()
            return await handler.handle(principal, client, request)

    async def issue_code(self, principal_name: str, request: AuthorizationRequest) -> IssuedCode:
        with server_errors("issue_code", request.client_id):
            return await self.authorization_code.issue(principal_name, request)

    async def authorize_device(
        self, principal: ClientPrincipal, scope: list[str] | None = None,
    ) -> DeviceAuthorization:
        with server_errors("authorize_device", principal.client_id):
            return await self.device_code.authorize(principal, scope)

    async def verify_user_code(self, user_code: str, principal_name: str, approve: bool = True) -> None:
        with server_errors("verify_user_code", "-"):
            await self.device_code.verify(user_code, principal_name, approve)

    async def revoke(
        self, principal: ClientPrincipal, token: str, token_type_hint: str | None = None,
    ) -> None:
        """RFC 7009 token revocation.

        Unknown tokens are not an error. Revoking a refresh token also
        revokes the access token issued alongside it.
        """
        with server_errors("revoke", principal.client_id):
            hint = {
                "access_token": TokenKind.ACCESS_TOKEN,
                "refresh_token": TokenKind.REFRESH_TOKEN,
            }.get(token_type_hint or "")
            authorization = await self.store.find_by_token(token, hint)
            if authorization is None and hint is not None:
                authorization = await self.store.find_by_token(token)
            if authorization is None:
                return
            if authorization.client_id != principal.client_id:
                _audit("revoke_rejected", client_id=principal.client_id, reason="client_mismatch")
                raise InvalidClient()

            revoked = authorization.find_token(token)
            if revoked.invalidated:
                return
            revoked.invalidated = True
            if revoked.kind is TokenKind.REFRESH_TOKEN:
                authorization.invalidate(TokenKind.ACCESS_TOKEN)
            if revoked.kind is TokenKind.AUTHORIZATION_CODE:
                state = authorization.grant_state()
                state.status = CodeStatus.REVOKED
                authorization.set_grant_state(state)
            await self.store.save(authorization)
            _audit("token_revoked", client_id=principal.client_id, kind=revoked.kind.value)
