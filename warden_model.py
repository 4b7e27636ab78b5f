"""
warden_model.py — the Authorization aggregate and its store.

One Authorization per grant, holding the tokens issued under it. The
store keeps ``attributes`` as a plain mapping; handlers read and write
it through the typed CodeGrantState / DeviceGrantState variants.

Commits are compare-and-commit on ``version``: a handler fetches a
copy, validates, mutates it, and saves. If another request committed
the same Authorization in between, save raises ConcurrentUpdateError
and nothing is written. A token value already indexed under another
Authorization raises DuplicateTokenError.
"""

import asyncio
import copy
import dataclasses
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Protocol

from warden_config import GrantType
from warden_errors import ConcurrentUpdateError, DuplicateTokenError


class TokenKind(str, Enum):
    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    AUTHORIZATION_CODE = "authorization_code"
    DEVICE_CODE = "device_code"
    USER_CODE = "user_code"


@dataclass
class Token:
    kind: TokenKind
    value: str
    issued_at: datetime
    expires_at: datetime
    invalidated: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.expires_at <= self.issued_at:
            raise ValueError(f"{self.kind.value} must expire after it is issued")

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.invalidated and not self.is_expired(now)


# ---------------------------------------------------------------------------
# Per-grant state carried in Authorization.attributes
# ---------------------------------------------------------------------------

class CodeStatus(str, Enum):
    CODE_ISSUED = "code_issued"
    EXCHANGED = "exchanged"
    REVOKED = "revoked"
    # EXPIRED is never stored; it is read off the code token's expiry.
    EXPIRED = "expired"


class DeviceStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


@dataclass(frozen=True)
class AuthorizationRequest:
    """Snapshot of the authorization request a code was issued for."""

    client_id: str
    redirect_uri: str
    scopes: tuple[str, ...] = ()
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = dataclasses.asdict(self)
        d["scopes"] = list(self.scopes)
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "AuthorizationRequest":
        return cls(**{**d, "scopes": tuple(d.get("scopes", ()))})


@dataclass
class CodeGrantState:
    request: AuthorizationRequest
    status: CodeStatus = CodeStatus.CODE_ISSUED

    def effective_status(self, code: Token | None, now: datetime) -> CodeStatus:
        if self.status is CodeStatus.CODE_ISSUED and (code is None or code.is_expired(now)):
            return CodeStatus.EXPIRED
        return self.status

    def to_attributes(self) -> dict[str, Any]:
        return {
            "authorization_request": self.request.to_dict(),
            "code_challenge": self.request.code_challenge,
            "code_challenge_method": self.request.code_challenge_method,
            "code_status": self.status.value,
        }

    @classmethod
    def from_attributes(cls, attrs: dict[str, Any]) -> "CodeGrantState":
        return cls(
            request=AuthorizationRequest.from_dict(attrs["authorization_request"]),
            status=CodeStatus(attrs["code_status"]),
        )


@dataclass
class DeviceGrantState:
    verification_uri: str
    interval: int
    status: DeviceStatus = DeviceStatus.PENDING

    def to_attributes(self) -> dict[str, Any]:
        return {
            "device_status": self.status.value,
            "verification_uri": self.verification_uri,
            "device_poll_interval": self.interval,
        }

    @classmethod
    def from_attributes(cls, attrs: dict[str, Any]) -> "DeviceGrantState":
        return cls(
            verification_uri=attrs["verification_uri"],
            interval=attrs["device_poll_interval"],
            status=DeviceStatus(attrs["device_status"]),
        )


GrantState = CodeGrantState | DeviceGrantState


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

def _new_id() -> str:
    return secrets.token_hex(16)


@dataclass
class Authorization:
    client_id: str
    principal_name: str
    grant_type: GrantType
    authorized_scopes: tuple[str, ...] = ()
    attributes: dict[str, Any] = field(default_factory=dict)
    tokens: dict[TokenKind, Token] = field(default_factory=dict)
    retired: list[Token] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    version: int = 0

    def token(self, kind: TokenKind) -> Token | None:
        return self.tokens.get(kind)

    def find_token(self, value: str) -> Token | None:
        for t in self.tokens.values():
            if t.value == value:
                return t
        for t in self.retired:
            if t.value == value:
                return t
        return None

    def put_token(self, token: Token) -> None:
        """Make ``token`` the current token of its kind.

        The previous token of that kind is invalidated and kept in
        ``retired``.
        """
        previous = self.tokens.get(token.kind)
        if previous is not None:
            previous.invalidated = True
            self.retired.append(previous)
        self.tokens[token.kind] = token

    def invalidate(self, kind: TokenKind) -> None:
        t = self.tokens.get(kind)
        if t is not None:
            t.invalidated = True

    def token_values(self) -> Iterator[str]:
        for t in self.tokens.values():
            yield t.value
        for t in self.retired:
            yield t.value

    def grant_state(self) -> GrantState | None:
        if self.grant_type is GrantType.AUTHORIZATION_CODE:
            return CodeGrantState.from_attributes(self.attributes)
        if self.grant_type is GrantType.DEVICE_CODE:
            return DeviceGrantState.from_attributes(self.attributes)
        return None

    def set_grant_state(self, state: GrantState) -> None:
        self.attributes.update(state.to_attributes())


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class AuthorizationStore(Protocol):
    async def save(self, authorization: Authorization) -> Authorization: ...

    async def find_by_id(self, authorization_id: str) -> Authorization | None: ...

    async def find_by_token(
        self, value: str, kind: TokenKind | None = None,
    ) -> Authorization | None: ...


class InMemoryAuthorizationStore:
    """Process-local store with version-checked commits.

    Callers always get deep copies, so nothing they change is visible
    to other requests until it is saved.
    """

    def __init__(self) -> None:
        self._authorizations: dict[str, Authorization] = {}
        self._token_index: dict[str, str] = {}  # token value -> authorization id
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._authorizations)

    async def save(self, authorization: Authorization) -> Authorization:
        async with self._lock:
            current = self._authorizations.get(authorization.id)
            actual = current.version if current is not None else 0
            if actual != authorization.version:
                if current is not None and _is_retry_of(current, authorization):
                    return copy.deepcopy(current)
                raise ConcurrentUpdateError(authorization.id, authorization.version,
                                            current.version if current is not None else None)

            for token in [*authorization.tokens.values(), *authorization.retired]:
                owner = self._token_index.get(token.value)
                if owner is not None and owner != authorization.id:
                    raise DuplicateTokenError(token.kind.value, owner)

            stored = copy.deepcopy(authorization)
            stored.version = authorization.version + 1
            self._authorizations[stored.id] = stored
            for value in stored.token_values():
                self._token_index[value] = stored.id
            return copy.deepcopy(stored)

    async def find_by_id(self, authorization_id: str) -> Authorization | None:
        async with self._lock:
            found = self._authorizations.get(authorization_id)
            return copy.deepcopy(found) if found is not None else None

    async def find_by_token(
        self, value: str, kind: TokenKind | None = None,
    ) -> Authorization | None:
        async with self._lock:
            authorization_id = self._token_index.get(value)
            if authorization_id is None:
                return None
            found = self._authorizations[authorization_id]
            if kind is not None:
                token = found.find_token(value)
                if token is None or token.kind is not kind:
                    return None
            return copy.deepcopy(found)


def _is_retry_of(current: Authorization, authorization: Authorization) -> bool:
    """True when ``authorization`` is a resend of the commit that produced ``current``."""
    return (
        current.version == authorization.version + 1
        and dataclasses.replace(current, version=authorization.version) == authorization
    )
