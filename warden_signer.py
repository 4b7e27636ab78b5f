"""
warden_signer.py — token signing boundary.

The grant engine decides what goes into a token (claims and lifetime);
a TokenSigner turns that into the artifact handed to the client.
JwtTokenSigner is the HS256 implementation used by the server entry
point. Key provisioning and rotation live outside Warden.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import jwt

JWT_ALGORITHM = "HS256"


@dataclass(frozen=True)
class ClaimsSet:
    issuer: str
    subject: str
    audience: tuple[str, ...]
    issued_at: datetime
    expires_at: datetime
    not_before: datetime
    scope: tuple[str, ...]
    extra_claims: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SignedToken:
    value: str
    issued_at: datetime
    expires_at: datetime


class TokenSigner(Protocol):
    def sign(self, claims: ClaimsSet) -> SignedToken: ...


def _epoch(dt: datetime) -> int:
    return int(dt.timestamp())


class JwtTokenSigner:
    """Sign access tokens as compact JWS using PyJWT."""

    def __init__(self, key: str, algorithm: str = JWT_ALGORITHM):
        if not key:
            raise ValueError("a signing key is required")
        self.key = key
        self.algorithm = algorithm

    def sign(self, claims: ClaimsSet) -> SignedToken:
        iat = _epoch(claims.issued_at)
        exp = _epoch(claims.expires_at)
        if exp <= iat:
            raise ValueError("token must expire after it is issued")
        payload = {
            **claims.extra_claims,
            "iss": claims.issuer,
            "sub": claims.subject,
            "aud": list(claims.audience),
            "iat": iat,
            "nbf": _epoch(claims.not_before),
            "exp": exp,
            "scope": " ".join(claims.scope),
        }
        value = jwt.encode(payload, self.key, algorithm=self.algorithm)
        # JWT timestamps are whole seconds; report what the token carries.
        return SignedToken(
            value=value,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )
