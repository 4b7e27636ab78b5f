"""Shared fixtures for the Warden test suite."""
import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path so the flat modules import without installing
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from warden_config import (
    ClientAuthenticationMethod,
    ClientSettings,
    GrantType,
    InMemoryClientRegistry,
    RegisteredClient,
    ServerSettings,
    TokenSettings,
    hash_client_secret,
)
from warden_grants import ClientPrincipal, GrantEngine
from warden_model import InMemoryAuthorizationStore
from warden_signer import ClaimsSet, SignedToken

ISSUER = "https://auth.test"
SECRET = "s3cret"
REDIRECT_URI = "https://app/cb"

BASIC = ClientAuthenticationMethod.CLIENT_SECRET_BASIC
PUBLIC = ClientAuthenticationMethod.NONE


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSigner:
    """Returns predictable token values and remembers every claims set."""

    def __init__(self):
        self.claims: list[ClaimsSet] = []

    def sign(self, claims: ClaimsSet) -> SignedToken:
        self.claims.append(claims)
        return SignedToken(
            value=f"access-{len(self.claims)}",
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )


class InterleavingStore(InMemoryAuthorizationStore):
    """Yields to the event loop after every lookup so requests interleave."""

    async def find_by_token(self, value, kind=None):
        found = await super().find_by_token(value, kind)
        await asyncio.sleep(0)
        return found


def split_results(results):
    """Split asyncio.gather(..., return_exceptions=True) output into (successes, failures)."""
    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    return successes, failures


def _confidential(client_id, grant_types, scopes=("a", "b"), **kwargs):
    return RegisteredClient(
        client_id=client_id,
        grant_types=frozenset(grant_types),
        scopes=tuple(scopes),
        client_secret_hash=hash_client_secret(SECRET),
        **kwargs,
    )


def _public(client_id, grant_types, scopes=("a", "b"), **kwargs):
    return RegisteredClient(
        client_id=client_id,
        grant_types=frozenset(grant_types),
        scopes=tuple(scopes),
        authentication_methods=frozenset({PUBLIC}),
        **kwargs,
    )


def make_clients() -> list[RegisteredClient]:
    code_and_refresh = {GrantType.AUTHORIZATION_CODE, GrantType.REFRESH_TOKEN}
    return [
        _confidential("svc", {GrantType.CLIENT_CREDENTIALS}, client_name="Billing"),
        _confidential("narrow-svc", {GrantType.CLIENT_CREDENTIALS}, scopes=("a",)),
        _confidential("web", code_and_refresh, redirect_uris=(REDIRECT_URI,)),
        _confidential(
            "web-reuse", code_and_refresh, redirect_uris=(REDIRECT_URI,),
            token_settings=TokenSettings(reuse_refresh_tokens=True),
        ),
        _public(
            "spa", {GrantType.AUTHORIZATION_CODE}, redirect_uris=(REDIRECT_URI,),
            client_settings=ClientSettings(require_proof_key=True),
        ),
        _public("tv", {GrantType.DEVICE_CODE, GrantType.REFRESH_TOKEN}, scopes=("media",)),
    ]


def principal(client_id: str, method: ClientAuthenticationMethod = BASIC) -> ClientPrincipal:
    return ClientPrincipal(client_id=client_id, authentication_method=method)


@pytest.fixture
def settings():
    return ServerSettings(issuer=ISSUER)


@pytest.fixture
def registry():
    return InMemoryClientRegistry(make_clients())


@pytest.fixture
def store():
    return InMemoryAuthorizationStore()


@pytest.fixture
def signer():
    return RecordingSigner()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(settings, registry, store, signer, clock):
    return GrantEngine(settings, registry, store, signer, clock=clock)
