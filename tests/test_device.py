"""Tests for the device authorization grant (RFC 8628)."""
import asyncio

import pytest

from conftest import PUBLIC, InterleavingStore, principal, split_results
from warden_errors import (
    AccessDenied,
    AuthorizationPending,
    ExpiredToken,
    InvalidGrant,
    InvalidScope,
    ServerError,
    SlowDown,
    UnauthorizedClient,
)
from warden_grants import (
    USER_CODE_ALPHABET,
    GrantEngine,
    GrantRequest,
    generate_user_code,
    normalize_user_code,
)
from warden_http import DevicePollGuard
from warden_model import DeviceStatus, TokenKind


def _poll(device_code):
    return GrantRequest(grant_type="urn:ietf:params:oauth:grant-type:device_code",
                        device_code=device_code)


TV = principal("tv", PUBLIC)


# ---------------------------------------------------------------------------
# User codes
# ---------------------------------------------------------------------------

class TestUserCode:
    def test_format(self):
        code = generate_user_code()
        assert len(code) == 9
        assert code[4] == "-"
        assert all(c in USER_CODE_ALPHABET for c in code.replace("-", ""))

    def test_normalize_accepts_typed_variants(self):
        assert normalize_user_code("bcdf ghjk") == "BCDF-GHJK"
        assert normalize_user_code("BCDFGHJK") == "BCDF-GHJK"
        assert normalize_user_code("bcdf-ghjk") == "BCDF-GHJK"

    def test_normalize_leaves_wrong_length_alone(self):
        assert normalize_user_code("bcd") == "BCD"


# ---------------------------------------------------------------------------
# Device flow
# ---------------------------------------------------------------------------

class TestDeviceAuthorization:
    @pytest.mark.asyncio
    async def test_authorize_returns_codes_and_uris(self, engine):
        issued = await engine.authorize_device(TV)

        assert issued.device_code
        assert issued.verification_uri == "https://auth.test/oauth2/device_verification"
        assert issued.verification_uri_complete.startswith(issued.verification_uri + "?user_code=")
        assert issued.expires_in == 300
        assert issued.interval == 5

    @pytest.mark.asyncio
    async def test_authorize_stores_pending_grant(self, engine, store):
        issued = await engine.authorize_device(TV, ["media"])

        authorization = await store.find_by_token(issued.device_code, TokenKind.DEVICE_CODE)
        assert authorization.authorized_scopes == ("media",)
        assert authorization.grant_state().status is DeviceStatus.PENDING
        assert authorization.token(TokenKind.USER_CODE).value == issued.user_code

    @pytest.mark.asyncio
    async def test_unknown_scope_rejected(self, engine, store):
        with pytest.raises(InvalidScope):
            await engine.authorize_device(TV, ["admin"])
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_client_without_device_grant_rejected(self, engine):
        with pytest.raises(UnauthorizedClient):
            await engine.authorize_device(principal("svc"))


class TestDevicePolling:
    @pytest.mark.asyncio
    async def test_pending_until_approved(self, engine):
        issued = await engine.authorize_device(TV)
        with pytest.raises(AuthorizationPending):
            await engine.token(TV, _poll(issued.device_code))

        await engine.verify_user_code(issued.user_code.lower().replace("-", " "), "bob")
        token = await engine.token(TV, _poll(issued.device_code))

        assert token.access_token
        assert token.refresh_token
        assert token.scope == "media"

    @pytest.mark.asyncio
    async def test_token_subject_is_approving_user(self, engine, signer):
        issued = await engine.authorize_device(TV)
        await engine.verify_user_code(issued.user_code, "bob")
        await engine.token(TV, _poll(issued.device_code))
        assert signer.claims[-1].subject == "bob"
        assert signer.claims[-1].audience == ("tv",)

    @pytest.mark.asyncio
    async def test_device_code_is_single_use(self, engine):
        issued = await engine.authorize_device(TV)
        await engine.verify_user_code(issued.user_code, "bob")
        await engine.token(TV, _poll(issued.device_code))

        with pytest.raises(InvalidGrant):
            await engine.token(TV, _poll(issued.device_code))

    @pytest.mark.asyncio
    async def test_denied(self, engine):
        issued = await engine.authorize_device(TV)
        await engine.verify_user_code(issued.user_code, "bob", approve=False)
        with pytest.raises(AccessDenied):
            await engine.token(TV, _poll(issued.device_code))

    @pytest.mark.asyncio
    async def test_expired(self, engine, clock):
        issued = await engine.authorize_device(TV)
        clock.advance(301)
        with pytest.raises(ExpiredToken):
            await engine.token(TV, _poll(issued.device_code))

    @pytest.mark.asyncio
    async def test_user_code_cannot_be_used_twice(self, engine):
        issued = await engine.authorize_device(TV)
        await engine.verify_user_code(issued.user_code, "bob")
        with pytest.raises(InvalidGrant):
            await engine.verify_user_code(issued.user_code, "mallory")

    @pytest.mark.asyncio
    async def test_expired_user_code_rejected(self, engine, clock):
        issued = await engine.authorize_device(TV)
        clock.advance(301)
        with pytest.raises(InvalidGrant):
            await engine.verify_user_code(issued.user_code, "bob")

    @pytest.mark.asyncio
    async def test_unknown_user_code_rejected(self, engine):
        with pytest.raises(InvalidGrant):
            await engine.verify_user_code("ZZZZ-ZZZZ", "bob")

    @pytest.mark.asyncio
    async def test_unknown_device_code_rejected(self, engine):
        with pytest.raises(InvalidGrant):
            await engine.token(TV, _poll("nope"))

    @pytest.mark.asyncio
    async def test_slow_down_from_poll_guard(self, settings, registry, store, signer, clock):
        polls = iter([True, False])
        engine = GrantEngine(settings, registry, store, signer, clock=clock,
                             poll_guard=lambda code: next(polls))
        issued = await engine.authorize_device(TV)

        with pytest.raises(AuthorizationPending):
            await engine.token(TV, _poll(issued.device_code))
        with pytest.raises(SlowDown):
            await engine.token(TV, _poll(issued.device_code))


class TestUserCodeCollision:
    @pytest.mark.asyncio
    async def test_colliding_user_code_is_redrawn(self, engine, monkeypatch):
        codes = iter(["BCDF-GHJK", "BCDF-GHJK", "CDFG-HJKL"])
        monkeypatch.setattr("warden_grants.generate_user_code", lambda: next(codes))

        first = await engine.authorize_device(TV)
        second = await engine.authorize_device(TV)
        assert first.user_code == "BCDF-GHJK"
        assert second.user_code == "CDFG-HJKL"

        # Approving the code shown on the first device approves that device only.
        await engine.verify_user_code("BCDF-GHJK", "bob")
        assert (await engine.token(TV, _poll(first.device_code))).access_token
        with pytest.raises(AuthorizationPending):
            await engine.token(TV, _poll(second.device_code))

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_collisions(self, engine, store, monkeypatch):
        monkeypatch.setattr("warden_grants.generate_user_code", lambda: "BCDF-GHJK")
        first = await engine.authorize_device(TV)

        with pytest.raises(ServerError):
            await engine.authorize_device(TV)
        assert len(store) == 1
        owner = await store.find_by_token("BCDF-GHJK", TokenKind.USER_CODE)
        assert owner.token(TokenKind.DEVICE_CODE).value == first.device_code


class TestConcurrentDevicePoll:
    @pytest.mark.asyncio
    async def test_approved_device_code_is_redeemed_once(self, settings, registry, signer, clock):
        store = InterleavingStore()
        engine = GrantEngine(settings, registry, store, signer, clock=clock)
        issued = await engine.authorize_device(TV)
        await engine.verify_user_code(issued.user_code, "bob")

        results = await asyncio.gather(
            engine.token(TV, _poll(issued.device_code)),
            engine.token(TV, _poll(issued.device_code)),
            return_exceptions=True,
        )

        successes, failures = split_results(results)
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidGrant)

        authorization = await store.find_by_token(issued.device_code)
        assert authorization.token(TokenKind.ACCESS_TOKEN).value == successes[0].access_token
        assert not any(t.kind is TokenKind.ACCESS_TOKEN for t in authorization.retired)


# ---------------------------------------------------------------------------
# DevicePollGuard
# ---------------------------------------------------------------------------

class TestDevicePollGuard:
    def test_first_poll_allowed_second_too_fast(self, monkeypatch):
        now = [1000.0]
        monkeypatch.setattr("warden_http.time.monotonic", lambda: now[0])
        guard = DevicePollGuard(interval=5)

        assert guard("dc")
        now[0] += 2
        assert not guard("dc")
        now[0] += 5
        assert guard("dc")

    def test_codes_tracked_independently(self, monkeypatch):
        monkeypatch.setattr("warden_http.time.monotonic", lambda: 1000.0)
        guard = DevicePollGuard(interval=5)
        assert guard("a")
        assert guard("b")

    def test_cleanup_forgets_stale_codes(self, monkeypatch):
        now = [1000.0]
        monkeypatch.setattr("warden_http.time.monotonic", lambda: now[0])
        guard = DevicePollGuard(interval=5)
        guard("old")
        now[0] += 100
        guard("new")

        guard.cleanup(max_age=50)
        assert "old" not in guard._last_poll
        assert "new" in guard._last_poll
