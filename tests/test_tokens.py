"""Token issuance, rotation and revocation."""

import asyncio
import json
import string
import threading
from datetime import datetime, timedelta, timezone

from venueauth.service.permissions import SubUserRole, VenuePermissions
from venueauth.service.results import ResultKind
from venueauth.service.tokens import (
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_GATEWAY,
    TOKEN_TYPE_OPERATIONAL,
    DeviceInfo,
    JWTCodec,
    TokenClaims,
    TokenService,
)
from venueauth.service.validation import ValidationStatus

SECRET = "unit-test-secret-value-long-enough-for-hs256"


def _codec(secret=SECRET, issuer="venueauth", audience="venue-clients"):
    return JWTCodec(secret, issuer, audience)


def _payload(**overrides):
    payload = {
        "iss": "venueauth",
        "aud": "venue-clients",
        "sub": "user-1",
        "jti": "jti-1",
        "exp": int((datetime.now(timezone.utc) + timedelta(minutes=5)).timestamp()),
    }
    payload.update(overrides)
    return payload


def _refresh_in_threads(runtime, monkeypatch, refresh, token, workers=5):
    """Call ``refresh(token)`` from several threads that all pass the lookup before any rotates."""
    barrier = threading.Barrier(workers, timeout=5)
    original = runtime.tokens.generate_refresh_token

    def gated():
        barrier.wait()
        return original()

    monkeypatch.setattr(runtime.tokens, "generate_refresh_token", gated)
    results = []
    lock = threading.Lock()

    def worker():
        outcome = asyncio.run(refresh(token))
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(results) == workers
    return results


class TestJWTCodec:
    """Signature and claim checks done by decode()."""

    def test_round_trip(self):
        codec = _codec()
        token = codec.encode(_payload())
        assert codec.decode(token)["sub"] == "user-1"

    def test_tampered_payload_rejected(self):
        codec = _codec()
        header, _payload_b64, sig = codec.encode(_payload()).split(".")
        forged = codec._encode_segment(json.dumps(_payload(sub="admin")).encode())
        assert codec.decode(f"{header}.{forged}.{sig}") is None

    def test_wrong_secret_rejected(self):
        token = _codec().encode(_payload())
        assert _codec(secret="another-secret-value-entirely").decode(token) is None

    def test_alg_none_rejected(self):
        codec = _codec()
        header = codec._encode_segment(b'{"alg":"none","typ":"JWT"}')
        body = codec._encode_segment(json.dumps(_payload()).encode())
        assert codec.decode(f"{header}.{body}.signature") is None

    def test_issuer_and_audience_checked(self):
        codec = _codec()
        assert codec.decode(codec.encode(_payload(iss="someone-else"))) is None
        assert codec.decode(codec.encode(_payload(aud="other-clients"))) is None

    def test_audience_list_accepted(self):
        codec = _codec()
        token = codec.encode(_payload(aud=["other", "venue-clients"]))
        assert codec.decode(token) is not None

    def test_malformed_tokens(self):
        codec = _codec()
        for token in ("", "abc", "a.b", "a..c", "a.b.c.d", "!!!.???.***"):
            assert codec.decode(token) is None

    def test_decode_ignores_expiry(self):
        """Expiry is judged by the validator so it can report EXPIRED."""
        codec = _codec()
        token = codec.encode(_payload(exp=1))
        assert codec.decode(token)["exp"] == 1


class TestTokenClaims:
    def test_payload_round_trip_keeps_typed_fields(self):
        claims = TokenClaims(
            subject="sub-user-1",
            jti="j",
            expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
            token_type=TOKEN_TYPE_OPERATIONAL,
            roles=("VenueSubUser",),
            venue_id="venue-1",
            sub_user_id="sub-user-1",
            sub_user_role=2,
            permissions=1024,
        )
        restored = TokenClaims.from_payload(claims.to_payload("iss", "aud"))
        assert restored == claims
        assert restored.is_operational

    def test_missing_required_claim(self):
        for missing in ("sub", "jti", "exp"):
            payload = _payload()
            del payload[missing]
            try:
                TokenClaims.from_payload(payload)
            except ValueError:
                continue
            raise AssertionError(f"{missing} should be required")

    def test_defaults_to_access_type(self):
        claims = TokenClaims.from_payload(_payload())
        assert claims.token_type == TOKEN_TYPE_ACCESS
        assert claims.roles == ()


class TestRefreshTokenGeneration:
    def test_refresh_tokens_are_unique_and_long(self):
        alphabet = set(string.ascii_letters + string.digits + "-_")
        tokens = {TokenService.generate_refresh_token() for _ in range(10_000)}
        assert len(tokens) == 10_000
        for token in tokens:
            assert len(token) >= 32
            assert set(token) <= alphabet


class TestIssueTokens:
    """issue_tokens writes exactly one session per call."""

    async def test_customer_pair(self, runtime, create_customer):
        user = create_customer()
        pair = await runtime.tokens.issue_tokens(user)

        payload = runtime.tokens.codec.decode(pair.access_token)
        assert payload["sub"] == user.id
        assert payload["type"] == TOKEN_TYPE_ACCESS
        assert payload["customerId"] == user.id
        assert payload["roles"] == ["Customer"]
        assert "venueId" not in payload

        sessions = runtime.store.list_active_sessions(user.id)
        assert [s.id for s in sessions] == [pair.session_id]
        assert sessions[0].access_token_jti == pair.claims.jti
        assert sessions[0].refresh_token == pair.refresh_token

    async def test_venue_pair_carries_venue_claims(self, runtime, create_venue_owner):
        user, venue = create_venue_owner()
        pair = await runtime.tokens.issue_tokens(user)
        assert pair.claims.venue_id == venue.id
        assert pair.claims.venue_name == venue.name
        assert pair.claims.roles == ("Venue",)
        assert pair.user_type == "venue"

    async def test_to_dict_shape(self, runtime, create_customer):
        pair = await runtime.tokens.issue_tokens(create_customer())
        data = pair.to_dict()
        assert data["token_type"] == "bearer"
        assert data["session_id"] == pair.session_id
        assert data["claims"]["userId"] == pair.claims.subject
        assert data["claims"]["tokenType"] == TOKEN_TYPE_ACCESS
        datetime.fromisoformat(data["access_token_expires_at"])

    async def test_each_login_adds_a_session(self, runtime, create_customer):
        user = create_customer()
        await runtime.tokens.issue_tokens(user)
        await runtime.tokens.issue_tokens(user)
        assert len(runtime.store.list_active_sessions(user.id)) == 2

    async def test_device_session_reused_in_place(self, runtime, create_customer):
        user = create_customer()
        device = DeviceInfo(device_name="Pixel", device_type="Android", user_agent="ua")
        first = await runtime.tokens.issue_tokens(user, device=device)
        second = await runtime.tokens.issue_tokens(user, device=device, new_session=False)

        assert second.session_id == first.session_id
        assert len(runtime.store.list_active_sessions(user.id)) == 1
        assert await runtime.blacklist.is_blacklisted(first.claims.jti)
        old = await runtime.tokens.refresh_tokens(first.refresh_token)
        assert old.kind is ResultKind.EXPIRED


class TestRefreshTokens:
    async def test_rotation_invalidates_old_token(self, runtime, create_customer):
        user = create_customer()
        pair = await runtime.tokens.issue_tokens(user)

        refreshed = await runtime.tokens.refresh_tokens(pair.refresh_token)
        assert refreshed.ok
        assert refreshed.value.refresh_token != pair.refresh_token
        assert refreshed.value.session_id == pair.session_id
        assert refreshed.value.claims.subject == user.id

        replay = await runtime.tokens.refresh_tokens(pair.refresh_token)
        assert replay.kind is ResultKind.EXPIRED
        assert replay.message == "Invalid or expired refresh token"

        again = await runtime.tokens.refresh_tokens(refreshed.value.refresh_token)
        assert again.ok

    async def test_unknown_and_empty_tokens(self, runtime):
        assert (await runtime.tokens.refresh_tokens("x" * 86)).kind is ResultKind.EXPIRED
        assert (await runtime.tokens.refresh_tokens("")).kind is ResultKind.EXPIRED

    async def test_expired_session_rejected(self, runtime, create_customer):
        user = create_customer()
        pair = await runtime.tokens.issue_tokens(user)
        session = runtime.store.get_session(pair.session_id)
        session.refresh_token_expiry = datetime.now(timezone.utc) - timedelta(seconds=1)
        result = await runtime.tokens.refresh_tokens(pair.refresh_token)
        assert result.kind is ResultKind.EXPIRED

    async def test_inactive_user_rejected(self, runtime, create_customer):
        user = create_customer()
        pair = await runtime.tokens.issue_tokens(user)
        runtime.store.set_user_active(user.id, False)
        result = await runtime.tokens.refresh_tokens(pair.refresh_token)
        assert result.kind is ResultKind.UNAUTHORIZED

    async def test_phone_must_be_verified(self, runtime, create_customer):
        user = create_customer(verify_phone=False, verify_email=True)
        pair = await runtime.tokens.issue_tokens(user)
        result = await runtime.tokens.refresh_tokens(pair.refresh_token)
        assert result.kind is ResultKind.UNAUTHORIZED
        assert result.message == "Phone number not verified"

    async def test_concurrent_refresh_has_single_winner(
        self, runtime, create_customer, monkeypatch
    ):
        user = create_customer()
        pair = await runtime.tokens.issue_tokens(user)
        results = _refresh_in_threads(
            runtime, monkeypatch, runtime.tokens.refresh_tokens, pair.refresh_token
        )
        winners = [r for r in results if r.ok]
        assert len(winners) == 1
        assert all(r.kind is ResultKind.EXPIRED for r in results if not r.ok)
        assert runtime.store.get_active_session_by_refresh_token(
            winners[0].value.refresh_token
        )

    async def test_rotation_compare_and_swap_across_threads(self, runtime, create_customer):
        user = create_customer()
        pair = await runtime.tokens.issue_tokens(user)
        store = runtime.store
        expiry = datetime.now(timezone.utc) + timedelta(days=1)
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def rotate(i):
            barrier.wait()
            session = store.rotate_refresh_token(pair.refresh_token, f"new-token-{i}", expiry)
            with lock:
                outcomes.append(session)

        threads = [threading.Thread(target=rotate, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len([o for o in outcomes if o is not None]) == 1
        assert store.get_active_session_by_refresh_token(pair.refresh_token) is None


class TestRevocation:
    async def test_revoke_all_is_scoped_to_user(self, runtime, create_customer):
        alice, bob = create_customer(), create_customer()
        a1 = await runtime.tokens.issue_tokens(alice)
        a2 = await runtime.tokens.issue_tokens(alice)
        b1 = await runtime.tokens.issue_tokens(bob)

        assert await runtime.tokens.revoke_all_user_tokens(alice.id)

        assert runtime.store.list_active_sessions(alice.id) == []
        assert len(runtime.store.list_active_sessions(bob.id)) == 1
        for pair in (a1, a2):
            outcome = await runtime.validator.validate(pair.access_token)
            assert outcome.status is ValidationStatus.REVOKED
        assert (await runtime.validator.validate(b1.access_token)).is_valid
        assert (await runtime.tokens.refresh_tokens(b1.refresh_token)).ok

    async def test_revoke_token(self, runtime, create_customer):
        user = create_customer()
        pair = await runtime.tokens.issue_tokens(user)
        assert await runtime.tokens.revoke_token(pair.refresh_token)
        assert not await runtime.tokens.revoke_token("unknown-refresh-token")
        assert runtime.store.get_session(pair.session_id).is_active is False
        assert await runtime.blacklist.is_blacklisted(pair.claims.jti)

    async def test_revoke_session_requires_ownership(self, runtime, create_customer):
        alice, bob = create_customer(), create_customer()
        pair = await runtime.tokens.issue_tokens(alice)
        assert not await runtime.tokens.revoke_session(bob.id, pair.session_id)
        assert runtime.store.get_session(pair.session_id).is_active
        assert await runtime.tokens.revoke_session(alice.id, pair.session_id)
        assert not runtime.store.get_session(pair.session_id).is_active

    async def test_active_sessions_mark_current(self, runtime, create_customer):
        user = create_customer()
        first = await runtime.tokens.issue_tokens(user)
        await runtime.tokens.issue_tokens(user)
        summaries = runtime.tokens.get_active_sessions(user.id, first.refresh_token)
        assert len(summaries) == 2
        current = [s for s in summaries if s.is_current]
        assert [s.id for s in current] == [first.session_id]
        assert not any(s.is_current for s in runtime.tokens.get_active_sessions(user.id))


class TestCleanup:
    async def test_removes_expired_and_idle_sessions(self, runtime, create_customer):
        user = create_customer()
        keep = await runtime.tokens.issue_tokens(user)
        expired = await runtime.tokens.issue_tokens(user)
        idle = await runtime.tokens.issue_tokens(user)
        now = datetime.now(timezone.utc)
        runtime.store.get_session(expired.session_id).refresh_token_expiry = now - timedelta(
            minutes=1
        )
        runtime.store.get_session(idle.session_id).last_activity_at = now - timedelta(days=91)

        assert runtime.tokens.cleanup_expired_sessions() == 2
        assert runtime.store.get_session(keep.session_id) is not None
        assert runtime.store.get_session(expired.session_id) is None
        assert runtime.store.get_session(idle.session_id) is None

    async def test_worker_run_once(self, runtime, create_customer):
        user = create_customer()
        pair = await runtime.tokens.issue_tokens(user)
        runtime.store.get_session(pair.session_id).refresh_token_expiry = datetime.now(
            timezone.utc
        ) - timedelta(seconds=1)
        assert await runtime.cleanup_worker.run_once() == 1


class TestGatewayAndSubUserTokens:
    async def test_gateway_token_has_no_session(self, runtime, create_venue_owner):
        user, venue = create_venue_owner()
        gateway = runtime.tokens.issue_gateway_token(user, venue)
        payload = runtime.tokens.codec.decode(gateway.token)
        assert payload["type"] == TOKEN_TYPE_GATEWAY
        assert payload["venueId"] == venue.id
        assert runtime.store.list_active_sessions(user.id) == []

    async def test_sub_user_tokens(self, runtime, create_venue_owner):
        _user, venue = create_venue_owner()
        created = await runtime.sub_users.create_first_admin(
            venue_id=venue.id, username="founder", password="founder-pass"
        )
        sub_user = runtime.store.get_sub_user(created.value["id"])

        pair = runtime.tokens.issue_sub_user_tokens(sub_user)
        assert pair.claims.subject == sub_user.id
        assert pair.claims.sub_user_id == sub_user.id
        assert pair.claims.venue_id == venue.id
        assert pair.claims.token_type == TOKEN_TYPE_OPERATIONAL
        assert pair.claims.permissions == int(sub_user.permissions)
        assert pair.user_type == "venue-sub-user"

        refreshed = await runtime.tokens.refresh_sub_user_tokens(pair.refresh_token)
        assert refreshed.ok
        replay = await runtime.tokens.refresh_sub_user_tokens(pair.refresh_token)
        assert replay.kind is ResultKind.EXPIRED

        assert await runtime.tokens.revoke_sub_user_sessions(sub_user.id) == 1
        outcome = await runtime.validator.validate(refreshed.value.access_token)
        assert outcome.status is ValidationStatus.REVOKED

    async def test_concurrent_sub_user_refresh_has_single_winner(
        self, runtime, create_venue_owner, monkeypatch
    ):
        _user, venue = create_venue_owner()
        created = await runtime.sub_users.create_first_admin(
            venue_id=venue.id, username="founder", password="founder-pass"
        )
        pair = runtime.tokens.issue_sub_user_tokens(runtime.store.get_sub_user(created.value["id"]))

        results = _refresh_in_threads(
            runtime, monkeypatch, runtime.tokens.refresh_sub_user_tokens, pair.refresh_token
        )
        assert len([r for r in results if r.ok]) == 1
        assert all(r.kind is ResultKind.EXPIRED for r in results if not r.ok)

    async def test_sub_user_rotation_compare_and_swap_across_threads(
        self, runtime, create_venue_owner
    ):
        _user, venue = create_venue_owner()
        created = await runtime.sub_users.create_first_admin(
            venue_id=venue.id, username="founder", password="founder-pass"
        )
        pair = runtime.tokens.issue_sub_user_tokens(runtime.store.get_sub_user(created.value["id"]))
        store = runtime.store
        expiry = datetime.now(timezone.utc) + timedelta(days=1)
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def rotate(i):
            barrier.wait()
            session = store.rotate_sub_user_refresh_token(
                pair.refresh_token, f"new-sub-token-{i}", expiry
            )
            with lock:
                outcomes.append(session)

        threads = [threading.Thread(target=rotate, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len([o for o in outcomes if o is not None]) == 1
        assert store.get_active_sub_user_session_by_refresh_token(pair.refresh_token) is None

    async def test_sub_user_refresh_picks_up_permission_change(
        self, runtime, create_venue_owner
    ):
        _user, venue = create_venue_owner()
        founder = await runtime.sub_users.create_first_admin(
            venue_id=venue.id, username="founder", password="founder-pass"
        )
        staff = await runtime.sub_users.create_sub_user(
            venue_id=venue.id,
            actor_sub_user_id=founder.value["id"],
            username="cashier",
            password="staff-pass-1",
            role=SubUserRole.STAFF,
        )
        login = await runtime.sub_users.authenticate(
            venue_id=venue.id, username="cashier", password="staff-pass-1"
        )
        await runtime.sub_users.update_sub_user(
            venue_id=venue.id,
            sub_user_id=staff.value["id"],
            actor_sub_user_id=founder.value["id"],
            permissions=int(VenuePermissions.VIEW_BOOKINGS),
        )
        refreshed = await runtime.tokens.refresh_sub_user_tokens(
            login.value["tokens"].refresh_token
        )
        assert refreshed.ok
        assert refreshed.value.claims.permissions == int(VenuePermissions.VIEW_BOOKINGS)
