"""Validation pipeline ordering and outcomes."""

from datetime import datetime, timedelta, timezone

import pytest

from venueauth.service.blacklist import TokenBlacklist
from venueauth.service.tokens import JWTCodec, TokenClaims
from venueauth.service.validation import TokenValidation, TokenValidator, ValidationStatus


def _claims(**overrides):
    fields = {
        "subject": "user-1",
        "jti": "jti-1",
        "expires_at": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    fields.update(overrides)
    return TokenClaims(**fields)


@pytest.fixture
def codec():
    return JWTCodec("validation-test-secret-value-0123456789", "venueauth", "venue-clients")


def _token(codec, claims):
    return codec.encode(claims.to_payload(codec.issuer, codec.audience))


class TestPipelineOrdering:
    """Checks run structure, signature, expiry, blacklist, then the store."""

    async def test_bad_format(self, codec):
        validator = TokenValidator(codec, TokenBlacklist())
        outcome = await validator.validate("not-a-jwt")
        assert outcome.status is ValidationStatus.INVALID
        assert outcome.message == "Invalid token format"
        assert (await validator.validate(None)).status is ValidationStatus.INVALID

    async def test_bad_signature(self, codec):
        other = JWTCodec("some-other-secret-value-0123456789", "venueauth", "venue-clients")
        validator = TokenValidator(codec, TokenBlacklist())
        outcome = await validator.validate(_token(other, _claims()))
        assert outcome.status is ValidationStatus.INVALID
        assert outcome.claims is None

    async def test_missing_claims_invalid(self, codec):
        validator = TokenValidator(codec, TokenBlacklist())
        token = codec.encode({"iss": codec.issuer, "aud": codec.audience, "sub": "u"})
        assert (await validator.validate(token)).status is ValidationStatus.INVALID

    async def test_expired_beats_revoked(self, codec):
        """An expired token is reported as expired even if it was also revoked."""
        blacklist = TokenBlacklist()
        claims = _claims(expires_at=datetime.now(timezone.utc) - timedelta(seconds=5))
        blacklist._local[claims.jti] = datetime.now(timezone.utc) + timedelta(hours=1)
        validator = TokenValidator(codec, blacklist)
        outcome = await validator.validate(_token(codec, claims))
        assert outcome.status is ValidationStatus.EXPIRED
        assert outcome.message == "Token has expired"
        assert outcome.claims.subject == "user-1"

    async def test_revoked(self, codec):
        blacklist = TokenBlacklist()
        claims = _claims()
        await blacklist.blacklist(claims.jti, claims.expires_at)
        validator = TokenValidator(codec, blacklist)
        outcome = await validator.validate(_token(codec, claims))
        assert outcome.status is ValidationStatus.REVOKED
        assert not outcome.is_valid

    async def test_store_not_consulted_without_details(self, codec):
        validator = TokenValidator(codec, TokenBlacklist(), store=None)
        outcome = await validator.validate(_token(codec, _claims()))
        assert outcome.is_valid
        assert outcome.user is None

    async def test_explicit_now(self, codec):
        validator = TokenValidator(codec, TokenBlacklist())
        claims = _claims()
        later = claims.expires_at + timedelta(seconds=1)
        outcome = await validator.validate(_token(codec, claims), now=later)
        assert outcome.status is ValidationStatus.EXPIRED


class TestEnrichment:
    async def test_valid_with_user_details(self, runtime, create_customer):
        user = create_customer()
        pair = await runtime.tokens.issue_tokens(user)
        outcome = await runtime.validator.validate(pair.access_token, include_user_details=True)
        assert outcome.is_valid
        assert outcome.user["id"] == user.id
        assert outcome.user["user_type"] == "customer"
        assert outcome.user["is_phone_verified"] is True

    async def test_inactive_user_fails(self, runtime, create_customer):
        user = create_customer()
        pair = await runtime.tokens.issue_tokens(user)
        runtime.store.set_user_active(user.id, False)
        outcome = await runtime.validator.validate(pair.access_token, include_user_details=True)
        assert outcome.status is ValidationStatus.FAILED
        assert outcome.message == "User account is inactive"

    async def test_no_active_session_fails(self, runtime, create_customer):
        user = create_customer()
        pair = await runtime.tokens.issue_tokens(user)
        runtime.store.deactivate_user_sessions(user.id)
        outcome = await runtime.validator.validate(pair.access_token, include_user_details=True)
        assert outcome.status is ValidationStatus.FAILED
        assert outcome.message == "No active session found"
        assert (await runtime.validator.validate(pair.access_token)).is_valid

    async def test_operational_token_enriched_from_sub_user(self, runtime, create_venue_owner):
        _user, venue = create_venue_owner()
        created = await runtime.sub_users.create_first_admin(
            venue_id=venue.id, username="founder", password="founder-pass"
        )
        sub_user = runtime.store.get_sub_user(created.value["id"])
        pair = runtime.tokens.issue_sub_user_tokens(sub_user)
        outcome = await runtime.validator.validate(pair.access_token, include_user_details=True)
        assert outcome.is_valid
        assert outcome.user == {
            "id": sub_user.id,
            "username": "founder",
            "venue_id": venue.id,
            "role": "admin",
        }

    async def test_gateway_token_needs_no_session(self, runtime, create_venue_owner):
        user, venue = create_venue_owner()
        gateway = runtime.tokens.issue_gateway_token(user, venue)
        assert runtime.store.list_active_sessions(user.id) == []

        outcome = await runtime.validator.validate(gateway.token, include_user_details=True)
        assert outcome.is_valid
        assert outcome.user["id"] == user.id
        assert outcome.user["venue_id"] == venue.id

        runtime.store.set_user_active(user.id, False)
        outcome = await runtime.validator.validate(gateway.token, include_user_details=True)
        assert outcome.status is ValidationStatus.FAILED
        assert outcome.message == "User account is inactive"


class TestTokenValidationDict:
    def test_valid_dict(self):
        claims = _claims()
        data = TokenValidation.valid(claims, {"id": "user-1"}).to_dict()
        assert data["is_valid"] is True
        assert data["status"] == "valid"
        assert data["user_id"] == "user-1"
        assert data["claims"]["userId"] == "user-1"
        assert data["user"] == {"id": "user-1"}

    def test_expired_dict_has_no_claims_summary(self):
        data = TokenValidation.expired(_claims()).to_dict()
        assert data["is_valid"] is False
        assert data["status"] == "expired"
        assert "claims" not in data
        assert data["user_id"] == "user-1"

    def test_invalid_dict_is_minimal(self):
        assert TokenValidation.invalid().to_dict() == {
            "is_valid": False,
            "status": "invalid",
            "message": "Invalid token",
        }
