"""Verification codes: generation, throttling, delivery and consumption."""

from datetime import datetime, timedelta, timezone

import httpx

from venueauth.service.email import EmailService
from venueauth.service.results import ResultKind
from venueauth.service.sms import SmsService
from venueauth.service.tokens import DeviceInfo
from venueauth.service.validation import ValidationStatus
from venueauth.service.verification import VerificationService, local_phone_digits
from venueauth.storage.models import VerificationChannel, VerificationPurpose

EMAIL = VerificationChannel.EMAIL
PHONE = VerificationChannel.PHONE
ACCOUNT = VerificationPurpose.ACCOUNT_VERIFICATION
RESET = VerificationPurpose.PASSWORD_RESET


def _stored_code(runtime, user_id, channel, purpose=ACCOUNT):
    return runtime.store.get_user(user_id).code_for(channel, purpose)


class TestCodes:
    def test_generated_codes_are_six_digits(self, runtime):
        for _ in range(200):
            ok, code = runtime.verification.generate_code()
            assert ok
            assert len(code) == 6
            assert code.isdigit()
            assert code[0] != "0"

    def test_validate_code(self, runtime):
        svc = runtime.verification
        now = datetime.now(timezone.utc)
        future = now + timedelta(minutes=5)
        assert svc.validate_code("123456", "123456", future)
        assert not svc.validate_code("123457", "123456", future)
        assert not svc.validate_code(None, "123456", future)
        assert not svc.validate_code("123456", None, future)
        assert not svc.validate_code("123456", "123456", None)
        assert not svc.validate_code("123456", "123456", now - timedelta(seconds=1))
        assert not svc.validate_code("123456", "123456", now, now=now)

    def test_local_phone_digits(self):
        assert local_phone_digits("+201012345678") == "01012345678"
        assert local_phone_digits("01012345678") == "01012345678"


class TestSendCode:
    async def test_unknown_user(self, runtime):
        result = await runtime.verification.send_code(user_id="missing", method=PHONE)
        assert result.kind is ResultKind.NOT_FOUND

    async def test_stores_code_and_hides_it_by_default(self, runtime, create_customer):
        user = create_customer(verify_phone=False)
        result = await runtime.verification.send_code(user_id=user.id, method=PHONE)
        assert result.ok
        assert "verification_code" not in result.value
        assert result.value["expires_in_minutes"] == 10
        stored = _stored_code(runtime, user.id, PHONE)
        assert stored.code and len(stored.code) == 6
        assert stored.expires_at > datetime.now(timezone.utc) + timedelta(minutes=9)

    async def test_exposes_code_when_configured(self, runtime, create_customer):
        runtime.settings.expose_verification_codes = True
        user = create_customer(verify_phone=False)
        result = await runtime.verification.send_code(user_id=user.id, method=PHONE)
        assert result.value["verification_code"] == _stored_code(runtime, user.id, PHONE).code

    async def test_already_verified_channel(self, runtime, create_customer):
        user = create_customer(verify_phone=True)
        result = await runtime.verification.send_code(user_id=user.id, method=PHONE)
        assert result.kind is ResultKind.INVALID
        assert result.message == "Phone number already verified"

    async def test_resend_blocked_while_code_is_fresh(self, runtime, create_customer):
        user = create_customer(verify_phone=False)
        assert (await runtime.verification.send_code(user_id=user.id, method=PHONE)).ok
        first_code = _stored_code(runtime, user.id, PHONE).code

        again = await runtime.verification.send_code(user_id=user.id, method=PHONE)
        assert again.kind is ResultKind.RATE_LIMITED
        assert 0 < again.retry_after_seconds <= 120
        assert _stored_code(runtime, user.id, PHONE).code == first_code

        # once the outstanding code is within the last eight minutes, a new one is allowed
        stored = _stored_code(runtime, user.id, PHONE)
        stored.expires_at = datetime.now(timezone.utc) + timedelta(minutes=7)
        assert (await runtime.verification.send_code(user_id=user.id, method=PHONE)).ok

    async def test_channels_throttled_independently(self, runtime, create_customer):
        user = create_customer(verify_phone=False)
        assert (await runtime.verification.send_code(user_id=user.id, method=PHONE)).ok
        assert (await runtime.verification.send_code(user_id=user.id, method=EMAIL)).ok

    async def test_reset_code_requires_verified_channel(self, runtime, create_customer):
        user = create_customer(verify_phone=True)
        result = await runtime.verification.send_code(
            user_id=user.id, method=EMAIL, purpose=RESET
        )
        assert result.kind is ResultKind.INVALID
        assert result.message == "Email not verified"

    async def test_reset_throttle_shared_across_channels(self, runtime, create_customer):
        user = create_customer(verify_phone=True, verify_email=True)
        first = await runtime.verification.send_code(user_id=user.id, method=PHONE, purpose=RESET)
        assert first.ok
        assert runtime.store.get_user(user.id).last_password_reset_request is not None

        second = await runtime.verification.send_code(
            user_id=user.id, method=EMAIL, purpose=RESET
        )
        assert second.kind is ResultKind.RATE_LIMITED
        assert 0 < second.retry_after_seconds <= 60

    async def test_delivery_failure(self, runtime, create_customer, monkeypatch):
        async def fail(*args, **kwargs):
            return False

        monkeypatch.setattr(runtime.verification.sms, "send_code", fail)
        user = create_customer(verify_phone=False)
        result = await runtime.verification.send_code(user_id=user.id, method=PHONE)
        assert result.kind is ResultKind.FAILURE
        assert result.message == "Failed to send verification code"

    async def test_unexpected_error_becomes_failure(self, runtime, create_customer, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("store offline")

        monkeypatch.setattr(runtime.store, "set_verification_code", explode)
        user = create_customer(verify_phone=False)
        result = await runtime.verification.send_code(user_id=user.id, method=PHONE)
        assert result.kind is ResultKind.FAILURE
        assert result.message == "An error occurred while sending verification code"


class TestVerifyAccount:
    async def test_email_verification_end_to_end(self, runtime, create_customer):
        user = create_customer(verify_phone=True, verify_email=False)
        assert (await runtime.verification.send_code(user_id=user.id, method=EMAIL)).ok
        code = _stored_code(runtime, user.id, EMAIL).code

        wrong = "000000" if code != "000000" else "111111"
        rejected = await runtime.account.verify_account(user_id=user.id, method=EMAIL, code=wrong)
        assert rejected.kind is ResultKind.INVALID

        result = await runtime.account.verify_account(user_id=user.id, method=EMAIL, code=code)
        assert result.ok
        assert result.value["message"] == "Account verified successfully"
        assert result.value["tokens"] is not None
        assert runtime.store.get_user(user.id).is_email_verified
        assert _stored_code(runtime, user.id, EMAIL).code is None

        # the consumed code is single use
        reuse = await runtime.account.verify_account(user_id=user.id, method=EMAIL, code=code)
        assert reuse.kind is ResultKind.INVALID
        assert reuse.message == "Invalid or expired verification code"
        assert runtime.store.get_user(user.id).is_email_verified

    async def test_second_channel_reuses_device_session(self, runtime, create_customer):
        user = create_customer(verify_phone=False, verify_email=False)
        device = DeviceInfo(device_name="Pixel", device_type="android")

        assert (await runtime.verification.send_code(user_id=user.id, method=PHONE)).ok
        phone_code = _stored_code(runtime, user.id, PHONE).code
        first = await runtime.account.verify_account(
            user_id=user.id, method=PHONE, code=phone_code, device=device
        )
        assert (await runtime.verification.send_code(user_id=user.id, method=EMAIL)).ok
        email_code = _stored_code(runtime, user.id, EMAIL).code
        second = await runtime.account.verify_account(
            user_id=user.id, method=EMAIL, code=email_code, device=device
        )

        first_tokens, second_tokens = first.value["tokens"], second.value["tokens"]
        assert second_tokens.session_id == first_tokens.session_id
        assert len(runtime.store.list_active_sessions(user.id)) == 1
        stale = await runtime.validator.validate(first_tokens.access_token)
        assert stale.status is ValidationStatus.REVOKED

    async def test_expired_code_rejected(self, runtime, create_customer):
        user = create_customer(verify_phone=False)
        assert (await runtime.verification.send_code(user_id=user.id, method=PHONE)).ok
        stored = _stored_code(runtime, user.id, PHONE)
        stored.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        result = await runtime.verification.verify(user_id=user.id, method=PHONE, code=stored.code)
        assert result.kind is ResultKind.INVALID
        assert not runtime.store.get_user(user.id).is_phone_verified

    async def test_venue_verification_reports_profile_state(self, runtime, create_venue_owner):
        user, venue = create_venue_owner(verify_phone=False)
        assert (await runtime.verification.send_code(user_id=user.id, method=PHONE)).ok
        code = _stored_code(runtime, user.id, PHONE).code
        result = await runtime.account.verify_account(user_id=user.id, method=PHONE, code=code)
        assert result.ok
        assert result.value["user_type"] == "venue"
        assert result.value["venue"]["id"] == venue.id
        assert result.value["required_actions"] == ["COMPLETE_PROFILE"]

    async def test_inactive_account_verified_without_tokens(self, runtime, create_customer):
        user = create_customer(verify_phone=False, active=False)
        assert (await runtime.verification.send_code(user_id=user.id, method=PHONE)).ok
        code = _stored_code(runtime, user.id, PHONE).code
        result = await runtime.account.verify_account(user_id=user.id, method=PHONE, code=code)
        assert result.ok
        assert result.value["tokens"] is None


class TestDelivery:
    async def test_sms_gateway_request(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["body"] = request.content.decode()
            captured["auth"] = request.headers.get("Authorization")
            return httpx.Response(201, json={"sid": "SM1"})

        sms = SmsService(
            gateway_url="https://sms.example.com/messages",
            account_sid="AC123",
            auth_token="token",
            from_number="+15550001111",
            transport=httpx.MockTransport(handler),
        )
        assert sms.is_configured
        assert await sms.send_code("01012345678", "123456", minutes=10)
        assert captured["url"] == "https://sms.example.com/messages"
        assert "To=01012345678" in captured["body"]
        assert "123456" in captured["body"]
        assert captured["auth"].startswith("Basic ")

    async def test_sms_gateway_error(self):
        sms = SmsService(
            gateway_url="https://sms.example.com/messages",
            from_number="+15550001111",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        assert not await sms.send_code("01012345678", "123456")

    async def test_sms_dev_mode(self):
        assert await SmsService().send_code("01012345678", "123456")

    def test_email_dev_mode(self):
        email = EmailService()
        assert not email.is_configured
        assert email.send_verification_code("someone@example.com", "Sam", "123456")

    def test_email_connection_failure(self, monkeypatch):
        class Unreachable:
            def __init__(self, *args, **kwargs):
                raise ConnectionRefusedError("no relay")

        monkeypatch.setattr("venueauth.service.email.smtplib.SMTP", Unreachable)
        email = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
        assert not email.send_password_reset_code("someone@example.com", "Sam", "123456")

    def test_service_defaults_to_unconfigured_channels(self, runtime):
        svc = VerificationService(runtime.store, runtime.settings)
        assert not svc.email.is_configured
        assert not svc.sms.is_configured
