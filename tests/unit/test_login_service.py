"""Unit tests for the login orchestration."""

import asyncio

import pytest

from airsafety.kernel.events.event_types import ClientInfo, LoginOutcome
from airsafety.kernel.identity.errors import (
    GENERIC_FAILURE_MESSAGE,
    INVALID_CREDENTIALS_MESSAGE,
    AuthenticationFailed,
    LoginError,
    RateLimited,
    SigningFailure,
    ValidationError,
)
from airsafety.kernel.identity.identity_service import IdentityService
from airsafety.kernel.identity.login_service import LoginService, LoginState
from airsafety.kernel.identity.password import PasswordHasher
from airsafety.kernel.models.user import UserRole

from tests.conftest import ADMIN_EMAIL, ADMIN_PASSWORD, create_account, stored_credential

CLIENT = ClientInfo(ip_address="203.0.113.7", user_agent="pytest", request_id="req-1")


@pytest.fixture
def make_service(session_factory, rate_limiter, audit, settings, jwt_manager):
    def _make() -> LoginService:
        return LoginService(
            session_factory,
            rate_limiter,
            audit,
            settings=settings,
            jwt_manager=jwt_manager,
        )

    return _make


async def _count_admins(session_factory) -> int:
    from sqlalchemy import func, select

    from airsafety.kernel.models.user import User

    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(User).where(User.role == UserRole.ADMINISTRATOR.value)
        )
        return int(result.scalar_one())


class TestSuccessfulLogin:
    async def test_hashed_credential(self, make_service, audit, jwt_manager, test_user):
        service = make_service()

        result = await service.login({"email": "Pilot@Airline.com ", "password": "TestPassword123"}, CLIENT)

        assert result.user.id == test_user.id
        assert result.outcome == LoginOutcome.SUCCESS
        assert service.state == LoginState.TOKEN_ISSUED
        payload = jwt_manager.verify_session_token(result.token)
        assert payload.sub == str(test_user.id)
        assert payload.role == "captain"

        assert audit.outcomes == ["success"]
        entry = audit.events[0].model_dump()
        assert entry["email"] == "pilot@airline.com"
        assert entry["user_id"] == str(test_user.id)
        assert entry["role"] == "captain"
        assert entry["ip_address"] == "203.0.113.7"
        assert entry["request_id"] == "req-1"

    async def test_plaintext_credential_is_upgraded(self, make_service, audit, session_factory):
        await create_account(session_factory, "legacy@airline.com", "password123", hashed=True)

        result = await make_service().login({"email": "legacy@airline.com", "password": "password123"}, CLIENT)

        assert result.outcome == LoginOutcome.SUCCESS
        assert audit.events[0].model_dump()["credential_upgraded"] is True
        credential = await stored_credential(session_factory, "legacy@airline.com")
        assert PasswordHasher.is_hashed(credential)
        assert PasswordHasher.verify("password123", credential)

        # Works again against the new hash
        again = await make_service().login({"email": "legacy@airline.com", "password": "password123"}, CLIENT)
        assert again.outcome == LoginOutcome.SUCCESS
        assert "credential_upgraded" not in audit.events[1].model_dump()

    async def test_failed_upgrade_does_not_block_login(self, make_service, audit, session_factory, monkeypatch):
        from sqlalchemy.exc import OperationalError

        await create_account(session_factory, "legacy@airline.com", "password123", hashed=True)

        async def broken_update(self, *args, **kwargs):
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        monkeypatch.setattr(IdentityService, "update_credential", broken_update)

        result = await make_service().login({"email": "legacy@airline.com", "password": "password123"}, CLIENT)

        assert result.outcome == LoginOutcome.SUCCESS
        assert audit.events[0].model_dump()["credential_upgraded"] is False
        assert await stored_credential(session_factory, "legacy@airline.com") == "password123"

    async def test_demo_login_outside_production(self, make_service, audit, session_factory):
        await create_account(session_factory, "demo@airline.com", "something-else")

        result = await make_service().login({"email": "demo@airline.com", "password": "password123"}, CLIENT)

        assert result.outcome == LoginOutcome.SUCCESS
        assert audit.events[0].model_dump()["demo_login"] is True

    async def test_demo_login_refused_in_production(self, make_service, audit, session_factory, settings):
        settings.environment = "production"
        await create_account(session_factory, "demo@airline.com", "something-else")

        with pytest.raises(AuthenticationFailed):
            await make_service().login({"email": "demo@airline.com", "password": "password123"}, CLIENT)

        assert audit.outcomes == ["invalid_password"]


class TestRejectedLogin:
    async def test_unknown_email(self, make_service, audit, test_user):
        with pytest.raises(AuthenticationFailed) as excinfo:
            await make_service().login({"email": "nobody@airline.com", "password": "x"}, CLIENT)

        assert excinfo.value.status_code == 401
        assert excinfo.value.message == INVALID_CREDENTIALS_MESSAGE
        assert audit.outcomes == ["user_not_found"]

    async def test_wrong_password(self, make_service, audit, test_user):
        with pytest.raises(AuthenticationFailed) as excinfo:
            await make_service().login({"email": "pilot@airline.com", "password": "wrong"}, CLIENT)

        # Same public message as an unknown email
        assert excinfo.value.message == INVALID_CREDENTIALS_MESSAGE
        assert audit.outcomes == ["invalid_password"]
        assert audit.events[0].model_dump()["reason"] == "password_mismatch"

    @pytest.mark.parametrize(
        "payload, reason",
        [
            (None, "malformed_body"),
            ([1, 2], "malformed_body"),
            ({}, "invalid_fields"),
            ({"email": "not-an-email", "password": "x"}, "invalid_fields"),
            ({"email": "pilot@airline.com", "password": ""}, "invalid_fields"),
            ({"email": "pilot@airline.com", "password": "x" * 257}, "invalid_fields"),
        ],
    )
    async def test_invalid_payload(self, make_service, audit, payload, reason):
        with pytest.raises(ValidationError) as excinfo:
            await make_service().login(payload, CLIENT)

        assert excinfo.value.status_code == 400
        assert audit.outcomes == ["validation_failed"]
        assert audit.events[0].model_dump()["reason"] == reason

    async def test_rate_limited_after_five_attempts(self, make_service, audit, test_user):
        for _ in range(5):
            with pytest.raises(AuthenticationFailed):
                await make_service().login({"email": "pilot@airline.com", "password": "wrong"}, CLIENT)

        # Even the right password is refused once the window is used up
        with pytest.raises(RateLimited) as excinfo:
            await make_service().login({"email": "pilot@airline.com", "password": "TestPassword123"}, CLIENT)

        exc = excinfo.value
        assert exc.status_code == 429
        assert 0 < exc.body["retryAfter"] <= 300
        assert exc.headers["Retry-After"] == str(exc.body["retryAfter"])
        assert exc.body["retryAfterFormatted"] in exc.message
        assert audit.outcomes == ["invalid_password"] * 5 + ["rate_limited"]
        assert audit.events[-1].model_dump()["rate_limit_key"] == "login:ip:203.0.113.7"

    async def test_rate_limit_runs_before_validation(self, make_service, audit):
        for _ in range(5):
            with pytest.raises(ValidationError):
                await make_service().login(None, CLIENT)

        with pytest.raises(RateLimited):
            await make_service().login(None, CLIENT)

    async def test_rate_limit_can_be_disabled(self, make_service, audit, settings, test_user):
        settings.rate_limit_enabled = False

        for _ in range(7):
            with pytest.raises(AuthenticationFailed):
                await make_service().login({"email": "pilot@airline.com", "password": "wrong"}, CLIENT)

        assert "rate_limited" not in audit.outcomes

    async def test_signing_failure(self, make_service, audit, jwt_manager, test_user):
        jwt_manager.algorithm = "NOT-AN-ALGORITHM"

        with pytest.raises(SigningFailure) as excinfo:
            await make_service().login({"email": "pilot@airline.com", "password": "TestPassword123"}, CLIENT)

        assert excinfo.value.message == GENERIC_FAILURE_MESSAGE
        assert audit.outcomes == ["jwt_signing_failed"]
        assert audit.events[0].model_dump()["user_id"] == str(test_user.id)

    async def test_unexpected_error_is_generic(self, make_service, audit, test_user):
        service = make_service()

        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        service.verifier.verify = explode

        with pytest.raises(LoginError) as excinfo:
            await service.login({"email": "pilot@airline.com", "password": "TestPassword123"}, CLIENT)

        assert type(excinfo.value) is LoginError
        assert excinfo.value.status_code == 500
        assert "boom" not in excinfo.value.message
        assert audit.outcomes == ["error"]
        assert audit.events[0].model_dump()["error"] == "RuntimeError"
        assert service.state == LoginState.REJECTED

    async def _login_then_disconnect(self, service, password):
        started = asyncio.Event()
        release = asyncio.Event()
        authenticate = service._authenticate

        async def slow_authenticate(request):
            started.set()
            await release.wait()
            return await authenticate(request)

        service._authenticate = slow_authenticate

        task = asyncio.create_task(
            service.login({"email": "pilot@airline.com", "password": password}, CLIENT)
        )
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        release.set()

    async def _wait_for_log(self, caplog, text):
        for _ in range(100):
            if text in caplog.text:
                return
            await asyncio.sleep(0.05)
        pytest.fail(f"log line {text!r} never appeared")

    async def test_client_disconnect_is_audited(self, make_service, audit, test_user, caplog):
        await self._login_then_disconnect(make_service(), "TestPassword123")

        await self._wait_for_log(caplog, "Login completed after client disconnected")
        assert audit.outcomes == ["error"]
        assert audit.events[0].model_dump()["reason"] == "client_disconnected"

    async def test_rejection_after_disconnect_is_collected(self, make_service, audit, test_user, caplog):
        await self._login_then_disconnect(make_service(), "WrongPassword")

        await self._wait_for_log(caplog, "Login rejected after client disconnected")
        record = next(r for r in caplog.records if r.getMessage() == "Login rejected after client disconnected")
        assert record.outcome == "invalid_password"
        assert "never retrieved" not in caplog.text
        # Still a single entry for the attempt
        assert audit.outcomes == ["error"]

    async def test_slow_audit_webhook_does_not_delay_login(
        self, session_factory, rate_limiter, settings, jwt_manager, test_user
    ):
        import time

        import httpx

        from airsafety.kernel.events.audit_logger import AuditLogger

        release = asyncio.Event()
        received = []

        async def handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            received.append(request)
            return httpx.Response(204)

        audit = AuditLogger(
            webhook_url="https://audit.airline.com/hooks/login",
            transport=httpx.MockTransport(handler),
        )
        service = LoginService(session_factory, rate_limiter, audit, settings=settings, jwt_manager=jwt_manager)

        started = time.perf_counter()
        result = await service.login({"email": "pilot@airline.com", "password": "TestPassword123"}, CLIENT)
        elapsed = time.perf_counter() - started

        # The webhook has not answered yet, but the login is done
        assert result.outcome == LoginOutcome.SUCCESS
        assert received == []
        assert audit.pending == 1
        assert elapsed < 2.0

        release.set()
        await audit.drain()
        assert len(received) == 1
        assert audit.pending == 0


class TestAdminProvisioning:
    async def test_bootstrap_on_empty_store(self, make_service, audit, session_factory):
        result = await make_service().login({"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}, CLIENT)

        assert result.outcome == LoginOutcome.ADMIN_BOOTSTRAPPED
        assert result.user.is_admin
        assert await _count_admins(session_factory) == 1

        again = await make_service().login({"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}, CLIENT)

        assert again.outcome == LoginOutcome.SUCCESS
        assert again.user.id == result.user.id
        assert await _count_admins(session_factory) == 1
        assert audit.outcomes == ["admin_bootstrapped", "success"]

    async def test_concurrent_bootstrap_creates_one_admin(self, make_service, session_factory):
        results = await asyncio.gather(
            *(
                make_service().login({"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}, CLIENT)
                for _ in range(3)
            ),
            return_exceptions=True,
        )

        assert await _count_admins(session_factory) == 1
        user_ids = {r.user.id for r in results if not isinstance(r, BaseException)}
        assert len(user_ids) <= 1

    async def test_bootstrap_with_wrong_password_still_fails(self, make_service, audit, session_factory):
        with pytest.raises(AuthenticationFailed):
            await make_service().login({"email": ADMIN_EMAIL, "password": "a-guess"}, CLIENT)

        # The account exists (with the configured password) but the guess is refused
        assert await _count_admins(session_factory) == 1
        assert audit.outcomes == ["invalid_password"]

    async def test_self_heal_then_old_password_fails(self, make_service, audit, session_factory):
        await create_account(
            session_factory,
            ADMIN_EMAIL,
            PasswordHasher.hash("stale-password"),
            role=UserRole.ADMINISTRATOR,
            hashed=True,
        )

        healed = await make_service().login({"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}, CLIENT)
        assert healed.outcome == LoginOutcome.ADMIN_SELF_HEALED

        following = await make_service().login({"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}, CLIENT)
        assert following.outcome == LoginOutcome.SUCCESS

        with pytest.raises(AuthenticationFailed):
            await make_service().login({"email": ADMIN_EMAIL, "password": "stale-password"}, CLIENT)

        assert audit.outcomes == ["admin_self_healed", "success", "invalid_password"]

    async def test_non_admin_email_never_provisioned(self, make_service, audit, session_factory, test_user):
        with pytest.raises(AuthenticationFailed):
            await make_service().login({"email": "new@airline.com", "password": ADMIN_PASSWORD}, CLIENT)

        assert await _count_admins(session_factory) == 0
        assert audit.outcomes == ["user_not_found"]

    async def test_no_self_heal_without_configured_password(self, make_service, audit, session_factory, settings):
        settings.admin_password = ""
        stale = PasswordHasher.hash("stale-password")
        await create_account(session_factory, ADMIN_EMAIL, stale, role=UserRole.ADMINISTRATOR, hashed=True)

        with pytest.raises(AuthenticationFailed):
            await make_service().login({"email": ADMIN_EMAIL, "password": "any-guess"}, CLIENT)

        assert audit.outcomes == ["invalid_password"]
        assert await stored_credential(session_factory, ADMIN_EMAIL) == stale
