"""End-to-end tests for registration, login, refresh rotation and resets."""

import asyncio
import re
from dataclasses import replace

import bcrypt
import pyotp
import pytest

from conftest import TEST_PASSWORD
from horizonauth.service.auth import (
    PASSWORD_RESET_MESSAGE,
    AuthResult,
    AuthService,
    TwoFactorRequired,
)
from horizonauth.service.errors import (
    AccountDeactivated,
    BadRequestError,
    ConflictError,
    FeatureDisabled,
    InvalidCredentials,
    InvalidTwoFactorCode,
    TokenInvalidOrExpired,
    TokenReused,
    ValidationError,
)
from horizonauth.service.passwords import PasswordHasher, bcrypt_verify

RESET_LINK = re.compile(r"/reset-password\?token=([A-Za-z0-9_\-]+)")
VERIFY_LINK = re.compile(r"/verify-email\?token=([A-Za-z0-9_\-]+)")


def _record_for(auth, raw_refresh):
    return auth.store.get_refresh_token_by_hash(auth.tokens.hash_token(raw_refresh))


class TestRegistration:
    async def test_register_issues_session_and_hashes_password(self, auth, store):
        result = await auth.register("Alice@Example.com", TEST_PASSWORD, full_name="Alice")

        assert isinstance(result, AuthResult)
        assert result.user.email == "alice@example.com"
        assert result.user.roles == ["user"]
        assert result.user.email_verified is False
        assert result.token_type == "Bearer"
        assert 0 < result.expires_in <= 15 * 60
        stored = store.get_user(result.user.id)
        assert stored.password_hash.startswith("$argon2id$")
        assert not hasattr(result.user, "password_hash")
        assert _record_for(auth, result.refresh_token) is not None

    async def test_register_sends_verification_email(self, auth, outbox):
        await auth.register("alice@example.com", TEST_PASSWORD)

        (to, subject, html), = outbox
        assert to == "alice@example.com"
        assert subject == "Verify Your Email Address"
        assert VERIFY_LINK.search(html)

    async def test_duplicate_email_conflicts(self, auth):
        await auth.register("alice@example.com", TEST_PASSWORD)

        with pytest.raises(ConflictError):
            await auth.register("ALICE@example.com", "another-password")

    async def test_short_password_rejected(self, auth, store):
        with pytest.raises(ValidationError):
            await auth.register("bob@example.com", "short")

        assert store.get_user_by_email("bob@example.com") is None


class TestLogin:
    async def test_login_success(self, auth, device_info):
        await auth.register("alice@example.com", TEST_PASSWORD)

        result = await auth.login("alice@example.com", TEST_PASSWORD, device_info)

        assert isinstance(result, AuthResult)
        assert result.device_id is not None
        claims = await auth.authenticate(result.access_token)
        assert claims.user_id == result.user.id
        assert claims.email == "alice@example.com"

    async def test_wrong_password_and_unknown_email_look_alike(self, auth):
        await auth.register("alice@example.com", TEST_PASSWORD)

        with pytest.raises(InvalidCredentials) as wrong:
            await auth.login("alice@example.com", "wrong-password")
        with pytest.raises(InvalidCredentials) as unknown:
            await auth.login("nobody@example.com", TEST_PASSWORD)

        assert wrong.value.message == unknown.value.message

    async def test_password_less_user_cannot_login(self, auth, store):
        store.create_user("social@example.com", None, tenant_id="default")

        with pytest.raises(InvalidCredentials):
            await auth.login("social@example.com", "")

    async def test_deactivated_user_is_rejected_after_password_check(self, auth, store):
        registered = await auth.register("alice@example.com", TEST_PASSWORD)
        store.set_user_active(registered.user.id, False, "billing")

        with pytest.raises(InvalidCredentials):
            await auth.login("alice@example.com", "wrong-password")
        with pytest.raises(AccountDeactivated):
            await auth.login("alice@example.com", TEST_PASSWORD)

    async def test_legacy_bcrypt_hash_upgraded_on_login(
        self, store, codec, revocation
    ):
        service = AuthService(
            store, codec, revocation, PasswordHasher(legacy_verifier=bcrypt_verify)
        )
        legacy = bcrypt.hashpw(TEST_PASSWORD.encode(), bcrypt.gensalt(rounds=4)).decode()
        user = store.create_user("legacy@example.com", legacy, tenant_id="default")

        await service.login("legacy@example.com", TEST_PASSWORD)

        assert store.get_user(user.id).password_hash.startswith("$argon2id$")
        await service.login("legacy@example.com", TEST_PASSWORD)


class TestRefreshRotation:
    async def test_rotation_and_reuse_detection(self, auth):
        await auth.register("alice@example.com", TEST_PASSWORD)
        first = await auth.login("alice@example.com", TEST_PASSWORD)

        second = await auth.refresh(first.refresh_token)

        assert second.refresh_token != first.refresh_token
        assert _record_for(auth, first.refresh_token).revoked is True
        child = _record_for(auth, second.refresh_token)
        assert child.parent_token_id == _record_for(auth, first.refresh_token).id

        # Replaying the retired token kills the whole family
        with pytest.raises(TokenReused):
            await auth.refresh(first.refresh_token)
        with pytest.raises(TokenReused):
            await auth.refresh(second.refresh_token)
        with pytest.raises(TokenInvalidOrExpired):
            await auth.authenticate(second.access_token)

    async def test_refresh_rejected_at_exact_expiry(self, auth, monkeypatch):
        session = await auth.register("alice@example.com", TEST_PASSWORD)
        record = _record_for(auth, session.refresh_token)

        monkeypatch.setattr(auth, "_now", lambda: record.expires_at)

        with pytest.raises(TokenInvalidOrExpired):
            await auth.refresh(session.refresh_token)
        assert _record_for(auth, session.refresh_token).revoked is False

    async def test_unknown_token_signed_by_us_counts_as_reuse(self, auth, store):
        session = await auth.register("alice@example.com", TEST_PASSWORD)
        user = store.get_user(session.user.id)
        forged = auth.tokens.issue_pair(user)

        with pytest.raises(TokenReused):
            await auth.refresh(forged.refresh_token)
        assert _record_for(auth, session.refresh_token).revoked is True

    async def test_garbage_token(self, auth):
        with pytest.raises(TokenInvalidOrExpired):
            await auth.refresh("not-a-jwt")

    async def test_access_token_is_not_a_refresh_token(self, auth):
        session = await auth.register("alice@example.com", TEST_PASSWORD)

        with pytest.raises(TokenInvalidOrExpired):
            await auth.refresh(session.access_token)

    async def test_blacklisted_live_record_is_not_mass_revoked(self, auth):
        session = await auth.register("alice@example.com", TEST_PASSWORD)
        other = await auth.login("alice@example.com", TEST_PASSWORD)
        record = _record_for(auth, session.refresh_token)
        await auth.revocation.blacklist(record.jti, 60)

        with pytest.raises(TokenInvalidOrExpired):
            await auth.refresh(session.refresh_token)
        assert _record_for(auth, other.refresh_token).revoked is False

    async def test_deactivated_user_cannot_refresh(self, auth, store):
        session = await auth.register("alice@example.com", TEST_PASSWORD)
        store.set_user_active(session.user.id, False)

        with pytest.raises(AccountDeactivated):
            await auth.refresh(session.refresh_token)

    async def test_concurrent_refresh_succeeds_once(self, auth, cache, store, monkeypatch):
        session = await auth.register("alice@example.com", TEST_PASSWORD)
        presented_hash = auth.tokens.hash_token(session.refresh_token)
        unrotated = replace(store.get_refresh_token_by_hash(presented_hash))
        cache_exists = cache.exists
        read_by_hash = store.get_refresh_token_by_hash

        async def exists_after_yield(key):
            await asyncio.sleep(0)
            return await cache_exists(key)

        def read_before_rotation(hashed_token):
            # Both requests load the record before either one rotates it
            if hashed_token == presented_hash:
                return replace(unrotated)
            return read_by_hash(hashed_token)

        monkeypatch.setattr(cache, "exists", exists_after_yield)
        monkeypatch.setattr(store, "get_refresh_token_by_hash", read_before_rotation)

        outcomes = await asyncio.gather(
            auth.refresh(session.refresh_token),
            auth.refresh(session.refresh_token),
            return_exceptions=True,
        )

        winners = [o for o in outcomes if isinstance(o, AuthResult)]
        assert len(winners) == 1
        assert sum(isinstance(o, TokenReused) for o in outcomes) == 1
        # The losing rotation revokes the whole family, winner included
        assert _record_for(auth, winners[0].refresh_token).revoked is True
        assert store.refresh_tokens[unrotated.id].revoked is True


class TestLogout:
    async def test_logout_revokes_everything(self, auth):
        await auth.register("alice@example.com", TEST_PASSWORD)
        a = await auth.login("alice@example.com", TEST_PASSWORD)
        b = await auth.login("alice@example.com", TEST_PASSWORD)

        await auth.logout(a.user.id)

        for session in (a, b):
            assert _record_for(auth, session.refresh_token).revoked is True
            with pytest.raises(TokenInvalidOrExpired):
                await auth.authenticate(session.access_token)

    async def test_revoke_all_counts_live_tokens(self, auth):
        session = await auth.register("alice@example.com", TEST_PASSWORD)
        await auth.login("alice@example.com", TEST_PASSWORD)

        assert await auth.revoke_all_user_tokens(session.user.id) == 2
        assert await auth.revoke_all_user_tokens(session.user.id) == 0


class TestTwoFactorLogin:
    async def _enrolled(self, auth):
        session = await auth.register("alice@example.com", TEST_PASSWORD)
        setup = auth.setup_two_factor(session.user.id)
        codes = auth.confirm_two_factor(session.user.id, pyotp.TOTP(setup.secret).now())
        return session.user.id, setup.secret, codes

    async def test_login_requires_second_factor(self, auth):
        user_id, secret, _ = await self._enrolled(auth)

        challenge = await auth.login("alice@example.com", TEST_PASSWORD)

        assert challenge == TwoFactorRequired(user_id=user_id)
        result = await auth.verify_two_factor_login(user_id, pyotp.TOTP(secret).now())
        assert isinstance(result, AuthResult)

    async def test_backup_code_login(self, auth):
        user_id, _, codes = await self._enrolled(auth)

        result = await auth.verify_two_factor_login(user_id, codes[0])

        assert result.user.id == user_id
        with pytest.raises(InvalidTwoFactorCode):
            await auth.verify_two_factor_login(user_id, codes[0])

    @pytest.mark.parametrize("code", ["12345", "1234567", "ZZZZ-ZZZZ"])
    async def test_bad_codes(self, auth, code):
        user_id, _, _ = await self._enrolled(auth)

        with pytest.raises(InvalidTwoFactorCode):
            await auth.verify_two_factor_login(user_id, code)

    async def test_confirm_with_wrong_code(self, auth):
        session = await auth.register("alice@example.com", TEST_PASSWORD)
        auth.setup_two_factor(session.user.id)

        with pytest.raises(InvalidTwoFactorCode):
            auth.confirm_two_factor(session.user.id, "abcdef")
        assert auth.get_two_factor_status(session.user.id).enabled is False

    async def test_disabled_subsystem(self, bare_auth):
        with pytest.raises(FeatureDisabled):
            bare_auth.setup_two_factor("any")
        with pytest.raises(FeatureDisabled):
            await bare_auth.verify_two_factor_login("any", "123456")
        with pytest.raises(FeatureDisabled):
            bare_auth.list_devices("any")


class TestPasswordReset:
    async def test_unknown_email_gets_generic_message(self, auth, outbox):
        message = await auth.request_password_reset("nobody@example.com")

        assert message == PASSWORD_RESET_MESSAGE
        assert outbox == []

    async def test_reset_flow(self, auth, outbox, store):
        session = await auth.register("alice@example.com", TEST_PASSWORD)
        outbox.clear()

        message = await auth.request_password_reset("alice@example.com")

        assert message == PASSWORD_RESET_MESSAGE
        (to, subject, html), = outbox
        assert subject == "Password Reset Request"
        token = RESET_LINK.search(html).group(1)
        assert store.get_user(session.user.id).reset_token_hash != token

        await auth.reset_password(token, "brand-new-password")

        assert _record_for(auth, session.refresh_token).revoked is True
        with pytest.raises(InvalidCredentials):
            await auth.login("alice@example.com", TEST_PASSWORD)
        await auth.login("alice@example.com", "brand-new-password")

        # Single use
        with pytest.raises(BadRequestError):
            await auth.reset_password(token, "yet-another-password")

    async def test_expired_reset_token(self, auth, outbox, monkeypatch):
        await auth.register("alice@example.com", TEST_PASSWORD)
        await auth.request_password_reset("alice@example.com")
        token = RESET_LINK.search(outbox[-1][2]).group(1)
        expires_at = auth.store.get_user_by_email("alice@example.com").reset_token_expires_at

        monkeypatch.setattr(auth, "_now", lambda: expires_at)

        with pytest.raises(BadRequestError):
            await auth.reset_password(token, "brand-new-password")

    async def test_invalid_reset_token(self, auth):
        with pytest.raises(BadRequestError):
            await auth.reset_password("made-up", "brand-new-password")


class TestEmailVerification:
    async def test_verify_email(self, auth, outbox):
        await auth.register("alice@example.com", TEST_PASSWORD)
        token = VERIFY_LINK.search(outbox[-1][2]).group(1)

        user = await auth.verify_email(token)

        assert user.email_verified is True
        with pytest.raises(BadRequestError):
            await auth.verify_email(token)
