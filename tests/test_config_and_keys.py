"""Tests for settings parsing and signing-key resolution."""

import stat
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from horizonauth.config import AuthMode, RateLimitRule, Settings, SameSite
from horizonauth.service.errors import FeatureDisabled
from horizonauth.service.keys import (
    SigningKeys,
    generate_key_pair,
    load_or_create_mfa_key,
    load_signing_keys,
    write_key_pair,
)
from horizonauth.service.tokens import TokenCodec
from horizonauth.storage.models import User


class TestSettings:
    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("JWT_ACCESS_TTL_MINUTES", "5")
        monkeypatch.setenv("OAUTH_CLIENTS", '{"cli": ["http://localhost:8765/cb"]}')
        monkeypatch.setenv("COOKIE_SAME_SITE", "Strict")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 5
        assert settings.oauth_clients == {"cli": ["http://localhost:8765/cb"]}
        assert settings.cookie_same_site is SameSite.STRICT

    def test_invalid_oauth_clients_json(self):
        with pytest.raises(PydanticValidationError):
            Settings(oauth_clients="not json")

    def test_rate_limits(self):
        settings = Settings(rate_limit_login="10/30")

        assert settings.login_rate_limit == RateLimitRule(limit=10, window_seconds=30)
        assert settings.password_reset_rate_limit.window_seconds == 3600
        with pytest.raises(PydanticValidationError):
            Settings(rate_limit_login="ten per minute")
        with pytest.raises(PydanticValidationError):
            Settings(rate_limit_register="0/60")

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(PydanticValidationError):
            Settings(access_token_ttl_minutes=0)

    def test_sso_requires_url_or_public_key(self, rsa_key_pair):
        with pytest.raises(PydanticValidationError):
            Settings(auth_mode="sso")

        assert Settings(auth_mode="SSO", auth_service_url="https://auth.example.com").is_sso_mode
        assert Settings(auth_mode="sso", jwt_public_key=rsa_key_pair[1]).auth_mode is AuthMode.SSO

    def test_escaped_pem_newlines(self, rsa_key_pair):
        escaped = rsa_key_pair[1].replace("\n", "\\n")

        settings = Settings(auth_mode="sso", jwt_public_key=escaped)

        assert settings.jwt_public_key == rsa_key_pair[1]

    def test_cookie_options(self):
        options = Settings(cookie_domain=".example.com").cookie_options()

        assert options["httponly"] is True
        assert options["samesite"] == "lax"
        assert options["max_age"] == 7 * 24 * 60 * 60


class TestSigningKeys:
    def test_generated_pair_is_persisted_and_reused(self, tmp_path):
        settings = Settings(shared_fs_root=str(tmp_path))

        first = load_signing_keys(settings)
        second = load_signing_keys(settings)

        private_file = tmp_path / "keys" / "jwt_private.pem"
        assert first.can_sign
        assert second.private_pem == first.private_pem
        assert stat.S_IMODE(private_file.stat().st_mode) == 0o600

    def test_private_key_from_settings(self, rsa_key_pair, tmp_path):
        private_pem, public_pem = rsa_key_pair
        settings = Settings(jwt_private_key=private_pem, jwt_kid="k2", shared_fs_root=str(tmp_path))

        keys = load_signing_keys(settings)

        assert keys.kid == "k2"
        assert keys.public_pem.strip() == public_pem.strip()
        assert not (tmp_path / "keys").exists()

    def test_sso_keeps_only_public_half(self, rsa_key_pair):
        settings = Settings(
            auth_mode="sso", jwt_private_key=rsa_key_pair[0], jwt_public_key=rsa_key_pair[1]
        )

        keys = load_signing_keys(settings)

        assert keys.can_sign is False

    def test_sso_with_url_defers_to_remote_jwks(self):
        settings = Settings(auth_mode="sso", auth_service_url="https://auth.example.com")

        assert load_signing_keys(settings) is None

    def test_public_key_alone_in_full_mode_is_an_error(self, rsa_key_pair):
        with pytest.raises(RuntimeError):
            load_signing_keys(Settings(jwt_public_key=rsa_key_pair[1]))

    def test_write_key_pair(self, tmp_path):
        private_pem, public_pem = generate_key_pair()

        private_path, public_path = write_key_pair(
            tmp_path, private_pem, public_pem, private_name="private.pem", public_name="public.pem"
        )

        assert private_path.read_text() == private_pem
        assert public_path.read_text() == public_pem
        assert stat.S_IMODE(public_path.stat().st_mode) == 0o600

    def test_mfa_key_persisted(self, tmp_path):
        settings = Settings(shared_fs_root=str(tmp_path))

        key = load_or_create_mfa_key(settings)

        assert len(key) >= 32
        assert load_or_create_mfa_key(settings) == key
        assert load_or_create_mfa_key(Settings(mfa_secret_key="explicit")) == "explicit"


class TestVerifyOnlyCodec:
    def test_public_key_codec_verifies_but_cannot_sign(self, rsa_key_pair, codec):
        verifier = TokenCodec(
            SigningKeys(public_pem=rsa_key_pair[1], kid="test-key-1"),
            issuer="horizon-auth",
            audience="horizon-api",
        )
        user = User(id="u1", email="a@example.com", tenant_id="default")
        now = datetime.now(timezone.utc)
        pair = codec.issue_pair(user, now=now)

        assert verifier.verify_access_token(pair.access_token, now=now).user_id == "u1"
        assert verifier.jwks()["keys"][0]["kid"] == "test-key-1"
        with pytest.raises(FeatureDisabled):
            verifier.issue_pair(user)

    def test_codec_needs_some_key_source(self):
        with pytest.raises(ValueError):
            TokenCodec(None, issuer="i", audience="a")
