from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from horizonauth.logging import get_logger
from horizonauth.storage.common import (
    SecretCipher,
    ensure_aware,
    new_id,
    normalize_email,
)
from horizonauth.storage.errors import ConstraintViolation
from horizonauth.storage.models import (
    AuthorizationCode,
    BackupCode,
    Device,
    OAuthClient,
    PushToken,
    RefreshTokenRecord,
    SocialAccount,
    TwoFactorAuth,
    User,
)

_SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_REQUIRED_TABLES = (
    "app_user",
    "device",
    "refresh_token",
    "two_factor_auth",
    "backup_code",
    "social_account",
    "oauth_client",
    "authorization_code",
    "push_token",
)


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row.get("password_hash"),
        roles=list(row.get("roles") or ["user"]),
        tenant_id=row["tenant_id"],
        full_name=row.get("full_name"),
        is_active=bool(row.get("is_active", True)),
        deactivation_reason=row.get("deactivation_reason"),
        email_verified=bool(row.get("email_verified", False)),
        email_verify_token=row.get("email_verify_token"),
        reset_token_hash=row.get("reset_token_hash"),
        reset_token_expires_at=ensure_aware(row.get("reset_token_expires_at")),
        created_at=ensure_aware(row["created_at"]),
        updated_at=ensure_aware(row.get("updated_at")),
    )


def _refresh_from_row(row: dict) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=str(row["id"]),
        hashed_token=row["hashed_token"],
        jti=row["jti"],
        user_id=str(row["user_id"]),
        expires_at=ensure_aware(row["expires_at"]),
        device_id=row.get("device_id"),
        parent_token_id=row.get("parent_token_id"),
        revoked=bool(row["revoked"]),
        created_at=ensure_aware(row["created_at"]),
    )


def _device_from_row(row: dict) -> Device:
    return Device(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        fingerprint=row["fingerprint"],
        name=row.get("name"),
        os=row.get("os"),
        browser=row.get("browser"),
        device_type=row.get("device_type") or "desktop",
        last_active=ensure_aware(row["last_active"]),
        created_at=ensure_aware(row["created_at"]),
    )


def _social_from_row(row: dict) -> SocialAccount:
    return SocialAccount(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        provider=row["provider"],
        provider_id=row["provider_id"],
        email=row.get("email"),
        name=row.get("name"),
        avatar=row.get("avatar"),
        profile_data=row.get("profile_data"),
        created_at=ensure_aware(row["created_at"]),
        updated_at=ensure_aware(row.get("updated_at")),
    )


def _push_from_row(row: dict) -> PushToken:
    return PushToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        device_id=str(row["device_id"]),
        token=row["token"],
        token_type=row["token_type"],
        active=bool(row["active"]),
        created_at=ensure_aware(row["created_at"]),
        updated_at=ensure_aware(row.get("updated_at")),
    )


class PostgresStore:
    """Credential store backed by Postgres through a psycopg connection pool."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Apply ``schema.sql``; every statement is idempotent."""

        with self._connect() as conn:
            conn.execute(_SCHEMA_PATH.read_text())

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = current_schema()"
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [name for name in _REQUIRED_TABLES if name not in present]
        if missing:
            self.logger.error("postgres_schema_missing_tables", tables=missing)
            raise RuntimeError(f"missing required tables: {', '.join(missing)}")

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        tenant_id: str,
        roles: Optional[List[str]] = None,
        full_name: Optional[str] = None,
        email_verify_token: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, roles, tenant_id, full_name, email_verify_token, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        normalize_email(email),
                        password_hash,
                        list(roles or ["user"]),
                        tenant_id,
                        full_name,
                        email_verify_token,
                        email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {where} = %s", (value,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", normalize_email(email))

    def get_user_by_verify_token(self, token: str) -> Optional[User]:
        return self._fetch_user("email_verify_token", token)

    def get_user_by_reset_token_hash(self, token_hash: str) -> Optional[User]:
        return self._fetch_user("reset_token_hash", token_hash)

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(
            user_id,
            "password_hash = %s, reset_token_hash = NULL, reset_token_expires_at = NULL",
            (password_hash,),
        )

    def set_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "reset_token_hash = %s, reset_token_expires_at = %s",
            (token_hash, expires_at),
        )

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(
            user_id, "email_verified = TRUE, email_verify_token = NULL", ()
        )

    def set_user_active(
        self, user_id: str, active: bool, reason: Optional[str] = None
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "is_active = %s, deactivation_reason = %s",
            (active, None if active else reason),
        )

    def delete_user(self, user_id: str) -> bool:
        # Owned rows go with the user through ON DELETE CASCADE
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # refresh tokens
    def create_refresh_token(
        self,
        *,
        hashed_token: str,
        jti: str,
        user_id: str,
        expires_at: datetime,
        device_id: Optional[str] = None,
        parent_token_id: Optional[str] = None,
    ) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                row = self._insert_refresh_token(
                    conn,
                    hashed_token=hashed_token,
                    jti=jti,
                    user_id=user_id,
                    expires_at=expires_at,
                    device_id=device_id,
                    parent_token_id=parent_token_id,
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already stored", {"field": "hashed_token"}
            )
        return _refresh_from_row(row)

    @staticmethod
    def _insert_refresh_token(conn, **values: Any) -> dict:
        return conn.execute(
            """
            INSERT INTO refresh_token (id, hashed_token, jti, user_id, device_id, parent_token_id, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                new_id(),
                values["hashed_token"],
                values["jti"],
                values["user_id"],
                values["device_id"],
                values["parent_token_id"],
                values["expires_at"],
            ),
        ).fetchone()

    def get_refresh_token_by_hash(
        self, hashed_token: str
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE hashed_token = %s", (hashed_token,)
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        old_token_id: str,
        *,
        hashed_token: str,
        jti: str,
        expires_at: datetime,
    ) -> Optional[RefreshTokenRecord]:
        """Revoke ``old_token_id`` and insert its child in one transaction.

        The revoke is conditional on ``NOT revoked``; a concurrent rotation of
        the same record sees zero affected rows and gets ``None``.
        """
        with self._connect() as conn, conn.transaction():
            old = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE
                WHERE id = %s AND NOT revoked
                RETURNING id, user_id, device_id
                """,
                (old_token_id,),
            ).fetchone()
            if not old:
                return None
            row = self._insert_refresh_token(
                conn,
                hashed_token=hashed_token,
                jti=jti,
                user_id=old["user_id"],
                expires_at=expires_at,
                device_id=old["device_id"],
                parent_token_id=old["id"],
            )
        return _refresh_from_row(row)

    def _revoke_where(self, column: str, value: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"UPDATE refresh_token SET revoked = TRUE WHERE {column} = %s AND NOT revoked RETURNING *",
                (value,),
            ).fetchall()
        return [_refresh_from_row(row) for row in rows]

    def revoke_user_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        return self._revoke_where("user_id", user_id)

    def revoke_device_refresh_tokens(self, device_id: str) -> List[RefreshTokenRecord]:
        return self._revoke_where("device_id", device_id)

    # devices
    def upsert_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        name: Optional[str],
        os: Optional[str],
        browser: Optional[str],
        device_type: str,
        now: datetime,
    ) -> Device:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO device (id, user_id, fingerprint, name, os, browser, device_type, last_active, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, fingerprint) DO UPDATE
                SET last_active = EXCLUDED.last_active,
                    name = COALESCE(EXCLUDED.name, device.name)
                RETURNING *
                """,
                (new_id(), user_id, fingerprint, name, os, browser, device_type, now, now),
            ).fetchone()
        return _device_from_row(row)

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM device WHERE id = %s", (device_id,)).fetchone()
        return _device_from_row(row) if row else None

    def get_device_by_fingerprint(
        self, user_id: str, fingerprint: str
    ) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device WHERE user_id = %s AND fingerprint = %s",
                (user_id, fingerprint),
            ).fetchone()
        return _device_from_row(row) if row else None

    def touch_device(self, device_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE device SET last_active = %s WHERE id = %s", (now, device_id)
            )

    def list_active_devices(self, user_id: str, now: datetime) -> List[Device]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT d.* FROM device d
                WHERE d.user_id = %s AND EXISTS (
                    SELECT 1 FROM refresh_token r
                    WHERE r.device_id = d.id AND NOT r.revoked AND r.expires_at > %s
                )
                ORDER BY d.last_active DESC
                """,
                (user_id, now),
            ).fetchall()
        return [_device_from_row(row) for row in rows]

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorAuth]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_auth WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return TwoFactorAuth(
            user_id=str(row["user_id"]),
            secret=self._cipher.decrypt(row["secret"]),
            enabled=bool(row["enabled"]),
            enabled_at=ensure_aware(row.get("enabled_at")),
            created_at=ensure_aware(row["created_at"]),
        )

    def save_two_factor_secret(self, user_id: str, secret: str) -> TwoFactorAuth:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO two_factor_auth (user_id, secret, enabled, created_at)
                    VALUES (%s, %s, FALSE, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret, enabled = FALSE, enabled_at = NULL
                    RETURNING created_at
                    """,
                    (user_id, self._cipher.encrypt(secret)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return TwoFactorAuth(
            user_id=user_id,
            secret=secret,
            enabled=False,
            created_at=ensure_aware(row["created_at"]),
        )

    @staticmethod
    def _insert_backup_codes(conn, user_id: str, code_hashes: Sequence[str]) -> None:
        conn.execute("DELETE FROM backup_code WHERE user_id = %s", (user_id,))
        with conn.cursor() as cur:
            cur.executemany(
                "INSERT INTO backup_code (id, user_id, code_hash) VALUES (%s, %s, %s)",
                [(new_id(), user_id, code_hash) for code_hash in code_hashes],
            )

    def enable_two_factor(
        self, user_id: str, code_hashes: Sequence[str], now: datetime
    ) -> bool:
        with self._connect() as conn, conn.transaction():
            result = conn.execute(
                "UPDATE two_factor_auth SET enabled = TRUE, enabled_at = %s"
                " WHERE user_id = %s AND NOT enabled",
                (now, user_id),
            )
            if result.rowcount == 0:
                return False
            self._insert_backup_codes(conn, user_id, code_hashes)
        return True

    def disable_two_factor(self, user_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM backup_code WHERE user_id = %s", (user_id,))
            result = conn.execute(
                "DELETE FROM two_factor_auth WHERE user_id = %s", (user_id,)
            )
            return result.rowcount > 0

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None:
        with self._connect() as conn, conn.transaction():
            self._insert_backup_codes(conn, user_id, code_hashes)

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM backup_code WHERE user_id = %s AND NOT used ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            BackupCode(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                code_hash=row["code_hash"],
                used=bool(row["used"]),
                used_at=ensure_aware(row.get("used_at")),
                created_at=ensure_aware(row["created_at"]),
            )
            for row in rows
        ]

    def consume_backup_code(self, code_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE backup_code SET used = TRUE, used_at = %s WHERE id = %s AND NOT used",
                (now, code_id),
            )
            return result.rowcount == 1

    # social accounts
    def get_social_account(
        self, provider: str, provider_id: str
    ) -> Optional[SocialAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM social_account WHERE provider = %s AND provider_id = %s",
                (provider, provider_id),
            ).fetchone()
        return _social_from_row(row) if row else None

    def create_social_account(
        self,
        user_id: str,
        provider: str,
        provider_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        profile_data: Optional[dict] = None,
    ) -> SocialAccount:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO social_account (id, user_id, provider, provider_id, email, name, avatar, profile_data)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        user_id,
                        provider,
                        provider_id,
                        email,
                        name,
                        avatar,
                        json.dumps(profile_data) if profile_data else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "social account already linked",
                {"provider": provider, "field": "provider_id"},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("social account user missing", {"user_id": user_id})
        return _social_from_row(row)

    def update_social_account(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        profile_data: Optional[dict] = None,
    ) -> Optional[SocialAccount]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE social_account
                SET email = %s, name = %s, avatar = %s, profile_data = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (
                    email,
                    name,
                    avatar,
                    json.dumps(profile_data) if profile_data else None,
                    account_id,
                ),
            ).fetchone()
        return _social_from_row(row) if row else None

    def list_social_accounts(self, user_id: str) -> List[SocialAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM social_account WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_social_from_row(row) for row in rows]

    # oauth
    def upsert_oauth_client(
        self, client_id: str, redirect_uris: Sequence[str], name: Optional[str] = None
    ) -> OAuthClient:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO oauth_client (id, name, redirect_uris) VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET name = EXCLUDED.name, redirect_uris = EXCLUDED.redirect_uris
                """,
                (client_id, name, list(redirect_uris)),
            )
        return OAuthClient(id=client_id, redirect_uris=list(redirect_uris), name=name)

    def get_oauth_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_client WHERE id = %s", (client_id,)
            ).fetchone()
        if not row:
            return None
        return OAuthClient(
            id=row["id"], redirect_uris=list(row["redirect_uris"] or []), name=row.get("name")
        )

    def create_authorization_code(
        self,
        code: str,
        *,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: str,
        expires_at: datetime,
    ) -> AuthorizationCode:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO authorization_code (code, user_id, client_id, redirect_uri, code_challenge, code_challenge_method, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        code,
                        user_id,
                        client_id,
                        redirect_uri,
                        code_challenge,
                        code_challenge_method,
                        expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("authorization code exists", {"field": "code"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("authorization code user missing", {"user_id": user_id})
        return AuthorizationCode(
            code=code,
            user_id=user_id,
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            expires_at=expires_at,
        )

    def get_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM authorization_code WHERE code = %s", (code,)
            ).fetchone()
        if not row:
            return None
        return AuthorizationCode(
            code=row["code"],
            user_id=str(row["user_id"]),
            client_id=row["client_id"],
            redirect_uri=row["redirect_uri"],
            code_challenge=row["code_challenge"],
            code_challenge_method=row["code_challenge_method"],
            expires_at=ensure_aware(row["expires_at"]),
            used_at=ensure_aware(row.get("used_at")),
            created_at=ensure_aware(row["created_at"]),
        )

    def mark_authorization_code_used(self, code: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE authorization_code SET used_at = %s WHERE code = %s AND used_at IS NULL",
                (now, code),
            )
            return result.rowcount == 1

    # push tokens
    def create_push_token(
        self, user_id: str, device_id: str, token: str, token_type: str
    ) -> PushToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO push_token (id, user_id, device_id, token, token_type)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), user_id, device_id, token, token_type),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("push token exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("push token device missing", {"device_id": device_id})
        return _push_from_row(row)

    def get_push_token(self, token_id: str) -> Optional[PushToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM push_token WHERE id = %s", (token_id,)
            ).fetchone()
        return _push_from_row(row) if row else None

    def get_push_token_by_value(self, token: str) -> Optional[PushToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM push_token WHERE token = %s", (token,)
            ).fetchone()
        return _push_from_row(row) if row else None

    def update_push_token(
        self,
        token_id: str,
        *,
        token: Optional[str] = None,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> Optional[PushToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE push_token
                SET token = COALESCE(%s, token),
                    user_id = COALESCE(%s, user_id),
                    device_id = COALESCE(%s, device_id),
                    active = COALESCE(%s, active),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (token, user_id, device_id, active, token_id),
            ).fetchone()
        return _push_from_row(row) if row else None

    def deactivate_device_push_tokens(
        self, device_id: str, token_type: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if token_type:
                result = conn.execute(
                    "UPDATE push_token SET active = FALSE, updated_at = now() WHERE device_id = %s AND token_type = %s AND active",
                    (device_id, token_type),
                )
            else:
                result = conn.execute(
                    "UPDATE push_token SET active = FALSE, updated_at = now() WHERE device_id = %s AND active",
                    (device_id,),
                )
            return result.rowcount

    def list_push_tokens(
        self, user_id: str, *, active_only: bool = False
    ) -> List[PushToken]:
        query = "SELECT * FROM push_token WHERE user_id = %s"
        if active_only:
            query += " AND active"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", (user_id,)).fetchall()
        return [_push_from_row(row) for row in rows]
