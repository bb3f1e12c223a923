import threading
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from horizonauth.storage.common import utcnow
from horizonauth.storage.errors import ConstraintViolation
from horizonauth.storage.memory import MemoryStore
from horizonauth.storage.postgres import PostgresStore, _refresh_from_row, _user_from_row


def _token(store, user_id, name, **kwargs):
    return store.create_refresh_token(
        hashed_token=f"hash-{name}",
        jti=f"jti-{name}",
        user_id=user_id,
        expires_at=utcnow() + timedelta(days=1),
        **kwargs,
    )


@pytest.fixture
def user(store):
    return store.create_user(" Mixed@Example.COM ", "hash", tenant_id="default")


def test_email_is_normalized_and_unique(store, user):
    assert user.email == "mixed@example.com"
    assert store.get_user_by_email("MIXED@example.com").id == user.id
    with pytest.raises(ConstraintViolation):
        store.create_user("mixed@example.com", "other", tenant_id="default")


def test_rotation_is_single_use(store, user):
    parent = _token(store, user.id, "a")

    child = store.rotate_refresh_token(
        parent.id, hashed_token="hash-b", jti="jti-b", expires_at=parent.expires_at
    )
    again = store.rotate_refresh_token(
        parent.id, hashed_token="hash-c", jti="jti-c", expires_at=parent.expires_at
    )

    assert child.parent_token_id == parent.id
    assert again is None
    assert store.get_refresh_token_by_hash("hash-c") is None


def test_concurrent_rotation_has_one_winner(store, user):
    parent = _token(store, user.id, "root")
    results = []
    barrier = threading.Barrier(8)

    def rotate(i):
        barrier.wait()
        results.append(
            store.rotate_refresh_token(
                parent.id, hashed_token=f"hash-{i}", jti=f"jti-{i}", expires_at=parent.expires_at
            )
        )

    threads = [threading.Thread(target=rotate, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len([r for r in results if r is not None]) == 1


def test_revoke_user_tokens_returns_snapshots(store, user):
    live = _token(store, user.id, "live")
    _token(store, user.id, "dead")
    store.revoke_user_refresh_tokens(user.id)
    _token(store, user.id, "fresh")

    revoked = store.revoke_user_refresh_tokens(user.id)

    assert [r.jti for r in revoked] == ["jti-fresh"]
    assert store.get_refresh_token_by_hash(live.hashed_token).revoked is True


def test_authorization_code_used_once(store, user):
    store.create_authorization_code(
        "code-1",
        user_id=user.id,
        client_id="web",
        redirect_uri="https://app/cb",
        code_challenge="c",
        code_challenge_method="plain",
        expires_at=utcnow() + timedelta(minutes=5),
    )
    now = utcnow()

    assert store.mark_authorization_code_used("code-1", now) is True
    assert store.mark_authorization_code_used("code-1", now) is False
    assert store.get_authorization_code("code-1").used_at == now


def test_delete_user_cascades(store, user):
    other = store.create_user("other@example.com", "hash", tenant_id="default")
    device = store.upsert_device(
        user.id, "fp", name=None, os=None, browser=None, device_type="desktop", now=utcnow()
    )
    _token(store, user.id, "mine", device_id=device.id)
    _token(store, other.id, "theirs")
    store.create_social_account(user.id, "google", "g-1")
    store.save_two_factor_secret(user.id, "JBSWY3DPEHPK3PXP")

    assert store.delete_user(user.id) is True

    assert store.get_user(user.id) is None
    assert store.get_device(device.id) is None
    assert store.get_social_account("google", "g-1") is None
    assert store.get_two_factor(user.id) is None
    assert store.get_refresh_token_by_hash("hash-mine") is None
    assert store.get_refresh_token_by_hash("hash-theirs") is not None
    assert store.delete_user(user.id) is False


def test_two_factor_secret_needs_matching_key(store, user):
    store.save_two_factor_secret(user.id, "JBSWY3DPEHPK3PXP")
    other = MemoryStore(mfa_encryption_key="different-key")
    other.users = store.users
    other.two_factor = store.two_factor

    with pytest.raises(RuntimeError):
        other.get_two_factor(user.id)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FailingConnection:
    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def execute(self, *args, **kwargs):
        raise errors.UniqueViolation("duplicate key value violates unique constraint")


def _bare_postgres_store():
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    return store


def test_postgres_row_mappers_treat_naive_timestamps_as_utc():
    naive = datetime(2030, 1, 1, 12, 0, 0)
    user = _user_from_row(
        {
            "id": "u1",
            "email": "a@example.com",
            "tenant_id": "default",
            "roles": None,
            "created_at": naive,
        }
    )
    record = _refresh_from_row(
        {
            "id": "r1",
            "hashed_token": "h",
            "jti": "j",
            "user_id": "u1",
            "expires_at": naive,
            "revoked": 0,
            "created_at": naive,
        }
    )

    assert user.roles == ["user"]
    assert user.is_active is True
    assert user.created_at.tzinfo is timezone.utc
    assert record.expires_at == naive.replace(tzinfo=timezone.utc)
    assert record.revoked is False


def test_postgres_unique_violation_maps_to_constraint(monkeypatch):
    store = _bare_postgres_store()
    monkeypatch.setattr(store, "_connect", lambda: FailingConnection())

    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com", "hash", tenant_id="default")
