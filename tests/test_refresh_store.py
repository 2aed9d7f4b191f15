"""
tests/test_refresh_store.py -- Unit tests for RefreshTokenStore and UserStore.

Each test gets its own named shared-memory database (memory_url fixture).
Time is injected through the store's clock so expiry is tested without sleeping.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.errors import AuthErrorKind, StoreUnavailable
from auth.models import User
from auth.store import RefreshTokenStore, UserStore, _connect_args, build_engine


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def store(memory_url: str, clock: _Clock):
    s = RefreshTokenStore(memory_url, refresh_ttl=timedelta(days=7), clock=clock)
    yield s
    s.close()


class TestCreateAndFind:
    def test_create_returns_persisted_record(self, store: RefreshTokenStore, clock: _Clock) -> None:
        record = store.create_refresh_token(42)
        assert record.id is not None
        assert record.user_id == "42"
        assert len(record.token) == 64
        assert record.is_revoked is False
        assert record.expires_at == clock.now + timedelta(days=7)

        found = store.find_valid_token(record.token)
        assert found is not None
        assert found.id == record.id
        assert found.expires_at == record.expires_at

    def test_unknown_or_empty_token(self, store: RefreshTokenStore) -> None:
        assert store.find_valid_token("does-not-exist") is None
        assert store.find_valid_token("") is None

    def test_collision_is_retried_with_a_fresh_value(self, memory_url: str) -> None:
        values = iter(["dup", "dup", "fresh"])
        s = RefreshTokenStore(memory_url, token_factory=lambda: next(values))
        try:
            assert s.create_refresh_token("1").token == "dup"
            assert s.create_refresh_token("2").token == "fresh"
        finally:
            s.close()

    def test_persistent_collision_gives_up(self, memory_url: str) -> None:
        s = RefreshTokenStore(memory_url, token_factory=lambda: "same")
        try:
            s.create_refresh_token("1")
            with pytest.raises(StoreUnavailable):
                s.create_refresh_token("2")
        finally:
            s.close()


class TestRevocation:
    def test_revoke_is_idempotent(self, store: RefreshTokenStore) -> None:
        record = store.create_refresh_token("1")
        assert store.revoke_token(record.token) is True
        assert store.find_valid_token(record.token) is None
        assert store.revoke_token(record.token) is False
        assert store.revoke_token("never-issued") is False

    def test_revoked_row_is_kept(self, store: RefreshTokenStore) -> None:
        record = store.create_refresh_token("1")
        store.revoke_token(record.token)
        kept = store.get_token(record.token)
        assert kept is not None
        assert kept.is_revoked is True

    def test_revoke_all_only_touches_one_user(self, store: RefreshTokenStore) -> None:
        mine = [store.create_refresh_token("1") for _ in range(3)]
        theirs = store.create_refresh_token("2")
        store.revoke_token(mine[0].token)

        assert store.revoke_all_for_user("1") == 2
        assert all(store.find_valid_token(r.token) is None for r in mine)
        assert store.find_valid_token(theirs.token) is not None
        assert store.revoke_all_for_user("1") == 0

    def test_list_for_user(self, store: RefreshTokenStore) -> None:
        a = store.create_refresh_token("1")
        b = store.create_refresh_token("1")
        store.revoke_token(a.token)
        assert [r.id for r in store.list_for_user("1")] == [b.id]
        assert {r.id for r in store.list_for_user("1", include_inactive=True)} == {a.id, b.id}


class TestExpiry:
    def test_expired_is_invalid_before_purge(self, store: RefreshTokenStore, clock: _Clock) -> None:
        record = store.create_refresh_token("1")
        clock.now += timedelta(days=7)
        assert store.find_valid_token(record.token) is None
        assert store.get_token(record.token) is not None

    def test_purge_removes_only_expired(self, store: RefreshTokenStore, clock: _Clock) -> None:
        old = store.create_refresh_token("1")
        store.revoke_token(old.token)
        clock.now += timedelta(days=3)
        young = store.create_refresh_token("1")
        clock.now += timedelta(days=5)

        assert store.purge_expired() == 1
        assert store.get_token(old.token) is None
        assert store.find_valid_token(young.token) is not None
        assert store.purge_expired() == 0


class TestRotation:
    def test_rotate_revokes_old_and_issues_new(self, store: RefreshTokenStore) -> None:
        old = store.create_refresh_token("7")
        new = store.rotate(old.token)
        assert new is not None
        assert new.user_id == "7"
        assert new.token != old.token
        assert store.find_valid_token(old.token) is None
        assert store.find_valid_token(new.token) is not None

    def test_second_rotation_of_same_token_loses(self, store: RefreshTokenStore) -> None:
        old = store.create_refresh_token("7")
        assert store.rotate(old.token) is not None
        assert store.rotate(old.token) is None
        assert len(store.list_for_user("7")) == 1

    def test_rotate_rejects_unknown_and_expired(self, store: RefreshTokenStore, clock: _Clock) -> None:
        assert store.rotate("unknown") is None
        record = store.create_refresh_token("7")
        clock.now += timedelta(days=8)
        assert store.rotate(record.token) is None


class TestConcurrentCallers:
    """Real threads against a file-backed database: one caller wins each race."""

    THREADS = 8

    @pytest.fixture
    def file_store(self, tmp_path):
        s = RefreshTokenStore(f"sqlite:///{tmp_path / 'tokens.db'}", refresh_ttl=timedelta(days=7))
        yield s
        s.close()

    def _race(self, fn, count: int) -> tuple[list, list]:
        barrier = threading.Barrier(count)
        results: list = []
        errors: list = []
        lock = threading.Lock()

        def worker(i: int) -> None:
            barrier.wait()
            try:
                value = fn(i)
            except Exception as exc:  # collected and asserted below
                with lock:
                    errors.append(exc)
            else:
                with lock:
                    results.append(value)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        return results, errors

    def test_concurrent_rotation_has_exactly_one_winner(self, file_store: RefreshTokenStore) -> None:
        old = file_store.create_refresh_token("7")

        results, errors = self._race(lambda _: file_store.rotate(old.token), self.THREADS)

        assert errors == []
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert results.count(None) == self.THREADS - 1
        assert file_store.find_valid_token(old.token) is None
        assert file_store.find_valid_token(winners[0].token) is not None
        assert [r.token for r in file_store.list_for_user("7")] == [winners[0].token]

    def test_concurrent_revocation_flips_once(self, file_store: RefreshTokenStore) -> None:
        record = file_store.create_refresh_token("7")

        results, errors = self._race(lambda _: file_store.revoke_token(record.token), self.THREADS)

        assert errors == []
        assert results.count(True) == 1
        assert results.count(False) == self.THREADS - 1
        assert file_store.get_token(record.token).is_revoked is True

    def test_revocation_racing_lookups(self, file_store: RefreshTokenStore) -> None:
        record = file_store.create_refresh_token("7")

        def call(i: int):
            if i == 0:
                return ("revoke", file_store.revoke_token(record.token))
            return ("find", file_store.find_valid_token(record.token))

        results, errors = self._race(call, self.THREADS)

        assert errors == []
        assert ("revoke", True) in results
        for op, value in results:
            if op == "find":
                assert value is None or value.token == record.token
        assert file_store.find_valid_token(record.token) is None


class TestStoreFailures:
    def test_unreachable_database_is_store_unavailable(self) -> None:
        with pytest.raises(StoreUnavailable) as exc_info:
            RefreshTokenStore("sqlite:////nonexistent-dir/for/tokengate/auth.db")
        assert exc_info.value.kind is AuthErrorKind.STORE_UNAVAILABLE
        assert exc_info.value.status_code == 503

    def test_failure_after_startup_is_store_unavailable(self, memory_url: str) -> None:
        engine = build_engine(memory_url)
        s = RefreshTokenStore(engine=engine)
        with engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE refresh_tokens")
        with pytest.raises(StoreUnavailable):
            s.find_valid_token("anything")
        with pytest.raises(StoreUnavailable):
            s.create_refresh_token("1")
        assert s.ping() is True
        engine.dispose()


class TestUserStore:
    @pytest.fixture
    def users(self, memory_url: str):
        s = UserStore(memory_url)
        yield s
        s.close()

    def test_create_and_lookup(self, users: UserStore) -> None:
        uid = users.create_user(User(username="tech", email="Tech@Example.com", role="technician"))
        assert users.get_by_id(uid).username == "tech"
        assert users.get_by_id(str(uid)).id == uid
        assert users.get_by_id("not-a-number") is None
        assert users.get_by_email("TECH@example.com").id == uid
        assert users.get_by_username("tech").email == "tech@example.com"

    def test_duplicate_email_rejected(self, users: UserStore) -> None:
        users.create_user(User(username="a", email="same@example.com", role="technician"))
        with pytest.raises(IntegrityError):
            users.create_user(User(username="b", email="same@example.com", role="technician"))

    def test_lockout_after_max_attempts(self, users: UserStore) -> None:
        uid = users.create_user(User(username="a", email="a@example.com", role="admin"))
        for expected in range(1, 3):
            assert users.record_failed_login(uid, max_attempts=3, lockout=timedelta(minutes=15)) == expected
            assert not users.is_locked(users.get_by_id(uid))
        users.record_failed_login(uid, max_attempts=3, lockout=timedelta(minutes=15))
        assert users.is_locked(users.get_by_id(uid))

        users.record_successful_login(uid)
        user = users.get_by_id(uid)
        assert not users.is_locked(user)
        assert user.failed_login_attempts == 0
        assert user.last_login is not None

    def test_set_active(self, users: UserStore) -> None:
        uid = users.create_user(User(username="a", email="a@example.com", role="admin"))
        assert users.set_active(uid, False)
        assert users.get_by_id(uid).is_active is False
        assert not users.set_active(999, False)


class TestEngineTimeouts:
    def test_sqlite_gets_busy_timeout(self) -> None:
        assert _connect_args("sqlite:///auth.db", 2.5) == {"check_same_thread": False, "timeout": 2.5}

    def test_postgres_gets_connect_and_statement_timeouts(self) -> None:
        args = _connect_args("postgresql+psycopg2://u@db/auth", 2.5)
        assert args == {"connect_timeout": 3, "options": "-c statement_timeout=2500"}

    def test_other_backends_get_no_driver_arguments(self) -> None:
        assert _connect_args("mysql+pymysql://u@db/auth", 5.0) == {}
