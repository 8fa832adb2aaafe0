"""Tests for the in-process session store.

Covers expiry boundaries, idempotent revocation, sweeping and concurrent
access from many threads.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from authguard.service.errors import (
    EntropySourceUnavailableError,
    InvalidOrExpiredSessionError,
)
from authguard.service.sessions import SessionStore


@pytest.fixture
def store(clock):
    return SessionStore(clock=clock)


class TestSessionLifecycle:
    def test_create_then_validate_returns_user(self, store):
        session_id = store.create_session("u1", timedelta(minutes=30))

        assert store.validate_session(session_id) == "u1"

    def test_session_expires_after_duration(self, store, clock):
        """Valid just before expiry, rejected at and after it."""
        session_id = store.create_session("u1", timedelta(minutes=30))

        clock.advance(timedelta(minutes=30) - timedelta(microseconds=1))
        assert store.validate_session(session_id) == "u1"

        clock.advance(timedelta(microseconds=1))
        with pytest.raises(InvalidOrExpiredSessionError):
            store.validate_session(session_id)

    def test_thirty_minute_session_rejected_after_thirty_one(self, store, clock):
        session_id = store.create_session("u1", timedelta(minutes=30))
        assert store.validate_session(session_id) == "u1"

        clock.advance(timedelta(minutes=31))

        with pytest.raises(InvalidOrExpiredSessionError):
            store.validate_session(session_id)

    def test_expired_session_removed_on_read(self, store, clock):
        session_id = store.create_session("u1", timedelta(seconds=5))
        clock.advance(10)

        with pytest.raises(InvalidOrExpiredSessionError):
            store.validate_session(session_id)
        assert len(store) == 0

    def test_validate_does_not_extend_expiry(self, store, clock):
        session_id = store.create_session("u1", timedelta(minutes=10))
        for _ in range(9):
            clock.advance(timedelta(minutes=1))
            store.validate_session(session_id)

        clock.advance(timedelta(minutes=1))
        with pytest.raises(InvalidOrExpiredSessionError):
            store.validate_session(session_id)

    def test_unknown_session_rejected(self, store):
        with pytest.raises(InvalidOrExpiredSessionError) as excinfo:
            store.validate_session("does-not-exist")
        assert excinfo.value.status_code == 401

    @pytest.mark.parametrize("duration", [timedelta(0), timedelta(seconds=-1)])
    def test_non_positive_duration_rejected(self, store, duration):
        with pytest.raises(ValueError):
            store.create_session("u1", duration)

    def test_ids_are_unique_and_url_safe(self, store):
        ids = {store.create_session("u1", timedelta(minutes=1)) for _ in range(200)}

        assert len(ids) == 200
        allowed = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")
        for session_id in ids:
            assert len(session_id) >= 22  # 128 bits in base64
            assert set(session_id) <= allowed


class TestEndSession:
    def test_end_session_is_idempotent(self, store):
        session_id = store.create_session("u1", timedelta(minutes=5))

        store.end_session(session_id)
        store.end_session(session_id)
        store.end_session("never-existed")

        with pytest.raises(InvalidOrExpiredSessionError):
            store.validate_session(session_id)

    def test_end_user_sessions_only_touches_that_user(self, store):
        a1 = store.create_session("alice", timedelta(minutes=5))
        a2 = store.create_session("alice", timedelta(minutes=5))
        b1 = store.create_session("bob", timedelta(minutes=5))

        assert store.end_user_sessions("alice") == 2

        for sid in (a1, a2):
            with pytest.raises(InvalidOrExpiredSessionError):
                store.validate_session(sid)
        assert store.validate_session(b1) == "bob"


class TestRenewSession:
    def test_renew_extends_from_now(self, store, clock):
        session_id = store.create_session("u1", timedelta(minutes=5))
        clock.advance(timedelta(minutes=4))

        renewed = store.renew_session(session_id, timedelta(minutes=5))

        assert renewed.expires_at == clock.now() + timedelta(minutes=5)
        clock.advance(timedelta(minutes=4))
        assert store.validate_session(session_id) == "u1"

    def test_renew_expired_session_fails(self, store, clock):
        session_id = store.create_session("u1", timedelta(minutes=5))
        clock.advance(timedelta(minutes=6))

        with pytest.raises(InvalidOrExpiredSessionError):
            store.renew_session(session_id, timedelta(minutes=5))


class TestSweep:
    def test_sweep_purges_only_expired(self, store, clock):
        short = [store.create_session(f"u{i}", timedelta(seconds=30)) for i in range(10)]
        keep = store.create_session("keeper", timedelta(hours=1))
        clock.advance(60)

        assert store.sweep() == 10
        assert len(store) == 1
        assert store.validate_session(keep) == "keeper"
        for sid in short:
            with pytest.raises(InvalidOrExpiredSessionError):
                store.validate_session(sid)

    def test_sweep_accepts_explicit_time(self, store, clock):
        store.create_session("u1", timedelta(seconds=30))

        assert store.sweep(clock.now()) == 0
        assert store.sweep(clock.now() + timedelta(seconds=30)) == 1


class TestEntropyFailure:
    def test_random_source_failure_is_fatal(self, clock):
        def broken(nbytes):
            raise OSError("no entropy")

        store = SessionStore(clock=clock, token_source=broken)

        with pytest.raises(EntropySourceUnavailableError) as excinfo:
            store.create_session("u1", timedelta(minutes=1))
        assert isinstance(excinfo.value.__cause__, OSError)
        assert len(store) == 0

    def test_colliding_ids_are_regenerated(self, clock):
        ids = iter(["dup", "dup", "fresh"])
        store = SessionStore(clock=clock, token_source=lambda n: next(ids))

        assert store.create_session("u1", timedelta(minutes=1)) == "dup"
        assert store.create_session("u2", timedelta(minutes=1)) == "fresh"


class TestSessionStoreThreadSafety:
    def test_concurrent_create_validate_end(self, store):
        errors = []

        def worker(n):
            try:
                for i in range(50):
                    sid = store.create_session(f"user-{n}", timedelta(minutes=5))
                    assert store.validate_session(sid) == f"user-{n}"
                    if i % 2:
                        store.end_session(sid)
            except Exception as exc:  # pragma: no cover - surfaced via the list
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store) == 8 * 25

    def test_concurrent_sweep_and_validate(self, store, clock):
        ids = [store.create_session("u", timedelta(seconds=10)) for _ in range(100)]
        clock.advance(20)

        def validate(sid):
            try:
                store.validate_session(sid)
                return "ok"
            except InvalidOrExpiredSessionError:
                return "expired"

        with ThreadPoolExecutor(max_workers=8) as pool:
            sweep_future = pool.submit(store.sweep)
            results = list(pool.map(validate, ids))
            sweep_future.result()

        assert set(results) == {"expired"}
        assert len(store) == 0
