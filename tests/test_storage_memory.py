"""Unit tests for the in-memory store."""

import gc
import os
from datetime import timedelta

import pytest

from kleroteria.storage.errors import ConstraintViolation, StoreError
from kleroteria.storage.memory import MemoryStore
from kleroteria.storage.models import Session, TokenPurpose, TokenStatus, utcnow


def _make_user(store, email="ada@example.com", phone="+15550001"):
    return store.create_user(
        first_name="Ada",
        last_name="Lovelace",
        email=email,
        phone=phone,
        password_hash="hash",
    )


def _issue(store, user_id, code, *, now=None, reuse_active=True):
    now = now or utcnow()
    return store.issue_verification_token(
        user_id,
        TokenPurpose.EMAIL,
        code_factory=lambda: code,
        expires_at=now + timedelta(minutes=10),
        now=now,
        reuse_active=reuse_active,
    )


class TestUsers:
    def test_email_is_normalized(self):
        store = MemoryStore()
        user = _make_user(store, email="  Ada@Example.COM ")

        assert user.email == "ada@example.com"
        assert store.get_user_by_email("ADA@example.com").id == user.id

    def test_duplicate_email_is_rejected(self):
        store = MemoryStore()
        _make_user(store)

        with pytest.raises(ConstraintViolation) as excinfo:
            _make_user(store, phone="+15550002")
        assert excinfo.value.detail["field"] == "email"

    def test_duplicate_phone_is_rejected(self):
        store = MemoryStore()
        _make_user(store)

        with pytest.raises(ConstraintViolation) as excinfo:
            _make_user(store, email="other@example.com")
        assert excinfo.value.detail["field"] == "phone"

    def test_set_user_verified(self):
        store = MemoryStore()
        user = _make_user(store)

        updated = store.set_user_verified(user.id, "email_verified", True)

        assert updated.email_verified is True
        assert updated.phone_verified is False
        assert store.get_user(user.id).email_verified is True

    def test_set_user_verified_rejects_unknown_field(self):
        store = MemoryStore()
        user = _make_user(store)

        with pytest.raises(ValueError):
            store.set_user_verified(user.id, "role", True)

    def test_returned_users_are_copies(self):
        store = MemoryStore()
        user = _make_user(store)
        user.email_verified = True

        assert store.get_user(user.id).email_verified is False

    def test_delete_user_cascades(self):
        store = MemoryStore()
        user = _make_user(store)
        session = store.insert_session(Session.new(user.id, timedelta(hours=1)))
        _issue(store, user.id, "ABC123")

        assert store.delete_user(user.id) is True
        assert store.get_user(user.id) is None
        assert store.get_session_by_token(session.token) is None
        assert store.list_verification_tokens(user.id, TokenPurpose.EMAIL) == []
        assert store.delete_user(user.id) is False


class TestSessions:
    def test_session_requires_existing_user(self):
        store = MemoryStore()

        with pytest.raises(ConstraintViolation):
            store.insert_session(Session.new("missing", timedelta(hours=1)))

    def test_delete_session_by_token(self):
        store = MemoryStore()
        user = _make_user(store)
        session = store.insert_session(Session.new(user.id, timedelta(hours=1)))

        assert store.delete_session_by_token(session.token) is True
        assert store.delete_session_by_token(session.token) is False

    def test_list_user_sessions_newest_first(self):
        store = MemoryStore()
        user = _make_user(store)
        now = utcnow()
        older = store.insert_session(
            Session.new(user.id, timedelta(hours=1), now=now - timedelta(minutes=5))
        )
        newer = store.insert_session(Session.new(user.id, timedelta(hours=1), now=now))

        assert [s.id for s in store.list_user_sessions(user.id)] == [newer.id, older.id]


class TestTokens:
    def test_issue_reports_creation(self):
        store = MemoryStore()
        user = _make_user(store)

        first, created = _issue(store, user.id, "ABC123")
        again, created_again = _issue(store, user.id, "XYZ789")

        assert created is True
        assert created_again is False
        assert again.id == first.id

    def test_consume_expires_every_pending_token(self):
        store = MemoryStore()
        user = _make_user(store)
        now = utcnow()
        token, _ = _issue(store, user.id, "ABC123", now=now)

        consumed = store.consume_verification_token(
            user.id, TokenPurpose.EMAIL, "abc123", now
        )

        assert consumed.id == token.id
        assert consumed.status == TokenStatus.EXPIRED
        assert store.get_active_verification_token(user.id, TokenPurpose.EMAIL, now) is None

    def test_consume_unknown_code_returns_none(self):
        store = MemoryStore()
        user = _make_user(store)
        _issue(store, user.id, "ABC123")

        assert (
            store.consume_verification_token(user.id, TokenPurpose.EMAIL, "ZZZZZZ", utcnow())
            is None
        )

    def test_issue_for_missing_user_fails(self):
        store = MemoryStore()

        with pytest.raises(ConstraintViolation):
            _issue(store, "missing", "ABC123")


class TestPersistence:
    """Tests for the JSON snapshot under state_dir."""

    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(state_dir=str(tmp_path))
        user = _make_user(store)
        session = store.insert_session(Session.new(user.id, timedelta(hours=1)))
        token, _ = _issue(store, user.id, "ABC123")
        store.set_user_verified(user.id, "phone_verified", True)

        reloaded = MemoryStore(state_dir=str(tmp_path))

        loaded_user = reloaded.get_user(user.id)
        assert loaded_user.email == user.email
        assert loaded_user.password_hash == "hash"
        assert loaded_user.phone_verified is True
        assert reloaded.get_session_by_token(session.token).expires_at == session.expires_at
        loaded_token = reloaded.list_verification_tokens(user.id, TokenPurpose.EMAIL)[0]
        assert loaded_token.id == token.id
        assert loaded_token.status == TokenStatus.PENDING

    def test_reloaded_codes_stay_unique(self, tmp_path):
        store = MemoryStore(state_dir=str(tmp_path))
        user = _make_user(store)
        _issue(store, user.id, "ABC123")

        reloaded = MemoryStore(state_dir=str(tmp_path))
        other = _make_user(reloaded, email="grace@example.com", phone="+15550002")

        with pytest.raises(StoreError):
            _issue(reloaded, other.id, "ABC123")

    def test_corrupt_snapshot_raises_store_error(self, tmp_path):
        (tmp_path / "auth_store.json").write_text("{not json")

        with pytest.raises(StoreError):
            MemoryStore(state_dir=str(tmp_path))

    def test_failed_snapshot_undoes_user_insert(self, tmp_path, monkeypatch):
        store = MemoryStore(state_dir=str(tmp_path))

        def _fail(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", _fail)

        with pytest.raises(StoreError):
            _make_user(store)
        assert store.get_user_by_email("ada@example.com") is None
        assert list(tmp_path.iterdir()) == []

        monkeypatch.undo()
        assert _make_user(store).email == "ada@example.com"

    def test_failed_snapshot_undoes_consume(self, tmp_path, monkeypatch):
        store = MemoryStore(state_dir=str(tmp_path))
        user = _make_user(store)
        now = utcnow()
        _issue(store, user.id, "ABC123", now=now)

        def _fail(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", _fail)

        with pytest.raises(StoreError):
            store.consume_verification_token(user.id, TokenPurpose.EMAIL, "ABC123", now)
        token = store.list_verification_tokens(user.id, TokenPurpose.EMAIL)[0]
        assert token.status == TokenStatus.PENDING

        monkeypatch.undo()
        consumed = store.consume_verification_token(
            user.id, TokenPurpose.EMAIL, "ABC123", now
        )
        assert consumed is not None


class TestIssuanceLocks:
    def test_locks_are_released_after_use(self):
        store = MemoryStore()
        user = _make_user(store)
        now = utcnow()
        _issue(store, user.id, "ABC123", now=now)
        store.consume_verification_token(user.id, TokenPurpose.EMAIL, "ABC123", now)
        gc.collect()

        assert len(store._issuance_locks) == 0
