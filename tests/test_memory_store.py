from datetime import timedelta

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import utcnow

KEY = "memory-store-test-key"


def _password_user(store, email="alice@x.com", username="alice"):
    return store.create_user(email, username, password_hash="hash", password_algo="argon2id")


def test_create_user_requires_a_credential(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    with pytest.raises(ValueError):
        store.create_user("alice@x.com", "alice")


@pytest.mark.parametrize(
    "email,username,provider,subject,field",
    [
        ("ALICE@x.com", "other", None, None, "email"),
        ("other@x.com", "ALICE", None, None, "username"),
        ("other@x.com", "other", "google", "g-1", "oauth_subject"),
    ],
)
def test_unique_constraints(tmp_path, email, username, provider, subject, field):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    store.create_user(
        "alice@x.com", "alice", password_hash="hash", password_algo="argon2id",
        oauth_provider="google", oauth_subject="g-1",
    )
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user(
            email, username,
            password_hash="hash" if not subject else None,
            password_algo="argon2id" if not subject else None,
            oauth_provider=provider, oauth_subject=subject,
        )
    assert exc_info.value.field == field


def test_two_factor_requires_secret_when_enabled(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    user = _password_user(store)
    with pytest.raises(ValueError):
        store.set_two_factor(user.id, None, True)
    assert store.set_two_factor("missing", "ABC", False) is None


def test_state_survives_restart_with_secret_encrypted(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    user = _password_user(store)
    store.set_two_factor(user.id, "JBSWY3DPEHPK3PXP", True)
    sess = store.create_session(user.id, user_agent="ua")

    snapshot = (tmp_path / "state" / "memory_store.json").read_text()
    assert "JBSWY3DPEHPK3PXP" not in snapshot

    reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    restored = reloaded.get_user(user.id)
    assert restored.two_factor_enabled
    assert restored.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert [s.token for s in reloaded.list_user_sessions(user.id)] == [sess.token]


def test_rotated_key_drops_secret(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    user = _password_user(store)
    store.set_two_factor(user.id, "JBSWY3DPEHPK3PXP", False)

    reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="a-different-key")
    assert reloaded.get_user(user.id).two_factor_secret is None


def test_consume_session_returns_row_once(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    user = _password_user(store)
    sess = store.create_session(user.id)

    assert store.consume_session(sess.token).token == sess.token
    assert store.consume_session(sess.token) is None
    assert store.delete_session(sess.token) is False


def test_session_for_unknown_user_rejected(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    with pytest.raises(ConstraintViolation):
        store.create_session("ghost")


def test_delete_user_cascades_sessions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    user = _password_user(store)
    store.create_session(user.id)
    store.create_session(user.id)

    assert store.delete_user(user.id)
    assert store.sessions == {}
    assert not store.delete_user(user.id)


def test_list_user_sessions_filters_expired(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY, persist=False)
    user = _password_user(store)
    live = store.create_session(user.id)
    dead = store.create_session(user.id)
    store.sessions[dead.token].expires_at = utcnow() - timedelta(minutes=1)

    assert [s.token for s in store.list_user_sessions(user.id)] == [live.token]
    assert not (tmp_path / "state").exists()


def test_update_password(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    user = _password_user(store)
    assert store.update_password(user.id, "new-hash", "argon2id")
    assert store.get_user(user.id).password_hash == "new-hash"
    assert not store.update_password("missing", "new-hash", "argon2id")
