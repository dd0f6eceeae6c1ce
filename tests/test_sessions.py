import threading
from datetime import timedelta

import pytest

from authcore.service.errors import InvalidSessionError, SessionExpiredError
from authcore.storage.models import utcnow


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(
        "alice@x.com", "alice", password_hash="hash", password_algo="argon2id"
    )


def test_rotate_issues_new_pair_and_consumes_old(rotator, issuer, user, memory_store):
    first = issuer.issue_session(user.id, user.email, user.username)
    second = rotator.rotate(first.refresh_token)

    assert second.refresh_token != first.refresh_token
    assert issuer.verify_access(second.access_token).sub == user.id
    assert first.refresh_token not in memory_store.sessions
    assert second.refresh_token in memory_store.sessions


def test_rotation_is_single_use(rotator, issuer, user):
    pair = issuer.issue_session(user.id, user.email, user.username)
    rotator.rotate(pair.refresh_token)
    with pytest.raises(InvalidSessionError):
        rotator.rotate(pair.refresh_token)


def test_unknown_token_is_invalid(rotator):
    with pytest.raises(InvalidSessionError):
        rotator.rotate("0" * 128)
    with pytest.raises(InvalidSessionError):
        rotator.rotate("")


def test_expired_token_fails_and_is_deleted(rotator, issuer, user, memory_store):
    pair = issuer.issue_session(user.id, user.email, user.username)
    memory_store.sessions[pair.refresh_token].expires_at = utcnow() - timedelta(seconds=1)

    with pytest.raises(SessionExpiredError):
        rotator.rotate(pair.refresh_token)
    assert pair.refresh_token not in memory_store.sessions
    # once gone, the same token is simply unknown
    with pytest.raises(InvalidSessionError):
        rotator.rotate(pair.refresh_token)


def test_rotation_for_deleted_user_is_invalid(rotator, issuer, user, memory_store):
    pair = issuer.issue_session(user.id, user.email, user.username)
    # drop the user row directly so the session row is orphaned
    memory_store.users.pop(user.id)
    with pytest.raises(InvalidSessionError):
        rotator.rotate(pair.refresh_token)


def test_concurrent_rotation_has_one_winner(rotator, issuer, user):
    pair = issuer.issue_session(user.id, user.email, user.username)
    barrier = threading.Barrier(8)
    wins: list = []
    losses: list = []

    def attempt():
        barrier.wait()
        try:
            wins.append(rotator.rotate(pair.refresh_token))
        except InvalidSessionError as exc:
            losses.append(exc)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert len(losses) == 7


def test_revoke_is_idempotent(rotator, issuer, user, memory_store):
    pair = issuer.issue_session(user.id, user.email, user.username)
    rotator.revoke(pair.refresh_token)
    rotator.revoke(pair.refresh_token)
    assert pair.refresh_token not in memory_store.sessions
    with pytest.raises(InvalidSessionError):
        rotator.rotate(pair.refresh_token)


def test_revoke_all_returns_count(rotator, issuer, user, memory_store):
    other = memory_store.create_user(
        "bob@x.com", "bob", password_hash="hash", password_algo="argon2id"
    )
    for _ in range(3):
        issuer.issue_session(user.id, user.email, user.username)
    kept = issuer.issue_session(other.id, other.email, other.username)

    assert rotator.revoke_all(user.id) == 3
    assert rotator.revoke_all(user.id) == 0
    assert list(memory_store.sessions) == [kept.refresh_token]


def test_list_sessions_skips_expired_and_sorts_newest_first(rotator, issuer, user, memory_store):
    old = issuer.issue_session(user.id, user.email, user.username, user_agent="old")
    new = issuer.issue_session(user.id, user.email, user.username, user_agent="new")
    gone = issuer.issue_session(user.id, user.email, user.username, user_agent="gone")
    memory_store.sessions[old.refresh_token].created_at = utcnow() - timedelta(hours=1)
    memory_store.sessions[gone.refresh_token].expires_at = utcnow() - timedelta(seconds=1)

    listed = rotator.list_sessions(user.id)
    assert [s.token for s in listed] == [new.refresh_token, old.refresh_token]


def test_rotation_keeps_client_metadata(rotator, issuer, user, memory_store):
    pair = issuer.issue_session(
        user.id, user.email, user.username, user_agent="phone", ip_addr="10.1.1.1"
    )
    rotated = rotator.rotate(pair.refresh_token)
    sess = memory_store.sessions[rotated.refresh_token]
    assert sess.user_agent == "phone"
    assert sess.ip_addr == "10.1.1.1"
