"""Unit tests for token issuance and verification."""

import json
import time

import pytest

from authcore.config import Settings
from authcore.service.errors import AuthenticationError
from authcore.service.tokens import TokenIssuer


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(
        "alice@x.com", "alice", password_hash="hash", password_algo="argon2id"
    )


def _payload(issuer: TokenIssuer, token: str) -> dict:
    return json.loads(issuer._decode_segment(token.split(".")[1]))


class TestIssueSession:
    def test_returns_access_and_opaque_refresh(self, issuer, user, memory_store):
        pair = issuer.issue_session(user.id, user.email, user.username)

        assert pair.token_type == "bearer"
        assert pair.expires_in == 15 * 60
        # refresh token is 64 random bytes in hex, not a JWT
        assert len(pair.refresh_token) == 128
        assert "." not in pair.refresh_token
        int(pair.refresh_token, 16)
        sessions = memory_store.list_user_sessions(user.id)
        assert [s.token for s in sessions] == [pair.refresh_token]

    def test_refresh_session_lives_seven_days(self, issuer, user, memory_store):
        pair = issuer.issue_session(user.id, user.email, user.username)
        sess = memory_store.sessions[pair.refresh_token]
        assert (sess.expires_at - sess.created_at).days == 7

    def test_access_claims(self, issuer, user):
        pair = issuer.issue_session(user.id, user.email, user.username)
        payload = _payload(issuer, pair.access_token)

        assert payload["sub"] == user.id
        assert payload["email"] == "alice@x.com"
        assert payload["username"] == "alice"
        assert payload["type"] == "access"
        assert payload["iss"] == "authcore"
        assert payload["exp"] - payload["iat"] == 15 * 60

    def test_records_client_metadata(self, issuer, user, memory_store):
        pair = issuer.issue_session(
            user.id, user.email, user.username, user_agent="pytest", ip_addr="10.0.0.1"
        )
        sess = memory_store.sessions[pair.refresh_token]
        assert sess.user_agent == "pytest"
        assert sess.ip_addr == "10.0.0.1"


class TestVerifyAccess:
    def test_roundtrip(self, issuer, user):
        pair = issuer.issue_session(user.id, user.email, user.username)
        claims = issuer.verify_access(pair.access_token)
        assert claims.sub == user.id
        assert claims.email == user.email
        assert claims.username == user.username

    def test_tampered_signature_rejected(self, issuer, user):
        token = issuer.issue_session(user.id, user.email, user.username).access_token
        head, body, sig = token.split(".")
        forged_sig = ("A" if sig[0] != "A" else "B") + sig[1:]
        with pytest.raises(AuthenticationError):
            issuer.verify_access(f"{head}.{body}.{forged_sig}")

    def test_tampered_payload_rejected(self, issuer, user):
        token = issuer.issue_session(user.id, user.email, user.username).access_token
        head, _, sig = token.split(".")
        payload = _payload(issuer, token)
        payload["sub"] = "someone-else"
        body = issuer._encode_segment(json.dumps(payload).encode())
        with pytest.raises(AuthenticationError):
            issuer.verify_access(f"{head}.{body}.{sig}")

    def test_non_hs256_header_rejected(self, issuer, user):
        token = issuer.issue_session(user.id, user.email, user.username).access_token
        _, body, _ = token.split(".")
        head = issuer._encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        with pytest.raises(AuthenticationError):
            issuer.verify_access(f"{head}.{body}.")
        signed = issuer._sign(f"{head}.{body}")
        with pytest.raises(AuthenticationError):
            issuer.verify_access(f"{head}.{body}.{signed}")

    def test_other_issuer_rejected(self, settings, memory_store, user):
        foreign = TokenIssuer(
            settings.model_copy(update={"jwt_issuer": "someone-else"}), memory_store
        )
        token = foreign.issue_session(user.id, user.email, user.username).access_token
        with pytest.raises(AuthenticationError):
            TokenIssuer(settings, memory_store).verify_access(token)

    def test_other_secret_rejected(self, settings, memory_store, user):
        other = TokenIssuer(
            settings.model_copy(update={"jwt_secret": "x" * 48}), memory_store
        )
        token = other.issue_session(user.id, user.email, user.username).access_token
        with pytest.raises(AuthenticationError):
            TokenIssuer(settings, memory_store).verify_access(token)

    def test_expired_rejected(self, issuer, user):
        now = int(time.time())
        token = issuer._encode_jwt(
            {
                "sub": user.id,
                "email": user.email,
                "username": user.username,
                "type": "access",
                "iss": "authcore",
                "iat": now - 3600,
                "exp": now - 60,
            }
        )
        with pytest.raises(AuthenticationError):
            issuer.verify_access(token)

    def test_missing_claims_rejected(self, issuer, user):
        now = int(time.time())
        token = issuer._encode_jwt(
            {"sub": user.id, "type": "access", "iss": "authcore", "iat": now, "exp": now + 60}
        )
        with pytest.raises(AuthenticationError):
            issuer.verify_access(token)

    @pytest.mark.parametrize(
        "garbage",
        [
            "",
            "abc",
            "a.b",
            "a.b.c.d",
            "!!.??.##",
            "eyJhbGciOiJIUzI1NiJ9.e30.\u00e9",
            "eyJhbGciOiJIUzI1NiJ9.\u00e9.sig",
            "eyJhbGciOiJIUzI1NiJ9.e30.\udce9",
        ],
    )
    def test_garbage_rejected(self, issuer, garbage):
        with pytest.raises(AuthenticationError):
            issuer.verify_access(garbage)

    def test_temp_token_is_not_an_access_token(self, issuer, user):
        with pytest.raises(AuthenticationError):
            issuer.verify_access(issuer.issue_temp(user.id))


class TestTempTokens:
    def test_roundtrip(self, issuer, user):
        token = issuer.issue_temp(user.id)
        assert issuer.verify_temp(token) == user.id
        payload = _payload(issuer, token)
        assert payload["type"] == "temp"
        assert payload["exp"] - payload["iat"] == 10 * 60

    def test_access_token_is_not_a_temp_token(self, issuer, user):
        access = issuer.issue_session(user.id, user.email, user.username).access_token
        with pytest.raises(AuthenticationError):
            issuer.verify_temp(access)

    def test_partial_token_is_not_a_temp_token(self, issuer):
        partial = issuer.issue_partial_federated("g-123", "bob@x.com", "google")
        with pytest.raises(AuthenticationError):
            issuer.verify_temp(partial)


class TestPartialFederatedTokens:
    def test_roundtrip(self, issuer):
        token = issuer.issue_partial_federated("g-123", "bob@x.com", "google")
        identity = issuer.verify_partial_federated(token)
        assert identity.oauth_id == "g-123"
        assert identity.email == "bob@x.com"
        assert identity.provider == "google"
        assert _payload(issuer, token)["type"] == "partial_oauth"

    def test_temp_token_rejected(self, issuer, user):
        with pytest.raises(AuthenticationError):
            issuer.verify_partial_federated(issuer.issue_temp(user.id))


def test_issuer_requires_secret(memory_store):
    settings = Settings(jwt_secret="k" * 40)
    settings.jwt_secret = None
    with pytest.raises(RuntimeError):
        TokenIssuer(settings, memory_store)
