import pytest
from pydantic import ValidationError

from authcore.api.schemas import CodeRequest, PasswordChangeRequest, RegisterRequest


def _register(**overrides):
    payload = {"email": "alice@x.com", "password": "P@ssw0rd1", "username": "alice"}
    payload.update(overrides)
    return RegisterRequest(**payload)


def test_register_accepts_valid_payload():
    request = _register(email="Alice@X.com ", username=" alice ")
    assert request.email == "alice@x.com"
    assert request.username == "alice"


@pytest.mark.parametrize(
    "password",
    [
        "P@ssw0rd1\n",
        "P@ssw0rd1 ",
        "P@ssw0rd١",
        "p@ssw0rd1",
        "P@s1",
        "P@ssw0rd1" * 9,
    ],
)
def test_register_rejects_weak_or_padded_password(password):
    with pytest.raises(ValidationError):
        _register(password=password)


def test_new_password_uses_same_rules():
    with pytest.raises(ValidationError):
        PasswordChangeRequest(current_password="x", new_password="N3w!Passw0rd\n")
    assert PasswordChangeRequest(current_password="x", new_password="N3w!Passw0rd").new_password


@pytest.mark.parametrize("code", ["123456\n", "12345", "1234567", "12a456", "١٢٣٤٥٦"])
def test_code_must_be_exactly_six_ascii_digits(code):
    with pytest.raises(ValidationError):
        CodeRequest(code=code)


def test_code_accepted():
    assert CodeRequest(code="012345").code == "012345"


@pytest.mark.parametrize("username", ["alice\nbob", "al", "a" * 31, "ali ce"])
def test_username_rules(username):
    with pytest.raises(ValidationError):
        _register(username=username)


@pytest.mark.parametrize("email", ["alice\n@x.com", "alice@x\n.com"])
def test_email_parts_reject_embedded_newline(email):
    with pytest.raises(ValidationError):
        _register(email=email)
