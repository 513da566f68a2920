from itsdangerous import URLSafeTimedSerializer

from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token


def test_issued_token_validates() -> None:
    assert validate_csrf_token(generate_csrf_token())


def test_tampered_or_missing_token_is_rejected() -> None:
    token = generate_csrf_token()

    assert not validate_csrf_token(token[:-2] + ("AA" if token[-2:] != "AA" else "BB"))
    assert not validate_csrf_token("")
    assert not validate_csrf_token("not-a-token")


def test_expired_token_is_rejected() -> None:
    assert not validate_csrf_token(generate_csrf_token(), max_age=-1)


def test_token_signed_for_another_scope_is_rejected() -> None:
    serializer = URLSafeTimedSerializer(get_settings().csrf_secret, salt="ledger-csrf")
    assert not validate_csrf_token(serializer.dumps({"scope": "other"}))
    assert not validate_csrf_token(serializer.dumps([1, 2]))


def test_token_from_another_secret_is_rejected(monkeypatch) -> None:
    token = generate_csrf_token()
    monkeypatch.setenv("LEDGER_CSRF_SECRET", "rotated")
    get_settings.cache_clear()

    assert not validate_csrf_token(token)
