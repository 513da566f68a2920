from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


CSRF_HEADER = "X-CSRF-Token"
CSRF_SCOPE = "ledger-api"
TOKEN_MAX_AGE = 2 * 3600


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="ledger-csrf")


def generate_csrf_token() -> str:
    # the serializer stamps the issue time; expiry is checked on load
    return _serializer().dumps({"scope": CSRF_SCOPE})


def validate_csrf_token(token: str, max_age: int = TOKEN_MAX_AGE) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadSignature:
        return False
    return isinstance(data, dict) and data.get("scope") == CSRF_SCOPE
