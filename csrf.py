from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="csrf-token")


def generate_csrf_token(session_id: str) -> str:
    return _serializer().dumps({"s": session_id})


def validate_csrf_token(token: str, session_id: str, max_age_hours: int = 2) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except (SignatureExpired, BadSignature):
        return False
    return isinstance(data, dict) and data.get("s") == session_id
