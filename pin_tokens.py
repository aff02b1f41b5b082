from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.pin_secret, salt="pin-confirmation")


def generate_pin_token(user_id: int) -> str:
    serializer = _serializer()
    return serializer.dumps({"u": user_id})


def validate_pin_token(token: str, user_id: int) -> bool:
    if not token:
        return False
    serializer = _serializer()
    max_age = get_settings().pin_token_max_age_secs
    try:
        data = serializer.loads(token, max_age=max_age)
    except BadSignature:
        return False

    return data.get("u") == user_id
