from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


class InvalidTokenError(ValueError):
    pass


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="access-token")


def generate_access_token(user_id: str, email: Optional[str] = None) -> str:
    return _serializer().dumps({"sub": user_id, "email": email})


def resolve_user_id(token: str, max_age_hours: Optional[int] = None) -> str:
    """Return the owner named by a signed access token."""
    if max_age_hours is None:
        max_age_hours = get_settings().token_max_age_hours
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature as exc:
        raise InvalidTokenError("Invalid token") from exc

    user_id = data.get("sub") if isinstance(data, dict) else None
    if not user_id:
        raise InvalidTokenError("Token does not name a user")
    return str(user_id)


def user_id_from_header(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise InvalidTokenError("Missing or invalid authorization header")
    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise InvalidTokenError("Missing token")
    return resolve_user_id(token)
