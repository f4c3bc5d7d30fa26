from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone
from app.core.config import settings


def create_token(data: dict, expires_delta: timedelta) -> str:
    to_encode = data.copy()
    to_encode['exp'] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(
        to_encode,
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM,
    )


def decode_token(token: str) -> dict:
    """
    Raises JWTError on any problem, expiry included.
    """
    return jwt.decode(
        token,
        settings.SECRET_KEY,
        algorithms=[settings.ALGORITHM]
    )


def create_access_token(user_id: str, minutes: int = 60) -> str:
    return create_token(
        {'sub': str(user_id), 'type': 'access'},
        timedelta(minutes=minutes),
    )


def create_storage_token(path: str, ttl_seconds: int) -> str:
    return create_token(
        {'sub': path, 'type': 'storage'},
        timedelta(seconds=ttl_seconds),
    )


def verify_storage_token(token: str, path: str) -> bool:
    try:
        payload = decode_token(token)
    except JWTError:
        return False
    return payload.get('type') == 'storage' and payload.get('sub') == path
