from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from src.config import settings


def create_admin_token(admin_id: str) -> str:
    """Create a signed JWT for a console admin."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expiration_minutes)
    payload = {
        "sub": admin_id,
        "type": "admin",
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_admin_token(token: str) -> dict | None:
    """Decode and validate an admin JWT. Returns payload or None if invalid."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        if payload.get("type") != "admin":
            return None
        return payload
    except JWTError:
        return None
