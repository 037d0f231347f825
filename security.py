"""
Password hashing and JWT helpers.
"""
import secrets
from datetime import timedelta
from typing import Optional

import jwt
from passlib.context import CryptContext

from config import settings
from database import now_utc
from errors import AuthError

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def generate_token(nbytes: int = 32) -> str:
    """Opaque token for email verification and password reset links."""
    return secrets.token_urlsafe(nbytes)


def create_access_token(user: dict) -> str:
    now = now_utc()
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role"),
        "type": "access",
        "iss": settings.jwt_issuer,
        "iat": now,
        "exp": now + timedelta(minutes=settings.access_token_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_refresh_token(user: dict) -> str:
    now = now_utc()
    payload = {
        "sub": str(user["_id"]),
        "type": "refresh",
        # jti keeps two tokens issued in the same second distinct
        "jti": secrets.token_hex(16),
        "iss": settings.jwt_issuer,
        "iat": now,
        "exp": now + timedelta(days=settings.refresh_token_days),
    }
    return jwt.encode(payload, settings.jwt_refresh_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, refresh: bool = False) -> dict:
    secret = settings.jwt_refresh_secret if refresh else settings.jwt_secret
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.jwt_algorithm], issuer=settings.jwt_issuer)
    except jwt.ExpiredSignatureError:
        raise AuthError.token_expired()
    except jwt.InvalidTokenError:
        raise AuthError.token_invalid()
    if payload.get("type") != ("refresh" if refresh else "access"):
        raise AuthError.token_invalid("Wrong token type")
    return payload
