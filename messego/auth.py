import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, ExpiredSignatureError, JWTError
from passlib.context import CryptContext

from .errors import ConfigError, MalformedTokenError, TokenExpiredError

ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
ACCESS_TOKEN_EXPIRE_DAYS = int(os.getenv('ACCESS_TOKEN_EXPIRE_DAYS', '7'))
TOKEN_ISSUER = 'messego-app'
TOKEN_AUDIENCE = 'messego-users'

pwd_ctx = CryptContext(schemes=['bcrypt'], deprecated='auto')


@dataclass(frozen=True)
class Identity:
    user_id: int
    email: str
    name: str


def get_secret() -> str:
    # Prefer JWT_SECRET but support legacy JWT_SECRET_KEY for compatibility
    secret = os.getenv('JWT_SECRET') or os.getenv('JWT_SECRET_KEY')
    if not secret:
        raise ConfigError()
    return secret


def hash_password(password: str) -> str:
    return pwd_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_ctx.verify(password, hashed)


def create_access_token(identity: Identity, expires_delta: Optional[timedelta] = None) -> str:
    secret = get_secret()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta if expires_delta is not None else timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS))
    claims = {
        'userId': identity.user_id,
        'email': identity.email,
        'name': identity.name,
        'iat': now,
        'exp': expire,
        'iss': TOKEN_ISSUER,
        'aud': TOKEN_AUDIENCE,
    }
    return jwt.encode(claims, secret, algorithm=ALGORITHM)


def decode_token(token: str) -> Identity:
    """Verify signature, expiry, issuer and audience and return the identity.

    There is no revocation list: a token stays valid until it expires, even
    after the user logs out.
    """
    secret = get_secret()
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            audience=TOKEN_AUDIENCE,
            issuer=TOKEN_ISSUER,
        )
    except ExpiredSignatureError:
        raise TokenExpiredError()
    except JWTError:
        raise MalformedTokenError()

    try:
        return Identity(user_id=int(payload['userId']), email=payload['email'], name=payload['name'])
    except (KeyError, TypeError, ValueError):
        raise MalformedTokenError()
