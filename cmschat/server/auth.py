"""
Bearer token handling.

Tokens are HS256 JWTs issued by the dashboard's login endpoint. The user id
is carried in the ``id`` claim; roles travel along but are not used by the
messaging core.
"""

import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import jwt

from .errors import AuthError, ForbiddenError
from ..utils.logger import setup_logger

logger = setup_logger('cmschat.auth')

ALGORITHM = "HS256"


@dataclass
class Principal:
    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    roles: List[str] = field(default_factory=list)


def issue_token(secret: str, user_id: str, ttl_seconds: int = 7 * 24 * 3600, **claims) -> str:
    payload = dict(claims, id=user_id, exp=int(time.time()) + ttl_seconds)
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_token(secret: str, token: str) -> Principal:
    """Verify a token and return its principal.

    Raises:
        AuthError: If the token is invalid, expired or has no ``id`` claim
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.PyJWTError as e:
        logger.warning(f"JWT verify error: {e}")
        raise AuthError("Invalid or expired token") from e
    user_id = payload.get("id")
    if not user_id:
        raise AuthError("Invalid or expired token")
    return Principal(
        id=str(user_id),
        email=payload.get("email"),
        username=payload.get("username"),
        roles=list(payload.get("roles") or []),
    )


def bearer_token(metadata: Optional[Sequence[Tuple[str, str]]]) -> Optional[str]:
    """Extract the token from ``authorization: Bearer <token>`` call metadata."""
    for key, value in metadata or ():
        if key.lower() == "authorization" and isinstance(value, str) and value.startswith("Bearer "):
            return value.split(" ", 1)[1].strip() or None
    return None


def require_principal(secret: str, metadata) -> Principal:
    """Resolve the caller of a request/response call.

    Raises:
        ForbiddenError: If no bearer token was sent
        AuthError: If the token does not verify
    """
    token = bearer_token(metadata)
    if token is None:
        raise ForbiddenError("Access denied. No token provided.")
    return decode_token(secret, token)


def optional_principal(secret: str, metadata) -> Optional[Principal]:
    """Resolve the caller of a stream, falling back to anonymous.

    A missing or bad token does not reject the stream; it only means the
    connection gets no identity-bound features.
    """
    token = bearer_token(metadata)
    if token is None:
        return None
    try:
        return decode_token(secret, token)
    except AuthError:
        logger.info("Stream token rejected, continuing as anonymous")
        return None
