"""
Bearer token verification.

Tokens are issued by the identity provider; this service only checks the
signature and expiry and reads the user id from the "sub" claim.
"""
from typing import Optional
import jwt
from fastapi import HTTPException, status

from access_engine.core import config
from access_engine.utils import get_logger


log = get_logger(__name__)


def verify_jwt_token(token: str, secret: Optional[str] = None, algorithm: Optional[str] = None) -> dict:
    """
    Verify a JWT and return its payload.

    Raises:
        HTTPException: 401 if the token is invalid or expired, 503 if no secret is configured
    """
    secret = secret or config.JWT_SECRET
    if not secret:
        log.error("JWT_SECRET is not configured; rejecting bearer token")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication is not configured",
        )

    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[algorithm or config.JWT_ALGORITHM],
            options={"require": ["sub"], "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )


def create_access_token(user_id: str, secret: Optional[str] = None, **claims) -> str:
    """Sign a token for user_id; used by scripts and tests."""
    payload = {"sub": str(user_id), **claims}
    return jwt.encode(payload, secret or config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
