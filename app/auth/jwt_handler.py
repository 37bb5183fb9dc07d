"""
JWT Token Creation and Verification
Bearer access tokens identifying the signed-in user
"""
from jose import jwt, JWTError
from datetime import datetime, timedelta
from fastapi import HTTPException, Header
from typing import Optional
import logging

from config import settings

logger = logging.getLogger(__name__)


def create_access_token(user_id: str) -> str:
    """
    Create JWT access token

    Args:
        user_id: User's MongoDB ObjectId as string

    Returns:
        JWT access token string
    """
    expire = datetime.utcnow() + timedelta(
        minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    )

    payload = {
        "sub": user_id,
        "type": "access",
        "exp": expire,
        "iat": datetime.utcnow()
    }

    return jwt.encode(
        payload,
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM
    )


def verify_token(token: str, token_type: str = "access") -> dict:
    """
    Verify JWT token and return payload

    Expiry is enforced by jose while decoding.

    Args:
        token: JWT token string
        token_type: "access" or "impersonation"

    Returns:
        Token payload dict

    Raises:
        HTTPException: 401 if the token is invalid, expired or of another type
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError as e:
        logger.warning(f"JWT verification failed: {str(e)}")
        raise HTTPException(
            status_code=401,
            detail="Invalid authentication token"
        )

    if payload.get("type") != token_type:
        raise HTTPException(
            status_code=401,
            detail=f"Invalid token type. Expected {token_type}"
        )

    return payload


def _user_id_from_header(authorization: str) -> str:
    parts = authorization.split()
    if len(parts) != 2:
        raise HTTPException(
            status_code=401,
            detail="Invalid authorization header format"
        )

    scheme, token = parts
    if scheme.lower() != "bearer":
        raise HTTPException(
            status_code=401,
            detail="Invalid authentication scheme"
        )

    payload = verify_token(token, token_type="access")
    user_id = payload.get("sub")

    if not user_id:
        raise HTTPException(
            status_code=401,
            detail="Invalid token payload"
        )

    return user_id


async def get_current_user_id(
    authorization: Optional[str] = Header(None)
) -> str:
    """
    FastAPI dependency to extract user ID from JWT token

    Raises:
        HTTPException: 401 if token is missing or invalid
    """
    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="Authorization header missing"
        )

    return _user_id_from_header(authorization)
