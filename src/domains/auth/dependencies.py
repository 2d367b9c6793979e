# src/domains/auth/dependencies.py
import jwt
from fastapi import Header, HTTPException, status

from src.core.settings import settings
from src.shared.exceptions import InvalidTokenError

from .types import JwtPayload


def decode_jwt(token: str) -> JwtPayload:
    """
    Verifies a bearer token signed with JWT_SECRET (HS256).

    Authentication itself is handled by the auth service; this API only
    checks the signature and reads the user id.
    """
    if not settings.JWT_SECRET:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="JWT_SECRET not configured",
        )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
        return JwtPayload(**dict(payload))
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


def get_current_user_id(authorization: str = Header(None)) -> str:
    """
    Extracts and validates the JWT from the Authorization header.
    Returns the user's id (from the `sub` claim).
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise InvalidTokenError()

    token = authorization.split(" ", 1)[1]
    payload = decode_jwt(token)
    if not payload.sub:
        raise InvalidTokenError()
    return payload.sub
