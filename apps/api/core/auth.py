"""
Bearer authentication.

The WHOOP endpoint is multiplexed by `action`, and only some actions need a
caller identity, so authentication is a plain function rather than a route-wide
FastAPI dependency.
"""
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.exceptions import AuthError
from core.security import decode_access_token
from models import User


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token part of an `Authorization: Bearer <token>` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def authenticate_bearer(token: Optional[str], db: Session) -> User:
    """
    Resolve the user behind a bearer token.

    Raises AuthError if the token is missing, invalid, or names an unknown user.
    """
    if not token:
        raise AuthError("Not authenticated")

    payload = decode_access_token(token)
    if not payload:
        raise AuthError("Invalid authentication credentials")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token payload")

    try:
        user_id_uuid = UUID(str(user_id))
    except ValueError:
        raise AuthError("Invalid user ID format")

    user = db.query(User).filter(User.id == user_id_uuid).first()
    if not user:
        raise AuthError("User not found")
    return user
