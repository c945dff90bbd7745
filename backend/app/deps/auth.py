"""
Auth dependency — shared across all protected endpoints.

Users live in the account service, so this only resolves the caller's id
from the bearer token. Usage in any route:

    from app.deps.auth import get_current_user_id

    @router.get("/protected")
    def protected(user_id: UUID = Depends(get_current_user_id)):
        ...
"""
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from app.core.security import decode_access_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_current_user_id(token: str = Depends(oauth2_scheme)) -> UUID:
    """
    Decode the bearer JWT and return the caller's user id.

    Raises 401 on a missing, invalid or expired token.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    sub = decode_access_token(token)
    if sub is None:
        raise credentials_exception

    try:
        return UUID(sub)
    except (ValueError, AttributeError):
        raise credentials_exception
