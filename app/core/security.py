"""
Request identity for the stock sync API.

Sessions are managed by the external identity provider, which forwards the
authenticated user on every request as headers.
"""

from dataclasses import dataclass
from typing import Optional
from fastapi import Depends, Header, HTTPException, status


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
) -> AuthenticatedUser:
    """
    Read the authenticated user from the identity provider headers
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    email = x_user_email.strip().lower() if x_user_email else None
    return AuthenticatedUser(user_id=x_user_id.strip(), email=email or None)


def require_auth():
    """
    Dependency to require an authenticated user
    Usage: app.include_router(router, dependencies=[require_auth()])
    """
    return Depends(get_current_user)
