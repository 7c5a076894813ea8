"""
Caller identity as supplied by the upstream authentication proxy.
Credentials and sessions are handled upstream; this service only reads
the resulting identity to scope remote queries.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, status


class UserRole:
    ADMIN = "admin"
    CLINICIAN = "clinician"


@dataclass(frozen=True)
class AuthenticatedUser:
    uid: str
    organization: str
    role: str = UserRole.CLINICIAN


LOCAL_USER = AuthenticatedUser(uid="local", organization="local")


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_organization: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> AuthenticatedUser:
    if not x_user_id or not x_organization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authenticated user headers",
        )
    return AuthenticatedUser(
        uid=x_user_id,
        organization=x_organization,
        role=x_user_role or UserRole.CLINICIAN,
    )
