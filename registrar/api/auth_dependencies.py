"""
Identity dependencies for FastAPI routes.

Authentication happens upstream: the auth middleware verifies the caller and
forwards the guardian id and role in the X-Guardian-Id / X-Guardian-Role
headers. These dependencies only read that verified identity.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from registrar.utils.constants import GUARDIAN_ROLES, ROLE_ADMIN, ROLE_USER


async def get_current_identity(
    x_guardian_id: Optional[str] = Header(None),
    x_guardian_role: Optional[str] = Header(None),
) -> dict:
    """
    Dependency to get the verified caller identity.

    Returns:
        Dict with guardian_id (int), role (str) and is_admin (bool)

    Raises:
        HTTPException: 401 if no identity was forwarded
    """
    if not x_guardian_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    try:
        guardian_id = int(x_guardian_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid identity",
        )

    role = (x_guardian_role or ROLE_USER).lower()
    if role not in GUARDIAN_ROLES:
        role = ROLE_USER

    return {"guardian_id": guardian_id, "role": role, "is_admin": role == ROLE_ADMIN}


async def require_admin(identity: dict = Depends(get_current_identity)) -> dict:
    """Dependency that only lets admins through."""
    if not identity["is_admin"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return identity


def ensure_guardian_access(identity: dict, guardian_id: int) -> None:
    """Guardians may only read their own records; admins may read any."""
    if not identity["is_admin"] and identity["guardian_id"] != guardian_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only access your own records",
        )
