from fastapi import Depends, HTTPException, status

from schoolpay.auth.dependencies import get_current_user
from schoolpay.auth.schemas import CurrentUser

PLATFORM_ADMIN_ROLES = ("SUPER_ADMIN", "PLATFORM_ADMIN")
SCHOOL_ADMIN_ROLES = ("SUPER_ADMIN", "PLATFORM_ADMIN", "ADMIN")
PARENT_ROLE = "PARENT"


async def require_platform_admin(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """Require PLATFORM_ADMIN or SUPER_ADMIN role. Used for platform-wide config (e.g. subscription plans)."""
    if current_user.role not in PLATFORM_ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only Platform Admin can perform this action",
        )
    return current_user


async def require_school_admin(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """Require a school administrator. Used for billing and manual payment review."""
    if current_user.role not in SCHOOL_ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only school administrators can perform this action",
        )
    return current_user
