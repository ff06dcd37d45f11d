from datetime import date

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from schoolpay.auth.dependencies import get_current_user
from schoolpay.auth.rbac import PLATFORM_ADMIN_ROLES
from schoolpay.auth.schemas import CurrentUser
from schoolpay.core.models import Tenant
from schoolpay.core.subscription_service import evaluate_access
from schoolpay.db.session import get_db


async def require_active_subscription(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """Dependency: block school routes when the school's trial or subscription has lapsed.
    Platform admins are not tied to a school subscription.
    """
    if current_user.role in PLATFORM_ADMIN_ROLES:
        return current_user
    tenant = await db.get(Tenant, current_user.tenant_id)
    if not tenant:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="School not found")
    access = await evaluate_access(db, tenant, date.today())
    if not access.has_access:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=access.message)
    return current_user
