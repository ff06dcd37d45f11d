from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr


class CurrentUser(BaseModel):
    """Lightweight representation of the authenticated user for RBAC checks.
    Built from the access token alone; users and logins live in the auth service.
    """

    id: UUID
    tenant_id: UUID
    role: str
    email: Optional[EmailStr] = None
