from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CurrentUser(BaseModel):
    """
    Authenticated caller as seen by request handlers.

    This is also the payload of the entitlement cache entry, so it only carries
    what the authentication path needs: identity plus effective plan and quotas.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    external_id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    plan: str = "free"
    project_ideas_left: int = 0
    collaboration_requests_left: int = 0
    plan_expiry_date: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
