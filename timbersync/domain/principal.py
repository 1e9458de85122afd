from __future__ import annotations

from pydantic import BaseModel

from timbersync.services.auth import roles


class Principal(BaseModel):
    # Authenticated identity used for company scoping and access checks.
    id: str
    username: str
    role: str
    company_id: str | None = None
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return roles.is_admin(self.role)
