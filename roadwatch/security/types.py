from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from roadwatch.core.types import Actor, Category, Role


class AuthContext(BaseModel):
    principal_id: str
    role: Role
    specialization: Optional[Category] = None
    name: str = ""
    auth_method: str = "jwt"

    def to_actor(self) -> Actor:
        return Actor(
            id=self.principal_id,
            role=self.role,
            specialization=self.specialization if self.role is Role.STAFF else None,
            name=self.name,
        )
