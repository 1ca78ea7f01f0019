"""
Security Module - Actor identification

Authentication and permission checks happen upstream (gateway). The API only
reads the already-verified actor identity from request headers so it can be
recorded in status history and audit fields.
"""
from dataclasses import dataclass
from typing import Optional
from fastapi import Header, HTTPException, status


SYSTEM_ACTOR = "system"
ADMIN_ROLES = {"admin", "super_admin"}


@dataclass(frozen=True)
class Actor:
    """Identity of whoever is performing an operation."""
    id: str
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() in ADMIN_ROLES


async def get_current_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Actor:
    """Dependency returning the actor forwarded by the gateway."""
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header",
        )
    return Actor(id=x_actor_id, role=x_actor_role)


class RoleChecker:
    """Dependency for endpoints restricted to administrative actors"""

    def __init__(self, allowed_roles=None):
        self.allowed_roles = {r.lower() for r in (allowed_roles or ADMIN_ROLES)}

    def __call__(
        self,
        x_actor_role: Optional[str] = Header(default=None),
    ):
        if (x_actor_role or "").lower() not in self.allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Administrative role required",
            )
