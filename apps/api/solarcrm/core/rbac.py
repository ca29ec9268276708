from __future__ import annotations

from dataclasses import dataclass

from solarcrm.errors import RoleNotPermitted


ROLE_ADMIN = "admin"
ROLE_OFFICE = "office"
ROLE_AGENT = "agent"
ROLE_INSTALLER = "installer"
ROLE_CUSTOMER = "customer"

# highest privilege first; the first recognised role in a token wins
KNOWN_ROLES = (ROLE_ADMIN, ROLE_OFFICE, ROLE_AGENT, ROLE_INSTALLER, ROLE_CUSTOMER)


@dataclass(frozen=True)
class ActorUser:
    user_id: str
    role: str
    correlation_id: str | None = None


def resolve_primary_role(roles: list[str]) -> str | None:
    normalized = {str(role).strip().lower() for role in roles}
    for role in KNOWN_ROLES:
        if role in normalized:
            return role
    return None


def require_roles(actor: ActorUser, *roles: str) -> None:
    if actor.role not in roles:
        raise RoleNotPermitted(
            f"role '{actor.role}' may not perform this action",
            details={"required_roles": list(roles), "actor_role": actor.role},
        )
