from __future__ import annotations

from dataclasses import dataclass, field

from solarcrm.core.rbac import ROLE_ADMIN, ActorUser
from solarcrm.errors import RoleNotPermitted


_MINT_KEY = object()


@dataclass(frozen=True, slots=True)
class AdminCapability:
    """Proof that an admin was granted the override surface for one actor.

    Only ``mint_admin_capability`` (called by ``OverrideAuthority.grant``) can build one; the
    engine refuses to bypass its guards without it.
    """

    actor: ActorUser
    _key: object = field(repr=False, compare=False)

    def __post_init__(self) -> None:
        if self._key is not _MINT_KEY:
            raise RoleNotPermitted("admin capabilities are granted by the override authority only")


def mint_admin_capability(actor: ActorUser) -> AdminCapability:
    if actor.role != ROLE_ADMIN:
        raise RoleNotPermitted(
            "only admins may use timeline overrides",
            details={"required_roles": [ROLE_ADMIN], "actor_role": actor.role},
        )
    return AdminCapability(actor=actor, _key=_MINT_KEY)


def is_valid_capability(capability: object, actor: ActorUser) -> bool:
    return (
        isinstance(capability, AdminCapability)
        and capability._key is _MINT_KEY
        and capability.actor.user_id == actor.user_id
        and capability.actor.role == ROLE_ADMIN
    )


@dataclass(frozen=True, slots=True)
class OverrideContext:
    capability: AdminCapability
    justification: str
    override_action: str
