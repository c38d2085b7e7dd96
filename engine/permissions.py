"""Role lookup collaborator.

Authentication and user management live outside the engine; the engine
only asks which role an actor holds before privileged billing transitions.
"""
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

from .results import Result, ErrorCode

OWNER = "owner"
ADMIN = "admin"
SALES = "vanzator"
RECEPTION = "receptie"

INVOICE_ROLES = frozenset({OWNER, ADMIN, SALES})
CANCEL_INVOICE_ROLES = frozenset({OWNER, ADMIN})
ARCHIVE_ROLES = frozenset({OWNER, ADMIN, RECEPTION})


class RoleProvider(ABC):
    @abstractmethod
    def get_role(self, actor_id: Optional[str]) -> Optional[str]:
        pass


class StaticRoleProvider(RoleProvider):
    """Roles from a fixed mapping (``settings.actor_roles``)."""

    def __init__(self, roles: Optional[Dict[str, str]] = None) -> None:
        self.roles = {actor: role.lower() for actor, role in (roles or {}).items()}

    def get_role(self, actor_id: Optional[str]) -> Optional[str]:
        if actor_id is None:
            return None
        return self.roles.get(actor_id)


def require_role(provider: RoleProvider, actor_id: Optional[str],
                 allowed: Iterable[str], action: str) -> Result[str]:
    """Check that ``actor_id`` holds one of ``allowed``.

    Returns:
        Result with the role, or UNAUTHORIZED.
    """
    role = provider.get_role(actor_id)
    if role is None or role not in allowed:
        return Result.failure(
            ErrorCode.UNAUTHORIZED,
            f"Actor '{actor_id}' is not allowed to {action}",
        )
    return Result.success(role)
