from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status

from marketplace.errors import Unauthorized


class Role(str, Enum):
    ADMIN = "ADMIN"
    CLIENT = "CLIENT"
    SUPPLIER = "SUPPLIER"


@dataclass
class Principal:
    id: int
    username: str
    role: Role
    active: bool = True


def get_current_principal(request: Request) -> Principal:
    principal: Principal | None = getattr(request.state, "principal", None)
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    if not principal.active:
        raise Unauthorized("Inactive users cannot perform this action")
    return principal


def require_role(*allowed: Role):
    """Route dependency running the same capability check the services run."""

    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        return require_actor_role(principal, *allowed)

    return _dep


def require_actor_role(actor: Principal | None, *allowed: Role) -> Principal:
    """Capability check run before any transition or store validation."""
    required = tuple(role.value for role in allowed)
    if actor is None:
        raise Unauthorized("Authentication required", required)
    if not actor.active:
        raise Unauthorized("Inactive users cannot perform this action", required)
    if actor.role not in allowed:
        names = " or ".join(role.lower() for role in required)
        raise Unauthorized(f"Only {names} users can perform this action", required)
    return actor


def assert_client_scope(actor: Principal, client_id: int) -> None:
    if actor.role != Role.CLIENT:
        return
    if actor.id != client_id:
        raise Unauthorized("You can only act on your own orders", (Role.CLIENT.value,))
