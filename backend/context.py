"""
Actor context and the tenant/branch scoping guard.

Every core entry point receives an explicit ActorContext built by the
identity provider (see auth.py) and filters every read through
scope_to_actor() / ensure_in_scope(). Owners see their whole tenant, staff
only their own branch.
"""
from dataclasses import dataclass
from typing import Optional

from exceptions import Unauthorized
from models import ActorRole


@dataclass(frozen=True)
class ActorContext:
    tenant_id: int
    actor_id: int
    role: ActorRole
    branch_id: Optional[int] = None

    @property
    def is_owner(self) -> bool:
        return self.role == ActorRole.OWNER

    @property
    def is_staff(self) -> bool:
        return self.role == ActorRole.STAFF


def require_role(actor: ActorContext, *roles: ActorRole) -> None:
    """Raise Unauthorized unless the actor holds one of `roles`."""
    if actor.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise Unauthorized(f"This action requires role: {allowed}")


def scope_to_actor(stmt, model, actor: ActorContext):
    """Add the tenant (and, for staff, branch) predicate to a select/update."""
    stmt = stmt.where(model.tenant_id == actor.tenant_id)
    if actor.is_staff and hasattr(model, "branch_id"):
        stmt = stmt.where(model.branch_id == actor.branch_id)
    return stmt


def ensure_in_scope(entity, actor: ActorContext) -> None:
    """Check a row fetched by primary key against the actor's scope."""
    if entity.tenant_id != actor.tenant_id:
        raise Unauthorized()
    if actor.is_staff and getattr(entity, "branch_id", actor.branch_id) != actor.branch_id:
        raise Unauthorized("Record belongs to another branch")

