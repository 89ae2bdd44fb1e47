"""Role-scoped authorization rules for account administration and event logs."""

from __future__ import annotations

from .account import Account, Actor, Role
from .errors import AuthorizationError

ROLE_RANK = {
    Role.user: 0,
    Role.organisation_admin: 1,
    Role.admin: 2,
    Role.superadmin: 3,
}


def can_view_event_log(role: Role, organisation_id: str | None, target: Account) -> bool:
    """Return ``True`` when an actor with ``role`` in ``organisation_id`` may read ``target``'s log."""
    if role is Role.superadmin or role is Role.admin:
        return True
    if role is Role.organisation_admin:
        return organisation_id is not None and target.organisation_id == organisation_id
    return False


def outranks(role: Role, other: Role) -> bool:
    return ROLE_RANK[role] > ROLE_RANK[other]


def authorize_event_log_read(actor: Actor, target: Account) -> None:
    if not can_view_event_log(actor.role, actor.organisation_id, target):
        raise AuthorizationError()


def authorize_account_admin(actor: Actor, target: Account | None = None) -> None:
    """Admin actions follow the event log visibility rules plus role rank.

    Without a ``target`` only the role is checked. With one, the actor must be
    able to see the target's log and the target's role must not outrank the
    actor's, so nobody can act on, or register, an account more powerful than
    their own.
    """
    if actor.role is Role.user:
        raise AuthorizationError()
    if target is not None:
        authorize_event_log_read(actor, target)
        if outranks(target.role, actor.role):
            raise AuthorizationError()
