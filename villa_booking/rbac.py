from .errors import Forbidden
from .security import Actor


def require_role(actor: Actor, allowed_roles: list[str]):
    allowed = {r.lower() for r in allowed_roles}
    if actor.role not in allowed:
        raise Forbidden("Access forbidden for this role")


def resolve_ownership(booking, actor: Actor) -> bool:
    """
    Owner match by user id first, contact email second.
    Shared by every booking and cancel request authorization check.
    """
    if booking.user_id and actor.id and str(booking.user_id) == actor.id:
        return True
    if booking.email and actor.email and booking.email.strip().lower() == actor.email.strip().lower():
        return True
    return False


def require_owner_or_admin(booking, actor: Actor, message: str = "You are not authorized to access this booking"):
    if actor.is_admin or resolve_ownership(booking, actor):
        return
    raise Forbidden(message)
