from sqlmodel import Session, select

from errors import ForbiddenError, NotFoundError
from models import Donor, Receiver, Role
from schemas import Caller


def ensure_role(caller: Caller, role: Role) -> None:
    if caller.role != role:
        raise ForbiddenError(f"Access denied. {role.value.capitalize()} role required")


def donor_for(session: Session, caller: Caller) -> Donor:
    """Resolve the caller's donor profile, checking the role first."""
    ensure_role(caller, Role.DONOR)
    donor = session.exec(select(Donor).where(Donor.user_id == caller.id)).first()
    if donor is None:
        raise NotFoundError("Donor profile not found")
    return donor


def receiver_for(session: Session, caller: Caller) -> Receiver:
    """Resolve the caller's receiver profile, checking the role first."""
    ensure_role(caller, Role.RECEIVER)
    receiver = session.exec(
        select(Receiver).where(Receiver.user_id == caller.id)
    ).first()
    if receiver is None:
        raise NotFoundError("Receiver profile not found")
    return receiver
