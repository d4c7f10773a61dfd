import logging
from typing import List, Optional, Union

import pydantic
from sqlalchemy import update
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

import config
from db import unit_of_work
from errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    field_errors,
)
from models import (
    DONATION_TRANSITIONS,
    Donation,
    DonationStatus,
    Donor,
    Receiver,
    Role,
    utcnow,
)
from schemas import Caller, DonationCreate

from .common import donor_for, ensure_role, receiver_for

log = logging.getLogger(__name__)


def _with_parties(stmt):
    return stmt.options(
        selectinload(Donation.donor).selectinload(Donor.user),
        selectinload(Donation.receiver).selectinload(Receiver.user),
    )


def _newest_first(stmt):
    return stmt.order_by(Donation.created_at.desc(), Donation.id.desc())


class DonationStore:
    """Owns donations and their status transitions."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, caller: Caller, fields: Union[DonationCreate, dict]) -> Donation:
        donor = donor_for(self.session, caller)

        if not isinstance(fields, DonationCreate):
            try:
                fields = DonationCreate.model_validate(fields)
            except pydantic.ValidationError as exc:
                raise ValidationError(errors=field_errors(exc.errors())) from exc

        donation = Donation(
            donor_id=donor.id,
            title=fields.title,
            description=fields.description,
            food_type=fields.food_type,
            quantity=fields.quantity,
            quantity_unit=fields.quantity_unit or config.DEFAULT_QUANTITY_UNIT,
            pickup_address=fields.pickup_address,
            pickup_date=fields.pickup_date,
            expiration_date=fields.expiration_date,
            status=DonationStatus.AVAILABLE,
        )
        with unit_of_work(self.session):
            self.session.add(donation)
        self.session.refresh(donation)
        log.info("donor %s created donation %s (%s)", donor.id, donation.id, donation.title)
        return donation

    def get_by_id(self, donation_id: int) -> Donation:
        donation = self.session.exec(
            _with_parties(select(Donation).where(Donation.id == donation_id))
        ).first()
        if donation is None:
            raise NotFoundError("Donation not found")
        return donation

    def get(self, caller: Caller, donation_id: int) -> Donation:
        """Fetch one donation; donors only see their own."""
        donation = self.get_by_id(donation_id)
        if caller.role == Role.DONOR:
            donor = donor_for(self.session, caller)
            if donation.donor_id != donor.id:
                raise ForbiddenError("You do not have permission to view this donation")
        return donation

    def list(
        self,
        status: Optional[DonationStatus] = None,
        food_type: Optional[str] = None,
    ) -> List[Donation]:
        query = select(Donation)
        if status is not None:
            query = query.where(Donation.status == status)
        if food_type is not None:
            query = query.where(Donation.food_type == food_type)
        return list(self.session.exec(_newest_first(_with_parties(query))).all())

    def list_available(self, caller: Caller) -> List[Donation]:
        receiver_for(self.session, caller)
        return self.list(status=DonationStatus.AVAILABLE)

    def list_by_donor(self, donor_id: int) -> List[Donation]:
        query = select(Donation).where(Donation.donor_id == donor_id)
        return list(self.session.exec(_newest_first(_with_parties(query))).all())

    def list_by_receiver(self, receiver_id: int) -> List[Donation]:
        query = select(Donation).where(Donation.receiver_id == receiver_id)
        return list(self.session.exec(_newest_first(_with_parties(query))).all())

    def list_mine(self, caller: Caller) -> List[Donation]:
        """Donors get what they listed, receivers what they have claimed."""
        if caller.role == Role.DONOR:
            return self.list_by_donor(donor_for(self.session, caller).id)
        return self.list_by_receiver(receiver_for(self.session, caller).id)

    def cancel(self, caller: Caller, donation_id: int) -> Donation:
        # Pending requests on the donation are left as they are.
        return self._transition(
            caller,
            donation_id,
            DonationStatus.CANCELLED,
            forbidden="You do not have permission to cancel this donation",
        )

    def complete(self, caller: Caller, donation_id: int) -> Donation:
        """Mark a claimed donation as picked up."""
        return self._transition(
            caller,
            donation_id,
            DonationStatus.COMPLETED,
            forbidden="You do not have permission to complete this donation",
        )

    def _transition(
        self,
        caller: Caller,
        donation_id: int,
        target: DonationStatus,
        forbidden: str,
    ) -> Donation:
        ensure_role(caller, Role.DONOR)
        donation = self.session.get(Donation, donation_id)
        if donation is None:
            raise NotFoundError("Donation not found")

        donor = donor_for(self.session, caller)
        if donation.donor_id != donor.id:
            raise ForbiddenError(forbidden)

        if target not in DONATION_TRANSITIONS[donation.status]:
            verb = "cancelled" if target == DonationStatus.CANCELLED else "completed"
            raise ConflictError(
                f"Donation cannot be {verb} because it is {donation.status.value.lower()}"
            )

        with unit_of_work(self.session):
            # the row may have moved on since we read it (e.g. claimed)
            result = self.session.exec(
                update(Donation)
                .where(Donation.id == donation.id, Donation.status == donation.status)
                .values(status=target, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("Donation was updated by someone else, try again")
        self.session.refresh(donation)
        log.info("donation %s is now %s", donation.id, target.value)
        return donation
