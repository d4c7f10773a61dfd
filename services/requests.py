import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from db import unit_of_work
from errors import ConflictError, NotFoundError
from models import (
    Donation,
    DonationRequest,
    DonationStatus,
    Donor,
    NotificationType,
    Receiver,
    RequestStatus,
)
from schemas import Caller

from .common import donor_for, receiver_for
from .notifications import NotificationSink

log = logging.getLogger(__name__)

ALREADY_REQUESTED = "You have already requested this donation"
PENDING_INDEX = "uq_donation_request_pending"


def violates_pending_index(exc: IntegrityError) -> bool:
    diag = getattr(exc.orig, "diag", None)
    if diag is not None:
        return diag.constraint_name == PENDING_INDEX
    # sqlite names the indexed columns, not the index
    return str(exc.orig).startswith("UNIQUE constraint failed: donation_request.")


def _newest_first(stmt):
    return stmt.order_by(DonationRequest.created_at.desc(), DonationRequest.id.desc())


class RequestStore:
    """Receivers' requests against donations."""

    def __init__(self, session: Session):
        self.session = session
        self.notifications = NotificationSink(session)

    def _pending(self, donation_id: int, receiver_id: int) -> Optional[DonationRequest]:
        return self.session.exec(
            select(DonationRequest).where(
                DonationRequest.donation_id == donation_id,
                DonationRequest.receiver_id == receiver_id,
                DonationRequest.status == RequestStatus.PENDING,
            )
        ).first()

    def create(
        self,
        caller: Caller,
        donation_id: int,
        message: Optional[str] = None,
    ) -> DonationRequest:
        receiver = receiver_for(self.session, caller)

        try:
            with unit_of_work(self.session):
                # lock the donation row so a concurrent claim can't slip in
                donation = self.session.exec(
                    select(Donation)
                    .where(Donation.id == donation_id)
                    .with_for_update()
                ).first()
                if donation is None:
                    raise NotFoundError("Donation not found")
                if donation.status != DonationStatus.AVAILABLE:
                    raise ConflictError(
                        "Cannot request this donation as it is "
                        f"{donation.status.value.lower()}"
                    )
                if self._pending(donation.id, receiver.id) is not None:
                    raise ConflictError(ALREADY_REQUESTED)

                request = DonationRequest(
                    donation_id=donation.id,
                    receiver_id=receiver.id,
                    message=message or None,
                    status=RequestStatus.PENDING,
                )
                self.session.add(request)
                self.session.flush()

                self.notifications.append(
                    user_id=donation.donor.user_id,
                    title="New Donation Request",
                    message=f"{receiver.user.name} has requested your donation: {donation.title}",
                    type=NotificationType.REQUEST_SENT,
                    request_id=request.id,
                )
        except IntegrityError as exc:
            if not violates_pending_index(exc):
                raise
            # lost the race against an identical request
            raise ConflictError(ALREADY_REQUESTED) from exc

        self.session.refresh(request)
        log.info(
            "receiver %s requested donation %s (request %s)",
            receiver.id,
            donation_id,
            request.id,
        )
        return request

    def withdraw(self, caller: Caller, donation_id: int) -> None:
        receiver = receiver_for(self.session, caller)
        request = self._pending(donation_id, receiver.id)
        if request is None:
            raise NotFoundError("Request not found or already processed")

        with unit_of_work(self.session):
            self.session.delete(request)
        log.info("receiver %s withdrew request on donation %s", receiver.id, donation_id)

    def get_status(self, caller: Caller, donation_id: int) -> dict:
        """Latest request the caller made on this donation, if any."""
        receiver = receiver_for(self.session, caller)
        request = self.session.exec(
            _newest_first(
                select(DonationRequest).where(
                    DonationRequest.donation_id == donation_id,
                    DonationRequest.receiver_id == receiver.id,
                )
            )
        ).first()
        return {
            "has_request": request is not None,
            "status": request.status if request else None,
            "request": request,
        }

    def list_inbox(self, caller: Caller) -> List[DonationRequest]:
        donor = donor_for(self.session, caller)
        return self._inbox(donor.id)

    def list_accepted(self, caller: Caller) -> List[DonationRequest]:
        donor = donor_for(self.session, caller)
        return self._inbox(donor.id, status=RequestStatus.ACCEPTED)

    def _inbox(
        self, donor_id: int, status: Optional[RequestStatus] = None
    ) -> List[DonationRequest]:
        stmt = (
            select(DonationRequest)
            .join(Donation, Donation.id == DonationRequest.donation_id)
            .where(Donation.donor_id == donor_id)
            .options(
                selectinload(DonationRequest.donation),
                selectinload(DonationRequest.receiver).selectinload(Receiver.user),
            )
        )
        if status is not None:
            stmt = stmt.where(DonationRequest.status == status)
        return list(self.session.exec(_newest_first(stmt)).all())

    def list_outbox(self, caller: Caller) -> List[DonationRequest]:
        receiver = receiver_for(self.session, caller)
        stmt = (
            select(DonationRequest)
            .where(DonationRequest.receiver_id == receiver.id)
            .options(
                selectinload(DonationRequest.donation)
                .selectinload(Donation.donor)
                .selectinload(Donor.user),
                selectinload(DonationRequest.donation)
                .selectinload(Donation.receiver)
                .selectinload(Receiver.user),
            )
        )
        return list(self.session.exec(_newest_first(stmt)).all())
