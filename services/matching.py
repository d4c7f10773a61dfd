"""
Donor decisions on donation requests.

Accepting a request claims the donation for that receiver, credits the donor,
rejects every other pending request on the same donation and notifies the
accepted receiver. All of it happens in one transaction. The donation row is
the serialization point: it is locked before any request row is written, and
the claim only succeeds while it is still AVAILABLE, so of two accepts racing
on one donation the second waits for the first and then loses.
"""
import logging
from enum import Enum
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

import config
from db import unit_of_work
from errors import (
    AppError,
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from models import (
    Donation,
    DonationRequest,
    DonationStatus,
    Donor,
    NotificationType,
    RequestStatus,
    utcnow,
)
from schemas import Caller

from .common import donor_for
from .notifications import NotificationSink

log = logging.getLogger(__name__)


class Action(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class MatchingEngine:
    def __init__(self, session: Session):
        self.session = session
        self.notifications = NotificationSink(session)

    def respond(
        self,
        caller: Caller,
        request_id: int,
        action: Union[Action, str],
    ) -> DonationRequest:
        try:
            action = Action(action)
        except ValueError as exc:
            raise ValidationError("Invalid action. Must be ACCEPT or REJECT") from exc
        donor = donor_for(self.session, caller)

        request = self.session.get(DonationRequest, request_id)
        if request is None:
            raise NotFoundError("Request not found")
        if request.status != RequestStatus.PENDING:
            raise ConflictError(
                f"This request has already been {request.status.value.lower()}"
            )

        donation = self.session.get(Donation, request.donation_id)
        if donation is None or donation.donor_id != donor.id:
            raise ForbiddenError("You do not have permission to respond to this request")

        return self.apply_decision(request, donation, donor, action)

    def apply_decision(
        self,
        request: DonationRequest,
        donation: Donation,
        donor: Donor,
        action: Action,
    ) -> DonationRequest:
        """
        Write a decision that has already been authorized.

        Every precondition is checked again against the database inside the
        transaction, so objects read earlier may be stale without harm: a
        lost race raises ConflictError and nothing is written.
        """
        request_id = request.id
        donation_id = donation.id
        donation_title = donation.title
        receiver_user_id = request.receiver.user_id
        receiver_id = request.receiver_id
        donor_id = donor.id
        donor_name = donor.user.name
        accepted = action == Action.ACCEPT
        now = utcnow()
        cascaded = 0

        try:
            with unit_of_work(self.session):
                # donation first, then request rows, the same order as RequestStore.create
                current = self.session.exec(
                    select(Donation.status)
                    .where(Donation.id == donation_id)
                    .with_for_update()
                ).first()
                if accepted and current != DonationStatus.AVAILABLE:
                    raise self._unavailable(current)

                result = self.session.exec(
                    update(DonationRequest)
                    .where(
                        DonationRequest.id == request_id,
                        DonationRequest.status == RequestStatus.PENDING,
                    )
                    .values(
                        status=RequestStatus.ACCEPTED if accepted else RequestStatus.REJECTED,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise self._resolved(request_id)

                if accepted:
                    claimed = self.session.exec(
                        update(Donation)
                        .where(
                            Donation.id == donation_id,
                            Donation.status == DonationStatus.AVAILABLE,
                        )
                        .values(
                            status=DonationStatus.CLAIMED,
                            receiver_id=receiver_id,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount != 1:
                        raise self._unavailable(
                            self.session.exec(
                                select(Donation.status).where(Donation.id == donation_id)
                            ).first()
                        )

                    self.session.exec(
                        update(Donor)
                        .where(Donor.id == donor_id)
                        .values(points=Donor.points + config.DONOR_REWARD_POINTS)
                        .execution_options(synchronize_session=False)
                    )

                    # cascade-rejected receivers are not notified
                    cascade = self.session.exec(
                        update(DonationRequest)
                        .where(
                            DonationRequest.donation_id == donation_id,
                            DonationRequest.id != request_id,
                            DonationRequest.status == RequestStatus.PENDING,
                        )
                        .values(status=RequestStatus.REJECTED, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    cascaded = cascade.rowcount

                verb = "accepted" if accepted else "rejected"
                self.notifications.append(
                    user_id=receiver_user_id,
                    title=f"Donation Request {verb.capitalize()}",
                    message=f"{donor_name} has {verb} your request for: {donation_title}",
                    type=(
                        NotificationType.REQUEST_ACCEPTED
                        if accepted
                        else NotificationType.REQUEST_REJECTED
                    ),
                    request_id=request_id,
                )
        except ConflictError as exc:
            log.warning("request %s: %s", request_id, exc.message)
            raise
        except SQLAlchemyError as exc:
            log.exception("could not record decision on request %s", request_id)
            raise InternalError("Server error while responding to donation request") from exc

        # the bulk updates bypassed the identity map
        self.session.expire_all()
        request = self.session.get(DonationRequest, request_id)
        log.info(
            "donor %s %s request %s on donation %s (%d other pending rejected)",
            donor_id,
            "accepted" if accepted else "rejected",
            request_id,
            donation_id,
            cascaded,
        )
        return request

    def _resolved(self, request_id: int) -> AppError:
        status = self.session.exec(
            select(DonationRequest.status).where(DonationRequest.id == request_id)
        ).first()
        if status is None:
            return NotFoundError("Request not found")
        return ConflictError(f"This request has already been {status.value.lower()}")

    @staticmethod
    def _unavailable(status: Optional[DonationStatus]) -> ConflictError:
        if status is None:
            return ConflictError("This donation no longer exists")
        return ConflictError(f"This donation has already been {status.value.lower()}")
