import logging
from typing import List, Optional

from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from errors import ValidationError
from models import DonationRequest, Notification, NotificationType, Receiver
from schemas import Caller

log = logging.getLogger(__name__)


class NotificationSink:
    """Append-only log of user-facing events."""

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        user_id: int,
        title: str,
        message: str,
        type: NotificationType,
        request_id: Optional[int] = None,
    ) -> Notification:
        """
        Stage a notification in the current transaction.

        Never commits on its own: the notification lands together with the
        state change that produced it, or not at all.
        """
        if not user_id:
            raise ValidationError(
                "Notification needs a recipient",
                errors={"user_id": ["Recipient is required"]},
            )
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            request_id=request_id,
        )
        self.session.add(notification)
        log.debug("queued %s notification for user %s", type.value, user_id)
        return notification

    def list_for_user(self, caller: Caller) -> List[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == caller.id)
            .options(
                selectinload(Notification.request).selectinload(DonationRequest.donation),
                selectinload(Notification.request)
                .selectinload(DonationRequest.receiver)
                .selectinload(Receiver.user),
            )
            .order_by(Notification.created_at.desc(), Notification.id.desc())
        )
        return list(self.session.exec(stmt).all())
