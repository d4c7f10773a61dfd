from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import Column, ForeignKey, Index, Integer, text
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    DONOR = "DONOR"
    RECEIVER = "RECEIVER"


class DonationStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    CLAIMED = "CLAIMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class NotificationType(str, Enum):
    REQUEST_SENT = "REQUEST_SENT"
    REQUEST_ACCEPTED = "REQUEST_ACCEPTED"
    REQUEST_REJECTED = "REQUEST_REJECTED"


# CANCELLED and COMPLETED are terminal.
DONATION_TRANSITIONS = {
    DonationStatus.AVAILABLE: {DonationStatus.CLAIMED, DonationStatus.CANCELLED},
    DonationStatus.CLAIMED: {DonationStatus.COMPLETED},
    DonationStatus.COMPLETED: set(),
    DonationStatus.CANCELLED: set(),
}


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str
    role: Role
    password_hash: str
    created_at: datetime = Field(default_factory=utcnow)

    donor: Optional["Donor"] = Relationship(
        back_populates="user", sa_relationship_kwargs={"uselist": False}
    )
    receiver: Optional["Receiver"] = Relationship(
        back_populates="user", sa_relationship_kwargs={"uselist": False}
    )


class Donor(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True)
    phone: Optional[str] = None
    address: Optional[str] = None
    points: int = 0

    user: User = Relationship(back_populates="donor")
    donations: List["Donation"] = Relationship(back_populates="donor")


class Receiver(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True)
    phone: Optional[str] = None
    address: Optional[str] = None

    user: User = Relationship(back_populates="receiver")
    claimed_donations: List["Donation"] = Relationship(back_populates="receiver")
    requests: List["DonationRequest"] = Relationship(back_populates="receiver")


class Donation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    donor_id: int = Field(foreign_key="donor.id", index=True)
    # set only once a request is accepted
    receiver_id: Optional[int] = Field(default=None, foreign_key="receiver.id", index=True)

    title: str
    description: Optional[str] = None
    food_type: str = Field(index=True)
    quantity: float
    quantity_unit: str
    pickup_address: str
    pickup_date: datetime
    expiration_date: Optional[datetime] = None
    status: DonationStatus = Field(default=DonationStatus.AVAILABLE, index=True)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    donor: Donor = Relationship(back_populates="donations")
    receiver: Optional[Receiver] = Relationship(back_populates="claimed_donations")
    requests: List["DonationRequest"] = Relationship(back_populates="donation")


class DonationRequest(SQLModel, table=True):
    __tablename__ = "donation_request"
    __table_args__ = (
        # at most one PENDING request per receiver and donation
        Index(
            "uq_donation_request_pending",
            "donation_id",
            "receiver_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    donation_id: int = Field(foreign_key="donation.id", index=True)
    receiver_id: int = Field(foreign_key="receiver.id", index=True)

    message: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    donation: Donation = Relationship(back_populates="requests")
    receiver: Receiver = Relationship(back_populates="requests")


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)  # recipient
    title: str
    message: str
    type: NotificationType
    # withdrawn requests are deleted, the notification outlives them
    request_id: Optional[int] = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("donation_request.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    created_at: datetime = Field(default_factory=utcnow)

    request: Optional[DonationRequest] = Relationship()
