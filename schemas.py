from datetime import datetime, timezone
from typing import Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from models import DonationStatus, NotificationType, RequestStatus, Role

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    message: Optional[str] = None
    count: Optional[int] = None
    data: Optional[T] = None


class Caller(BaseModel):
    """The authenticated identity every store operation receives."""

    id: int
    role: Role

    model_config = ConfigDict(frozen=True)


# -- auth --------------------------------------------------------------------


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: str = Field(min_length=2)
    role: Role
    phone: Optional[str] = None
    address: Optional[str] = None


class LoginData(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UserRead(BaseModel):
    id: int
    email: EmailStr
    name: str
    role: Role
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserSummary(BaseModel):
    id: int
    name: str
    email: str

    model_config = ConfigDict(from_attributes=True)


class DonorRead(BaseModel):
    id: int
    user_id: int
    phone: Optional[str] = None
    address: Optional[str] = None
    points: int
    user: Optional[UserSummary] = None

    model_config = ConfigDict(from_attributes=True)


class ReceiverRead(BaseModel):
    id: int
    user_id: int
    phone: Optional[str] = None
    address: Optional[str] = None
    user: Optional[UserSummary] = None

    model_config = ConfigDict(from_attributes=True)


class ProfileRead(UserRead):
    donor: Optional[DonorRead] = None
    receiver: Optional[ReceiverRead] = None


class TokenRead(BaseModel):
    user: UserRead
    token: str


# -- donations ---------------------------------------------------------------


class DonationCreate(BaseModel):
    title: str = Field(min_length=3)
    description: Optional[str] = None
    food_type: str = Field(min_length=2)
    quantity: float = Field(gt=0)
    quantity_unit: Optional[str] = None
    pickup_address: str = Field(min_length=5)
    pickup_date: datetime
    expiration_date: Optional[datetime] = None

    @field_validator("pickup_date", "expiration_date")
    @classmethod
    def _as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # naive input is taken as UTC
        if v is None:
            return v
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class DonationRead(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    food_type: str
    quantity: float
    quantity_unit: str
    pickup_address: str
    pickup_date: datetime
    expiration_date: Optional[datetime] = None
    status: DonationStatus
    donor_id: int
    receiver_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DonationDetail(DonationRead):
    donor: Optional[DonorRead] = None
    receiver: Optional[ReceiverRead] = None


# -- requests ----------------------------------------------------------------


class RequestCreate(BaseModel):
    message: Optional[str] = None


class RespondData(BaseModel):
    action: Literal["ACCEPT", "REJECT"]


class RequestRead(BaseModel):
    id: int
    donation_id: int
    receiver_id: int
    message: Optional[str] = None
    status: RequestStatus
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InboxRequestRead(RequestRead):
    donation: DonationRead
    receiver: ReceiverRead


class OutboxRequestRead(RequestRead):
    donation: DonationDetail


class RequestStatusRead(BaseModel):
    has_request: bool
    status: Optional[RequestStatus] = None
    request: Optional[RequestRead] = None


# -- notifications -----------------------------------------------------------


class NotificationRead(BaseModel):
    id: int
    user_id: int
    title: str
    message: str
    type: NotificationType
    request_id: Optional[int] = None
    created_at: datetime
    request: Optional[InboxRequestRead] = None

    model_config = ConfigDict(from_attributes=True)
