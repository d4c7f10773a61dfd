from typing import List, Optional

from fastapi import APIRouter

from db import SessionDep
from models import DonationStatus
from schemas import (
    ApiResponse,
    DonationCreate,
    DonationDetail,
    DonationRead,
    InboxRequestRead,
    OutboxRequestRead,
    RequestCreate,
    RequestRead,
    RequestStatusRead,
    RespondData,
)
from services import DonationStore, MatchingEngine, RequestStore

from .auth import CallerDep

router = APIRouter(tags=["donations"])


@router.post("", status_code=201, response_model=ApiResponse[DonationRead])
def create_donation(donation_in: DonationCreate, session: SessionDep, caller: CallerDep):
    """
    List a new food donation. Donors only.
    """
    donation = DonationStore(session).create(caller, donation_in)
    return ApiResponse(
        message="Donation created successfully",
        data=DonationRead.model_validate(donation),
    )


@router.get("", response_model=ApiResponse[List[DonationDetail]])
def list_donations(
    session: SessionDep,
    caller: CallerDep,
    status: Optional[DonationStatus] = None,
    food_type: Optional[str] = None,
):
    """
    List donations, optionally filtered by status and food type.
    """
    donations = DonationStore(session).list(status=status, food_type=food_type)
    data = [DonationDetail.model_validate(d) for d in donations]
    return ApiResponse(count=len(data), data=data)


@router.get("/all/available", response_model=ApiResponse[List[DonationDetail]])
def list_available_donations(session: SessionDep, caller: CallerDep):
    donations = DonationStore(session).list_available(caller)
    data = [DonationDetail.model_validate(d) for d in donations]
    return ApiResponse(count=len(data), data=data)


@router.get("/all/me", response_model=ApiResponse[List[DonationDetail]])
def list_my_donations(session: SessionDep, caller: CallerDep):
    """
    Donors get the donations they listed, receivers the ones they claimed.
    """
    donations = DonationStore(session).list_mine(caller)
    data = [DonationDetail.model_validate(d) for d in donations]
    return ApiResponse(count=len(data), data=data)


@router.get("/requests/inbox", response_model=ApiResponse[List[InboxRequestRead]])
def requests_inbox(session: SessionDep, caller: CallerDep):
    requests = RequestStore(session).list_inbox(caller)
    data = [InboxRequestRead.model_validate(r) for r in requests]
    return ApiResponse(count=len(data), data=data)


@router.get("/requests/outbox", response_model=ApiResponse[List[OutboxRequestRead]])
def requests_outbox(session: SessionDep, caller: CallerDep):
    requests = RequestStore(session).list_outbox(caller)
    data = [OutboxRequestRead.model_validate(r) for r in requests]
    return ApiResponse(count=len(data), data=data)


@router.get("/requests/accepted", response_model=ApiResponse[List[InboxRequestRead]])
def requests_accepted(session: SessionDep, caller: CallerDep):
    requests = RequestStore(session).list_accepted(caller)
    data = [InboxRequestRead.model_validate(r) for r in requests]
    return ApiResponse(count=len(data), data=data)


@router.patch("/requests/{request_id}/respond", response_model=ApiResponse[RequestRead])
def respond_to_request(
    request_id: int,
    body: RespondData,
    session: SessionDep,
    caller: CallerDep,
):
    """
    Accept or reject a pending request on one of the caller's donations.
    """
    request = MatchingEngine(session).respond(caller, request_id, body.action)
    verb = "accepted" if body.action == "ACCEPT" else "rejected"
    return ApiResponse(
        message=f"Request {verb} successfully",
        data=RequestRead.model_validate(request),
    )


@router.get("/{donation_id}", response_model=ApiResponse[DonationDetail])
def get_donation(donation_id: int, session: SessionDep, caller: CallerDep):
    donation = DonationStore(session).get(caller, donation_id)
    return ApiResponse(data=DonationDetail.model_validate(donation))


@router.patch("/{donation_id}/cancel", response_model=ApiResponse[DonationRead])
def cancel_donation(donation_id: int, session: SessionDep, caller: CallerDep):
    donation = DonationStore(session).cancel(caller, donation_id)
    return ApiResponse(
        message="Donation cancelled successfully",
        data=DonationRead.model_validate(donation),
    )


@router.patch("/{donation_id}/complete", response_model=ApiResponse[DonationRead])
def complete_donation(donation_id: int, session: SessionDep, caller: CallerDep):
    donation = DonationStore(session).complete(caller, donation_id)
    return ApiResponse(
        message="Donation marked as completed",
        data=DonationRead.model_validate(donation),
    )


@router.post(
    "/{donation_id}/request",
    status_code=201,
    response_model=ApiResponse[RequestRead],
)
def create_request(
    donation_id: int,
    session: SessionDep,
    caller: CallerDep,
    body: Optional[RequestCreate] = None,
):
    message = body.message if body else None
    request = RequestStore(session).create(caller, donation_id, message)
    return ApiResponse(
        message="Donation request sent successfully",
        data=RequestRead.model_validate(request),
    )


@router.delete("/{donation_id}/request", response_model=ApiResponse[None])
def withdraw_request(donation_id: int, session: SessionDep, caller: CallerDep):
    RequestStore(session).withdraw(caller, donation_id)
    return ApiResponse(message="Donation request cancelled successfully")


@router.get("/{donation_id}/request", response_model=ApiResponse[RequestStatusRead])
def check_request(donation_id: int, session: SessionDep, caller: CallerDep):
    found = RequestStore(session).get_status(caller, donation_id)
    request = found["request"]
    return ApiResponse(
        data=RequestStatusRead(
            has_request=found["has_request"],
            status=found["status"],
            request=RequestRead.model_validate(request) if request else None,
        )
    )
