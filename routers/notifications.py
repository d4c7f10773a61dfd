from typing import List

from fastapi import APIRouter

from db import SessionDep
from schemas import ApiResponse, NotificationRead
from services import NotificationSink

from .auth import CallerDep

router = APIRouter(tags=["notifications"])


@router.get("", response_model=ApiResponse[List[NotificationRead]])
def list_notifications(session: SessionDep, caller: CallerDep):
    """
    The caller's notifications, newest first.
    """
    notifications = NotificationSink(session).list_for_user(caller)
    data = [NotificationRead.model_validate(n) for n in notifications]
    return ApiResponse(count=len(data), data=data)
