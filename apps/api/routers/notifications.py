"""Role-scoped notification router"""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from dependencies import get_current_user, get_dispatcher
from models import User
from schemas import NotificationCreate, NotificationResponse, UnreadCountResponse
from services.notification_dispatcher import (
    MAX_PAGE_SIZE, NotificationDispatcher, NotificationFilters, parse_audience,
)

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


@router.post("", response_model=NotificationResponse, status_code=status.HTTP_201_CREATED)
async def create_notification(
    data: NotificationCreate,
    current_user: User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Create a notification and push it to connected recipients"""
    audience = parse_audience(data.target_role, data.target_user_id)
    notification = await dispatcher.create(
        data.title,
        data.message,
        audience,
        created_by=current_user,
        notify_out_of_band=data.notify_out_of_band,
    )
    return NotificationResponse(**notification.model_dump(), read=False)


@router.get("", response_model=List[NotificationResponse])
def list_notifications(
    unread: bool = False,
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Notifications visible to the caller, newest first"""
    filters = NotificationFilters(
        unread_only=unread,
        date_from=date_from,
        date_to=date_to,
        q=q,
        page=page,
        limit=limit,
    )
    return [view.to_dict() for view in dispatcher.list_for(current_user, filters)]


@router.get("/unread-count", response_model=UnreadCountResponse)
def unread_count(
    current_user: User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return UnreadCountResponse(unread=dispatcher.unread_count(current_user))


@router.post("/{notification_id}/read")
def mark_read(
    notification_id: int,
    current_user: User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Mark a notification read for the caller; repeating it is a no-op"""
    dispatcher.mark_read(current_user, notification_id)
    return {"ok": True}
