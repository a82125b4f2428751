"""Notification API routes."""

from fastapi import APIRouter, HTTPException, Query

from crmrules.api.deps import NotificationStoreDep, PaginationDep
from crmrules.models.notification import Notification
from crmrules.schemas.common import APIResponse, PaginatedResponse

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=PaginatedResponse[Notification])
async def list_notifications(
    store: NotificationStoreDep,
    pagination: PaginationDep,
    user_id: str = Query(..., min_length=1, description="Recipient user"),
    unread_only: bool = Query(default=False, description="Only unread notifications"),
) -> PaginatedResponse[Notification]:
    """List a user's live notifications, newest first."""
    notifications = await store.list_for_user(user_id, unread_only=unread_only)

    return PaginatedResponse(
        data=pagination.paginate(notifications),
        total=len(notifications),
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.patch("/{notification_id}/read", response_model=APIResponse[Notification])
async def mark_notification_read(
    notification_id: str,
    store: NotificationStoreDep,
) -> APIResponse[Notification]:
    """Mark a notification as read."""
    notification = await store.mark_read(notification_id)
    if not notification:
        raise HTTPException(status_code=404, detail=f"Notification {notification_id} not found")

    return APIResponse(data=notification)
