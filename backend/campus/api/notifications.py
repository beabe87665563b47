import logging

from fastapi import APIRouter, Depends, Query, Request

from campus.api.deps import get_notifier
from campus.core.api_response import success_response_payload
from campus.core.paging import serialize_items
from campus.core.security import get_current_user
from campus.db.models.user import User
from campus.services.notifications import Notifier, serialize_notification

router = APIRouter(prefix="/notifications", tags=["notifications"])
logger = logging.getLogger(__name__)


@router.get("")
def list_notifications(
    request: Request,
    page: int = 1,
    limit: int = 20,
    is_read: bool | None = Query(default=None, alias="isRead"),
    current_user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
):
    items, pagination = notifier.list_for_owner(current_user.id, is_read=is_read, page=page, limit=limit)
    return success_response_payload(
        request,
        data=serialize_items(items, serialize_notification),
        pagination=pagination,
        unreadCount=notifier.unread_count(current_user.id),
    )


@router.get("/unread-count")
def unread_count(
    request: Request,
    current_user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
):
    return success_response_payload(request, data={"unreadCount": notifier.unread_count(current_user.id)})


@router.put("/read-all")
def mark_all_read(
    request: Request,
    current_user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
):
    updated = notifier.mark_all_read(current_user.id)
    return success_response_payload(request, message="All notifications marked as read", data={"updated": updated})


@router.put("/{id}/read")
def mark_read(
    id: int,
    request: Request,
    current_user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
):
    item = notifier.mark_read(id, current_user.id)
    return success_response_payload(request, message="Notification marked as read", data=serialize_notification(item))


@router.delete("/{id}")
def delete_notification(
    id: int,
    request: Request,
    current_user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
):
    notifier.delete(id, current_user.id)
    return success_response_payload(request, message="Notification deleted")
