import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import or_
from sqlalchemy.orm import Session

from campus.api.deps import get_notifier
from campus.core.api_response import success_response_payload
from campus.core.errors import NotFoundError, StateGateError
from campus.core.observability import log_business_event
from campus.core.paging import paginate_query, serialize_items
from campus.core.security import get_current_user, require_verified_user
from campus.core.visibility import public_user_payload
from campus.db.models.lost_found import LostFound
from campus.db.models.notification import NotificationType, RelatedRef
from campus.db.models.user import User
from campus.db.session import get_db
from campus.schemas.community import LostFoundIn
from campus.services.notifications import Notifier

router = APIRouter(prefix="/lost-found", tags=["lost-found"])
logger = logging.getLogger(__name__)


def serialize_item(item: LostFound) -> dict:
    return {
        "id": item.id,
        "userId": item.user_id,
        "type": item.type,
        "title": item.title,
        "description": item.description,
        "location": item.location,
        "dateLostOrFound": item.date_lost_or_found.isoformat() if item.date_lost_or_found else None,
        "images": list(item.images or []),
        "status": item.status,
        "claimedBy": item.claimed_by,
        "postedBy": public_user_payload(item.posted_by) if item.posted_by else None,
        "createdAt": item.created_at.isoformat() if item.created_at else None,
    }


def _get_item(db: Session, item_id: int) -> LostFound:
    item = db.get(LostFound, item_id)
    if not item:
        raise NotFoundError("Item not found")
    return item


@router.get("")
def list_items(
    request: Request,
    page: int = 1,
    limit: int = 20,
    type: str | None = None,
    status: str = "active",
    location: str | None = None,
    search: str | None = None,
    db: Session = Depends(get_db),
):
    q = db.query(LostFound).filter(LostFound.status == status)
    if type:
        q = q.filter(LostFound.type == type)
    if location:
        q = q.filter(LostFound.location.ilike(f"%{location}%"))
    if search:
        pattern = f"%{search}%"
        q = q.filter(or_(LostFound.title.ilike(pattern), LostFound.description.ilike(pattern)))
    q = q.order_by(LostFound.created_at.desc(), LostFound.id.desc())
    items, pagination = paginate_query(q, page=page, limit=limit)
    return success_response_payload(request, data=serialize_items(items, serialize_item), pagination=pagination)


@router.get("/{id}")
def get_item(id: int, request: Request, db: Session = Depends(get_db)):
    return success_response_payload(request, data=serialize_item(_get_item(db, id)))


@router.post("", status_code=201)
def create_item(
    payload: LostFoundIn,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_verified_user),
    notifier: Notifier = Depends(get_notifier),
):
    item = LostFound(
        user_id=current_user.id,
        type=payload.type,
        title=payload.title,
        description=payload.description,
        location=payload.location,
        date_lost_or_found=payload.date_lost_or_found,
        images=[],
        status="active",
    )
    db.add(item)
    db.commit()
    db.refresh(item)

    notifier.broadcast(
        NotificationType.LOST_FOUND,
        f"New {item.type} Item: {item.title}",
        f"A {item.type} item has been posted. Check the Lost & Found section for details.",
        related=RelatedRef.lost_found(item.id),
        metadata={"type": item.type, "location": item.location},
        exclude_user_id=current_user.id,
    )
    log_business_event(logger, request, event="lost_found.create", item_id=item.id)
    return success_response_payload(
        request,
        message="Lost & Found item posted successfully. All users have been notified.",
        data=serialize_item(item),
    )


@router.post("/{id}/claim")
def claim_item(
    id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_verified_user),
):
    item = _get_item(db, id)
    if item.status != "active":
        raise StateGateError("This item is no longer available", code="not_available", status_code=400)
    item.status = "claimed"
    item.claimed_by = current_user.id
    db.commit()
    db.refresh(item)
    log_business_event(logger, request, event="lost_found.claim", item_id=item.id)
    return success_response_payload(request, message="Item marked as claimed", data=serialize_item(item))


@router.delete("/{id}")
def delete_item(
    id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    item = _get_item(db, id)
    if item.user_id != current_user.id and not current_user.is_superadmin:
        raise StateGateError("Not authorized to delete this item", code="not_owner")
    db.delete(item)
    db.commit()
    log_business_event(logger, request, event="lost_found.delete", item_id=id)
    return success_response_payload(request, message="Item deleted successfully")
