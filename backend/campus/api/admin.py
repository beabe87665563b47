import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from campus.api.deps import get_identity_service, get_verification_workflow
from campus.core.api_response import success_response_payload
from campus.core.errors import NotFoundError
from campus.core.metrics import increment_counter
from campus.core.observability import log_business_event
from campus.core.paging import paginate_query, serialize_items
from campus.core.security import require_permission
from campus.core.visibility import private_user_payload
from campus.db.models.interest import Interest
from campus.db.models.listing import Listing
from campus.db.models.lost_found import LostFound
from campus.db.models.news import News
from campus.db.models.user import ROLE_USER, User
from campus.db.session import get_db
from campus.schemas.admin import UserStatusIn
from campus.services.identity import IdentityService
from campus.services.marketplace import serialize_interest, serialize_listing
from campus.services.verification import VerificationWorkflow

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


@router.get("/users")
def list_users(
    request: Request,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("users.manage")),
):
    q = db.query(User).order_by(User.created_at.desc(), User.id.desc())
    users, pagination = paginate_query(q, page=page, limit=limit, max_limit=200)
    return success_response_payload(
        request,
        data=serialize_items(users, private_user_payload),
        pagination=pagination,
    )


@router.get("/users/{id}")
def get_user(
    id: int,
    request: Request,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("users.manage")),
):
    user = db.get(User, id)
    if not user:
        raise NotFoundError("User not found")
    return success_response_payload(request, data=private_user_payload(user))


@router.put("/users/{id}/status")
def update_user_status(
    id: int,
    payload: UserStatusIn,
    request: Request,
    identity: IdentityService = Depends(get_identity_service),
    _: User = Depends(require_permission("users.manage")),
):
    user = identity.update_status(id, payload.status)
    increment_counter("admin_action_total", action="status", status=payload.status)
    log_business_event(logger, request, event="admin.user_status", target_user_id=user.id, status=user.status)
    return success_response_payload(
        request,
        message=f"User {'activated' if user.status == 'active' else 'deactivated'} successfully",
        data=private_user_payload(user),
    )


@router.put("/users/{id}/verify")
def verify_user(
    id: int,
    request: Request,
    workflow: VerificationWorkflow = Depends(get_verification_workflow),
    _: User = Depends(require_permission("users.verify")),
):
    user = workflow.verify(id)
    log_business_event(logger, request, event="admin.verify", target_user_id=user.id)
    return success_response_payload(
        request,
        message="User verified successfully. Approval email sent.",
        data=private_user_payload(user),
    )


@router.put("/users/{id}/approve-contact")
def approve_contact(
    id: int,
    request: Request,
    workflow: VerificationWorkflow = Depends(get_verification_workflow),
    _: User = Depends(require_permission("users.verify")),
):
    user, listings_updated = workflow.approve_contact(id)
    log_business_event(
        logger,
        request,
        event="admin.approve_contact",
        target_user_id=user.id,
        listings_updated=listings_updated,
    )
    return success_response_payload(
        request,
        message="Contact approved successfully. Approval email sent.",
        data={**private_user_payload(user), "listingsUpdated": listings_updated},
    )


@router.put("/listings/{id}/approve-contact")
def approve_listing_contact(
    id: int,
    request: Request,
    workflow: VerificationWorkflow = Depends(get_verification_workflow),
    _: User = Depends(require_permission("users.verify")),
):
    listing = workflow.approve_listing_contact(id)
    log_business_event(logger, request, event="admin.approve_listing_contact", listing_id=listing.id)
    return success_response_payload(
        request,
        message="Listing contact approved successfully",
        data=serialize_listing(listing),
    )


@router.get("/pending-verifications")
def pending_verifications(
    request: Request,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("users.verify")),
):
    users = (
        db.query(User)
        .filter(User.is_verified.is_(False), User.role == ROLE_USER)
        .order_by(User.created_at.asc(), User.id.asc())
        .all()
    )
    return success_response_payload(request, data=serialize_items(users, private_user_payload), count=len(users))


@router.get("/pending-contact-approvals")
def pending_contact_approvals(
    request: Request,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("users.verify")),
):
    users = (
        db.query(User)
        .filter(User.is_verified.is_(True), User.can_show_contact.is_(False), User.role == ROLE_USER)
        .order_by(User.created_at.asc(), User.id.asc())
        .all()
    )
    user_ids = [u.id for u in users]
    listings_by_user: dict[int, list[dict]] = {uid: [] for uid in user_ids}
    if user_ids:
        listings = (
            db.query(Listing)
            .filter(Listing.user_id.in_(user_ids), Listing.status == "available")
            .order_by(Listing.created_at.desc())
            .all()
        )
        for listing in listings:
            listings_by_user[listing.user_id].append(
                {"id": listing.id, "title": listing.title, "price": str(listing.price), "status": listing.status}
            )
    data = [{**private_user_payload(u), "listings": listings_by_user[u.id]} for u in users]
    return success_response_payload(request, data=data, count=len(data))


@router.get("/listings")
def all_listings(
    request: Request,
    page: int = 1,
    limit: int = 50,
    status: str | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("listings.manage")),
):
    q = db.query(Listing)
    if status:
        q = q.filter(Listing.status == status)
    q = q.order_by(Listing.created_at.desc(), Listing.id.desc())
    listings, pagination = paginate_query(q, page=page, limit=limit, max_limit=200)
    return success_response_payload(
        request,
        data=[serialize_listing(item, include_interests=True) for item in listings],
        pagination=pagination,
    )


@router.get("/interests")
def all_interests(
    request: Request,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("listings.manage")),
):
    q = db.query(Interest).order_by(Interest.created_at.desc(), Interest.id.desc())
    interests, pagination = paginate_query(q, page=page, limit=limit, max_limit=200)
    data = []
    for interest in interests:
        item = serialize_interest(interest)
        item["listing"] = {"id": interest.listing.id, "title": interest.listing.title}
        item["seller"] = {"id": interest.seller.id, "name": interest.seller.name, "username": interest.seller.username}
        data.append(item)
    return success_response_payload(request, data=data, pagination=pagination)


@router.get("/dashboard/stats")
def dashboard_stats(
    request: Request,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("users.manage")),
):
    def count(model, *criteria) -> int:
        return db.query(model).filter(*criteria).count()

    data = {
        "users": {
            "total": count(User),
            "verified": count(User, User.is_verified.is_(True)),
            "pendingVerification": count(User, User.is_verified.is_(False)),
            "pendingContactApproval": count(User, User.is_verified.is_(True), User.can_show_contact.is_(False)),
        },
        "marketplace": {
            "totalListings": count(Listing),
            "activeListings": count(Listing, Listing.status == "available"),
            "soldListings": count(Listing, Listing.status == "sold"),
            "pendingListings": count(Listing, Listing.status == "pending"),
            "totalInterests": count(Interest),
            "pendingInterests": count(Interest, Interest.status == "pending"),
        },
        "lostFound": {
            "total": count(LostFound),
            "active": count(LostFound, LostFound.status == "active"),
        },
        "news": {
            "total": count(News),
            "published": count(News, News.status == "published"),
        },
    }
    return success_response_payload(request, data=data)
