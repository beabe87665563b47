import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from sqlalchemy import or_
from sqlalchemy.orm import Session

from campus.api.deps import get_marketplace_service
from campus.core.api_response import success_response_payload
from campus.core.observability import log_business_event
from campus.core.paging import paginate_query
from campus.core.security import get_current_user, require_verified_user
from campus.db.models.listing import Listing
from campus.db.models.user import User
from campus.db.session import get_db
from campus.schemas.marketplace import InterestIn, ListingUpdateIn
from campus.services.files import delete_listing_files, save_listing_images
from campus.services.marketplace import MarketplaceService, serialize_interest, serialize_listing

router = APIRouter(prefix="/marketplace", tags=["marketplace"])
logger = logging.getLogger(__name__)


@router.get("/listings")
def list_listings(
    request: Request,
    page: int = 1,
    limit: int = 20,
    category: str | None = None,
    min_price: Decimal | None = Query(default=None, alias="minPrice"),
    max_price: Decimal | None = Query(default=None, alias="maxPrice"),
    location: str | None = None,
    search: str | None = None,
    status: str = "available",
    db: Session = Depends(get_db),
):
    q = db.query(Listing).filter(Listing.status == status)
    if category:
        q = q.filter(Listing.category == category)
    if min_price is not None:
        q = q.filter(Listing.price >= min_price)
    if max_price is not None:
        q = q.filter(Listing.price <= max_price)
    if location:
        q = q.filter(Listing.location.ilike(f"%{location}%"))
    if search:
        pattern = f"%{search}%"
        q = q.filter(or_(Listing.title.ilike(pattern), Listing.description.ilike(pattern)))
    q = q.order_by(Listing.created_at.desc(), Listing.id.desc())
    listings, pagination = paginate_query(q, page=page, limit=limit)
    return success_response_payload(
        request,
        data=[serialize_listing(item) for item in listings],
        pagination=pagination,
    )


@router.get("/my-listings")
def my_listings(
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    listings = (
        db.query(Listing)
        .filter(Listing.user_id == current_user.id)
        .order_by(Listing.created_at.desc(), Listing.id.desc())
        .all()
    )
    return success_response_payload(
        request,
        data=[serialize_listing(item, include_interests=True) for item in listings],
        count=len(listings),
    )


@router.get("/listings/{id}")
def get_listing(
    id: int,
    request: Request,
    marketplace: MarketplaceService = Depends(get_marketplace_service),
):
    listing = marketplace.get_listing(id)
    return success_response_payload(request, data=serialize_listing(listing, include_interests=True))


@router.post("/listings", status_code=201)
def create_listing(
    request: Request,
    title: str = Form(min_length=5, max_length=200),
    description: str = Form(min_length=1),
    price: Decimal = Form(ge=0),
    category: str = Form(min_length=1),
    location: str = Form(min_length=1),
    images: list[UploadFile] | None = File(default=None),
    current_user: User = Depends(require_verified_user),
    marketplace: MarketplaceService = Depends(get_marketplace_service),
):
    stored = save_listing_images(current_user.id, images or [])
    try:
        listing = marketplace.create_listing(
            current_user,
            title=title.strip(),
            description=description.strip(),
            price=price,
            category=category.strip(),
            location=location.strip(),
            images=stored,
        )
    except Exception:
        delete_listing_files(stored)
        raise
    log_business_event(logger, request, event="marketplace.create_listing", listing_id=listing.id)
    return success_response_payload(request, message="Listing created successfully", data=serialize_listing(listing))


@router.put("/listings/{id}")
def update_listing(
    id: int,
    payload: ListingUpdateIn,
    request: Request,
    current_user: User = Depends(get_current_user),
    marketplace: MarketplaceService = Depends(get_marketplace_service),
):
    listing = marketplace.update_listing(id, current_user, payload)
    log_business_event(logger, request, event="marketplace.update_listing", listing_id=listing.id)
    return success_response_payload(request, message="Listing updated successfully", data=serialize_listing(listing))


@router.delete("/listings/{id}")
def delete_listing(
    id: int,
    request: Request,
    current_user: User = Depends(get_current_user),
    marketplace: MarketplaceService = Depends(get_marketplace_service),
):
    deleted_files = marketplace.delete_listing(id, current_user)
    log_business_event(logger, request, event="marketplace.delete_listing", listing_id=id)
    return success_response_payload(
        request,
        message="Listing deleted successfully",
        data={"deletedFilesCount": deleted_files},
    )


@router.post("/listings/{id}/interest", status_code=201)
def show_interest(
    id: int,
    request: Request,
    payload: InterestIn | None = None,
    current_user: User = Depends(get_current_user),
    marketplace: MarketplaceService = Depends(get_marketplace_service),
):
    interest = marketplace.show_interest(id, current_user, payload.message if payload else None)
    log_business_event(logger, request, event="marketplace.show_interest", listing_id=id, interest_id=interest.id)
    return success_response_payload(
        request,
        message=(
            "Interest shown successfully. The seller has been notified. "
            "Please contact and pay the administrator to enable contact information visibility."
        ),
        data=serialize_interest(interest, with_buyer=False),
    )
