import logging
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campus.core.dispatch import Dispatcher
from campus.core.errors import NotFoundError, StateGateError, ValidationError, unverified
from campus.core.mailer import Mailer, interest_email
from campus.core.metrics import increment_counter
from campus.core.visibility import public_user_payload
from campus.db.models.interest import Interest
from campus.db.models.listing import LISTING_STATUSES, Listing
from campus.db.models.notification import NotificationType, RelatedRef
from campus.db.models.user import User
from campus.schemas.marketplace import ListingUpdateIn
from campus.services.files import delete_listing_files, image_url
from campus.services.notifications import Notifier

logger = logging.getLogger(__name__)


def serialize_interest(interest: Interest, *, with_buyer: bool = True) -> dict:
    data = {
        "id": interest.id,
        "listingId": interest.listing_id,
        "buyerId": interest.buyer_id,
        "sellerId": interest.seller_id,
        "message": interest.message,
        "status": interest.status,
        "createdAt": interest.created_at.isoformat() if interest.created_at else None,
    }
    if with_buyer and interest.buyer is not None:
        data["buyer"] = {"id": interest.buyer.id, "name": interest.buyer.name, "username": interest.buyer.username}
    return data


def serialize_listing(listing: Listing, *, include_interests: bool = False) -> dict:
    images = list(listing.images or [])
    data = {
        "id": listing.id,
        "userId": listing.user_id,
        "title": listing.title,
        "description": listing.description,
        "price": str(listing.price) if listing.price is not None else None,
        "category": listing.category,
        "location": listing.location,
        "images": images,
        "imageUrls": [image_url(name) for name in images],
        "status": listing.status,
        "contactApproved": bool(listing.contact_approved),
        "createdAt": listing.created_at.isoformat() if listing.created_at else None,
        "updatedAt": listing.updated_at.isoformat() if listing.updated_at else None,
    }
    if listing.seller is not None:
        data["seller"] = public_user_payload(listing.seller)
    if include_interests:
        data["interests"] = [serialize_interest(i) for i in listing.interests]
    return data


def _ensure_owner(listing: Listing, user: User, action: str) -> None:
    if listing.user_id != user.id and not user.is_superadmin:
        raise StateGateError(f"Not authorized to {action} this listing", code="not_owner")


class MarketplaceService:
    def __init__(
        self,
        db: Session,
        *,
        notifier: Notifier | None = None,
        mailer: Mailer | None = None,
        dispatcher: Dispatcher | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.mailer = mailer
        self.dispatcher = dispatcher

    def get_listing(self, listing_id: int) -> Listing:
        listing = self.db.get(Listing, listing_id)
        if not listing:
            raise NotFoundError("Listing not found")
        return listing

    def create_listing(
        self,
        seller: User,
        *,
        title: str,
        description: str,
        price: Decimal,
        category: str,
        location: str,
        images: list[str] | None = None,
    ) -> Listing:
        if not seller.is_verified:
            raise unverified("Your account must be verified to create listings. Please wait for administrator approval.")
        if price < 0:
            raise ValidationError("Price must be a positive number")
        listing = Listing(
            user_id=seller.id,
            title=title,
            description=description,
            price=price,
            category=category,
            location=location,
            images=images or [],
            status="available",
            contact_approved=False,
        )
        self.db.add(listing)
        self.db.commit()
        self.db.refresh(listing)
        increment_counter("workflow_transition_total", transition="create_listing")
        return listing

    def update_listing(
        self,
        listing_id: int,
        actor: User,
        changes: ListingUpdateIn,
    ) -> Listing:
        listing = self.get_listing(listing_id)
        _ensure_owner(listing, actor, "update")

        fields = changes.model_dump(exclude_unset=True, exclude_none=True)
        status = fields.pop("status", None)
        if status is not None and status not in LISTING_STATUSES:
            raise ValidationError("Invalid listing status")
        for name, value in fields.items():
            setattr(listing, name, value)
        if status is not None:
            listing.status = status
        self.db.commit()
        self.db.refresh(listing)
        return listing

    def delete_listing(self, listing_id: int, actor: User) -> int:
        listing = self.get_listing(listing_id)
        _ensure_owner(listing, actor, "delete")
        images = list(listing.images or [])
        self.db.delete(listing)
        self.db.commit()
        deleted_files = delete_listing_files(images)
        logger.info("listing_deleted listing_id=%s deleted_files=%s", listing_id, deleted_files)
        return deleted_files

    def show_interest(self, listing_id: int, buyer: User, message: str | None = None) -> Interest:
        if not buyer.is_verified:
            raise unverified("Your account must be verified to show interest in listings")
        listing = self.get_listing(listing_id)
        if listing.user_id == buyer.id:
            raise StateGateError(
                "You cannot show interest in your own listing", code="self_interest", status_code=400
            )
        duplicate = StateGateError(
            "You have already shown interest in this listing", code="duplicate_interest", status_code=400
        )
        existing = (
            self.db.query(Interest)
            .filter(Interest.listing_id == listing.id, Interest.buyer_id == buyer.id)
            .first()
        )
        if existing:
            raise duplicate

        interest = Interest(
            listing_id=listing.id,
            buyer_id=buyer.id,
            seller_id=listing.user_id,
            message=message or None,
        )
        self.db.add(interest)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise duplicate from exc
        self.db.refresh(interest)
        increment_counter("workflow_transition_total", transition="show_interest")

        seller = listing.seller
        if self.notifier is not None:
            self.notifier.send(
                listing.user_id,
                NotificationType.LISTING_INTEREST,
                "New Interest in Your Listing",
                f'{buyer.name} is interested in your listing: "{listing.title}". '
                "Contact admin to enable contact visibility.",
                related=RelatedRef.listing(listing.id),
                metadata={"buyerId": buyer.id, "buyerName": buyer.name, "listingTitle": listing.title},
            )
        if self.dispatcher is not None and self.mailer is not None:
            if seller is not None and seller.personal_email and not seller.can_show_contact:
                subject, html_body = interest_email(seller.name, buyer.name, listing.title, listing.price)
                self.dispatcher.dispatch("mail.interest", self.mailer.send, seller.personal_email, subject, html_body)
        return interest
