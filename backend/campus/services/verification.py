"""Account verification and contact-approval transitions.

States only move forward: unverified -> verified -> verified with contact
approved. Each transition commits its own state change first; the in-app
notification and the approval email follow as best-effort side effects.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from campus.core.dispatch import Dispatcher
from campus.core.errors import InternalError, NotFoundError, StateGateError
from campus.core.mailer import Mailer, approval_email
from campus.core.metrics import increment_counter
from campus.db.models.listing import Listing
from campus.db.models.notification import NotificationType
from campus.db.models.user import User
from campus.services.notifications import Notifier

logger = logging.getLogger(__name__)


class VerificationWorkflow:
    def __init__(self, db: Session, *, notifier: Notifier, mailer: Mailer, dispatcher: Dispatcher):
        self.db = db
        self.notifier = notifier
        self.mailer = mailer
        self.dispatcher = dispatcher

    def _get_user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def _send_approval(self, user: User, approval_type: str) -> None:
        subject, html_body = approval_email(user.name, approval_type)
        self.dispatcher.dispatch("mail.approval", self.mailer.send, user.email, subject, html_body)

    def verify(self, user_id: int) -> User:
        user = self._get_user(user_id)
        if user.is_verified:
            raise StateGateError("User is already verified", code="already_verified", status_code=400)

        user.is_verified = True
        self.db.commit()
        self.db.refresh(user)
        increment_counter("workflow_transition_total", transition="verify")

        self.notifier.send(
            user.id,
            NotificationType.VERIFICATION_APPROVED,
            "Account Verified",
            "Your account has been verified! You can now use all features of the platform.",
        )
        self._send_approval(user, "Verified")
        return user

    def approve_contact(self, user_id: int) -> tuple[User, int]:
        """Approve contact visibility and flag every listing the user owns right now.

        Returns the user and the number of listings updated. Listings created
        later keep ``contact_approved=False`` until approved one by one.
        """
        user = self._get_user(user_id)
        if not user.is_verified:
            raise StateGateError("User must be verified first", code="not_verified_yet", status_code=400)
        if user.can_show_contact:
            raise StateGateError("Contact is already approved", code="already_approved", status_code=400)

        try:
            user.can_show_contact = True
            updated = (
                self.db.query(Listing)
                .filter(Listing.user_id == user.id)
                .update({Listing.contact_approved: True}, synchronize_session="fetch")
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("approve_contact_failed user_id=%s", user.id)
            raise InternalError("Failed to approve contact") from exc
        self.db.refresh(user)
        increment_counter("workflow_transition_total", transition="approve_contact")

        self.notifier.send(
            user.id,
            NotificationType.CONTACT_APPROVED,
            "Contact Visibility Approved",
            "Your contact information is now visible to other users. "
            "Interested buyers can now contact you directly!",
        )
        self._send_approval(user, "Contact Approved")
        return user, int(updated or 0)

    def approve_listing_contact(self, listing_id: int) -> Listing:
        listing = self.db.get(Listing, listing_id)
        if not listing:
            raise NotFoundError("Listing not found")
        listing.contact_approved = True
        self.db.commit()
        self.db.refresh(listing)
        increment_counter("workflow_transition_total", transition="approve_listing_contact")
        return listing
