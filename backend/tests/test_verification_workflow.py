from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from campus.core.dispatch import InlineDispatcher
from campus.core.errors import InternalError, NotFoundError, StateGateError
from campus.core.metrics import counter_value
from campus.db.models.interest import Interest
from campus.db.models.listing import Listing
from campus.db.models.notification import Notification, NotificationType
from campus.db.models.user import User
from campus.services.marketplace import MarketplaceService
from campus.services.notifications import Notifier
from campus.services.verification import VerificationWorkflow
from conftest import RecordingMailer, make_user


def _workflow(db, mailer=None) -> VerificationWorkflow:
    return VerificationWorkflow(
        db,
        notifier=Notifier(db),
        mailer=mailer or RecordingMailer(),
        dispatcher=InlineDispatcher(),
    )


def _marketplace(db, mailer=None) -> MarketplaceService:
    return MarketplaceService(
        db,
        notifier=Notifier(db),
        mailer=mailer or RecordingMailer(),
        dispatcher=InlineDispatcher(),
    )


def _listing(db, seller: User, title: str = "Desk lamp") -> Listing:
    listing = Listing(
        user_id=seller.id,
        title=title,
        description="Barely used",
        price=Decimal("12.50"),
        category="furniture",
        location="Dorm A",
        images=[],
    )
    db.add(listing)
    db.commit()
    db.refresh(listing)
    return listing


def _notifications(db, user_id: int, type_: NotificationType) -> list[Notification]:
    return db.query(Notification).filter(Notification.user_id == user_id, Notification.type == type_).all()


def _assert_contact_implies_verified(db):
    for user in db.query(User).all():
        assert not user.can_show_contact or user.is_verified


def test_verify_twice_is_rejected_and_notifies_once(db_session):
    user = make_user(db_session, username="maya")
    mailer = RecordingMailer()
    workflow = _workflow(db_session, mailer)

    workflow.verify(user.id)
    with pytest.raises(StateGateError) as exc_info:
        workflow.verify(user.id)

    assert exc_info.value.code == "already_verified"
    assert exc_info.value.status_code == 400
    db_session.refresh(user)
    assert user.is_verified is True
    assert len(_notifications(db_session, user.id, NotificationType.VERIFICATION_APPROVED)) == 1
    assert [to for to, _, _ in mailer.sent] == ["maya@example.edu"]
    _assert_contact_implies_verified(db_session)


def test_verify_unknown_user(db_session):
    with pytest.raises(NotFoundError):
        _workflow(db_session).verify(404)


def test_verify_survives_mail_failure(db_session):
    user = make_user(db_session, username="nate")
    _workflow(db_session, RecordingMailer(fail=True)).verify(user.id)
    db_session.refresh(user)
    assert user.is_verified is True
    assert len(_notifications(db_session, user.id, NotificationType.VERIFICATION_APPROVED)) == 1


def test_approve_contact_requires_verification(db_session):
    user = make_user(db_session, username="olga")
    with pytest.raises(StateGateError) as exc_info:
        _workflow(db_session).approve_contact(user.id)

    assert exc_info.value.code == "not_verified_yet"
    db_session.refresh(user)
    assert user.can_show_contact is False
    assert db_session.query(Notification).count() == 0
    _assert_contact_implies_verified(db_session)


def test_approve_contact_twice(db_session):
    user = make_user(db_session, username="pete", is_verified=True)
    workflow = _workflow(db_session)
    workflow.approve_contact(user.id)
    with pytest.raises(StateGateError) as exc_info:
        workflow.approve_contact(user.id)
    assert exc_info.value.code == "already_approved"
    assert len(_notifications(db_session, user.id, NotificationType.CONTACT_APPROVED)) == 1


def test_approve_contact_cascades_to_existing_listings_only(db_session):
    seller = make_user(db_session, username="quinn", is_verified=True)
    bystander = make_user(db_session, username="rita", is_verified=True)
    first = _listing(db_session, seller, "Desk lamp")
    second = _listing(db_session, seller, "Textbook bundle")
    unrelated = _listing(db_session, bystander, "Bicycle")

    _, updated = _workflow(db_session).approve_contact(seller.id)
    assert updated == 2

    later = _marketplace(db_session).create_listing(
        seller,
        title="Mini fridge",
        description="Works fine",
        price=Decimal("40"),
        category="appliances",
        location="Dorm B",
    )

    for listing in (first, second, unrelated, later):
        db_session.refresh(listing)
    assert first.contact_approved is True
    assert second.contact_approved is True
    assert unrelated.contact_approved is False
    assert later.contact_approved is False
    _assert_contact_implies_verified(db_session)


def test_approve_listing_contact_is_per_listing(db_session):
    seller = make_user(db_session, username="sam", is_verified=True)
    listing = _listing(db_session, seller)
    other = _listing(db_session, seller, "Chair for sale")
    workflow = _workflow(db_session)

    assert workflow.approve_listing_contact(listing.id).contact_approved is True
    db_session.refresh(other)
    assert other.contact_approved is False
    with pytest.raises(NotFoundError):
        workflow.approve_listing_contact(9999)


def test_show_interest_requires_verified_buyer(db_session):
    seller = make_user(db_session, username="tara", is_verified=True)
    buyer = make_user(db_session, username="umar")
    listing = _listing(db_session, seller)
    with pytest.raises(StateGateError) as exc_info:
        _marketplace(db_session).show_interest(listing.id, buyer)
    assert exc_info.value.code == "unverified"
    assert exc_info.value.status_code == 403


def test_show_interest_on_own_listing(db_session):
    seller = make_user(db_session, username="vera", is_verified=True)
    listing = _listing(db_session, seller)
    with pytest.raises(StateGateError) as exc_info:
        _marketplace(db_session).show_interest(listing.id, seller)
    assert exc_info.value.code == "self_interest"
    assert db_session.query(Interest).count() == 0


def test_show_interest_twice(db_session):
    seller = make_user(db_session, username="walt", is_verified=True)
    buyer = make_user(db_session, username="xena", is_verified=True)
    listing = _listing(db_session, seller)
    service = _marketplace(db_session)

    interest = service.show_interest(listing.id, buyer, "Still available?")
    with pytest.raises(StateGateError) as exc_info:
        service.show_interest(listing.id, buyer)

    assert exc_info.value.code == "duplicate_interest"
    assert exc_info.value.status_code == 400
    assert db_session.query(Interest).filter(Interest.listing_id == listing.id).count() == 1
    assert interest.seller_id == seller.id


def test_show_interest_missing_listing(db_session):
    buyer = make_user(db_session, username="yuri", is_verified=True)
    with pytest.raises(NotFoundError):
        _marketplace(db_session).show_interest(12345, buyer)


def test_show_interest_notifies_seller_and_mails_personal_address(db_session):
    seller = make_user(db_session, username="zoe", is_verified=True, personal_email="zoe@mail.example.com")
    buyer = make_user(db_session, username="adam", is_verified=True, phone="+19998887777")
    listing = _listing(db_session, seller)
    mailer = RecordingMailer()

    _marketplace(db_session, mailer).show_interest(listing.id, buyer)

    [notification] = _notifications(db_session, seller.id, NotificationType.LISTING_INTEREST)
    assert notification.related_id == listing.id
    assert notification.meta_json["buyerId"] == buyer.id
    [(to, _, body)] = mailer.sent
    assert to == "zoe@mail.example.com"
    assert "administrator" in body
    assert buyer.phone not in body
    assert buyer.email not in body


def test_show_interest_skips_mail_when_seller_already_approved(db_session):
    seller = make_user(
        db_session,
        username="bella",
        is_verified=True,
        can_show_contact=True,
        personal_email="bella@mail.example.com",
    )
    buyer = make_user(db_session, username="carl", is_verified=True)
    listing = _listing(db_session, seller)
    mailer = RecordingMailer()

    _marketplace(db_session, mailer).show_interest(listing.id, buyer)
    assert mailer.sent == []
    assert len(_notifications(db_session, seller.id, NotificationType.LISTING_INTEREST)) == 1


class UnstoredNotifier(Notifier):
    def _persist(self, notification):
        raise OperationalError("INSERT INTO notifications", {}, Exception("disk I/O error"))


def test_approve_contact_rolls_back_flag_and_cascade_together(db_session, monkeypatch):
    seller = make_user(db_session, username="dora", is_verified=True)
    first = _listing(db_session, seller, "Desk lamp")
    second = _listing(db_session, seller, "Office chair")

    def commit_fails():
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", commit_fails)
    with pytest.raises(InternalError):
        _workflow(db_session).approve_contact(seller.id)
    monkeypatch.undo()

    for row in (seller, first, second):
        db_session.refresh(row)
    assert seller.can_show_contact is False
    assert first.contact_approved is False
    assert second.contact_approved is False
    assert _notifications(db_session, seller.id, NotificationType.CONTACT_APPROVED) == []
    assert counter_value("workflow_transition_total", transition="approve_contact") == 0
    _assert_contact_implies_verified(db_session)


def test_verify_completes_when_notification_cannot_be_stored(db_session):
    user = make_user(db_session, username="elsa")
    mailer = RecordingMailer()
    workflow = VerificationWorkflow(
        db_session,
        notifier=UnstoredNotifier(db_session),
        mailer=mailer,
        dispatcher=InlineDispatcher(),
    )

    result = workflow.verify(user.id)

    db_session.refresh(user)
    assert result.id == user.id
    assert user.is_verified is True
    assert db_session.query(Notification).count() == 0
    assert counter_value("notifications_failed_total", type="verification_approved") == 1
    assert [to for to, _, _ in mailer.sent] == ["elsa@example.edu"]


def test_approve_contact_completes_when_notification_cannot_be_stored(db_session):
    seller = make_user(db_session, username="finn", is_verified=True)
    listing = _listing(db_session, seller)
    workflow = VerificationWorkflow(
        db_session,
        notifier=UnstoredNotifier(db_session),
        mailer=RecordingMailer(),
        dispatcher=InlineDispatcher(),
    )

    _, updated = workflow.approve_contact(seller.id)

    db_session.refresh(seller)
    db_session.refresh(listing)
    assert updated == 1
    assert seller.can_show_contact is True
    assert listing.contact_approved is True
    assert db_session.query(Notification).count() == 0
