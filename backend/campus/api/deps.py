from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from campus.core.dispatch import Dispatcher, get_dispatcher
from campus.core.mailer import Mailer, get_mailer
from campus.db.session import get_db, get_session_factory
from campus.services.identity import IdentityService
from campus.services.marketplace import MarketplaceService
from campus.services.notifications import Notifier
from campus.services.verification import VerificationWorkflow


def get_notifier(
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    session_factory: sessionmaker = Depends(get_session_factory),
) -> Notifier:
    return Notifier(db, dispatcher=dispatcher, session_factory=session_factory)


def get_identity_service(
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    mailer: Mailer = Depends(get_mailer),
) -> IdentityService:
    return IdentityService(db, dispatcher=dispatcher, mailer=mailer)


def get_verification_workflow(
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    mailer: Mailer = Depends(get_mailer),
) -> VerificationWorkflow:
    return VerificationWorkflow(db, notifier=notifier, mailer=mailer, dispatcher=dispatcher)


def get_marketplace_service(
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    mailer: Mailer = Depends(get_mailer),
) -> MarketplaceService:
    return MarketplaceService(db, notifier=notifier, mailer=mailer, dispatcher=dispatcher)
