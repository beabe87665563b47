import logging
import os
import re
from dataclasses import dataclass
from datetime import date

from sqlalchemy.orm import Session

from campus.core.security import hash_password
from campus.db.models.user import ROLE_SUPERADMIN, STATUS_ACTIVE, User

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: str) -> str:
    return value.strip().lower()


@dataclass
class SuperadminSettings:
    email: str | None
    password: str | None
    username: str = "superadmin"
    name: str = "Super Admin"
    school_email: str | None = None
    university_name: str = "University Not Specified"
    date_of_birth: date | None = None

    @classmethod
    def from_env(cls) -> "SuperadminSettings":
        email = os.getenv("SUPERADMIN_EMAIL")
        dob_raw = os.getenv("SUPERADMIN_DOB")
        return cls(
            email=normalize_email(email) if email else None,
            password=os.getenv("SUPERADMIN_PASSWORD") or None,
            username=os.getenv("SUPERADMIN_USERNAME", "superadmin"),
            name=os.getenv("SUPERADMIN_NAME", "Super Admin"),
            school_email=os.getenv("SUPERADMIN_SCHOOL_EMAIL") or None,
            university_name=os.getenv("SUPERADMIN_UNIVERSITY", "University Not Specified"),
            date_of_birth=date.fromisoformat(dob_raw) if dob_raw else None,
        )


@dataclass
class BootstrapResult:
    created: bool = False
    already_present: bool = False
    skipped_missing_config: bool = False


def ensure_superadmin(db: Session, settings: SuperadminSettings) -> BootstrapResult:
    """Create the configured superadmin unless one already exists. Safe to run on every start."""
    result = BootstrapResult()

    existing = db.query(User).filter(User.role == ROLE_SUPERADMIN).first()
    if existing:
        result.already_present = True
        logger.info("bootstrap_superadmin status=present user_id=%s", existing.id)
        return result

    if not settings.email or not settings.password:
        result.skipped_missing_config = True
        logger.warning("bootstrap_superadmin status=skipped reason=missing_email_or_password")
        return result
    if not EMAIL_RE.match(settings.email):
        raise ValueError(f"Invalid SUPERADMIN_EMAIL: {settings.email}")

    db.add(
        User(
            name=settings.name,
            username=settings.username,
            email=settings.email,
            school_email=normalize_email(settings.school_email or settings.email),
            hashed_password=hash_password(settings.password),
            date_of_birth=settings.date_of_birth,
            university_name=settings.university_name,
            role=ROLE_SUPERADMIN,
            status=STATUS_ACTIVE,
            is_verified=True,
            can_show_contact=True,
        )
    )
    db.commit()
    result.created = True
    logger.info("bootstrap_superadmin status=created email=%s", settings.email)
    return result
