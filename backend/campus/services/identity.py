import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campus.core.dispatch import Dispatcher
from campus.core.errors import AppError, AuthError, DuplicateError, NotFoundError, StateGateError, ValidationError
from campus.core.mailer import Mailer, password_changed_email, password_reset_email
from campus.core.metrics import increment_counter
from campus.core.security import (
    MAX_RESET_CODE_ATTEMPTS,
    MIN_PASSWORD_LENGTH,
    RESET_CODE_EXPIRE_MINUTES,
    burn_password_check,
    generate_reset_code,
    hash_password,
    hash_reset_code,
    verify_password,
    verify_reset_code,
)
from campus.db.base import utc_now_naive
from campus.db.models.password_reset import PasswordReset
from campus.db.models.user import ROLE_USER, STATUS_ACTIVE, STATUS_INACTIVE, User
from campus.schemas.auth import ProfileUpdateIn, RegisterIn

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"


def _invalid_credentials() -> AuthError:
    return AuthError(INVALID_CREDENTIALS, code="invalid_credentials")


def _invalid_reset_code() -> ValidationError:
    return ValidationError("Invalid or expired reset code", code="invalid_reset_code")


class IdentityService:
    def __init__(self, db: Session, *, dispatcher: Dispatcher, mailer: Mailer):
        self.db = db
        self.dispatcher = dispatcher
        self.mailer = mailer

    def _find_by(self, column, value) -> User | None:
        return self.db.query(User).filter(column == value).first()

    def register(self, payload: RegisterIn) -> User:
        if self._find_by(User.email, payload.email):
            raise DuplicateError("User already exists with this email", code="duplicate_email")
        if self._find_by(User.username, payload.username):
            raise DuplicateError("Username already taken", code="duplicate_username")
        if self._find_by(User.school_email, payload.school_email):
            raise DuplicateError("School email already registered", code="duplicate_school_email")

        user = User(
            name=payload.name,
            username=payload.username,
            email=payload.email,
            school_email=payload.school_email,
            personal_email=payload.personal_email,
            hashed_password=hash_password(payload.password),
            phone=payload.phone or None,
            date_of_birth=payload.date_of_birth,
            university_name=payload.university_name,
            role=ROLE_USER,
            status=STATUS_ACTIVE,
            is_verified=False,
            can_show_contact=False,
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateError("Duplicate entry", code="duplicate") from exc
        self.db.refresh(user)
        return user

    def _check_credentials(self, user: User | None, password: str) -> User:
        if user is None:
            burn_password_check()
            raise _invalid_credentials()
        if not verify_password(password, user.hashed_password):
            raise _invalid_credentials()
        if not user.is_active:
            raise AuthError("Account is inactive. Please contact administrator", code="account_inactive")
        return user

    def authenticate(self, email: str, password: str) -> User:
        return self._check_credentials(self._find_by(User.email, email.strip().lower()), password)

    def authenticate_superadmin(self, email: str, password: str) -> User:
        user = self._find_by(User.email, email.strip().lower())
        if user is not None and not user.is_superadmin:
            # Same hashing cost and same payload as an unknown account.
            burn_password_check()
            raise _invalid_credentials()
        return self._check_credentials(user, password)

    def change_password(self, user: User, current_password: str, new_password: str) -> None:
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"New password must be at least {MIN_PASSWORD_LENGTH} characters long",
                code="password_too_short",
            )
        if not verify_password(current_password, user.hashed_password):
            raise AuthError("Current password is incorrect", code="wrong_current_password")

        user.hashed_password = hash_password(new_password)
        self.db.commit()
        self._send_password_changed(user)

    def _send_password_changed(self, user: User) -> None:
        changed_at = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        subject, html_body = password_changed_email(user.name, changed_at)
        self.dispatcher.dispatch("mail.password_changed", self.mailer.send, user.email, subject, html_body)

    def request_password_reset(self, email: str) -> None:
        """Issue a single-use reset code and mail it to the registered address.

        Unknown addresses return silently so the caller cannot tell whether an
        account exists. Earlier unused codes of the same user stop working.
        """
        user = self._find_by(User.email, email.strip().lower())
        if user is None:
            increment_counter("password_reset_total", result="unknown_account")
            return

        now = utc_now_naive()
        (
            self.db.query(PasswordReset)
            .filter(PasswordReset.user_id == user.id, PasswordReset.used_at.is_(None))
            .update({PasswordReset.used_at: now}, synchronize_session=False)
        )
        code = generate_reset_code()
        self.db.add(
            PasswordReset(
                user_id=user.id,
                email=user.email,
                code_hash=hash_reset_code(code),
                expires_at=now + timedelta(minutes=RESET_CODE_EXPIRE_MINUTES),
                attempts=0,
            )
        )
        self.db.commit()
        increment_counter("password_reset_total", result="requested")

        subject, html_body = password_reset_email(user.name, code, RESET_CODE_EXPIRE_MINUTES)
        self.dispatcher.dispatch("mail.password_reset", self.mailer.send, user.email, subject, html_body)

    def _open_reset(self, email: str, code: str) -> tuple[User, PasswordReset]:
        user = self._find_by(User.email, email.strip().lower())
        if user is None:
            raise _invalid_reset_code()
        reset = (
            self.db.query(PasswordReset)
            .filter(
                PasswordReset.user_id == user.id,
                PasswordReset.used_at.is_(None),
                PasswordReset.expires_at > utc_now_naive(),
            )
            .order_by(PasswordReset.created_at.desc(), PasswordReset.id.desc())
            .first()
        )
        if reset is None:
            raise _invalid_reset_code()
        if reset.attempts >= MAX_RESET_CODE_ATTEMPTS:
            raise AppError("Too many invalid attempts", code="too_many_attempts", status_code=429)
        if not verify_reset_code(code, reset.code_hash):
            reset.attempts += 1
            self.db.commit()
            raise _invalid_reset_code()
        return user, reset

    def check_reset_code(self, email: str, code: str) -> User:
        user, _ = self._open_reset(email, code)
        return user

    def reset_password(self, email: str, code: str, new_password: str) -> User:
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
                code="password_too_short",
            )
        user, reset = self._open_reset(email, code)
        user.hashed_password = hash_password(new_password)
        reset.used_at = utc_now_naive()
        self.db.commit()
        increment_counter("password_reset_total", result="completed")
        self._send_password_changed(user)
        return user

    def update_status(self, user_id: int, status: str) -> User:
        if status not in (STATUS_ACTIVE, STATUS_INACTIVE):
            raise ValidationError('Status must be either "active" or "inactive"')
        user = self.db.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        if user.is_superadmin and status == STATUS_INACTIVE:
            raise StateGateError("Cannot deactivate superadmin account", code="superadmin_protected")
        user.status = status
        self.db.commit()
        self.db.refresh(user)
        return user

    def update_profile(self, user: User, payload: ProfileUpdateIn) -> User:
        changes = payload.model_dump(exclude_unset=True)
        username = changes.get("username")
        if username and username != user.username and self._find_by(User.username, username):
            raise DuplicateError("Username already taken", code="duplicate_username")
        email = changes.get("email")
        if email and email != user.email and self._find_by(User.email, email):
            raise DuplicateError("Email already taken", code="duplicate_email")

        for field_name in ("name", "username", "email"):
            if changes.get(field_name):
                setattr(user, field_name, changes[field_name])
        if "phone" in changes:
            user.phone = changes["phone"] or None
        if "personal_email" in changes:
            user.personal_email = changes["personal_email"] or None
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateError("Duplicate entry", code="duplicate") from exc
        self.db.refresh(user)
        return user
