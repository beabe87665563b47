from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from campus.db.base import Base, utc_now_naive

ROLE_USER = "user"
ROLE_SUPERADMIN = "superadmin"
STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    username: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    school_email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    personal_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    hashed_password: Mapped[str] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    profile_picture: Mapped[str | None] = mapped_column(String(255), nullable=True)
    university_name: Mapped[str] = mapped_column(String(200))
    role: Mapped[str] = mapped_column(String(20), default=ROLE_USER, index=True)
    status: Mapped[str] = mapped_column(String(20), default=STATUS_ACTIVE, index=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    can_show_contact: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    @property
    def is_superadmin(self) -> bool:
        return self.role == ROLE_SUPERADMIN

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE
