import enum
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from campus.db.base import Base, utc_now_naive


class NotificationType(str, enum.Enum):
    LISTING_INTEREST = "listing_interest"
    LISTING_SOLD = "listing_sold"
    LOST_FOUND = "lost_found"
    NEWS_URGENT = "news_urgent"
    VERIFICATION_APPROVED = "verification_approved"
    CONTACT_APPROVED = "contact_approved"
    COMMENT_REPLY = "comment_reply"
    SYSTEM = "system"


class RelatedKind(str, enum.Enum):
    LISTING = "Listing"
    LOST_FOUND = "LostFound"
    NEWS = "News"
    INTEREST = "Interest"


@dataclass(frozen=True)
class RelatedRef:
    """Reference from a notification to the entity that triggered it."""

    kind: RelatedKind
    id: int

    @classmethod
    def listing(cls, listing_id: int) -> "RelatedRef":
        return cls(RelatedKind.LISTING, listing_id)

    @classmethod
    def lost_found(cls, item_id: int) -> "RelatedRef":
        return cls(RelatedKind.LOST_FOUND, item_id)

    @classmethod
    def news(cls, news_id: int) -> "RelatedRef":
        return cls(RelatedKind.NEWS, news_id)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        CheckConstraint(
            "(related_type IS NULL AND related_id IS NULL) OR "
            "(related_type IS NOT NULL AND related_id IS NOT NULL)",
            name="ck_notifications_related_pair",
        ),
        Index("ix_notifications_user_id_is_read", "user_id", "is_read"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, native_enum=False, length=40, values_callable=_enum_values, validate_strings=True)
    )
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    related_type: Mapped[RelatedKind | None] = mapped_column(
        Enum(RelatedKind, native_enum=False, length=40, values_callable=_enum_values, validate_strings=True),
        nullable=True,
    )
    related_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    meta_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)

    @property
    def related(self) -> RelatedRef | None:
        if self.related_type is None or self.related_id is None:
            return None
        return RelatedRef(RelatedKind(self.related_type), self.related_id)

    @related.setter
    def related(self, ref: RelatedRef | None) -> None:
        self.related_type = ref.kind if ref else None
        self.related_id = ref.id if ref else None
