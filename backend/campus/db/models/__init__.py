from campus.db.models.audit_log import AuditLog
from campus.db.models.interest import Interest
from campus.db.models.listing import Listing
from campus.db.models.lost_found import LostFound
from campus.db.models.news import News, NewsComment, NewsReaction
from campus.db.models.notification import Notification
from campus.db.models.password_reset import PasswordReset
from campus.db.models.user import User

__all__ = [
    "AuditLog",
    "Interest",
    "Listing",
    "LostFound",
    "News",
    "NewsComment",
    "NewsReaction",
    "Notification",
    "PasswordReset",
    "User",
]
