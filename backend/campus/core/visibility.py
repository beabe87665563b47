"""Outward-facing user representations.

Contact fields are included only for verified, contact-approved users. When
the gate is closed the keys are left out entirely, not set to null.
"""
from campus.db.models.user import User

CONTACT_FIELDS = ("phone", "email", "personalEmail")


def can_expose_contact(user: User) -> bool:
    return bool(user.is_verified and user.can_show_contact)


def _profile_picture_url(user: User) -> str | None:
    if not user.profile_picture:
        return None
    return f"/uploads/profile-pictures/{user.profile_picture}"


def public_user_payload(user: User) -> dict:
    data = {
        "id": user.id,
        "name": user.name,
        "username": user.username,
        "profilePicture": user.profile_picture,
        "profilePictureUrl": _profile_picture_url(user),
        "isVerified": bool(user.is_verified),
        "canShowContact": bool(user.can_show_contact),
    }
    if can_expose_contact(user):
        data["phone"] = user.phone
        data["email"] = user.email
        data["personalEmail"] = user.personal_email
    return data


def private_user_payload(user: User) -> dict:
    """Full account view for the owner and for superadmins. Never includes the password hash."""
    return {
        "id": user.id,
        "name": user.name,
        "username": user.username,
        "email": user.email,
        "schoolEmail": user.school_email,
        "personalEmail": user.personal_email,
        "phone": user.phone,
        "dateOfBirth": user.date_of_birth.isoformat() if user.date_of_birth else None,
        "profilePicture": user.profile_picture,
        "profilePictureUrl": _profile_picture_url(user),
        "universityName": user.university_name,
        "role": user.role,
        "status": user.status,
        "isVerified": bool(user.is_verified),
        "canShowContact": bool(user.can_show_contact),
        "createdAt": user.created_at.isoformat() if user.created_at else None,
        "updatedAt": user.updated_at.isoformat() if user.updated_at else None,
    }
