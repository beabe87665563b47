from typing import Literal

Permission = Literal[
    "users.manage",
    "users.verify",
    "listings.manage",
    "news.publish",
    "audit.view",
    "metrics.view",
]

PERMISSIONS_BY_ROLE: dict[str, set[Permission]] = {
    "user": set(),
    "superadmin": {
        "users.manage",
        "users.verify",
        "listings.manage",
        "news.publish",
        "audit.view",
        "metrics.view",
    },
}


def normalize_role(role: str | None) -> str:
    value = (role or "").strip().lower()
    if value in PERMISSIONS_BY_ROLE:
        return value
    return "user"


def has_permission(role: str | None, permission: Permission) -> bool:
    normalized = normalize_role(role)
    return permission in PERMISSIONS_BY_ROLE.get(normalized, set())


PERMISSION_LABELS: dict[Permission, str] = {
    "users.manage": "Manage user accounts and status",
    "users.verify": "Verify users and approve contact visibility",
    "listings.manage": "Manage any marketplace listing",
    "news.publish": "Publish news",
    "audit.view": "View the audit trail",
    "metrics.view": "View service metrics",
}


def permissions_matrix_payload() -> dict:
    role_order = ["user", "superadmin"]
    return {
        "roles": [
            {"role": role, "permissions": sorted(PERMISSIONS_BY_ROLE.get(role, set()))}
            for role in role_order
        ],
        "permissionLabels": PERMISSION_LABELS,
    }
