from campus.core.permissions import has_permission, normalize_role, permissions_matrix_payload


def test_normalize_role_unknown_defaults_to_user():
    assert normalize_role("unknown-role") == "user"
    assert normalize_role(None) == "user"
    assert normalize_role(" SuperAdmin ") == "superadmin"


def test_has_permission_matrix_basics():
    assert has_permission("superadmin", "users.verify") is True
    assert has_permission("superadmin", "audit.view") is True
    assert has_permission("user", "users.verify") is False
    assert has_permission("user", "news.publish") is False


def test_permissions_matrix_payload_contains_expected_roles():
    payload = permissions_matrix_payload()
    roles = [x["role"] for x in payload["roles"]]
    assert roles == ["user", "superadmin"]
    assert "users.verify" in payload["permissionLabels"]
