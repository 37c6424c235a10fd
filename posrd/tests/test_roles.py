import pytest

from posrd.app.roles import (
    ALL_PERMISSIONS,
    ROLES,
    can_access_module,
    has_permission,
    permissions_for,
    role_options,
    validate_role_assignment,
)


def test_admin_has_every_permission():
    assert set(permissions_for("ADMIN")) == set(ALL_PERMISSIONS)


def test_manager_cannot_touch_ncf_or_delete_users():
    assert has_permission("MANAGER", "sales:view_reports") is True
    assert has_permission("MANAGER", "financial:manage_ncf") is False
    assert has_permission("MANAGER", "users:delete") is False


def test_cashier_and_reporter_scopes():
    assert has_permission("cashier", "sales:create") is True
    assert has_permission("CASHIER", "sales:view_reports") is False
    assert has_permission("REPORTER", "sales:create") is False
    assert has_permission("REPORTER", "system:view_audit_logs") is True
    assert can_access_module("CASHIER", "financial") is False
    assert can_access_module("REPORTER", "financial") is True


def test_unknown_role_has_nothing():
    assert permissions_for(None) == []
    assert has_permission("GUEST", "sales:read") is False


def test_unknown_permission_code_raises():
    with pytest.raises(ValueError):
        has_permission("ADMIN", "sales:teleport")


def test_role_assignment_rules():
    assert validate_role_assignment("ADMIN", "ADMIN") is True
    assert validate_role_assignment("MANAGER", "ADMIN") is False
    assert validate_role_assignment("MANAGER", "REPORTER") is True
    assert validate_role_assignment("CASHIER", "MANAGER") is False
    assert validate_role_assignment("CASHIER", "CASHIER") is True


def test_role_options_cover_all_roles():
    opts = role_options()
    assert [o["value"] for o in opts] == list(ROLES)
    assert opts[2]["label"] == "Cajero"
