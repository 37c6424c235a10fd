from __future__ import annotations

from typing import Dict, FrozenSet, List

ROLES = ("ADMIN", "MANAGER", "CASHIER", "REPORTER")

# module -> actions; permission codes are "<module>:<action>".
MODULE_ACTIONS: Dict[str, tuple] = {
    "users": ("create", "read", "update", "delete", "change_role"),
    "employees": ("create", "read", "update", "delete", "view_salary", "manage_schedule"),
    "sales": ("create", "read", "update", "delete", "refund", "view_reports"),
    "inventory": ("create", "read", "update", "delete", "manage_suppliers", "view_costs"),
    "financial": ("view_reports", "manage_ncf", "configure_taxes", "view_profit_margins"),
    "system": ("manage_settings", "view_audit_logs", "backup", "integrate"),
}

ALL_PERMISSIONS: FrozenSet[str] = frozenset(
    f"{module}:{action}" for module, actions in MODULE_ACTIONS.items() for action in actions
)


def _without(*codes: str) -> FrozenSet[str]:
    return ALL_PERMISSIONS - frozenset(codes)


ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "ADMIN": ALL_PERMISSIONS,
    "MANAGER": _without(
        "users:create",
        "users:update",
        "users:delete",
        "users:change_role",
        "employees:delete",
        "sales:delete",
        "inventory:delete",
        "financial:manage_ncf",
        "financial:configure_taxes",
        "system:manage_settings",
        "system:backup",
        "system:integrate",
    ),
    "CASHIER": frozenset(
        {
            "employees:read",
            "sales:create",
            "sales:read",
            "inventory:read",
        }
    ),
    "REPORTER": frozenset(
        {
            "employees:read",
            "sales:read",
            "sales:view_reports",
            "inventory:read",
            "financial:view_reports",
            "financial:view_profit_margins",
            "system:view_audit_logs",
        }
    ),
}

ROLE_NAMES: Dict[str, str] = {
    "ADMIN": "Administrador",
    "MANAGER": "Gerente",
    "CASHIER": "Cajero",
    "REPORTER": "Reportero",
}


def has_permission(role: str | None, code: str) -> bool:
    if code not in ALL_PERMISSIONS:
        raise ValueError(f"unknown permission code: {code}")
    return code in ROLE_PERMISSIONS.get((role or "").upper(), frozenset())


def has_any_permission(role: str | None, codes) -> bool:
    return any(has_permission(role, c) for c in codes)


def permissions_for(role: str | None) -> List[str]:
    return sorted(ROLE_PERMISSIONS.get((role or "").upper(), frozenset()))


ROLE_DESCRIPTIONS: Dict[str, str] = {
    "ADMIN": "Acceso completo al sistema con permisos para gestionar todos los aspectos del negocio",
    "MANAGER": "Gestión operacional del negocio con acceso a reportes y administración de personal",
    "CASHIER": "Operaciones básicas de venta y consulta de inventario",
    "REPORTER": "Acceso exclusivo a reportes y análisis de datos del negocio",
}


def can_access_module(role: str | None, module: str) -> bool:
    granted = ROLE_PERMISSIONS.get((role or "").upper(), frozenset())
    return any(code.split(":", 1)[0] == module for code in granted)


def role_options() -> List[dict]:
    return [
        {"value": r, "label": ROLE_NAMES[r], "description": ROLE_DESCRIPTIONS[r]}
        for r in ROLES
    ]


def validate_role_assignment(assigner_role: str | None, target_role: str) -> bool:
    assigner = (assigner_role or "").upper()
    target = (target_role or "").upper()
    if target == "ADMIN":
        return assigner == "ADMIN"
    if target in {"MANAGER", "REPORTER"}:
        return assigner in {"ADMIN", "MANAGER"}
    return True
