"""
Permission catalog: the closed ``module:action`` vocabulary.

Codenames such as ``auditProgram:commit`` are the stable wire vocabulary
shared with routes and clients. Only entries listed here may be
provisioned; ``validate_catalog`` compares the table against this list at
startup and ``sync_permission_catalog`` (provisioning service) writes any
missing rows.

Default role grants are applied when a tenant is onboarded and when the
catalog is synced.
"""

import logging

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════
# 1. CATALOG
# ═══════════════════════════════════════════════════════════════
PERMISSION_CATALOG: dict[str, dict[str, str]] = {
    "tenant": {
        "read": "View tenant information",
        "update": "Update tenant settings",
    },
    "campus": {
        "create": "Create new campus",
        "read": "View campuses",
        "update": "Update campus information",
        "delete": "Delete campus",
    },
    "department": {
        "create": "Create new department",
        "read": "View departments",
        "update": "Update department information",
        "delete": "Delete department",
        "assignHOD": "Assign HOD to department",
    },
    "user": {
        "create": "Create new user",
        "read": "View users",
        "update": "Update user information",
        "delete": "Delete user",
        "assignRole": "Assign roles to user",
        "removeRole": "Remove roles from user",
    },
    "role": {
        "create": "Create new role",
        "read": "View roles",
        "update": "Update role information",
        "delete": "Delete role",
    },
    "rolePermission": {
        "read": "View role permissions",
        "update": "Update role permissions",
    },
    "auditProgram": {
        "create": "Create audit program",
        "read": "View audit programs",
        "update": "Update audit program",
        "delete": "Delete audit program",
        "commit": "Commit audit program for approval",
        "approve": "Approve audit program",
        "review": "Review audit program",
        "submit": "Submit audit program",
        "publish": "Publish audit program",
        "export": "Export audit program",
        "manage": "Manage audit programs",
    },
    "audit": {
        "create": "Create audit",
        "read": "View audits",
        "update": "Update audit",
        "delete": "Delete audit",
    },
    "auditFinding": {
        "create": "Create audit finding",
        "read": "View audit findings",
        "update": "Update audit finding",
        "delete": "Delete audit finding",
        "review": "Accept or refuse audit findings",
        "commit": "Commit findings for departmental review",
    },
    "correctiveAction": {
        "create": "Create corrective action",
        "read": "View corrective actions",
        "update": "Update corrective action",
        "assign": "Assign corrective action",
        "commit": "Commit correction requirement to the department",
        "propose": "Submit root cause and proposed action",
        "review": "Review appropriateness of proposed action",
        "followUp": "Record follow-up of corrective action",
        "verify": "Review effectiveness of corrective action",
        "close": "Close verified corrective action",
    },
    "notification": {
        "send": "Send notifications",
        "read": "Read notifications",
    },
    "auditLog": {
        "read": "View audit logs",
    },
}


# ═══════════════════════════════════════════════════════════════
# 2. DEFAULT ROLES
# ═══════════════════════════════════════════════════════════════
DEFAULT_ROLES: dict[str, str] = {
    "SYSTEM_ADMIN": "System administrator with full tenant management permissions",
    "ADMIN": "Institution administrator with management capabilities",
    "PRINCIPAL": "Principal for institutional oversight and approval processes",
    "MR": "Management representative overseeing the quality management system",
    "HOD": "Head of Department for department-specific management",
    "HOD_AUDITOR": "Head of Department who also conducts audits",
    "AUDITOR": "Auditor for conducting institutional audits and assessments",
    "STAFF": "Staff member with basic access to institutional resources",
    "REGISTRAR": "Registrar responsible for records and academic administration",
    "TRAINER": "Trainer delivering institutional training",
    "TRAINEE": "Trainee with read access to training resources",
}

# Roles that stay in place for the lifetime of the tenant
NON_REMOVABLE_ROLES = frozenset({"SYSTEM_ADMIN", "PRINCIPAL", "MR", "HOD", "STAFF"})

HOD_ROLE = "HOD"
STAFF_ROLE = "STAFF"
MR_ROLE = "MR"
PRINCIPAL_ROLE = "PRINCIPAL"

_READ_ALL = [f"{m}:read" for m in PERMISSION_CATALOG if "read" in PERMISSION_CATALOG[m]]

_AUDITOR_GRANTS = [
    "audit:read", "audit:update",
    "auditFinding:create", "auditFinding:read", "auditFinding:update", "auditFinding:commit",
    "correctiveAction:read", "correctiveAction:create", "correctiveAction:commit",
    "correctiveAction:review", "correctiveAction:followUp", "correctiveAction:verify",
    "auditProgram:read", "notification:read",
]

_HOD_GRANTS = [
    "department:read", "user:read",
    "auditFinding:read", "auditFinding:review",
    "correctiveAction:read", "correctiveAction:propose", "correctiveAction:update",
    "auditProgram:read", "notification:read",
]

DEFAULT_ROLE_GRANTS: dict[str, list[str]] = {
    "SYSTEM_ADMIN": ["*"],
    "ADMIN": [
        c for c in (f"{m}:{a}" for m, actions in PERMISSION_CATALOG.items() for a in actions)
        if not c.startswith(("tenant:update", "rolePermission:"))
    ],
    "PRINCIPAL": _READ_ALL + ["auditProgram:approve", "auditProgram:review", "notification:send"],
    "MR": _READ_ALL + [
        "auditProgram:create", "auditProgram:update", "auditProgram:commit",
        "auditProgram:submit", "auditProgram:publish", "auditProgram:export",
        "auditProgram:manage", "audit:create", "audit:update",
        "correctiveAction:assign", "correctiveAction:verify", "correctiveAction:close",
        "notification:send",
    ],
    "HOD": _HOD_GRANTS,
    "HOD_AUDITOR": sorted(set(_HOD_GRANTS) | set(_AUDITOR_GRANTS)),
    "AUDITOR": _AUDITOR_GRANTS,
    "STAFF": ["department:read", "correctiveAction:read", "notification:read"],
    "REGISTRAR": ["user:read", "department:read", "campus:read", "notification:read"],
    "TRAINER": ["department:read", "notification:read"],
    "TRAINEE": ["notification:read"],
}


# ═══════════════════════════════════════════════════════════════
# 3. HELPERS
# ═══════════════════════════════════════════════════════════════
def parse_codename(codename: str) -> tuple[str, str]:
    """Split ``module:action`` into its parts, rejecting malformed input."""
    module, sep, action = codename.partition(":")
    if not sep or not module or not action or ":" in action:
        raise ValueError(f"Malformed permission codename: {codename!r}")
    return module, action


def is_catalogued(module: str, action: str) -> bool:
    return action in PERMISSION_CATALOG.get(module, {})


def iter_catalog():
    """Yield ``(module, action, description)`` for every catalog entry."""
    for module, actions in PERMISSION_CATALOG.items():
        for action, description in actions.items():
            yield module, action, description


def all_codenames() -> list[str]:
    return [f"{m}:{a}" for m, a, _ in iter_catalog()]


def default_grants_for(role_name: str) -> list[str]:
    """Codenames granted by default to a role; ``*`` expands to the whole catalog."""
    grants = DEFAULT_ROLE_GRANTS.get(role_name, [])
    if "*" in grants:
        return all_codenames()
    return list(grants)


def check_catalog_integrity() -> list[str]:
    """Return problems with the static catalog itself (empty when sound)."""
    problems = []
    for role_name in DEFAULT_ROLE_GRANTS:
        if role_name not in DEFAULT_ROLES:
            problems.append(f"grants defined for unknown role {role_name}")
        for codename in default_grants_for(role_name):
            module, action = parse_codename(codename)
            if not is_catalogued(module, action):
                problems.append(f"{role_name} grants uncatalogued permission {codename}")
    return problems


def validate_catalog() -> dict:
    """
    Compare the ``permissions`` table against the catalog.

    Returns ``{"missing": [...], "unknown": [...], "problems": [...]}``.
    ``missing`` entries are catalogued but not provisioned; ``unknown``
    entries exist in the table but are not part of the vocabulary.
    """
    from qms.models import db
    from qms.models.auth import Permission

    stored = {p.codename for p in db.session.query(Permission).all()}
    catalogued = set(all_codenames())
    result = {
        "missing": sorted(catalogued - stored),
        "unknown": sorted(stored - catalogued),
        "problems": check_catalog_integrity(),
    }
    if result["missing"] or result["unknown"] or result["problems"]:
        logger.warning(
            "Permission catalog drift: %d missing, %d unknown, %d problems",
            len(result["missing"]), len(result["unknown"]), len(result["problems"]),
        )
    return result
