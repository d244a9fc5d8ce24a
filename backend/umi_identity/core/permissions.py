"""Permission model carried in access tokens.

On the wire a permission is a flat ``claimType:claimValue`` string taken
from a role's claims. Inside the service the known permissions form a
closed :class:`Permission` enum; anything else a tenant defines is kept as
a :class:`CustomPermission` so it still round-trips through tokens.
``<type>:*`` grants every permission of that type, ``system:*`` grants all.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Union


class Permission(str, Enum):
    SYSTEM_ALL = "system:*"
    SYSTEM_MONITOR = "system:monitor"

    TENANT_ALL = "tenant:*"
    TENANT_READ = "tenant:read"
    TENANT_MANAGE = "tenant:manage"

    USERS_ALL = "users:*"
    USERS_CREATE = "users:create"
    USERS_READ = "users:read"
    USERS_UPDATE = "users:update"
    USERS_DELETE = "users:delete"

    PATIENTS_ALL = "patients:*"
    PATIENTS_CREATE = "patients:create"
    PATIENTS_READ = "patients:read"
    PATIENTS_UPDATE = "patients:update"
    PATIENTS_DELETE = "patients:delete"

    PRODUCTS_ALL = "products:*"
    PRODUCTS_CREATE = "products:create"
    PRODUCTS_READ = "products:read"
    PRODUCTS_UPDATE = "products:update"
    PRODUCTS_DELETE = "products:delete"

    INVENTORY_ALL = "inventory:*"
    INVENTORY_READ = "inventory:read"
    INVENTORY_MANAGE = "inventory:manage"
    INVENTORY_TRANSFER = "inventory:transfer"

    PRESCRIPTIONS_ALL = "prescriptions:*"
    PRESCRIPTIONS_CREATE = "prescriptions:create"
    PRESCRIPTIONS_READ = "prescriptions:read"
    PRESCRIPTIONS_DISPENSE = "prescriptions:dispense"

    SALES_ALL = "sales:*"
    SALES_CREATE = "sales:create"
    SALES_READ = "sales:read"
    SALES_REFUND = "sales:refund"

    PAYMENTS_ALL = "payments:*"
    PAYMENTS_APPROVE = "payments:approve"

    REPORTS_ALL = "reports:*"
    REPORTS_READ = "reports:read"
    REPORTS_SALES = "reports:sales"

    BRANCHES_ALL = "branches:*"
    BRANCHES_READ = "branches:read"
    BRANCHES_CROSS_ACCESS = "branches:cross_access"

    @property
    def claim_type(self) -> str:
        return self.value.split(":", 1)[0]


@dataclass(frozen=True)
class CustomPermission:
    """A tenant-defined permission outside the built-in set."""

    value: str

    @property
    def claim_type(self) -> str:
        return self.value.split(":", 1)[0]


AnyPermission = Union[Permission, CustomPermission]

_KNOWN = {member.value: member for member in Permission}


def format_claim(claim_type: str, claim_value: str) -> str:
    return f"{claim_type}:{claim_value}"


def parse_permission(raw: str) -> AnyPermission:
    normalized = raw.strip().lower()
    known = _KNOWN.get(normalized)
    if known is not None:
        return known
    return CustomPermission(normalized)


def flatten_role_claims(claims: Iterable[tuple[str, str]]) -> list[str]:
    """Flatten (claim_type, claim_value) pairs from all roles into unique strings.

    Claims keep the case they were stored with; comparisons ignore case only
    in :func:`has_permission`.
    """
    return sorted({format_claim(claim_type, value) for claim_type, value in claims})


def has_permission(granted: Iterable[str], required: AnyPermission | str) -> bool:
    """Return True if ``granted`` satisfies ``required``, honouring wildcards."""
    if isinstance(required, str):
        required = parse_permission(required)
    granted_set = {g.strip().lower() for g in granted}
    return (
        required.value in granted_set
        or f"{required.claim_type}:*" in granted_set
        or Permission.SYSTEM_ALL.value in granted_set
    )
