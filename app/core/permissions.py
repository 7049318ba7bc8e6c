"""
Permission System (RBAC)

Static role -> capability table. Pure and stateless: it works on the role
string carried in the token claims, never on the database.

Matching rules:
- "*" grants every capability
- "ns.*" grants every capability that starts with "ns."
- anything else must match exactly
- unknown roles are denied everything
"""
from typing import Dict, FrozenSet, Iterable, List

from app.core.exceptions import PermissionDenied

# Tenant management
CAP_TENANT_VIEW = "tenant.view"
CAP_TENANT_UPDATE = "tenant.update"
CAP_TENANT_CREATE = "tenant.create"
CAP_TENANT_DELETE = "tenant.delete"

# User management
CAP_USER_CREATE = "user.create"
CAP_USER_UPDATE = "user.update"
CAP_USER_DISABLE = "user.disable"
CAP_USER_VIEW = "user.view"
CAP_USER_DELETE = "user.delete"

# Client (subscriber) management
CAP_CLIENT_CREATE = "client.create"
CAP_CLIENT_UPDATE = "client.update"
CAP_CLIENT_VIEW = "client.view"
CAP_CLIENT_SUSPEND = "client.suspend"
CAP_CLIENT_DELETE = "client.delete"

# Billing
CAP_BILLING_VIEW = "billing.view"
CAP_BILLING_COLLECT = "billing.collect"
CAP_BILLING_CONFIRM = "billing.confirm"
CAP_BILLING_CREATE = "billing.create"
CAP_BILLING_UPDATE = "billing.update"

# Network
CAP_NETWORK_VIEW = "network.view"
CAP_NETWORK_MANAGE = "network.manage"

# Maps
CAP_MAPS_VIEW = "maps.view"
CAP_MAPS_UPDATE = "maps.update"

# HR
CAP_HR_VIEW = "hr.view"
CAP_HR_MANAGE = "hr.manage"

# Field staff
CAP_TECHNICIAN_VIEW = "technician.view"
CAP_TECHNICIAN_MANAGE = "technician.manage"
CAP_COLLECTOR_VIEW = "collector.view"
CAP_COLLECTOR_MANAGE = "collector.manage"

# WhatsApp
CAP_WA_VIEW = "wa.view"
CAP_WA_SEND = "wa.send"

# Add-ons
CAP_ADDON_VIEW = "addon.view"
CAP_ADDON_MANAGE = "addon.manage"

# Reports
CAP_REPORT_VIEW = "report.view"
CAP_REPORT_HR = "report.hr"
CAP_REPORT_BILLING = "report.billing"

CAP_SYSTEM_SETTINGS = "system.settings"
CAP_ALL = "*"

ROLE_SUPER_ADMIN = "super_admin"
ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_FINANCE = "finance"
ROLE_HR = "hr"
ROLE_TECHNICIAN = "technician"
ROLE_COLLECTOR = "collector"
ROLE_CLIENT = "client"

ROLE_CAPABILITIES: Dict[str, List[str]] = {
    ROLE_SUPER_ADMIN: [CAP_ALL],
    ROLE_OWNER: [
        CAP_TENANT_VIEW, CAP_TENANT_UPDATE,
        "user.*",
        "client.*",
        CAP_BILLING_VIEW, CAP_BILLING_CREATE, CAP_BILLING_UPDATE, CAP_BILLING_CONFIRM,
        "network.*",
        "maps.*",
        "hr.*",
        "technician.*",
        "collector.*",
        "wa.*",
        "addon.*",
        "report.*",
        CAP_SYSTEM_SETTINGS,
    ],
    ROLE_ADMIN: [
        CAP_USER_CREATE, CAP_USER_UPDATE, CAP_USER_VIEW,
        CAP_CLIENT_CREATE, CAP_CLIENT_UPDATE, CAP_CLIENT_VIEW, CAP_CLIENT_SUSPEND,
        CAP_BILLING_VIEW, CAP_BILLING_COLLECT,
        CAP_NETWORK_VIEW, CAP_NETWORK_MANAGE,
        CAP_MAPS_VIEW, CAP_MAPS_UPDATE,
        CAP_TECHNICIAN_VIEW,
        CAP_COLLECTOR_VIEW,
        CAP_WA_VIEW, CAP_WA_SEND,
        CAP_REPORT_VIEW,
    ],
    ROLE_FINANCE: [
        CAP_BILLING_VIEW, CAP_BILLING_CONFIRM, CAP_BILLING_CREATE, CAP_BILLING_UPDATE,
        CAP_COLLECTOR_VIEW,
        CAP_CLIENT_VIEW,
        CAP_REPORT_BILLING,
    ],
    ROLE_HR: [
        CAP_USER_CREATE, CAP_USER_VIEW,
        CAP_HR_VIEW, CAP_HR_MANAGE,
        CAP_REPORT_HR,
    ],
    ROLE_TECHNICIAN: [
        CAP_NETWORK_VIEW,
        CAP_MAPS_VIEW,
        CAP_CLIENT_VIEW,
        CAP_TECHNICIAN_VIEW, CAP_TECHNICIAN_MANAGE,
    ],
    ROLE_COLLECTOR: [
        CAP_BILLING_VIEW, CAP_BILLING_COLLECT,
        CAP_CLIENT_VIEW,
        CAP_COLLECTOR_VIEW, CAP_COLLECTOR_MANAGE,
    ],
    ROLE_CLIENT: [
        CAP_BILLING_VIEW,
        CAP_CLIENT_VIEW,
    ],
}

KNOWN_ROLES: FrozenSet[str] = frozenset(ROLE_CAPABILITIES)


def _grants(entry: str, capability: str) -> bool:
    if entry == CAP_ALL:
        return True
    if entry.endswith(".*"):
        return capability.startswith(entry[:-1])
    return entry == capability


def get_role_capabilities(role: str) -> List[str]:
    """Raw table entries for a role (wildcards unexpanded). Unknown role -> []."""
    return list(ROLE_CAPABILITIES.get(role, []))


def has_capability(role: str, capability: str) -> bool:
    entries = ROLE_CAPABILITIES.get(role)
    if not entries or not capability:
        return False
    return any(_grants(entry, capability) for entry in entries)


def has_any_capability(role: str, capabilities: Iterable[str]) -> bool:
    return any(has_capability(role, cap) for cap in capabilities)


def has_all_capabilities(role: str, capabilities: Iterable[str]) -> bool:
    caps = list(capabilities)
    return bool(caps) and all(has_capability(role, cap) for cap in caps)


def check_capability(role: str, capability: str) -> None:
    """Raise PermissionDenied unless the role holds the capability."""
    if not has_capability(role, capability):
        raise PermissionDenied(
            f"Role '{role}' lacks capability '{capability}'",
            capabilities=[capability],
        )


def check_any_capability(role: str, capabilities: Iterable[str]) -> None:
    caps = list(capabilities)
    if not has_any_capability(role, caps):
        raise PermissionDenied(
            f"Role '{role}' lacks all of: {', '.join(caps)}",
            capabilities=caps,
        )


def check_all_capabilities(role: str, capabilities: Iterable[str]) -> None:
    caps = list(capabilities)
    missing = [cap for cap in caps if not has_capability(role, cap)]
    if missing or not caps:
        raise PermissionDenied(
            f"Role '{role}' lacks: {', '.join(missing)}",
            capabilities=missing,
        )
