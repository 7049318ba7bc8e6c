"""
Feature Catalog

The single list of feature codes a plan, add-on or toggle may reference,
plus the limit names plans carry. Plans store codes only; names and
descriptions come from here.
"""
from typing import Dict, Iterable, List, NamedTuple, Optional

FEATURE_ALL = "*"


class Feature(NamedTuple):
    code: str
    name: str
    description: str
    category: str


FEATURE_CATALOG: List[Feature] = [
    # Network
    Feature("radius_basic", "Radius Basic", "Basic Radius authentication support", "network"),
    Feature("mikrotik_api_basic", "MikroTik API Basic", "Basic MikroTik API integration", "network"),
    Feature("mikrotik_control_panel_advanced", "MikroTik Control Panel (advanced)",
            "Advanced MikroTik control panel features", "network"),
    Feature("isolir_manual", "Manual Isolir", "Manual service isolation/disconnection", "network"),
    Feature("isolir_auto", "Auto Isolir", "Automatic service isolation based on billing status", "network"),
    Feature("service_packages", "Service Packages", "Internet packages and global discount settings", "network"),

    # Communication
    Feature("wa_gateway", "WA Gateway", "WhatsApp gateway integration", "communication"),
    Feature("wa_gateway_basic", "WA Gateway (Basic)", "Basic WhatsApp gateway features", "communication"),

    # Security
    Feature("rbac_employee", "RBAC Employee", "Role-based access control for employees", "security"),
    Feature("rbac_client_reseller", "RBAC Client / Reseller",
            "Role-based access control for clients and resellers", "security"),

    # Billing
    Feature("payment_gateway", "Payment Gateway", "Payment gateway integration", "billing"),
    Feature("payment_reporting_advanced", "Payment Reporting (Advanced)",
            "Advanced payment reporting features", "billing"),
    Feature("dashboard_pendapatan", "Dashboard Pendapatan", "Revenue dashboard", "billing"),

    # Maps
    Feature("odp_maps", "ODP Maps", "ODP mapping and visualization", "maps"),
    Feature("client_maps", "Client Maps", "Client location mapping", "maps"),

    # HCM
    Feature("hcm_module", "HCM (Absensi, Gaji, Cuti, Reimbursement)", "Human Capital Management module", "hcm"),

    # AI
    Feature("ai_agent_client_wa", "AI Agent (Client via WA)",
            "AI agent for client interactions via WhatsApp", "ai"),

    # Customization
    Feature("custom_login_page", "Custom Login Page", "Customizable login page", "customization"),
    Feature("custom_isolir_page", "Custom Isolir Page", "Customizable isolir/disconnection page", "customization"),

    # Add-on markers
    Feature("addon_router", "Add-on Router", "Additional router add-on support", "addon"),
    Feature("addon_user_packs", "Add-on User Packs", "Additional user pack add-ons", "addon"),

    # Integration
    Feature("api_integration_partial", "API Integration (Partial)", "Partial API integration support", "integration"),
    Feature("api_integration_full", "API Integration (Full)", "Full API integration support", "integration"),

    # Legacy codes, still present on older plans
    Feature("client_management", "Client Management", "Subscriber management", "legacy"),
    Feature("billing_basic", "Billing Basic", "Invoices and payments", "legacy"),
    Feature("billing_full", "Billing Full", "Invoices, payments and reporting", "legacy"),
    Feature("radius_full", "Radius Full", "Full Radius support", "legacy"),
    Feature("mikrotik_api", "MikroTik API", "MikroTik API integration", "legacy"),
    Feature("voucher_basic", "Voucher Basic", "Hotspot vouchers", "legacy"),
    Feature("voucher_full", "Voucher Full", "Hotspot vouchers with packages", "legacy"),
    Feature("maps_basic", "Maps Basic", "Basic maps", "legacy"),
    Feature("maps_full", "Maps Full", "Full maps", "legacy"),
    Feature("rbac_basic", "RBAC Basic", "Basic roles", "legacy"),
    Feature("rbac_full", "RBAC Full", "All roles", "legacy"),
    Feature("hr_module", "HR Module", "Human resources", "legacy"),
    Feature("collector_module", "Collector Module", "Field collectors", "legacy"),
    Feature("technician_module", "Technician Module", "Field technicians", "legacy"),
    Feature("custom_domain", "Custom Domain", "Tenant custom domain", "legacy"),
    Feature("reports_advanced", "Advanced Reports", "Advanced reporting", "legacy"),
    Feature("api_access", "API Access", "Public API access", "legacy"),
    Feature("priority_support", "Priority Support", "Priority support", "legacy"),

    Feature(FEATURE_ALL, "Multi-tenant SaaS (Super Admin)", "Every feature, present and future", "saas"),
]

_BY_CODE: Dict[str, Feature] = {f.code: f for f in FEATURE_CATALOG}

# Every concrete code ("*" excluded)
ALL_FEATURE_CODES = frozenset(code for code in _BY_CODE if code != FEATURE_ALL)

# Limit names plans may carry. Missing names resolve to 0.
LIMIT_MAX_ROUTERS = "max_routers"
LIMIT_MAX_USERS = "max_users"
LIMIT_MAX_VOUCHERS = "max_vouchers"
LIMIT_MAX_ODC = "max_odc"
LIMIT_MAX_ODP = "max_odp"
LIMIT_MAX_CLIENTS = "max_clients"
LIMIT_WA_QUOTA_MONTHLY = "wa_quota_monthly"

LIMIT_NAMES = (
    LIMIT_MAX_ROUTERS,
    LIMIT_MAX_USERS,
    LIMIT_MAX_VOUCHERS,
    LIMIT_MAX_ODC,
    LIMIT_MAX_ODP,
    LIMIT_MAX_CLIENTS,
    LIMIT_WA_QUOTA_MONTHLY,
)

# limit_boost add-on keys -> limit name they raise
BOOST_KEYS = {
    "add_routers": LIMIT_MAX_ROUTERS,
    "add_users": LIMIT_MAX_USERS,
    "add_clients": LIMIT_MAX_CLIENTS,
    "add_wa_quota": LIMIT_WA_QUOTA_MONTHLY,
    "add_vouchers": LIMIT_MAX_VOUCHERS,
    "add_odc": LIMIT_MAX_ODC,
    "add_odp": LIMIT_MAX_ODP,
}


def get_feature(code: str) -> Optional[Feature]:
    return _BY_CODE.get(code)


def is_valid_feature_code(code: str) -> bool:
    return code in _BY_CODE


def invalid_feature_codes(codes: Iterable[str]) -> List[str]:
    """Codes not in the catalog. Empty strings are ignored."""
    return [c for c in codes if c and c not in _BY_CODE]
