"""
Database Models

All tenant-scoped models include tenant_id for multi-tenant isolation.
Plans, add-ons and global feature toggles are the only global tables.
"""
from app.models.tenant import Tenant
from app.models.user import User
from app.models.plan import Plan, Addon, TenantAddon, FeatureToggle
from app.models.client import Client, ClientGroup, ServicePackage, Discount
from app.models.billing import Invoice, InvoiceItem, Payment, IsolirLog
from app.models.campaign import WACampaign, WARecipient, WAMessageLog
from app.models.radius import Router, VoucherPackage, Voucher, RadiusSession, RadiusAuthAttempt

__all__ = [
    "Tenant",
    "User",
    "Plan",
    "Addon",
    "TenantAddon",
    "FeatureToggle",
    "Client",
    "ClientGroup",
    "ServicePackage",
    "Discount",
    "Invoice",
    "InvoiceItem",
    "Payment",
    "IsolirLog",
    "WACampaign",
    "WARecipient",
    "WAMessageLog",
    "Router",
    "VoucherPackage",
    "Voucher",
    "RadiusSession",
    "RadiusAuthAttempt",
]
