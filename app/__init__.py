"""
RRNet Control Plane

Multi-tenant backend for Internet Service Providers: tenant isolation,
plan/add-on entitlements, RBAC, billing and auto-isolation, WhatsApp
campaigns and the RADIUS REST surface.
"""

__version__ = "1.0.0"
