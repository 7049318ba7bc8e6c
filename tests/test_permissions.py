"""
RBAC table tests
"""
import pytest

from app.core.exceptions import PermissionDenied
from app.core.permissions import (
    check_all_capabilities,
    check_any_capability,
    check_capability,
    get_role_capabilities,
    has_all_capabilities,
    has_any_capability,
    has_capability,
)


class TestHasCapability:
    def test_super_admin_has_everything(self):
        assert has_capability("super_admin", "billing.collect")
        assert has_capability("super_admin", "anything.at.all")

    def test_namespace_wildcard(self):
        assert has_capability("owner", "client.delete")
        assert has_capability("owner", "wa.send")
        assert has_capability("owner", "report.billing")

    def test_wildcard_does_not_leak_to_other_namespaces(self):
        # "client.*" must not match "clientele.view"
        assert not has_capability("owner", "clientele.view")

    def test_owner_cannot_collect(self):
        assert not has_capability("owner", "billing.collect")

    def test_exact_entries(self):
        assert has_capability("collector", "billing.collect")
        assert not has_capability("collector", "billing.create")
        assert has_capability("finance", "billing.confirm")
        assert not has_capability("technician", "client.update")

    @pytest.mark.parametrize("role", ["", "root", "OWNER", "manager"])
    def test_unknown_roles_denied(self, role):
        assert not has_capability(role, "client.view")
        assert get_role_capabilities(role) == []

    def test_empty_capability_denied(self):
        assert not has_capability("owner", "")


class TestCombinators:
    def test_any(self):
        assert has_any_capability("collector", ["billing.confirm", "billing.collect"])
        assert not has_any_capability("client", ["billing.confirm", "billing.collect"])

    def test_all(self):
        assert has_all_capabilities("admin", ["client.view", "client.create"])
        assert not has_all_capabilities("admin", ["client.view", "client.delete"])
        assert not has_all_capabilities("admin", [])


class TestChecks:
    def test_check_passes_silently(self):
        check_capability("admin", "wa.view")

    def test_check_raises_with_payload(self):
        with pytest.raises(PermissionDenied) as exc:
            check_capability("technician", "billing.view")
        assert exc.value.status_code == 403
        assert exc.value.payload == {"capabilities": ["billing.view"]}

    def test_check_any_raises(self):
        with pytest.raises(PermissionDenied):
            check_any_capability("client", ["billing.collect", "billing.confirm"])

    def test_check_all_reports_missing(self):
        with pytest.raises(PermissionDenied) as exc:
            check_all_capabilities("hr", ["user.view", "user.delete"])
        assert exc.value.payload == {"capabilities": ["user.delete"]}
