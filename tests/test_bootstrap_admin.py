import pytest

from scripts.bootstrap_admin import bootstrap_admin
from staffauth.service.errors import PasswordPolicyViolation
from staffauth.service.runtime import get_runtime
from staffauth.storage.models import Role

PASSWORD = "Secure#Passw0rd"


async def test_creates_tenant_and_admin():
    result = await bootstrap_admin("root@acme.test", PASSWORD, tenant_name="Acme")

    identity = get_runtime().store.get_identity(result["identity_id"])
    assert result["status"] == "created"
    assert identity.role == Role.ADMIN
    assert get_runtime().store.get_tenant(result["tenant_id"]).name == "Acme"


async def test_promotes_existing_identity():
    runtime = get_runtime()
    tenant = runtime.store.create_tenant("Acme")
    staff = await runtime.auth.provision_identity(tenant.id, "ana@acme.test", PASSWORD)

    result = await bootstrap_admin("ana@acme.test", PASSWORD)

    assert result["status"] == "promoted"
    assert runtime.store.get_identity(staff.id).role == Role.ADMIN
    assert (await bootstrap_admin("ana@acme.test", PASSWORD))["status"] == "already_admin"


async def test_weak_password_is_rejected():
    with pytest.raises(PasswordPolicyViolation):
        await bootstrap_admin("root@acme.test", "weak")


async def test_dry_run_makes_no_changes():
    result = await bootstrap_admin("root@acme.test", PASSWORD, dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_identity_by_email("root@acme.test") is None


async def test_unknown_tenant_id():
    with pytest.raises(ValueError):
        await bootstrap_admin("root@acme.test", PASSWORD, tenant_id="missing")
