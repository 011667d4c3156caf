import importlib.util
from pathlib import Path

import pytest

from authgate.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestBootstrapAdmin:
    async def test_creates_admin_account(self, bootstrap):
        result = await bootstrap.bootstrap_admin("root@example.com", "Sup3r-Secret-Pass")

        assert result["status"] == "created"
        account = get_runtime().store.get_account(result["account_id"])
        assert account.roles == ["USER", "ADMIN"]

    async def test_promotes_existing_account(self, bootstrap):
        runtime = get_runtime()
        existing = runtime.store.create_account("ops@example.com", "hash")

        result = await bootstrap.bootstrap_admin("ops@example.com", "Sup3r-Secret-Pass")
        assert result["status"] == "promoted"
        assert "ADMIN" in runtime.store.get_account(existing.id).roles

        again = await bootstrap.bootstrap_admin("ops@example.com", "Sup3r-Secret-Pass")
        assert again["status"] == "already_admin"

    async def test_dry_run_changes_nothing(self, bootstrap):
        result = await bootstrap.bootstrap_admin("new@example.com", "Sup3r-Secret-Pass", dry_run=True)
        assert result["status"] == "dry_run"
        assert get_runtime().store.get_account_by_email("new@example.com") is None

    def test_password_policy(self, bootstrap):
        assert bootstrap.validate_password("Sup3r-Secret-Pass") is True
        assert bootstrap.validate_password("short1A!") is False
        assert bootstrap.validate_password("alllowercaseletters") is False
