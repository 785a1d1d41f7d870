"""
Tests for the management CLI
"""

from unittest.mock import AsyncMock, patch

import pytest

from libsql_jwt_router import cli


class TestCli:
    """init / status / reconcile against the memory backend."""

    def test_init_then_status(self, config_env, capsys):
        assert cli.main(["init"]) == 0
        assert cli.main(["status"]) == 0

        output = capsys.readouterr().out
        assert "Registry schema ready" in output
        assert "Tenants: 0" in output

    def test_status_without_registry_table(self, config_env, capsys):
        assert cli.main(["status"]) == 1
        assert "Cannot query" in capsys.readouterr().out

    def test_reconcile_report_only(self, config_env, capsys):
        cli.main(["init"])
        databases = [{"Name": "user-orphan-12345678", "Hostname": "x"}]

        with patch("libsql_jwt_router.provisioning_service.TenantProvisioningService.list_databases",
                   new_callable=AsyncMock, return_value=databases), \
             patch("libsql_jwt_router.provisioning_service.TenantProvisioningService.delete_database",
                   new_callable=AsyncMock) as delete:
            assert cli.main(["reconcile"]) == 0

        delete.assert_not_awaited()
        assert "user-orphan-12345678 (kept)" in capsys.readouterr().out

    def test_reconcile_delete(self, config_env, capsys):
        cli.main(["init"])
        databases = [{"Name": "user-orphan-12345678", "Hostname": "x"}]

        with patch("libsql_jwt_router.provisioning_service.TenantProvisioningService.list_databases",
                   new_callable=AsyncMock, return_value=databases), \
             patch("libsql_jwt_router.provisioning_service.TenantProvisioningService.delete_database",
                   new_callable=AsyncMock) as delete:
            assert cli.main(["reconcile", "--delete"]) == 0

        delete.assert_awaited_once_with("user-orphan-12345678")
        assert "user-orphan-12345678 (deleted)" in capsys.readouterr().out

    def test_missing_configuration_exits(self, monkeypatch):
        monkeypatch.delenv("REGISTRY_DB_URL", raising=False)
        monkeypatch.delenv("SUPABASE_URL", raising=False)

        with pytest.raises(SystemExit):
            cli.main(["status"])

    def test_unknown_command(self):
        with pytest.raises(SystemExit):
            cli.main(["explode"])
