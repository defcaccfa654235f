import json

import pytest

from factories import make_settings
from gmsa_provisioner import cli
from gmsa_provisioner.config.settings import Settings
from gmsa_provisioner.integrations.directory import MockDirectoryClient
from gmsa_provisioner.models.provisioning import RootKeyPolicy


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    settings = make_settings(audit_db_path=str(tmp_path / "audit.db"))
    directory = MockDirectoryClient(settings=settings)
    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    monkeypatch.setattr(cli, "get_directory_client", lambda _settings: directory)
    return settings, directory


def test_provision_prints_json_report(cli_env, capsys):
    _, directory = cli_env

    exit_code = cli.main(
        [
            "provision",
            "--account-name", "gmsa-app-service",
            "--dns-host-name", "appserver.contoso.com",
            "--principal", "CONTOSO\\AppServers$",
            "--spn", "HTTP/appserver.contoso.com",
            "--json",
        ]
    )

    assert exit_code == 0
    report = json.loads(capsys.readouterr().out)
    assert report["Status"] == "Success"
    assert directory.create_parameters[0]["PrincipalsAllowedToRetrieveManagedPassword"] == ["CONTOSO\\AppServers$"]
    assert "Description" not in directory.create_parameters[0]


def test_failed_provision_exits_non_zero(cli_env, capsys):
    exit_code = cli.main(["provision", "--account-name", "gmsa-app-service", "--dns-host-name", " ", "--json"])

    assert exit_code == 1
    assert json.loads(capsys.readouterr().out)["Error"] == "ValidationError"


def test_history_lists_audit_rows(cli_env, capsys):
    cli.main(["provision", "--account-name", "gmsa-app-service", "--dns-host-name", "appserver.contoso.com"])
    capsys.readouterr()

    assert cli.main(["history", "--limit", "5"]) == 0
    assert "gmsa-app-service" in capsys.readouterr().out


def test_configuration_error_exits_with_two(monkeypatch):
    settings = make_settings(directory_provider="powershell", domain_controller="")
    monkeypatch.setattr(cli, "get_settings", lambda: settings)

    def unconfigured(_settings):
        raise ValueError("GMSA_DOMAIN_CONTROLLER must be set for the powershell directory provider")

    monkeypatch.setattr(cli, "get_directory_client", unconfigured)

    assert cli.main(["provision", "--account-name", "a", "--dns-host-name", "b"]) == 2


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("GMSA_ROOT_KEY_POLICY", "immediate")
    monkeypatch.setenv("GMSA_WEBHOOK_TOKEN_REQUIRED", "true")
    monkeypatch.setenv("GMSA_REMOTE_CALL_TIMEOUT_SECONDS", "12.5")

    settings = Settings(_env_file=None)

    assert settings.root_key_policy is RootKeyPolicy.IMMEDIATE
    assert settings.webhook_token_required is True
    assert settings.remote_call_timeout_seconds == 12.5
    assert settings.secret_store_provider == "keyvault"


def test_misspelled_provider_exits_with_two(monkeypatch):
    from gmsa_provisioner.integrations import directory as directory_module

    settings = make_settings(secret_store_provider="key-vault", directory_provider="powershel")
    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    monkeypatch.setattr(directory_module, "_directory_instance", None)

    assert cli.main(["provision", "--account-name", "gmsa-app-service", "--dns-host-name", "appserver.contoso.com"]) == 2
