"""Tests for preferences, config loading and settings resolution.

This test suite validates:
- Preferences module functionality
- Config loader functionality (the config file is optional)
- Precedence of flags, environment, config file and defaults
- CLI commands for config management
"""
import json
import os
from argparse import Namespace

import pytest
import yaml

from iap_vps.deploy.domains import config_loader
from iap_vps.deploy.domains import preferences
from iap_vps.deploy.domains.config_loader import ConfigError

from conftest import FakeGcloud


@pytest.fixture
def temp_config_dir(temp_home):
    """Fixture to create temporary config directory."""
    config_dir = temp_home / ".config" / "iap-vps"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def sample_config_content():
    """Sample valid config content."""
    return {
        "gcp": {
            "project_id": "config-project",
            "zone": "europe-west4-b",
        },
        "instance": {
            "name": "gateway-vm",
            "machine_type": "e2-small",
            "health_timeout": 120,
        },
        "network": {
            "firewall_rule_name": "gateway-iap-ssh",
        },
        "gateway": {
            "port": 9000,
        },
        "secrets": ["ANTHROPIC_API_KEY", "TELEGRAM_BOT_TOKEN"],
    }


@pytest.fixture
def temp_config_file(temp_config_dir, sample_config_content):
    """Fixture to create a config file at the default location."""
    config_file = temp_config_dir / "config.yml"
    with open(config_file, 'w') as f:
        yaml.dump(sample_config_content, f)
    return config_file


def write_config(path, content):
    with open(path, 'w') as f:
        yaml.dump(content, f)
    return path


class TestPreferencesModule:
    """Test suite for preferences module."""

    def test_get_preference_returns_none_when_not_set(self, temp_home):
        assert preferences.get_preference("config_path") is None

    def test_set_preference_persisted_to_json_file(self, temp_home):
        preferences.set_preference("config_path", "/path/to/config.yml")

        with open(preferences.PREFERENCES_FILE, 'r') as f:
            data = json.load(f)

        assert data["config_path"] == "/path/to/config.yml"
        assert preferences.get_preference("config_path") == "/path/to/config.yml"

    def test_clear_preference_removes_value(self, temp_home):
        preferences.set_preference("config_path", "/path/to/config.yml")
        preferences.clear_preference("config_path")

        assert preferences.get_preference("config_path") is None

    def test_clear_nonexistent_preference(self, temp_home):
        """Clearing an unknown key must not create the file or raise."""
        preferences.clear_preference("nonexistent_key")
        assert not preferences.PREFERENCES_FILE.exists()

    def test_corrupt_preferences_file_is_ignored(self, temp_home):
        preferences.PREFERENCES_DIR.mkdir(parents=True)
        preferences.PREFERENCES_FILE.write_text("{not json")

        assert preferences.get_preference("config_path") is None


class TestConfigLoader:
    """Test suite for config_loader module."""

    def test_missing_config_file_yields_empty_config(self, temp_home):
        assert config_loader._get_config_path() is None
        assert config_loader.load_config() == {}

    def test_default_location_is_used(self, temp_home, temp_config_file):
        assert config_loader._get_config_path() == str(temp_config_file)
        assert config_loader.load_config()["gcp"]["project_id"] == "config-project"

    def test_preference_takes_priority_over_default(self, temp_home, temp_config_file, tmp_path):
        custom = write_config(tmp_path / "custom.yml", {"gcp": {"project_id": "custom-project"}})
        preferences.set_preference("config_path", str(custom))

        assert config_loader.load_config()["gcp"]["project_id"] == "custom-project"

    def test_preference_with_nonexistent_path_falls_back(self, temp_home, temp_config_file, tmp_path):
        preferences.set_preference("config_path", str(tmp_path / "nonexistent.yml"))

        assert config_loader._get_config_path() == str(temp_config_file)

    def test_config_path_not_cached_at_module_level(self, temp_home, tmp_path):
        """Changing the preference takes effect without a restart."""
        config1 = write_config(tmp_path / "config1.yml", {"gcp": {"project_id": "project-one"}})
        config2 = write_config(tmp_path / "config2.yml", {"gcp": {"project_id": "project-two"}})

        preferences.set_preference("config_path", str(config1))
        assert config_loader.load_config()["gcp"]["project_id"] == "project-one"

        preferences.set_preference("config_path", str(config2))
        assert config_loader.load_config()["gcp"]["project_id"] == "project-two"

    def test_empty_config_file(self, temp_home, temp_config_dir):
        (temp_config_dir / "config.yml").write_text("")

        assert config_loader.load_config() == {}

    def test_invalid_yaml_config(self, temp_home, temp_config_dir):
        (temp_config_dir / "config.yml").write_text("invalid: yaml: content: [")

        with pytest.raises(ConfigError) as exc_info:
            config_loader.load_config()

        assert "parse" in str(exc_info.value).lower()

    def test_top_level_must_be_mapping(self, temp_home, temp_config_dir):
        (temp_config_dir / "config.yml").write_text("- just\n- a list\n")

        with pytest.raises(ConfigError) as exc_info:
            config_loader.load_config()

        assert "mapping" in str(exc_info.value)

    def test_secrets_must_be_list_of_names(self, temp_home, temp_config_dir):
        write_config(temp_config_dir / "config.yml", {"secrets": {"ANTHROPIC_API_KEY": "x"}})

        with pytest.raises(ConfigError) as exc_info:
            config_loader.load_config()

        assert "secrets" in str(exc_info.value)

    def test_unsupported_auth_type(self, temp_home, temp_config_dir, tmp_path):
        sa_file = tmp_path / "sa.json"
        sa_file.write_text(json.dumps({"type": "service_account"}))
        write_config(temp_config_dir / "config.yml", {
            "authentication": {"type": "oauth2", "service_account_path": str(sa_file)},
        })

        with pytest.raises(ConfigError) as exc_info:
            config_loader.load_config()

        assert "Unsupported authentication type" in str(exc_info.value)

    def test_service_account_file_must_exist(self, temp_home, temp_config_dir):
        write_config(temp_config_dir / "config.yml", {
            "authentication": {"type": "service_account", "service_account_path": "/nonexistent/sa.json"},
        })

        with pytest.raises(ConfigError) as exc_info:
            config_loader.load_config()

        assert "Service account file not found" in str(exc_info.value)

    def test_apply_authentication_exports_credentials(self, temp_home, tmp_path, monkeypatch):
        monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
        monkeypatch.delenv("CLOUDSDK_AUTH_CREDENTIAL_FILE_OVERRIDE", raising=False)
        sa_file = tmp_path / "sa.json"
        sa_file.write_text(json.dumps({"type": "service_account"}))

        config_loader.apply_authentication({
            "authentication": {"type": "service_account", "service_account_path": str(sa_file)},
        })

        assert os.environ["GOOGLE_APPLICATION_CREDENTIALS"] == str(sa_file)
        assert os.environ["CLOUDSDK_AUTH_CREDENTIAL_FILE_OVERRIDE"] == str(sa_file)


class TestResolveSettings:
    """Flags beat environment, environment beats config file, config beats defaults."""

    def test_defaults(self):
        settings = config_loader.resolve_settings({}, {"project_id": "flag-project"}, environ={})

        assert settings.project_id == "flag-project"
        assert settings.zone == "us-central1-a"
        assert settings.region == "us-central1"
        assert settings.instance_name == "iap-vps"
        assert settings.machine_type == "e2-micro"
        assert settings.firewall_rule_name == "allow-iap-ssh"
        assert settings.deny_rule_name == "allow-iap-ssh-deny-public"
        assert settings.secret_names == []
        assert settings.gateway.port == 18789

    def test_config_file_values(self, sample_config_content):
        settings = config_loader.resolve_settings(sample_config_content, environ={})

        assert settings.project_id == "config-project"
        assert settings.zone == "europe-west4-b"
        assert settings.region == "europe-west4"
        assert settings.instance_name == "gateway-vm"
        assert settings.health_timeout == 120
        assert settings.firewall_rule_name == "gateway-iap-ssh"
        assert settings.gateway.port == 9000
        assert settings.gateway.user == "openclaw"
        assert settings.secret_names == ["ANTHROPIC_API_KEY", "TELEGRAM_BOT_TOKEN"]

    def test_environment_overrides_config(self, sample_config_content):
        environ = {"GCP_PROJECT": "env-project", "ZONE": "us-east1-b", "MACHINE_TYPE": "e2-medium"}
        settings = config_loader.resolve_settings(sample_config_content, environ=environ)

        assert settings.project_id == "env-project"
        assert settings.zone == "us-east1-b"
        assert settings.machine_type == "e2-medium"
        assert settings.instance_name == "gateway-vm"

    def test_flags_override_environment(self, sample_config_content):
        environ = {"GCP_PROJECT": "env-project", "INSTANCE_NAME": "env-name"}
        settings = config_loader.resolve_settings(
            sample_config_content,
            {"project_id": "flag-project", "instance_name": "flag-name", "zone": None},
            environ=environ,
        )

        assert settings.project_id == "flag-project"
        assert settings.instance_name == "flag-name"
        assert settings.zone == "europe-west4-b"

    def test_project_falls_back_to_gcloud_config(self):
        runner = FakeGcloud()
        runner.respond("config", "get-value", "project", stdout="gcloud-project\n")

        settings = config_loader.resolve_settings({}, environ={}, runner=runner)

        assert settings.project_id == "gcloud-project"

    def test_missing_project_raises(self):
        runner = FakeGcloud()
        runner.respond("config", "get-value", "project", stdout="(unset)\n")

        with pytest.raises(ConfigError) as exc_info:
            config_loader.resolve_settings({}, environ={}, runner=runner)

        assert "gcloud config set project" in str(exc_info.value)

    def test_invalid_health_timeout(self):
        with pytest.raises(ConfigError):
            config_loader.resolve_settings(
                {"instance": {"health_timeout": "soon"}}, {"project_id": "p-123456"}, environ={}
            )

    def test_unknown_gateway_key(self):
        with pytest.raises(ConfigError) as exc_info:
            config_loader.resolve_settings(
                {"gateway": {"colour": "blue"}}, {"project_id": "p-123456"}, environ={}
            )

        assert "colour" in str(exc_info.value)


class TestCLICommands:
    """Test suite for config management CLI commands."""

    def test_config_set_path_validates_file_exists(self, temp_home, tmp_path):
        from iap_vps.cli.main import cmd_config_set_path

        args = Namespace(path=str(tmp_path / "nonexistent.yml"))

        with pytest.raises(SystemExit) as exc_info:
            cmd_config_set_path(args)

        assert exc_info.value.code == 1

    def test_config_set_path_stores_absolute_path(self, temp_home, temp_config_file):
        from iap_vps.cli.main import cmd_config_set_path

        cmd_config_set_path(Namespace(path=str(temp_config_file)))

        assert preferences.get_preference("config_path") == str(temp_config_file.resolve())

    def test_config_show_with_preference(self, temp_home, temp_config_file, capsys):
        from iap_vps.cli.main import cmd_config_show

        preferences.set_preference("config_path", str(temp_config_file))
        cmd_config_show(Namespace())

        captured = capsys.readouterr()
        assert str(temp_config_file) in captured.out
        assert "preference" in captured.out.lower()

    def test_config_show_without_config_file(self, temp_home, capsys):
        from iap_vps.cli.main import cmd_config_show

        cmd_config_show(Namespace())

        captured = capsys.readouterr()
        assert "default" in captured.out.lower()
        assert "not found" in captured.out

    def test_config_clear_removes_preference(self, temp_home, temp_config_file, capsys):
        from iap_vps.cli.main import cmd_config_clear

        preferences.set_preference("config_path", str(temp_config_file))
        cmd_config_clear(Namespace())

        assert preferences.get_preference("config_path") is None
        assert "cleared" in capsys.readouterr().out.lower()
