"""Shared fixtures: fake gcloud runner and fake Secret Manager client."""
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest
from google.api_core import exceptions as gcp_exceptions

from iap_vps.deploy.domains import preferences
from iap_vps.deploy.domains.gcloud import GcloudError, GcloudRunner
from iap_vps.deploy.domains.models import DeploySettings


class FakeGcloud(GcloudRunner):
    """Records gcloud invocations and answers them from canned responses.

    Responses are keyed by argument prefix; the longest matching prefix wins.
    Unregistered `describe` commands fail (the resource does not exist),
    everything else succeeds with empty output.
    """

    def __init__(self, project_id="test-project", responses=None):
        super().__init__(project_id)
        self.calls = []
        self.responses = dict(responses or {})

    def respond(self, *prefix, returncode=0, stdout=""):
        self.responses[tuple(prefix)] = (returncode, stdout)

    def run(self, args, capture=True, check=True, project=True):
        args = list(args)
        self.calls.append(args)

        returncode, stdout = (1, "") if "describe" in args else (0, "")
        for prefix in sorted(self.responses, key=len, reverse=True):
            if tuple(args[:len(prefix)]) == prefix:
                returncode, stdout = self.responses[prefix]
                break

        if check and returncode != 0:
            raise GcloudError(args, returncode, "fake failure")
        return subprocess.CompletedProcess(args, returncode, stdout, "")

    def called(self, *prefix):
        return [call for call in self.calls if tuple(call[:len(prefix)]) == prefix]


class FakeSecretManager:
    """In-memory stand-in for secretmanager.SecretManagerServiceClient."""

    def __init__(self, project_id="test-project", secrets=None):
        self.project_id = project_id
        # name -> list of payload bytes, newest last
        self.secrets = {name: list(versions) for name, versions in (secrets or {}).items()}
        self.denied = set()

    def _name(self, resource):
        return resource.split("/secrets/")[1].split("/")[0]

    def list_secrets(self, request):
        assert request["parent"] == f"projects/{self.project_id}"
        return [SimpleNamespace(name=f"projects/{self.project_id}/secrets/{name}") for name in self.secrets]

    def get_secret(self, request):
        name = self._name(request["name"])
        if name not in self.secrets:
            raise gcp_exceptions.NotFound(f"Secret {name} not found")
        return SimpleNamespace(name=request["name"])

    def access_secret_version(self, request):
        name = self._name(request["name"])
        if name in self.denied:
            raise gcp_exceptions.PermissionDenied(f"Access to {name} denied")
        if not self.secrets.get(name):
            raise gcp_exceptions.NotFound(f"Secret {name} has no versions")
        return SimpleNamespace(payload=SimpleNamespace(data=self.secrets[name][-1]))

    def create_secret(self, request):
        name = request["secret_id"]
        if name in self.secrets:
            raise gcp_exceptions.AlreadyExists(f"Secret {name} already exists")
        self.secrets[name] = []
        return SimpleNamespace(name=f"{request['parent']}/secrets/{name}")

    def add_secret_version(self, request):
        name = self._name(request["parent"])
        self.secrets[name].append(request["payload"]["data"])
        return SimpleNamespace(name=f"{request['parent']}/versions/{len(self.secrets[name])}")


@pytest.fixture
def fake_gcloud():
    return FakeGcloud()


@pytest.fixture
def fake_secret_manager():
    return FakeSecretManager()


@pytest.fixture
def settings():
    return DeploySettings(project_id="test-project", health_timeout=0)


@pytest.fixture
def temp_home(tmp_path, monkeypatch):
    """Fixture to create a temporary home directory for testing."""
    fake_home = tmp_path / "home"
    fake_home.mkdir()
    monkeypatch.setenv("HOME", str(fake_home))
    monkeypatch.setattr(Path, "home", lambda: fake_home)

    fake_config_dir = fake_home / ".config" / "iap-vps"
    monkeypatch.setattr(preferences, "PREFERENCES_DIR", fake_config_dir)
    monkeypatch.setattr(preferences, "PREFERENCES_FILE", fake_config_dir / "preferences.json")

    return fake_home
