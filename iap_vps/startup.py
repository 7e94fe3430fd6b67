#!/usr/bin/env python3
"""Boot-time provisioning for the gateway VM.

Runs from the instance startup script on every boot and is safe to re-run:

- the gateway's secrets are fetched from Secret Manager on every boot
- Node.js, the gateway package and its systemd unit are installed once,
  guarded by a sentinel file
- later boots only make sure the service is running

The module is copied verbatim onto the VM through instance metadata, so it
depends on nothing but the standard library, google-cloud-secret-manager,
requests and PyYAML.
"""
import argparse
import grp
import logging
import logging.handlers
import os
import pwd
import re
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import requests
import yaml
from google.api_core import exceptions as gcp_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import secretmanager

LOG_TAG = "iap-vps-startup"
COMPLETION_MARKER = "provisioning complete"

METADATA_URL = "http://metadata.google.internal/computeMetadata/v1"
METADATA_HEADERS = {"Metadata-Flavor": "Google"}

NODESOURCE_KEY_URL = "https://deb.nodesource.com/gpgkey/nodesource-repo.gpg.key"
NODESOURCE_KEYRING = "/etc/apt/keyrings/nodesource.gpg"
NODESOURCE_LIST = "/etc/apt/sources.list.d/nodesource.list"

ENV_NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
# Characters that force a value into double quotes in a systemd EnvironmentFile
_NEEDS_QUOTING = re.compile(r'[\s"\'\\#;$`]')

logger = logging.getLogger(LOG_TAG)


class SecretFetchError(Exception):
    """Secrets could not be enumerated; the previous env file is left untouched."""
    pass


@dataclass
class BootConfig:
    """Boot settings rendered by `iap-vps deploy` into instance metadata."""
    user: str = "openclaw"
    package: str = "openclaw@latest"
    binary: str = "openclaw"
    port: int = 18789
    node_major: int = 22
    service_name: str = "openclaw-gateway"
    args: List[str] = field(default_factory=lambda: ["gateway", "--verbose"])
    placeholder_values: List[str] = field(default_factory=lambda: ["UNSET", "TODO"])
    python: str = sys.executable
    program: str = os.path.abspath(__file__)
    config_path: str = ""

    @property
    def home(self) -> Path:
        return Path("/home") / self.user

    @property
    def state_dir(self) -> Path:
        return self.home / f".{self.user}"

    @property
    def run_dir(self) -> Path:
        return Path("/run") / self.user

    @property
    def env_file(self) -> Path:
        return self.run_dir / "env"

    @property
    def sentinel(self) -> Path:
        return Path("/var/lib") / self.user / ".provisioned"

    @property
    def unit_path(self) -> Path:
        return Path("/etc/systemd/system") / f"{self.service_name}.service"


def load_boot_config(path: Optional[str]) -> BootConfig:
    if not path:
        return BootConfig()
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    config = BootConfig(**data)
    config.config_path = path
    return config


def configure_logging() -> None:
    """Log to stdout (serial console) and, when available, to syslog."""
    if logger.handlers:
        return
    logger.setLevel(logging.INFO)
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(logging.Formatter(f"[{LOG_TAG}] %(message)s"))
    logger.addHandler(stdout_handler)

    if os.path.exists("/dev/log"):
        syslog_handler = logging.handlers.SysLogHandler(address="/dev/log")
        syslog_handler.setFormatter(logging.Formatter(f"{LOG_TAG}: %(message)s"))
        logger.addHandler(syslog_handler)


def run(command: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    logger.debug(f"+ {' '.join(command)}")
    return subprocess.run(command, check=check, **kwargs)


# ─── Secrets ────────────────────────────────────────────────────────────────

def metadata_project_id(session=requests) -> str:
    """Read the project ID from the GCE metadata server."""
    try:
        response = session.get(
            f"{METADATA_URL}/project/project-id",
            headers=METADATA_HEADERS,
            timeout=5,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        raise SecretFetchError(f"Could not reach metadata server: {e}")
    return response.text.strip()


def collect_secrets(
    client,
    project_id: str,
    placeholder_values: Iterable[str] = ("UNSET", "TODO"),
) -> Dict[str, str]:
    """
    Fetch the latest value of every secret in the project.

    Secrets without an accessible version, with a placeholder value, with a
    name that is not a valid environment variable, or with a multi-line value
    are skipped and logged.

    Raises:
        SecretFetchError: If the secrets cannot be listed or the project has none
    """
    placeholders = set(placeholder_values)
    try:
        secrets = list(client.list_secrets(request={"parent": f"projects/{project_id}"}))
    except gcp_exceptions.GoogleAPIError as e:
        raise SecretFetchError(f"Could not list secrets (is the Secret Manager API enabled?): {e}")
    if not secrets:
        raise SecretFetchError("No secrets found in project.")

    values: Dict[str, str] = {}
    for secret in secrets:
        name = secret.name.rsplit("/", 1)[-1]
        if not ENV_NAME_PATTERN.match(name):
            logger.warning(f"  Skipping '{name}' (not a valid environment variable name).")
            continue
        try:
            response = client.access_secret_version(request={"name": f"{secret.name}/versions/latest"})
        except gcp_exceptions.GoogleAPIError as e:
            logger.warning(f"  Skipping '{name}' (no accessible version): {e}")
            continue

        try:
            value = response.payload.data.decode("UTF-8")
        except UnicodeDecodeError:
            logger.warning(f"  Skipping '{name}' (value is not UTF-8 text).")
            continue

        value = value.rstrip("\n")
        if value in placeholders:
            logger.info(f"  Skipping '{name}' (placeholder value, not filled in yet).")
            continue
        if "\n" in value:
            logger.warning(f"  Skipping '{name}' (multi-line values are not supported).")
            continue
        values[name] = value
    return values


def _quote_env_value(value: str) -> str:
    if value and not _NEEDS_QUOTING.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def render_env_file(values: Dict[str, str]) -> str:
    return "".join(f"{name}={_quote_env_value(value)}\n" for name, value in values.items())


def write_env_file(path: Path, content: str, owner: Optional[str] = None) -> None:
    """
    Atomically replace `path` with `content`.

    The temporary file is created with mode 0600 inside the target directory,
    so secret material never exists with wider permissions or on another filesystem.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    os.chmod(path.parent, 0o700)

    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, 0o600)
        if owner:
            shutil.chown(tmp_path, user=owner, group=owner)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def fetch_secrets(config: BootConfig, client=None, project_id: Optional[str] = None) -> int:
    """
    Materialize all project secrets into the tmpfs env file.

    Returns:
        Number of secrets written

    Raises:
        SecretFetchError: If the project or its secrets cannot be enumerated
    """
    logger.info("Fetching secrets from Secret Manager…")
    config.run_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(config.run_dir, 0o700)

    if project_id is None:
        project_id = metadata_project_id()
    if client is None:
        client = secretmanager.SecretManagerServiceClient()

    values = collect_secrets(client, project_id, config.placeholder_values)
    write_env_file(config.env_file, render_env_file(values), owner=config.user)
    logger.info(f"Loaded {len(values)} secret(s) from Secret Manager.")
    return len(values)


# ─── Host preparation ───────────────────────────────────────────────────────

def ensure_user(user: str) -> None:
    try:
        pwd.getpwnam(user)
    except KeyError:
        logger.info(f"Creating system user '{user}'")
        run(["useradd", "--system", "--create-home", "--shell", "/bin/bash", user])


def _chown_tree(path: Path, user: str) -> None:
    uid = pwd.getpwnam(user).pw_uid
    gid = grp.getgrnam(user).gr_gid
    for root, dirs, files in os.walk(path):
        for name in dirs + files:
            os.lchown(os.path.join(root, name), uid, gid)
    os.lchown(path, uid, gid)


def protect_credential_paths(config: BootConfig) -> None:
    """Keep credentials the gateway writes in RAM and its .env off persistent disk."""
    cred_tmpfs = config.run_dir / "credentials"
    cred_tmpfs.mkdir(parents=True, exist_ok=True)
    shutil.chown(cred_tmpfs, user=config.user, group=config.user)
    os.chmod(cred_tmpfs, 0o700)

    cred_dir = config.state_dir / "credentials"
    cred_dir.mkdir(parents=True, exist_ok=True)
    if run(["mountpoint", "-q", str(cred_dir)], check=False).returncode != 0:
        run(["mount", "--bind", str(cred_tmpfs), str(cred_dir)])
        logger.info(f"Mounted tmpfs over {cred_dir}")

    dot_env = config.state_dir / ".env"
    if not dot_env.is_symlink():
        if dot_env.exists():
            dot_env.unlink()
        dot_env.symlink_to("/dev/null")
        logger.info(f"Symlinked {dot_env} → /dev/null")

    _chown_tree(config.state_dir, config.user)


# ─── Install once ───────────────────────────────────────────────────────────

def installed_node_major() -> Optional[int]:
    if shutil.which("node") is None:
        return None
    result = run(["node", "--version"], check=False, capture_output=True, text=True)
    match = re.match(r'v?(\d+)\.', result.stdout.strip())
    return int(match.group(1)) if match else None


def install_node(node_major: int) -> None:
    current = installed_node_major()
    if current is not None and current >= node_major:
        logger.info(f"Node.js {current} already installed.")
        return

    logger.info(f"Installing Node.js {node_major}…")
    run(["apt-get", "update", "-qq"])
    run(["apt-get", "install", "-y", "-qq", "ca-certificates", "curl", "gnupg", "git"])
    Path(NODESOURCE_KEYRING).parent.mkdir(parents=True, exist_ok=True)
    key = run(["curl", "-fsSL", NODESOURCE_KEY_URL], capture_output=True).stdout
    run(["gpg", "--batch", "--yes", "--dearmor", "-o", NODESOURCE_KEYRING], input=key)
    Path(NODESOURCE_LIST).write_text(
        f"deb [signed-by={NODESOURCE_KEYRING}] "
        f"https://deb.nodesource.com/node_{node_major}.x nodistro main\n"
    )
    run(["apt-get", "update", "-qq"])
    run(["apt-get", "install", "-y", "-qq", "nodejs"])


def install_gateway(config: BootConfig) -> str:
    """Install the gateway package globally and return its binary path."""
    if shutil.which(config.binary) is None:
        logger.info(f"Installing {config.package}…")
        run(["npm", "install", "-g", config.package])

    binary = shutil.which(config.binary)
    if binary is None:
        raise RuntimeError(f"'{config.binary}' not found on PATH after installing {config.package}")
    logger.info(f"{config.binary} binary: {binary}")
    return binary


def render_unit(config: BootConfig, binary: str) -> str:
    fetch_command = f"{config.python} {config.program}"
    if config.config_path:
        fetch_command += f" --config {config.config_path}"
    exec_start = " ".join([binary, *config.args, "--port", str(config.port)])

    return f"""[Unit]
Description={config.service_name}
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
User={config.user}
Group={config.user}
WorkingDirectory={config.home}

# Fetch fresh secrets from Secret Manager before each start
ExecStartPre=+{fetch_command} fetch-secrets

# Secrets live on tmpfs; a missing file is not an error
EnvironmentFile=-{config.env_file}

ExecStart={exec_start}
Restart=on-failure
RestartSec=5
Environment=NODE_ENV=production
Environment={config.user.upper().replace("-", "_")}_STATE_DIR={config.state_dir}

[Install]
WantedBy=multi-user.target
"""


def install_service(config: BootConfig, binary: str) -> None:
    logger.info("Creating systemd service…")
    config.unit_path.write_text(render_unit(config, binary))
    run(["systemctl", "daemon-reload"])
    run(["systemctl", "enable", f"{config.service_name}.service"])
    run(["systemctl", "start", f"{config.service_name}.service"])


def provision(config: BootConfig) -> None:
    ensure_user(config.user)

    try:
        fetch_secrets(config)
    except (SecretFetchError, gcp_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError) as e:
        logger.warning(f"{e} Skipping secret fetch.")

    protect_credential_paths(config)

    if config.sentinel.exists():
        logger.info("Already provisioned. Ensuring service is running.")
        run(["systemctl", "start", f"{config.service_name}.service"], check=False)
        logger.info(COMPLETION_MARKER)
        return

    logger.info("Starting provisioning…")
    install_node(config.node_major)
    binary = install_gateway(config)
    install_service(config, binary)

    config.sentinel.parent.mkdir(parents=True, exist_ok=True)
    config.sentinel.touch()
    logger.info(COMPLETION_MARKER)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="iap-vps-startup", description=__doc__.splitlines()[0])
    parser.add_argument("--config", help="Boot config YAML written from instance metadata")
    parser.add_argument(
        "command",
        nargs="?",
        default="provision",
        choices=["provision", "fetch-secrets"],
    )
    args = parser.parse_args(argv)

    configure_logging()
    config = load_boot_config(args.config)

    if args.command == "fetch-secrets":
        # The unit must start even when Secret Manager is unreachable
        try:
            fetch_secrets(config)
        except (SecretFetchError, gcp_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError) as e:
            logger.warning(f"{e} Keeping previous environment file.")
        return 0

    provision(config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
