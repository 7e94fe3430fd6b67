"""Configuration loader for iap-vps."""
import os
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .gcloud import GcloudRunner
from .models import DeploySettings, GatewaySettings
from .preferences import CONFIG_PATH_KEY, get_preference

logger = logging.getLogger(__name__)

# DeploySettings field -> (config section, config key, environment variable)
_SETTING_SOURCES = {
    "zone": ("gcp", "zone", "ZONE"),
    "instance_name": ("instance", "name", "INSTANCE_NAME"),
    "machine_type": ("instance", "machine_type", "MACHINE_TYPE"),
    "image_family": ("instance", "image_family", "IMAGE_FAMILY"),
    "image_project": ("instance", "image_project", "IMAGE_PROJECT"),
    "health_timeout": ("instance", "health_timeout", None),
    "network": ("network", "name", "NETWORK"),
    "firewall_rule_name": ("network", "firewall_rule_name", "FIREWALL_RULE_NAME"),
    "network_tag": ("network", "network_tag", None),
    "router_name": ("network", "router_name", None),
    "nat_name": ("network", "nat_name", None),
}

_GATEWAY_KEYS = ("user", "package", "binary", "port", "node_major", "service_name", "args")
_MAPPING_SECTIONS = ("authentication", "gcp", "instance", "network", "gateway")


class ConfigError(Exception):
    """Configuration error exception."""
    pass


def default_config_path() -> Path:
    return Path.home() / ".config" / "iap-vps" / "config.yml"


def _get_config_path() -> Optional[str]:
    """
    Locate the config file.

    Priority order:
    1. User preference (stored in ~/.config/iap-vps/preferences.json)
    2. Default location: ~/.config/iap-vps/config.yml

    Returns:
        Absolute path to the config file, or None when neither exists.
        The config file is optional; defaults and flags cover a full deployment.
    """
    config_path_pref = get_preference(CONFIG_PATH_KEY)
    if config_path_pref:
        config_path = Path(config_path_pref)
        if config_path.exists():
            logger.debug(f"Using config from preference: {config_path}")
            return str(config_path)
        logger.warning(f"Config path from preference doesn't exist: {config_path}")

    default_config = default_config_path()
    if default_config.exists():
        logger.debug(f"Using default config location: {default_config}")
        return str(default_config)

    return None


def _validate_authentication(auth: Dict[str, Any], config_path: str) -> None:
    if 'type' not in auth:
        raise ConfigError("Missing 'authentication.type' in config")

    if auth['type'] != 'service_account':
        raise ConfigError(
            f"Unsupported authentication type: {auth['type']}\n"
            f"Only 'service_account' is supported."
        )

    if 'service_account_path' not in auth:
        raise ConfigError(
            "Missing 'authentication.service_account_path' in config\n"
            "Please specify the absolute path to your service account JSON file."
        )

    service_account_path = auth['service_account_path']
    if not os.path.isfile(service_account_path):
        raise ConfigError(
            f"Service account file not found at: {service_account_path}\n"
            f"Please ensure the file exists or update the path in {config_path}"
        )


def load_config() -> Dict[str, Any]:
    """
    Load and validate the YAML config file.

    Returns:
        The parsed config, or an empty dict when no config file exists

    Raises:
        ConfigError: If the file is unreadable, not valid YAML, or malformed
    """
    config_path = _get_config_path()
    if config_path is None:
        logger.debug("No config file found, using defaults")
        return {}

    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config at {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read config file at {config_path}: {e}")

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ConfigError(f"Config file at {config_path} must contain a mapping at the top level")

    for section in _MAPPING_SECTIONS:
        if section in config and not isinstance(config[section], dict):
            raise ConfigError(f"Section '{section}' in {config_path} must be a mapping")

    secrets = config.get('secrets', [])
    if not isinstance(secrets, list) or not all(isinstance(name, str) for name in secrets):
        raise ConfigError(
            f"Section 'secrets' in {config_path} must be a list of secret names\n"
            f"Required format:\n"
            f"secrets:\n"
            f"  - ANTHROPIC_API_KEY"
        )

    if 'authentication' in config:
        _validate_authentication(config['authentication'], config_path)

    logger.debug(f"Configuration loaded from {config_path}")
    return config


def apply_authentication(config: Dict[str, Any]) -> None:
    """Point Google client libraries and gcloud at a configured service account key."""
    auth = config.get('authentication')
    if not auth:
        return
    service_account_path = auth['service_account_path']
    os.environ['GOOGLE_APPLICATION_CREDENTIALS'] = service_account_path
    os.environ['CLOUDSDK_AUTH_CREDENTIAL_FILE_OVERRIDE'] = service_account_path
    logger.info(f"Using service account credentials from {service_account_path}")


def _coerce(field_name: str, value: Any) -> Any:
    if field_name == "health_timeout":
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"'{field_name}' must be an integer number of seconds, got: {value!r}")
    return str(value)


def _resolve_gateway(config: Dict[str, Any]) -> GatewaySettings:
    section = config.get('gateway', {})
    unknown = set(section) - set(_GATEWAY_KEYS)
    if unknown:
        raise ConfigError(f"Unknown keys in 'gateway' section: {', '.join(sorted(unknown))}")

    gateway = GatewaySettings(**section)
    try:
        gateway.port = int(gateway.port)
        gateway.node_major = int(gateway.node_major)
    except (TypeError, ValueError):
        raise ConfigError("'gateway.port' and 'gateway.node_major' must be integers")
    if not isinstance(gateway.args, list):
        raise ConfigError("'gateway.args' must be a list of arguments")
    gateway.args = [str(arg) for arg in gateway.args]
    return gateway


def resolve_project_id(
    flag_value: Optional[str],
    config: Dict[str, Any],
    environ: Mapping[str, str],
    runner: Optional[GcloudRunner] = None,
) -> str:
    """
    Resolve the GCP project ID.

    Priority order: --project flag, GCP_PROJECT env var, config file,
    then `gcloud config get-value project`.

    Raises:
        ConfigError: If no source yields a project
    """
    if flag_value:
        return flag_value
    if environ.get("GCP_PROJECT"):
        logger.debug(f"Using GCP_PROJECT from environment: {environ['GCP_PROJECT']}")
        return environ["GCP_PROJECT"]
    project_id = config.get('gcp', {}).get('project_id')
    if project_id:
        return str(project_id)

    project_id = (runner or GcloudRunner()).configured_project()
    if project_id:
        logger.debug(f"Using project from gcloud config: {project_id}")
        return project_id

    raise ConfigError(
        "No project set. Run 'gcloud config set project PROJECT_ID' or pass --project."
    )


def resolve_settings(
    config: Dict[str, Any],
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    runner: Optional[GcloudRunner] = None,
) -> DeploySettings:
    """
    Merge defaults, config file, environment and CLI flags into DeploySettings.

    Precedence (highest first): CLI flags, environment variables, config file, defaults.

    Args:
        config: Parsed config from load_config()
        overrides: CLI values keyed by DeploySettings field name (None means unset)
        environ: Environment mapping (defaults to os.environ)
        runner: gcloud runner used for project auto-detection

    Raises:
        ConfigError: If a value is invalid or no project can be resolved
    """
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
    environ = os.environ if environ is None else environ

    project_id = resolve_project_id(overrides.pop("project_id", None), config, environ, runner)

    values: Dict[str, Any] = {}
    for field_name, (section, key, env_var) in _SETTING_SOURCES.items():
        if field_name in overrides:
            values[field_name] = _coerce(field_name, overrides.pop(field_name))
        elif env_var and environ.get(env_var):
            values[field_name] = _coerce(field_name, environ[env_var])
        elif key in config.get(section, {}):
            values[field_name] = _coerce(field_name, config[section][key])

    if overrides:
        raise ConfigError(f"Unknown settings: {', '.join(sorted(overrides))}")

    return DeploySettings(
        project_id=project_id,
        secret_names=list(config.get('secrets', [])),
        gateway=_resolve_gateway(config),
        **values,
    )
