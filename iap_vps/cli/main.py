"""CLI entrypoint for iap-vps."""
import sys
import argparse
import getpass
import logging
import shlex
from pathlib import Path

from .validators import (
    validate_instance_name,
    validate_project_id,
    validate_secret_name,
    validate_secret_value,
    validate_zone,
)

VERSION = "0.1.0"
BANNER = "═" * 60

# Configure logging to stderr
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    stream=sys.stderr
)
logger = logging.getLogger(__name__)


def _load_settings(args):
    """Resolve DeploySettings from flags, environment and the config file."""
    from iap_vps.deploy.domains.config_loader import apply_authentication, load_config, resolve_settings

    config = load_config()
    apply_authentication(config)
    settings = resolve_settings(
        config,
        overrides={
            "project_id": args.project,
            "zone": args.zone,
            "instance_name": args.name,
            "machine_type": getattr(args, "machine_type", None),
        },
    )
    validate_project_id(settings.project_id)
    validate_zone(settings.zone)
    validate_instance_name(settings.instance_name)
    return settings


def cmd_version(args):
    """Show version information."""
    print(f"iap-vps {VERSION}")


def cmd_deploy(args):
    """Provision the IAP-only VM and its gateway."""
    from iap_vps.deploy.workflows.provision import PermissionCheckError, deploy, ssh_command

    settings = _load_settings(args)
    logging.getLogger("iap_vps").setLevel(logging.INFO)

    print()
    print(BANNER)
    print("  GCP IAP-Only VPS Deployment")
    print(BANNER)
    print(f"  Project  : {settings.project_id}")
    print(f"  Zone     : {settings.zone}")
    print(f"  Region   : {settings.region}")
    print(f"  Instance : {settings.instance_name}")
    print(f"  Type     : {settings.machine_type}")
    print(BANNER)
    print()

    try:
        deploy(
            settings,
            skip_permission_check=args.skip_permission_check,
            wait=not args.no_wait,
        )
    except PermissionCheckError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("\nGrant the missing access, then re-run the deployment:\n", file=sys.stderr)
        for command in e.remediation:
            print(command, file=sys.stderr)
            print(file=sys.stderr)
        print("If the roles come from a group, re-run with --skip-permission-check.", file=sys.stderr)
        sys.exit(1)

    print()
    print(BANNER)
    print("  Deployment complete!")
    print(BANNER)
    print()
    print("  Connect to your VPS via IAP:")
    print()
    print(f"    {shlex.join(ssh_command(settings))}")
    print()
    print("  The instance has NO public IP. All SSH traffic is")
    print("  routed through Google's Identity-Aware Proxy.")
    print(BANNER)


def cmd_connect(args):
    """Print the IAP SSH command for the deployed VM."""
    from iap_vps.deploy.workflows.provision import ssh_command

    settings = _load_settings(args)
    print(shlex.join(ssh_command(settings, forward_gateway=args.forward_gateway)))


def cmd_config_set_path(args):
    """Set config file path preference."""
    from iap_vps.deploy.domains.preferences import CONFIG_PATH_KEY, set_preference

    config_path = Path(args.path).resolve()

    if not config_path.exists():
        print(f"Error: Config file does not exist: {config_path}", file=sys.stderr)
        sys.exit(1)

    if not config_path.is_file():
        print(f"Error: Path is not a file: {config_path}", file=sys.stderr)
        sys.exit(1)

    set_preference(CONFIG_PATH_KEY, str(config_path))
    print(f"Config path set to: {config_path}")


def cmd_config_show(args):
    """Show current config file path."""
    from iap_vps.deploy.domains.config_loader import default_config_path
    from iap_vps.deploy.domains.preferences import CONFIG_PATH_KEY, get_preference

    config_path_pref = get_preference(CONFIG_PATH_KEY)

    if config_path_pref:
        config_path = Path(config_path_pref)
        if config_path.exists():
            print(f"Config path: {config_path}")
        else:
            print(f"Config path (from preference, but file not found): {config_path}")
        print("Source: preference")
    else:
        default_config = default_config_path()
        print(f"Config path: {default_config}")
        if default_config.exists():
            print("Source: default")
        else:
            print("Source: default (file not found, built-in defaults apply)")


def cmd_config_clear(args):
    """Clear config path preference."""
    from iap_vps.deploy.domains.config_loader import default_config_path
    from iap_vps.deploy.domains.preferences import CONFIG_PATH_KEY, clear_preference

    clear_preference(CONFIG_PATH_KEY)
    print(f"Config path preference cleared. Will use default: {default_config_path()}")


def cmd_secrets_get(args):
    """Get a secret from GCP Secret Manager."""
    from iap_vps.secrets.workflows.secret_operations import get_secret

    validate_secret_name(args.secret_name)
    secret_value = get_secret(args.secret_name, args.project_id, quiet=args.quiet)

    if secret_value is None:
        print(f"Error: Secret '{args.secret_name}' not found", file=sys.stderr)
        sys.exit(1)

    if args.quiet:
        print(secret_value)
    else:
        print(f"Secret '{args.secret_name}': {secret_value}")


def cmd_secrets_set(args):
    """Store a new secret version, creating the secret if needed."""
    from iap_vps.secrets.workflows.secret_operations import set_secret

    validate_secret_name(args.secret_name)

    if args.value is not None:
        value = args.value
    elif sys.stdin.isatty():
        value = getpass.getpass(f"Value for {args.secret_name}: ")
    else:
        value = sys.stdin.read().rstrip("\n")

    validate_secret_value(value)
    version = set_secret(args.secret_name, value, args.project_id)
    print(f"Stored {version}")
    print("Restart the gateway (or reboot the VM) to pick up the new value.")


def cmd_secrets_list(args):
    """List secrets and whether the VM will export them."""
    from iap_vps.secrets.workflows.secret_operations import list_secret_statuses

    statuses = list_secret_statuses(args.project_id)
    if not statuses:
        print("No secrets found.")
        return

    width = max(len(status.name) for status in statuses)
    for status in statuses:
        print(f"{status.name.ljust(width)}  {status.state}")


def _add_target_arguments(parser):
    parser.add_argument("--project", help="GCP project ID (default: GCP_PROJECT, config file, or gcloud config)")
    parser.add_argument("--zone", help="Compute Engine zone (default: us-central1-a)")
    parser.add_argument("--name", help="Instance name (default: iap-vps)")


def main():
    """Main CLI entrypoint.

    Exit codes:
        0 - Success
        1 - Runtime errors (authentication, missing permissions, gcloud failures, etc.)
        2 - Usage errors (invalid arguments, invalid names, etc.)
    """
    parser = argparse.ArgumentParser(
        prog="iap-vps",
        description="Deploy a gateway VM on Google Cloud that is reachable only through Identity-Aware Proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit codes:
  0 - Success
  1 - Runtime error (authentication, missing permissions, gcloud failures, etc.)
  2 - Usage error (invalid arguments, invalid names, etc.)

Environment variables:
  GCP_PROJECT, ZONE, INSTANCE_NAME, MACHINE_TYPE, IMAGE_FAMILY,
  IMAGE_PROJECT, NETWORK, FIREWALL_RULE_NAME (overridden by flags)

Configuration:
  Default location: ~/.config/iap-vps/config.yml (optional)
  Custom path: Set with 'iap-vps config set-path <path>'
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser(
        "version",
        help="Show version information",
    )

    deploy_parser = subparsers.add_parser(
        "deploy",
        help="Provision the IAP-only VM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="""
Provision (or repair) the deployment. Every step is idempotent:

  permission check → API enablement → Secret Manager setup →
  firewall rules → Cloud NAT → VM creation → IAP grant → health check
        """
    )
    _add_target_arguments(deploy_parser)
    deploy_parser.add_argument("--machine-type", help="Machine type (default: e2-micro)")
    deploy_parser.add_argument(
        "--skip-permission-check",
        action="store_true",
        help="Do not verify the deploying account's project roles",
    )
    deploy_parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Do not wait for the VM to finish provisioning",
    )

    connect_parser = subparsers.add_parser(
        "connect",
        help="Print the IAP SSH command",
    )
    _add_target_arguments(connect_parser)
    connect_parser.add_argument(
        "--forward-gateway",
        action="store_true",
        help="Forward the gateway port to localhost instead of opening a shell",
    )

    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
        description="Manage the iap-vps config file location"
    )
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_set_path_parser = config_subparsers.add_parser(
        "set-path",
        help="Set config file path",
        description="Store the config file path in ~/.config/iap-vps/preferences.json"
    )
    config_set_path_parser.add_argument("path", help="Path to config file")
    config_subparsers.add_parser("show", help="Show current config path")
    config_subparsers.add_parser("clear", help="Clear config path preference")

    secrets_parser = subparsers.add_parser(
        "secrets",
        help="Secrets exported to the gateway",
        description="Every secret in the project becomes an environment variable of the gateway"
    )
    secrets_subparsers = secrets_parser.add_subparsers(dest="secrets_command")

    list_parser = secrets_subparsers.add_parser("list", help="List secrets and their state")
    list_parser.add_argument("--project-id", help="GCP project ID")

    get_parser = secrets_subparsers.add_parser("get", help="Get a secret value")
    get_parser.add_argument("secret_name", help="Name of the secret (format: [a-zA-Z0-9_-]+)")
    get_parser.add_argument("--project-id", help="GCP project ID")
    get_parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Output only the secret value"
    )

    set_parser = secrets_subparsers.add_parser(
        "set",
        help="Set a secret value",
        description="Add a new version; prompts, or reads stdin, when --value is omitted"
    )
    set_parser.add_argument("secret_name", help="Name of the secret (format: [a-zA-Z0-9_-]+)")
    set_parser.add_argument("--value", help="Secret value (visible in shell history; prefer stdin)")
    set_parser.add_argument("--project-id", help="GCP project ID")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(2)

    try:
        if args.command == "version":
            cmd_version(args)
        elif args.command == "deploy":
            cmd_deploy(args)
        elif args.command == "connect":
            cmd_connect(args)
        elif args.command == "config":
            if args.config_command == "set-path":
                cmd_config_set_path(args)
            elif args.config_command == "show":
                cmd_config_show(args)
            elif args.config_command == "clear":
                cmd_config_clear(args)
            else:
                config_parser.print_help()
                sys.exit(2)
        elif args.command == "secrets":
            if args.secrets_command == "list":
                cmd_secrets_list(args)
            elif args.secrets_command == "get":
                cmd_secrets_get(args)
            elif args.secrets_command == "set":
                cmd_secrets_set(args)
            else:
                secrets_parser.print_help()
                sys.exit(2)
        else:
            parser.print_help()
            sys.exit(2)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
