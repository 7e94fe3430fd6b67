"""Idempotent provisioning pipeline for an IAP-only VM."""
import logging
import tempfile
import time
from pathlib import Path
from typing import Callable, List, Optional

from google.api_core import exceptions as gcp_exceptions
from google.auth import exceptions as auth_exceptions

from ...secrets.domains.gcp_client import GCPSecretClient
from ...secrets.workflows.secret_operations import ensure_placeholder_secrets
from ...startup import COMPLETION_MARKER
from ..domains import boot_metadata
from ..domains.gcloud import GcloudError, GcloudRunner
from ..domains.models import IAP_CIDR, DeploySettings, PermissionReport

logger = logging.getLogger(__name__)

REQUIRED_APIS = [
    "compute.googleapis.com",
    "iap.googleapis.com",
    "secretmanager.googleapis.com",
]

# roles/owner covers all of them
REQUIRED_ROLES = [
    "roles/compute.admin",
    "roles/iam.serviceAccountUser",
    "roles/resourcemanager.projectIamAdmin",
    "roles/secretmanager.admin",
    "roles/serviceusage.serviceUsageAdmin",
]
SUFFICIENT_ROLES = {"roles/owner"}

# viewer is needed to list secrets, accessor to read them
VM_SECRET_ROLES = [
    "roles/secretmanager.secretAccessor",
    "roles/secretmanager.viewer",
]

IAP_TUNNEL_ROLE = "roles/iap.tunnelResourceAccessor"


class DeployError(Exception):
    """Deployment cannot continue."""
    pass


class PermissionCheckError(DeployError):
    """The deploying account lacks roles; carries the commands that fix it."""

    def __init__(self, message: str, remediation: List[str]):
        super().__init__(message)
        self.remediation = remediation


def member_for(account: str) -> str:
    """IAM member string for a gcloud account."""
    if account.endswith(".gserviceaccount.com"):
        return f"serviceAccount:{account}"
    return f"user:{account}"


def _binding_command(project_id: str, member: str, role: str) -> str:
    return (
        f"gcloud projects add-iam-policy-binding {project_id} \\\n"
        f"  --member='{member}' \\\n"
        f"  --role='{role}'"
    )


def check_permissions(settings: DeploySettings, runner: GcloudRunner) -> PermissionReport:
    """
    Compare the active account's project roles with REQUIRED_ROLES.

    Roles inherited through groups or folders are not visible here.

    Raises:
        PermissionCheckError: If no account is active or roles are missing
    """
    logger.info("▶ Checking permissions…")
    account = runner.active_account()
    if not account:
        raise PermissionCheckError(
            "No active gcloud account.",
            ["gcloud auth login"],
        )

    member = member_for(account)
    try:
        result = runner.run(
            [
                "projects", "get-iam-policy", settings.project_id,
                "--flatten=bindings[].members",
                f"--filter=bindings.members:{member}",
                "--format=value(bindings.role)",
            ],
            project=False,
        )
        granted = sorted({line.strip() for line in result.stdout.splitlines() if line.strip()})
    except GcloudError as e:
        logger.warning(f"  Could not read the IAM policy of {settings.project_id}: {e}")
        granted = []

    if SUFFICIENT_ROLES.intersection(granted):
        missing = []
    else:
        missing = [role for role in REQUIRED_ROLES if role not in granted]

    report = PermissionReport(
        account=account,
        member=member,
        granted_roles=granted,
        missing_roles=missing,
        remediation=[_binding_command(settings.project_id, member, role) for role in missing],
    )
    if not report.ok:
        raise PermissionCheckError(
            f"{account} is missing {len(missing)} role(s) on {settings.project_id}: {', '.join(missing)}",
            report.remediation,
        )
    logger.info(f"  ✓ {account} has the required roles")
    return report


def enable_apis(settings: DeploySettings, runner: GcloudRunner) -> None:
    logger.info("▶ Enabling required APIs…")
    runner.run(["services", "enable", *REQUIRED_APIS])
    logger.info("  ✓ APIs enabled")


def default_compute_service_account(settings: DeploySettings, runner: GcloudRunner) -> str:
    project_number = runner.get_value(
        ["projects", "describe", settings.project_id, "--format=value(projectNumber)"],
        project=False,
    )
    if not project_number:
        raise DeployError(f"Could not determine the project number of {settings.project_id}")
    return f"{project_number}-compute@developer.gserviceaccount.com"


def _grant_vm_secret_access(settings: DeploySettings, runner: GcloudRunner) -> None:
    try:
        service_account = default_compute_service_account(settings, runner)
    except DeployError as e:
        logger.warning(f"  ⚠  {e}; skipping Secret Manager grants for the VM.")
        logger.warning("     Grant them later with:")
        for role in VM_SECRET_ROLES:
            logger.warning(_binding_command(
                settings.project_id, "serviceAccount:PROJECT_NUMBER-compute@developer.gserviceaccount.com", role
            ))
        return

    for role in VM_SECRET_ROLES:
        try:
            runner.run(
                [
                    "projects", "add-iam-policy-binding", settings.project_id,
                    f"--member=serviceAccount:{service_account}",
                    f"--role={role}",
                    "--condition=None",
                ],
                project=False,
            )
        except GcloudError as e:
            logger.warning(f"  ⚠  Could not grant {role} to {service_account}: {e}")


def setup_secret_store(
    settings: DeploySettings,
    runner: GcloudRunner,
    secret_client: Optional[GCPSecretClient] = None,
) -> List[str]:
    """
    Let the VM read Secret Manager and create placeholders for configured secrets.

    Failures are logged and skipped; the VM simply starts without secrets.

    Returns:
        Names of the placeholder secrets created by this run
    """
    logger.info("▶ Setting up Secret Manager access…")
    _grant_vm_secret_access(settings, runner)

    if not settings.secret_names:
        logger.info("  ✓ Secret Manager access configured")
        return []

    try:
        created = ensure_placeholder_secrets(settings.secret_names, settings.project_id, client=secret_client)
    except (gcp_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError) as e:
        logger.warning(f"  ⚠  Could not create placeholder secrets: {e}")
        logger.warning("     Make sure application default credentials are set up:")
        logger.warning("       gcloud auth application-default login")
        return []

    for secret_name in created:
        logger.info(f"  Fill in '{secret_name}' with: iap-vps secrets set {secret_name}")
    logger.info("  ✓ Secret Manager access configured")
    return created


def configure_firewall(settings: DeploySettings, runner: GcloudRunner) -> None:
    """Allow SSH from the IAP range only, and deny it from everywhere else."""
    rule = settings.firewall_rule_name
    logger.info(f"▶ Configuring firewall rule '{rule}' (IAP → SSH only)…")
    if runner.exists(["compute", "firewall-rules", "describe", rule]):
        logger.info("  Rule already exists — updating.")
        runner.run([
            "compute", "firewall-rules", "update", rule,
            "--rules=tcp:22",
            f"--source-ranges={IAP_CIDR}",
        ])
    else:
        runner.run([
            "compute", "firewall-rules", "create", rule,
            f"--network={settings.network}",
            "--direction=INGRESS",
            "--action=ALLOW",
            "--rules=tcp:22",
            f"--source-ranges={IAP_CIDR}",
            f"--target-tags={settings.network_tag}",
            "--description=Allow SSH only through Identity-Aware Proxy",
        ])
    logger.info("  ✓ Firewall rule configured")

    deny_rule = settings.deny_rule_name
    logger.info(f"▶ Configuring deny-all-public-ssh rule '{deny_rule}'…")
    if runner.exists(["compute", "firewall-rules", "describe", deny_rule]):
        logger.info("  Rule already exists — skipping.")
    else:
        runner.run([
            "compute", "firewall-rules", "create", deny_rule,
            f"--network={settings.network}",
            "--direction=INGRESS",
            "--action=DENY",
            "--rules=tcp:22",
            "--source-ranges=0.0.0.0/0",
            "--priority=2000",
            f"--target-tags={settings.network_tag}",
            "--description=Deny direct SSH from the public internet",
        ])
    logger.info("  ✓ Public SSH blocked")


def configure_nat(settings: DeploySettings, runner: GcloudRunner) -> None:
    """Give the address-less VM outbound access through Cloud NAT."""
    region = settings.region
    logger.info(f"▶ Configuring Cloud NAT in {region}…")
    if runner.exists(["compute", "routers", "describe", settings.router_name, f"--region={region}"]):
        logger.info(f"  Router '{settings.router_name}' already exists — skipping.")
    else:
        runner.run([
            "compute", "routers", "create", settings.router_name,
            f"--network={settings.network}",
            f"--region={region}",
        ])

    if runner.exists([
        "compute", "routers", "nats", "describe", settings.nat_name,
        f"--router={settings.router_name}",
        f"--region={region}",
    ]):
        logger.info(f"  NAT '{settings.nat_name}' already exists — skipping.")
    else:
        runner.run([
            "compute", "routers", "nats", "create", settings.nat_name,
            f"--router={settings.router_name}",
            f"--region={region}",
            "--auto-allocate-nat-external-ips",
            "--nat-all-subnet-ip-ranges",
        ])
    logger.info("  ✓ Outbound NAT configured")


def create_instance(settings: DeploySettings, runner: GcloudRunner) -> bool:
    """
    Create the VM, or refresh the boot metadata of an existing one.

    Returns:
        True if the instance was created by this run
    """
    name = settings.instance_name
    logger.info(f"▶ Creating VM instance '{name}'…")

    with tempfile.TemporaryDirectory(prefix="iap-vps-") as tmp:
        files = boot_metadata.write_metadata_files(settings, Path(tmp))
        metadata_arg = f"--metadata-from-file={boot_metadata.metadata_from_file_arg(files)}"

        if runner.exists(["compute", "instances", "describe", name, f"--zone={settings.zone}"]):
            logger.info("  Instance already exists — skipping creation.")
            runner.run([
                "compute", "instances", "add-metadata", name,
                f"--zone={settings.zone}",
                metadata_arg,
            ])
            logger.info("  Boot metadata refreshed; it applies at the next boot.")
            created = False
        else:
            runner.run([
                "compute", "instances", "create", name,
                f"--zone={settings.zone}",
                f"--machine-type={settings.machine_type}",
                f"--image-family={settings.image_family}",
                f"--image-project={settings.image_project}",
                f"--network={settings.network}",
                "--no-address",
                f"--tags={settings.network_tag}",
                "--metadata=enable-oslogin=TRUE",
                metadata_arg,
                "--scopes=cloud-platform",
                "--shielded-secure-boot",
                "--shielded-vtpm",
                "--shielded-integrity-monitoring",
            ])
            created = True

    logger.info("  ✓ Instance ready")
    return created


def grant_iap_access(settings: DeploySettings, runner: GcloudRunner, account: Optional[str] = None) -> bool:
    """
    Grant the deploying account IAP-tunnelled SSH access, best effort.

    Returns:
        True if the binding was added
    """
    logger.info("▶ Granting IAP-tunnel access to the current user…")
    account = account or runner.active_account()
    if not account:
        logger.warning("  ⚠  Could not detect current user — grant IAP access manually:")
        logger.warning(
            "     " + _binding_command(settings.project_id, "user:YOU@example.com", IAP_TUNNEL_ROLE)
        )
        return False

    try:
        runner.run(
            [
                "projects", "add-iam-policy-binding", settings.project_id,
                f"--member={member_for(account)}",
                f"--role={IAP_TUNNEL_ROLE}",
                "--condition=None",
            ],
            project=False,
        )
    except GcloudError as e:
        logger.warning(f"  ⚠  Could not grant {IAP_TUNNEL_ROLE} to {account}: {e}")
        return False
    logger.info(f"  ✓ IAP access granted to {account}")
    return True


def wait_until_healthy(
    settings: DeploySettings,
    runner: GcloudRunner,
    timeout: Optional[int] = None,
    interval: float = 10,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Wait for the instance to run and its boot program to finish.

    The boot program prints its completion marker to the serial console.

    Returns:
        True if the marker was seen before the timeout
    """
    timeout = settings.health_timeout if timeout is None else timeout
    if timeout <= 0:
        return False

    name = settings.instance_name
    zone_arg = f"--zone={settings.zone}"
    logger.info(f"▶ Waiting up to {timeout}s for '{name}' to finish provisioning…")
    deadline = clock() + timeout

    status = None
    while clock() < deadline:
        status = runner.get_value(["compute", "instances", "describe", name, zone_arg, "--format=value(status)"])
        if status == "RUNNING":
            break
        logger.debug(f"  Instance status: {status}")
        sleep(interval)
    else:
        logger.warning(f"  ⚠  Instance is not running yet (status: {status}).")
        return False

    while clock() < deadline:
        result = runner.run(["compute", "instances", "get-serial-port-output", name, zone_arg], check=False)
        if result.returncode == 0 and COMPLETION_MARKER in (result.stdout or ""):
            logger.info("  ✓ Gateway provisioned")
            return True
        sleep(interval)

    logger.warning("  ⚠  Provisioning has not finished yet. Follow it with:")
    logger.warning(f"     gcloud compute instances get-serial-port-output {name} {zone_arg} --project={settings.project_id}")
    return False


def ssh_command(settings: DeploySettings, forward_gateway: bool = False) -> List[str]:
    command = [
        "gcloud", "compute", "ssh", settings.instance_name,
        f"--project={settings.project_id}",
        f"--zone={settings.zone}",
        "--tunnel-through-iap",
    ]
    if forward_gateway:
        port = settings.gateway.port
        command += ["--", "-N", "-L", f"{port}:localhost:{port}"]
    return command


def deploy(
    settings: DeploySettings,
    runner: Optional[GcloudRunner] = None,
    secret_client: Optional[GCPSecretClient] = None,
    skip_permission_check: bool = False,
    wait: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Run the full provisioning pipeline.

    Every step checks for existing resources first, so re-running is safe.

    Returns:
        True if the health check confirmed the gateway is provisioned

    Raises:
        PermissionCheckError: If the deploying account lacks required roles
        GcloudError: If a required gcloud step fails
    """
    runner = runner or GcloudRunner(settings.project_id)

    account = None
    if skip_permission_check:
        logger.info("▶ Skipping permission check.")
    else:
        account = check_permissions(settings, runner).account

    enable_apis(settings, runner)
    setup_secret_store(settings, runner, secret_client)
    configure_firewall(settings, runner)
    configure_nat(settings, runner)
    create_instance(settings, runner)
    grant_iap_access(settings, runner, account)

    if not wait:
        return False
    return wait_until_healthy(settings, runner, sleep=sleep)
