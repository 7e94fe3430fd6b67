"""Domain models for the deployment pipeline."""
from dataclasses import dataclass, field
from typing import List

# IAP's published source range for TCP forwarding
IAP_CIDR = "35.235.240.0/20"

DEFAULT_ZONE = "us-central1-a"
DEFAULT_INSTANCE_NAME = "iap-vps"
DEFAULT_MACHINE_TYPE = "e2-micro"
DEFAULT_HEALTH_TIMEOUT = 600


@dataclass
class GatewaySettings:
    """The third-party gateway installed and supervised on the VM."""
    user: str = "openclaw"
    package: str = "openclaw@latest"
    binary: str = "openclaw"
    port: int = 18789
    node_major: int = 22
    service_name: str = "openclaw-gateway"
    args: List[str] = field(default_factory=lambda: ["gateway", "--verbose"])


@dataclass
class DeploySettings:
    """Fully resolved settings for one deployment run."""
    project_id: str
    zone: str = DEFAULT_ZONE
    instance_name: str = DEFAULT_INSTANCE_NAME
    machine_type: str = DEFAULT_MACHINE_TYPE
    image_family: str = "debian-12"
    image_project: str = "debian-cloud"
    network: str = "default"
    firewall_rule_name: str = "allow-iap-ssh"
    network_tag: str = "iap-ssh"
    router_name: str = "iap-vps-router"
    nat_name: str = "iap-vps-nat"
    health_timeout: int = DEFAULT_HEALTH_TIMEOUT
    secret_names: List[str] = field(default_factory=list)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)

    @property
    def region(self) -> str:
        """Zone with its suffix stripped, e.g. us-central1-a -> us-central1."""
        return self.zone.rsplit("-", 1)[0]

    @property
    def deny_rule_name(self) -> str:
        return f"{self.firewall_rule_name}-deny-public"


@dataclass
class PermissionReport:
    """Outcome of comparing the deployer's roles with the required set."""
    account: str
    member: str
    granted_roles: List[str]
    missing_roles: List[str]
    remediation: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_roles
