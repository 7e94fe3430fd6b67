"""Workflows for the secrets consumed by the gateway VM."""
import logging
from typing import Iterable, List, Optional

from google.api_core import exceptions as gcp_exceptions

from ..domains.gcp_client import GCPSecretClient
from ..domains.models import (
    PLACEHOLDER_VALUE,
    PLACEHOLDER_VALUES,
    STATE_NO_VERSION,
    STATE_PLACEHOLDER,
    STATE_SET,
    SecretStatus,
)

logger = logging.getLogger(__name__)


def _resolve_project(client: GCPSecretClient, project_id: Optional[str]) -> str:
    if project_id:
        return project_id
    project_id = client.get_project_id()
    if not project_id:
        raise ValueError(
            "Project ID not found. Pass --project-id, set GCP_PROJECT, "
            "or run 'gcloud config set project PROJECT_ID'."
        )
    return project_id


def get_secret(
    secret_name: str,
    project_id: Optional[str] = None,
    quiet: bool = False,
    client: Optional[GCPSecretClient] = None,
) -> Optional[str]:
    """
    Fetch the latest value of a secret.

    Returns:
        Secret value as string, or None if the secret or its version is missing
    """
    client = client or GCPSecretClient()
    project_id = _resolve_project(client, project_id)
    return client.fetch_secret(secret_name, project_id, quiet=quiet)


def set_secret(
    secret_name: str,
    value: str,
    project_id: Optional[str] = None,
    client: Optional[GCPSecretClient] = None,
) -> str:
    """
    Store `value` as the newest version of a secret, creating the secret if needed.

    Returns:
        Resource name of the new version
    """
    client = client or GCPSecretClient()
    project_id = _resolve_project(client, project_id)

    if not client.secret_exists(secret_name, project_id):
        logger.info(f"Creating secret '{secret_name}' in {project_id}")
        client.create_secret(secret_name, project_id)

    version = client.add_secret_version(secret_name, project_id, value)
    logger.info(f"Added version {version}")
    return version


def ensure_placeholder_secrets(
    secret_names: Iterable[str],
    project_id: str,
    client: Optional[GCPSecretClient] = None,
) -> List[str]:
    """
    Create each missing secret with the placeholder value.

    Existing secrets are never touched, so values the operator already filled
    in survive redeployments.

    Returns:
        Names of the secrets that were created
    """
    client = client or GCPSecretClient()
    created = []
    for secret_name in secret_names:
        if client.secret_exists(secret_name, project_id):
            logger.info(f"  Secret '{secret_name}' already exists — skipping.")
            continue
        try:
            client.create_secret(secret_name, project_id)
        except gcp_exceptions.AlreadyExists:
            logger.info(f"  Secret '{secret_name}' already exists — skipping.")
            continue
        client.add_secret_version(secret_name, project_id, PLACEHOLDER_VALUE)
        logger.info(f"  Created placeholder secret '{secret_name}'")
        created.append(secret_name)
    return created


def list_secret_statuses(
    project_id: Optional[str] = None,
    client: Optional[GCPSecretClient] = None,
) -> List[SecretStatus]:
    """Every secret in the project, classified by whether the VM will export it."""
    client = client or GCPSecretClient()
    project_id = _resolve_project(client, project_id)

    statuses = []
    for secret_name in client.list_secret_names(project_id):
        value = client.fetch_secret(secret_name, project_id, quiet=True)
        if value is None:
            state = STATE_NO_VERSION
        elif value.rstrip("\n") in PLACEHOLDER_VALUES:
            state = STATE_PLACEHOLDER
        else:
            state = STATE_SET
        statuses.append(SecretStatus(name=secret_name, project_id=project_id, state=state))
    return statuses
