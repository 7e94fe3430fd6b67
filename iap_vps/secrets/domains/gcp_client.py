"""GCP Secret Manager client wrapper."""
import os
import logging
from typing import List, Optional

from google.api_core import exceptions as gcp_exceptions
from google.cloud import secretmanager

from ...deploy.domains.gcloud import GcloudRunner

logger = logging.getLogger(__name__)


class GCPSecretClient:
    """Wrapper around GCP Secret Manager client."""

    def __init__(self, client: Optional[secretmanager.SecretManagerServiceClient] = None):
        self._client = client

    @property
    def client(self) -> secretmanager.SecretManagerServiceClient:
        """Lazy-initialize client."""
        if self._client is None:
            self._client = secretmanager.SecretManagerServiceClient()
        return self._client

    def get_project_id(self, runner: Optional[GcloudRunner] = None) -> Optional[str]:
        """
        Auto-detect GCP project ID.

        Priority order:
        1. GCP_PROJECT environment variable
        2. gcloud config get-value project

        Returns:
            Project ID string, or None if not found
        """
        gcp_project_env = os.getenv("GCP_PROJECT")
        if gcp_project_env:
            logger.debug(f"Using GCP_PROJECT from environment: {gcp_project_env}")
            return gcp_project_env

        project_id = (runner or GcloudRunner()).configured_project()
        if project_id:
            logger.debug(f"Using project from gcloud config: {project_id}")
        return project_id

    def list_secret_names(self, project_id: str) -> List[str]:
        """Names (not resource paths) of every secret in the project."""
        secrets = self.client.list_secrets(request={"parent": f"projects/{project_id}"})
        return [secret.name.rsplit("/", 1)[-1] for secret in secrets]

    def secret_exists(self, secret_name: str, project_id: str) -> bool:
        try:
            self.client.get_secret(request={"name": f"projects/{project_id}/secrets/{secret_name}"})
            return True
        except gcp_exceptions.NotFound:
            return False

    def fetch_secret(self, secret_name: str, project_id: str, quiet: bool = False) -> Optional[str]:
        """
        Fetch the latest version of a secret.

        Args:
            secret_name: Name of the secret
            project_id: GCP project ID
            quiet: If True, suppress warning logs

        Returns:
            Secret value or None if fetch fails
        """
        try:
            name = f"projects/{project_id}/secrets/{secret_name}/versions/latest"
            response = self.client.access_secret_version(request={"name": name})
            return response.payload.data.decode("UTF-8")
        except gcp_exceptions.GoogleAPIError as e:
            if not quiet:
                logger.warning(f"GCP fetch failed for {secret_name}: {e}")
            return None

    def create_secret(self, secret_name: str, project_id: str) -> None:
        """Create an empty secret with automatic replication."""
        self.client.create_secret(
            request={
                "parent": f"projects/{project_id}",
                "secret_id": secret_name,
                "secret": {"replication": {"automatic": {}}},
            }
        )
        logger.debug(f"Created secret {secret_name} in {project_id}")

    def add_secret_version(self, secret_name: str, project_id: str, value: str) -> str:
        """Add a version holding `value` and return the version's resource name."""
        response = self.client.add_secret_version(
            request={
                "parent": f"projects/{project_id}/secrets/{secret_name}",
                "payload": {"data": value.encode("UTF-8")},
            }
        )
        return response.name
