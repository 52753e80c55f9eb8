"""Resolve the Fly API token once per process.

The token comes from an environment variable or, for the ``gcp_secret``
authentication type, from GCP Secret Manager when the variable is unset.
"""
import os
import logging
from typing import Optional

from google.cloud import secretmanager

from .config_loader import Settings
from .errors import ConfigError

logger = logging.getLogger(__name__)


class GCPSecretClient:
    """Wrapper around GCP Secret Manager client."""

    def __init__(self):
        self._client = None

    @property
    def client(self) -> secretmanager.SecretManagerServiceClient:
        """Lazy-initialize client."""
        if self._client is None:
            self._client = secretmanager.SecretManagerServiceClient()
        return self._client

    def fetch_secret(self, secret_name: str, project_id: str) -> Optional[str]:
        """
        Fetch the latest version of a secret.

        Args:
            secret_name: Name of the secret
            project_id: GCP project ID

        Returns:
            Secret value or None if fetch fails
        """
        try:
            name = f"projects/{project_id}/secrets/{secret_name}/versions/latest"
            response = self.client.access_secret_version(request={"name": name})
            return response.payload.data.decode("UTF-8").strip()
        except Exception as e:
            logger.warning(f"GCP fetch failed for {secret_name}: {type(e).__name__}")
            return None


def resolve_api_token(settings: Settings, gcp_client: Optional[GCPSecretClient] = None) -> str:
    """
    Resolve the API token.

    Priority order:
    1. The configured environment variable (FLY_API_TOKEN by default)
    2. GCP Secret Manager, when authentication.type is gcp_secret

    Raises:
        ConfigError: If no token could be found
    """
    env_value = os.getenv(settings.token_env)
    if env_value:
        logger.debug(f"Using API token from {settings.token_env}")
        return env_value.strip()

    if settings.auth_type == "gcp_secret":
        client = gcp_client or GCPSecretClient()
        token = client.fetch_secret(settings.gcp_secret_name, settings.gcp_project_id)
        if token:
            logger.debug(f"Using API token from GCP secret {settings.gcp_secret_name}")
            return token
        raise ConfigError(
            f"API token not found: {settings.token_env} is unset and GCP secret "
            f"'{settings.gcp_secret_name}' in project '{settings.gcp_project_id}' could not be read"
        )

    raise ConfigError(f"API token not found: please set the {settings.token_env} environment variable")
