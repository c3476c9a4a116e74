#!/usr/bin/env python3
"""
Secret Manager Module

Fetches the service principal secret from Google Cloud Secret Manager when
the keeper runs on GCP and the secret is not given on the command line or
in the environment.

When running on GCP:
- The client secret can be stored as a Secret Manager secret
- Only read access is needed (roles/secretmanager.secretAccessor)

When running locally:
- Returns None, the client secret must come from --client-secret,
  AZURE_CLIENT_SECRET or the config file
"""

import os
import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)

METADATA_URL = "http://metadata.google.internal/computeMetadata/v1"


def is_running_on_gcp() -> bool:
    """
    Detect if running on GCP.

    Checks the project environment variables first, then the metadata
    server, which is only reachable from within GCP infrastructure.

    Returns:
        bool: True if running on GCP, False otherwise
    """
    if os.environ.get("GCP_PROJECT") or os.environ.get("GOOGLE_CLOUD_PROJECT"):
        logger.debug("GCP detected via project environment variable")
        return True

    try:
        response = requests.get(
            f"{METADATA_URL}/instance/id",
            headers={"Metadata-Flavor": "Google"},
            timeout=1
        )
        if response.status_code == 200:
            logger.debug("GCP detected via metadata server")
            return True
    except requests.exceptions.RequestException:
        logger.debug("Metadata server not reachable, assuming local environment")

    return False


def get_project_id() -> Optional[str]:
    """
    Get the GCP project ID.

    Returns:
        str: Project ID, or None if not on GCP
    """
    project_id = os.environ.get("GCP_PROJECT") or os.environ.get("GOOGLE_CLOUD_PROJECT")
    if project_id:
        return project_id

    try:
        response = requests.get(
            f"{METADATA_URL}/project/project-id",
            headers={"Metadata-Flavor": "Google"},
            timeout=2
        )
        if response.status_code == 200:
            return response.text
    except requests.exceptions.RequestException as e:
        logger.debug(f"Could not read project id from metadata server: {e}")

    return None


def get_secret(secret_name: str, version: str = "latest") -> Optional[str]:
    """
    Fetch a secret from GCP Secret Manager.

    Args:
        secret_name: Name of the secret in Secret Manager
        version: Version of the secret (default: "latest")

    Returns:
        str: Secret value, or None if not on GCP or the fetch failed
    """
    if not is_running_on_gcp():
        logger.debug(f"Not on GCP, skipping Secret Manager fetch for {secret_name}")
        return None

    from google.api_core import exceptions as gcp_exceptions
    from google.auth import exceptions as auth_exceptions
    from google.cloud import secretmanager

    project_id = get_project_id()
    if not project_id:
        logger.error("Could not determine GCP project ID")
        return None

    try:
        client = secretmanager.SecretManagerServiceClient()
        name = f"projects/{project_id}/secrets/{secret_name}/versions/{version}"

        response = client.access_secret_version(request={"name": name}, timeout=10)
        secret_value = response.payload.data.decode("UTF-8").strip()

        logger.info(f"Successfully fetched secret: {secret_name}")
        return secret_value

    except gcp_exceptions.GoogleAPICallError as e:
        logger.error(f"Failed to fetch secret {secret_name}: {e}")
        return None
    except auth_exceptions.GoogleAuthError as e:
        logger.error(f"No usable GCP credentials for secret {secret_name}: {e}")
        return None
