"""
Azure Auth Module

Service principal authentication against Azure Active Directory.

The credential object caches its access token and only goes back to AAD
when the cached token is about to expire, so calling get_bearer_token()
once per refresh cycle is cheap.

Usage:
    auth = AzureAuthenticator(tenant_id, client_id, client_secret)
    bearer = auth.get_bearer_token()
    headers = {"Authorization": f"Bearer {bearer.token}"}
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import pytz
from azure.core.exceptions import AzureError
from azure.identity import ClientSecretCredential

from shared.errors import CycleError

logger = logging.getLogger(__name__)

# Scope for Azure Resource Manager; ACR accepts these tokens for exchange
MANAGEMENT_SCOPE = "https://management.azure.com/.default"


@dataclass(frozen=True)
class BearerToken:
    """An AAD access token and its expiry."""
    token: str
    expires_on: int

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.expires_on, tz=pytz.utc)

    def __repr__(self) -> str:
        return f"BearerToken(expires_at={self.expires_at.isoformat()})"


class AzureAuthenticator:
    """
    Issues bearer tokens for a service principal.

    The underlying ClientSecretCredential is created lazily and reused for
    the life of the process.
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        scope: str = MANAGEMENT_SCOPE,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret
        self.scope = scope
        self._credential: Optional[ClientSecretCredential] = None

    @property
    def credential(self) -> ClientSecretCredential:
        if self._credential is None:
            self._credential = ClientSecretCredential(
                tenant_id=self.tenant_id,
                client_id=self.client_id,
                client_secret=self._client_secret,
            )
        return self._credential

    def get_bearer_token(self) -> BearerToken:
        """
        Get a valid access token for Azure Resource Manager.

        Returns:
            BearerToken

        Raises:
            CycleError: If AAD rejects the service principal or is unreachable
        """
        try:
            access_token = self.credential.get_token(self.scope)
        except AzureError as e:
            raise CycleError(f"Failed to authenticate service principal {self.client_id}: {e}") from e

        bearer = BearerToken(token=access_token.token, expires_on=access_token.expires_on)
        logger.debug(f"Bearer token valid until {bearer.expires_at.isoformat()}")
        return bearer

    def close(self):
        """Release the credential's HTTP transport."""
        if self._credential is not None:
            self._credential.close()
            self._credential = None
