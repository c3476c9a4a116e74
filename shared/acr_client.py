"""
acr_client.py - Azure Container Registry Client Module

Handles the registry side of credential refresh:
- Enumerating container registries of a subscription (Azure Resource Manager)
- Exchanging an AAD access token for an ACR refresh token
- Decoding the expiry out of an ACR refresh token

ACR refresh tokens are compact JWTs. Only the payload is read here; the
signature is checked by the registry when the token is used, so it is not
verified locally.

Usage:
    client = AcrClient(timeout=30)
    registries = client.list_registries(subscription_id, tenant_id, access_token)
    for registry in registries:
        entry = client.fetch_credential(registry, access_token)
"""

import json
import base64
import binascii
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytz
import requests

from shared.docker_config import CredentialEntry, build_entry
from shared.errors import CycleError, TokenDecodeError, TokenExchangeError

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"
REGISTRY_API_VERSION = "2023-07-01"
EXCHANGE_PATH = "/oauth2/exchange"
DEFAULT_TIMEOUT = 30


@dataclass(frozen=True)
class RegistryIdentity:
    """
    A container registry found during enumeration.

    Attributes:
        login_server: Registry endpoint, e.g. "myreg.azurecr.io"
        tenant_id: AAD tenant used for the token exchange
        subscription_id: Subscription the registry was listed from
        name: Registry resource name (informational)
    """
    login_server: str
    tenant_id: str
    subscription_id: str
    name: Optional[str] = None


@dataclass(frozen=True)
class AcrTokenPayload:
    """Claims of an ACR refresh token that the keeper cares about."""
    expiration: int
    tenant_id: Optional[str] = None
    credential: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        """Expiry as a timezone-aware UTC datetime."""
        return datetime.fromtimestamp(self.expiration, tz=pytz.utc)


def _decode_segment(segment: str) -> bytes:
    """Decode a base64url JWT segment, restoring stripped padding."""
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def decode_token_payload(token: str) -> AcrTokenPayload:
    """
    Decode the payload segment of an ACR refresh token.

    Args:
        token: Compact "header.payload.signature" token

    Returns:
        AcrTokenPayload with the expiry claim

    Raises:
        TokenDecodeError: If the token is malformed or has no integer "exp"
    """
    segments = token.split(".")
    if len(segments) < 2:
        raise TokenDecodeError(f"Invalid refresh token segment count: {len(segments)}")

    try:
        payload = json.loads(_decode_segment(segments[1]))
    except (binascii.Error, ValueError) as e:
        raise TokenDecodeError(f"Error decoding payload segment from refresh token: {e}") from e

    if not isinstance(payload, dict):
        raise TokenDecodeError("Refresh token payload is not a JSON object")

    expiration = payload.get("exp")
    # bool is an int subclass but never a valid timestamp
    if isinstance(expiration, bool) or not isinstance(expiration, int):
        raise TokenDecodeError(f"Refresh token payload has no integer exp claim: {expiration!r}")

    token_payload = AcrTokenPayload(
        expiration=expiration,
        tenant_id=payload.get("tenant"),
        credential=payload.get("credential"),
    )
    try:
        token_payload.expires_at
    except (OverflowError, OSError, ValueError) as e:
        raise TokenDecodeError(f"Refresh token exp claim out of range: {expiration}") from e

    return token_payload


class AcrClient:
    """
    HTTP client for registry enumeration and token exchange.

    All requests carry a timeout so one unreachable registry cannot hold
    up a refresh cycle indefinitely.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        arm_endpoint: str = ARM_ENDPOINT,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            timeout: Per-request timeout in seconds
            arm_endpoint: Azure Resource Manager base URL
            session: Optional requests session shared by every caller. Without
                one, each thread gets its own session.
        """
        self.timeout = timeout
        self.arm_endpoint = arm_endpoint.rstrip("/")
        self._shared_session = session
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        if self._shared_session is not None:
            return self._shared_session
        # One session per fetch worker thread
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    # =========================================================================
    # REGISTRY ENUMERATION
    # =========================================================================

    def list_registries(
        self,
        subscription_id: str,
        tenant_id: str,
        access_token: str,
    ) -> List[RegistryIdentity]:
        """
        List every container registry in a subscription.

        Follows ARM paging via "nextLink".

        Raises:
            CycleError: On transport, authorization or response format errors
        """
        url = (
            f"{self.arm_endpoint}/subscriptions/{subscription_id}"
            f"/providers/Microsoft.ContainerRegistry/registries"
        )
        params: Optional[Dict[str, str]] = {"api-version": REGISTRY_API_VERSION}
        registries: List[RegistryIdentity] = []

        while url:
            body = self._get_json(url, params, access_token, subscription_id)
            for item in body.get("value", []):
                login_server = (item.get("properties") or {}).get("loginServer")
                if not login_server:
                    logger.warning(f"Skipping registry without loginServer: {item.get('name')}")
                    continue
                registries.append(RegistryIdentity(
                    login_server=login_server,
                    tenant_id=tenant_id,
                    subscription_id=subscription_id,
                    name=item.get("name"),
                ))
            # nextLink already carries the api-version
            url = body.get("nextLink")
            params = None

        logger.info(f"Found {len(registries)} registries in subscription {subscription_id}")
        return registries

    def _get_json(
        self,
        url: str,
        params: Optional[Dict[str, str]],
        access_token: str,
        subscription_id: str,
    ) -> Dict[str, Any]:
        try:
            response = self.session.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise CycleError(f"Failed to list registries for subscription {subscription_id}: {e}") from e

        if response.status_code != 200:
            raise CycleError(
                f"Failed to list registries for subscription {subscription_id}: "
                f"{response.status_code} - {response.text}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise CycleError(f"Invalid registry list response for subscription {subscription_id}: {e}") from e

    # =========================================================================
    # TOKEN EXCHANGE
    # =========================================================================

    def exchange_token(self, login_server: str, tenant_id: str, access_token: str) -> str:
        """
        Exchange an AAD access token for an ACR refresh token.

        Args:
            login_server: Registry endpoint
            tenant_id: AAD tenant of the access token
            access_token: AAD access token for Azure Resource Manager

        Returns:
            str: ACR refresh token

        Raises:
            TokenExchangeError: On transport errors or a rejected exchange
        """
        url = f"https://{login_server}{EXCHANGE_PATH}"
        form = {
            "grant_type": "access_token",
            "service": login_server,
            "tenant": tenant_id,
            "access_token": access_token,
        }

        try:
            response = self.session.post(
                url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TokenExchangeError(f"Token exchange timed out for {login_server}") from e
        except requests.exceptions.RequestException as e:
            raise TokenExchangeError(f"Token exchange request failed for {login_server}: {e}") from e

        if response.status_code != 200:
            raise TokenExchangeError(
                f"Token exchange rejected by {login_server}: {response.status_code} - {response.text}"
            )

        try:
            refresh_token = response.json().get("refresh_token")
        except (ValueError, AttributeError) as e:
            raise TokenExchangeError(f"Invalid token exchange response from {login_server}: {e}") from e

        if not refresh_token:
            raise TokenExchangeError(f"No refresh_token in exchange response from {login_server}")

        return refresh_token

    def fetch_credential(self, registry: RegistryIdentity, access_token: str) -> CredentialEntry:
        """Exchange and wrap a refresh token for one registry."""
        logger.info(f"Requesting refresh token for {registry.login_server}")
        refresh_token = self.exchange_token(registry.login_server, registry.tenant_id, access_token)
        return build_entry(registry.login_server, refresh_token, decode_token_payload)
