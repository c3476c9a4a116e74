"""
Unit tests for the ACR client module.

HTTP is mocked at the requests.Session level; no network access is needed.

Run tests with: python -m pytest tests/test_acr_client.py -v
"""

import os
import sys
import json
import base64
import threading
from datetime import datetime
from unittest.mock import MagicMock

import pytest
import pytz
import requests

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared.acr_client import (
    AcrClient,
    RegistryIdentity,
    decode_token_payload,
    REGISTRY_API_VERSION,
)
from shared.docker_config import SENTINEL_AUTH
from shared.errors import CycleError, TokenDecodeError, TokenExchangeError


def encode_segment(payload) -> str:
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def make_token(payload) -> str:
    return f"eyJhbGciOiJSUzI1NiJ9.{encode_segment(payload)}.signature"


def make_response(status_code=200, body=None, text=None):
    response = MagicMock()
    response.status_code = status_code
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    response.text = text if text is not None else json.dumps(body) if body is not None else ""
    return response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(session):
    return AcrClient(timeout=5, session=session)


class TestDecodeTokenPayload:
    """Tests for decode_token_payload()."""

    def test_decodes_exp_and_claims(self):
        """exp, tenant and credential claims are read from the payload."""
        token = make_token({"exp": 1769515200, "tenant": "t-1", "credential": "c-1"})

        payload = decode_token_payload(token)

        assert payload.expiration == 1769515200
        assert payload.tenant_id == "t-1"
        assert payload.credential == "c-1"
        assert payload.expires_at == datetime(2026, 1, 27, 12, 0, 0, tzinfo=pytz.utc)

    def test_handles_stripped_padding(self):
        """Payload lengths that need padding decode correctly."""
        for extra in ["", "a", "ab", "abc"]:
            token = make_token({"exp": 1700000000, "x": extra})
            assert decode_token_payload(token).expiration == 1700000000

    def test_two_segments_are_enough(self):
        """A token without signature segment is still decodable."""
        token = f"header.{encode_segment({'exp': 1700000000})}"
        assert decode_token_payload(token).expiration == 1700000000

    def test_single_segment_fails(self):
        """Fewer than two segments is a decode error."""
        with pytest.raises(TokenDecodeError):
            decode_token_payload("opaque-token-without-dots")

    def test_invalid_json_fails(self):
        """A payload that is not JSON is a decode error."""
        with pytest.raises(TokenDecodeError):
            decode_token_payload(f"header.{encode_segment(b'not json')}.sig")

    def test_invalid_base64_fails(self):
        """A payload that is not base64url is a decode error."""
        with pytest.raises(TokenDecodeError):
            decode_token_payload("header.a.sig")

    def test_missing_exp_fails(self):
        """exp is required."""
        with pytest.raises(TokenDecodeError):
            decode_token_payload(make_token({"tenant": "t-1"}))

    def test_non_integer_exp_fails(self):
        """exp must be an integer."""
        with pytest.raises(TokenDecodeError):
            decode_token_payload(make_token({"exp": "tomorrow"}))

    def test_non_object_payload_fails(self):
        """The payload must be a JSON object."""
        with pytest.raises(TokenDecodeError):
            decode_token_payload(make_token([1, 2, 3]))


class TestSessions:
    """Tests for AcrClient session handling."""

    def test_one_session_per_thread(self):
        """Concurrent fetch workers never share a requests session."""
        acr_client = AcrClient()
        sessions = {}

        def grab(name):
            sessions[name] = acr_client.session

        workers = [threading.Thread(target=grab, args=(f"worker-{i}",)) for i in range(2)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        assert sessions["worker-0"] is not sessions["worker-1"]
        assert acr_client.session is acr_client.session

    def test_injected_session_is_shared(self, session):
        acr_client = AcrClient(session=session)
        assert acr_client.session is session


class TestExchangeToken:
    """Tests for AcrClient.exchange_token()."""

    def test_successful_exchange(self, client, session):
        """The refresh token is returned and the form is posted to /oauth2/exchange."""
        session.post.return_value = make_response(200, {"refresh_token": "refresh-123"})

        token = client.exchange_token("myreg.azurecr.io", "tenant-1", "aad-token")

        assert token == "refresh-123"
        args, kwargs = session.post.call_args
        assert args[0] == "https://myreg.azurecr.io/oauth2/exchange"
        assert kwargs["data"] == {
            "grant_type": "access_token",
            "service": "myreg.azurecr.io",
            "tenant": "tenant-1",
            "access_token": "aad-token",
        }
        assert kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"
        assert kwargs["timeout"] == 5

    def test_rejected_exchange(self, client, session):
        """Non-200 responses raise TokenExchangeError."""
        session.post.return_value = make_response(401, text="unauthorized")

        with pytest.raises(TokenExchangeError, match="401"):
            client.exchange_token("myreg.azurecr.io", "tenant-1", "aad-token")

    def test_missing_refresh_token(self, client, session):
        """A response without refresh_token raises TokenExchangeError."""
        session.post.return_value = make_response(200, {"access_token": "x"})

        with pytest.raises(TokenExchangeError):
            client.exchange_token("myreg.azurecr.io", "tenant-1", "aad-token")

    def test_invalid_json_response(self, client, session):
        """A non-JSON body raises TokenExchangeError."""
        session.post.return_value = make_response(200, ValueError("no json"), text="<html>")

        with pytest.raises(TokenExchangeError):
            client.exchange_token("myreg.azurecr.io", "tenant-1", "aad-token")

    def test_timeout(self, client, session):
        """Timeouts surface as TokenExchangeError."""
        session.post.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(TokenExchangeError, match="timed out"):
            client.exchange_token("myreg.azurecr.io", "tenant-1", "aad-token")

    def test_connection_error(self, client, session):
        """Transport errors surface as TokenExchangeError."""
        session.post.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(TokenExchangeError):
            client.exchange_token("myreg.azurecr.io", "tenant-1", "aad-token")


class TestFetchCredential:
    """Tests for AcrClient.fetch_credential()."""

    def test_fetch_builds_entry(self, client, session):
        """A fetched token becomes a CredentialEntry with decoded expiry."""
        token = make_token({"exp": 1769515200})
        session.post.return_value = make_response(200, {"refresh_token": token})
        registry = RegistryIdentity("myreg.azurecr.io", "tenant-1", "sub-1")

        entry = client.fetch_credential(registry, "aad-token")

        assert entry.server == "myreg.azurecr.io"
        assert entry.auth == SENTINEL_AUTH
        assert entry.refresh_token == token
        assert entry.valid_until == datetime(2026, 1, 27, 12, 0, 0, tzinfo=pytz.utc)


class TestListRegistries:
    """Tests for AcrClient.list_registries()."""

    def test_lists_registries(self, client, session):
        """Registries become RegistryIdentity values with tenant and subscription."""
        session.get.return_value = make_response(200, {"value": [
            {"name": "one", "properties": {"loginServer": "one.azurecr.io"}},
            {"name": "two", "properties": {"loginServer": "two.azurecr.io"}},
        ]})

        registries = client.list_registries("sub-1", "tenant-1", "aad-token")

        assert registries == [
            RegistryIdentity("one.azurecr.io", "tenant-1", "sub-1", "one"),
            RegistryIdentity("two.azurecr.io", "tenant-1", "sub-1", "two"),
        ]
        args, kwargs = session.get.call_args
        assert args[0] == (
            "https://management.azure.com/subscriptions/sub-1"
            "/providers/Microsoft.ContainerRegistry/registries"
        )
        assert kwargs["params"] == {"api-version": REGISTRY_API_VERSION}
        assert kwargs["headers"] == {"Authorization": "Bearer aad-token"}

    def test_follows_next_link(self, client, session):
        """Paged results are followed through nextLink."""
        next_link = "https://management.azure.com/next-page?api-version=x&$skiptoken=abc"
        session.get.side_effect = [
            make_response(200, {
                "value": [{"name": "one", "properties": {"loginServer": "one.azurecr.io"}}],
                "nextLink": next_link,
            }),
            make_response(200, {
                "value": [{"name": "two", "properties": {"loginServer": "two.azurecr.io"}}],
            }),
        ]

        registries = client.list_registries("sub-1", "tenant-1", "aad-token")

        assert [r.login_server for r in registries] == ["one.azurecr.io", "two.azurecr.io"]
        second_call = session.get.call_args_list[1]
        assert second_call.args[0] == next_link
        assert second_call.kwargs["params"] is None

    def test_skips_registry_without_login_server(self, client, session):
        """Entries without a loginServer are ignored."""
        session.get.return_value = make_response(200, {"value": [
            {"name": "broken", "properties": {}},
            {"name": "ok", "properties": {"loginServer": "ok.azurecr.io"}},
        ]})

        registries = client.list_registries("sub-1", "tenant-1", "aad-token")

        assert [r.login_server for r in registries] == ["ok.azurecr.io"]

    def test_empty_subscription(self, client, session):
        """A subscription without registries yields an empty list."""
        session.get.return_value = make_response(200, {"value": []})
        assert client.list_registries("sub-1", "tenant-1", "aad-token") == []

    def test_authorization_failure_is_cycle_error(self, client, session):
        """Enumeration failures are fatal for the cycle."""
        session.get.return_value = make_response(403, text="AuthorizationFailed")

        with pytest.raises(CycleError, match="403"):
            client.list_registries("sub-1", "tenant-1", "aad-token")

    def test_transport_failure_is_cycle_error(self, client, session):
        """Transport errors during enumeration are fatal for the cycle."""
        session.get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(CycleError):
            client.list_registries("sub-1", "tenant-1", "aad-token")
