"""
Unit tests for the config loader.

Run tests with: python -m pytest tests/test_config_loader.py -v
"""

import os
import sys
import json
import tempfile
from datetime import timedelta
from unittest.mock import patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared.config_loader import (
    DEFAULT_REFRESH_ADVANCE_SECONDS,
    load_config,
    parse_duration,
    parse_subscriptions,
)
from shared.errors import ConfigError


BASE_ENV = {
    "AZURE_TENANT": "tenant-env",
    "AZURE_SUBSCRIPTION": "sub-env",
    "AZURE_CLIENT": "client-env",
    "AZURE_CLIENT_SECRET": "secret-env",
}


@pytest.fixture
def config_file():
    """Create a temporary JSON config file."""
    with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
        temp_path = f.name
    yield temp_path
    if os.path.exists(temp_path):
        os.remove(temp_path)


def write_json(path, data):
    with open(path, 'w') as f:
        json.dump(data, f)


class TestParseDuration:
    """Tests for parse_duration()."""

    @pytest.mark.parametrize("text,seconds", [
        ("1h", 3600),
        ("45m", 2700),
        ("90s", 90),
        ("1h30m", 5400),
        ("1h0m30s", 3630),
        ("1.5h", 5400),
        ("500ms", 0.5),
        ("120", 120),
    ])
    def test_valid_durations(self, text, seconds):
        assert parse_duration(text) == timedelta(seconds=seconds)

    @pytest.mark.parametrize("text", ["", "abc", "10x", "h1", "1h 30m", "-5m", "0s", "0"])
    def test_invalid_durations(self, text):
        with pytest.raises(ConfigError):
            parse_duration(text)


class TestParseSubscriptions:
    """Tests for parse_subscriptions()."""

    def test_comma_separated(self):
        assert parse_subscriptions("a, b,,c") == ("a", "b", "c")

    def test_repeated_flags_and_duplicates(self):
        assert parse_subscriptions(["a,b", "b", "c"]) == ("a", "b", "c")

    def test_none(self):
        assert parse_subscriptions(None) == ()


class TestLoadConfig:
    """Tests for load_config()."""

    def test_from_environment(self):
        """Required settings can all come from the environment."""
        config = load_config([], BASE_ENV)

        assert config.tenant_id == "tenant-env"
        assert config.subscriptions == ("sub-env",)
        assert config.client_id == "client-env"
        assert config.client_secret == "secret-env"
        assert config.daemon is False
        assert config.refresh_advance_seconds == DEFAULT_REFRESH_ADVANCE_SECONDS
        assert config.refresh_interval is None
        assert config.k8s_enabled is False

    def test_flags_override_environment(self):
        """Command line flags win over environment variables."""
        config = load_config(
            ["--tenant", "tenant-flag", "--subscription", "s1", "--subscription", "s2,s3", "-d"],
            BASE_ENV,
        )

        assert config.tenant_id == "tenant-flag"
        assert config.subscriptions == ("s1", "s2", "s3")
        assert config.client_id == "client-env"
        assert config.daemon is True

    def test_environment_overrides_file(self, config_file):
        """Environment variables win over the config file."""
        write_json(config_file, {
            "tenant": "tenant-file",
            "subscription": ["sub-file"],
            "client_id": "client-file",
            "client_secret": "secret-file",
            "docker_config": "/tmp/docker.json",
            "refresh_advance": 300,
        })

        config = load_config(["--config", config_file], {"AZURE_TENANT": "tenant-env"})

        assert config.tenant_id == "tenant-env"
        assert config.subscriptions == ("sub-file",)
        assert config.client_secret == "secret-file"
        assert config.docker_config_path == "/tmp/docker.json"
        assert config.refresh_advance_seconds == 300

    def test_config_file_from_environment(self, config_file):
        """ACR_KEEPER_CONFIG points at the config file."""
        write_json(config_file, {"max_workers": 3})
        env = dict(BASE_ENV, ACR_KEEPER_CONFIG=config_file)

        assert load_config([], env).max_workers == 3

    def test_missing_config_file(self):
        with pytest.raises(ConfigError, match="not found"):
            load_config(["--config", "/nonexistent/keeper.json"], BASE_ENV)

    def test_config_file_must_be_object(self, config_file):
        write_json(config_file, ["not", "an", "object"])
        with pytest.raises(ConfigError):
            load_config(["--config", config_file], BASE_ENV)

    def test_missing_required_settings(self):
        """All missing required settings are reported together."""
        with pytest.raises(ConfigError) as exc_info:
            load_config([], {})

        message = str(exc_info.value)
        assert "AZURE_TENANT" in message
        assert "AZURE_SUBSCRIPTION" in message
        assert "AZURE_CLIENT" in message
        assert "AZURE_CLIENT_SECRET" in message

    def test_missing_client_secret(self):
        env = {k: v for k, v in BASE_ENV.items() if k != "AZURE_CLIENT_SECRET"}
        with pytest.raises(ConfigError, match="client secret"):
            load_config([], env)

    def test_refresh_interval(self):
        config = load_config(["--refresh", "1h30m"], BASE_ENV)
        assert config.refresh_interval == timedelta(minutes=90)

    def test_malformed_refresh_interval(self):
        """A malformed duration is a fatal configuration error."""
        with pytest.raises(ConfigError, match="--refresh"):
            load_config(["--refresh", "soon"], BASE_ENV)

    def test_negative_refresh_advance(self):
        with pytest.raises(ConfigError):
            load_config(["--refresh-advance", "-1"], BASE_ENV)

    def test_invalid_max_workers(self):
        with pytest.raises(ConfigError):
            load_config(["--max-workers", "0"], BASE_ENV)

    def test_invalid_http_timeout(self):
        with pytest.raises(ConfigError):
            load_config(["--http-timeout", "fast"], BASE_ENV)

    def test_daemon_from_environment(self):
        config = load_config([], dict(BASE_ENV, ACR_KEEPER_DAEMON="true"))
        assert config.daemon is True

    def test_invalid_daemon_value(self):
        with pytest.raises(ConfigError):
            load_config([], dict(BASE_ENV, ACR_KEEPER_DAEMON="maybe"))

    def test_kubernetes_sink_needs_all_three_settings(self):
        """The secret sink is enabled only with namespace, name and key."""
        partial = load_config([
            "--k8s-secret-namespace", "default",
            "--k8s-secret-name", "acr-pull",
        ], BASE_ENV)
        assert partial.k8s_enabled is False

        env = dict(
            BASE_ENV,
            KUBERNETES_SECRET_NAMESPACE="default",
            KUBERNETES_SECRET_NAME="acr-pull",
            KUBERNETES_SECRET_FILENAME=".dockerconfigjson",
        )
        full = load_config([], env)
        assert full.k8s_enabled is True
        assert full.k8s_secret_type == "Opaque"

    def test_client_secret_hidden_from_repr(self):
        config = load_config([], BASE_ENV)
        assert "secret-env" not in repr(config)

    def test_config_is_immutable(self):
        config = load_config([], BASE_ENV)
        with pytest.raises(AttributeError):
            config.daemon = True

    def test_invalid_log_level_in_file(self, config_file):
        write_json(config_file, {"log_level": "chatty"})
        with pytest.raises(ConfigError):
            load_config(["--config", config_file], BASE_ENV)


class TestClientSecretFromSecretManager:
    """Tests for loading the client secret from GCP Secret Manager."""

    def test_secret_manager_used_when_no_literal_secret(self):
        env = {k: v for k, v in BASE_ENV.items() if k != "AZURE_CLIENT_SECRET"}
        env["AZURE_CLIENT_SECRET_NAME"] = "acr-keeper-client-secret"

        with patch("shared.secret_manager.get_secret", return_value="secret-gcp") as get_secret:
            config = load_config([], env)

        get_secret.assert_called_once_with("acr-keeper-client-secret")
        assert config.client_secret == "secret-gcp"

    def test_literal_secret_wins(self):
        env = dict(BASE_ENV, AZURE_CLIENT_SECRET_NAME="acr-keeper-client-secret")

        with patch("shared.secret_manager.get_secret") as get_secret:
            config = load_config([], env)

        get_secret.assert_not_called()
        assert config.client_secret == "secret-env"

    def test_secret_manager_failure_is_config_error(self):
        env = {k: v for k, v in BASE_ENV.items() if k != "AZURE_CLIENT_SECRET"}
        env["AZURE_CLIENT_SECRET_NAME"] = "acr-keeper-client-secret"

        with patch("shared.secret_manager.get_secret", return_value=None):
            with pytest.raises(ConfigError, match="Secret Manager"):
                load_config([], env)

    def test_missing_gcp_credentials_is_config_error(self):
        """Unusable GCP credentials end in a ConfigError, not a google.auth traceback."""
        from google.auth.exceptions import DefaultCredentialsError

        env = {k: v for k, v in BASE_ENV.items() if k != "AZURE_CLIENT_SECRET"}
        env["AZURE_CLIENT_SECRET_NAME"] = "acr-keeper-client-secret"

        with patch("shared.secret_manager.is_running_on_gcp", return_value=True), \
                patch("shared.secret_manager.get_project_id", return_value="my-project"), \
                patch("google.cloud.secretmanager.SecretManagerServiceClient",
                      side_effect=DefaultCredentialsError("File /missing.json was not found")):
            with pytest.raises(ConfigError, match="Secret Manager"):
                load_config([], env)
