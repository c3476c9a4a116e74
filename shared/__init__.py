"""
Shared infrastructure modules for the ACR keeper.

- config_loader: Flags, environment and config file -> KeeperConfig
- secret_manager: GCP Secret Manager source for the client secret
- azure_auth: Service principal bearer tokens (azure-identity)
- acr_client: Registry enumeration, token exchange, token payload decoding
- docker_config: Credential entries and the docker config document
- sinks: File and Kubernetes secret publication
- errors: Fatal and recoverable error types

Usage:
    from shared import AcrClient, AzureAuthenticator, CredentialSet, load_config
"""

from shared.errors import (
    AcrKeeperError,
    ConfigError,
    CycleError,
    FetchError,
    TokenExchangeError,
    TokenDecodeError,
    PublishError,
)
from shared.config_loader import KeeperConfig, load_config, parse_duration
from shared.docker_config import CredentialEntry, CredentialSet, build_entry, SENTINEL_AUTH
from shared.acr_client import AcrClient, RegistryIdentity, AcrTokenPayload, decode_token_payload
from shared.azure_auth import AzureAuthenticator, BearerToken
from shared.sinks import FileSink, KubernetesSecretSink, PublishReport, publish

__all__ = [
    # Errors
    'AcrKeeperError', 'ConfigError', 'CycleError', 'FetchError',
    'TokenExchangeError', 'TokenDecodeError', 'PublishError',
    # Config
    'KeeperConfig', 'load_config', 'parse_duration',
    # Credentials
    'CredentialEntry', 'CredentialSet', 'build_entry', 'SENTINEL_AUTH',
    # Registry
    'AcrClient', 'RegistryIdentity', 'AcrTokenPayload', 'decode_token_payload',
    # Auth
    'AzureAuthenticator', 'BearerToken',
    # Sinks
    'FileSink', 'KubernetesSecretSink', 'PublishReport', 'publish',
]
