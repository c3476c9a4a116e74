#!/usr/bin/env python3
"""
Config Loader Module

Resolves the keeper configuration once at startup from, in order of
precedence:
1. Command line flags
2. Environment variables (AZURE_TENANT, AZURE_CLIENT_SECRET, ...)
3. An optional JSON config file (--config / ACR_KEEPER_CONFIG)
4. Built-in defaults

The result is a frozen KeeperConfig that is validated before any refresh
cycle runs and passed explicitly to the components that need it.

Config file example (keys are the long flag names in snake_case):
    {
        "tenant": "00000000-0000-0000-0000-000000000000",
        "subscription": ["sub-a", "sub-b"],
        "client_id": "...",
        "client_secret_name": "acr-keeper-client-secret",
        "docker_config": "/root/.docker/config.json",
        "refresh_advance": 600
    }
"""

import os
import re
import json
import argparse
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from shared.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_ADVANCE_SECONDS = 600
DEFAULT_MAX_WORKERS = 8
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_SECRET_TYPE = "Opaque"
DEFAULT_LOG_LEVEL = "INFO"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# option name -> environment variable
ENV_VARS = {
    "config": "ACR_KEEPER_CONFIG",
    "docker_config": "DOCKER_CONFIG_PATH",
    "daemon": "ACR_KEEPER_DAEMON",
    "tenant": "AZURE_TENANT",
    "subscription": "AZURE_SUBSCRIPTION",
    "client_id": "AZURE_CLIENT",
    "client_secret": "AZURE_CLIENT_SECRET",
    "client_secret_name": "AZURE_CLIENT_SECRET_NAME",
    "k8s_secret_namespace": "KUBERNETES_SECRET_NAMESPACE",
    "k8s_secret_name": "KUBERNETES_SECRET_NAME",
    "k8s_secret_filename": "KUBERNETES_SECRET_FILENAME",
    "k8s_secret_type": "KUBERNETES_SECRET_TYPE",
    "refresh": "ACR_KEEPER_REFRESH",
    "refresh_advance": "ACR_KEEPER_REFRESH_ADVANCE",
    "max_workers": "ACR_KEEPER_MAX_WORKERS",
    "http_timeout": "ACR_KEEPER_HTTP_TIMEOUT",
    "log_level": "ACR_KEEPER_LOG_LEVEL",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


@dataclass(frozen=True)
class KeeperConfig:
    """
    Immutable keeper configuration.

    Attributes:
        tenant_id: AAD tenant of the service principal
        subscriptions: Subscriptions whose registries are refreshed
        client_id: Service principal application id
        client_secret: Service principal secret (never logged)
        docker_config_path: Destination file for the docker config, if any
        daemon: Keep running and refresh before expiry
        k8s_namespace / k8s_secret_name / k8s_secret_filename: Kubernetes sink
        k8s_secret_type: Type of the Kubernetes secret
        refresh_interval: Explicit refresh interval override
        refresh_advance_seconds: Refresh this long before the earliest expiry
        max_workers: Maximum concurrent token exchanges
        http_timeout: Timeout for every HTTP request in seconds
        log_level: Root logging level
    """
    tenant_id: str
    subscriptions: Tuple[str, ...]
    client_id: str
    client_secret: str = field(repr=False)
    docker_config_path: Optional[str] = None
    daemon: bool = False
    k8s_namespace: Optional[str] = None
    k8s_secret_name: Optional[str] = None
    k8s_secret_filename: Optional[str] = None
    k8s_secret_type: str = DEFAULT_SECRET_TYPE
    refresh_interval: Optional[timedelta] = None
    refresh_advance_seconds: int = DEFAULT_REFRESH_ADVANCE_SECONDS
    max_workers: int = DEFAULT_MAX_WORKERS
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def k8s_enabled(self) -> bool:
        """Kubernetes sync needs namespace, secret name and key."""
        return bool(self.k8s_namespace and self.k8s_secret_name and self.k8s_secret_filename)


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration such as "1h30m", "45m", "90s" or "1.5h".

    A plain number is read as seconds.

    Raises:
        ConfigError: If the value is malformed or not positive
    """
    text = str(value).strip()
    if not text:
        raise ConfigError("Empty duration")

    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        seconds = float(text)
    else:
        parts = _DURATION_PART.findall(text)
        if not parts or "".join(n + u for n, u in parts) != text:
            raise ConfigError(f"Invalid duration: {value!r} (expected e.g. 1h30m, 45m, 90s)")
        seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)

    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return timedelta(seconds=seconds)


def parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean for {name}: {value!r}")


def parse_subscriptions(value: Any) -> Tuple[str, ...]:
    """Accept a list, a comma separated string, or a list of such strings."""
    if value is None:
        return ()
    items = [value] if isinstance(value, str) else list(value)
    subscriptions: List[str] = []
    for item in items:
        for part in str(item).split(","):
            part = part.strip()
            if part and part not in subscriptions:
                subscriptions.append(part)
    return tuple(subscriptions)


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the command line parser. Every option defaults to None."""
    parser = argparse.ArgumentParser(
        prog="acr-keeper",
        description="Keep Azure Container Registry credentials fresh in a docker config "
                    "file and/or a Kubernetes secret.",
        argument_default=None,
    )
    parser.add_argument("--config", help="JSON config file")
    parser.add_argument("--docker-config", dest="docker_config", help="Docker config file to write")
    parser.add_argument("-d", "--daemon", action="store_const", const=True,
                        help="Run continuously and refresh before credentials expire")
    parser.add_argument("--tenant", help="Azure AD tenant id (AZURE_TENANT)")
    parser.add_argument("--subscription", action="append",
                        help="Azure subscription id, repeatable or comma separated (AZURE_SUBSCRIPTION)")
    parser.add_argument("--client-id", dest="client_id", help="Service principal id (AZURE_CLIENT)")
    parser.add_argument("--client-secret", dest="client_secret",
                        help="Service principal secret (AZURE_CLIENT_SECRET)")
    parser.add_argument("--client-secret-name", dest="client_secret_name",
                        help="GCP Secret Manager secret holding the service principal secret")
    parser.add_argument("--k8s-secret-namespace", dest="k8s_secret_namespace")
    parser.add_argument("--k8s-secret-name", dest="k8s_secret_name")
    parser.add_argument("--k8s-secret-filename", dest="k8s_secret_filename",
                        help="Key of the docker config inside the Kubernetes secret")
    parser.add_argument("--k8s-secret-type", dest="k8s_secret_type",
                        help=f"Kubernetes secret type (default: {DEFAULT_SECRET_TYPE})")
    parser.add_argument("--refresh", help="Refresh interval override, e.g. 1h or 45m")
    parser.add_argument("--refresh-advance", dest="refresh_advance",
                        help=f"Seconds to refresh before expiry (default: {DEFAULT_REFRESH_ADVANCE_SECONDS})")
    parser.add_argument("--max-workers", dest="max_workers",
                        help=f"Concurrent token exchanges (default: {DEFAULT_MAX_WORKERS})")
    parser.add_argument("--http-timeout", dest="http_timeout",
                        help=f"HTTP timeout in seconds (default: {DEFAULT_HTTP_TIMEOUT:g})")
    parser.add_argument("--log-level", dest="log_level",
                        choices=LOG_LEVELS, type=str.upper)
    return parser


def _load_config_file(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    logger.info(f"Loaded config file: {path}")
    return data


def _parse_int(value: Any, name: str, minimum: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid integer for {name}: {value!r}")
    if number < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {number}")
    return number


def _parse_float(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid number for {name}: {value!r}")
    if number <= 0:
        raise ConfigError(f"{name} must be positive, got {number:g}")
    return number


def _resolve_client_secret(options: Dict[str, Any]) -> Optional[str]:
    if options.get("client_secret"):
        return options["client_secret"]

    secret_name = options.get("client_secret_name")
    if not secret_name:
        return None

    from shared.secret_manager import get_secret

    secret = get_secret(secret_name)
    if not secret:
        raise ConfigError(f"Could not load client secret {secret_name} from Secret Manager")
    return secret


def load_config(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> KeeperConfig:
    """
    Resolve and validate the keeper configuration.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])
        environ: Environment mapping (defaults to os.environ)

    Returns:
        KeeperConfig

    Raises:
        ConfigError: If required settings are missing or malformed
        SystemExit: On --help or unparsable command line (argparse)
    """
    environ = os.environ if environ is None else environ
    args = vars(build_arg_parser().parse_args(argv))

    config_path = args.get("config") or environ.get(ENV_VARS["config"])
    file_options = _load_config_file(config_path) if config_path else {}

    options: Dict[str, Any] = {}
    for name, env_var in ENV_VARS.items():
        if args.get(name) is not None:
            options[name] = args[name]
        elif environ.get(env_var):
            options[name] = environ[env_var]
        elif file_options.get(name) is not None:
            options[name] = file_options[name]

    subscriptions = parse_subscriptions(options.get("subscription"))
    client_secret = _resolve_client_secret(options)

    missing = []
    if not options.get("tenant"):
        missing.append(f"tenant ({ENV_VARS['tenant']})")
    if not subscriptions:
        missing.append(f"subscription ({ENV_VARS['subscription']})")
    if not options.get("client_id"):
        missing.append(f"client id ({ENV_VARS['client_id']})")
    if not client_secret:
        missing.append(f"client secret ({ENV_VARS['client_secret']})")
    if missing:
        raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

    refresh_interval = None
    if options.get("refresh"):
        try:
            refresh_interval = parse_duration(options["refresh"])
        except ConfigError as e:
            raise ConfigError(f"Unable to parse --refresh: {e}") from e

    config = KeeperConfig(
        tenant_id=options["tenant"],
        subscriptions=subscriptions,
        client_id=options["client_id"],
        client_secret=client_secret,
        docker_config_path=options.get("docker_config") or None,
        daemon=parse_bool(options.get("daemon", False), "daemon"),
        k8s_namespace=options.get("k8s_secret_namespace") or None,
        k8s_secret_name=options.get("k8s_secret_name") or None,
        k8s_secret_filename=options.get("k8s_secret_filename") or None,
        k8s_secret_type=options.get("k8s_secret_type") or DEFAULT_SECRET_TYPE,
        refresh_interval=refresh_interval,
        refresh_advance_seconds=_parse_int(
            options.get("refresh_advance", DEFAULT_REFRESH_ADVANCE_SECONDS), "refresh_advance", 0),
        max_workers=_parse_int(options.get("max_workers", DEFAULT_MAX_WORKERS), "max_workers", 1),
        http_timeout=_parse_float(options.get("http_timeout", DEFAULT_HTTP_TIMEOUT), "http_timeout"),
        log_level=str(options.get("log_level") or DEFAULT_LOG_LEVEL).upper(),
    )

    if config.log_level not in LOG_LEVELS:
        raise ConfigError(f"Invalid log level: {config.log_level}")

    if not config.docker_config_path and not config.k8s_enabled:
        logger.warning("No docker config path or Kubernetes secret configured - credentials are not published")

    return config
