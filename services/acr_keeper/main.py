#!/usr/bin/env python3
"""
ACR Keeper Service - Keeps Azure Container Registry Credentials Fresh

Exchanges a service principal's AAD token for a refresh token on every
container registry of the configured subscriptions, and publishes them as a
docker config file and/or a Kubernetes secret.

How It Works:
-------------
1. Authenticates the service principal against AAD
2. Lists the registries of every configured subscription
3. Requests a refresh token from all registries concurrently
4. Writes the docker config file and updates the Kubernetes secret
5. In daemon mode, sleeps until 10 minutes (--refresh-advance) before the
   earliest token expiry and starts over

If authentication or registry listing fails in daemon mode, the cycle is
retried with exponential backoff (30s doubling up to 10 minutes).

Usage:
------
    python -m services.acr_keeper.main --docker-config ~/.docker/config.json
    python -m services.acr_keeper.main --daemon \\
        --k8s-secret-namespace default --k8s-secret-name acr-pull \\
        --k8s-secret-filename .dockerconfigjson

Environment:
------------
    AZURE_TENANT, AZURE_SUBSCRIPTION, AZURE_CLIENT, AZURE_CLIENT_SECRET
    KUBERNETES_SECRET_NAMESPACE, KUBERNETES_SECRET_NAME, KUBERNETES_SECRET_FILENAME

Exit codes: 0 success, 1 failed cycle (one-shot mode), 2 configuration error.
"""

import sys
import signal
import logging
import threading
from enum import Enum
from functools import partial
from typing import Callable, List, Optional, Sequence

from shared.acr_client import AcrClient
from shared.azure_auth import AzureAuthenticator
from shared.config_loader import KeeperConfig, load_config
from shared.errors import ConfigError, CycleError
from shared.sinks import FileSink, KubernetesSecretSink, publish
from services.acr_keeper.orchestrator import RefreshCycleResult, run_cycle
from services.acr_keeper.scheduler import backoff_delay, next_wake, sleep_seconds, utcnow

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

MAX_CYCLE_FAILURES = 5  # Consecutive failed cycles before alerting

# Set by SIGINT/SIGTERM, interrupts any sleep
shutdown_requested = threading.Event()


class KeeperState(Enum):
    """
    States of the keeper loop.

    CYCLING -> IDLE (cycle and publication finished, daemon mode)
    IDLE -> CYCLING (wake time reached)
    The first cycle starts immediately. One-shot mode stops after CYCLING.
    """
    CYCLING = "Cycling"
    IDLE = "Idle"


def signal_handler(signum, frame):
    """Handle shutdown signals (CTRL+C, SIGTERM)."""
    logger.info(f"Shutdown signal received ({signum}). Exiting gracefully...")
    shutdown_requested.set()


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()]
    )
    logging.getLogger().setLevel(level)
    # The Azure SDK logs every HTTP request at INFO
    logging.getLogger("azure").setLevel(logging.WARNING)


def build_sinks(config: KeeperConfig) -> List:
    """Create the sinks enabled by the configuration."""
    sinks = []
    if config.docker_config_path:
        sinks.append(FileSink(config.docker_config_path))
    if config.k8s_enabled:
        sinks.append(KubernetesSecretSink(
            config.k8s_namespace,
            config.k8s_secret_name,
            config.k8s_secret_filename,
            secret_type=config.k8s_secret_type,
        ))
    return sinks


def refresh_credentials(
    config: KeeperConfig,
    authenticator: AzureAuthenticator,
    acr_client: AcrClient,
    sinks: Sequence,
) -> RefreshCycleResult:
    """
    Run one full refresh cycle and publish the result.

    Raises:
        CycleError: If authentication or registry enumeration fails
    """
    bearer = authenticator.get_bearer_token()

    identities = []
    for subscription_id in config.subscriptions:
        identities.extend(acr_client.list_registries(subscription_id, config.tenant_id, bearer.token))

    result = run_cycle(
        identities,
        partial(_fetch_with_token, acr_client, bearer.token),
        max_workers=config.max_workers,
    )

    logger.info(
        f"Refreshed {len(result.credentials)} registries, {result.failure_count} failed"
    )
    if result.unknown_expiry_count:
        logger.warning(f"{result.unknown_expiry_count} registries returned a token with unknown expiry")
    if result.min_valid_until is not None:
        logger.info(f"Earliest token expiry: {result.min_valid_until.isoformat()}")

    publish(result.credentials.to_json(), sinks)
    return result


def _fetch_with_token(acr_client: AcrClient, access_token: str, identity):
    return acr_client.fetch_credential(identity, access_token)


class AcrKeeper:
    """
    The keeper loop.

    Runs refresh cycles strictly one after another. In one-shot mode a
    single cycle runs and its CycleError, if any, propagates. In daemon mode
    the loop runs until stop is set.
    """

    def __init__(
        self,
        config: KeeperConfig,
        refresh: Callable[[], RefreshCycleResult],
        stop: Optional[threading.Event] = None,
        clock: Callable = utcnow,
    ):
        self.config = config
        self.refresh = refresh
        self.stop = stop if stop is not None else shutdown_requested
        self.clock = clock
        self.state = KeeperState.CYCLING
        self.cycles = 0
        self.consecutive_failures = 0

    def run(self) -> Optional[RefreshCycleResult]:
        """
        Run the loop.

        Returns:
            The last successful RefreshCycleResult, or None if none succeeded
        """
        last_result = None

        while not self.stop.is_set():
            self.state = KeeperState.CYCLING
            self.cycles += 1

            try:
                result = self.refresh()
            except CycleError as e:
                if not self.config.daemon:
                    raise
                self._wait(self._after_failure(e))
                continue

            last_result = result
            self.consecutive_failures = 0

            if not self.config.daemon:
                break

            self._wait(self._after_success(result))

        logger.info("ACR keeper stopped")
        return last_result

    def _after_success(self, result: RefreshCycleResult) -> float:
        now = self.clock()
        wake = next_wake(
            result,
            self.config.refresh_advance_seconds,
            now,
            refresh_interval=self.config.refresh_interval,
        )
        seconds = sleep_seconds(wake, now)
        logger.info(f"Sleeping for {seconds / 60:.2f} minutes ({wake.isoformat()})")
        return seconds

    def _after_failure(self, error: CycleError) -> float:
        self.consecutive_failures += 1
        delay = backoff_delay(self.consecutive_failures)
        logger.error(
            f"Refresh cycle failed (attempt {self.consecutive_failures}): {error} "
            f"- retrying in {delay:.0f}s"
        )
        if self.consecutive_failures >= MAX_CYCLE_FAILURES:
            logger.critical(
                f"ALERT: Refresh cycle failed {self.consecutive_failures} consecutive times! "
                "Registry credentials will expire without intervention."
            )
        return delay

    def _wait(self, seconds: float):
        self.state = KeeperState.IDLE
        # Event.wait raises OverflowError beyond TIMEOUT_MAX
        self.stop.wait(min(seconds, threading.TIMEOUT_MAX))


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the ACR keeper service."""
    setup_logging()

    try:
        config = load_config(argv)
    except ConfigError as e:
        logger.error(f"[FATAL] {e}")
        return 2

    setup_logging(config.log_level)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("=" * 60)
    logger.info("ACR KEEPER STARTING")
    logger.info(f"Mode: {'DAEMON' if config.daemon else 'ONE-SHOT'}")
    logger.info(f"Subscriptions: {', '.join(config.subscriptions)}")
    logger.info(f"Docker config: {config.docker_config_path or 'DISABLED'}")
    if config.k8s_enabled:
        logger.info(f"Kubernetes secret: {config.k8s_namespace}/{config.k8s_secret_name} "
                    f"(key {config.k8s_secret_filename})")
    else:
        logger.info("Kubernetes secret: DISABLED")
    logger.info(f"Refresh advance: {config.refresh_advance_seconds}s before expiry")
    if config.refresh_interval:
        logger.info(f"Refresh interval override: {config.refresh_interval}")
    logger.info("=" * 60)

    authenticator = AzureAuthenticator(config.tenant_id, config.client_id, config.client_secret)
    acr_client = AcrClient(timeout=config.http_timeout)
    sinks = build_sinks(config)

    keeper = AcrKeeper(
        config,
        partial(refresh_credentials, config, authenticator, acr_client, sinks),
    )

    try:
        keeper.run()
    except CycleError as e:
        logger.error(f"[FATAL] {e}")
        return 1
    finally:
        authenticator.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
