"""
Refresh Orchestrator

Runs one refresh cycle: a token exchange per registry, fanned out over a
bounded thread pool, fanned back in through a queue to a single aggregator
thread that owns the credential set being built.

Rules:
- Every registry of every subscription is fetched in the same fan-out.
- A failed fetch is logged and left out; it never affects other fetches.
- The set is only finalized after every fetch has finished.
- Only the aggregator thread writes to the set, so it needs no lock.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from concurrent.futures import ThreadPoolExecutor
from queue import Queue
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from shared.acr_client import RegistryIdentity
from shared.docker_config import CredentialEntry, CredentialSet
from shared.errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8

FetchFunc = Callable[[RegistryIdentity], CredentialEntry]


@dataclass(frozen=True)
class RefreshCycleResult:
    """
    Output of one refresh cycle.

    Attributes:
        credentials: Credentials of every registry that succeeded
        min_valid_until: Earliest known expiry in the set, None if none known
        failure_count: Number of registries whose fetch failed
        failures: Registry server -> error message
    """
    credentials: CredentialSet
    min_valid_until: Optional[datetime]
    failure_count: int
    failures: Mapping[str, str] = field(default_factory=dict)

    @property
    def unknown_expiry_count(self) -> int:
        return len(self.credentials.unknown_expiry_servers())


@dataclass(frozen=True)
class _FetchOutcome:
    identity: RegistryIdentity
    entry: Optional[CredentialEntry] = None
    error: Optional[str] = None


# Enqueued once after the last fetch has finished
_STOP = object()


class CredentialAggregator:
    """
    Single writer of the credential set under construction.

    Fetch workers put outcomes on the queue; a background thread drains it
    and records entries and failures. finish() must only be called once
    every producer is done.
    """

    def __init__(self, outcomes: "Queue"):
        self._outcomes = outcomes
        self._entries: Dict[str, CredentialEntry] = {}
        self._failures: Dict[str, str] = {}
        self._thread = threading.Thread(target=self._drain, name="credential-aggregator", daemon=True)

    def start(self):
        self._thread.start()

    def _drain(self):
        while True:
            outcome = self._outcomes.get()
            try:
                if outcome is _STOP:
                    return
                server = outcome.identity.login_server
                if outcome.error is None:
                    self._entries[server] = outcome.entry
                    self._failures.pop(server, None)
                elif server not in self._entries:
                    self._failures[server] = outcome.error
            finally:
                self._outcomes.task_done()

    def finish(self) -> Tuple[CredentialSet, Dict[str, str]]:
        """Stop the aggregator and return the finished set and failures."""
        self._outcomes.put(_STOP)
        self._thread.join()
        return CredentialSet(self._entries), dict(self._failures)


def _fetch_one(identity: RegistryIdentity, fetch: FetchFunc, outcomes: "Queue"):
    """Fetch one registry and hand the outcome to the aggregator."""
    try:
        entry = fetch(identity)
    except FetchError as e:
        logger.error(f"Failed to fetch ACR refresh token for {identity.login_server}: {e}")
        outcomes.put(_FetchOutcome(identity, error=str(e)))
    except Exception as e:
        logger.exception(f"Unexpected error fetching ACR refresh token for {identity.login_server}")
        outcomes.put(_FetchOutcome(identity, error=f"{type(e).__name__}: {e}"))
    else:
        outcomes.put(_FetchOutcome(identity, entry=entry))


def run_cycle(
    identities: Iterable[RegistryIdentity],
    fetch: FetchFunc,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> RefreshCycleResult:
    """
    Fetch credentials for every registry concurrently.

    Args:
        identities: Registries of all configured subscriptions
        fetch: Returns a CredentialEntry for a registry, raises on failure
        max_workers: Upper bound on concurrent fetches

    Returns:
        RefreshCycleResult
    """
    if max_workers < 1:
        raise ValueError(f"max_workers must be >= 1, got {max_workers}")

    identities = list(identities)
    outcomes: Queue = Queue()
    aggregator = CredentialAggregator(outcomes)
    aggregator.start()

    if identities:
        workers = min(max_workers, len(identities))
        logger.info(f"Requesting refresh tokens for {len(identities)} registries ({workers} workers)")
        # Leaving the with block waits for every submitted fetch
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="acr-fetch") as executor:
            for identity in identities:
                executor.submit(_fetch_one, identity, fetch, outcomes)

    credentials, failures = aggregator.finish()

    return RefreshCycleResult(
        credentials=credentials,
        min_valid_until=credentials.min_valid_until(),
        failure_count=len(failures),
        failures=failures,
    )
