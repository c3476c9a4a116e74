"""
ACR Keeper Service

Keeps Azure Container Registry credentials fresh in a docker config file
and/or a Kubernetes secret.

How It Works:
-------------
1. Authenticates a service principal against Azure AD
2. Lists the container registries of every configured subscription
3. Exchanges the AAD token for an ACR refresh token on every registry,
   concurrently (bounded by --max-workers)
4. Publishes {"auths": {...}} to the configured sinks
5. In daemon mode, wakes REFRESH_ADVANCE seconds before the earliest
   token expiry (or after MINIMUM_INTERVAL_SECONDS if none is known)

Configuration:
--------------
| Setting                   | Value | Description                               |
|---------------------------|-------|-------------------------------------------|
| --refresh-advance         | 600   | Refresh this many seconds before expiry   |
| MINIMUM_INTERVAL_SECONDS  | 600   | Sleep floor when no expiry is usable      |
| MAX_CYCLE_FAILURES        | 5     | Alert after this many failed cycles       |

Usage:
------
    python -m services.acr_keeper.main --daemon --docker-config /root/.docker/config.json
"""

from services.acr_keeper.orchestrator import RefreshCycleResult, run_cycle
from services.acr_keeper.scheduler import (
    next_wake,
    backoff_delay,
    MINIMUM_INTERVAL_SECONDS,
)
from services.acr_keeper.main import AcrKeeper, KeeperState, refresh_credentials

__all__ = [
    'RefreshCycleResult',
    'run_cycle',
    'next_wake',
    'backoff_delay',
    'MINIMUM_INTERVAL_SECONDS',
    'AcrKeeper',
    'KeeperState',
    'refresh_credentials',
]
