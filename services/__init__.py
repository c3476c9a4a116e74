"""
ACR Keeper Services

Standalone services that run as systemd units or Kubernetes deployments.

Services:
---------
- acr_keeper: Keeps Azure Container Registry credentials fresh 24/7
  - Refreshes every registry of the configured subscriptions concurrently
  - Wakes 10 minutes before the earliest token expiry
  - Publishes a docker config file and/or a Kubernetes secret

Commands:
---------
    # One-shot refresh
    acr-keeper --docker-config ~/.docker/config.json

    # Daemon
    acr-keeper --daemon --k8s-secret-namespace default \
        --k8s-secret-name acr-pull --k8s-secret-filename .dockerconfigjson
"""
