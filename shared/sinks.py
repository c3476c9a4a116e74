"""
Sinks Module

Destinations for the docker config document produced by a refresh cycle:
- FileSink: a local file (e.g. ~/.docker/config.json or a volume mount)
- KubernetesSecretSink: a Secret in a Kubernetes namespace

Sinks are independent. publish() attempts every sink and a failure in one
never prevents the others from being updated.

Usage:
    sinks = [FileSink("/root/.docker/config.json"),
             KubernetesSecretSink("default", "acr-pull", ".dockerconfigjson")]
    report = publish(credentials.to_json(), sinks)
"""

import os
import time
import fcntl
import base64
import logging
from pathlib import Path
from typing import Dict, Iterable, Optional

import urllib3
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from shared.errors import PublishError

logger = logging.getLogger(__name__)

FILE_MODE = 0o600

# Sink name -> True if the sink was updated
PublishReport = Dict[str, bool]

# Lock timeout in seconds (prevent deadlocks between keeper instances)
LOCK_TIMEOUT = 30


class FileSink:
    """
    Writes the document to a file with owner-only permissions.

    The write is atomic (temp file + rename) and guarded by an exclusive
    lock on "<path>.lock" so two keepers sharing a volume never interleave.
    """

    def __init__(self, path: str, lock_timeout: float = LOCK_TIMEOUT):
        self.path = Path(path)
        self.lock_file = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout

    @property
    def name(self) -> str:
        return f"file:{self.path}"

    def _acquire_lock(self) -> int:
        """
        Acquire the exclusive write lock.

        Returns:
            File descriptor holding the lock

        Raises:
            PublishError: If the lock is not acquired within lock_timeout
        """
        start_time = time.time()
        try:
            lock_fd = os.open(str(self.lock_file), os.O_CREAT | os.O_RDWR, FILE_MODE)
        except OSError as e:
            raise PublishError(f"Unable to open lock file {self.lock_file}: {e}") from e

        while True:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                logger.debug(f"Lock acquired: {self.lock_file}")
                return lock_fd
            except OSError:
                if time.time() - start_time >= self.lock_timeout:
                    os.close(lock_fd)
                    raise PublishError(f"Failed to acquire {self.lock_file} after {self.lock_timeout}s")
                time.sleep(0.1)

    def _release_lock(self, lock_fd: int):
        fcntl.flock(lock_fd, fcntl.LOCK_UN)
        os.close(lock_fd)
        logger.debug(f"Lock released: {self.lock_file}")

    def publish(self, document: str):
        """
        Atomically replace the file with the document.

        Raises:
            PublishError: If the file cannot be written
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PublishError(f"Unable to create directory {self.path.parent}: {e}") from e

        lock_fd = self._acquire_lock()
        temp_file = self.path.with_name(f".{self.path.name}.tmp")
        try:
            fd = os.open(str(temp_file), os.O_CREAT | os.O_WRONLY | os.O_TRUNC, FILE_MODE)
            with os.fdopen(fd, "w") as f:
                f.write(document)
                f.flush()
                os.fsync(f.fileno())
            # O_CREAT mode is masked by umask and ignored for existing files
            os.chmod(temp_file, FILE_MODE)
            os.replace(temp_file, self.path)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise PublishError(f"Unable to write docker config {self.path}: {e}") from e
        finally:
            self._release_lock(lock_fd)


class KubernetesSecretSink:
    """
    Creates or replaces a Kubernetes Secret holding the document.

    Cluster access comes from $KUBECONFIG when set, otherwise from the
    in-cluster service account. The API client is created on first use and
    cached.
    """

    def __init__(
        self,
        namespace: str,
        secret_name: str,
        key: str,
        secret_type: str = "Opaque",
        api: Optional[k8s_client.CoreV1Api] = None,
    ):
        self.namespace = namespace
        self.secret_name = secret_name
        self.key = key
        self.secret_type = secret_type
        self._api = api

    @property
    def name(self) -> str:
        return f"secret:{self.namespace}/{self.secret_name}"

    @property
    def api(self) -> k8s_client.CoreV1Api:
        if self._api is None:
            kubeconfig = os.environ.get("KUBECONFIG")
            try:
                if kubeconfig:
                    k8s_config.load_kube_config(config_file=kubeconfig)
                else:
                    k8s_config.load_incluster_config()
            except (ConfigException, OSError) as e:
                raise PublishError(f"Unable to load Kubernetes configuration: {e}") from e
            self._api = k8s_client.CoreV1Api()
        return self._api

    def _read_existing(self) -> Optional[k8s_client.V1Secret]:
        try:
            return self.api.read_namespaced_secret(self.secret_name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise PublishError(f"Unable to read secret {self.namespace}/{self.secret_name}: {e.reason}") from e
        except urllib3.exceptions.HTTPError as e:
            raise PublishError(f"Kubernetes API unreachable: {e}") from e

    def publish(self, document: str):
        """
        Upsert the secret with the document under self.key.

        Raises:
            PublishError: If the secret cannot be read, created or replaced
        """
        data = {self.key: base64.b64encode(document.encode("utf-8")).decode("ascii")}
        existing = self._read_existing()

        try:
            if existing is None:
                secret = k8s_client.V1Secret(
                    api_version="v1",
                    kind="Secret",
                    metadata=k8s_client.V1ObjectMeta(name=self.secret_name, namespace=self.namespace),
                    type=self.secret_type,
                    data=data,
                )
                self.api.create_namespaced_secret(self.namespace, secret)
                logger.info(f"Created Kubernetes secret {self.namespace}/{self.secret_name}")
            else:
                if existing.type and existing.type != self.secret_type:
                    # Secret type is immutable, keep what the cluster has
                    logger.warning(
                        f"Secret {self.namespace}/{self.secret_name} has type {existing.type}, "
                        f"not {self.secret_type} - keeping existing type"
                    )
                existing.data = data
                self.api.replace_namespaced_secret(self.secret_name, self.namespace, existing)
                logger.info(f"Replaced Kubernetes secret {self.namespace}/{self.secret_name}")
        except ApiException as e:
            raise PublishError(f"Unable to update secret {self.namespace}/{self.secret_name}: {e.reason}") from e
        except urllib3.exceptions.HTTPError as e:
            raise PublishError(f"Kubernetes API unreachable: {e}") from e


def publish(document: str, sinks: Iterable) -> PublishReport:
    """
    Hand the document to every sink.

    Failures are logged and reported, never raised.

    Args:
        document: Serialized docker config
        sinks: Objects with a name and a publish(document) method

    Returns:
        PublishReport: sink name -> True if updated
    """
    report: PublishReport = {}
    for sink in sinks:
        logger.info(f"Updating {sink.name}")
        try:
            sink.publish(document)
            report[sink.name] = True
        except PublishError as e:
            logger.error(f"Unable to update {sink.name}: {e}")
            report[sink.name] = False
    return report
