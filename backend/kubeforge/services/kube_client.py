from __future__ import annotations

import asyncio
from typing import Any

import structlog
from kubernetes import client, config
from kubernetes.client import ApiClient
from kubernetes.config.config_exception import ConfigException

from kubeforge.config import Settings, get_settings
from kubeforge.core.rate_limiter import RateLimiter
from kubeforge.exceptions import StoreUnavailable
from kubeforge.schemas.workload import WorkloadKind

logger = structlog.get_logger(__name__)

ROLLOUT_GROUP = "argoproj.io"
ROLLOUT_VERSION = "v1alpha1"
ROLLOUT_PLURAL = "rollouts"

# typed API group and method suffix per built-in kind
_TYPED_RESOURCES: dict[WorkloadKind, tuple[str, str]] = {
    WorkloadKind.DEPLOYMENT: ("apps", "deployment"),
    WorkloadKind.STATEFULSET: ("apps", "stateful_set"),
    WorkloadKind.DAEMONSET: ("apps", "daemon_set"),
    WorkloadKind.JOB: ("batch", "job"),
    WorkloadKind.CRONJOB: ("batch", "cron_job"),
}


class KubernetesClients:
    """One ApiClient per cluster, built lazily and shared across requests.

    ``cluster_id`` names a kubeconfig context; ``None`` falls back to the
    configured context, or to the in-cluster service account.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._clients: dict[str | None, ApiClient] = {}
        self._client_lock = asyncio.Lock()
        self._rate_limiter = RateLimiter(self.settings.rate_limit_requests_per_minute)

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    async def api_client(self, cluster_id: str | None = None) -> ApiClient:
        key = cluster_id or self.settings.kube_context
        if key in self._clients:
            return self._clients[key]

        async with self._client_lock:
            if key in self._clients:
                return self._clients[key]

            def _build() -> ApiClient:
                configuration = client.Configuration()
                try:
                    if self.settings.in_cluster and cluster_id is None:
                        config.load_incluster_config(client_configuration=configuration)
                    else:
                        config.load_kube_config(
                            config_file=self.settings.kube_config_path,
                            context=key,
                            client_configuration=configuration,
                        )
                except ConfigException as exc:
                    logger.warning("kubernetes.config_missing", cluster=key, error=str(exc))
                    raise StoreUnavailable(f"No usable Kubernetes configuration for cluster {key or 'default'}") from exc
                return client.ApiClient(configuration)

            api_client = await asyncio.to_thread(_build)
            self._clients[key] = api_client
            logger.info("kubernetes.client_ready", cluster=key or "default")
            return api_client

    def typed_api(self, api_client: ApiClient, kind: WorkloadKind) -> tuple[Any, str]:
        group, suffix = _TYPED_RESOURCES[kind]
        api = client.AppsV1Api(api_client) if group == "apps" else client.BatchV1Api(api_client)
        return api, suffix

    def custom_api(self, api_client: ApiClient) -> client.CustomObjectsApi:
        return client.CustomObjectsApi(api_client)

    def core_api(self, api_client: ApiClient) -> client.CoreV1Api:
        return client.CoreV1Api(api_client)

    def close(self) -> None:
        for api_client in self._clients.values():
            api_client.close()
        self._clients.clear()
