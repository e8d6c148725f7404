from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from cachetools import TTLCache

from kubeforge.services.kube_client import KubernetesClients

logger = structlog.get_logger(__name__)

IMAGE_PULL_SECRET_TYPE = "kubernetes.io/dockerconfigjson"


class _CachedDirectory:
    def __init__(self, clients: KubernetesClients) -> None:
        self._clients = clients
        self._cache: TTLCache = TTLCache(maxsize=256, ttl=clients.settings.cache_ttl_seconds)
        self._cache_lock = asyncio.Lock()

    async def _cached(self, key: tuple[Any, ...], fetcher: Callable[[], Awaitable[list[str]]]) -> list[str]:
        async with self._cache_lock:
            if key in self._cache:
                return list(self._cache[key])

        result = await fetcher()

        async with self._cache_lock:
            self._cache[key] = result
        return list(result)

    async def invalidate(self) -> None:
        async with self._cache_lock:
            self._cache.clear()


class NamespaceDirectory(_CachedDirectory):
    """Namespace names for the namespace picker."""

    async def list(self, cluster_id: str | None = None) -> list[str]:  # noqa: A003
        async def _fetch() -> list[str]:
            await self._clients.rate_limiter.acquire()
            try:
                api_client = await self._clients.api_client(cluster_id)
                core_v1 = self._clients.core_api(api_client)

                def _collect() -> list[str]:
                    items = core_v1.list_namespace(limit=1000).items
                    return sorted(str(getattr(ns.metadata, "name", "") or "") for ns in items)

                return await asyncio.to_thread(_collect)
            except Exception as exc:  # noqa: BLE001 - the picker degrades to free text
                logger.warning("directory.list_namespaces_error", cluster=cluster_id, error=str(exc))
                return []

        return await self._cached(("namespaces", cluster_id), _fetch)


class SecretDirectory(_CachedDirectory):
    """Secret names of one type, used for imagePullSecrets."""

    async def list(self, cluster_id: str | None, namespace: str, type: str = IMAGE_PULL_SECRET_TYPE) -> list[str]:  # noqa: A002,A003
        async def _fetch() -> list[str]:
            await self._clients.rate_limiter.acquire()
            try:
                api_client = await self._clients.api_client(cluster_id)
                core_v1 = self._clients.core_api(api_client)

                def _collect() -> list[str]:
                    items = core_v1.list_namespaced_secret(
                        namespace=namespace,
                        field_selector=f"type={type}",
                        limit=1000,
                    ).items
                    return sorted(str(getattr(s.metadata, "name", "") or "") for s in items)

                return await asyncio.to_thread(_collect)
            except Exception as exc:  # noqa: BLE001
                logger.warning("directory.list_secrets_error", cluster=cluster_id, namespace=namespace, error=str(exc))
                return []

        return await self._cached(("secrets", cluster_id, namespace, type), _fetch)
