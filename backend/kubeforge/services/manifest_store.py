from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol

import structlog
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from kubeforge.exceptions import ManifestNotFound, StoreError, StoreUnavailable
from kubeforge.schemas.apply import ApplyResult
from kubeforge.schemas.workload import API_VERSIONS, WorkloadKind
from kubeforge.services.kube_client import ROLLOUT_GROUP, ROLLOUT_PLURAL, ROLLOUT_VERSION, KubernetesClients
from kubeforge.services.manifest.emitter import dump_manifest
from kubeforge.services.manifest.parser import decode_document
from kubeforge.services.manifest.synthesizer import resolve_kind

logger = structlog.get_logger(__name__)

SERVER_SIDE_DRY_RUN = "All"
# gateway errors mean the API server is unreachable rather than refusing
_UNAVAILABLE_STATUSES = frozenset({0, 502, 503, 504})


class ManifestStore(Protocol):
    async def load(self, kind: WorkloadKind, namespace: str, name: str) -> str: ...

    async def apply(self, text: str, dry_run: bool) -> ApplyResult: ...


def _status_message(exc: ApiException) -> str:
    """Pull ``Status.message`` out of an API error body."""
    body = getattr(exc, "body", None)
    if body:
        try:
            payload = json.loads(body)
        except (TypeError, ValueError):
            payload = None
        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])
    return f"{exc.status} {exc.reason}".strip()


class KubernetesManifestStore:
    """Reads and applies workload manifests against one cluster."""

    def __init__(self, clients: KubernetesClients, cluster_id: str | None = None) -> None:
        self._clients = clients
        self._cluster_id = cluster_id

    def _read(self, api_client: Any, kind: WorkloadKind, namespace: str, name: str) -> dict[str, Any]:
        if kind == WorkloadKind.ROLLOUT:
            obj = self._clients.custom_api(api_client).get_namespaced_custom_object(
                ROLLOUT_GROUP, ROLLOUT_VERSION, namespace, ROLLOUT_PLURAL, name
            )
        else:
            api, suffix = self._clients.typed_api(api_client, kind)
            obj = getattr(api, f"read_namespaced_{suffix}")(name=name, namespace=namespace)
        data: dict[str, Any] = api_client.sanitize_for_serialization(obj)
        return data

    def _write(self, api_client: Any, kind: WorkloadKind, namespace: str, name: str, body: dict[str, Any], *, create: bool, dry_run: bool) -> None:
        kwargs: dict[str, Any] = {"dry_run": SERVER_SIDE_DRY_RUN} if dry_run else {}
        if kind == WorkloadKind.ROLLOUT:
            custom = self._clients.custom_api(api_client)
            if create:
                custom.create_namespaced_custom_object(ROLLOUT_GROUP, ROLLOUT_VERSION, namespace, ROLLOUT_PLURAL, body, **kwargs)
            else:
                custom.replace_namespaced_custom_object(ROLLOUT_GROUP, ROLLOUT_VERSION, namespace, ROLLOUT_PLURAL, name, body, **kwargs)
            return
        api, suffix = self._clients.typed_api(api_client, kind)
        if create:
            getattr(api, f"create_namespaced_{suffix}")(namespace=namespace, body=body, **kwargs)
        else:
            getattr(api, f"replace_namespaced_{suffix}")(name=name, namespace=namespace, body=body, **kwargs)

    async def load(self, kind: WorkloadKind, namespace: str, name: str) -> str:
        kind = resolve_kind(kind)
        await self._clients.rate_limiter.acquire()
        api_client = await self._clients.api_client(self._cluster_id)

        def _do() -> str:
            data = self._read(api_client, kind, namespace, name)
            metadata = data.get("metadata") if isinstance(data, dict) else None
            if isinstance(metadata, dict):
                metadata.pop("managedFields", None)
            rest = {k: v for k, v in data.items() if k not in ("apiVersion", "kind")}
            document = {
                "apiVersion": data.get("apiVersion") or API_VERSIONS[kind],
                "kind": data.get("kind") or kind.value,
                **rest,
            }
            return dump_manifest(document)

        try:
            return await asyncio.to_thread(_do)
        except ApiException as exc:
            if exc.status == 404:
                raise ManifestNotFound(kind.value, namespace, name) from exc
            if exc.status in _UNAVAILABLE_STATUSES:
                raise StoreUnavailable(_status_message(exc)) from exc
            logger.warning("manifest_store.load_failed", kind=kind.value, namespace=namespace, workload=name, status=exc.status)
            raise StoreError(_status_message(exc), status_code=exc.status or 502, code="LOAD_FAILED") from exc
        except HTTPError as exc:
            logger.warning("manifest_store.unreachable", error=str(exc))
            raise StoreUnavailable(f"Cluster API unreachable: {exc}") from exc

    async def apply(self, text: str, dry_run: bool) -> ApplyResult:
        """Create the workload if absent, replace it otherwise.

        A manifest without ``resourceVersion`` adopts the live one, so an
        edited manifest that still carries its fetched version is rejected
        when the object changed in the meantime.
        """
        document = decode_document(text)
        kind = resolve_kind(document.get("kind"))
        metadata = document.get("metadata") if isinstance(document.get("metadata"), dict) else {}
        name = metadata.get("name")
        namespace = metadata.get("namespace") or "default"
        if not name:
            return ApplyResult(success=False, message="metadata.name is required")

        await self._clients.rate_limiter.acquire()
        api_client = await self._clients.api_client(self._cluster_id)
        suffix = " (dry run)" if dry_run else ""

        def _do() -> ApplyResult:
            try:
                existing = self._read(api_client, kind, namespace, name)
            except ApiException as exc:
                if exc.status != 404:
                    raise
                existing = None

            body = dict(document)
            if existing is None:
                self._write(api_client, kind, namespace, name, body, create=True, dry_run=dry_run)
                return ApplyResult(success=True, created=True, message=f"{kind.value} {namespace}/{name} created{suffix}")

            body_meta = dict(metadata)
            if not body_meta.get("resourceVersion"):
                body_meta["resourceVersion"] = (existing.get("metadata") or {}).get("resourceVersion")
            body["metadata"] = body_meta
            self._write(api_client, kind, namespace, name, body, create=False, dry_run=dry_run)
            return ApplyResult(success=True, created=False, message=f"{kind.value} {namespace}/{name} configured{suffix}")

        try:
            result = await asyncio.to_thread(_do)
        except ApiException as exc:
            if exc.status in _UNAVAILABLE_STATUSES:
                raise StoreUnavailable(_status_message(exc)) from exc
            message = _status_message(exc)
            logger.warning(
                "manifest_store.apply_rejected",
                kind=kind.value,
                namespace=namespace,
                workload=name,
                dry_run=dry_run,
                status=exc.status,
                error=message,
            )
            return ApplyResult(success=False, message=message)
        except HTTPError as exc:
            logger.warning("manifest_store.unreachable", error=str(exc))
            raise StoreUnavailable(f"Cluster API unreachable: {exc}") from exc

        logger.info("manifest_store.applied", kind=kind.value, namespace=namespace, workload=name, dry_run=dry_run, created=result.created)
        return result
