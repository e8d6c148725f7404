from __future__ import annotations

import asyncio
import copy
import json
from typing import Any

import pytest
import yaml
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import ProtocolError

from kubeforge.core.rate_limiter import RateLimiter
from kubeforge.exceptions import ManifestNotFound, StoreError, StoreUnavailable
from kubeforge.schemas.workload import WorkloadKind
from kubeforge.services.kube_client import ROLLOUT_GROUP, ROLLOUT_PLURAL, ROLLOUT_VERSION
from kubeforge.services.manifest import synthesize
from kubeforge.services.manifest_store import SERVER_SIDE_DRY_RUN, KubernetesManifestStore
from tests.conftest import make_model


def _api_error(status: int, message: str | None = None) -> ApiException:
    exc = ApiException(status=status, reason="Error")
    if message is not None:
        exc.body = json.dumps({"kind": "Status", "status": "Failure", "message": message})
    return exc


class FakeApiClient:
    def sanitize_for_serialization(self, obj: Any) -> Any:
        return copy.deepcopy(obj)


class FakeAppsApi:
    def __init__(self, objects: dict[tuple[str, str], dict[str, Any]]) -> None:
        self.objects = objects
        self.writes: list[tuple[str, dict[str, Any], dict[str, Any]]] = []
        self.fail_writes_with: Exception | None = None
        self.fail_reads_with: Exception | None = None

    def read_namespaced_deployment(self, name: str, namespace: str) -> dict[str, Any]:
        if self.fail_reads_with is not None:
            raise self.fail_reads_with
        if (namespace, name) not in self.objects:
            raise _api_error(404, f'deployments.apps "{name}" not found')
        return self.objects[(namespace, name)]

    def create_namespaced_deployment(self, namespace: str, body: dict[str, Any], **kwargs: Any) -> None:
        self._write("create", body, kwargs)

    def replace_namespaced_deployment(self, name: str, namespace: str, body: dict[str, Any], **kwargs: Any) -> None:
        self._write("replace", body, kwargs)

    def _write(self, verb: str, body: dict[str, Any], kwargs: dict[str, Any]) -> None:
        self.writes.append((verb, body, kwargs))
        if self.fail_writes_with is not None:
            raise self.fail_writes_with


class FakeCustomApi:
    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[tuple[Any, ...]] = []

    def get_namespaced_custom_object(self, group: str, version: str, namespace: str, plural: str, name: str) -> dict[str, Any]:
        self.calls.append(("get", group, version, plural))
        if (namespace, name) not in self.objects:
            raise _api_error(404)
        return self.objects[(namespace, name)]

    def create_namespaced_custom_object(self, group: str, version: str, namespace: str, plural: str, body: dict[str, Any], **kwargs: Any) -> None:
        self.calls.append(("create", group, version, plural, body, kwargs))


class FakeClients:
    def __init__(self) -> None:
        self.rate_limiter = RateLimiter(6000)
        self.apps_objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.apps = FakeAppsApi(self.apps_objects)
        self.custom = FakeCustomApi()
        self.clusters: list[str | None] = []

    async def api_client(self, cluster_id: str | None = None) -> FakeApiClient:
        self.clusters.append(cluster_id)
        return FakeApiClient()

    def typed_api(self, api_client: FakeApiClient, kind: WorkloadKind) -> tuple[Any, str]:
        assert kind == WorkloadKind.DEPLOYMENT
        return self.apps, "deployment"

    def custom_api(self, api_client: FakeApiClient) -> FakeCustomApi:
        return self.custom


LIVE = {
    "apiVersion": "apps/v1",
    "kind": "Deployment",
    "metadata": {
        "name": "web",
        "namespace": "default",
        "resourceVersion": "1200",
        "managedFields": [{"manager": "kubectl", "operation": "Update"}],
    },
    "spec": {"replicas": 3},
}


@pytest.fixture
def clients() -> FakeClients:
    return FakeClients()


@pytest.fixture
def manifest_store(clients: FakeClients) -> KubernetesManifestStore:
    return KubernetesManifestStore(clients, cluster_id="staging")  # type: ignore[arg-type]


def _web(replicas: int = 3) -> str:
    return synthesize(WorkloadKind.DEPLOYMENT, make_model(replicas=replicas))


def test_dry_run_creates_absent_workload_server_side(manifest_store: KubernetesManifestStore, clients: FakeClients) -> None:
    result = asyncio.run(manifest_store.apply(_web(), dry_run=True))

    assert result.success is True
    assert result.created is True
    assert "dry run" in (result.message or "")
    verb, body, kwargs = clients.apps.writes[0]
    assert verb == "create"
    assert kwargs == {"dry_run": SERVER_SIDE_DRY_RUN}
    assert body["spec"]["replicas"] == 3
    assert clients.clusters == ["staging"]


def test_apply_replaces_existing_workload_with_live_resource_version(manifest_store: KubernetesManifestStore, clients: FakeClients) -> None:
    clients.apps_objects[("default", "web")] = copy.deepcopy(LIVE)

    result = asyncio.run(manifest_store.apply(_web(5), dry_run=False))

    assert result.success is True
    assert result.created is False
    verb, body, kwargs = clients.apps.writes[0]
    assert verb == "replace"
    assert kwargs == {}
    assert body["metadata"]["resourceVersion"] == "1200"
    assert body["spec"]["replicas"] == 5


def test_apply_keeps_resource_version_carried_by_the_manifest(manifest_store: KubernetesManifestStore, clients: FakeClients) -> None:
    clients.apps_objects[("default", "web")] = copy.deepcopy(LIVE)
    doc = yaml.safe_load(_web())
    doc["metadata"]["resourceVersion"] = "900"

    asyncio.run(manifest_store.apply(yaml.safe_dump(doc), dry_run=False))

    assert clients.apps.writes[0][1]["metadata"]["resourceVersion"] == "900"


def test_conflict_is_a_rejection_with_the_server_message(manifest_store: KubernetesManifestStore, clients: FakeClients) -> None:
    clients.apps_objects[("default", "web")] = copy.deepcopy(LIVE)
    clients.apps.fail_writes_with = _api_error(409, "the object has been modified")

    result = asyncio.run(manifest_store.apply(_web(), dry_run=False))

    assert result.success is False
    assert result.message == "the object has been modified"


def test_unavailable_api_server_raises(manifest_store: KubernetesManifestStore, clients: FakeClients) -> None:
    clients.apps.fail_reads_with = _api_error(503)

    with pytest.raises(StoreUnavailable):
        asyncio.run(manifest_store.apply(_web(), dry_run=True))


def test_connection_errors_raise_unavailable(manifest_store: KubernetesManifestStore, clients: FakeClients) -> None:
    clients.apps.fail_reads_with = ProtocolError("connection reset by peer")

    with pytest.raises(StoreUnavailable):
        asyncio.run(manifest_store.apply(_web(), dry_run=True))
    with pytest.raises(StoreUnavailable):
        asyncio.run(manifest_store.load(WorkloadKind.DEPLOYMENT, "default", "web"))


def test_manifest_without_name_is_rejected_locally(manifest_store: KubernetesManifestStore, clients: FakeClients) -> None:
    result = asyncio.run(manifest_store.apply("kind: Deployment\nmetadata: {}\n", dry_run=True))

    assert result.success is False
    assert clients.apps.writes == []
    assert clients.clusters == []


def test_load_strips_managed_fields_and_leads_with_type(manifest_store: KubernetesManifestStore, clients: FakeClients) -> None:
    live = copy.deepcopy(LIVE)
    del live["apiVersion"]
    del live["kind"]
    clients.apps_objects[("default", "web")] = live

    text = asyncio.run(manifest_store.load(WorkloadKind.DEPLOYMENT, "default", "web"))

    assert text.startswith("apiVersion: apps/v1\nkind: Deployment\nmetadata:\n")
    assert "managedFields" not in text
    assert yaml.safe_load(text)["metadata"]["resourceVersion"] == "1200"


def test_load_of_missing_workload(manifest_store: KubernetesManifestStore) -> None:
    with pytest.raises(ManifestNotFound) as exc_info:
        asyncio.run(manifest_store.load(WorkloadKind.DEPLOYMENT, "default", "ghost"))

    assert exc_info.value.status_code == 404


def test_load_forbidden_is_a_store_error(manifest_store: KubernetesManifestStore, clients: FakeClients) -> None:
    clients.apps.fail_reads_with = _api_error(403, 'deployments.apps "web" is forbidden')

    with pytest.raises(StoreError) as exc_info:
        asyncio.run(manifest_store.load(WorkloadKind.DEPLOYMENT, "default", "web"))

    assert exc_info.value.code == "LOAD_FAILED"
    assert exc_info.value.status_code == 403
    assert "forbidden" in exc_info.value.message


def test_rollouts_go_through_custom_objects(manifest_store: KubernetesManifestStore, clients: FakeClients) -> None:
    text = synthesize(WorkloadKind.ROLLOUT, make_model(WorkloadKind.ROLLOUT))

    result = asyncio.run(manifest_store.apply(text, dry_run=True))

    assert result.created is True
    assert clients.custom.calls[0] == ("get", ROLLOUT_GROUP, ROLLOUT_VERSION, ROLLOUT_PLURAL)
    verb, group, version, plural, body, kwargs = clients.custom.calls[1]
    assert (verb, group, version, plural) == ("create", "argoproj.io", "v1alpha1", "rollouts")
    assert body["kind"] == "Rollout"
    assert kwargs == {"dry_run": "All"}
