from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from kubeforge.config import Settings, get_settings
from kubeforge.core.logging import JSONFormatter, _avoid_reserved_keys
from kubeforge.core.rate_limiter import RateLimiter
from kubeforge.core.request_context import request_id_var
from kubeforge.db import Base
from kubeforge.exceptions import SessionNotFound, WorkflowStateError
from kubeforge.schemas.apply import EditorState
from kubeforge.services.audit import AuditService, manifest_digest
from kubeforge.services.directories import NamespaceDirectory, SecretDirectory
from kubeforge.services.sessions import EditorSessionRegistry
from tests.conftest import FakeManifestStore


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KUBEFORGE_PLACEHOLDER_IMAGE", "busybox:1.36")
    monkeypatch.setenv("KUBEFORGE_SESSION_TTL_SECONDS", "60")
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.placeholder_image == "busybox:1.36"
    assert settings.session_ttl_seconds == 60
    assert settings.app_env == "test"
    assert settings.is_debug is False


def test_json_formatter_redacts_manifest_bodies() -> None:
    record = logging.LogRecord("kubeforge.test", logging.INFO, __file__, 1, "workflow.applied", None, None)
    record.yaml = "kind: Secret\ndata:\n  password: aHVudGVyMg==\n"
    record.kind = "Deployment"
    token = request_id_var.set("req-42")
    try:
        payload = json.loads(JSONFormatter().format(record))
    finally:
        request_id_var.reset(token)

    assert payload["message"] == "workflow.applied"
    assert payload["yaml"] == "***REDACTED***"
    assert payload["kind"] == "Deployment"
    assert payload["request_id"] == "req-42"


def test_structlog_fields_never_clobber_record_attributes() -> None:
    event = _avoid_reserved_keys(logging.getLogger("x"), "info", {"event": "e", "name": "web", "module": "m", "kind": "Job"})

    assert event == {"event": "e", "kind": "Job", "ctx_name": "web", "ctx_module": "m"}


def test_rate_limiter_spends_tokens() -> None:
    limiter = RateLimiter(3, interval=60.0)

    async def spend() -> None:
        for _ in range(3):
            await limiter.acquire()

    asyncio.run(spend())

    assert limiter.available < 1


def test_rate_limiter_rejects_zero_rate() -> None:
    with pytest.raises(ValueError):
        RateLimiter(0)


class FakeCoreApi:
    def __init__(self) -> None:
        self.namespace_calls = 0
        self.secret_calls: list[dict[str, Any]] = []
        self.fail = False

    def list_namespace(self, limit: int) -> SimpleNamespace:
        self.namespace_calls += 1
        if self.fail:
            raise RuntimeError("connection refused")
        names = ["kube-system", "default", "apps"]
        return SimpleNamespace(items=[SimpleNamespace(metadata=SimpleNamespace(name=n)) for n in names])

    def list_namespaced_secret(self, namespace: str, field_selector: str, limit: int) -> SimpleNamespace:
        self.secret_calls.append({"namespace": namespace, "field_selector": field_selector})
        return SimpleNamespace(items=[SimpleNamespace(metadata=SimpleNamespace(name="registry-cred"))])


class FakeDirectoryClients:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.rate_limiter = RateLimiter(6000)
        self.core = FakeCoreApi()

    async def api_client(self, cluster_id: str | None = None) -> object:
        return object()

    def core_api(self, api_client: object) -> FakeCoreApi:
        return self.core


def test_namespace_directory_is_sorted_and_cached(settings: Settings) -> None:
    clients = FakeDirectoryClients(settings)
    directory = NamespaceDirectory(clients)  # type: ignore[arg-type]

    async def scenario() -> tuple[list[str], list[str]]:
        return await directory.list(), await directory.list()

    first, second = asyncio.run(scenario())

    assert first == ["apps", "default", "kube-system"]
    assert second == first
    assert clients.core.namespace_calls == 1


def test_namespace_directory_degrades_to_empty(settings: Settings) -> None:
    clients = FakeDirectoryClients(settings)
    clients.core.fail = True

    names = asyncio.run(NamespaceDirectory(clients).list("prod"))  # type: ignore[arg-type]

    assert names == []


def test_secret_directory_filters_by_type(settings: Settings) -> None:
    clients = FakeDirectoryClients(settings)

    names = asyncio.run(SecretDirectory(clients).list(None, "apps", "kubernetes.io/tls"))  # type: ignore[arg-type]

    assert names == ["registry-cred"]
    assert clients.core.secret_calls == [{"namespace": "apps", "field_selector": "type=kubernetes.io/tls"}]


def test_session_registry_lifecycle(store: FakeManifestStore, settings: Settings) -> None:
    clusters: list[str | None] = []

    def factory(cluster_id: str | None) -> FakeManifestStore:
        clusters.append(cluster_id)
        return store

    registry = EditorSessionRegistry(factory, settings)

    async def scenario() -> None:
        controller = await registry.open("Deployment", cluster_id="staging")
        assert controller.state == EditorState.READY
        assert await registry.get(controller.session_id) is controller
        assert await registry.count() == 1

        await registry.close(controller.session_id)
        assert controller.closed is True
        assert await registry.count() == 0
        with pytest.raises(SessionNotFound):
            await registry.get(controller.session_id)
        with pytest.raises(SessionNotFound):
            await registry.close(controller.session_id)

    asyncio.run(scenario())

    assert clusters == ["staging"]


def test_session_registry_refuses_to_close_while_submitting(store: FakeManifestStore, settings: Settings) -> None:
    registry = EditorSessionRegistry(lambda _cluster_id: store, settings)

    async def scenario() -> None:
        controller = await registry.open("Job")
        pending = controller.request_submit()
        store.gate = asyncio.Event()
        task = asyncio.create_task(controller.submit(pending.token))
        await asyncio.sleep(0)

        with pytest.raises(WorkflowStateError):
            await registry.close(controller.session_id)

        store.gate.set()
        await task
        await registry.close(controller.session_id)

    asyncio.run(scenario())


def test_audit_service_records_digest_and_filters(tmp_path: Path) -> None:
    async def scenario() -> tuple[list[Any], list[Any], list[Any]]:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        service = AuditService(async_sessionmaker(engine, expire_on_commit=False))
        await service.record_apply(kind="Job", namespace="batch", name="migrate", created=True, success=True, manifest="kind: Job\n")
        await service.record_apply(
            kind="Deployment",
            namespace="default",
            name="web",
            created=False,
            success=False,
            manifest="kind: Deployment\n",
            message="denied",
            edit=True,
            cluster="staging",
        )
        everything = await service.list()
        jobs = await service.list(kind="Job")
        failed = await service.list(success=False, cluster="staging")
        await engine.dispose()
        return everything, jobs, failed

    everything, jobs, failed = asyncio.run(scenario())

    assert len(everything) == 2
    assert [row.name for row in jobs] == ["migrate"]
    assert jobs[0].operation == "create"
    assert jobs[0].manifest_sha256 == manifest_digest("kind: Job\n")
    assert len(failed) == 1
    assert failed[0].operation == "update"
    assert failed[0].edit is True
    assert failed[0].message == "denied"


def test_disabled_audit_service_writes_nothing() -> None:
    class ExplodingFactory:
        def __call__(self) -> Any:
            raise AssertionError("session opened")

    service = AuditService(ExplodingFactory(), enabled=False)  # type: ignore[arg-type]
    asyncio.run(service.record_apply(kind="Job", namespace="batch", name="x", created=True, success=True, manifest=""))
