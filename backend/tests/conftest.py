from __future__ import annotations

import asyncio
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml
from fastapi.testclient import TestClient

from kubeforge.config import Settings
from kubeforge.dependencies import (
    get_audit_service,
    get_namespace_directory,
    get_secret_directory,
    get_session_registry,
    reset_cached_dependencies,
)
from kubeforge.exceptions import ManifestNotFound, StoreUnavailable
from kubeforge.main import create_app
from kubeforge.schemas.apply import ApplyResult
from kubeforge.schemas.workload import Container, ManifestModel, PodTemplate, WorkloadKind
from kubeforge.services.sessions import EditorSessionRegistry


class FakeManifestStore:
    """In-memory cluster: objects keyed by (kind, namespace, name)."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], str] = {}
        self.calls: list[tuple[str, bool]] = []
        self.load_calls: list[tuple[str, str, str]] = []
        self.reject_with: str | None = None
        self.unavailable = False
        self.raise_on_apply: Exception | None = None
        self.gate: asyncio.Event | None = None

    def seed(self, text: str) -> tuple[str, str, str]:
        doc = yaml.safe_load(text)
        key = (doc["kind"], doc["metadata"].get("namespace", "default"), doc["metadata"]["name"])
        self.objects[key] = text
        return key

    async def load(self, kind: WorkloadKind, namespace: str, name: str) -> str:
        key = (WorkloadKind(kind).value, namespace, name)
        self.load_calls.append(key)
        if self.unavailable:
            raise StoreUnavailable()
        if key not in self.objects:
            raise ManifestNotFound(*key)
        return self.objects[key]

    async def apply(self, text: str, dry_run: bool) -> ApplyResult:
        self.calls.append((text, dry_run))
        if self.gate is not None:
            await self.gate.wait()
        if self.raise_on_apply is not None:
            raise self.raise_on_apply
        if self.unavailable:
            raise StoreUnavailable()
        if self.reject_with:
            return ApplyResult(success=False, message=self.reject_with)
        doc = yaml.safe_load(text)
        key = (doc["kind"], doc["metadata"].get("namespace", "default"), doc["metadata"]["name"])
        created = key not in self.objects
        if not dry_run:
            self.objects[key] = text
        return ApplyResult(success=True, created=created, message="applied")

    @property
    def dry_runs(self) -> list[str]:
        return [text for text, dry in self.calls if dry]

    @property
    def real_applies(self) -> list[str]:
        return [text for text, dry in self.calls if not dry]


class RecordingAudit:
    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    async def record_apply(self, **entry: Any) -> None:
        self.entries.append(entry)


class FakeDirectory:
    def __init__(self, names: list[str]) -> None:
        self.names = names
        self.calls: list[tuple[Any, ...]] = []

    async def list(self, *args: Any) -> list[str]:  # noqa: A003
        self.calls.append(args)
        return list(self.names)


def make_model(kind: WorkloadKind = WorkloadKind.DEPLOYMENT, name: str = "web", image: str = "nginx:1.25", **fields: Any) -> ManifestModel:
    return ManifestModel(
        kind=kind,
        name=name,
        pod=PodTemplate(containers=[Container(name=name, image=image)]),
        **fields,
    )


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    monkeypatch.setenv("KUBEFORGE_APP_ENV", "test")
    monkeypatch.setenv("KUBEFORGE_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'kubeforge.db'}")
    reset_cached_dependencies()
    yield
    reset_cached_dependencies()


@pytest.fixture
def settings() -> Settings:
    return Settings(app_env="test")


@pytest.fixture
def store() -> FakeManifestStore:
    return FakeManifestStore()


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def namespaces() -> FakeDirectory:
    return FakeDirectory(["default", "kube-system"])


@pytest.fixture
def secrets() -> FakeDirectory:
    return FakeDirectory(["registry-cred"])


@pytest.fixture
def client(store: FakeManifestStore, settings: Settings, namespaces: FakeDirectory, secrets: FakeDirectory) -> Iterator[TestClient]:
    app = create_app()
    registry = EditorSessionRegistry(lambda _cluster_id: store, settings, audit=get_audit_service())
    app.dependency_overrides[get_session_registry] = lambda: registry
    app.dependency_overrides[get_namespace_directory] = lambda: namespaces
    app.dependency_overrides[get_secret_directory] = lambda: secrets
    with TestClient(app) as test_client:
        yield test_client
