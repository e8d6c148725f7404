from functools import lru_cache

from kubeforge.config import get_settings
from kubeforge.db import get_session_factory
from kubeforge.services.audit import AuditService
from kubeforge.services.directories import NamespaceDirectory, SecretDirectory
from kubeforge.services.kube_client import KubernetesClients
from kubeforge.services.manifest_store import KubernetesManifestStore
from kubeforge.services.sessions import EditorSessionRegistry


@lru_cache(maxsize=1)
def get_kube_clients() -> KubernetesClients:
    return KubernetesClients(get_settings())


@lru_cache(maxsize=1)
def get_audit_service() -> AuditService:
    return AuditService(get_session_factory(), enabled=get_settings().audit_enabled)


def _store_for_cluster(cluster_id: str | None) -> KubernetesManifestStore:
    return KubernetesManifestStore(get_kube_clients(), cluster_id)


@lru_cache(maxsize=1)
def get_session_registry() -> EditorSessionRegistry:
    return EditorSessionRegistry(_store_for_cluster, get_settings(), audit=get_audit_service())


@lru_cache(maxsize=1)
def get_namespace_directory() -> NamespaceDirectory:
    return NamespaceDirectory(get_kube_clients())


@lru_cache(maxsize=1)
def get_secret_directory() -> SecretDirectory:
    return SecretDirectory(get_kube_clients())


def reset_cached_dependencies() -> None:
    get_kube_clients.cache_clear()
    get_audit_service.cache_clear()
    get_session_registry.cache_clear()
    get_namespace_directory.cache_clear()
    get_secret_directory.cache_clear()
    get_settings.cache_clear()
