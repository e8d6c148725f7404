from fastapi import APIRouter, Depends, Query

from kubeforge.dependencies import get_namespace_directory, get_secret_directory
from kubeforge.services.directories import IMAGE_PULL_SECRET_TYPE, NamespaceDirectory, SecretDirectory


router = APIRouter(prefix="/clusters", tags=["directories"])


@router.get("/{cluster_id}/namespaces", response_model=list[str], summary="Namespace names for pickers")
async def list_namespaces(
    cluster_id: str,
    directory: NamespaceDirectory = Depends(get_namespace_directory),
) -> list[str]:
    return await directory.list(None if cluster_id == "default" else cluster_id)


@router.get("/{cluster_id}/namespaces/{namespace}/secrets", response_model=list[str], summary="Secret names of one type")
async def list_secrets(
    cluster_id: str,
    namespace: str,
    type: str = Query(default=IMAGE_PULL_SECRET_TYPE),  # noqa: A002
    directory: SecretDirectory = Depends(get_secret_directory),
) -> list[str]:
    return await directory.list(None if cluster_id == "default" else cluster_id, namespace, type)
