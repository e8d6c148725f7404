from fastapi import APIRouter, Depends, status

from kubeforge.dependencies import get_session_registry
from kubeforge.exceptions import ApplyRejected, StoreUnavailable
from kubeforge.schemas.apply import (
    ConfirmRequest,
    EditorSnapshot,
    ModeRequest,
    OpenSessionRequest,
    PendingConfirmation,
    YamlContent,
)
from kubeforge.schemas.workload import ManifestModel
from kubeforge.services.sessions import EditorSessionRegistry


router = APIRouter(prefix="/editor/sessions", tags=["editor"])


@router.post("", response_model=EditorSnapshot, status_code=status.HTTP_201_CREATED, summary="Open a create or edit session")
async def open_session(
    payload: OpenSessionRequest,
    registry: EditorSessionRegistry = Depends(get_session_registry),
) -> EditorSnapshot:
    controller = await registry.open(payload.kind, payload.namespace, payload.name, payload.cluster_id)
    return controller.snapshot()


@router.get("/{session_id}", response_model=EditorSnapshot, summary="Current editor state")
async def get_session(session_id: str, registry: EditorSessionRegistry = Depends(get_session_registry)) -> EditorSnapshot:
    controller = await registry.get(session_id)
    return controller.snapshot()


@router.put("/{session_id}/model", response_model=EditorSnapshot, summary="Replace the form model")
async def update_model(
    session_id: str,
    payload: ManifestModel,
    registry: EditorSessionRegistry = Depends(get_session_registry),
) -> EditorSnapshot:
    controller = await registry.get(session_id)
    controller.update_model(payload)
    return controller.snapshot()


@router.put("/{session_id}/yaml", response_model=EditorSnapshot, summary="Replace the YAML buffer")
async def update_yaml(
    session_id: str,
    payload: YamlContent,
    registry: EditorSessionRegistry = Depends(get_session_registry),
) -> EditorSnapshot:
    controller = await registry.get(session_id)
    controller.update_yaml(payload.yaml)
    return controller.snapshot()


@router.post("/{session_id}/mode", response_model=EditorSnapshot, summary="Switch between form and YAML")
async def switch_mode(
    session_id: str,
    payload: ModeRequest,
    registry: EditorSessionRegistry = Depends(get_session_registry),
) -> EditorSnapshot:
    controller = await registry.get(session_id)
    controller.switch_mode(payload.mode)
    return controller.snapshot()


@router.post("/{session_id}/dry-run", response_model=EditorSnapshot, summary="Server-side dry-run of the current manifest")
async def dry_run(session_id: str, registry: EditorSessionRegistry = Depends(get_session_registry)) -> EditorSnapshot:
    controller = await registry.get(session_id)
    await controller.dry_run()
    return controller.snapshot()


@router.post("/{session_id}/submit", response_model=PendingConfirmation, summary="Request confirmation (diff on edit)")
async def request_submit(session_id: str, registry: EditorSessionRegistry = Depends(get_session_registry)) -> PendingConfirmation:
    controller = await registry.get(session_id)
    return controller.request_submit()


@router.post("/{session_id}/confirm", response_model=EditorSnapshot, summary="Apply the confirmed manifest")
async def confirm_submit(
    session_id: str,
    payload: ConfirmRequest,
    registry: EditorSessionRegistry = Depends(get_session_registry),
) -> EditorSnapshot:
    controller = await registry.get(session_id)
    result = await controller.submit(payload.token)
    if not result.success:
        failure = controller.failure
        if failure is not None and failure.code == "STORE_UNAVAILABLE":
            raise StoreUnavailable(failure.message)
        raise ApplyRejected(result.message or "Failed to apply manifest")
    return controller.snapshot()


@router.post("/{session_id}/cancel", response_model=EditorSnapshot, summary="Back out of the confirmation step")
async def cancel_submit(session_id: str, registry: EditorSessionRegistry = Depends(get_session_registry)) -> EditorSnapshot:
    controller = await registry.get(session_id)
    controller.cancel_submit()
    return controller.snapshot()


@router.post("/{session_id}/reload", response_model=EditorSnapshot, summary="Discard edits and fetch again")
async def reload_session(session_id: str, registry: EditorSessionRegistry = Depends(get_session_registry)) -> EditorSnapshot:
    controller = await registry.get(session_id)
    return await controller.reload()


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Abandon the session")
async def abandon_session(session_id: str, registry: EditorSessionRegistry = Depends(get_session_registry)) -> None:
    await registry.close(session_id)
