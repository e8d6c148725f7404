from fastapi import APIRouter

from kubeforge.api.routes import audit, directories, editor, manifests


api_router = APIRouter(prefix="/api/v1")
api_router.include_router(manifests.router)
api_router.include_router(editor.router)
api_router.include_router(directories.router)
api_router.include_router(audit.router)
