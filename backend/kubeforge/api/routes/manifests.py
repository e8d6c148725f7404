from fastapi import APIRouter

from kubeforge.schemas.apply import (
    DiffRequest,
    ManifestDiff,
    ParseResponse,
    SynthesizeRequest,
    ValidateResponse,
    YamlContent,
)
from kubeforge.services.manifest import build_diff, parse, resolve_kind, synthesize, validate_text


router = APIRouter(prefix="/manifests", tags=["manifests"])


@router.post("/synthesize", response_model=YamlContent, summary="Render a form model as manifest YAML")
async def synthesize_manifest(payload: SynthesizeRequest) -> YamlContent:
    kind = resolve_kind(payload.kind)
    return YamlContent(yaml=synthesize(kind, payload.model))


@router.post("/parse", response_model=ParseResponse, summary="Read manifest YAML into a form model")
async def parse_manifest(payload: YamlContent) -> ParseResponse:
    parsed = parse(payload.yaml)
    return ParseResponse(kind=parsed.kind, model=parsed.model)


@router.post("/validate", response_model=ValidateResponse, summary="Advisory checks before dry-run")
async def validate_manifest(payload: YamlContent) -> ValidateResponse:
    issues = validate_text(payload.yaml)
    return ValidateResponse(valid=not issues, issues=issues)


@router.post("/diff", response_model=ManifestDiff, summary="Line diff between two manifests")
async def diff_manifests(payload: DiffRequest) -> ManifestDiff:
    return build_diff(payload.original, payload.candidate)
