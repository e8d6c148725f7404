from kubeforge.services.manifest.diff import build_diff
from kubeforge.services.manifest.emitter import dump_manifest, load_manifest
from kubeforge.services.manifest.parser import parse
from kubeforge.services.manifest.synthesizer import build_document, default_model, resolve_kind, synthesize, with_defaults
from kubeforge.services.manifest.validation import validate_model, validate_text

__all__ = [
    "build_diff",
    "build_document",
    "default_model",
    "dump_manifest",
    "load_manifest",
    "parse",
    "resolve_kind",
    "synthesize",
    "validate_model",
    "validate_text",
    "with_defaults",
]
