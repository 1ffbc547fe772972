"""Generate language bindings for libraries compiled with `futhark --lib`."""

from .compiler import Compiler, Package
from .errors import (
    VALID_ERROR_CODES,
    BindgenError,
    CompilerError,
    ConfigError,
    DanglingTypeReference,
    EmitterError,
    MalformedManifest,
    NamingContractError,
    UnknownVariant,
)
from .generate import (
    Emitter,
    GenerationResult,
    GenerationSession,
    Generator,
    TypeCatalog,
    available_emitters,
    build_type_catalog,
    detect_emitter,
    register_emitter,
    run_generation,
)
from .manifest import Backend, Manifest, load_manifest, parse_manifest
from .naming import DefaultNamer, Namer
from .python import PythonEmitter
from .rust import RustEmitter

__version__ = "0.1.0"

__all__ = [
    "VALID_ERROR_CODES",
    "Backend",
    "BindgenError",
    "Compiler",
    "CompilerError",
    "ConfigError",
    "DanglingTypeReference",
    "DefaultNamer",
    "Emitter",
    "EmitterError",
    "GenerationResult",
    "GenerationSession",
    "Generator",
    "MalformedManifest",
    "Manifest",
    "Namer",
    "NamingContractError",
    "Package",
    "PythonEmitter",
    "RustEmitter",
    "TypeCatalog",
    "UnknownVariant",
    "available_emitters",
    "build_type_catalog",
    "detect_emitter",
    "load_manifest",
    "parse_manifest",
    "register_emitter",
    "run_generation",
]
