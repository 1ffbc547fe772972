"""Generation engine: type catalog, emitter contract and the phase driver.

A generation run walks a manifest in five fixed phases and hands each item
to an `Emitter` for one target language:

    1. setup        - type catalog + backend-specific prelude
    2. array types  - one handle type per ArrayType, in manifest order
    3. opaque types - one handle type per OpaqueType, in manifest order
    4. entry points - one callable per Entry, in manifest order
    5. format       - optional, best-effort post-processing of the output

Emitter hooks return source lines; the driver writes them to the output
file as each hook returns. Nothing is cleaned up when a phase fails.
"""

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from collections.abc import Callable, Mapping

from .errors import BindgenError
from .manifest import (
    ArrayType,
    Entry,
    Manifest,
    OpaqueArray,
    OpaqueType,
    Record,
    RecordArray,
    Sum,
    validate_type_references,
)
from .naming import DefaultNamer, Namer, convert_struct_name


# ===--- Type catalog ---=== #


@dataclass(frozen=True)
class TypeCatalog:
    """Generated and raw names for every manifest type.

    Built in a single pass before anything is emitted, so any phase can refer
    to any type regardless of declaration order.

    Attributes:
        type_names: Manifest type name -> generated target-language name.
        raw_names: Manifest type name -> bare C struct name.
    """

    type_names: Mapping[str, str]
    raw_names: Mapping[str, str]

    def type_name(self, name: str) -> str:
        return self.type_names[name]

    def raw_name(self, name: str) -> str:
        return self.raw_names[name]


def build_type_catalog(manifest: Manifest, namer: Namer) -> TypeCatalog:
    namer.init(manifest)
    type_names: dict[str, str] = {}
    raw_names: dict[str, str] = {}
    for name, ty in manifest.types.items():
        type_names[name] = namer.type_name(name, ty, manifest)
        raw_names[name] = convert_struct_name(ty.ctype)
    return TypeCatalog(
        type_names=MappingProxyType(type_names),
        raw_names=MappingProxyType(raw_names),
    )


# ===--- Per-run session ---=== #


@dataclass
class GenerationSession:
    """All state owned by one generation run.

    Passed explicitly to every emitter hook. Discarded when the run ends.
    """

    manifest: Manifest
    namer: Namer
    catalog: TypeCatalog
    output_path: Path
    entry_points_within_context: bool = False

    @property
    def backend(self):
        return self.manifest.backend

    def is_scalar(self, type_name: str) -> bool:
        return self.manifest.is_scalar(type_name)

    def type_name(self, type_name: str) -> str:
        return self.catalog.type_name(type_name)

    def raw_name(self, type_name: str) -> str:
        return self.catalog.raw_name(type_name)

    def project_name(self, field_name: str) -> str:
        return self.namer.project_name(field_name, self.manifest)

    def new_field_name(self, field_name: str) -> str:
        return self.namer.new_field_name(field_name, self.manifest)


# ===--- Emitter contract ---=== #


class Emitter(ABC):
    """One target language.

    Subclasses implement the per-phase hooks. `opaque_type` dispatches on the
    opaque variant; record arrays arrive at `opaque_array` with
    `array.record` set.
    """

    name: str = ""
    extension: str = ""

    @abstractmethod
    def setup(self, session: GenerationSession) -> list[str]:
        pass

    @abstractmethod
    def array_type(
        self, session: GenerationSession, name: str, ty: ArrayType
    ) -> list[str]:
        pass

    def opaque_type(
        self, session: GenerationSession, name: str, ty: OpaqueType
    ) -> list[str]:
        options = ty.options
        if isinstance(options, Record):
            return self.record(session, name, ty, options)
        if isinstance(options, Sum):
            return self.sum(session, name, ty, options)
        if isinstance(options, (OpaqueArray, RecordArray)):
            return self.opaque_array(session, name, ty, options)
        raise TypeError(f"Unhandled opaque variant: {type(options).__name__}")

    @abstractmethod
    def record(
        self, session: GenerationSession, name: str, ty: OpaqueType, record: Record
    ) -> list[str]:
        pass

    @abstractmethod
    def sum(
        self, session: GenerationSession, name: str, ty: OpaqueType, sum_: Sum
    ) -> list[str]:
        pass

    @abstractmethod
    def opaque_array(
        self,
        session: GenerationSession,
        name: str,
        ty: OpaqueType,
        array: OpaqueArray | RecordArray,
    ) -> list[str]:
        pass

    @abstractmethod
    def entry(self, session: GenerationSession, name: str, entry: Entry) -> list[str]:
        pass

    def format(self, path: Path) -> bool:
        """Post-process the written file. Returns True if a formatter ran."""
        return False


def run_formatter(argv: list[str]) -> bool:
    """Run an external formatter, ignoring every failure mode."""
    try:
        result = subprocess.run(argv, capture_output=True, text=True, check=False)
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0


# ===--- Emitter registry ---=== #

EMITTERS: dict[str, type[Emitter]] = {}


def register_emitter(extension: str) -> Callable[[type[Emitter]], type[Emitter]]:
    """Class decorator registering an emitter for an output file extension."""

    def decorator(cls: type[Emitter]) -> type[Emitter]:
        cls.extension = extension
        EMITTERS[extension] = cls
        return cls

    return decorator


def available_emitters() -> dict[str, type[Emitter]]:
    return dict(sorted(EMITTERS.items()))


def detect_emitter(output_path: Path) -> Emitter | None:
    """Pick an emitter by output file extension, or None if none matches."""
    cls = EMITTERS.get(Path(output_path).suffix.lower())
    if cls is None:
        return None
    return cls()


# ===--- Phase driver ---=== #


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of one completed generation run.

    Attributes:
        output_path: File the bindings were written to.
        emitter: Name of the emitter that produced them.
        type_count: Number of manifest types emitted (arrays + opaques).
        entry_count: Number of entry points emitted.
        line_count: Lines written before post-formatting.
        formatted: True when the post-format step ran successfully.
    """

    output_path: Path
    emitter: str
    type_count: int
    entry_count: int
    line_count: int
    formatted: bool


def _write_lines(out, lines: list[str]) -> int:
    for line in lines:
        out.write(line)
        out.write("\n")
    return len(lines)


def run_generation(
    manifest: Manifest,
    emitter: Emitter,
    output_path: Path,
    namer: Namer | None = None,
    *,
    format_output: bool = True,
    entry_points_within_context: bool = False,
) -> GenerationResult:
    """Generate bindings for `manifest` into `output_path`.

    Args:
        manifest: Parsed manifest.
        emitter: Target-language emitter.
        output_path: File to create (overwritten if present).
        namer: Naming policy. A fresh DefaultNamer when omitted.
        format_output: Run the emitter's formatter after writing.
        entry_points_within_context: Ask the emitter to attach entry points
            to the context type instead of emitting free functions.

    Returns:
        GenerationResult describing the written file.

    Raises:
        DanglingTypeReference: Before the output file is created.
        NamingContractError: Before the output file is created.
        BindgenError: From any emitter hook; the output file is left as is.
        OSError: If the output file cannot be created or written.
    """
    output_path = Path(output_path)
    if namer is None:
        namer = DefaultNamer()

    # Phase 1: everything that can reject the manifest runs before the
    # output file is opened.
    validate_type_references(manifest)
    catalog = build_type_catalog(manifest, namer)
    session = GenerationSession(
        manifest=manifest,
        namer=namer,
        catalog=catalog,
        output_path=output_path,
        entry_points_within_context=entry_points_within_context,
    )

    line_count = 0
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8", newline="\n") as out:
        line_count += _write_lines(out, emitter.setup(session))

        for name, ty in manifest.array_types():
            line_count += _write_lines(out, emitter.array_type(session, name, ty))

        for name, ty in manifest.opaque_types():
            line_count += _write_lines(out, emitter.opaque_type(session, name, ty))

        for name, entry in manifest.entry_points.items():
            line_count += _write_lines(out, emitter.entry(session, name, entry))

    formatted = False
    if format_output:
        try:
            formatted = bool(emitter.format(output_path))
        except (OSError, subprocess.SubprocessError):
            formatted = False

    return GenerationResult(
        output_path=output_path,
        emitter=emitter.name,
        type_count=len(manifest.types),
        entry_count=len(manifest.entry_points),
        line_count=line_count,
        formatted=formatted,
    )


class Generator:
    """Entry point for callers: an output path plus a naming policy.

    Usage:
        gen = Generator("bindings.rs")
        gen.generate(manifest)
    """

    def __init__(
        self,
        output_path: Path,
        namer: Namer | None = None,
        *,
        entry_points_within_context: bool = False,
    ):
        self.output_path = Path(output_path)
        self.namer = namer if namer is not None else DefaultNamer()
        self.entry_points_within_context = entry_points_within_context

    def detect(self) -> Emitter | None:
        return detect_emitter(self.output_path)

    def generate(
        self,
        source,
        emitter: Emitter | None = None,
        *,
        format_output: bool = True,
    ) -> GenerationResult:
        """Generate bindings from a Manifest or a compiled Package."""
        manifest = source if isinstance(source, Manifest) else source.manifest
        if emitter is None:
            emitter = self.detect()
        if emitter is None:
            raise BindgenError(
                "NO_EMITTER",
                f"No emitter for output file {self.output_path.name!r}",
                "Use one of: " + ", ".join(available_emitters()) + ".",
            )
        return run_generation(
            manifest,
            emitter,
            self.output_path,
            self.namer,
            format_output=format_output,
            entry_points_within_context=self.entry_points_within_context,
        )
