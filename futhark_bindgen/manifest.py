"""Typed model of the library manifest emitted by `futhark <backend> --lib`.

The manifest describes the foreign interface of a compiled library: its
entry points, its array types and its opaque types. Parsing is
all-or-nothing: `parse_manifest` either returns a complete, validated
`Manifest` or raises.
"""

import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import DanglingTypeReference, MalformedManifest, UnknownVariant


# ===--- Enumerations ---=== #


class Backend(Enum):
    C = "c"
    CUDA = "cuda"
    OPENCL = "opencl"
    MULTICORE = "multicore"
    ISPC = "ispc"
    HIP = "hip"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_name(cls, name: str) -> "Backend | None":
        """Return the backend called `name` (case-insensitive), if any."""
        try:
            return cls(name.lower())
        except ValueError:
            return None

    @classmethod
    def from_env(cls) -> "Backend | None":
        name = os.environ.get("FUTHARK_BACKEND")
        if name is None:
            return None
        return cls.from_name(name)

    def required_c_libs(self) -> tuple[str, ...]:
        """Native libraries the compiled artifact must be linked against."""
        return REQUIRED_C_LIBS[self]

    @property
    def has_threads(self) -> bool:
        return self in (Backend.MULTICORE, Backend.ISPC)

    @property
    def has_device(self) -> bool:
        return self in (Backend.CUDA, Backend.OPENCL, Backend.HIP)


REQUIRED_C_LIBS: dict[Backend, tuple[str, ...]] = {
    Backend.C: (),
    Backend.CUDA: ("cuda", "cudart", "nvrtc", "m"),
    Backend.OPENCL: ("OpenCL", "m"),
    Backend.MULTICORE: ("pthread", "m"),
    Backend.ISPC: ("pthread", "m"),
    Backend.HIP: ("hiprtc", "amdhip64"),
}


class ElemType(Enum):
    I8 = "i8"
    I16 = "i16"
    I32 = "i32"
    I64 = "i64"
    U8 = "u8"
    U16 = "u16"
    U32 = "u32"
    U64 = "u64"
    F16 = "f16"
    F32 = "f32"
    F64 = "f64"
    BOOL = "bool"

    def __str__(self) -> str:
        return self.value


SCALAR_NAMES = frozenset(e.value for e in ElemType)


# ===--- Array types ---=== #


@dataclass(frozen=True)
class ArrayOps:
    new: str
    free: str
    values: str
    shape: str
    index: str


@dataclass(frozen=True)
class ArrayType:
    ctype: str
    rank: int
    elemtype: ElemType
    ops: ArrayOps


# ===--- Opaque types ---=== #


@dataclass(frozen=True)
class OpaqueOps:
    free: str
    store: str
    restore: str


@dataclass(frozen=True)
class Field:
    name: str
    project: str
    type: str


@dataclass(frozen=True)
class Record:
    new: str
    fields: tuple[Field, ...]


@dataclass(frozen=True)
class Variant:
    name: str
    construct: str
    destruct: str
    payload: tuple[str, ...]


@dataclass(frozen=True)
class Sum:
    variant: str
    variants: tuple[Variant, ...]


@dataclass(frozen=True)
class RecordFields:
    """Field projections and zip constructor carried by a record array."""

    zip: str
    fields: tuple[Field, ...]


@dataclass(frozen=True)
class OpaqueArray:
    rank: int
    elemtype: str
    index: str
    shape: str
    record: RecordFields | None = None


@dataclass(frozen=True)
class RecordArray:
    rank: int
    elemtype: str
    index: str
    shape: str
    record: RecordFields


OpaqueOptions = Record | Sum | OpaqueArray | RecordArray


@dataclass(frozen=True)
class OpaqueType:
    ctype: str
    ops: OpaqueOps
    options: OpaqueOptions


Type = ArrayType | OpaqueType


# ===--- Entry points ---=== #


@dataclass(frozen=True)
class Output:
    type: str
    unique: bool


@dataclass(frozen=True)
class Input:
    name: str
    type: str
    unique: bool


@dataclass(frozen=True)
class Entry:
    cfun: str
    outputs: tuple[Output, ...]
    inputs: tuple[Input, ...]
    tuning_params: tuple[str, ...] = ()


@dataclass(frozen=True)
class Manifest:
    """A parsed manifest. Both mappings iterate in sorted-by-name order."""

    backend: Backend
    version: str
    entry_points: dict[str, Entry] = field(default_factory=dict)
    types: dict[str, Type] = field(default_factory=dict)

    def is_scalar(self, type_name: str) -> bool:
        return type_name not in self.types

    def array_types(self) -> list[tuple[str, ArrayType]]:
        return [(n, t) for n, t in self.types.items() if isinstance(t, ArrayType)]

    def opaque_types(self) -> list[tuple[str, OpaqueType]]:
        return [(n, t) for n, t in self.types.items() if isinstance(t, OpaqueType)]


# ===--- Parsing ---=== #

OPAQUE_VARIANT_TAGS = ("record", "sum", "opaque_array", "record_array")
_OPAQUE_COMMON_KEYS = {"kind", "ctype", "ops"}


def _expect(value: object, kind: type, where: str) -> object:
    # bool is a subclass of int; a rank of `true` is still malformed.
    if kind is int and isinstance(value, bool):
        raise MalformedManifest(f"{where}: expected int, got bool")
    if not isinstance(value, kind):
        raise MalformedManifest(
            f"{where}: expected {kind.__name__}, got {type(value).__name__}"
        )
    return value


def _get(obj: dict, key: str, kind: type, where: str) -> object:
    if key not in obj:
        raise MalformedManifest(f"{where}: missing required field {key!r}")
    return _expect(obj[key], kind, f"{where}.{key}")


def _get_str_list(obj: dict, key: str, where: str) -> tuple[str, ...]:
    items = _get(obj, key, list, where)
    return tuple(
        _expect(item, str, f"{where}.{key}[{i}]") for i, item in enumerate(items)
    )


def _parse_rank(obj: dict, where: str) -> int:
    rank = _get(obj, "rank", int, where)
    if rank < 0:
        raise MalformedManifest(f"{where}.rank: must be >= 0, got {rank}")
    return rank


def _parse_elemtype(raw: str, where: str) -> ElemType:
    try:
        return ElemType(raw)
    except ValueError:
        raise MalformedManifest(
            f"{where}.elemtype: unknown scalar type {raw!r}",
            f"Expected one of: {', '.join(sorted(SCALAR_NAMES))}.",
        ) from None


def _parse_array_type(obj: dict, where: str) -> ArrayType:
    ops = _get(obj, "ops", dict, where)
    ops_where = f"{where}.ops"
    return ArrayType(
        ctype=_get(obj, "ctype", str, where),
        rank=_parse_rank(obj, where),
        elemtype=_parse_elemtype(_get(obj, "elemtype", str, where), where),
        ops=ArrayOps(
            new=_get(ops, "new", str, ops_where),
            free=_get(ops, "free", str, ops_where),
            values=_get(ops, "values", str, ops_where),
            shape=_get(ops, "shape", str, ops_where),
            index=_get(ops, "index", str, ops_where),
        ),
    )


def _parse_fields(obj: dict, where: str) -> tuple[Field, ...]:
    fields = []
    for i, raw in enumerate(_get(obj, "fields", list, where)):
        field_where = f"{where}.fields[{i}]"
        raw = _expect(raw, dict, field_where)
        fields.append(
            Field(
                name=_get(raw, "name", str, field_where),
                project=_get(raw, "project", str, field_where),
                type=_get(raw, "type", str, field_where),
            )
        )
    return tuple(fields)


def _parse_record(obj: dict, where: str) -> Record:
    return Record(new=_get(obj, "new", str, where), fields=_parse_fields(obj, where))


def _parse_sum(obj: dict, where: str) -> Sum:
    variants = []
    for i, raw in enumerate(_get(obj, "variants", list, where)):
        variant_where = f"{where}.variants[{i}]"
        raw = _expect(raw, dict, variant_where)
        name = raw.get("name", f"#{i}")
        variants.append(
            Variant(
                name=_expect(name, str, f"{variant_where}.name"),
                construct=_get(raw, "construct", str, variant_where),
                destruct=_get(raw, "destruct", str, variant_where),
                payload=_get_str_list(raw, "payload", variant_where),
            )
        )
    return Sum(variant=_get(obj, "variant", str, where), variants=tuple(variants))


def _parse_record_fields(obj: dict, where: str) -> RecordFields:
    return RecordFields(
        zip=_get(obj, "zip", str, where), fields=_parse_fields(obj, where)
    )


def _parse_opaque_array(obj: dict, where: str) -> OpaqueArray:
    # An opaque array whose elements are records also carries the
    # record-array keys; both must be present for the fusion to apply.
    record = None
    if "zip" in obj or "fields" in obj:
        record = _parse_record_fields(obj, where)
    return OpaqueArray(
        rank=_parse_rank(obj, where),
        elemtype=_get(obj, "elemtype", str, where),
        index=_get(obj, "index", str, where),
        shape=_get(obj, "shape", str, where),
        record=record,
    )


def _parse_record_array(obj: dict, where: str) -> RecordArray:
    return RecordArray(
        rank=_parse_rank(obj, where),
        elemtype=_get(obj, "elemtype", str, where),
        index=_get(obj, "index", str, where),
        shape=_get(obj, "shape", str, where),
        record=_parse_record_fields(obj, where),
    )


_OPAQUE_PARSERS = {
    "record": _parse_record,
    "sum": _parse_sum,
    "opaque_array": _parse_opaque_array,
    "record_array": _parse_record_array,
}


def _parse_opaque_type(obj: dict, where: str) -> OpaqueType:
    ops = _get(obj, "ops", dict, where)
    ops_where = f"{where}.ops"
    tags = sorted(key for key in obj if key not in _OPAQUE_COMMON_KEYS)
    unknown = [tag for tag in tags if tag not in _OPAQUE_PARSERS]
    if unknown:
        raise UnknownVariant(
            f"{where}: unknown opaque variant {unknown[0]!r}",
            f"Expected one of: {', '.join(OPAQUE_VARIANT_TAGS)}.",
        )
    if len(tags) != 1:
        raise MalformedManifest(
            f"{where}: opaque type must carry exactly one variant, found {len(tags)}"
        )
    tag = tags[0]
    body = _get(obj, tag, dict, where)
    return OpaqueType(
        ctype=_get(obj, "ctype", str, where),
        ops=OpaqueOps(
            free=_get(ops, "free", str, ops_where),
            store=_get(ops, "store", str, ops_where),
            restore=_get(ops, "restore", str, ops_where),
        ),
        options=_OPAQUE_PARSERS[tag](body, f"{where}.{tag}"),
    )


def _parse_type(obj: dict, where: str) -> Type:
    kind = _get(obj, "kind", str, where)
    if kind == "array":
        return _parse_array_type(obj, where)
    if kind == "opaque":
        return _parse_opaque_type(obj, where)
    raise UnknownVariant(
        f"{where}.kind: unknown type kind {kind!r}",
        "Expected 'array' or 'opaque'.",
    )


def _parse_entry(obj: dict, where: str) -> Entry:
    outputs = []
    for i, raw in enumerate(_get(obj, "outputs", list, where)):
        out_where = f"{where}.outputs[{i}]"
        raw = _expect(raw, dict, out_where)
        outputs.append(
            Output(
                type=_get(raw, "type", str, out_where),
                unique=_get(raw, "unique", bool, out_where),
            )
        )
    inputs = []
    for i, raw in enumerate(_get(obj, "inputs", list, where)):
        in_where = f"{where}.inputs[{i}]"
        raw = _expect(raw, dict, in_where)
        inputs.append(
            Input(
                name=_get(raw, "name", str, in_where),
                type=_get(raw, "type", str, in_where),
                unique=_get(raw, "unique", bool, in_where),
            )
        )
    tuning_params: tuple[str, ...] = ()
    if "tuning_params" in obj:
        tuning_params = _get_str_list(obj, "tuning_params", where)
    return Entry(
        cfun=_get(obj, "cfun", str, where),
        outputs=tuple(outputs),
        inputs=tuple(inputs),
        tuning_params=tuning_params,
    )


def parse_manifest(data: object) -> Manifest:
    """Build a validated `Manifest` from a decoded JSON document.

    Args:
        data: The decoded manifest document (normally a dict from json.load).

    Returns:
        A complete Manifest with entry points and types sorted by name.

    Raises:
        MalformedManifest: On a missing field, wrong value type, negative
            rank, unknown scalar element type or unknown backend.
        UnknownVariant: On an unknown type kind or opaque variant tag.
        DanglingTypeReference: When any type reference names neither a
            scalar nor a declared type.
    """
    data = _expect(data, dict, "manifest")
    backend_name = _get(data, "backend", str, "manifest")
    backend = Backend.from_name(backend_name)
    if backend is None:
        raise MalformedManifest(
            f"manifest.backend: unknown backend {backend_name!r}",
            f"Expected one of: {', '.join(b.value for b in Backend)}.",
        )

    raw_types = _get(data, "types", dict, "manifest")
    types = {
        name: _parse_type(
            _expect(raw_types[name], dict, f"types[{name!r}]"), f"types[{name!r}]"
        )
        for name in sorted(raw_types)
    }
    raw_entries = _get(data, "entry_points", dict, "manifest")
    entry_points = {
        name: _parse_entry(
            _expect(raw_entries[name], dict, f"entry_points[{name!r}]"),
            f"entry_points[{name!r}]",
        )
        for name in sorted(raw_entries)
    }

    manifest = Manifest(
        backend=backend,
        version=_get(data, "version", str, "manifest"),
        entry_points=entry_points,
        types=types,
    )
    validate_type_references(manifest)
    return manifest


def load_manifest(path: Path) -> Manifest:
    """Read and parse a manifest file. OSError propagates unwrapped."""
    text = Path(path).read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as err:
        raise MalformedManifest(f"{path}: invalid JSON: {err}") from err
    return parse_manifest(data)


# ===--- Reference validation ---=== #


def iter_type_references(manifest: Manifest):
    """Yield (referrer, type_name) for every type reference in the manifest."""
    for name, ty in manifest.types.items():
        if isinstance(ty, ArrayType):
            continue
        options = ty.options
        if isinstance(options, Record):
            for f in options.fields:
                yield f"type {name!r} field {f.name!r}", f.type
        elif isinstance(options, Sum):
            for v in options.variants:
                for payload in v.payload:
                    yield f"type {name!r} variant {v.name!r}", payload
        else:
            yield f"type {name!r} element", options.elemtype
            if options.record is not None:
                for f in options.record.fields:
                    yield f"type {name!r} field {f.name!r}", f.type
    for name, entry in manifest.entry_points.items():
        for i, out in enumerate(entry.outputs):
            yield f"entry point {name!r} output {i}", out.type
        for arg in entry.inputs:
            yield f"entry point {name!r} input {arg.name!r}", arg.type


def validate_type_references(manifest: Manifest) -> None:
    """Raise DanglingTypeReference for the first unresolvable type name."""
    for referrer, type_name in iter_type_references(manifest):
        if type_name not in SCALAR_NAMES and type_name not in manifest.types:
            raise DanglingTypeReference(referrer, type_name)