"""Naming policy: turn manifest identifiers into target-language identifiers."""

import re
from abc import ABC, abstractmethod

from .errors import NamingContractError
from .manifest import (
    ArrayType,
    Manifest,
    OpaqueArray,
    OpaqueType,
    Record,
    RecordArray,
    Sum,
    Type,
)

OPAQUE_PREFIX = "futhark_opaque"
INVALID_NAME_STARTS = ("(", "{", "#", "[")


def convert_struct_name(ctype: str) -> str:
    """Recover the bare struct name from a C pointer type.

    Examples:
        struct futhark_i32_1d * -> futhark_i32_1d
        struct futhark_opaque_point * -> futhark_opaque_point
    """
    if not ctype.startswith("struct") or not ctype.endswith("*"):
        raise NamingContractError(
            f"C type {ctype!r} is not of the form 'struct <name> *'"
        )
    inner = ctype.removeprefix("struct").removesuffix("*")
    if not inner[:1].isspace() or not inner[-1:].isspace() or not inner.strip():
        raise NamingContractError(
            f"C type {ctype!r} is not of the form 'struct <name> *'"
        )
    return inner.strip()


def first_uppercase(s: str) -> str:
    return s[:1].upper() + s[1:]


def is_valid_name(name: str) -> bool:
    if not name:
        raise NamingContractError("Type name must not be empty")
    return not name.startswith(INVALID_NAME_STARTS)


def as_pascal_case(name: str) -> str:
    """Convert an identifier to PascalCase.

    Examples:
        my_type -> MyType
        mod.point -> ModPoint
        vecTwo -> VecTwo
        HTTPServer -> HttpServer
    """
    name = re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", name)
    words = [w for w in re.split(r"[^A-Za-z0-9]+", name) if w]
    return "".join(w[:1].upper() + w[1:].lower() for w in words)


class Namer(ABC):
    """Pluggable strategy for generated identifiers.

    `init` runs once before any other query in a generation run.
    Implementations must hand out pairwise-distinct type names.
    """

    @abstractmethod
    def init(self, manifest: Manifest) -> None:
        pass

    @abstractmethod
    def type_name(self, name: str, ty: Type, manifest: Manifest) -> str:
        pass

    @abstractmethod
    def project_name(self, field_name: str, manifest: Manifest) -> str:
        pass

    @abstractmethod
    def new_field_name(self, field_name: str, manifest: Manifest) -> str:
        pass


class DefaultNamer(Namer):
    def __init__(self):
        self._ctypes: dict[str, str] = {}
        self._issued: dict[str, str] = {}
        self._owners: dict[str, str] = {}

    def init(self, manifest: Manifest) -> None:
        self._ctypes = {
            name: convert_struct_name(ty.ctype)
            for name, ty in manifest.types.items()
            if isinstance(ty, OpaqueType)
        }
        self._issued = {}
        self._owners = {}

    def type_name(self, name: str, ty: Type, manifest: Manifest) -> str:
        if name in self._issued:
            return self._issued[name]
        base = self._base_name(name, ty, manifest)
        candidate = base
        suffix = 2
        while candidate in self._owners:
            candidate = f"{base}_{suffix}"
            suffix += 1
        self._issued[name] = candidate
        self._owners[candidate] = name
        return candidate

    def _base_name(self, name: str, ty: Type, manifest: Manifest) -> str:
        if is_valid_name(name):
            pascal = as_pascal_case(name)
            if pascal:
                return pascal
        if isinstance(ty, ArrayType):
            return f"{first_uppercase(ty.elemtype.value)}Array{ty.rank}d"
        options = ty.options
        if isinstance(options, (OpaqueArray, RecordArray)):
            elem = manifest.types.get(options.elemtype)
            if elem is None:
                elem_name = first_uppercase(options.elemtype)
            else:
                elem_name = self.type_name(options.elemtype, elem, manifest)
            return f"{elem_name}Array{options.rank}d"
        if isinstance(options, (Record, Sum)):
            ctype = self._ctypes.get(name)
            if ctype is None:
                ctype = convert_struct_name(ty.ctype)
            if not ctype.startswith(OPAQUE_PREFIX):
                raise NamingContractError(
                    f"Opaque C type {ctype!r} for {name!r} lacks the "
                    f"{OPAQUE_PREFIX!r} prefix"
                )
            return "Unnamed" + ctype.removeprefix(OPAQUE_PREFIX)
        raise TypeError(f"Unhandled opaque variant: {type(options).__name__}")

    def project_name(self, field_name: str, manifest: Manifest) -> str:
        return _field_identifier(field_name)

    def new_field_name(self, field_name: str, manifest: Manifest) -> str:
        return _field_identifier(field_name)


def _field_identifier(field_name: str) -> str:
    if not field_name:
        raise NamingContractError("Field name must not be empty")
    if field_name[0].isdigit():
        return f"f{field_name}"
    return field_name
