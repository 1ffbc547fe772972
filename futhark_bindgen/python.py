"""Python emitter: a self-contained ctypes module over the generated C API.

The generated module declares every C signature it uses in `_SIGNATURES`;
`load_library(path)` opens the shared library and applies them, while
`use_library(lib)` binds any object exposing the same functions.
"""

import keyword
from pathlib import Path

from .errors import EmitterError
from .generate import Emitter, GenerationSession, register_emitter, run_formatter
from .manifest import ArrayType, Entry, OpaqueArray, OpaqueType, Record, RecordArray, Sum

CTYPES_SCALARS = {
    "i8": "ctypes.c_int8",
    "i16": "ctypes.c_int16",
    "i32": "ctypes.c_int32",
    "i64": "ctypes.c_int64",
    "u8": "ctypes.c_uint8",
    "u16": "ctypes.c_uint16",
    "u32": "ctypes.c_uint32",
    "u64": "ctypes.c_uint64",
    "f32": "ctypes.c_float",
    "f64": "ctypes.c_double",
    "bool": "ctypes.c_bool",
}

# Names the module prelude defines or relies on
MODULE_NAMES = {
    "ctypes", "math", "load_library", "use_library", "Context", "Options",
    "FutharkError", "bytes", "getattr", "int", "len", "list", "range", "str",
    "super", "tuple", "type", "zip",
}
CONTEXT_METHODS = {
    "sync", "clear_caches", "get_error", "report", "pause_profiling",
    "unpause_profiling", "free", "freed", "auto_sync",
}
# Names a generated method or parameter must not shadow
HANDLE_NAMES = {
    "ctx", "cls", "self", "out", "new", "free", "freed", "store", "restore",
    "from_ptr", "shape", "get", "zip", "values", "RANK", "ELEMENT",
}
PARAM_NAMES = HANDLE_NAMES | MODULE_NAMES


def python_ident(name: str, reserved: set[str] = HANDLE_NAMES) -> str:
    if keyword.iskeyword(name) or keyword.issoftkeyword(name) or name in reserved:
        return name + "_"
    return name


def _args(items: list[str]) -> str:
    return "".join(f", {item}" for item in items)


def _tuple(items: list[str]) -> str:
    if len(items) == 1:
        return f"({items[0]},)"
    return "(" + ", ".join(items) + ")"


def _lines(text: str) -> list[str]:
    return text.rstrip("\n").split("\n") + [""]


def _signature(cfun: str, argtypes: list[str], restype: str) -> str:
    return f'_SIGNATURES["{cfun}"] = ([{", ".join(argtypes)}], {restype})'


# ===--- Templates ---=== #

PRELUDE_TEMPLATE = '''\
# Generated by futhark-bindgen
# Backend: {backend}, compiler version: {version}
"""ctypes bindings for a compiled Futhark library.

Call `load_library(path)` before creating a `Context`. Every handle borrows
the context it was created from; `free()` is idempotent and handles can be
used as context managers.
"""

import ctypes
import math

_lib = None
_SIGNATURES = {{}}


class FutharkError(Exception):
    """A Futhark call failed.

    `code` is the status code returned by the library, or None when a
    constructor returned a null pointer.
    """

    def __init__(self, code, message=None):
        self.code = code
        self.message = message
        text = "futhark call failed"
        if code is not None:
            text += " with code %d" % code
        if message:
            text += ": " + message.strip()
        super().__init__(text)


def _declare(lib):
    for name, (argtypes, restype) in _SIGNATURES.items():
        fn = getattr(lib, name)
        fn.argtypes = argtypes
        fn.restype = restype


def load_library(path):
    """Open the compiled shared library at `path` and bind it."""
    lib = ctypes.CDLL(str(path))
    _declare(lib)
    use_library(lib)
    return lib


def use_library(lib):
    """Bind an already loaded library object."""
    global _lib
    _lib = lib


def _take_string(ptr):
    if not ptr:
        return None
    try:
        return ctypes.string_at(ptr).decode("utf-8", "replace")
    finally:
        _lib.free(ptr)


def _check(ctx, rc):
    if rc != 0:
        raise FutharkError(rc, ctx.get_error())


def _check_ptr(ctx, ptr):
    if not ptr:
        raise FutharkError(None, ctx.get_error())
    return ptr


def _check_index(index, shape):
    for i, n in zip(index, shape):
        if not 0 <= i < n:
            raise IndexError("index %r out of bounds for shape %r" % (index, shape))


class Options:
    """Context configuration."""

    def __init__(
        self,
        *,
        debug=False,
        profile=False,
        logging=False,
        auto_sync=True,
        cache_file=None,{option_params}
    ):
        self.debug = debug
        self.profile = profile
        self.logging = logging
        self.auto_sync = auto_sync
        self.cache_file = cache_file{option_assigns}


class Context:
    """Owns a Futhark context. Free it after every handle created from it."""

    def __init__(self, options=None):
        self._ptr = None
        self._config = None
        if _lib is None:
            raise RuntimeError("no Futhark library bound; call load_library() first")
        if options is None:
            options = Options()
        self.auto_sync = options.auto_sync
        self._config = _lib.futhark_context_config_new()
        if not self._config:
            raise FutharkError(None, "could not create context configuration")
        _lib.futhark_context_config_set_debugging(self._config, int(options.debug))
        _lib.futhark_context_config_set_profiling(self._config, int(options.profile))
        _lib.futhark_context_config_set_logging(self._config, int(options.logging))
        if options.cache_file is not None:
            _lib.futhark_context_config_set_cache_file(
                self._config, str(options.cache_file).encode()
            ){configure}
        ptr = _lib.futhark_context_new(self._config)
        if not ptr:
            _lib.futhark_context_config_free(self._config)
            self._config = None
            raise FutharkError(None, "could not create context")
        self._ptr = ptr

    @property
    def freed(self):
        return self._ptr is None

    def sync(self):
        """Wait for all pending operations to finish."""
        _check(self, _lib.futhark_context_sync(self._ptr))

    def _auto_sync(self):
        if self.auto_sync:
            self.sync()

    def clear_caches(self):
        _check(self, _lib.futhark_context_clear_caches(self._ptr))

    def pause_profiling(self):
        _lib.futhark_context_pause_profiling(self._ptr)

    def unpause_profiling(self):
        _lib.futhark_context_unpause_profiling(self._ptr)

    def get_error(self):
        """The last error message, or None."""
        return _take_string(_lib.futhark_context_get_error(self._ptr))

    def report(self):
        """Profiling report."""
        return _take_string(_lib.futhark_context_report(self._ptr))

    def free(self):
        ptr, self._ptr = self._ptr, None
        if ptr is not None:
            _lib.futhark_context_sync(ptr)
            _lib.futhark_context_free(ptr)
        if self._config is not None:
            _lib.futhark_context_config_free(self._config)
            self._config = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.free()

    def __del__(self):
        if _lib is not None:
            self.free()


class _Handle:
    _free_fn = None

    def __init__(self, ctx, ptr):
        self._ctx = ctx
        self._ptr = ptr

    @classmethod
    def from_ptr(cls, ctx, ptr):
        return cls(ctx, ptr)

    @property
    def freed(self):
        return self._ptr is None

    def _live(self):
        if self._ptr is None:
            raise ValueError("%s has been freed" % type(self).__name__)
        return self._ptr

    def free(self):
        """Release the Futhark value. Later calls do nothing."""
        ptr, self._ptr = self._ptr, None
        if ptr is None or self._ctx.freed:
            return
        getattr(_lib, self._free_fn)(self._ctx._ptr, ptr)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.free()

    def __del__(self):
        if _lib is not None:
            self.free()


class _ArrayHandle(_Handle):
    RANK = 0
    _shape_fn = None

    def __init__(self, ctx, ptr, shape):
        super().__init__(ctx, ptr)
        self._shape = tuple(shape)

    @classmethod
    def from_ptr(cls, ctx, ptr):
        dims = getattr(_lib, cls._shape_fn)(ctx._ptr, ptr)
        return cls(ctx, ptr, [int(dims[i]) for i in range(cls.RANK)])

    def shape(self):
        return self._shape


_SIGNATURES["free"] = ([ctypes.c_void_p], None)
_SIGNATURES["futhark_context_config_new"] = ([], ctypes.c_void_p)
_SIGNATURES["futhark_context_config_free"] = ([ctypes.c_void_p], None)
_SIGNATURES["futhark_context_config_set_debugging"] = ([ctypes.c_void_p, ctypes.c_int], None)
_SIGNATURES["futhark_context_config_set_profiling"] = ([ctypes.c_void_p, ctypes.c_int], None)
_SIGNATURES["futhark_context_config_set_logging"] = ([ctypes.c_void_p, ctypes.c_int], None)
_SIGNATURES["futhark_context_config_set_cache_file"] = ([ctypes.c_void_p, ctypes.c_char_p], None)
_SIGNATURES["futhark_context_new"] = ([ctypes.c_void_p], ctypes.c_void_p)
_SIGNATURES["futhark_context_free"] = ([ctypes.c_void_p], None)
_SIGNATURES["futhark_context_sync"] = ([ctypes.c_void_p], ctypes.c_int)
_SIGNATURES["futhark_context_clear_caches"] = ([ctypes.c_void_p], ctypes.c_int)
_SIGNATURES["futhark_context_get_error"] = ([ctypes.c_void_p], ctypes.c_void_p)
_SIGNATURES["futhark_context_report"] = ([ctypes.c_void_p], ctypes.c_void_p)
_SIGNATURES["futhark_context_pause_profiling"] = ([ctypes.c_void_p], None)
_SIGNATURES["futhark_context_unpause_profiling"] = ([ctypes.c_void_p], None){signatures}
'''

THREADS_PARAM = "\n        threads=0,"
THREADS_ASSIGN = "\n        self.threads = threads"
THREADS_CONFIGURE = (
    "\n        _lib.futhark_context_config_set_num_threads(self._config, options.threads)"
)
THREADS_SIGNATURE = (
    '\n_SIGNATURES["futhark_context_config_set_num_threads"] = '
    "([ctypes.c_void_p, ctypes.c_int], None)"
)
DEVICE_PARAM = "\n        device=None,"
DEVICE_ASSIGN = "\n        self.device = device"
DEVICE_CONFIGURE = """
        if options.device is not None:
            _lib.futhark_context_config_set_device(self._config, options.device.encode())"""
DEVICE_SIGNATURE = (
    '\n_SIGNATURES["futhark_context_config_set_device"] = '
    "([ctypes.c_void_p, ctypes.c_char_p], None)"
)

ARRAY_TEMPLATE = '''
class {cls}(_ArrayHandle):
    """Array of `{elemtype}` with {rank} dimensions."""

    RANK = {rank}
    ELEMENT = {ctype}
    _free_fn = "{free_fn}"
    _shape_fn = "{shape_fn}"

    @classmethod
    def new(cls, ctx, data{dim_params}):
        """Create an array of the given shape from row-major `data`."""
        shape = {dims_tuple}
        values = list(data)
        if len(values) != math.prod(shape):
            raise ValueError(
                "expected %d values for shape %r, got %d"
                % (math.prod(shape), shape, len(values))
            )
        buf = ({ctype} * len(values))(*values)
        ptr = _check_ptr(ctx, _lib.{new_fn}(ctx._ptr, buf{dim_params}))
        ctx._auto_sync()
        return cls(ctx, ptr, shape)

    def values(self):
        """Copy the contents out as a flat row-major list."""
        buf = ({ctype} * math.prod(self._shape))()
        _check(self._ctx, _lib.{values_fn}(self._ctx._ptr, self._live(), buf))
        self._ctx.sync()
        return list(buf)

    def get(self{index_params}):
        _check_index({index_tuple}, self._shape)
        out = {ctype}()
        _check(
            self._ctx,
            _lib.{index_fn}(self._ctx._ptr, ctypes.pointer(out), self._live(){index_params}),
        )
        self._ctx.sync()
        return out.value

'''

OPAQUE_HEADER_TEMPLATE = '''
class {cls}({base}):
    """Opaque Futhark value `{name}`."""

    _free_fn = "{free_fn}"

    def store(self):
        """Serialize the value to bytes."""
        p = ctypes.c_void_p()
        n = ctypes.c_size_t()
        _check(
            self._ctx,
            _lib.{store_fn}(
                self._ctx._ptr, self._live(), ctypes.pointer(p), ctypes.pointer(n)
            ),
        )
        try:
            return ctypes.string_at(p.value, n.value)
        finally:
            _lib.free(p.value)

    @classmethod
    def restore(cls, ctx, data):
        """Rebuild a value from the bytes produced by `store`."""
        buf = ctypes.create_string_buffer(bytes(data), len(data))
        ptr = _check_ptr(ctx, _lib.{restore_fn}(ctx._ptr, buf))
        return cls.from_ptr(ctx, ptr)
'''

CONSTRUCTOR_TEMPLATE = '''
    @classmethod
    def {method}(cls, ctx{params}):
        out = ctypes.c_void_p()
        _check(ctx, _lib.{cfun}(ctx._ptr, ctypes.pointer(out){args}))
        ctx._auto_sync()
        return cls.from_ptr(ctx, out.value)
'''

PROJECT_TEMPLATE = '''
    def {method}(self):
        """Field `{field}`."""
        out = {out_ctype}()
        _check(self._ctx, _lib.{cfun}(self._ctx._ptr, ctypes.pointer(out), self._live()))
        self._ctx._auto_sync()
        return {result}
'''

OPAQUE_ARRAY_TEMPLATE = '''
    RANK = {rank}
    _shape_fn = "{shape_fn}"

    def get(self{index_params}):
        _check_index({index_tuple}, self._shape)
        out = ctypes.c_void_p()
        _check(
            self._ctx,
            _lib.{index_fn}(self._ctx._ptr, ctypes.pointer(out), self._live(){index_params}),
        )
        self._ctx.sync()
        return {elem_cls}.from_ptr(self._ctx, out.value)
'''

ENTRY_TEMPLATE = '''
def {fn}(ctx{params}):
    """Entry point `{name}`.{doc}"""
{body}
'''


# ===--- Emitter ---=== #


@register_emitter(".py")
class PythonEmitter(Emitter):
    name = "python"

    def _class(self, session: GenerationSession, type_name: str) -> str:
        return python_ident(session.type_name(type_name), MODULE_NAMES)

    def _scalar(self, type_name: str, where: str) -> str:
        ctype = CTYPES_SCALARS.get(type_name)
        if ctype is None:
            raise EmitterError(
                f"{where}: scalar type {type_name!r} has no ctypes equivalent",
                "Use the Rust emitter (.rs) for libraries that expose f16 values.",
            )
        return ctype

    def setup(self, session: GenerationSession) -> list[str]:
        backend = session.backend
        params = assigns = configure = signatures = ""
        if backend.has_threads:
            params += THREADS_PARAM
            assigns += THREADS_ASSIGN
            configure += THREADS_CONFIGURE
            signatures += THREADS_SIGNATURE
        if backend.has_device:
            params += DEVICE_PARAM
            assigns += DEVICE_ASSIGN
            configure += DEVICE_CONFIGURE
            signatures += DEVICE_SIGNATURE
        return _lines(
            PRELUDE_TEMPLATE.format(
                backend=backend.value,
                version=session.manifest.version,
                option_params=params,
                option_assigns=assigns,
                configure=configure,
                signatures=signatures,
            )
        )

    def array_type(
        self, session: GenerationSession, name: str, ty: ArrayType
    ) -> list[str]:
        ctype = self._scalar(ty.elemtype.value, f"array type {name!r}")
        dims = [f"dim{i}" for i in range(ty.rank)]
        index = [f"i{i}" for i in range(ty.rank)]
        lines = _lines(
            ARRAY_TEMPLATE.format(
                cls=self._class(session, name),
                elemtype=ty.elemtype.value,
                rank=ty.rank,
                ctype=ctype,
                free_fn=ty.ops.free,
                shape_fn=ty.ops.shape,
                new_fn=ty.ops.new,
                values_fn=ty.ops.values,
                index_fn=ty.ops.index,
                dim_params=_args(dims),
                dims_tuple=_tuple(dims),
                index_params=_args(index),
                index_tuple=_tuple(index),
            )
        )
        i64s = ["ctypes.c_int64"] * ty.rank
        lines += [
            _signature(
                ty.ops.new,
                ["ctypes.c_void_p", f"ctypes.POINTER({ctype})", *i64s],
                "ctypes.c_void_p",
            ),
            _signature(ty.ops.free, ["ctypes.c_void_p", "ctypes.c_void_p"], "ctypes.c_int"),
            _signature(
                ty.ops.values,
                ["ctypes.c_void_p", "ctypes.c_void_p", f"ctypes.POINTER({ctype})"],
                "ctypes.c_int",
            ),
            _signature(
                ty.ops.shape,
                ["ctypes.c_void_p", "ctypes.c_void_p"],
                "ctypes.POINTER(ctypes.c_int64)",
            ),
            _signature(
                ty.ops.index,
                ["ctypes.c_void_p", f"ctypes.POINTER({ctype})", "ctypes.c_void_p", *i64s],
                "ctypes.c_int",
            ),
            "",
        ]
        return lines

    def _opaque_header(
        self, session: GenerationSession, name: str, ty: OpaqueType, base: str
    ) -> list[str]:
        return _lines(
            OPAQUE_HEADER_TEMPLATE.format(
                cls=self._class(session, name),
                base=base,
                name=name,
                free_fn=ty.ops.free,
                store_fn=ty.ops.store,
                restore_fn=ty.ops.restore,
            )
        )

    def _opaque_signatures(self, ty: OpaqueType) -> list[str]:
        return [
            _signature(ty.ops.free, ["ctypes.c_void_p", "ctypes.c_void_p"], "ctypes.c_int"),
            _signature(
                ty.ops.store,
                [
                    "ctypes.c_void_p",
                    "ctypes.c_void_p",
                    "ctypes.POINTER(ctypes.c_void_p)",
                    "ctypes.POINTER(ctypes.c_size_t)",
                ],
                "ctypes.c_int",
            ),
            _signature(
                ty.ops.restore, ["ctypes.c_void_p", "ctypes.c_void_p"], "ctypes.c_void_p"
            ),
        ]

    def _projection(
        self, session: GenerationSession, owner: str, field
    ) -> tuple[list[str], str]:
        """Return the projection method lines and its C signature."""
        where = f"type {owner!r} field {field.name!r}"
        if session.is_scalar(field.type):
            out_ctype = self._scalar(field.type, where)
            result = "out.value"
        else:
            out_ctype = "ctypes.c_void_p"
            result = f"{self._class(session, field.type)}.from_ptr(self._ctx, out.value)"
        method = _lines(
            PROJECT_TEMPLATE.format(
                method=python_ident(session.project_name(field.name)),
                field=field.name,
                out_ctype=out_ctype,
                cfun=field.project,
                result=result,
            )
        )
        signature = _signature(
            field.project,
            ["ctypes.c_void_p", f"ctypes.POINTER({out_ctype})", "ctypes.c_void_p"],
            "ctypes.c_int",
        )
        return method, signature

    def _constructor(
        self,
        session: GenerationSession,
        owner: str,
        method: str,
        cfun: str,
        fields,
    ) -> tuple[list[str], str]:
        params: list[str] = []
        args: list[str] = []
        argtypes = ["ctypes.c_void_p", "ctypes.POINTER(ctypes.c_void_p)"]
        for f in fields:
            param = python_ident(session.new_field_name(f.name), PARAM_NAMES)
            params.append(param)
            if session.is_scalar(f.type):
                args.append(param)
                argtypes.append(
                    self._scalar(f.type, f"type {owner!r} field {f.name!r}")
                )
            else:
                args.append(f"{param}._live()")
                argtypes.append("ctypes.c_void_p")
        lines = _lines(
            CONSTRUCTOR_TEMPLATE.format(
                method=method, params=_args(params), cfun=cfun, args=_args(args)
            )
        )
        return lines, _signature(cfun, argtypes, "ctypes.c_int")

    def record(
        self, session: GenerationSession, name: str, ty: OpaqueType, record: Record
    ) -> list[str]:
        lines = self._opaque_header(session, name, ty, "_Handle")
        signatures = self._opaque_signatures(ty)
        method, signature = self._constructor(
            session, name, "new", record.new, record.fields
        )
        lines += method
        signatures.append(signature)
        for f in record.fields:
            method, signature = self._projection(session, name, f)
            lines += method
            signatures.append(signature)
        return lines + ["", *signatures, ""]

    def sum(
        self, session: GenerationSession, name: str, ty: OpaqueType, sum_: Sum
    ) -> list[str]:
        lines = self._opaque_header(session, name, ty, "_Handle")
        return lines + ["", *self._opaque_signatures(ty), ""]

    def opaque_array(
        self,
        session: GenerationSession,
        name: str,
        ty: OpaqueType,
        array: OpaqueArray | RecordArray,
    ) -> list[str]:
        if session.is_scalar(array.elemtype):
            raise EmitterError(
                f"type {name!r}: opaque array of scalar {array.elemtype!r}"
            )
        index = [f"i{i}" for i in range(array.rank)]
        lines = self._opaque_header(session, name, ty, "_ArrayHandle")
        lines += _lines(
            OPAQUE_ARRAY_TEMPLATE.format(
                rank=array.rank,
                shape_fn=array.shape,
                index_fn=array.index,
                index_params=_args(index),
                index_tuple=_tuple(index),
                elem_cls=self._class(session, array.elemtype),
            )
        )
        i64s = ["ctypes.c_int64"] * array.rank
        signatures = self._opaque_signatures(ty) + [
            _signature(
                array.shape,
                ["ctypes.c_void_p", "ctypes.c_void_p"],
                "ctypes.POINTER(ctypes.c_int64)",
            ),
            _signature(
                array.index,
                [
                    "ctypes.c_void_p",
                    "ctypes.POINTER(ctypes.c_void_p)",
                    "ctypes.c_void_p",
                    *i64s,
                ],
                "ctypes.c_int",
            ),
        ]
        if array.record is not None:
            method, signature = self._constructor(
                session, name, "zip", array.record.zip, array.record.fields
            )
            lines += method
            signatures.append(signature)
            for f in array.record.fields:
                method, signature = self._projection(session, name, f)
                lines += method
                signatures.append(signature)
        return lines + ["", *signatures, ""]

    def entry(self, session: GenerationSession, name: str, entry: Entry) -> list[str]:
        where = f"entry point {name!r}"
        body: list[str] = []
        call_args: list[str] = []
        argtypes = ["ctypes.c_void_p"]
        results: list[str] = []

        for i, out in enumerate(entry.outputs):
            var = f"out{i}"
            if session.is_scalar(out.type):
                ctype = self._scalar(out.type, where)
                results.append(f"{var}.value")
            else:
                ctype = "ctypes.c_void_p"
                results.append(
                    f"{self._class(session, out.type)}.from_ptr(ctx, {var}.value)"
                )
            body.append(f"    {var} = {ctype}()")
            call_args.append(f"ctypes.pointer({var})")
            argtypes.append(f"ctypes.POINTER({ctype})")

        out_vars = {f"out{i}" for i in range(len(entry.outputs))}
        params: list[str] = []
        for i, arg in enumerate(entry.inputs):
            param = python_ident(arg.name, PARAM_NAMES)
            if (
                not param.isidentifier()
                or param.startswith("_")
                or param in params
                or param in out_vars
            ):
                param = f"in{i}"
            params.append(param)
            if session.is_scalar(arg.type):
                call_args.append(param)
                argtypes.append(self._scalar(arg.type, where))
            else:
                call_args.append(f"{param}._live()")
                argtypes.append("ctypes.c_void_p")

        body.append(f"    _check(ctx, _lib.{entry.cfun}(ctx._ptr{_args(call_args)}))")
        body.append("    ctx._auto_sync()")
        # 0 outputs -> None, 1 -> bare value, N -> tuple in declared order
        if len(results) == 1:
            body.append(f"    return {results[0]}")
        elif results:
            body.append(f"    return ({', '.join(results)})")

        doc = ""
        if entry.tuning_params:
            doc = "\n\n    Tuning parameters: " + ", ".join(entry.tuning_params) + "\n    "

        if session.entry_points_within_context:
            fn = f"_entry_{name}"
        else:
            fn = python_ident(name, MODULE_NAMES)
        lines = _lines(
            ENTRY_TEMPLATE.format(
                fn=fn, params=_args(params), name=name, doc=doc, body="\n".join(body)
            )
        )
        if session.entry_points_within_context:
            method = python_ident(name, CONTEXT_METHODS)
            lines += [f"Context.{method} = {fn}", ""]
        lines += [_signature(entry.cfun, argtypes, "ctypes.c_int"), ""]
        return lines

    def format(self, path: Path) -> bool:
        return run_formatter(["black", "-q", str(path)])
