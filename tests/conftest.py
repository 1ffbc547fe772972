import ctypes
import functools
import importlib.util
import itertools
import math
import sys
from collections.abc import Callable
from pathlib import Path
from types import ModuleType

import pytest

PACKAGE_DIR = Path(__file__).resolve().parent.parent
if str(PACKAGE_DIR) not in sys.path:
    sys.path.insert(0, str(PACKAGE_DIR))

from futhark_bindgen import generate, manifest  # noqa: E402


# ===--- Manifest document builders ---=== #


def _array_doc(elemtype: str = "i32", rank: int = 1) -> dict:
    suffix = f"{elemtype}_{rank}d"
    return {
        "kind": "array",
        "ctype": f"struct futhark_{suffix} *",
        "rank": rank,
        "elemtype": elemtype,
        "ops": {
            "new": f"futhark_new_{suffix}",
            "free": f"futhark_free_{suffix}",
            "values": f"futhark_values_{suffix}",
            "shape": f"futhark_shape_{suffix}",
            "index": f"futhark_index_{suffix}",
        },
    }


def _opaque_ops(ident: str) -> dict:
    return {
        "free": f"futhark_free_opaque_{ident}",
        "store": f"futhark_store_opaque_{ident}",
        "restore": f"futhark_restore_opaque_{ident}",
    }


def _fields(ident: str, fields: list[tuple[str, str]]) -> list[dict]:
    return [
        {"name": name, "project": f"futhark_project_opaque_{ident}_{name}", "type": ty}
        for name, ty in fields
    ]


def _record_doc(ident: str, fields: list[tuple[str, str]]) -> dict:
    return {
        "kind": "opaque",
        "ctype": f"struct futhark_opaque_{ident} *",
        "ops": _opaque_ops(ident),
        "record": {
            "new": f"futhark_new_opaque_{ident}",
            "fields": _fields(ident, fields),
        },
    }


def _sum_doc(ident: str, variants: list[tuple[str, list[str]]]) -> dict:
    return {
        "kind": "opaque",
        "ctype": f"struct futhark_opaque_{ident} *",
        "ops": _opaque_ops(ident),
        "sum": {
            "variant": f"futhark_variant_opaque_{ident}",
            "variants": [
                {
                    "name": name,
                    "construct": f"futhark_new_opaque_{ident}_{name}",
                    "destruct": f"futhark_destruct_opaque_{ident}_{name}",
                    "payload": payload,
                }
                for name, payload in variants
            ],
        },
    }


def _opaque_array_doc(
    ident: str,
    elemtype: str,
    rank: int = 1,
    fields: list[tuple[str, str]] | None = None,
    tag: str = "opaque_array",
) -> dict:
    body = {
        "rank": rank,
        "elemtype": elemtype,
        "index": f"futhark_index_opaque_{ident}",
        "shape": f"futhark_shape_opaque_{ident}",
    }
    if fields is not None:
        body["zip"] = f"futhark_zip_opaque_{ident}"
        body["fields"] = _fields(ident, fields)
    return {
        "kind": "opaque",
        "ctype": f"struct futhark_opaque_{ident} *",
        "ops": _opaque_ops(ident),
        tag: body,
    }


def _entry_doc(
    name: str,
    inputs: list[tuple[str, str]] = (),
    outputs: list[str] = (),
    tuning_params: list[str] | None = None,
) -> dict:
    doc = {
        "cfun": f"futhark_entry_{name}",
        "outputs": [{"type": ty, "unique": False} for ty in outputs],
        "inputs": [{"name": n, "type": ty, "unique": False} for n, ty in inputs],
    }
    if tuning_params is not None:
        doc["tuning_params"] = tuning_params
    return doc


def _manifest_doc(
    types: dict | None = None,
    entry_points: dict | None = None,
    backend: str = "c",
    version: str = "0.25.13",
) -> dict:
    return {
        "backend": backend,
        "version": version,
        "types": types or {},
        "entry_points": entry_points or {},
    }


@pytest.fixture
def array_doc() -> Callable[..., dict]:
    return _array_doc


@pytest.fixture
def record_doc() -> Callable[..., dict]:
    return _record_doc


@pytest.fixture
def sum_doc() -> Callable[..., dict]:
    return _sum_doc


@pytest.fixture
def opaque_array_doc() -> Callable[..., dict]:
    return _opaque_array_doc


@pytest.fixture
def entry_doc() -> Callable[..., dict]:
    return _entry_doc


@pytest.fixture
def manifest_doc() -> Callable[..., dict]:
    return _manifest_doc


@pytest.fixture
def scenario_a_doc() -> dict:
    """One rank-1 i32 array and an entry reducing it to a scalar."""
    return _manifest_doc(
        types={"[]i32": _array_doc("i32", 1)},
        entry_points={"sum": _entry_doc("sum", [("xs", "[]i32")], ["i32"])},
    )


@pytest.fixture
def scenario_b_doc() -> dict:
    """A record whose array field type is declared after it."""
    types = {
        "particle": _record_doc("particle", [("mass", "f32"), ("pos", "[]f32")]),
        "[]f32": _array_doc("f32", 1),
    }
    return _manifest_doc(
        types=types,
        entry_points={
            "spawn": _entry_doc("spawn", [("n", "i64")], ["particle"]),
        },
    )


@pytest.fixture
def full_doc() -> dict:
    """Every type variant plus entries with 0, 1 and 2 outputs."""
    types = {
        "[]i32": _array_doc("i32", 1),
        "[][]f64": _array_doc("f64", 2),
        "[]f32": _array_doc("f32", 1),
        "point": _record_doc("point", [("x", "f32"), ("y", "f32")]),
        "shape": _sum_doc("shape", [("circle", ["f32"]), ("square", ["f32", "f32"])]),
        "[]point": _opaque_array_doc(
            "arr_point", "point", fields=[("x", "[]f32"), ("y", "[]f32")]
        ),
        "(i32, []f32)": _record_doc("tup2_i32_arr_f32", [("0", "i32"), ("1", "[]f32")]),
    }
    return _manifest_doc(
        types=types,
        entry_points={
            "reset": _entry_doc("reset"),
            "sum": _entry_doc("sum", [("xs", "[]i32")], ["i32"]),
            "stats": _entry_doc("stats", [("xs", "[][]f64")], ["f64", "[]i32"]),
            "norm": _entry_doc("norm", [("p", "point")], ["f32"], ["block_size"]),
        },
    )


@pytest.fixture
def make_manifest() -> Callable[[dict], manifest.Manifest]:
    return manifest.parse_manifest


# ===--- In-process fake of a compiled library ---=== #


class FakeFutharkLib:
    """Stand-in for a `futhark --lib` shared library, driven by its manifest.

    Arrays live in `objects` as {"data": [...], "shape": (...)}, records as
    {"fields": [...]}. Entry behaviour comes from `entries[cfun]`, a callable
    taking (lib, *inputs) and returning the output values; a non-zero
    `status[cfun]` makes the call fail before any output is written.
    """

    def __init__(self, doc: dict):
        self._handlers: dict[str, Callable[..., object]] = {}
        self._ids = itertools.count(0x1000)
        self._strings: list[object] = []
        self.objects: dict[int, dict] = {}
        self.freed: list[int] = []
        self.freed_strings: list[int] = []
        self.config: dict[str, object] = {}
        self.calls: list[str] = []
        self.entries: dict[str, Callable[..., tuple]] = {}
        self.status: dict[str, int] = {}
        self.error_message: str | None = None
        self.context_freed = False

        for ty in doc["types"].values():
            if ty["kind"] == "array":
                ops = ty["ops"]
                self._handlers[ops["new"]] = self._array_new
                self._handlers[ops["free"]] = self._free
                self._handlers[ops["values"]] = self._array_values
                self._handlers[ops["shape"]] = self._shape
                self._handlers[ops["index"]] = self._array_index
                continue
            ops = ty["ops"]
            self._handlers[ops["free"]] = self._free
            self._handlers[ops["store"]] = self._store
            self._handlers[ops["restore"]] = self._restore
            if "record" in ty:
                self._handlers[ty["record"]["new"]] = self._record_new
                self._add_projections(doc, ty["record"]["fields"])
            for tag in ("opaque_array", "record_array"):
                if tag not in ty:
                    continue
                body = ty[tag]
                self._handlers[body["shape"]] = self._shape
                self._handlers[body["index"]] = self._opaque_index
                if "zip" in body:
                    self._handlers[body["zip"]] = self._zip
                    self._add_projections(doc, body["fields"])
        for entry in doc["entry_points"].values():
            self._handlers[entry["cfun"]] = functools.partial(
                self._entry, entry["cfun"], len(entry["outputs"])
            )

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)
        if name.startswith("futhark_context"):
            return functools.partial(self._context_call, name)
        try:
            return self._handlers[name]
        except KeyError:
            raise AttributeError(name) from None

    # Helpers for entry implementations

    def new_array(self, data: list, shape: tuple[int, ...]) -> int:
        return self._alloc({"data": list(data), "shape": tuple(shape)})

    def new_record(self, *fields: object) -> int:
        return self._alloc({"fields": list(fields)})

    def data(self, handle: int) -> list:
        return self.objects[handle]["data"]

    def fields(self, handle: int) -> list:
        return self.objects[handle]["fields"]

    def live_handles(self) -> set[int]:
        return set(self.objects)

    def free(self, ptr) -> None:
        self.freed_strings.append(ptr)

    # C surface

    def _alloc(self, payload: dict) -> int:
        handle = next(self._ids)
        self.objects[handle] = payload
        return handle

    def _copy(self, handle: int) -> int:
        return self._alloc(dict(self.objects[handle]))

    def _c_string(self, text: str | None) -> int | None:
        if text is None:
            return None
        buf = ctypes.create_string_buffer(text.encode())
        self._strings.append(buf)
        return ctypes.addressof(buf)

    def _context_call(self, name: str, *args):
        self.calls.append(name)
        if name == "futhark_context_config_new":
            return 1
        if name == "futhark_context_new":
            return 2
        if name == "futhark_context_free":
            self.context_freed = True
        if name == "futhark_context_get_error":
            message, self.error_message = self.error_message, None
            return self._c_string(message)
        if name == "futhark_context_report":
            return self._c_string("{}")
        if name.startswith("futhark_context_config_set_"):
            self.config[name.removeprefix("futhark_context_config_set_")] = args[1]
        return 0

    def _add_projections(self, doc: dict, fields: list[dict]) -> None:
        for i, f in enumerate(fields):
            scalar = f["type"] not in doc["types"]
            self._handlers[f["project"]] = functools.partial(self._project, i, scalar)

    def _free(self, ctx, handle):
        self.freed.append(handle)
        self.objects.pop(handle, None)
        return 0

    def _array_new(self, ctx, buf, *dims):
        size = math.prod(dims)
        return self.new_array(list(buf)[:size], dims)

    def _array_values(self, ctx, handle, buf):
        for i, value in enumerate(self.data(handle)):
            buf[i] = value
        return 0

    def _shape(self, ctx, handle):
        shape = self.objects[handle]["shape"]
        return (ctypes.c_int64 * len(shape))(*shape)

    def _flat_index(self, handle, index) -> int:
        flat = 0
        for i, n in zip(index, self.objects[handle]["shape"]):
            flat = flat * n + i
        return flat

    def _array_index(self, ctx, out, handle, *index):
        out[0] = self.data(handle)[self._flat_index(handle, index)]
        return 0

    def _opaque_index(self, ctx, out, handle, *index):
        element = self.data(handle)[self._flat_index(handle, index)]
        out[0] = self._copy(element)
        return 0

    def _record_new(self, ctx, out, *fields):
        out[0] = self._alloc({"fields": list(fields)})
        return 0

    def _project(self, i, scalar, ctx, out, handle):
        value = self.fields(handle)[i]
        out[0] = value if scalar else self._copy(value)
        return 0

    def _zip(self, ctx, out, *arrays):
        shape = self.objects[arrays[0]]["shape"]
        count = math.prod(shape)
        elements = [
            self._alloc({"fields": [self.data(a)[i] for a in arrays]})
            for i in range(count)
        ]
        out[0] = self._alloc(
            {"data": elements, "shape": shape, "fields": list(arrays)}
        )
        return 0

    def _store(self, ctx, handle, p, n):
        blob = ctypes.create_string_buffer(b"obj:%d" % handle)
        self._strings.append(blob)
        p[0] = ctypes.addressof(blob)
        n[0] = len(blob.value)
        return 0

    def _restore(self, ctx, buf):
        handle = int(buf.raw.removeprefix(b"obj:"))
        return self._copy(handle)

    def _entry(self, cfun, n_out, ctx, *args):
        self.calls.append(cfun)
        rc = self.status.get(cfun, 0)
        if rc:
            return rc
        values = self.entries[cfun](self, *args[n_out:])
        for out, value in zip(args[:n_out], values):
            out[0] = value
        return 0


@pytest.fixture
def fake_lib() -> Callable[[dict], FakeFutharkLib]:
    return FakeFutharkLib


@pytest.fixture
def load_bindings(tmp_path: Path) -> Callable[..., ModuleType]:
    """Generate Python bindings for a manifest document and import them."""
    counter = itertools.count()

    def _load_bindings(doc: dict, **kwargs: object) -> ModuleType:
        path = tmp_path / f"bindings_{next(counter)}.py"
        generate.run_generation(
            manifest.parse_manifest(doc),
            generate.detect_emitter(path),
            path,
            format_output=False,
            **kwargs,
        )
        spec = importlib.util.spec_from_file_location(path.stem, path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    return _load_bindings
