"""Rust emitter: safe wrappers over the generated C API.

Every handle type borrows the `Context` it was created from (`ctx: &'a
Context`) and frees its C object in `Drop`, so the borrow checker enforces
that the context outlives its handles and each handle is released once.
"""

from pathlib import Path

from .generate import Emitter, GenerationSession, register_emitter, run_formatter
from .manifest import ArrayType, Entry, OpaqueArray, OpaqueType, Record, RecordArray, Sum

RUST_KEYWORDS = {
    "as", "async", "await", "break", "const", "continue", "dyn", "else",
    "enum", "extern", "false", "fn", "for", "if", "impl", "in", "let",
    "loop", "match", "mod", "move", "mut", "pub", "ref", "return", "static",
    "struct", "trait", "true", "type", "unsafe", "use", "where", "while",
    "abstract", "become", "box", "do", "final", "macro", "override", "priv",
    "try", "typeof", "unsized", "virtual", "yield",
}
RUST_UNRAWABLE = {"self", "Self", "super", "crate"}
# Names defined by the prelude
PRELUDE_TYPES = {"Context", "Options", "Error", "FutharkArray"}
PRELUDE_FUNCTIONS = {"free", "take_c_string"}
CONTEXT_METHODS = {
    "new", "new_with_options", "sync", "auto_sync", "clear_caches",
    "pause_profiling", "unpause_profiling", "get_error", "report",
}
# Methods every generated handle may define
HANDLE_METHODS = {
    "from_ptr", "new", "new_checked", "store", "restore", "shape", "get",
    "get_checked", "zip", "zip_checked",
}
# Bindings the constructor templates introduce
CONSTRUCTOR_LOCALS = {"ctx", "out", "rc"}

RUST_PRIMITIVES = {
    "f16": "half::f16",
}


def rust_ident(name: str, reserved: set[str] = frozenset()) -> str:
    if name in RUST_UNRAWABLE or name in reserved:
        return name + "_"
    if name in RUST_KEYWORDS:
        return "r#" + name
    return name


def rust_primitive(type_name: str) -> str:
    return RUST_PRIMITIVES.get(type_name, type_name)


def _join(items: list[str]) -> str:
    return ", ".join(items)


# ===--- Templates ---=== #

CONTEXT_TEMPLATE = """\
// Generated by futhark-bindgen
// Backend: {backend}, compiler version: {version}

#[repr(C)]
#[allow(non_camel_case_types)]
struct futhark_context_config {{
    _private: [u8; 0],
}}

#[repr(C)]
#[allow(non_camel_case_types)]
struct futhark_context {{
    _private: [u8; 0],
}}

#[allow(unused)]
extern "C" {{
    fn futhark_context_config_new() -> *mut futhark_context_config;
    fn futhark_context_config_free(cfg: *mut futhark_context_config);
    fn futhark_context_config_set_debugging(cfg: *mut futhark_context_config, flag: core::ffi::c_int);
    fn futhark_context_config_set_profiling(cfg: *mut futhark_context_config, flag: core::ffi::c_int);
    fn futhark_context_config_set_logging(cfg: *mut futhark_context_config, flag: core::ffi::c_int);
    fn futhark_context_config_set_cache_file(cfg: *mut futhark_context_config, path: *const core::ffi::c_char);
    fn futhark_context_new(cfg: *mut futhark_context_config) -> *mut futhark_context;
    fn futhark_context_free(ctx: *mut futhark_context);
    fn futhark_context_sync(ctx: *mut futhark_context) -> core::ffi::c_int;
    fn futhark_context_clear_caches(ctx: *mut futhark_context) -> core::ffi::c_int;
    fn futhark_context_get_error(ctx: *mut futhark_context) -> *mut core::ffi::c_char;
    fn futhark_context_report(ctx: *mut futhark_context) -> *mut core::ffi::c_char;
    fn futhark_context_pause_profiling(ctx: *mut futhark_context);
    fn futhark_context_unpause_profiling(ctx: *mut futhark_context);
    fn free(ptr: *mut core::ffi::c_void);
{backend_externs}
}}

/// Errors reported by the generated bindings
#[derive(Debug, Clone, PartialEq, Eq)]
pub enum Error {{
    /// A Futhark function returned a non-zero status code
    Code(core::ffi::c_int),
    /// A Futhark constructor returned a null pointer
    NullPtr,
    /// The data length does not match the requested shape
    InvalidShape,
    /// An index lies outside the array bounds
    IndexOutOfBounds,
}}

impl std::fmt::Display for Error {{
    fn fmt(&self, f: &mut std::fmt::Formatter<'_>) -> std::fmt::Result {{
        match self {{
            Error::Code(rc) => write!(f, "futhark call failed with code {{rc}}"),
            Error::NullPtr => write!(f, "futhark returned a null pointer"),
            Error::InvalidShape => write!(f, "data length does not match the shape"),
            Error::IndexOutOfBounds => write!(f, "index out of bounds"),
        }}
    }}
}}

impl std::error::Error for Error {{}}

/// Implemented by every generated array type
pub trait FutharkArray {{
    const RANK: usize;
    type Element;
}}

/// Context configuration
#[derive(Debug, Clone)]
pub struct Options {{
    debug: bool,
    profile: bool,
    logging: bool,
    auto_sync: bool,
    num_threads: u32,
    device: Option<std::ffi::CString>,
    cache_file: Option<std::ffi::CString>,
}}

impl Default for Options {{
    fn default() -> Self {{
        Options {{
            debug: false,
            profile: false,
            logging: false,
            auto_sync: true,
            num_threads: 0,
            device: None,
            cache_file: None,
        }}
    }}
}}

impl Options {{
    pub fn new() -> Self {{
        Self::default()
    }}

    pub fn debug(mut self) -> Self {{
        self.debug = true;
        self
    }}

    pub fn profile(mut self) -> Self {{
        self.profile = true;
        self
    }}

    pub fn log(mut self) -> Self {{
        self.logging = true;
        self
    }}

    /// Synchronize after every call that may leave work in flight
    pub fn auto_sync(mut self, enable: bool) -> Self {{
        self.auto_sync = enable;
        self
    }}

    pub fn cache_file(mut self, path: impl AsRef<str>) -> Self {{
        self.cache_file = Some(std::ffi::CString::new(path.as_ref()).expect("Invalid cache file"));
        self
    }}
{backend_options}
}}

/// Owns a Futhark context; every handle borrows it
pub struct Context {{
    config: *mut futhark_context_config,
    context: *mut futhark_context,
    pub auto_sync: bool,
}}

impl Context {{
    pub fn new() -> Result<Self, Error> {{
        Self::new_with_options(Options::default())
    }}

    pub fn new_with_options(options: Options) -> Result<Self, Error> {{
        unsafe {{
            let config = futhark_context_config_new();
            if config.is_null() {{
                return Err(Error::NullPtr);
            }}
            futhark_context_config_set_debugging(config, options.debug as core::ffi::c_int);
            futhark_context_config_set_profiling(config, options.profile as core::ffi::c_int);
            futhark_context_config_set_logging(config, options.logging as core::ffi::c_int);
            if let Some(path) = &options.cache_file {{
                futhark_context_config_set_cache_file(config, path.as_ptr());
            }}
            {configure_num_threads}
            {configure_set_device}
            let context = futhark_context_new(config);
            if context.is_null() {{
                futhark_context_config_free(config);
                return Err(Error::NullPtr);
            }}
            Ok(Context {{
                config,
                context,
                auto_sync: options.auto_sync,
            }})
        }}
    }}

    /// Wait for all pending operations to finish
    pub fn sync(&self) -> Result<(), Error> {{
        let rc = unsafe {{ futhark_context_sync(self.context) }};
        if rc != 0 {{
            return Err(Error::Code(rc));
        }}
        Ok(())
    }}

    #[allow(unused)]
    fn auto_sync(&self) {{
        if self.auto_sync {{
            let _ = self.sync();
        }}
    }}

    pub fn clear_caches(&self) -> Result<(), Error> {{
        let rc = unsafe {{ futhark_context_clear_caches(self.context) }};
        if rc != 0 {{
            return Err(Error::Code(rc));
        }}
        Ok(())
    }}

    pub fn pause_profiling(&self) {{
        unsafe {{ futhark_context_pause_profiling(self.context) }}
    }}

    pub fn unpause_profiling(&self) {{
        unsafe {{ futhark_context_unpause_profiling(self.context) }}
    }}

    /// The last error message, if any
    pub fn get_error(&self) -> Option<String> {{
        unsafe {{ take_c_string(futhark_context_get_error(self.context)) }}
    }}

    /// Profiling report
    pub fn report(&self) -> Option<String> {{
        unsafe {{ take_c_string(futhark_context_report(self.context)) }}
    }}
}}

impl Drop for Context {{
    fn drop(&mut self) {{
        unsafe {{
            futhark_context_sync(self.context);
            futhark_context_free(self.context);
            futhark_context_config_free(self.config);
        }}
    }}
}}

unsafe fn take_c_string(s: *mut core::ffi::c_char) -> Option<String> {{
    if s.is_null() {{
        return None;
    }}
    let out = std::ffi::CStr::from_ptr(s).to_string_lossy().into_owned();
    free(s as *mut core::ffi::c_void);
    Some(out)
}}
"""

THREADS_EXTERN = (
    "    fn futhark_context_config_set_num_threads("
    "cfg: *mut futhark_context_config, n: core::ffi::c_int);"
)
DEVICE_EXTERN = (
    "    fn futhark_context_config_set_device("
    "cfg: *mut futhark_context_config, device: *const core::ffi::c_char);"
)
THREADS_OPTION = """
    /// Number of worker threads, 0 selects the number of cores
    pub fn threads(mut self, n: u32) -> Self {
        self.num_threads = n;
        self
    }"""
DEVICE_OPTION = """
    /// Select the device by (partial) name
    pub fn device(mut self, name: impl AsRef<str>) -> Self {
        self.device = Some(std::ffi::CString::new(name.as_ref()).expect("Invalid device"));
        self
    }"""
THREADS_CONFIGURE = (
    "futhark_context_config_set_num_threads("
    "config, options.num_threads as core::ffi::c_int);"
)
DEVICE_CONFIGURE = (
    "if let Some(device) = &options.device { "
    "futhark_context_config_set_device(config, device.as_ptr()); }"
)

ARRAY_TEMPLATE = """\
#[repr(C)]
#[allow(non_camel_case_types)]
struct {raw_type} {{
    _private: [u8; 0],
}}

/// Array with {rank} dimensions and `{elemtype}` elements
pub struct {rust_type}<'a> {{
    ptr: *mut {raw_type},
    shape: [usize; {rank}],
    ctx: &'a Context,
}}

impl<'a> FutharkArray for {rust_type}<'a> {{
    const RANK: usize = {rank};
    type Element = {elemtype};
}}

impl<'a> {rust_type}<'a> {{
    /// Create an array of shape `dims` from row-major `data`
    pub fn new(ctx: &'a Context, dims: [usize; {rank}], data: impl AsRef<[{elemtype}]>) -> Result<Self, Error> {{
        let size: usize = dims.iter().product();
        let data = data.as_ref();
        if data.len() != size {{
            return Err(Error::InvalidShape);
        }}
        let ptr = unsafe {{ {new_fn}(ctx.context, data.as_ptr(){dim_args}) }};
        if ptr.is_null() {{
            return Err(Error::NullPtr);
        }}
        ctx.auto_sync();
        Ok(Self {{ ptr, shape: dims, ctx }})
    }}

    pub fn shape(&self) -> [usize; {rank}] {{
        self.shape
    }}

    /// Copy the array contents into `data`
    pub fn values(&self, mut data: impl AsMut<[{elemtype}]>) -> Result<(), Error> {{
        let size: usize = self.shape.iter().product();
        let data = data.as_mut();
        if data.len() != size {{
            return Err(Error::InvalidShape);
        }}
        let rc = unsafe {{ {values_fn}(self.ctx.context, self.ptr, data.as_mut_ptr()) }};
        if rc != 0 {{
            return Err(Error::Code(rc));
        }}
        self.ctx.sync()
    }}

    pub fn as_vec(&self) -> Result<Vec<{elemtype}>, Error> {{
        let size: usize = self.shape.iter().product();
        let mut vec = vec![{elemtype}::default(); size];
        self.values(&mut vec)?;
        Ok(vec)
    }}

    /// Load a single element into `out` without synchronizing
    pub fn load_index(&self, index: [usize; {rank}], out: &mut {elemtype}) -> Result<(), Error> {{
        if index.iter().zip(self.shape.iter()).any(|(i, s)| *i >= *s) {{
            return Err(Error::IndexOutOfBounds);
        }}
        let rc = unsafe {{ {index_fn}(self.ctx.context, out{index_args}) }};
        if rc != 0 {{
            return Err(Error::Code(rc));
        }}
        Ok(())
    }}

    pub fn get(&self, index: [usize; {rank}]) -> {elemtype} {{
        self.get_checked(index).unwrap()
    }}

    pub fn get_checked(&self, index: [usize; {rank}]) -> Result<{elemtype}, Error> {{
        let mut out = {elemtype}::default();
        self.load_index(index, &mut out)?;
        self.ctx.sync()?;
        Ok(out)
    }}

    #[allow(unused)]
    fn from_ptr(ctx: &'a Context, ptr: *mut {raw_type}) -> Self {{
        let dims = unsafe {{ {shape_fn}(ctx.context, ptr) }};
        let mut shape = [0usize; {rank}];
        for (i, s) in shape.iter_mut().enumerate() {{
            *s = unsafe {{ *dims.add(i) }} as usize;
        }}
        Self {{ ptr, shape, ctx }}
    }}
}}

impl<'a> Drop for {rust_type}<'a> {{
    fn drop(&mut self) {{
        unsafe {{
            {free_fn}(self.ctx.context, self.ptr);
        }}
    }}
}}

#[allow(unused)]
extern "C" {{
    fn {new_fn}(ctx: *mut futhark_context, data: *const {elemtype}{dim_params}) -> *mut {raw_type};
    fn {free_fn}(ctx: *mut futhark_context, arr: *mut {raw_type}) -> core::ffi::c_int;
    fn {values_fn}(ctx: *mut futhark_context, arr: *mut {raw_type}, data: *mut {elemtype}) -> core::ffi::c_int;
    fn {shape_fn}(ctx: *mut futhark_context, arr: *mut {raw_type}) -> *const i64;
    fn {index_fn}(ctx: *mut futhark_context, out: *mut {elemtype}, arr: *mut {raw_type}{index_params}) -> core::ffi::c_int;
}}
"""

OPAQUE_TEMPLATE = """\
#[repr(C)]
#[allow(non_camel_case_types)]
struct {raw_type} {{
    _private: [u8; 0],
}}

/// Opaque Futhark value `{futhark_name}`
pub struct {rust_type}<'a> {{
    ptr: *mut {raw_type},
    ctx: &'a Context,
}}

impl<'a> {rust_type}<'a> {{
    #[allow(unused)]
    fn from_ptr(ctx: &'a Context, ptr: *mut {raw_type}) -> Self {{
        Self {{ ptr, ctx }}
    }}
{serialize}}}

impl<'a> Drop for {rust_type}<'a> {{
    fn drop(&mut self) {{
        unsafe {{
            {free_fn}(self.ctx.context, self.ptr);
        }}
    }}
}}

#[allow(unused)]
extern "C" {{
    fn {free_fn}(ctx: *mut futhark_context, obj: *mut {raw_type}) -> core::ffi::c_int;
    fn {store_fn}(ctx: *mut futhark_context, obj: *const {raw_type}, p: *mut *mut core::ffi::c_void, n: *mut usize) -> core::ffi::c_int;
    fn {restore_fn}(ctx: *mut futhark_context, p: *const core::ffi::c_void) -> *mut {raw_type};
}}
"""

SERIALIZE_TEMPLATE = """
    /// Serialize the value into bytes
    pub fn store(&self) -> Result<Vec<u8>, Error> {{
        let mut p: *mut core::ffi::c_void = std::ptr::null_mut();
        let mut n: usize = 0;
        let rc = unsafe {{ {store_fn}(self.ctx.context, self.ptr, &mut p, &mut n) }};
        if rc != 0 {{
            return Err(Error::Code(rc));
        }}
        let bytes = unsafe {{ std::slice::from_raw_parts(p as *const u8, n).to_vec() }};
        unsafe {{ free(p) }};
        Ok(bytes)
    }}

    /// Deserialize a value produced by `store`
    pub fn restore(ctx: &'a Context, bytes: &[u8]) -> Result<Self, Error> {{
        let ptr = unsafe {{ {restore_fn}(ctx.context, bytes.as_ptr() as *const core::ffi::c_void) }};
        if ptr.is_null() {{
            return Err(Error::NullPtr);
        }}
        Ok(Self::from_ptr(ctx, ptr))
    }}
"""

RECORD_NEW_TEMPLATE = """\
impl<'a> {rust_type}<'a> {{
    /// Create a new `{rust_type}`, panicking on failure
    pub fn new(ctx: &'a Context{new_params}) -> Self {{
        Self::new_checked(ctx{new_args}).unwrap()
    }}

    pub fn new_checked(ctx: &'a Context{new_params}) -> Result<Self, Error> {{
        let mut out = std::ptr::null_mut();
        let rc = unsafe {{ {new_fn}(ctx.context, &mut out{new_call_args}) }};
        if rc != 0 {{
            return Err(Error::Code(rc));
        }}
        ctx.auto_sync();
        Ok(Self::from_ptr(ctx, out))
    }}
}}

extern "C" {{
    fn {new_fn}(ctx: *mut futhark_context, out: *mut *mut {raw_type}{new_extern_params}) -> core::ffi::c_int;
}}
"""

PROJECT_TEMPLATE = """\
impl<'a> {rust_type}<'a> {{
    /// Field `{field_name}`
    pub fn {project_ident}(&self) -> {rust_field_type} {{
        self.{project_checked}().unwrap()
    }}

    pub fn {project_checked}(&self) -> Result<{rust_field_type}, Error> {{
        let mut out = std::mem::MaybeUninit::zeroed();
        let rc = unsafe {{ {project_fn}(self.ctx.context, out.as_mut_ptr(), self.ptr) }};
        if rc != 0 {{
            return Err(Error::Code(rc));
        }}
        self.ctx.auto_sync();
        let out = unsafe {{ out.assume_init() }};
        Ok({output})
    }}
}}

extern "C" {{
    fn {project_fn}(ctx: *mut futhark_context, out: *mut {raw_out_type}, obj: *const {raw_type}) -> core::ffi::c_int;
}}
"""

OPAQUE_ARRAY_TEMPLATE = """\
#[repr(C)]
#[allow(non_camel_case_types)]
struct {raw_type} {{
    _private: [u8; 0],
}}

/// Array with {rank} dimensions of `{rust_elemtype}` values
pub struct {rust_type}<'a> {{
    ptr: *mut {raw_type},
    shape: [usize; {rank}],
    ctx: &'a Context,
}}

impl<'a> FutharkArray for {rust_type}<'a> {{
    const RANK: usize = {rank};
    type Element = {rust_elemtype}<'a>;
}}

impl<'a> {rust_type}<'a> {{
    pub fn shape(&self) -> [usize; {rank}] {{
        self.shape
    }}

    pub fn get(&self, index: [usize; {rank}]) -> {rust_elemtype}<'a> {{
        self.get_checked(index).unwrap()
    }}

    pub fn get_checked(&self, index: [usize; {rank}]) -> Result<{rust_elemtype}<'a>, Error> {{
        if index.iter().zip(self.shape.iter()).any(|(i, s)| *i >= *s) {{
            return Err(Error::IndexOutOfBounds);
        }}
        let mut out = std::ptr::null_mut();
        let rc = unsafe {{ {index_fn}(self.ctx.context, &mut out, self.ptr{index_args}) }};
        if rc != 0 {{
            return Err(Error::Code(rc));
        }}
        self.ctx.sync()?;
        Ok({rust_elemtype}::from_ptr(self.ctx, out))
    }}

    #[allow(unused)]
    fn from_ptr(ctx: &'a Context, ptr: *mut {raw_type}) -> Self {{
        let dims = unsafe {{ {shape_fn}(ctx.context, ptr) }};
        let mut shape = [0usize; {rank}];
        for (i, s) in shape.iter_mut().enumerate() {{
            *s = unsafe {{ *dims.add(i) }} as usize;
        }}
        Self {{ ptr, shape, ctx }}
    }}
{serialize}}}

impl<'a> Drop for {rust_type}<'a> {{
    fn drop(&mut self) {{
        unsafe {{
            {free_fn}(self.ctx.context, self.ptr);
        }}
    }}
}}

#[allow(unused)]
extern "C" {{
    fn {free_fn}(ctx: *mut futhark_context, obj: *mut {raw_type}) -> core::ffi::c_int;
    fn {store_fn}(ctx: *mut futhark_context, obj: *const {raw_type}, p: *mut *mut core::ffi::c_void, n: *mut usize) -> core::ffi::c_int;
    fn {restore_fn}(ctx: *mut futhark_context, p: *const core::ffi::c_void) -> *mut {raw_type};
    fn {shape_fn}(ctx: *mut futhark_context, arr: *mut {raw_type}) -> *const i64;
    fn {index_fn}(ctx: *mut futhark_context, out: *mut *mut {raw_elemtype}, arr: *mut {raw_type}{index_params}) -> core::ffi::c_int;
}}
"""

ZIP_TEMPLATE = """\
impl<'a> {rust_type}<'a> {{
    /// Assemble the array from one array per field, panicking on failure
    pub fn zip(ctx: &'a Context{zip_params}) -> Self {{
        Self::zip_checked(ctx{zip_args}).unwrap()
    }}

    pub fn zip_checked(ctx: &'a Context{zip_params}) -> Result<Self, Error> {{
        let mut out = std::ptr::null_mut();
        let rc = unsafe {{ {zip_fn}(ctx.context, &mut out{zip_call_args}) }};
        if rc != 0 {{
            return Err(Error::Code(rc));
        }}
        ctx.auto_sync();
        Ok(Self::from_ptr(ctx, out))
    }}
}}

extern "C" {{
    fn {zip_fn}(ctx: *mut futhark_context, out: *mut *mut {raw_type}{zip_extern_params}) -> core::ffi::c_int;
}}
"""

ENTRY_TEMPLATE = """\
/// Entry point `{entry_name}`{tuning_doc}
pub fn {entry_ident}<'a>(ctx: &'a Context{entry_params}) -> Result<{return_type}, Error> {{
{body}
}}
"""

CONTEXT_ENTRY_TEMPLATE = """\
impl Context {{
    /// Entry point `{entry_name}`{tuning_doc}
    pub fn {entry_ident}<'a>(&'a self{entry_params}) -> Result<{return_type}, Error> {{
        let ctx = self;
{body}
    }}
}}
"""

ENTRY_EXTERN_TEMPLATE = """
extern "C" {{
    fn {entry_fn}(ctx: *mut futhark_context{extern_params}) -> core::ffi::c_int;
}}
"""


def _lines(text: str) -> list[str]:
    return text.rstrip("\n").split("\n") + [""]


def _indent(lines: list[str], prefix: str) -> list[str]:
    return [prefix + line if line else line for line in lines]


# ===--- Emitter ---=== #


@register_emitter(".rs")
class RustEmitter(Emitter):
    name = "rust"

    def _type(self, session: GenerationSession, type_name: str) -> str:
        name = session.type_name(type_name)
        if name in PRELUDE_TYPES:
            return name + "_"
        return name

    def setup(self, session: GenerationSession) -> list[str]:
        backend = session.backend
        externs: list[str] = []
        options: list[str] = []
        configure_threads = "let _ = options.num_threads;"
        configure_device = "let _ = &options.device;"
        if backend.has_threads:
            externs.append(THREADS_EXTERN)
            options.append(THREADS_OPTION)
            configure_threads = THREADS_CONFIGURE
        if backend.has_device:
            externs.append(DEVICE_EXTERN)
            options.append(DEVICE_OPTION)
            configure_device = DEVICE_CONFIGURE
        return _lines(
            CONTEXT_TEMPLATE.format(
                backend=backend.value,
                version=session.manifest.version,
                backend_externs="\n".join(externs),
                backend_options="".join(options),
                configure_num_threads=configure_threads,
                configure_set_device=configure_device,
            )
        )

    def array_type(
        self, session: GenerationSession, name: str, ty: ArrayType
    ) -> list[str]:
        rank = ty.rank
        return _lines(
            ARRAY_TEMPLATE.format(
                raw_type=session.raw_name(name),
                rust_type=self._type(session, name),
                rank=rank,
                elemtype=rust_primitive(ty.elemtype.value),
                new_fn=ty.ops.new,
                free_fn=ty.ops.free,
                values_fn=ty.ops.values,
                shape_fn=ty.ops.shape,
                index_fn=ty.ops.index,
                dim_args="".join(f", dims[{i}] as i64" for i in range(rank)),
                dim_params="".join(f", dim{i}: i64" for i in range(rank)),
                index_args=", self.ptr"
                + "".join(f", index[{i}] as i64" for i in range(rank)),
                index_params="".join(f", i{i}: i64" for i in range(rank)),
            )
        )

    def _opaque_fields(self, session: GenerationSession, name: str, ty: OpaqueType):
        return {
            "raw_type": session.raw_name(name),
            "rust_type": self._type(session, name),
            "futhark_name": name,
            "free_fn": ty.ops.free,
            "store_fn": ty.ops.store,
            "restore_fn": ty.ops.restore,
            "serialize": SERIALIZE_TEMPLATE.format(
                store_fn=ty.ops.store, restore_fn=ty.ops.restore
            ),
        }

    def _field_types(self, session: GenerationSession, type_name: str):
        """Return (rust type, raw C type, is_scalar) for a field or argument."""
        if session.is_scalar(type_name):
            prim = rust_primitive(type_name)
            return prim, prim, True
        return self._type(session, type_name), session.raw_name(type_name), False

    def record(
        self, session: GenerationSession, name: str, ty: OpaqueType, record: Record
    ) -> list[str]:
        fields = self._opaque_fields(session, name, ty)
        lines = _lines(OPAQUE_TEMPLATE.format(**fields))

        new_params: list[str] = []
        new_args: list[str] = []
        new_call_args: list[str] = []
        new_extern_params: list[str] = []
        for f in record.fields:
            rust_field_type, raw_field_type, scalar = self._field_types(session, f.type)
            param = rust_ident(session.new_field_name(f.name), CONSTRUCTOR_LOCALS)
            new_args.append(param)
            if scalar:
                new_params.append(f"{param}: {rust_field_type}")
                new_call_args.append(param)
                new_extern_params.append(f"f_{f.name}: {raw_field_type}")
                output = "out"
                raw_out_type = raw_field_type
            else:
                new_params.append(f"{param}: &{rust_field_type}")
                new_call_args.append(f"{param}.ptr")
                new_extern_params.append(f"f_{f.name}: *const {raw_field_type}")
                output = f"{rust_field_type}::from_ptr(self.ctx, out)"
                raw_out_type = f"*mut {raw_field_type}"

            project = session.project_name(f.name)
            if project in HANDLE_METHODS:
                project += "_"
            lines.extend(
                _lines(
                    PROJECT_TEMPLATE.format(
                        rust_type=fields["rust_type"],
                        raw_type=fields["raw_type"],
                        field_name=f.name,
                        project_ident=rust_ident(project),
                        project_checked=f"{project}_checked",
                        project_fn=f.project,
                        rust_field_type=(
                            rust_field_type if scalar else f"{rust_field_type}<'a>"
                        ),
                        raw_out_type=raw_out_type,
                        output=output,
                    )
                )
            )

        lines.extend(
            _lines(
                RECORD_NEW_TEMPLATE.format(
                    rust_type=fields["rust_type"],
                    raw_type=fields["raw_type"],
                    new_fn=record.new,
                    new_params="".join(f", {p}" for p in new_params),
                    new_args="".join(f", {a}" for a in new_args),
                    new_call_args="".join(f", {a}" for a in new_call_args),
                    new_extern_params="".join(f", {p}" for p in new_extern_params),
                )
            )
        )
        return lines

    def sum(
        self, session: GenerationSession, name: str, ty: OpaqueType, sum_: Sum
    ) -> list[str]:
        return _lines(OPAQUE_TEMPLATE.format(**self._opaque_fields(session, name, ty)))

    def opaque_array(
        self,
        session: GenerationSession,
        name: str,
        ty: OpaqueType,
        array: OpaqueArray | RecordArray,
    ) -> list[str]:
        fields = self._opaque_fields(session, name, ty)
        rank = array.rank
        lines = _lines(
            OPAQUE_ARRAY_TEMPLATE.format(
                **fields,
                rank=rank,
                shape_fn=array.shape,
                index_fn=array.index,
                rust_elemtype=self._type(session, array.elemtype),
                raw_elemtype=session.raw_name(array.elemtype),
                index_args="".join(f", index[{i}] as i64" for i in range(rank)),
                index_params="".join(f", i{i}: i64" for i in range(rank)),
            )
        )
        if array.record is None:
            return lines

        zip_params: list[str] = []
        zip_args: list[str] = []
        zip_call_args: list[str] = []
        zip_extern_params: list[str] = []
        for f in array.record.fields:
            rust_field_type = self._type(session, f.type)
            raw_field_type = session.raw_name(f.type)
            param = rust_ident(session.new_field_name(f.name), CONSTRUCTOR_LOCALS)
            zip_params.append(f"{param}: &{rust_field_type}")
            zip_args.append(param)
            zip_call_args.append(f"{param}.ptr")
            zip_extern_params.append(f"f_{f.name}: *const {raw_field_type}")

            project = session.project_name(f.name)
            if project in HANDLE_METHODS:
                project += "_"
            lines.extend(
                _lines(
                    PROJECT_TEMPLATE.format(
                        rust_type=fields["rust_type"],
                        raw_type=fields["raw_type"],
                        field_name=f.name,
                        project_ident=rust_ident(project),
                        project_checked=f"{project}_checked",
                        project_fn=f.project,
                        rust_field_type=f"{rust_field_type}<'a>",
                        raw_out_type=f"*mut {raw_field_type}",
                        output=f"{rust_field_type}::from_ptr(self.ctx, out)",
                    )
                )
            )

        lines.extend(
            _lines(
                ZIP_TEMPLATE.format(
                    rust_type=fields["rust_type"],
                    raw_type=fields["raw_type"],
                    zip_fn=array.record.zip,
                    zip_params="".join(f", {p}" for p in zip_params),
                    zip_args="".join(f", {a}" for a in zip_args),
                    zip_call_args="".join(f", {a}" for a in zip_call_args),
                    zip_extern_params="".join(f", {p}" for p in zip_extern_params),
                )
            )
        )
        return lines

    def entry(self, session: GenerationSession, name: str, entry: Entry) -> list[str]:
        call_args: list[str] = []
        entry_params: list[str] = []
        extern_params: list[str] = []
        out_decl: list[str] = []
        return_types: list[str] = []
        returns: list[str] = []

        for i, out in enumerate(entry.outputs):
            var = f"out{i}"
            rust_type, raw_type, scalar = self._field_types(session, out.type)
            if scalar:
                extern_params.append(f"{var}: *mut {raw_type}")
                returns.append(f"{var}.assume_init()")
                return_types.append(rust_type)
            else:
                extern_params.append(f"{var}: *mut *mut {raw_type}")
                returns.append(f"{rust_type}::from_ptr(ctx, {var}.assume_init())")
                return_types.append(f"{rust_type}<'a>")
            out_decl.append(f"let mut {var} = std::mem::MaybeUninit::zeroed();")
            call_args.append(f"{var}.as_mut_ptr()")

        for i, arg in enumerate(entry.inputs):
            var = f"in{i}"
            rust_type, raw_type, scalar = self._field_types(session, arg.type)
            if scalar:
                extern_params.append(f"{var}: {raw_type}")
                entry_params.append(f"{var}: {rust_type}")
                call_args.append(var)
            else:
                extern_params.append(f"{var}: *const {raw_type}")
                entry_params.append(f"{var}: &{rust_type}<'a>")
                call_args.append(f"{var}.ptr")

        # 0 outputs -> (), 1 -> bare value, N -> tuple in declared order
        if len(returns) == 0:
            return_type, value = "()", "()"
        elif len(returns) == 1:
            return_type, value = return_types[0], returns[0]
        else:
            return_type = f"({_join(return_types)})"
            value = f"({_join(returns)})"

        body = [
            *out_decl,
            f"let rc = unsafe {{ {entry.cfun}(ctx.context{''.join(', ' + a for a in call_args)}) }};",
            "if rc != 0 {",
            "    return Err(Error::Code(rc));",
            "}",
            "ctx.auto_sync();",
            "#[allow(unused_unsafe)]",
            f"Ok(unsafe {{ {value} }})",
        ]
        tuning_doc = ""
        if entry.tuning_params:
            tuning_doc = "\n///\n/// Tuning parameters: " + _join(
                [f"`{p}`" for p in entry.tuning_params]
            )

        if session.entry_points_within_context:
            template = CONTEXT_ENTRY_TEMPLATE
            entry_ident = rust_ident(name, CONTEXT_METHODS)
            body_lines = _indent(body, "        ")
            tuning_doc = tuning_doc.replace("\n", "\n    ")
        else:
            template = ENTRY_TEMPLATE
            entry_ident = rust_ident(name, PRELUDE_FUNCTIONS)
            # extern declarations share the module namespace
            if entry_ident.startswith("futhark_"):
                entry_ident += "_"
            body_lines = _indent(body, "    ")
        lines = _lines(
            template.format(
                entry_name=name,
                entry_ident=entry_ident,
                entry_params="".join(f", {p}" for p in entry_params),
                return_type=return_type,
                body="\n".join(body_lines),
                tuning_doc=tuning_doc,
            )
        )
        lines.extend(
            _lines(
                ENTRY_EXTERN_TEMPLATE.format(
                    entry_fn=entry.cfun,
                    extern_params="".join(f", {p}" for p in extern_params),
                )
            )
        )
        return lines

    def format(self, path: Path) -> bool:
        return run_formatter(["rustfmt", str(path)])

