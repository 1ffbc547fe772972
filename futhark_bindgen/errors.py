"""Error types shared by every stage of binding generation.

Every failure the generator reports carries a stable machine-readable code,
a human message, and an optional suggestion printed as a hint by the CLI.
"""

VALID_ERROR_CODES = {
    "MALFORMED_MANIFEST",
    "UNKNOWN_VARIANT",
    "DANGLING_TYPE_REFERENCE",
    "NAMING_CONTRACT",
    "UNSUPPORTED_TYPE",
    "NO_EMITTER",
    "COMPILER_NOT_FOUND",
    "COMPILER_FAILED",
    "INVALID_BACKEND",
    "PATH_NOT_FOUND",
    "MISSING_INPUT",
    "CONFLICT_INPUTS",
    "UNKNOWN_OUTPUT_LANGUAGE",
}


class BindgenError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


class MalformedManifest(BindgenError):
    """The manifest document does not match the expected schema."""

    def __init__(self, message: str, suggestion: str | None = None):
        super().__init__("MALFORMED_MANIFEST", message, suggestion)


class UnknownVariant(BindgenError):
    """A type kind or opaque sub-kind tag is not one we know how to bind."""

    def __init__(self, message: str, suggestion: str | None = None):
        super().__init__("UNKNOWN_VARIANT", message, suggestion)


class DanglingTypeReference(BindgenError):
    def __init__(self, referrer: str, type_name: str):
        super().__init__(
            "DANGLING_TYPE_REFERENCE",
            f"{referrer} refers to unknown type {type_name!r}",
            "The manifest is inconsistent; regenerate it with the compiler.",
        )
        self.referrer = referrer
        self.type_name = type_name


class NamingContractError(BindgenError):
    """A raw C name lacks a marker the naming policy depends on."""

    def __init__(self, message: str):
        super().__init__(
            "NAMING_CONTRACT",
            message,
            "The manifest was produced by an incompatible compiler version.",
        )


class EmitterError(BindgenError):
    def __init__(self, message: str, suggestion: str | None = None):
        super().__init__("UNSUPPORTED_TYPE", message, suggestion)


class CompilerError(BindgenError):
    pass


class ConfigError(BindgenError):
    pass
