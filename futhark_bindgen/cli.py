"""Command line interface: `futhark-bindgen`.

Flow: argv -> argparse.Namespace -> validated config -> run.
"""

import argparse
import os
from dataclasses import dataclass
from pathlib import Path

from .compiler import DEFAULT_EXECUTABLE, Compiler, Package
from .errors import BindgenError, ConfigError
from .generate import GenerationResult, Generator, available_emitters
from .manifest import Backend, Manifest, load_manifest


# ===--- Configuration ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    manifest: Path | None
    source: Path | None
    backend: Backend
    output: Path
    format_output: bool
    entry_points_within_context: bool
    compiler: str


@dataclass(frozen=True)
class ListConfig:
    command: str


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/file",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def parse_backend(raw: str | None) -> Backend:
    """Resolve --backend, falling back to FUTHARK_BACKEND, then `c`."""
    source = "--backend"
    if raw is None:
        backend = Backend.from_env()
        if backend is not None:
            return backend
        raw = os.environ.get("FUTHARK_BACKEND")
        if raw is None:
            return Backend.C
        source = "FUTHARK_BACKEND"
    backend = Backend.from_name(raw)
    if backend is None:
        raise ConfigError(
            "INVALID_BACKEND",
            f"Unsupported backend from {source}: {raw}",
            "Use one of: " + ", ".join(b.value for b in Backend) + ".",
        )
    return backend


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="futhark-bindgen",
        description="Generate language bindings for a Futhark library",
    )

    input_group = parser.add_mutually_exclusive_group()
    input_group.add_argument("--manifest", type=Path, default=None)
    input_group.add_argument("--source", type=Path, default=None)

    parser.add_argument("--backend", type=str, default=None)
    parser.add_argument("--output", type=Path, default=None)
    parser.add_argument(
        "--no-format", dest="format_output", action="store_false", default=True
    )
    parser.add_argument(
        "--entry-points-within-context", action="store_true", default=False
    )
    parser.add_argument("--futhark", type=str, default=None)

    list_group = parser.add_mutually_exclusive_group()
    list_group.add_argument("--list-backends", action="store_true", default=False)
    list_group.add_argument("--list-languages", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig | ListConfig:
    has_input = bool(args.manifest or args.source or args.output)
    has_list_command = bool(args.list_backends or args.list_languages)

    if has_input and has_list_command:
        raise ConfigError(
            "CONFLICT_INPUTS",
            "Generation flags cannot be combined with listing flags.",
            "Either generate bindings or list backends/languages.",
        )

    if has_list_command:
        command = "list-backends" if args.list_backends else "list-languages"
        return ListConfig(command=command)

    if args.manifest is not None and args.source is not None:
        raise ConfigError(
            "CONFLICT_INPUTS",
            "Cannot combine --manifest with --source.",
            "Pass a compiled manifest or a Futhark source file, not both.",
        )
    if args.manifest is None and args.source is None:
        raise ConfigError(
            "MISSING_INPUT",
            "Generation requires --manifest or --source.",
            "Pass --manifest lib.json or --source lib.fut.",
        )
    if args.manifest is not None and args.backend is not None:
        raise ConfigError(
            "CONFLICT_INPUTS",
            "--backend only applies to --source.",
            "The backend of a compiled manifest is recorded in the manifest.",
        )
    if args.output is None:
        raise ConfigError(
            "MISSING_INPUT",
            "Generation requires --output.",
            "Pass --output with one of the extensions: "
            + ", ".join(available_emitters())
            + ".",
        )
    if args.output.suffix.lower() not in available_emitters():
        raise ConfigError(
            "UNKNOWN_OUTPUT_LANGUAGE",
            f"No emitter for output file: {args.output}",
            "Use one of the extensions: " + ", ".join(available_emitters()) + ".",
        )

    manifest = None
    source = None
    if args.manifest is not None:
        manifest = validate_path_exists(args.manifest, "--manifest")
    else:
        source = validate_path_exists(args.source, "--source")

    return GenerateConfig(
        manifest=manifest,
        source=source,
        backend=parse_backend(args.backend),
        output=args.output,
        format_output=bool(args.format_output),
        entry_points_within_context=bool(args.entry_points_within_context),
        compiler=args.futhark or os.environ.get("FUTHARK", DEFAULT_EXECUTABLE),
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | ListConfig:
    return validate_config(parse_args(argv))


# ===--- Listing ---=== #


def format_backends_table() -> str:
    lines = ["Backends:", ""]
    for backend in Backend:
        libs = ", ".join(backend.required_c_libs()) or "-"
        lines.append(f"  {backend.value:<11} links: {libs}")
    lines.append("")
    return "\n".join(lines)


def format_languages_table() -> str:
    lines = ["Output languages:", ""]
    for cls in available_emitters().values():
        lines.append(f"  {cls.extension:<6} {cls.name}")
    lines.append("")
    return "\n".join(lines)


def run_listing(config: ListConfig) -> None:
    if config.command == "list-backends":
        print(format_backends_table(), end="")
    else:
        print(format_languages_table(), end="")


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationSummary:
    """Everything the final console report shows."""

    output: str
    language: str
    backend: Backend
    compiler_version: str
    array_types: int
    opaque_types: int
    entry_points: int
    line_count: int
    formatted: bool
    c_libs: tuple[str, ...]
    c_file: str | None = None


def build_generation_summary(
    manifest: Manifest,
    result: GenerationResult,
    package: Package | None = None,
) -> GenerationSummary:
    return GenerationSummary(
        output=str(result.output_path),
        language=result.emitter,
        backend=manifest.backend,
        compiler_version=manifest.version,
        array_types=len(manifest.array_types()),
        opaque_types=len(manifest.opaque_types()),
        entry_points=len(manifest.entry_points),
        line_count=result.line_count,
        formatted=result.formatted,
        c_libs=manifest.backend.required_c_libs(),
        c_file=str(package.c_file) if package is not None else None,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary as the console report.

    Returns a string with exactly one trailing newline.
    """
    lines: list[str] = []
    lines.append("Futhark bindings generated:")
    lines.append("")
    lines.append(f"  Language:   {summary.language}")
    lines.append(
        f"  Backend:    {summary.backend.value} (futhark {summary.compiler_version})"
    )
    lines.append(f"  Output:     {summary.output}")
    lines.append("")
    lines.append("  Items generated:")
    lines.append(f"    {'Array types:':<15}{summary.array_types:>6}")
    lines.append(f"    {'Opaque types:':<15}{summary.opaque_types:>6}")
    lines.append(f"    {'Entry points:':<15}{summary.entry_points:>6}")
    lines.append("")
    state = "formatted" if summary.formatted else "not formatted"
    lines.append(f"  Total: {summary.line_count:,} lines ({state})")
    if summary.c_file is not None:
        lines.append(f"  C source: {summary.c_file}")
    if summary.c_libs:
        lines.append("  Link with: " + " ".join(f"-l{lib}" for lib in summary.c_libs))
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    """Thin wrapper so format_generation_summary stays testable without stdout."""
    print(format_generation_summary(summary), end="")


# ===--- Generation ---=== #


def run_generate(config: GenerateConfig) -> GenerationResult:
    """Load or compile the manifest, then write the bindings.

    Args:
        config: Validated GenerateConfig from build_config.

    Returns:
        GenerationResult for the written file.

    Raises:
        BindgenError: Manifest, naming, emitter or compiler failure.
        OSError: Manifest not readable or output not writable.
    """
    package = None
    if config.source is not None:
        print(f"Compiling: {config.source} ({config.backend.value})")
        compiler = Compiler(config.backend, config.source).with_executable(
            config.compiler
        )
        package = compiler.compile()
        print(f"  Package: {package.c_file}, {package.h_file}")
        manifest = package.manifest
    else:
        print(f"Parsing: {config.manifest}")
        manifest = load_manifest(config.manifest)
    print(
        f"  Manifest: {len(manifest.types)} types, "
        f"{len(manifest.entry_points)} entry points"
    )

    generator = Generator(
        config.output, entry_points_within_context=config.entry_points_within_context
    )
    result = generator.generate(manifest, format_output=config.format_output)
    print(f"  Written: {result.line_count} lines to {result.output_path}")

    print_generation_summary(build_generation_summary(manifest, result, package))
    return result


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    if isinstance(config, ListConfig):
        run_listing(config)
        return

    try:
        run_generate(config)
    except BindgenError as err:
        print(f"Error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err
    except OSError as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
