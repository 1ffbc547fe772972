"""Drive the Futhark compiler to produce a library package."""

import os
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path

from .errors import CompilerError
from .manifest import Backend, Manifest, load_manifest

DEFAULT_EXECUTABLE = "futhark"


def _sibling(stem: Path, suffix: str) -> Path:
    # with_suffix would cut a dotted stem such as "lib.v2"
    return stem.parent / (stem.name + suffix)


@dataclass(frozen=True)
class Package:
    """Output of one `futhark <backend> --lib` run.

    Attributes:
        manifest: Parsed manifest describing the library interface.
        c_file: Generated C source.
        h_file: Generated C header.
        src: The Futhark source file the package was compiled from.
    """

    manifest: Manifest
    c_file: Path
    h_file: Path
    src: Path

    def required_c_libs(self) -> tuple[str, ...]:
        return self.manifest.backend.required_c_libs()


@dataclass(frozen=True)
class Compiler:
    """Immutable description of a compiler invocation.

    The `with_*` methods return modified copies.
    """

    backend: Backend
    src: Path
    output_dir: Path | None = None
    executable: str | None = None
    extra_args: tuple[str, ...] = ()

    def with_output_dir(self, output_dir: Path) -> "Compiler":
        return replace(self, output_dir=Path(output_dir))

    def with_executable(self, executable: str) -> "Compiler":
        return replace(self, executable=executable)

    def with_extra_args(self, *args: str) -> "Compiler":
        return replace(self, extra_args=self.extra_args + tuple(args))

    def resolved_executable(self) -> str:
        if self.executable is not None:
            return self.executable
        return os.environ.get("FUTHARK", DEFAULT_EXECUTABLE)

    def output_stem(self) -> Path:
        src = Path(self.src)
        output_dir = self.output_dir if self.output_dir is not None else src.parent
        return Path(output_dir) / src.stem

    def command(self) -> list[str]:
        return [
            self.resolved_executable(),
            self.backend.value,
            *self.extra_args,
            "--lib",
            "-o",
            str(self.output_stem()),
            str(self.src),
        ]

    def compile(self) -> Package:
        """Run the compiler and load the manifest it wrote.

        Returns:
            Package pointing at the generated C file, header and manifest.

        Raises:
            CompilerError: COMPILER_NOT_FOUND if the executable cannot be
                started, COMPILER_FAILED on a non-zero exit status.
            MalformedManifest: If the written manifest does not parse.
        """
        stem = self.output_stem()
        stem.parent.mkdir(parents=True, exist_ok=True)
        argv = self.command()
        try:
            subprocess.run(argv, check=True, capture_output=True, text=True)
        except FileNotFoundError as err:
            raise CompilerError(
                "COMPILER_NOT_FOUND",
                f"Futhark compiler not found: {argv[0]}",
                "Install futhark or point FUTHARK / --futhark at the executable.",
            ) from err
        except subprocess.CalledProcessError as err:
            stderr = (err.stderr or "").strip()
            raise CompilerError(
                "COMPILER_FAILED",
                f"futhark {self.backend.value} exited with status {err.returncode}"
                + (f":\n{stderr}" if stderr else ""),
            ) from err

        return Package(
            manifest=load_manifest(_sibling(stem, ".json")),
            c_file=_sibling(stem, ".c"),
            h_file=_sibling(stem, ".h"),
            src=Path(self.src),
        )
