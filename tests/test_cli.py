import argparse
import json
import subprocess
from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

from futhark_bindgen import cli, compiler, errors, generate
from futhark_bindgen.generate import GenerationResult
from futhark_bindgen.manifest import Backend
from futhark_bindgen.rust import RustEmitter


def _assert_config_code(exc_info: pytest.ExceptionInfo[Exception], code: str) -> None:
    err = exc_info.value
    assert isinstance(err, errors.ConfigError)
    assert err.code == code
    assert err.code in errors.VALID_ERROR_CODES


@pytest.fixture
def manifest_file(tmp_path: Path, scenario_a_doc: dict) -> Path:
    path = tmp_path / "lib.json"
    path.write_text(json.dumps(scenario_a_doc), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FUTHARK", raising=False)
    monkeypatch.delenv("FUTHARK_BACKEND", raising=False)


def _namespace(**overrides: object) -> argparse.Namespace:
    values = {
        "manifest": None,
        "source": None,
        "backend": None,
        "output": None,
        "format_output": True,
        "entry_points_within_context": False,
        "futhark": None,
        "list_backends": False,
        "list_languages": False,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


# ===--- Parsing ---=== #


def test_build_argument_parser_exposes_surface_and_defaults() -> None:
    parser = cli.build_argument_parser()
    option_actions = {
        option: action for action in parser._actions for option in action.option_strings
    }

    assert {
        "--manifest",
        "--source",
        "--backend",
        "--output",
        "--no-format",
        "--entry-points-within-context",
        "--futhark",
        "--list-backends",
        "--list-languages",
    }.issubset(option_actions.keys())
    assert parser.prog == "futhark-bindgen"
    assert option_actions["--no-format"].dest == "format_output"
    assert option_actions["--no-format"].default is True
    assert option_actions["--backend"].default is None


@pytest.mark.parametrize(
    "argv",
    [
        ["--manifest", "a.json", "--source", "a.fut"],
        ["--list-backends", "--list-languages"],
    ],
)
def test_parse_args_enforces_argparse_mutual_exclusion(argv: list[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.parse_args(argv)

    assert exc_info.value.code == 2


def test_parse_args_maps_argv_without_semantic_validation() -> None:
    args = cli.parse_args(
        ["--manifest", "missing.json", "--output", "lib.rs", "--no-format"]
    )

    assert args.manifest == Path("missing.json")
    assert args.output == Path("lib.rs")
    assert args.format_output is False
    assert args.entry_points_within_context is False


# ===--- Validation ---=== #


def test_validate_config_builds_frozen_generate_config(manifest_file: Path) -> None:
    config = cli.validate_config(
        _namespace(
            manifest=manifest_file,
            output=Path("out/lib.rs"),
            entry_points_within_context=True,
        )
    )

    assert isinstance(config, cli.GenerateConfig)
    assert config.manifest == manifest_file
    assert config.source is None
    assert config.backend is Backend.C
    assert config.entry_points_within_context is True
    assert config.compiler == "futhark"
    with pytest.raises(FrozenInstanceError):
        config.output = Path("x.rs")  # type: ignore[misc]


@pytest.mark.parametrize(
    ("overrides", "code"),
    [
        ({}, "MISSING_INPUT"),
        ({"manifest": Path("lib.json")}, "MISSING_INPUT"),
        ({"manifest": Path("lib.json"), "output": Path("lib.ml")}, "UNKNOWN_OUTPUT_LANGUAGE"),
        ({"manifest": Path("nope.json"), "output": Path("lib.rs")}, "PATH_NOT_FOUND"),
        ({"source": Path("nope.fut"), "output": Path("lib.py")}, "PATH_NOT_FOUND"),
        (
            {"manifest": Path("a.json"), "source": Path("a.fut"), "output": Path("x.rs")},
            "CONFLICT_INPUTS",
        ),
        (
            {"manifest": Path("a.json"), "backend": "cuda", "output": Path("x.rs")},
            "CONFLICT_INPUTS",
        ),
        ({"output": Path("x.rs"), "list_backends": True}, "CONFLICT_INPUTS"),
    ],
)
def test_validate_config_error_codes(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    overrides: dict,
    code: str,
) -> None:
    monkeypatch.chdir(tmp_path)

    with pytest.raises(errors.ConfigError) as exc_info:
        cli.validate_config(_namespace(**overrides))

    _assert_config_code(exc_info, code)


def test_source_backend_flag_and_env_fallback(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    src = tmp_path / "lib.fut"
    src.write_text("entry main = 0i32\n", encoding="utf-8")

    config = cli.validate_config(
        _namespace(source=src, backend="OpenCL", output=tmp_path / "lib.rs")
    )
    assert config.backend is Backend.OPENCL

    monkeypatch.setenv("FUTHARK_BACKEND", "multicore")
    monkeypatch.setenv("FUTHARK", "/env/futhark")
    config = cli.validate_config(_namespace(source=src, output=tmp_path / "lib.rs"))
    assert config.backend is Backend.MULTICORE
    assert config.compiler == "/env/futhark"

    config = cli.validate_config(
        _namespace(source=src, output=tmp_path / "lib.rs", futhark="./futhark")
    )
    assert config.compiler == "./futhark"


@pytest.mark.parametrize(
    ("flag", "env", "source"),
    [("metal", None, "--backend"), (None, "metal", "FUTHARK_BACKEND")],
)
def test_parse_backend_rejects_unknown(
    monkeypatch: pytest.MonkeyPatch, flag: str | None, env: str | None, source: str
) -> None:
    if env is not None:
        monkeypatch.setenv("FUTHARK_BACKEND", env)

    with pytest.raises(errors.ConfigError) as exc_info:
        cli.parse_backend(flag)

    _assert_config_code(exc_info, "INVALID_BACKEND")
    assert source in exc_info.value.message
    assert "opencl" in exc_info.value.suggestion


def test_parse_backend_defaults_to_c() -> None:
    assert cli.parse_backend(None) is Backend.C


@pytest.mark.parametrize(
    ("argv", "command"),
    [(["--list-backends"], "list-backends"), (["--list-languages"], "list-languages")],
)
def test_build_config_listing(argv: list[str], command: str) -> None:
    assert cli.build_config(argv) == cli.ListConfig(command=command)


# ===--- Listing ---=== #


def test_format_backends_table() -> None:
    table = cli.format_backends_table()

    assert table.startswith("Backends:\n\n")
    assert "  c           links: -\n" in table
    assert "  opencl      links: OpenCL, m\n" in table
    assert table.endswith("\n")


def test_format_languages_table() -> None:
    assert cli.format_languages_table() == (
        "Output languages:\n\n  .py    python\n  .rs    rust\n"
    )


def test_format_languages_table_reads_emitter_extension(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(generate, "EMITTERS", dict(generate.EMITTERS))

    @generate.register_emitter(".ml")
    class _OCamlEmitter(RustEmitter):
        name = "ocaml"

    assert "  .ml    ocaml\n" in cli.format_languages_table()


def test_main_lists_languages(capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["--list-languages"])

    assert capsys.readouterr().out == cli.format_languages_table()


# ===--- Summary ---=== #


def _summary(**overrides: object) -> cli.GenerationSummary:
    values = {
        "output": "out/lib.rs",
        "language": "rust",
        "backend": Backend.OPENCL,
        "compiler_version": "0.25.13",
        "array_types": 3,
        "opaque_types": 4,
        "entry_points": 12,
        "line_count": 1234,
        "formatted": True,
        "c_libs": ("OpenCL", "m"),
        "c_file": "out/lib.c",
    }
    values.update(overrides)
    return cli.GenerationSummary(**values)


def test_format_generation_summary_full_report() -> None:
    assert cli.format_generation_summary(_summary()) == (
        "Futhark bindings generated:\n"
        "\n"
        "  Language:   rust\n"
        "  Backend:    opencl (futhark 0.25.13)\n"
        "  Output:     out/lib.rs\n"
        "\n"
        "  Items generated:\n"
        "    Array types:        3\n"
        "    Opaque types:       4\n"
        "    Entry points:      12\n"
        "\n"
        "  Total: 1,234 lines (formatted)\n"
        "  C source: out/lib.c\n"
        "  Link with: -lOpenCL -lm\n"
    )


def test_format_generation_summary_omits_optional_lines() -> None:
    report = cli.format_generation_summary(
        _summary(formatted=False, c_libs=(), c_file=None, backend=Backend.C)
    )

    assert "(not formatted)" in report
    assert "C source" not in report
    assert "Link with" not in report
    assert report.endswith("lines (not formatted)\n")


def test_build_generation_summary_counts_manifest(
    full_doc: dict, make_manifest, tmp_path: Path
) -> None:
    parsed = make_manifest(full_doc)
    result = GenerationResult(
        output_path=tmp_path / "lib.py",
        emitter="python",
        type_count=7,
        entry_count=4,
        line_count=500,
        formatted=False,
    )

    summary = cli.build_generation_summary(parsed, result)

    assert summary.array_types == 3
    assert summary.opaque_types == 4
    assert summary.entry_points == 4
    assert summary.language == "python"
    assert summary.c_file is None
    assert summary.c_libs == ()


# ===--- Generation ---=== #


def test_main_generates_from_manifest(
    manifest_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    output = tmp_path / "out" / "lib.py"

    cli.main(["--manifest", str(manifest_file), "--output", str(output), "--no-format"])

    out = capsys.readouterr().out
    assert output.exists()
    assert f"Parsing: {manifest_file}" in out
    assert "  Manifest: 1 types, 1 entry points" in out
    assert f"lines to {output}" in out
    assert "  Language:   python" in out
    assert "(not formatted)" in out


def test_run_generate_compiles_source(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    scenario_a_doc: dict,
    capsys: pytest.CaptureFixture[str],
) -> None:
    src = tmp_path / "lib.fut"
    src.write_text("entry sum (xs: []i32) = i32.sum xs\n", encoding="utf-8")
    seen: list[list[str]] = []

    def _run(argv: list[str], **kwargs: object) -> subprocess.CompletedProcess:
        seen.append(argv)
        stem = argv[argv.index("-o") + 1]
        Path(stem + ".json").write_text(json.dumps(scenario_a_doc), encoding="utf-8")
        return subprocess.CompletedProcess(argv, 0, "", "")

    monkeypatch.setattr(compiler.subprocess, "run", _run)
    config = cli.GenerateConfig(
        manifest=None,
        source=src,
        backend=Backend.C,
        output=tmp_path / "lib.rs",
        format_output=False,
        entry_points_within_context=False,
        compiler="/opt/futhark",
    )

    result = cli.run_generate(config)

    out = capsys.readouterr().out
    assert seen[0][:2] == ["/opt/futhark", "c"]
    assert result.emitter == "rust"
    assert f"Compiling: {src} (c)" in out
    assert f"  C source: {tmp_path / 'lib.c'}" in out


def test_main_reports_config_error(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--output", "lib.rs"])

    out = capsys.readouterr().out
    assert exc_info.value.code == 1
    assert "Config error [MISSING_INPUT]:" in out
    assert "Hint: Pass --manifest" in out


def test_main_reports_generation_error(
    tmp_path: Path, scenario_a_doc: dict, capsys: pytest.CaptureFixture[str]
) -> None:
    scenario_a_doc["types"]["[]i32"]["kind"] = "tensor"
    path = tmp_path / "lib.json"
    path.write_text(json.dumps(scenario_a_doc), encoding="utf-8")

    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--manifest", str(path), "--output", str(tmp_path / "lib.rs")])

    assert exc_info.value.code == 1
    assert "Error [UNKNOWN_VARIANT]:" in capsys.readouterr().out
    assert not (tmp_path / "lib.rs").exists()


def test_main_reports_os_error(
    tmp_path: Path, manifest_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")

    with pytest.raises(SystemExit) as exc_info:
        cli.main(
            ["--manifest", str(manifest_file), "--output", str(blocker / "lib.rs")]
        )

    assert exc_info.value.code == 1
    assert "Error: " in capsys.readouterr().out
