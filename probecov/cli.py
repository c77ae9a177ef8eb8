"""command line interface for probecov"""

import logging
import os
import runpy
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.logging import RichHandler

from . import native
from .aggregate import CoverageReport
from .analysis import (
    print_line_summary,
    print_report_json,
    print_report_rich,
    print_report_stats,
    print_uncovered,
    summarize_errors,
)
from .config import DEFAULT_DUMP_DIR, CoverageConfig
from .errors import NativeCoverageError
from .registry import DUMP_SUFFIX, MARKER_SUFFIX
from .session import PROCESS_START_ENV, CoverageSession

CONFIG_FILENAME = "probecov.conf"

app = typer.Typer(
    help="source-level coverage for python programs across processes",
    no_args_is_help=True,
    context_settings=dict(help_option_names=["-h", "--help"]),
    pretty_exceptions_short=True,
    pretty_exceptions_show_locals=False,
    add_completion=False,
)

# global state for verbose option
verbose_enabled = False


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )


@app.callback()
def main_callback(
    verbose: bool = typer.Option(
        False, "-v", "--verbose", help="enable verbose output for all operations"
    ),
):
    """global options for probecov"""
    global verbose_enabled
    verbose_enabled = verbose
    _configure_logging(verbose)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def run(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="script path, or module name with --module"),
    module: bool = typer.Option(False, "--module", "-m", help="run target as a module"),
    include: List[str] = typer.Option(
        [], "--include", "-i", help="module name pattern to instrument (repeatable)"
    ),
    exclude: List[str] = typer.Option(
        [], "--exclude", "-x", help="module name pattern to skip (repeatable)"
    ),
    exclude_definition: List[str] = typer.Option(
        [], "--exclude-definition", help="qualified definition pattern to skip"
    ),
    dump_dir: Path = typer.Option(
        Path(DEFAULT_DUMP_DIR), "--dump-dir", "-d", help="directory for per-process dumps"
    ),
    parallel: int = typer.Option(1, "--parallel", "-p", help="worker count for run_parallel"),
    native_paths: List[Path] = typer.Option(
        [], "--native", "-n", help="gcov / lcov file to merge into the report"
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="JSON configuration file"
    ),
):
    """run a python program under coverage"""
    try:
        config = CoverageConfig.from_file(config_file) if config_file else CoverageConfig()
        config.include.extend(include)
        config.exclude.extend(exclude)
        config.exclude_definitions.extend(exclude_definition)
        config.dump_dir = str(dump_dir)
        config.parallel = parallel
        config.__post_init__()
        if native_paths:
            config.native = True
            config.native_paths.extend(str(p) for p in native_paths)
    except (OSError, ValueError, TypeError) as e:
        typer.echo(f"invalid configuration: {e}", err=True)
        raise typer.Exit(1)

    if not config.include:
        typer.echo("no --include pattern given, nothing will be instrumented", err=True)

    # spawned interpreters pick the configuration up through process_startup()
    dump_dir.mkdir(parents=True, exist_ok=True)
    config_path = dump_dir / CONFIG_FILENAME
    config.to_file(config_path)
    saved_start = os.environ.get(PROCESS_START_ENV)
    os.environ[PROCESS_START_ENV] = str(config_path.resolve())

    session = CoverageSession(config)
    exit_code = 0
    saved_argv, saved_path = sys.argv, list(sys.path)
    sys.argv = [target] + list(ctx.args)
    # same search path the interpreter would set up for `python script` / `python -m`
    sys.path.insert(0, os.getcwd() if module else str(Path(target).resolve().parent))
    try:
        session.start()
        if module:
            runpy.run_module(target, run_name="__main__", alter_sys=True)
        else:
            runpy.run_path(target, run_name="__main__")
    except SystemExit as e:
        exit_code = e.code if isinstance(e.code, int) else (0 if e.code is None else 1)
    finally:
        sys.argv = saved_argv
        sys.path[:] = saved_path
        if saved_start is None:
            os.environ.pop(PROCESS_START_ENV, None)
        else:
            os.environ[PROCESS_START_ENV] = saved_start
        session.stop()

    if verbose_enabled:
        typer.echo(f"instrumented {session.instrumented} definitions")
        for line in summarize_errors(session.errors):
            typer.echo(f"  skipped {line}", err=True)

    typer.echo(f"wrote dumps to {dump_dir}")
    if exit_code:
        raise typer.Exit(exit_code)


def _load_report(dump_dir: Path, native_paths: List[Path]) -> CoverageReport:
    try:
        records = native.read_many(str(p) for p in native_paths)
    except (OSError, NativeCoverageError) as e:
        typer.echo(f"error loading native coverage: {e}", err=True)
        raise typer.Exit(1)
    if not dump_dir.is_dir():
        typer.echo(f"no dump directory at {dump_dir}", err=True)
        raise typer.Exit(1)
    return CoverageReport.from_directory(dump_dir, records)


@app.command()
def report(
    dump_dir: Path = typer.Argument(Path(DEFAULT_DUMP_DIR), help="directory of dumps"),
    native_paths: List[Path] = typer.Option(
        [], "--native", "-n", help="gcov / lcov file to merge (repeatable)"
    ),
    file_filter: Optional[str] = typer.Option(
        None, "--file", "-f", help="filter to files whose path contains this"
    ),
    json_output: bool = typer.Option(False, "--json", help="output as JSON"),
    lines: bool = typer.Option(False, "--lines", "-l", help="print the per line rollup"),
    uncovered: bool = typer.Option(
        False, "--uncovered", "-u", help="list probed locations that never ran"
    ),
    top: int = typer.Option(5, "--top", "-t", help="number of hottest locations to show"),
    strict: bool = typer.Option(
        False, "--strict", help="fail if a process left no readable dump"
    ),
):
    """merge dumps (and native coverage) and display the report"""
    merged = _load_report(dump_dir, native_paths)

    if json_output:
        print_report_json(merged, str(dump_dir), file_filter, top)
    elif lines:
        if file_filter:
            merged = merged.filter_by_file(file_filter)
        print_line_summary(merged, show_uncovered_only=uncovered)
    elif uncovered:
        print_uncovered(merged, file_filter)
    else:
        print_report_rich(merged, str(dump_dir), file_filter, top)

    if strict and not merged.complete:
        typer.echo(
            f"incomplete run: {len(merged.missing)} missing, {len(merged.failed)} unreadable",
            err=True,
        )
        raise typer.Exit(2)


@app.command()
def stats(
    dump_dirs: List[Path] = typer.Argument(..., help="dump directories to summarize"),
):
    """display summary statistics for dump directories"""
    for dump_dir in dump_dirs:
        merged = _load_report(dump_dir, [])
        print_report_stats(merged, str(dump_dir))
        typer.echo()


@app.command()
def clean(
    dump_dir: Path = typer.Argument(Path(DEFAULT_DUMP_DIR), help="directory of dumps"),
):
    """remove dumps and start markers"""
    if not dump_dir.is_dir():
        typer.echo(f"nothing to clean at {dump_dir}")
        return
    removed = 0
    for pattern in (f"*{DUMP_SUFFIX}", f"*{MARKER_SUFFIX}"):
        for path in dump_dir.glob(pattern):
            path.unlink()
            removed += 1
    typer.echo(f"removed {removed} files from {dump_dir}")


def main():
    """entry point for console script"""
    app()


if __name__ == "__main__":
    main()
