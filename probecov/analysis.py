"""analysis functions and utilities for merged coverage reports"""

import json
import os
from collections import Counter
from typing import Any, Dict, List

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from .aggregate import INTERPRETED, NATIVE, CoverageReport

# Constants
DEFAULT_TOP_FILES = 10
DEFAULT_BAR_WIDTH = 20
SOURCE_PREVIEW_WIDTH = 60
SEPARATOR_LENGTH = 50


def print_report_stats(report: CoverageReport, name: str = ""):
    """display basic statistics about a report"""
    if name:
        typer.echo(f"{name}:")

    typer.echo(f"  entries: {len(report)}")
    typer.echo(f"  files: {len(report.files())}")
    typer.echo(f"  covered: {report.percent_covered():.1f}%")

    by_file = report.by_file()
    if by_file:
        typer.echo("  entries by file:")
        for filename, entries in sorted(by_file.items()):
            typer.echo(f"    {os.path.basename(filename)}: {len(entries)}")


def _preview(text: str) -> str:
    text = " ".join(text.split())
    if len(text) > SOURCE_PREVIEW_WIDTH:
        return text[: SOURCE_PREVIEW_WIDTH - 3] + "..."
    return text


def _generate_report_data(
    report: CoverageReport, name: str, file_filter: str = None, top_entries: int = 5
) -> Dict[str, Any]:
    """generate the report data structure shared by rich and json output"""
    if file_filter:
        report = report.filter_by_file(file_filter)

    interpreted = [e for e in report.entries if e.origin == INTERPRETED]
    native = [e for e in report.entries if e.origin == NATIVE]
    lines = report.lines()

    data = {
        "name": name,
        "filter": file_filter,
        "summary": {
            "total_entries": len(interpreted),
            "covered_entries": sum(1 for e in interpreted if e.covered),
            "percent_covered": round(report.percent_covered(), 1),
            "total_executions": sum(e.count for e in interpreted),
            "native_entries": len(native),
            "total_lines": len(lines),
            "covered_lines": sum(1 for line in lines if line.covered),
        },
        "files": [],
        "hot_entries": [],
        "missing_processes": list(report.missing),
        "failed_dumps": [{"path": path, "error": error} for path, error in report.failed],
    }

    for filename, entries in sorted(report.by_file().items()):
        probed = [e for e in entries if e.origin == INTERPRETED]
        covered = sum(1 for e in probed if e.covered)
        data["files"].append(
            {
                "file": filename,
                "entries": len(probed),
                "covered": covered,
                "percentage": round(100.0 * covered / len(probed), 1) if probed else 0.0,
                "executions": sum(e.count for e in probed),
                "native_executions": sum(e.count for e in entries if e.origin == NATIVE)
                + sum(e.native_count for e in probed),
            }
        )

    # sort by count, then by location for tie-breaking
    hottest = sorted(report.entries, key=lambda e: (-e.count, e.location))[:top_entries]
    for entry in hottest:
        if entry.count == 0:
            break
        data["hot_entries"].append(
            {
                "location": entry.location.key,
                "count": entry.count,
                "native_count": entry.native_count,
                "origin": entry.origin,
                "source": _preview(entry.source_text),
            }
        )

    return data


def print_report_rich(
    report: CoverageReport, name: str, file_filter: str = None, top_entries: int = 5
):
    """display a merged report using Rich"""
    console = Console()
    data = _generate_report_data(report, name, file_filter, top_entries)

    filter_text = f" (filtered to: {file_filter})" if file_filter else ""
    title = f"[bold cyan]Coverage Report[/bold cyan]\n[dim]{name}{filter_text}[/dim]"
    console.print(Panel(title, expand=False))
    console.print()

    summary_table = Table(title="[bold]Summary[/bold]", show_header=False, box=None)
    summary_table.add_column("Metric", style="bold")
    summary_table.add_column("Value", style="cyan")

    summary = data["summary"]
    summary_table.add_row(
        "Probed Locations",
        f"{summary['covered_entries']:,} / {summary['total_entries']:,} "
        f"({summary['percent_covered']:.1f}%)",
    )
    summary_table.add_row(
        "Lines Covered", f"{summary['covered_lines']:,} / {summary['total_lines']:,}"
    )
    summary_table.add_row("Total Executions", f"{summary['total_executions']:,}")
    if summary["native_entries"]:
        summary_table.add_row("Native-only Lines", f"{summary['native_entries']:,}")

    console.print(summary_table)
    console.print()

    if data["files"]:
        files_table = Table(title="[bold]Files[/bold]")
        files_table.add_column("File", style="cyan", no_wrap=True)
        files_table.add_column("Covered", justify="right", style="yellow")
        files_table.add_column("Coverage", justify="right", style="green")
        files_table.add_column("Executions", justify="right", style="blue")
        files_table.add_column("Native", justify="right", style="magenta")
        files_table.add_column("Bar", style="blue")

        for item in data["files"]:
            bar = "█" * int(item["percentage"] / 100 * DEFAULT_BAR_WIDTH)
            files_table.add_row(
                item["file"],
                f"{item['covered']:,} / {item['entries']:,}",
                f"{item['percentage']:.1f}%",
                f"{item['executions']:,}",
                f"{item['native_executions']:,}" if item["native_executions"] else "",
                f"[blue]{bar}[/blue]",
            )

        console.print(files_table)
        console.print()

    if data["hot_entries"]:
        console.print(f"[bold]Top {top_entries} Locations by Execution Count[/bold]")
        tree = Tree(f"[cyan]{name}[/cyan]")
        for item in data["hot_entries"]:
            native_info = f" native={item['native_count']}" if item["native_count"] else ""
            tree.add(f"{item['location']} count={item['count']}{native_info}  [dim]{item['source']}[/dim]")
        console.print(tree)
        console.print()

    if data["missing_processes"] or data["failed_dumps"]:
        warn_table = Table(title="[bold yellow]Incomplete Run[/bold yellow]", show_header=False, box=None)
        warn_table.add_column("Kind", style="bold")
        warn_table.add_column("Detail", style="yellow")
        for process_id in data["missing_processes"]:
            warn_table.add_row("no dump", process_id)
        for failed in data["failed_dumps"]:
            warn_table.add_row("unreadable", f"{failed['path']}: {failed['error']}")
        console.print(warn_table)
        console.print()


def print_report_json(
    report: CoverageReport, name: str, file_filter: str = None, top_entries: int = 5
):
    """output report summary and rows as JSON"""
    data = _generate_report_data(report, name, file_filter, top_entries)
    filtered = report.filter_by_file(file_filter) if file_filter else report
    data["rows"] = filtered.to_rows()
    print(json.dumps(data, indent=2))


def print_line_summary(report: CoverageReport, show_uncovered_only: bool = False):
    """print the per line rollup, grouped by file"""
    current = None
    for line in report.lines():
        if show_uncovered_only and line.covered:
            continue
        if line.file != current:
            current = line.file
            typer.echo(f"\n{current}:")
        mark = " " if line.covered else "!"
        native_info = f" (native {line.native_count})" if line.native_count else ""
        typer.echo(f"  {mark} {line.line:>5}: {line.count}{native_info}")


def print_uncovered(report: CoverageReport, file_filter: str = None):
    """list the probed locations that never executed"""
    if file_filter:
        report = report.filter_by_file(file_filter)

    typer.echo("\nuncovered locations:")
    typer.echo("=" * SEPARATOR_LENGTH)

    uncovered = [e for e in report.entries if e.origin == INTERPRETED and not e.covered]
    if not uncovered:
        typer.echo("every probed location executed")
        return

    per_file = Counter(e.location.file for e in uncovered)
    for filename in sorted(per_file):
        typer.echo(f"\n{filename} ({per_file[filename]}):")
        for entry in uncovered:
            if entry.location.file == filename:
                location = entry.location
                typer.echo(
                    f"  {location.start_line}:{location.start_col}-"
                    f"{location.end_line}:{location.end_col}  {_preview(entry.source_text)}"
                )


def summarize_errors(errors: List) -> List[str]:
    """format (name, exception) pairs collected by a session"""
    return [f"{name}: {type(error).__name__}: {error}" for name, error in errors]
