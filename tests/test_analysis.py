"""tests for analysis functionality"""

import json

from probecov.aggregate import CoverageReport, merge
from probecov.analysis import (
    _generate_report_data,
    print_line_summary,
    print_report_json,
    print_report_rich,
    print_report_stats,
    print_uncovered,
    summarize_errors,
)
from probecov.errors import SourceUnavailable
from probecov.locations import SourceLocation
from probecov.native import NativeCoverageRecord
from probecov.registry import ProbeRegistry


class TestAnalysisFunctions:
    """test analysis functions"""

    def create_test_report(self, missing=None):
        """helper to create a report over two files"""
        registry = ProbeRegistry("p1")
        counts = {
            SourceLocation("app/core.py", 2, 5, 2, 16): 7,
            SourceLocation("app/core.py", 4, 5, 4, 20): 0,
            SourceLocation("app/io.py", 3, 9, 3, 30): 2,
        }
        for location, count in counts.items():
            registry.register(location)
            for _ in range(count):
                registry.count(location.key)
        native = [NativeCoverageRecord("lib/fast.c", 12, 5)]
        return CoverageReport(merge([registry], native), missing=missing)

    def test_generate_report_data(self):
        """test the shared data structure"""
        data = _generate_report_data(self.create_test_report(), "run")
        summary = data["summary"]
        assert summary["total_entries"] == 3
        assert summary["covered_entries"] == 2
        assert summary["total_executions"] == 9
        assert summary["native_entries"] == 1
        assert summary["percent_covered"] == 66.7
        files = {f["file"]: f for f in data["files"]}
        assert files["app/core.py"]["covered"] == 1
        assert files["app/core.py"]["percentage"] == 50.0
        assert files["lib/fast.c"]["native_executions"] == 5
        assert data["hot_entries"][0]["count"] == 7

    def test_filtered_data(self):
        """test file filters restrict every section"""
        data = _generate_report_data(self.create_test_report(), "run", file_filter="io")
        assert [f["file"] for f in data["files"]] == ["app/io.py"]
        assert data["summary"]["total_entries"] == 1

    def test_hot_entries_skip_unexecuted(self):
        """test unexecuted locations are never listed as hot"""
        data = _generate_report_data(self.create_test_report(), "run", top_entries=10)
        assert all(item["count"] > 0 for item in data["hot_entries"])
        assert len(data["hot_entries"]) == 3

    def test_print_report_json(self, capsys):
        """test JSON output"""
        print_report_json(self.create_test_report(missing=["host.2.x"]), "run")
        data = json.loads(capsys.readouterr().out)
        assert data["missing_processes"] == ["host.2.x"]
        assert len(data["rows"]) == 4

    def test_print_report_rich(self, capsys):
        """test rich output renders"""
        print_report_rich(self.create_test_report(missing=["host.2.x"]), "run")
        out = capsys.readouterr().out
        assert "Coverage Report" in out
        assert "host.2.x" in out

    def test_print_report_stats(self, capsys):
        """test plain statistics"""
        print_report_stats(self.create_test_report(), "run")
        out = capsys.readouterr().out
        assert "run:" in out
        assert "entries: 4" in out
        assert "core.py: 2" in out

    def test_print_line_summary(self, capsys):
        """test per line output"""
        print_line_summary(self.create_test_report(), show_uncovered_only=True)
        out = capsys.readouterr().out
        assert "app/core.py:" in out
        assert "4: 0" in out
        assert "2: 7" not in out

    def test_print_uncovered(self, capsys):
        """test listing of unexecuted locations"""
        print_uncovered(self.create_test_report())
        out = capsys.readouterr().out
        assert "app/core.py (1):" in out
        assert "4:5-4:20" in out

    def test_print_uncovered_none(self, capsys):
        """test fully covered reports"""
        print_uncovered(CoverageReport([]))
        assert "every probed location executed" in capsys.readouterr().out

    def test_summarize_errors(self):
        """test formatting of session errors"""
        lines = summarize_errors([("app.core.ghost", SourceUnavailable("no source"))])
        assert lines == ["app.core.ghost: SourceUnavailable: no source"]
