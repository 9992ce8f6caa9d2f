import json
import os
from datetime import datetime, timedelta

import pytest

from iterqa_agent.data import ExecutionError, ExecutionResult, IterationRecord, ReportRequest
from iterqa_agent.executor.coverage import CoverageTracker
from iterqa_agent.executor.result_aggregator import ResultAggregator, format_duration


def build_request():
    results = [
        ExecutionResult(test_case_id="TC-1", aspect_id=1, success=True, duration_ms=1200),
        ExecutionResult(
            test_case_id="TC-2", aspect_id=2, success=False, duration_ms=800,
            error=ExecutionError(message="<b>Ref e3</b> | not found", instruction_index=1),
        ),
        ExecutionResult(test_case_id="TC-3", aspect_id=3, success=True, healed=True, heal_method="quick_wait"),
    ]
    coverage = CoverageTracker(5).analyze(results)
    start = datetime(2026, 1, 1, 12, 0, 0)
    return ReportRequest(
        session_id="session_report",
        start_time=start,
        end_time=start + timedelta(minutes=2, seconds=5),
        iterations=1,
        execution_results=results,
        coverage=coverage,
        history=[IterationRecord(iteration_number=1, execution_results=tuple(results), coverage=coverage)],
    )


@pytest.mark.parametrize("ms,expected", [(0, "0s"), (59_999, "59s"), (125_000, "2m 5s"), (3_723_000, "1h 2m 3s")])
def test_format_duration(ms, expected):
    assert format_duration(ms) == expected


class TestResultAggregator:
    def test_aggregate_totals(self):
        data = ResultAggregator(report_dir="unused").aggregate(build_request())
        assert data["totals"] == {"executed": 3, "passed": 2, "failed": 1, "healed": 1}
        assert data["total_duration_ms"] == 125_000
        assert data["duration"] == "2m 5s"
        assert data["coverage"]["percentage"] == 60.0
        assert data["history"][0]["failed"] == 1

    @pytest.mark.asyncio
    async def test_save_all_formats(self, tmp_path):
        paths = await ResultAggregator(report_dir=str(tmp_path)).save(build_request())

        assert os.path.basename(paths.json_path) == "session-session_report.json"
        with open(paths.json_path, encoding="utf-8") as f:
            assert json.load(f)["session_id"] == "session_report"

        with open(paths.markdown_path, encoding="utf-8") as f:
            markdown = f.read()
        assert "| TC-3 | 3 | passed (healed: quick_wait) |" in markdown
        assert "\\| not found" in markdown
        assert "4, 5" in markdown

        with open(paths.html_path, encoding="utf-8") as f:
            html = f.read()
        assert "Test report session_report" in html
        assert "&lt;b&gt;Ref e3&lt;/b&gt;" in html

    @pytest.mark.asyncio
    async def test_selected_formats_only(self, tmp_path):
        paths = await ResultAggregator(report_dir=str(tmp_path), formats=["json"]).save(build_request())
        assert paths.json_path
        assert paths.markdown_path is None
        assert paths.html_path is None
        assert os.listdir(tmp_path) == ["session-session_report.json"]
