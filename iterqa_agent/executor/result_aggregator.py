import json
import logging
import os
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from iterqa_agent.data import ReportPaths, ReportRequest
from iterqa_agent.testers.base import BaseReporter

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "..", "static")
HTML_TEMPLATE = "report.html.j2"


def format_duration(ms: int) -> str:
    seconds = ms // 1000
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


class ResultAggregator(BaseReporter):
    """Writes the final run report as JSON, Markdown and HTML."""

    def __init__(self, report_dir: Optional[str] = None, formats: Optional[List[str]] = None):
        if report_dir is None:
            timestamp = os.getenv("ITERQA_TIMESTAMP", "latest")
            report_dir = f"./reports/test_{timestamp}"
        self.report_dir = report_dir
        self.formats = formats or ["json", "markdown", "html"]
        self._env = Environment(loader=FileSystemLoader(TEMPLATE_DIR), autoescape=select_autoescape(["html", "j2"]))

    def aggregate(self, request: ReportRequest) -> Dict[str, Any]:
        """Fold the run into one serializable summary."""
        coverage = request.coverage
        results = request.execution_results
        failures = [r for r in results if not r.success]
        return {
            "session_id": request.session_id,
            "start_time": request.start_time.isoformat(),
            "end_time": request.end_time.isoformat(),
            "total_duration_ms": request.total_duration_ms,
            "duration": format_duration(request.total_duration_ms),
            "iterations": request.iterations,
            "coverage": coverage.model_dump(mode="json"),
            "totals": {
                "executed": len(results),
                "passed": len(results) - len(failures),
                "failed": len(failures),
                "healed": sum(1 for r in results if r.healed),
            },
            "execution_results": [r.model_dump(mode="json") for r in results],
            "history": [
                {
                    "iteration_number": record.iteration_number,
                    "timestamp": record.timestamp.isoformat(),
                    "deeper_test": record.deeper_test,
                    "specific_test": record.specific_test,
                    "target_aspect_id": record.target_aspect_id,
                    "test_cases": len(record.test_cases),
                    "passed": sum(1 for r in record.execution_results if r.success),
                    "failed": sum(1 for r in record.execution_results if not r.success),
                    "coverage": record.coverage.percentage,
                }
                for record in request.history
            ],
        }

    async def save(self, request: ReportRequest) -> ReportPaths:
        logging.info(f"Saving report for session: {request.session_id}")
        os.makedirs(self.report_dir, exist_ok=True)
        data = self.aggregate(request)
        base = f"session-{request.session_id}"
        paths = ReportPaths()
        if "json" in self.formats:
            paths.json_path = self.generate_json_report(data, os.path.join(self.report_dir, f"{base}.json"))
        if "markdown" in self.formats:
            paths.markdown_path = self.generate_markdown_report(data, os.path.join(self.report_dir, f"{base}.md"))
        if "html" in self.formats:
            paths.html_path = self.generate_html_report(data, os.path.join(self.report_dir, f"{base}.html"))
        return paths

    def generate_json_report(self, data: Dict[str, Any], path: str) -> Optional[str]:
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False, default=str)
            logging.debug(f"JSON report generated: {os.path.abspath(path)}")
            return os.path.abspath(path)
        except OSError as e:
            logging.error(f"Failed to generate JSON report: {e}")
            return None

    def generate_markdown_report(self, data: Dict[str, Any], path: str) -> Optional[str]:
        coverage = data["coverage"]
        totals = data["totals"]
        lines = [
            f"# Test report: {data['session_id']}",
            "",
            f"- Duration: {data['duration']}",
            f"- Iterations: {data['iterations']}",
            f"- Aspect coverage: {coverage['percentage']}% "
            f"({len(coverage['tested_aspect_ids'])}/{coverage['total_aspects']})",
            f"- Test cases: {totals['executed']} run, {totals['passed']} passed, "
            f"{totals['failed']} failed, {totals['healed']} healed",
            "",
            "## Results",
            "",
            "| Test case | Aspect | Result | Duration (ms) | Error |",
            "|---|---|---|---|---|",
        ]
        for result in data["execution_results"]:
            status = "passed" if result["success"] else "failed"
            if result.get("healed"):
                status += f" (healed: {result['heal_method']})"
            error = (result.get("error") or {}).get("message", "")
            error = error.replace("|", "\\|").replace("\n", " ")
            aspect = result["aspect_id"] if result["aspect_id"] is not None else "-"
            lines.append(f"| {result['test_case_id']} | {aspect} | {status} | {result['duration_ms']} | {error} |")

        if coverage["untested_aspect_ids"]:
            lines += ["", "## Untested aspects", "", ", ".join(str(a) for a in coverage["untested_aspect_ids"])]

        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
            return os.path.abspath(path)
        except OSError as e:
            logging.error(f"Failed to generate Markdown report: {e}")
            return None

    def generate_html_report(self, data: Dict[str, Any], path: str) -> Optional[str]:
        try:
            html = self._env.get_template(HTML_TEMPLATE).render(report=data)
            with open(path, "w", encoding="utf-8") as f:
                f.write(html)
            return os.path.abspath(path)
        except Exception as e:
            logging.error(f"Failed to generate HTML report: {e}")
            return None
