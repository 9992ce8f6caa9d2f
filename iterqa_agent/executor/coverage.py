import logging
from typing import Iterable, List

from iterqa_agent.data import CoverageSnapshot, ExecutionResult, IterationRecord, TestCaseStats


class CoverageTracker:
    """Computes aspect coverage over the fixed universe ``1..total_aspects``.

    An aspect counts as tested once any result names it, whether that
    result passed or failed. Ids outside the universe are ignored.
    """

    def __init__(self, total_aspects: int = 23):
        if total_aspects < 0:
            raise ValueError("total_aspects must be >= 0")
        self.total_aspects = total_aspects

    def analyze(self, results: Iterable[ExecutionResult]) -> CoverageSnapshot:
        results = list(results)
        universe = range(1, self.total_aspects + 1)
        attempted = {r.aspect_id for r in results if r.aspect_id is not None}
        tested = tuple(a for a in universe if a in attempted)
        untested = tuple(a for a in universe if a not in attempted)

        dropped = attempted.difference(universe)
        if dropped:
            logging.debug(f"Ignoring aspect ids outside 1..{self.total_aspects}: {sorted(dropped)}")

        percentage = round(len(tested) / self.total_aspects * 100, 2) if self.total_aspects else 0.0
        passed = sum(1 for r in results if r.success)
        total = len(results)
        stats = TestCaseStats(
            total=total,
            passed=passed,
            failed=total - passed,
            pass_rate=round(passed / total * 100, 2) if total else 0.0,
        )
        return CoverageSnapshot(
            total_aspects=self.total_aspects,
            tested_aspect_ids=tested,
            untested_aspect_ids=untested,
            percentage=percentage,
            test_case_stats=stats,
        )

    def analyze_history(self, history: Iterable[IterationRecord]) -> CoverageSnapshot:
        return self.analyze(r for record in history for r in record.execution_results)


def format_summary(coverage: CoverageSnapshot) -> str:
    stats = coverage.test_case_stats
    lines = [
        "Coverage summary",
        f"  Aspects tested:   {coverage.tested}/{coverage.total_aspects} ({coverage.percentage}%)",
        f"  Aspects untested: {len(coverage.untested_aspect_ids)}",
        f"  Test cases:       {stats.total} run, {stats.passed} passed, {stats.failed} failed ({stats.pass_rate}% pass rate)",
    ]
    return "\n".join(lines)


def format_progress(history: List[IterationRecord]) -> str:
    """Cumulative coverage after each iteration, 20 cells for 100%."""
    if not history:
        return "No iterations yet"
    tracker = CoverageTracker(history[0].coverage.total_aspects)
    results: List[ExecutionResult] = []
    lines = ["Coverage progress"]
    for record in history:
        results.extend(record.execution_results)
        coverage = tracker.analyze(results)
        pct = coverage.percentage
        filled = min(20, round(pct / 5))
        bar = "#" * filled + "." * (20 - filled)
        lines.append(f"  Iteration {record.iteration_number}: [{bar}] {pct}% ({coverage.tested} aspects)")
    return "\n".join(lines)
