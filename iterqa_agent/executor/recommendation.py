from typing import List, Optional, Sequence

from iterqa_agent.data import (
    CoverageSnapshot,
    ExecutionResult,
    Priority,
    Recommendation,
    RecommendationType,
)

MAX_RECOMMENDATIONS = 5


def _rank_priority(position: int) -> Priority:
    if position < 2:
        return Priority.HIGH
    if position < 4:
        return Priority.MEDIUM
    return Priority.LOW


def _failed_recommendation(failures: Sequence[ExecutionResult]) -> Recommendation:
    latest = failures[-1]
    message = latest.error.message if latest.error else "unknown error"
    if len(failures) == 1:
        title = f"Re-test failed case {latest.test_case_id}"
    else:
        title = f"Re-test failed cases ({len(failures)} failing, latest {latest.test_case_id})"
    if latest.aspect_id is not None:
        title += f" for aspect {latest.aspect_id}"
    return Recommendation(
        type=RecommendationType.FAILED,
        priority=Priority.HIGH,
        title=title,
        reason=f"Last run failed: {message}",
        aspect_id=latest.aspect_id,
        test_case_id=latest.test_case_id,
        error=latest.error,
    )


def generate_recommendations(
    results: Sequence[ExecutionResult], coverage: CoverageSnapshot
) -> List[Recommendation]:
    """Rank the next actions for the interactive menu.

    At most five entries: a single ``failed`` entry first when anything
    failed, then untested aspects in ascending order with a rank-based
    priority (two High, two Medium, then Low). ``deeper`` and ``complete``
    are offered only when nothing is untested and nothing failed.
    """
    failures = [r for r in results if not r.success]
    recommendations: List[Recommendation] = []

    if failures:
        recommendations.append(_failed_recommendation(failures))

    slots = MAX_RECOMMENDATIONS - len(recommendations)
    for position, aspect_id in enumerate(coverage.untested_aspect_ids[:slots]):
        recommendations.append(
            Recommendation(
                type=RecommendationType.UNCOVERED,
                priority=_rank_priority(position),
                title=f"Test aspect {aspect_id}",
                reason=f"Aspect {aspect_id} has not been tested yet",
                aspect_id=aspect_id,
            )
        )

    if not coverage.untested_aspect_ids and not failures:
        recommendations.append(
            Recommendation(
                type=RecommendationType.DEEPER,
                priority=Priority.MEDIUM,
                title="Generate deeper tests (edge cases, combinations)",
                reason="All aspects are covered; explore beyond the planned cases",
                requires_ai=True,
            )
        )
        recommendations.append(
            Recommendation(
                type=RecommendationType.COMPLETE,
                priority=Priority.LOW,
                title="Finish testing",
                reason="All aspects are covered and nothing is failing",
            )
        )

    return recommendations[:MAX_RECOMMENDATIONS]


def format_recommendations(recommendations: Sequence[Recommendation], coverage: Optional[CoverageSnapshot] = None) -> str:
    lines = []
    if coverage is not None:
        lines.append(f"Current coverage: {coverage.percentage}% ({coverage.tested}/{coverage.total_aspects} aspects)")
        lines.append("")
    lines.append("Recommended next steps:")
    for index, rec in enumerate(recommendations, start=1):
        ai = " [AI]" if rec.requires_ai else ""
        lines.append(f"  {index}. [{rec.priority.value}] {rec.title}{ai}")
        lines.append(f"     {rec.reason}")
    lines.append("")
    lines.append("  Enter a number to run it, press Enter to continue, or 0 to exit.")
    return "\n".join(lines)
