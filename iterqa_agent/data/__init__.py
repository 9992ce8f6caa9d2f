from .structures import (
    ControllerConfig,
    CoverageSnapshot,
    DeeperPlan,
    ExecutionError,
    ExecutionOutcome,
    ExecutionResult,
    HealResult,
    Instruction,
    InstructionType,
    IterationRecord,
    Priority,
    Recommendation,
    RecommendationScope,
    RecommendationType,
    ReportPaths,
    ReportRequest,
    RetryPolicy,
    RunSummary,
    TestCase,
    TestCaseStats,
    TestPlan,
    generate_session_id,
)

__all__ = [
    "ControllerConfig",
    "CoverageSnapshot",
    "DeeperPlan",
    "ExecutionError",
    "ExecutionOutcome",
    "ExecutionResult",
    "HealResult",
    "Instruction",
    "InstructionType",
    "IterationRecord",
    "Priority",
    "Recommendation",
    "RecommendationScope",
    "RecommendationType",
    "ReportPaths",
    "ReportRequest",
    "RetryPolicy",
    "RunSummary",
    "TestCase",
    "TestCaseStats",
    "TestPlan",
    "generate_session_id",
]
