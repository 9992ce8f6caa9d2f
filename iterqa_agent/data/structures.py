import uuid
from datetime import datetime
from enum import Enum
from time import time_ns
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from iterqa_agent.exceptions import ValidationError


class InstructionType(str, Enum):
    NAVIGATE = "navigate"
    CLICK = "click"
    FILL = "fill"
    SELECT_OPTION = "select_option"
    SCREENSHOT = "screenshot"
    EVALUATE = "evaluate"
    WAIT = "wait"
    WAIT_FOR = "wait_for"
    PRESS_KEY = "press_key"
    VERIFY_ELEMENT_VISIBLE = "verify_element_visible"
    VERIFY_TEXT_VISIBLE = "verify_text_visible"


# Fields that must be present (any one of each tuple) for every instruction kind.
REQUIRED_FIELDS: Dict[InstructionType, List[Tuple[str, ...]]] = {
    InstructionType.NAVIGATE: [("url",)],
    InstructionType.CLICK: [("selector",)],
    InstructionType.FILL: [("selector",), ("value",)],
    InstructionType.SELECT_OPTION: [("selector",), ("values", "value")],
    InstructionType.SCREENSHOT: [],
    InstructionType.EVALUATE: [("script",)],
    InstructionType.WAIT: [],
    InstructionType.WAIT_FOR: [],
    InstructionType.PRESS_KEY: [("key",)],
    InstructionType.VERIFY_ELEMENT_VISIBLE: [],
    InstructionType.VERIFY_TEXT_VISIBLE: [("text", "value")],
}


class Instruction(BaseModel):
    """One browser action, tagged by ``type``."""

    model_config = ConfigDict(frozen=True)

    type: InstructionType
    description: Optional[str] = None
    url: Optional[str] = None
    selector: Optional[str] = None
    value: Optional[str] = None
    values: Optional[List[str]] = None
    text: Optional[str] = None
    script: Optional[str] = None
    key: Optional[str] = None
    role: Optional[str] = None
    accessible_name: Optional[str] = None
    duration: Optional[int] = None  # milliseconds
    time: Optional[float] = None  # seconds
    path: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Instruction":
        """Build an instruction, rejecting unknown kinds and missing fields.

        Accepts the aliases the generators emit (``ref`` for ``selector``,
        ``accessibleName`` for ``accessible_name``).
        """
        if not isinstance(raw, dict):
            raise ValidationError(f"Instruction must be a mapping, got {type(raw).__name__}")
        raw_type = raw.get("type")
        if not raw_type:
            raise ValidationError("Instruction type is required")
        try:
            instruction_type = InstructionType(raw_type)
        except ValueError:
            raise ValidationError(f"Unsupported instruction type: {raw_type}") from None

        data = {k: v for k, v in raw.items() if k in cls.model_fields and v is not None}
        data["type"] = instruction_type
        if "selector" not in data and raw.get("ref"):
            data["selector"] = raw["ref"]
        if "accessible_name" not in data and raw.get("accessibleName"):
            data["accessible_name"] = raw["accessibleName"]
        if "value" in data and not isinstance(data["value"], str):
            data["value"] = str(data["value"])

        for alternatives in REQUIRED_FIELDS[instruction_type]:
            if not any(data.get(name) not in (None, "", []) for name in alternatives):
                raise ValidationError(
                    f"Instruction '{instruction_type.value}' requires {' or '.join(alternatives)}"
                )
        return cls(**data)

    @property
    def label(self) -> str:
        return self.description or self.type.value


class TestCase(BaseModel):
    __test__ = False

    test_case_id: str
    aspect_id: Optional[int] = None
    title: str = ""
    steps: List[str] = Field(default_factory=list)
    expected_results: List[str] = Field(default_factory=list)
    instructions: List[Instruction] = Field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TestCase":
        if not isinstance(raw, dict):
            raise ValidationError(f"Test case must be a mapping, got {type(raw).__name__}")
        test_case_id = raw.get("test_case_id") or raw.get("id")
        if not test_case_id:
            raise ValidationError("test_case_id is required")
        aspect_id = raw.get("aspect_id", raw.get("aspect_no"))
        instructions = [
            item if isinstance(item, Instruction) else Instruction.from_dict(item)
            for item in raw.get("instructions") or []
        ]
        return cls(
            test_case_id=str(test_case_id),
            aspect_id=int(aspect_id) if aspect_id is not None else None,
            title=raw.get("title") or raw.get("name") or "",
            steps=list(raw.get("steps") or []),
            expected_results=list(raw.get("expected_results") or []),
            instructions=instructions,
        )

    def with_instructions(self, instructions: List[Instruction]) -> "TestCase":
        return self.model_copy(update={"instructions": list(instructions)})

    def payload(self) -> Dict[str, Any]:
        """The planner-facing content of the case, without instructions."""
        return self.model_dump(mode="json", exclude={"instructions"})


class ExecutionError(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    instruction_index: Optional[int] = None
    instruction_type: Optional[str] = None


class ExecutionOutcome(BaseModel):
    """What the execution collaborator reports for one test case."""

    model_config = ConfigDict(frozen=True)

    success: bool
    duration_ms: int = 0
    error: Optional[ExecutionError] = None
    executed_instructions: int = 0


class ExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    test_case_id: str
    aspect_id: Optional[int] = None
    success: bool
    duration_ms: int = 0
    error: Optional[ExecutionError] = None
    test_case: Optional[Dict[str, Any]] = None
    healed: bool = False
    heal_method: Optional[str] = None
    root_cause: Optional[str] = None


class TestCaseStats(BaseModel):
    __test__ = False
    model_config = ConfigDict(frozen=True)

    total: int = 0
    passed: int = 0
    failed: int = 0
    pass_rate: float = 0.0


class CoverageSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_aspects: int
    tested_aspect_ids: Tuple[int, ...] = ()
    untested_aspect_ids: Tuple[int, ...] = ()
    percentage: float = 0.0
    test_case_stats: TestCaseStats = Field(default_factory=TestCaseStats)

    @property
    def tested(self) -> int:
        return len(self.tested_aspect_ids)


class IterationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    iteration_number: int
    test_cases: Tuple[TestCase, ...] = ()
    execution_results: Tuple[ExecutionResult, ...] = ()
    coverage: CoverageSnapshot
    timestamp: datetime = Field(default_factory=datetime.now)
    deeper_test: bool = False
    specific_test: bool = False
    target_aspect_id: Optional[int] = None


class RecommendationType(str, Enum):
    FAILED = "failed"
    UNCOVERED = "uncovered"
    DEEPER = "deeper"
    COMPLETE = "complete"


class Priority(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class Recommendation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: RecommendationType
    priority: Priority
    title: str
    reason: str
    aspect_id: Optional[int] = None
    requires_ai: bool = False
    test_case_id: Optional[str] = None
    error: Optional[ExecutionError] = None


class TestPlan(BaseModel):
    __test__ = False

    test_cases: List[TestCase] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DeeperPlan(TestPlan):
    pass


class HealResult(BaseModel):
    success: bool
    fixed_instructions: Optional[List[Instruction]] = None
    root_cause: Optional[str] = None
    is_bug: bool = False


class ReportRequest(BaseModel):
    session_id: str
    start_time: datetime
    end_time: datetime
    iterations: int
    execution_results: List[ExecutionResult] = Field(default_factory=list)
    coverage: CoverageSnapshot
    history: List[IterationRecord] = Field(default_factory=list)

    @property
    def total_duration_ms(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() * 1000)


class ReportPaths(BaseModel):
    json_path: Optional[str] = None
    markdown_path: Optional[str] = None
    html_path: Optional[str] = None


class RunSummary(BaseModel):
    session_id: str
    iterations: int
    coverage: float
    passed: int
    failed: int
    healed: int
    duration_ms: int
    history: List[IterationRecord] = Field(default_factory=list)
    report_paths: Optional[ReportPaths] = None


class RecommendationScope(str, Enum):
    CUMULATIVE = "cumulative"
    LATEST = "latest"


class RetryPolicy(BaseModel):
    """Retry parameters for one call site. Delays are in seconds."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=0, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_retry_delay: float = Field(default=30.0, ge=0)

    def as_kwargs(self) -> Dict[str, Any]:
        return self.model_dump()


class ControllerConfig(BaseModel):
    url: str = "https://example.com"
    max_iterations: int = Field(default=10, ge=0)
    coverage_target: float = 80.0
    interactive: bool = False
    auto_heal: bool = True
    total_aspects: int = Field(default=23, ge=0)
    recommendation_scope: RecommendationScope = RecommendationScope.CUMULATIVE
    stop_on_stagnation: bool = False
    execution_retry: RetryPolicy = Field(default_factory=RetryPolicy)


def generate_session_id() -> str:
    """Process-unique id built from the nanosecond clock and a random suffix."""
    return f"session_{time_ns()}_{uuid.uuid4().hex[:9]}"
