from typing import Any, Dict, List, Optional

import pytest

from iterqa_agent.data import (
    DeeperPlan,
    ExecutionError,
    ExecutionOutcome,
    HealResult,
    Instruction,
    ReportPaths,
    TestCase,
    TestPlan,
)
from iterqa_agent.testers.base import BaseExecutor, BaseGenerator, BaseHealer, BasePlanner, BaseReporter


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        '--backend-url',
        action='store',
        default=None,
        help='Base URL of a live MCP backend for the smoke test (skipped when absent)',
    )


@pytest.fixture
def backend_url(request: pytest.FixtureRequest) -> Optional[str]:
    return request.config.getoption('--backend-url')


def make_case(test_case_id: str, aspect_id: Optional[int] = None, steps: int = 2) -> TestCase:
    instructions = [Instruction.from_dict({"type": "navigate", "url": "https://example.com"})]
    instructions += [
        Instruction.from_dict({"type": "click", "selector": f"e{i}", "description": f"step {i}"})
        for i in range(1, steps)
    ]
    return TestCase(test_case_id=test_case_id, aspect_id=aspect_id, title=test_case_id, instructions=instructions)


class FakePlanner(BasePlanner):
    """Hands out queued plans for normal iterations; aspect-targeted calls get one case."""

    def __init__(self, plans: List[Any] = None, deeper: Optional[DeeperPlan] = None):
        self.plans = list(plans or [])
        self.deeper = deeper or DeeperPlan()
        self.calls: List[Dict[str, Any]] = []
        self.deeper_calls: List[Dict[str, Any]] = []

    async def plan_for_aspect(self, aspect_id=None, coverage=None, failed_test=None):
        self.calls.append({"aspect_id": aspect_id, "coverage": coverage, "failed_test": failed_test})
        if aspect_id is not None:
            return TestPlan(test_cases=[make_case(f"TC-A{aspect_id}", aspect_id)])
        item = self.plans.pop(0) if self.plans else TestPlan()
        if isinstance(item, BaseException):
            raise item
        return item

    async def plan_deeper(self, history, url):
        self.deeper_calls.append({"history": list(history), "url": url})
        return self.deeper


class PassThroughGenerator(BaseGenerator):
    def __init__(self):
        self.calls = 0

    async def generate(self, test_cases, snapshot=None, url=None):
        self.calls += 1
        return list(test_cases)


class ScriptedExecutor(BaseExecutor):
    """Replays per-case success flags in order; unscripted runs pass."""

    def __init__(self, script: Dict[str, List[bool]] = None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.executed: List[TestCase] = []
        self.opened: List[str] = []

    async def open_page(self, url):
        self.opened.append(url)

    async def execute(self, test_case, iteration=1):
        self.executed.append(test_case)
        queue = self.script.get(test_case.test_case_id)
        success = queue.pop(0) if queue else True
        if success:
            return ExecutionOutcome(success=True, duration_ms=5, executed_instructions=len(test_case.instructions))
        return ExecutionOutcome(
            success=False,
            duration_ms=5,
            error=ExecutionError(message="element not found", instruction_index=1, instruction_type="click"),
            executed_instructions=2,
        )


class FakeHealer(BaseHealer):
    def __init__(self, result: HealResult):
        self.result = result
        self.calls: List[Dict[str, Any]] = []

    async def heal(self, failed_execution, instructions, snapshot=None):
        self.calls.append({"failed_execution": failed_execution, "instructions": instructions})
        return self.result


class RecordingReporter(BaseReporter):
    def __init__(self):
        self.requests = []

    async def save(self, request):
        self.requests.append(request)
        return ReportPaths(json_path="report.json")


class ScriptedInput:
    """Async input provider that replays canned menu answers."""

    def __init__(self, answers: List[str]):
        self.answers = list(answers)
        self.prompts: List[str] = []

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.answers:
            raise AssertionError("menu asked for more input than scripted")
        return self.answers.pop(0)


@pytest.fixture
def output_lines() -> List[str]:
    return []
