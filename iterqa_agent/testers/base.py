from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from iterqa_agent.data import (
    CoverageSnapshot,
    DeeperPlan,
    ExecutionOutcome,
    HealResult,
    Instruction,
    IterationRecord,
    ReportPaths,
    ReportRequest,
    TestCase,
    TestPlan,
)


class BasePlanner(ABC):
    """Produces test cases for aspects of the application under test."""

    @abstractmethod
    async def plan_for_aspect(
        self,
        aspect_id: Optional[int] = None,
        coverage: Optional[CoverageSnapshot] = None,
        failed_test: Optional[Dict[str, Any]] = None,
    ) -> TestPlan:
        """Plan cases for ``aspect_id``, or for the next uncovered aspects when it is None."""
        pass

    @abstractmethod
    async def plan_deeper(self, history: List[IterationRecord], url: str) -> DeeperPlan:
        pass


class BaseGenerator(ABC):
    @abstractmethod
    async def generate(
        self, test_cases: List[TestCase], snapshot: Optional[Any] = None, url: Optional[str] = None
    ) -> List[TestCase]:
        """Return the cases with executable instructions attached."""
        pass


class BaseExecutor(ABC):
    @abstractmethod
    async def execute(self, test_case: TestCase, iteration: int = 1) -> ExecutionOutcome:
        pass

    async def open_page(self, url: str) -> Any:
        """Bring the browser to ``url`` before the first iteration. No-op unless overridden."""
        return None


class BaseHealer(ABC):
    @abstractmethod
    async def heal(
        self, failed_execution: Dict[str, Any], instructions: List[Instruction], snapshot: Optional[Any] = None
    ) -> HealResult:
        pass


class BaseReporter(ABC):
    @abstractmethod
    async def save(self, request: ReportRequest) -> ReportPaths:
        pass
