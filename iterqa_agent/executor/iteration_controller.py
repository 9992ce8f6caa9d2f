import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from iterqa_agent.actions.retry import execute_with_retry
from iterqa_agent.browser.session import MCPSession
from iterqa_agent.data import (
    ControllerConfig,
    CoverageSnapshot,
    ExecutionError,
    ExecutionOutcome,
    ExecutionResult,
    Instruction,
    InstructionType,
    IterationRecord,
    Recommendation,
    RecommendationScope,
    RecommendationType,
    ReportPaths,
    ReportRequest,
    RunSummary,
    TestCase,
    TestPlan,
    generate_session_id,
)
from iterqa_agent.exceptions import SessionInitializationError, ValidationError
from iterqa_agent.executor.coverage import CoverageTracker
from iterqa_agent.executor.recommendation import format_recommendations, generate_recommendations
from iterqa_agent.testers.base import BaseExecutor, BaseGenerator, BaseHealer, BasePlanner, BaseReporter
from iterqa_agent.utils.artifact_storage import ArtifactStorage
from iterqa_agent.utils.console import prompt_user

QUICK_FIX_WAIT_MS = 500
STAGNATION_WINDOW = 3
STAGNATION_THRESHOLD = 1.0

# Errors that end the run instead of becoming a failing result.
FATAL_ERRORS = (ValidationError, SessionInitializationError)


class ControllerState(str, Enum):
    INIT = "init"
    NORMAL_ITERATION = "normal_iteration"
    EVALUATE = "evaluate"
    EARLY_EXIT = "early_exit"
    INTERACTIVE_MENU = "interactive_menu"
    DISPATCH_SPECIFIC = "dispatch_specific"
    DISPATCH_DEEPER = "dispatch_deeper"
    CONTINUE = "continue"
    EXIT = "exit"
    RETRY_MENU = "retry_menu"
    FINAL_REPORT = "final_report"


class MenuAction(str, Enum):
    EXIT = "exit"
    CONTINUE = "continue"
    SPECIFIC = "specific"
    DEEPER = "deeper"
    COMPLETE = "complete"
    INVALID = "invalid"


class Selection(NamedTuple):
    action: MenuAction
    recommendation: Optional[Recommendation] = None


def classify_selection(raw: Optional[str], recommendations: Sequence[Recommendation]) -> Selection:
    """Map one line of menu input to an action.

    ``"0"`` exits, an empty line continues, ``1..len(recommendations)``
    selects by position. Anything else is invalid, surrounding whitespace
    included; only the line terminator is dropped.
    """
    text = (raw or "").rstrip("\r\n")
    if text == "0":
        return Selection(MenuAction.EXIT)
    if text == "":
        return Selection(MenuAction.CONTINUE)
    if not (text.isascii() and text.isdigit()):
        return Selection(MenuAction.INVALID)

    index = int(text)
    if not 1 <= index <= len(recommendations):
        return Selection(MenuAction.INVALID)
    recommendation = recommendations[index - 1]
    if recommendation.type == RecommendationType.DEEPER:
        return Selection(MenuAction.DEEPER, recommendation)
    if recommendation.type == RecommendationType.COMPLETE:
        return Selection(MenuAction.COMPLETE, recommendation)
    return Selection(MenuAction.SPECIFIC, recommendation)


def quick_fix(test_case: TestCase, error: Optional[ExecutionError]) -> TestCase:
    """Copy of ``test_case`` with a short wait inserted before the failing instruction."""
    index = error.instruction_index if error and error.instruction_index is not None else 0
    instructions = list(test_case.instructions)
    index = max(0, min(index, len(instructions)))
    instructions.insert(
        index,
        Instruction(
            type=InstructionType.WAIT,
            duration=QUICK_FIX_WAIT_MS,
            description="Auto-inserted wait for UI stability",
        ),
    )
    return test_case.with_instructions(instructions)


class IterationController:
    """Runs coverage-guided test iterations and the interactive menu that
    follows once the automatic budget is spent.

    Collaborators are passed in; only the planner, generator and executor
    are required. History is append-only and owned by the controller.
    """

    def __init__(
        self,
        config: ControllerConfig,
        planner: BasePlanner,
        generator: BaseGenerator,
        executor: BaseExecutor,
        healer: Optional[BaseHealer] = None,
        reporter: Optional[BaseReporter] = None,
        session: Optional[MCPSession] = None,
        artifact_storage: Optional[ArtifactStorage] = None,
        input_provider: Optional[Callable[[str], Awaitable[str]]] = None,
        output: Optional[Callable[[str], None]] = None,
        snapshot_provider: Optional[Callable[[], Awaitable[Any]]] = None,
        session_id: Optional[str] = None,
    ):
        self.config = config
        self.planner = planner
        self.generator = generator
        self.executor = executor
        self.healer = healer
        self.reporter = reporter
        self.session = session
        self.artifacts = artifact_storage
        self._input = input_provider or prompt_user
        self._output = output or print
        self._snapshot_provider = snapshot_provider
        self.session_id = session_id or (session.session_id if session else None) or generate_session_id()

        self.tracker = CoverageTracker(config.total_aspects)
        self._history: List[IterationRecord] = []
        self._iteration = 0
        self._coverage_trace: List[float] = []
        self._recommendations: List[Recommendation] = []
        self._selected: Optional[Recommendation] = None
        self._start_time: Optional[datetime] = None
        self._end_time: Optional[datetime] = None
        self.state = ControllerState.INIT

        self._handlers = {
            ControllerState.INIT: self._on_init,
            ControllerState.NORMAL_ITERATION: self._on_normal_iteration,
            ControllerState.EVALUATE: self._on_evaluate,
            ControllerState.EARLY_EXIT: self._on_exit,
            ControllerState.INTERACTIVE_MENU: self._on_menu,
            ControllerState.RETRY_MENU: self._on_retry_menu,
            ControllerState.CONTINUE: self._on_continue,
            ControllerState.DISPATCH_SPECIFIC: self._on_dispatch_specific,
            ControllerState.DISPATCH_DEEPER: self._on_dispatch_deeper,
            ControllerState.EXIT: self._on_exit,
        }

    @property
    def history(self) -> Tuple[IterationRecord, ...]:
        return tuple(self._history)

    @property
    def iteration(self) -> int:
        return self._iteration

    def all_results(self) -> List[ExecutionResult]:
        return [r for record in self._history for r in record.execution_results]

    def cumulative_coverage(self) -> CoverageSnapshot:
        return self.tracker.analyze_history(self._history)

    def _next_record_number(self) -> int:
        """Records are numbered in run order; only normal iterations count against the budget."""
        return len(self._history) + 1

    def budget_remaining(self) -> bool:
        return self._iteration < self.config.max_iterations

    def is_stagnant(self) -> bool:
        """True when cumulative coverage moved less than one point over the last three normal iterations."""
        if len(self._coverage_trace) < STAGNATION_WINDOW:
            return False
        window = self._coverage_trace[-STAGNATION_WINDOW:]
        return max(window) - min(window) < STAGNATION_THRESHOLD

    # Run loop
    async def run(self) -> RunSummary:
        self._start_time = datetime.now()
        logging.info(
            f"Starting session {self.session_id} for {self.config.url} "
            f"(max_iterations={self.config.max_iterations}, target={self.config.coverage_target}%)"
        )
        try:
            while self.state != ControllerState.FINAL_REPORT:
                handler = self._handlers[self.state]
                next_state = await handler()
                logging.debug(f"Controller transition {self.state.value} -> {next_state.value}")
                self.state = next_state
        except asyncio.CancelledError:
            logging.warning("Run cancelled, saving partial report")
            await self.generate_final_report()
            raise
        finally:
            await self._close_session()

        report_paths = await self.generate_final_report()
        return self._summary(report_paths)

    async def _on_init(self) -> ControllerState:
        if self.session is not None:
            self.session_id = await self.session.initialize() or self.session_id
            logging.debug(f"Session status: {self.session.status()}")
        await self._open_target_page()
        return ControllerState.NORMAL_ITERATION if self.budget_remaining() else ControllerState.EVALUATE

    async def _open_target_page(self):
        """Load the target URL ahead of the first page snapshot."""
        try:
            await self.executor.open_page(self.config.url)
        except FATAL_ERRORS:
            raise
        except Exception as e:
            logging.warning(f"Could not open {self.config.url} before the first iteration: {e}")

    async def _on_normal_iteration(self) -> ControllerState:
        await self.run_normal_iteration()
        return ControllerState.EVALUATE

    async def _on_evaluate(self) -> ControllerState:
        coverage = self.cumulative_coverage()
        if coverage.percentage >= self.config.coverage_target:
            self._output(f"Target coverage {self.config.coverage_target}% reached ({coverage.percentage}%)")
            return ControllerState.EARLY_EXIT

        can_continue = self.budget_remaining()
        if can_continue and self.config.stop_on_stagnation and self.is_stagnant():
            logging.warning("Coverage is stagnant, treating the iteration budget as spent")
            can_continue = False

        if can_continue:
            return ControllerState.NORMAL_ITERATION
        if self.config.interactive:
            return ControllerState.INTERACTIVE_MENU
        return ControllerState.EARLY_EXIT

    async def _on_menu(self) -> ControllerState:
        if self.config.recommendation_scope == RecommendationScope.LATEST and self._history:
            results = list(self._history[-1].execution_results)
        else:
            results = self.all_results()
        coverage = self.cumulative_coverage()
        self._recommendations = generate_recommendations(results, coverage)
        if not self._recommendations:
            self._output("Nothing left to recommend")
            return ControllerState.EXIT

        self._output(format_recommendations(self._recommendations, coverage))
        raw = await self._input("Select an option: ")
        selection = classify_selection(raw, self._recommendations)

        if selection.action == MenuAction.EXIT:
            self._output("Exiting at user request")
            return ControllerState.EXIT
        if selection.action == MenuAction.CONTINUE:
            return ControllerState.CONTINUE
        if selection.action == MenuAction.COMPLETE:
            outcome = await self.handle_complete_option(selection.recommendation)
            return ControllerState.EXIT if outcome.get("should_exit") else ControllerState.INTERACTIVE_MENU
        if selection.action == MenuAction.DEEPER:
            self._selected = selection.recommendation
            return ControllerState.DISPATCH_DEEPER
        if selection.action == MenuAction.SPECIFIC:
            self._selected = selection.recommendation
            return ControllerState.DISPATCH_SPECIFIC

        self._output(f"Invalid selection: {raw!r}")
        return ControllerState.RETRY_MENU

    async def _on_retry_menu(self) -> ControllerState:
        return ControllerState.INTERACTIVE_MENU

    async def _on_continue(self) -> ControllerState:
        if self.budget_remaining():
            await self.run_normal_iteration()
            return ControllerState.EVALUATE
        self._output("Iteration budget spent; pick a recommendation or enter 0 to exit")
        return ControllerState.INTERACTIVE_MENU

    async def _on_dispatch_specific(self) -> ControllerState:
        await self.dispatch_specific(self._selected)
        self._selected = None
        return ControllerState.INTERACTIVE_MENU

    async def _on_dispatch_deeper(self) -> ControllerState:
        await self.dispatch_deeper()
        self._selected = None
        return ControllerState.INTERACTIVE_MENU

    async def _on_exit(self) -> ControllerState:
        return ControllerState.FINAL_REPORT

    async def handle_complete_option(self, recommendation: Optional[Recommendation] = None) -> Dict[str, bool]:
        self._output("Testing complete: every aspect is covered")
        return {"should_exit": True}

    # Iterations
    async def run_normal_iteration(self) -> IterationRecord:
        self._iteration += 1
        number = self._next_record_number()
        logging.info(f"Iteration {number} started (normal {self._iteration}/{self.config.max_iterations})")

        coverage = self.cumulative_coverage()
        test_cases, generated, results = await self._plan_and_generate(
            number, lambda: self.planner.plan_for_aspect(None, coverage=coverage)
        )
        for case in generated:
            heal = self.config.auto_heal
            results.append(await self._execute_with_healing(case, number, quick_fix_enabled=heal, heal_enabled=heal))

        record = self._append_record(number, test_cases, results)
        cumulative = self.cumulative_coverage()
        self._coverage_trace.append(cumulative.percentage)
        self._output(
            f"Iteration {number}: coverage {cumulative.percentage:.2f}% "
            f"({cumulative.tested}/{cumulative.total_aspects} aspects)"
        )
        return record

    async def dispatch_specific(self, recommendation: Recommendation) -> IterationRecord:
        number = self._next_record_number()
        self._output(f"Running: {recommendation.title}")

        failed_test = None
        if recommendation.type == RecommendationType.FAILED:
            failed_test = {
                "test_case_id": recommendation.test_case_id,
                "aspect_id": recommendation.aspect_id,
                "error": recommendation.error.model_dump() if recommendation.error else None,
            }
        coverage = self.cumulative_coverage()
        test_cases, generated, results = await self._plan_and_generate(
            number,
            lambda: self.planner.plan_for_aspect(recommendation.aspect_id, coverage=coverage, failed_test=failed_test),
            aspect_id=recommendation.aspect_id,
        )
        for case in generated:
            if case.aspect_id is None and recommendation.aspect_id is not None:
                case = case.model_copy(update={"aspect_id": recommendation.aspect_id})
            results.append(
                await self._execute_with_healing(case, number, quick_fix_enabled=True, heal_enabled=self.config.auto_heal)
            )

        record = self._append_record(
            number, test_cases, results, specific_test=True, target_aspect_id=recommendation.aspect_id
        )
        passed = all(r.success for r in results) and bool(results)
        self._output("Selected test passed" if passed else "Selected test failed")
        return record

    async def dispatch_deeper(self) -> IterationRecord:
        number = self._next_record_number()
        self._output("Generating deeper tests")
        test_cases, generated, results = await self._plan_and_generate(
            number, lambda: self.planner.plan_deeper(list(self._history), self.config.url)
        )
        for case in generated:
            outcome = await self._execute(case, number)
            results.append(self._to_result(case, outcome))

        record = self._append_record(number, test_cases, results, deeper_test=True)
        passed = all(r.success for r in results)
        self._output(f"Deeper tests {'passed' if passed else 'failed'} ({len(results)} case(s))")
        return record

    async def _plan_and_generate(
        self, number: int, plan_call: Callable[[], Awaitable[TestPlan]], aspect_id: Optional[int] = None
    ) -> Tuple[List[TestCase], List[TestCase], List[ExecutionResult]]:
        """Plan then generate; a failure in either becomes one failing result."""
        test_cases: List[TestCase] = []
        try:
            plan = await plan_call()
            test_cases = list(plan.test_cases)
            self._save_artifact(
                "planner",
                lambda: self.artifacts.save_planner_output(
                    number, {"test_cases": [c.payload() for c in test_cases], "metadata": plan.metadata}
                ),
            )
        except FATAL_ERRORS:
            raise
        except Exception as e:
            logging.error(f"Iteration {number}: planning failed: {e}")
            return test_cases, [], [self._stage_failure(number, "plan", e, aspect_id)]

        if not test_cases:
            logging.warning(f"Iteration {number}: planner returned no test cases")
            return test_cases, [], []

        try:
            snapshot = await self._snapshot()
            generated = await self.generator.generate(test_cases, snapshot=snapshot, url=self.config.url)
            for case in generated:
                self._save_artifact(
                    "generator",
                    lambda: self.artifacts.save_generator_output(
                        number,
                        case.test_case_id,
                        {"instructions": [i.model_dump(mode="json", exclude_none=True) for i in case.instructions]},
                    ),
                )
        except FATAL_ERRORS:
            raise
        except Exception as e:
            logging.error(f"Iteration {number}: instruction generation failed: {e}")
            return test_cases, [], [self._stage_failure(number, "generate", e, aspect_id)]
        return test_cases, list(generated), []

    async def _execute(self, test_case: TestCase, number: int) -> ExecutionOutcome:
        policy = self.config.execution_retry
        try:
            return await execute_with_retry(
                lambda: self.executor.execute(test_case, iteration=number),
                label=f"execute {test_case.test_case_id}",
                **policy.as_kwargs(),
            )
        except FATAL_ERRORS:
            raise
        except Exception as e:
            logging.error(f"{test_case.test_case_id}: execution failed: {e}")
            return ExecutionOutcome(success=False, error=ExecutionError(message=str(e)))

    async def _execute_with_healing(
        self, test_case: TestCase, number: int, quick_fix_enabled: bool, heal_enabled: bool
    ) -> ExecutionResult:
        outcome = await self._execute(test_case, number)
        if outcome.success or not quick_fix_enabled:
            return self._to_result(test_case, outcome)

        logging.info(f"{test_case.test_case_id}: failed, retrying with a {QUICK_FIX_WAIT_MS}ms wait")
        duration = outcome.duration_ms
        quick = await self._execute(quick_fix(test_case, outcome.error), number)
        duration += quick.duration_ms
        if quick.success:
            self._output(f"  {test_case.test_case_id}: quick fix succeeded ({QUICK_FIX_WAIT_MS}ms wait)")
            return self._to_result(test_case, quick, duration_ms=duration, heal_method="quick_wait")

        if not heal_enabled or self.healer is None:
            return self._to_result(test_case, outcome, duration_ms=duration)

        try:
            heal_result = await self.healer.heal(
                failed_execution={
                    "test_case_id": test_case.test_case_id,
                    "error": outcome.error.model_dump() if outcome.error else None,
                },
                instructions=list(test_case.instructions),
                snapshot=await self._snapshot(),
            )
        except FATAL_ERRORS:
            raise
        except Exception as e:
            logging.error(f"{test_case.test_case_id}: healer failed: {e}")
            return self._to_result(test_case, outcome, duration_ms=duration)

        if heal_result.success and heal_result.fixed_instructions:
            logging.info(f"{test_case.test_case_id}: healer root cause: {heal_result.root_cause}")
            retry = await self._execute(test_case.with_instructions(heal_result.fixed_instructions), number)
            duration += retry.duration_ms
            if retry.success:
                self._output(f"  {test_case.test_case_id}: healed ({heal_result.root_cause})")
                return self._to_result(
                    test_case, retry, duration_ms=duration, heal_method="llm_analysis", root_cause=heal_result.root_cause
                )
        elif heal_result.is_bug:
            self._output(f"  {test_case.test_case_id}: possible application bug: {heal_result.root_cause}")

        return self._to_result(test_case, outcome, duration_ms=duration, root_cause=heal_result.root_cause)

    def _to_result(
        self,
        test_case: TestCase,
        outcome: ExecutionOutcome,
        duration_ms: Optional[int] = None,
        heal_method: Optional[str] = None,
        root_cause: Optional[str] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            test_case_id=test_case.test_case_id,
            aspect_id=test_case.aspect_id,
            success=outcome.success,
            duration_ms=outcome.duration_ms if duration_ms is None else duration_ms,
            error=None if outcome.success else outcome.error,
            test_case=test_case.payload(),
            healed=heal_method is not None,
            heal_method=heal_method,
            root_cause=root_cause,
        )

    @staticmethod
    def _stage_failure(number: int, stage: str, error: Exception, aspect_id: Optional[int]) -> ExecutionResult:
        return ExecutionResult(
            test_case_id=f"iteration-{number}-{stage}",
            aspect_id=aspect_id,
            success=False,
            error=ExecutionError(message=f"{stage} failed: {error}"),
        )

    def _append_record(
        self,
        number: int,
        test_cases: List[TestCase],
        results: List[ExecutionResult],
        deeper_test: bool = False,
        specific_test: bool = False,
        target_aspect_id: Optional[int] = None,
    ) -> IterationRecord:
        record = IterationRecord(
            iteration_number=number,
            test_cases=tuple(test_cases),
            execution_results=tuple(results),
            coverage=self.tracker.analyze(results),
            deeper_test=deeper_test,
            specific_test=specific_test,
            target_aspect_id=target_aspect_id,
        )
        self._history.append(record)
        return record

    async def _snapshot(self) -> Optional[Any]:
        if self._snapshot_provider is None:
            return None
        return await self._snapshot_provider()

    def _save_artifact(self, kind: str, save: Callable[[], Any]):
        if self.artifacts is None:
            return
        try:
            save()
        except OSError as e:
            logging.warning(f"Could not save {kind} output: {e}")

    async def _close_session(self):
        if self.session is None:
            return
        try:
            await self.session.close()
        except Exception as e:
            logging.warning(f"Failed to close session {self.session_id}: {e}")

    # Reporting
    async def generate_final_report(self) -> Optional[ReportPaths]:
        self._end_time = datetime.now()
        if self.reporter is None:
            return None
        request = ReportRequest(
            session_id=self.session_id,
            start_time=self._start_time or self._end_time,
            end_time=self._end_time,
            iterations=self._iteration,
            execution_results=self.all_results(),
            coverage=self.cumulative_coverage(),
            history=list(self._history),
        )
        try:
            return await self.reporter.save(request)
        except Exception as e:
            logging.error(f"Failed to save final report: {e}")
            return None

    def _summary(self, report_paths: Optional[ReportPaths]) -> RunSummary:
        results = self.all_results()
        end = self._end_time or datetime.now()
        return RunSummary(
            session_id=self.session_id,
            iterations=self._iteration,
            coverage=self.cumulative_coverage().percentage,
            passed=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
            healed=sum(1 for r in results if r.healed),
            duration_ms=int((end - self._start_time).total_seconds() * 1000),
            history=list(self._history),
            report_paths=report_paths,
        )
