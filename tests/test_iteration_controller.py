import asyncio

import pytest
from conftest import (
    FakeHealer,
    FakePlanner,
    PassThroughGenerator,
    RecordingReporter,
    ScriptedExecutor,
    ScriptedInput,
    make_case,
)

from iterqa_agent.data import (
    ControllerConfig,
    DeeperPlan,
    ExecutionError,
    HealResult,
    Instruction,
    InstructionType,
    Priority,
    Recommendation,
    RecommendationType,
    TestPlan,
)
from iterqa_agent.exceptions import SessionInitializationError, ValidationError
from iterqa_agent.executor.iteration_controller import (
    ControllerState,
    IterationController,
    MenuAction,
    classify_selection,
    quick_fix,
)
from iterqa_agent.executor.recommendation import generate_recommendations
from iterqa_agent.utils.artifact_storage import ArtifactStorage


def plan(*cases):
    return TestPlan(test_cases=list(cases))


def build(config, planner, executor=None, healer=None, answers=None, output=None, **kwargs):
    return IterationController(
        config,
        planner=planner,
        generator=PassThroughGenerator(),
        executor=executor or ScriptedExecutor(),
        healer=healer,
        reporter=kwargs.pop("reporter", RecordingReporter()),
        input_provider=ScriptedInput(answers or []),
        output=(output.append if output is not None else lambda line: None),
        **kwargs,
    )


class TestClassifySelection:
    recs = [
        Recommendation(type=RecommendationType.FAILED, priority=Priority.HIGH, title="f", reason="r", aspect_id=4),
        Recommendation(type=RecommendationType.UNCOVERED, priority=Priority.HIGH, title="u", reason="r", aspect_id=5),
        Recommendation(type=RecommendationType.DEEPER, priority=Priority.MEDIUM, title="d", reason="r"),
        Recommendation(type=RecommendationType.COMPLETE, priority=Priority.LOW, title="c", reason="r"),
    ]

    def test_zero_exits(self):
        assert classify_selection("0", self.recs).action == MenuAction.EXIT

    def test_empty_continues(self):
        assert classify_selection("", self.recs).action == MenuAction.CONTINUE
        assert classify_selection("\n", self.recs).action == MenuAction.CONTINUE

    def test_index_dispatches_by_type(self):
        assert classify_selection("1", self.recs) == (MenuAction.SPECIFIC, self.recs[0])
        assert classify_selection("2", self.recs).action == MenuAction.SPECIFIC
        assert classify_selection("3", self.recs).action == MenuAction.DEEPER
        assert classify_selection("4", self.recs).action == MenuAction.COMPLETE

    @pytest.mark.parametrize("raw", ["5", "-1", "abc", "1.5", "1 2", "²", "   ", " 1 ", "0 ", "\t"])
    def test_anything_else_is_invalid(self, raw):
        assert classify_selection(raw, self.recs).action == MenuAction.INVALID


class TestQuickFix:
    def test_wait_inserted_before_failing_instruction(self):
        case = make_case("TC-1", 1, steps=3)
        fixed = quick_fix(case, ExecutionError(message="x", instruction_index=2))
        assert len(fixed.instructions) == 4
        assert fixed.instructions[2].type == InstructionType.WAIT
        assert fixed.instructions[2].duration == 500
        assert fixed.instructions[3] == case.instructions[2]
        assert len(case.instructions) == 3

    def test_missing_index_inserts_at_start(self):
        fixed = quick_fix(make_case("TC-1", 1), None)
        assert fixed.instructions[0].type == InstructionType.WAIT


class TestNormalIterations:
    @pytest.mark.asyncio
    async def test_early_exit_bypasses_menu(self):
        config = ControllerConfig(max_iterations=5, coverage_target=50.0, total_aspects=4, interactive=True)
        planner = FakePlanner([plan(make_case("TC-1", 1), make_case("TC-2", 2))])
        controller = build(config, planner, answers=[])

        summary = await controller.run()

        assert summary.iterations == 1
        assert summary.coverage == 50.0
        assert controller._input.prompts == []
        assert controller.state == ControllerState.FINAL_REPORT

    @pytest.mark.asyncio
    async def test_budget_exhausted_without_interactive_exits(self):
        config = ControllerConfig(max_iterations=2, total_aspects=10, interactive=False)
        planner = FakePlanner([plan(make_case("TC-1", 1)), plan(make_case("TC-2", 2)), plan(make_case("TC-3", 3))])
        controller = build(config, planner)

        summary = await controller.run()

        assert summary.iterations == 2
        assert summary.coverage == 20.0
        assert [r.iteration_number for r in controller.history] == [1, 2]
        assert len(planner.plans) == 1

    @pytest.mark.asyncio
    async def test_end_to_end_ten_aspects(self):
        config = ControllerConfig(max_iterations=2, total_aspects=10, interactive=True, auto_heal=False)
        planner = FakePlanner([
            plan(make_case("TC-1", 1), make_case("TC-2", 2)),
            plan(make_case("TC-3", 3), make_case("TC-4", 4)),
        ])
        executor = ScriptedExecutor({"TC-4": [False]})
        output = []
        controller = build(config, planner, executor=executor, answers=["0"], output=output)

        summary = await controller.run()

        coverage = controller.cumulative_coverage()
        assert coverage.tested == 4
        assert coverage.percentage == 40.0
        assert coverage.untested_aspect_ids == (5, 6, 7, 8, 9, 10)
        recs = generate_recommendations(controller.all_results(), coverage)
        assert recs[0].type == RecommendationType.FAILED
        assert recs[0].test_case_id == "TC-4"
        assert summary.passed == 3 and summary.failed == 1
        assert any("Recommended next steps" in line for line in output)

    @pytest.mark.asyncio
    async def test_plan_failure_becomes_failing_result(self):
        config = ControllerConfig(max_iterations=1, total_aspects=5)
        planner = FakePlanner([RuntimeError("planner offline")])
        controller = build(config, planner)

        summary = await controller.run()

        results = controller.all_results()
        assert len(results) == 1
        assert results[0].test_case_id == "iteration-1-plan"
        assert not results[0].success
        assert "planner offline" in results[0].error.message
        assert summary.failed == 1

    @pytest.mark.asyncio
    async def test_validation_error_aborts_run(self):
        config = ControllerConfig(max_iterations=1, total_aspects=5)
        planner = FakePlanner([ValidationError("test_case_id is required")])
        controller = build(config, planner)

        with pytest.raises(ValidationError):
            await controller.run()

    @pytest.mark.asyncio
    async def test_stagnation_stops_early_when_enabled(self):
        config = ControllerConfig(max_iterations=10, total_aspects=5, stop_on_stagnation=True)
        controller = build(config, FakePlanner([]))

        summary = await controller.run()

        assert summary.iterations == 3

    @pytest.mark.asyncio
    async def test_records_carry_iteration_coverage(self):
        config = ControllerConfig(max_iterations=2, total_aspects=10)
        planner = FakePlanner([plan(make_case("TC-1", 1)), plan(make_case("TC-2", 2))])
        controller = build(config, planner)

        await controller.run()

        assert [r.coverage.tested_aspect_ids for r in controller.history] == [(1,), (2,)]
        assert controller.cumulative_coverage().tested_aspect_ids == (1, 2)

    @pytest.mark.asyncio
    async def test_record_numbers_stay_unique_across_menu_dispatches(self, tmp_path):
        config = ControllerConfig(max_iterations=5, total_aspects=5, interactive=True, stop_on_stagnation=True)
        artifacts = ArtifactStorage(session_id="numbering", output_dir=str(tmp_path))
        controller = build(config, FakePlanner([]), answers=["1", "", "0"], artifact_storage=artifacts)

        summary = await controller.run()

        numbers = [r.iteration_number for r in controller.history]
        assert numbers == [1, 2, 3, 4, 5, 6]
        assert controller.history[3].specific_test
        assert summary.iterations == 5
        assert len(set(artifacts.planner_outputs)) == 6


class TestHealing:
    @pytest.mark.asyncio
    async def test_quick_fix_heals_normal_iteration(self):
        config = ControllerConfig(max_iterations=1, total_aspects=5, auto_heal=True)
        executor = ScriptedExecutor({"TC-1": [False, True]})
        controller = build(config, FakePlanner([plan(make_case("TC-1", 1, steps=3))]), executor=executor)

        await controller.run()

        result = controller.all_results()[0]
        assert result.success and result.healed
        assert result.heal_method == "quick_wait"
        assert result.error is None
        retried = executor.executed[1]
        assert retried.instructions[1].type == InstructionType.WAIT
        assert retried.instructions[1].duration == 500

    @pytest.mark.asyncio
    async def test_healer_runs_after_quick_fix_fails(self):
        config = ControllerConfig(max_iterations=1, total_aspects=5, auto_heal=True)
        executor = ScriptedExecutor({"TC-1": [False, False, True]})
        fixed = [Instruction.from_dict({"type": "navigate", "url": "https://example.com/fixed"})]
        healer = FakeHealer(HealResult(success=True, fixed_instructions=fixed, root_cause="stale ref"))
        controller = build(config, FakePlanner([plan(make_case("TC-1", 1))]), executor=executor, healer=healer)

        await controller.run()

        result = controller.all_results()[0]
        assert result.success and result.heal_method == "llm_analysis"
        assert result.root_cause == "stale ref"
        assert executor.executed[2].instructions == fixed
        assert healer.calls[0]["failed_execution"]["test_case_id"] == "TC-1"

    @pytest.mark.asyncio
    async def test_no_healing_when_disabled(self):
        config = ControllerConfig(max_iterations=1, total_aspects=5, auto_heal=False)
        executor = ScriptedExecutor({"TC-1": [False, True]})
        controller = build(config, FakePlanner([plan(make_case("TC-1", 1))]), executor=executor)

        await controller.run()

        assert len(executor.executed) == 1
        assert not controller.all_results()[0].success

    @pytest.mark.asyncio
    async def test_still_failing_after_healing_keeps_original_error(self):
        config = ControllerConfig(max_iterations=1, total_aspects=5, auto_heal=True)
        executor = ScriptedExecutor({"TC-1": [False, False]})
        healer = FakeHealer(HealResult(success=False, is_bug=True, root_cause="server error"))
        controller = build(config, FakePlanner([plan(make_case("TC-1", 1))]), executor=executor, healer=healer)

        await controller.run()

        result = controller.all_results()[0]
        assert not result.success and not result.healed
        assert result.error.instruction_index == 1
        assert result.root_cause == "server error"


class TestInteractiveMenu:
    @pytest.mark.asyncio
    async def test_invalid_input_redisplays_without_mutation(self):
        config = ControllerConfig(max_iterations=1, total_aspects=10, interactive=True)
        controller = build(config, FakePlanner([plan(make_case("TC-1", 1))]), answers=["abc", "42", "0"])

        await controller.run()

        assert len(controller.history) == 1
        assert len(controller._input.prompts) == 3

    @pytest.mark.asyncio
    async def test_continue_after_budget_does_not_count_iteration(self):
        config = ControllerConfig(max_iterations=1, total_aspects=10, interactive=True)
        controller = build(config, FakePlanner([plan(make_case("TC-1", 1))]), answers=["", "", "0"])

        summary = await controller.run()

        assert summary.iterations == 1
        assert len(controller.history) == 1

    @pytest.mark.asyncio
    async def test_dispatch_specific_forwards_failed_context(self):
        config = ControllerConfig(max_iterations=1, total_aspects=10, interactive=True, auto_heal=False)
        executor = ScriptedExecutor({"TC-4": [False]})
        planner = FakePlanner([plan(make_case("TC-4", 4))])
        controller = build(config, planner, executor=executor, answers=["1", "0"])

        await controller.run()

        targeted = planner.calls[1]
        assert targeted["aspect_id"] == 4
        assert targeted["failed_test"]["test_case_id"] == "TC-4"
        record = controller.history[-1]
        assert record.specific_test and record.target_aspect_id == 4
        assert record.iteration_number == 2
        assert record.execution_results[0].success

    @pytest.mark.asyncio
    async def test_dispatch_specific_applies_quick_fix_even_without_auto_heal(self):
        config = ControllerConfig(max_iterations=1, total_aspects=10, interactive=True, auto_heal=False)
        executor = ScriptedExecutor({"TC-A2": [False, True]})
        controller = build(config, FakePlanner([plan(make_case("TC-1", 1))]), executor=executor, answers=["1", "0"])

        await controller.run()

        result = controller.history[-1].execution_results[0]
        assert result.test_case_id == "TC-A2"
        assert result.healed and result.heal_method == "quick_wait"

    @pytest.mark.asyncio
    async def test_deeper_then_complete(self):
        config = ControllerConfig(max_iterations=1, total_aspects=1, coverage_target=101.0, interactive=True)
        deeper = DeeperPlan(test_cases=[make_case("DEEPER-1"), make_case("DEEPER-2")])
        planner = FakePlanner([plan(make_case("TC-1", 1))], deeper=deeper)
        output = []
        controller = build(config, planner, answers=["1", "2"], output=output)

        await controller.run()

        assert len(planner.deeper_calls) == 1
        assert len(planner.deeper_calls[0]["history"]) == 1
        assert planner.deeper_calls[0]["url"] == config.url
        record = controller.history[-1]
        assert record.deeper_test
        assert [r.test_case_id for r in record.execution_results] == ["DEEPER-1", "DEEPER-2"]
        assert any("Testing complete" in line for line in output)

    @pytest.mark.asyncio
    async def test_latest_scope_uses_last_record_only(self):
        config = ControllerConfig(
            max_iterations=2, total_aspects=10, interactive=True, auto_heal=False, recommendation_scope="latest"
        )
        executor = ScriptedExecutor({"TC-1": [False]})
        planner = FakePlanner([plan(make_case("TC-1", 1)), plan(make_case("TC-2", 2))])
        output = []
        controller = build(config, planner, executor=executor, answers=["0"], output=output)

        await controller.run()

        menu = next(line for line in output if "Recommended next steps" in line)
        assert "Re-test failed" not in menu


class FailingSession:
    def __init__(self):
        self.closed = False
        self.session_id = None

    async def initialize(self):
        raise SessionInitializationError("backend unreachable")

    async def close(self):
        self.closed = True


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_session_initialization_failure_halts(self):
        session = FailingSession()
        reporter = RecordingReporter()
        controller = build(ControllerConfig(), FakePlanner([]), session=session, reporter=reporter)

        with pytest.raises(SessionInitializationError):
            await controller.run()

        assert session.closed
        assert reporter.requests == []

    @pytest.mark.asyncio
    async def test_target_page_opens_before_first_plan(self):
        executor = ScriptedExecutor()

        class OrderCheckingPlanner(FakePlanner):
            async def plan_for_aspect(self, aspect_id=None, coverage=None, failed_test=None):
                self.opened_at_plan_time = list(executor.opened)
                return await super().plan_for_aspect(aspect_id, coverage, failed_test)

        config = ControllerConfig(url="https://shop.example.com", max_iterations=1, total_aspects=5)
        planner = OrderCheckingPlanner([plan(make_case("TC-1", 1))])
        controller = build(config, planner, executor=executor)

        await controller.run()

        assert planner.opened_at_plan_time == ["https://shop.example.com"]
        assert executor.opened == ["https://shop.example.com"]

    @pytest.mark.asyncio
    async def test_navigation_failure_does_not_abort_run(self):
        class UnreachableExecutor(ScriptedExecutor):
            async def open_page(self, url):
                raise RuntimeError("net::ERR_NAME_NOT_RESOLVED")

        config = ControllerConfig(max_iterations=1, total_aspects=5)
        controller = build(config, FakePlanner([plan(make_case("TC-1", 1))]), executor=UnreachableExecutor())

        summary = await controller.run()

        assert summary.iterations == 1

    @pytest.mark.asyncio
    async def test_final_report_folds_history(self):
        config = ControllerConfig(max_iterations=2, total_aspects=10)
        reporter = RecordingReporter()
        planner = FakePlanner([plan(make_case("TC-1", 1)), plan(make_case("TC-2", 2))])
        controller = build(config, planner, reporter=reporter, session_id="session_test")

        summary = await controller.run()

        request = reporter.requests[0]
        assert request.session_id == "session_test"
        assert [r.test_case_id for r in request.execution_results] == ["TC-1", "TC-2"]
        assert request.execution_results[0].test_case["title"] == "TC-1"
        assert request.coverage.percentage == 20.0
        assert request.iterations == 2
        assert summary.report_paths.json_path == "report.json"

    @pytest.mark.asyncio
    async def test_cancellation_writes_partial_report(self):
        config = ControllerConfig(max_iterations=1, total_aspects=10, interactive=True)
        reporter = RecordingReporter()

        async def never_answers(prompt):
            await asyncio.sleep(3600)

        controller = IterationController(
            config,
            planner=FakePlanner([plan(make_case("TC-1", 1))]),
            generator=PassThroughGenerator(),
            executor=ScriptedExecutor(),
            reporter=reporter,
            input_provider=never_answers,
            output=lambda line: None,
        )
        task = asyncio.create_task(controller.run())
        while controller.state != ControllerState.INTERACTIVE_MENU and not task.done():
            await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert not task.done()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(reporter.requests) == 1
        assert reporter.requests[0].execution_results[0].test_case_id == "TC-1"
