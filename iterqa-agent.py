#!/usr/bin/env python3
import argparse
import asyncio
import logging
import os
import sys
import traceback

from iterqa_agent.actions.action_executor import ActionExecutor
from iterqa_agent.browser.session import MCPSession
from iterqa_agent.data import generate_session_id
from iterqa_agent.exceptions import IterQAError
from iterqa_agent.executor import IterationController, ResultAggregator
from iterqa_agent.executor.coverage import format_progress, format_summary
from iterqa_agent.llm.llm_api import LLMAPI
from iterqa_agent.testers import AspectPlanner, InstructionGenerator, LLMHealer
from iterqa_agent.utils.artifact_storage import ArtifactStorage
from iterqa_agent.utils.config import (
    build_backend_config,
    build_controller_config,
    build_retry_policy,
    find_config_file,
    load_yaml,
    resolve_path,
    validate_and_build_llm_config,
)
from iterqa_agent.utils.get_log import GetLog


async def run_tests(cfg, interactive=None, config_dir=None):
    GetLog.get_log(level=(cfg.get("log") or {}).get("level", "info"))

    controller_config = build_controller_config(cfg, interactive=interactive)
    backend_config = build_backend_config(cfg)
    llm_config = validate_and_build_llm_config(cfg)

    plan_cfg = cfg.get("plan") or {}
    plan_file = resolve_path(plan_cfg.get("file"), config_dir)
    if not plan_file:
        raise FileNotFoundError("No test plan configured (plan.file)")

    session_id = generate_session_id()
    report_cfg = cfg.get("report") or {}
    timestamp = os.getenv("ITERQA_TIMESTAMP", "latest")
    report_dir = report_cfg.get("report_dir") or f"./reports/test_{timestamp}"
    artifacts = ArtifactStorage(session_id=session_id, output_dir=report_dir)

    llm = LLMAPI(llm_config) if llm_config else None
    session = MCPSession(backend_config=backend_config, session_id=session_id)
    executor = ActionExecutor(
        session,
        artifact_storage=artifacts,
        retry_policy=build_retry_policy(cfg.get("instruction_retry")),
        save_snapshot_on_failure=bool((cfg.get("executor") or {}).get("save_snapshot_on_failure", False)),
    )
    controller = IterationController(
        controller_config,
        planner=AspectPlanner.from_file(plan_file, batch_size=plan_cfg.get("batch_size", 3), llm=llm),
        generator=InstructionGenerator(llm),
        executor=executor,
        healer=LLMHealer(llm) if llm else None,
        reporter=ResultAggregator(report_dir=report_dir, formats=report_cfg.get("formats")),
        session=session,
        artifact_storage=artifacts,
        snapshot_provider=executor.snapshot,
        session_id=session_id,
    )

    try:
        summary = await controller.run()
    finally:
        if llm is not None:
            await llm.close()

    print(format_progress(summary.history))
    print(format_summary(controller.cumulative_coverage()))
    print(f"Iterations: {summary.iterations}  Healed: {summary.healed}")
    logging.debug(f"Artifacts: {artifacts.summary()}")
    paths = summary.report_paths
    if paths and paths.html_path:
        print("HTML report path: ", paths.html_path)
    elif paths and paths.json_path:
        print("JSON report path: ", paths.json_path)
    else:
        print("Report generation failed")
    return summary


def parse_args():
    parser = argparse.ArgumentParser(description="IterQA Agent: coverage-guided iterative E2E testing")
    parser.add_argument("--config", "-c", help="YAML configuration file path (default: auto-search config/config.yaml)")
    parser.add_argument(
        "--interactive", "-i", action="store_true", default=None,
        help="Show the recommendation menu once the iteration budget is spent",
    )
    return parser.parse_args()


def main():
    args = parse_args()

    try:
        config_path = find_config_file(args.config, search_dirs=[os.path.dirname(os.path.abspath(__file__))])
        cfg = load_yaml(config_path)
    except (FileNotFoundError, IterQAError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(1)

    try:
        asyncio.run(run_tests(
            cfg, interactive=args.interactive, config_dir=os.path.dirname(os.path.abspath(config_path))
        ))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        sys.exit(130)
    except (FileNotFoundError, IterQAError) as e:
        logging.error(f"Run aborted: {e}")
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(1)
    except Exception:
        print("Test execution failed, stack trace:", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
