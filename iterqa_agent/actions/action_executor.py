import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

from iterqa_agent.actions.retry import execute_with_retry, is_session_lost
from iterqa_agent.browser.config import SCREENSHOT_TOOL, SNAPSHOT_TOOL, TOOL_MAPPING
from iterqa_agent.browser.session import MCPSession
from iterqa_agent.data import ExecutionError, ExecutionOutcome, Instruction, InstructionType, RetryPolicy, TestCase
from iterqa_agent.exceptions import IterQAError, SessionInitializationError, ValidationError
from iterqa_agent.testers.base import BaseExecutor
from iterqa_agent.utils.artifact_storage import ArtifactStorage


class ActionExecutor(BaseExecutor):
    """Runs a test case's instructions against the backend, stopping at the
    first failure."""

    def __init__(self, session: MCPSession, artifact_storage: Optional[ArtifactStorage] = None,
                 retry_policy: Optional[RetryPolicy] = None, save_snapshot_on_failure: bool = False):
        self._session = session
        self._artifacts = artifact_storage
        self._retry_policy = retry_policy or RetryPolicy()
        self.save_snapshot_on_failure = save_snapshot_on_failure
        self._action_map = {
            "navigate": self._navigate_args,
            "click": self._click_args,
            "fill": self._fill_args,
            "select_option": self._select_option_args,
            "screenshot": self._screenshot_args,
            "evaluate": self._evaluate_args,
            "wait": self._wait_args,
            "wait_for": self._wait_args,
            "press_key": self._press_key_args,
            "verify_element_visible": self._verify_element_args,
            "verify_text_visible": self._verify_text_args,
        }

    # Argument builders, one per instruction kind
    @staticmethod
    def _navigate_args(instruction: Instruction) -> Dict[str, Any]:
        return {"url": instruction.url, "intent": instruction.label}

    @staticmethod
    def _click_args(instruction: Instruction) -> Dict[str, Any]:
        return {"element": instruction.label, "ref": instruction.selector, "intent": instruction.label}

    @staticmethod
    def _fill_args(instruction: Instruction) -> Dict[str, Any]:
        return {
            "element": instruction.label,
            "ref": instruction.selector,
            "text": instruction.value,
            "intent": instruction.label,
        }

    @staticmethod
    def _select_option_args(instruction: Instruction) -> Dict[str, Any]:
        values = instruction.values or ([instruction.value] if instruction.value else [])
        return {"element": instruction.label, "ref": instruction.selector, "values": values, "intent": instruction.label}

    @staticmethod
    def _screenshot_args(instruction: Instruction) -> Dict[str, Any]:
        return {"filename": instruction.path} if instruction.path else {}

    @staticmethod
    def _evaluate_args(instruction: Instruction) -> Dict[str, Any]:
        return {"function": instruction.script, "intent": instruction.label}

    @staticmethod
    def _wait_args(instruction: Instruction) -> Dict[str, Any]:
        # The backend takes seconds; ``duration`` is milliseconds.
        if instruction.duration is not None:
            seconds = instruction.duration / 1000
        else:
            seconds = instruction.time if instruction.time is not None else 1
        return {"time": seconds, "intent": instruction.label}

    @staticmethod
    def _press_key_args(instruction: Instruction) -> Dict[str, Any]:
        return {"key": instruction.key, "intent": instruction.label}

    @staticmethod
    def _verify_element_args(instruction: Instruction) -> Dict[str, Any]:
        return {
            "role": instruction.role or "generic",
            "accessibleName": instruction.accessible_name or instruction.description or "",
            "intent": instruction.label,
        }

    @staticmethod
    def _verify_text_args(instruction: Instruction) -> Dict[str, Any]:
        return {"text": instruction.text or instruction.value or "", "intent": instruction.label}

    def build_arguments(self, instruction: Instruction):
        kind = instruction.type.value
        builder = self._action_map.get(kind)
        if builder is None:
            raise ValidationError(f"Unsupported instruction type: {kind}")
        return TOOL_MAPPING[kind], builder(instruction)

    async def _recover_session(self, error: BaseException, attempt: int):
        if is_session_lost(error):
            logging.warning(f"Session lost ({error}); re-initializing before retry {attempt + 1}")
            await self._session.reinitialize()

    async def execute_instruction(self, instruction: Instruction) -> Any:
        tool, arguments = self.build_arguments(instruction)
        logging.debug(f"Executing {instruction.type.value} via {tool}")
        try:
            return await execute_with_retry(
                lambda: self._session.call(tool, arguments),
                label=f"{tool} ({instruction.label})",
                on_retry=self._recover_session,
                **self._retry_policy.as_kwargs(),
            )
        except (ValidationError, SessionInitializationError):
            raise
        except IterQAError as e:
            await self._save_failure_snapshot(instruction, e)
            raise

    async def execute(self, test_case: TestCase, iteration: int = 1) -> ExecutionOutcome:
        if not test_case.instructions:
            raise ValidationError(f"Test case {test_case.test_case_id} has no instructions")

        start = time.monotonic()
        executed = 0
        for index, instruction in enumerate(test_case.instructions):
            try:
                await self.execute_instruction(instruction)
                executed += 1
            except (ValidationError, SessionInitializationError):
                raise
            except IterQAError as e:
                executed += 1
                logging.error(f"{test_case.test_case_id}: instruction {index} ({instruction.type.value}) failed: {e}")
                await self._capture_error_screenshot(test_case.test_case_id, iteration, index, instruction, str(e))
                return ExecutionOutcome(
                    success=False,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    error=ExecutionError(
                        message=str(e), instruction_index=index, instruction_type=instruction.type.value
                    ),
                    executed_instructions=executed,
                )

        duration_ms = int((time.monotonic() - start) * 1000)
        logging.info(f"{test_case.test_case_id}: {executed} instruction(s) passed in {duration_ms}ms")
        return ExecutionOutcome(success=True, duration_ms=duration_ms, executed_instructions=executed)

    async def _save_failure_snapshot(self, instruction: Instruction, error: BaseException):
        if not self.save_snapshot_on_failure or self._artifacts is None:
            return
        try:
            self._artifacts.save_failure_snapshot(
                {
                    "timestamp": datetime.now().isoformat(),
                    "error": str(error),
                    "instruction": instruction.model_dump(mode="json", exclude_none=True),
                    "session_id": self._session.session_id,
                }
            )
        except Exception as save_error:
            logging.warning(f"Could not save failure snapshot: {save_error}")

    async def _capture_error_screenshot(self, test_case_id: str, iteration: int, index: int,
                                        instruction: Instruction, message: str):
        if self._artifacts is None:
            return
        try:
            self._artifacts.ensure_dir(iteration, test_case_id)
            step_label = f"error-instruction-{index}-{time.time_ns()}"
            screenshot_path = self._artifacts.path(iteration, test_case_id, step_label)
            screenshot_ok = True
            try:
                await self._session.call(SCREENSHOT_TOOL, {"filename": screenshot_path})
            except IterQAError as e:
                screenshot_ok = False
                logging.warning(f"Screenshot capture failed for {test_case_id}: {e}")
            self._artifacts.save_metadata(
                iteration,
                test_case_id,
                {
                    "type": "error",
                    "step_label": step_label,
                    "instruction_index": index,
                    "instruction_type": instruction.type.value,
                    "error_message": message,
                    "screenshot_path": screenshot_path,
                    "screenshot_success": screenshot_ok,
                    "timestamp": datetime.now().isoformat(),
                },
            )
        except Exception as e:
            logging.warning(f"Failed to record error screenshot for {test_case_id}: {e}")

    async def open_page(self, url: str) -> Any:
        logging.info(f"Opening target page {url}")
        return await self.execute_instruction(
            Instruction(type=InstructionType.NAVIGATE, url=url, description="Open target page")
        )

    async def snapshot(self) -> Optional[Any]:
        """Accessibility snapshot of the current page, or None if it cannot be taken."""
        try:
            return await self._session.call(SNAPSHOT_TOOL, {})
        except IterQAError as e:
            logging.warning(f"Failed to capture page snapshot: {e}")
            return None
