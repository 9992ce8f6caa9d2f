import json
import logging
from typing import Any, List, Optional

from iterqa_agent.data import Instruction, TestCase
from iterqa_agent.exceptions import ValidationError
from iterqa_agent.llm.llm_api import LLMAPI
from iterqa_agent.llm.prompt import LLMPrompt
from iterqa_agent.testers.base import BaseGenerator

MAX_SNAPSHOT_CHARS = 8000


def format_snapshot(snapshot: Any) -> str:
    if snapshot is None:
        return "(no snapshot available)"
    text = snapshot if isinstance(snapshot, str) else json.dumps(snapshot, ensure_ascii=False)
    if len(text) > MAX_SNAPSHOT_CHARS:
        return text[:MAX_SNAPSHOT_CHARS] + "\n... (truncated)"
    return text


class InstructionGenerator(BaseGenerator):
    """Keeps pre-authored instructions and asks the LLM for the rest."""

    def __init__(self, llm: Optional[LLMAPI] = None):
        self.llm = llm

    async def generate(
        self, test_cases: List[TestCase], snapshot: Optional[Any] = None, url: Optional[str] = None
    ) -> List[TestCase]:
        generated = []
        for case in test_cases:
            if case.instructions:
                generated.append(case)
                continue
            if self.llm is None:
                raise ValidationError(
                    f"Test case {case.test_case_id} has no instructions and no LLM is configured to generate them"
                )
            generated.append(await self._generate_one(case, snapshot, url))
        return generated

    async def _generate_one(self, case: TestCase, snapshot: Optional[Any], url: Optional[str]) -> TestCase:
        logging.info(f"Generating instructions for {case.test_case_id}")
        prompt = LLMPrompt.generator_prompt.format(
            url=url or "",
            snapshot=format_snapshot(snapshot),
            test_case=json.dumps(case.payload(), ensure_ascii=False, indent=2),
        )
        answer = await self.llm.get_json_response(LLMPrompt.generator_system_prompt, prompt)
        raw_instructions = answer.get("instructions") if isinstance(answer, dict) else answer
        if not isinstance(raw_instructions, list) or not raw_instructions:
            raise ValueError(f"LLM returned no instructions for {case.test_case_id}")
        try:
            instructions = [Instruction.from_dict(item) for item in raw_instructions]
        except ValidationError as e:
            # Bad model output fails this case only, not the run.
            raise ValueError(f"LLM returned an invalid instruction for {case.test_case_id}: {e}") from e
        return case.with_instructions(instructions)
