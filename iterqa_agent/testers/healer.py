import json
import logging
from typing import Any, Dict, List, Optional

from iterqa_agent.data import HealResult, Instruction
from iterqa_agent.exceptions import ValidationError
from iterqa_agent.llm.llm_api import LLMAPI
from iterqa_agent.llm.prompt import LLMPrompt
from iterqa_agent.testers.base import BaseHealer
from iterqa_agent.testers.generator import format_snapshot


class LLMHealer(BaseHealer):
    """Asks the LLM why a case failed and for a corrected instruction list."""

    def __init__(self, llm: LLMAPI):
        self.llm = llm

    async def heal(
        self, failed_execution: Dict[str, Any], instructions: List[Instruction], snapshot: Optional[Any] = None
    ) -> HealResult:
        listing = "\n    ".join(
            f"{i}. {json.dumps(inst.model_dump(mode='json', exclude_none=True), ensure_ascii=False)}"
            for i, inst in enumerate(instructions, start=1)
        )
        prompt = LLMPrompt.healer_prompt.format(
            test_case_id=failed_execution.get("test_case_id", "unknown"),
            instructions=listing or "(none)",
            error=json.dumps(failed_execution.get("error"), ensure_ascii=False),
            snapshot=format_snapshot(snapshot),
        )
        answer = await self.llm.get_json_response(LLMPrompt.healer_system_prompt, prompt)
        if not isinstance(answer, dict):
            return HealResult(success=False, root_cause="healer returned an unexpected answer")

        root_cause = answer.get("root_cause")
        if answer.get("is_bug"):
            logging.warning(f"Healer suspects an application bug: {root_cause}")
            return HealResult(success=False, root_cause=root_cause, is_bug=True)

        raw_fixed = answer.get("fixed_instructions") or []
        try:
            fixed = [Instruction.from_dict(item) for item in raw_fixed]
        except ValidationError as e:
            logging.warning(f"Healer proposed an invalid instruction: {e}")
            return HealResult(success=False, root_cause=root_cause)
        return HealResult(success=bool(fixed), fixed_instructions=fixed or None, root_cause=root_cause)
