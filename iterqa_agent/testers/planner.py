import json
import logging
import os
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import yaml

from iterqa_agent.data import CoverageSnapshot, DeeperPlan, IterationRecord, TestCase, TestPlan
from iterqa_agent.exceptions import ValidationError
from iterqa_agent.llm.llm_api import LLMAPI
from iterqa_agent.llm.prompt import LLMPrompt
from iterqa_agent.testers.base import BasePlanner


def load_plan_file(path: str) -> List[TestCase]:
    """Read pre-authored test cases from a YAML or JSON file.

    The file holds a ``test_cases`` list; each entry needs a
    ``test_case_id`` and normally an ``aspect_id``.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Test plan file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        if path.endswith(".json"):
            raw = json.load(f)
        else:
            raw = yaml.safe_load(f)
    if isinstance(raw, dict):
        raw = raw.get("test_cases")
    if not isinstance(raw, list):
        raise ValidationError(f"{path}: expected a list of test cases under 'test_cases'")
    return [TestCase.from_dict(item) for item in raw]


class AspectPlanner(BasePlanner):
    """Serves pre-authored test cases by aspect; deeper tests come from the LLM."""

    def __init__(self, test_cases: List[TestCase], batch_size: int = 3, llm: Optional[LLMAPI] = None,
                 deeper_count: int = 3):
        self.batch_size = batch_size
        self.llm = llm
        self.deeper_count = deeper_count
        self._by_aspect: Dict[int, List[TestCase]] = OrderedDict()
        self._by_id: Dict[str, TestCase] = {}
        for case in test_cases:
            if case.test_case_id in self._by_id:
                raise ValidationError(f"Duplicate test_case_id in plan: {case.test_case_id}")
            self._by_id[case.test_case_id] = case
            if case.aspect_id is not None:
                self._by_aspect.setdefault(case.aspect_id, []).append(case)

    @classmethod
    def from_file(cls, path: str, **kwargs) -> "AspectPlanner":
        return cls(load_plan_file(path), **kwargs)

    @property
    def aspects(self) -> List[int]:
        return sorted(self._by_aspect)

    async def plan_for_aspect(
        self,
        aspect_id: Optional[int] = None,
        coverage: Optional[CoverageSnapshot] = None,
        failed_test: Optional[Dict[str, Any]] = None,
    ) -> TestPlan:
        metadata: Dict[str, Any] = {"target_aspect_id": aspect_id}

        if failed_test:
            metadata["failed_test"] = failed_test
            retry_case = self._by_id.get(failed_test.get("test_case_id") or "")
            if retry_case is not None:
                logging.info(f"Re-planning failed case {retry_case.test_case_id}")
                return TestPlan(test_cases=[retry_case], metadata=metadata)

        if aspect_id is not None:
            cases = list(self._by_aspect.get(aspect_id, []))
            if not cases:
                logging.warning(f"No test cases defined for aspect {aspect_id}")
            return TestPlan(test_cases=cases, metadata=metadata)

        if coverage is not None:
            candidates = [a for a in coverage.untested_aspect_ids if a in self._by_aspect]
        else:
            candidates = self.aspects
        selected = candidates[: self.batch_size]
        metadata["aspects"] = selected
        logging.info(f"Planned aspects {selected}")
        return TestPlan(test_cases=[c for a in selected for c in self._by_aspect[a]], metadata=metadata)

    async def plan_deeper(self, history: List[IterationRecord], url: str) -> DeeperPlan:
        metadata: Dict[str, Any] = {"type": "deeper_tests", "based_on_history": len(history)}
        if self.llm is None:
            logging.warning("No LLM configured; deeper tests are unavailable")
            return DeeperPlan(metadata={**metadata, "skipped": "no llm configured"})

        results = [r for record in history for r in record.execution_results]
        tested = sorted({r.aspect_id for r in results if r.aspect_id is not None})
        recent = [
            f"- {r.test_case_id} ({'passed' if r.success else 'failed'}): {(r.test_case or {}).get('title', '')}"
            for r in results[-10:]
        ]
        prompt = LLMPrompt.deeper_prompt.format(
            url=url,
            tested_aspects=", ".join(str(a) for a in tested) or "none",
            passed=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
            recent_cases="\n    ".join(recent) or "none",
            count=self.deeper_count,
        )
        answer = await self.llm.get_json_response(LLMPrompt.deeper_system_prompt, prompt)

        raw_cases = answer.get("test_cases", []) if isinstance(answer, dict) else []
        cases = []
        for index, raw in enumerate(raw_cases, start=1):
            if isinstance(raw, dict) and not (raw.get("test_case_id") or raw.get("id")):
                raw = {**raw, "test_case_id": f"DEEPER-{len(history) + 1}-{index:03d}"}
            try:
                cases.append(TestCase.from_dict(raw))
            except ValidationError as e:
                logging.warning(f"Skipping malformed deeper test case: {e}")
        return DeeperPlan(test_cases=cases, metadata=metadata)
