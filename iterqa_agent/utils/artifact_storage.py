import json
import logging
import os
import re
import time
from datetime import datetime
from typing import Any, Dict, List, Union

_UNSAFE_CHARS = re.compile(r'[/\\?%*:|"<>]')


class ArtifactStorage:
    """Writes planner/generator output, screenshot metadata and failure
    snapshots under ``output_dir``.

    Screenshots live in ``<output_dir>/screenshots/<session>/iteration-<n>/``;
    every other artifact is a JSON file directly in ``output_dir``.
    """

    def __init__(self, session_id: str = None, output_dir: str = "./reports"):
        self.session_id = session_id
        self.output_dir = output_dir
        self.planner_outputs: List[str] = []
        self.generator_outputs: List[str] = []
        self.screenshots: List[str] = []
        self.failure_snapshots: List[str] = []
        os.makedirs(self.output_dir, exist_ok=True)

    def _screenshot_dir(self, iteration: int) -> str:
        return os.path.join(self.output_dir, "screenshots", self.session_id or "default", f"iteration-{iteration}")

    def ensure_dir(self, iteration: int, test_case_id: str) -> str:
        screenshot_dir = self._screenshot_dir(iteration)
        os.makedirs(screenshot_dir, exist_ok=True)
        return screenshot_dir

    def path(self, iteration: int, test_case_id: str, label: Union[str, int]) -> str:
        if isinstance(label, int):
            label = f"step-{label}"
        safe_label = _UNSAFE_CHARS.sub("-", label)
        return os.path.join(self._screenshot_dir(iteration), f"{test_case_id}-{safe_label}.png")

    def _write_json(self, filename: str, data: Dict[str, Any]) -> str:
        os.makedirs(self.output_dir, exist_ok=True)
        file_path = os.path.join(self.output_dir, filename)
        with open(file_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        return file_path

    def _stamp(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {**data, "session_id": self.session_id, "saved_at": datetime.now().isoformat()}

    def save_metadata(self, iteration: int, test_case_id: str, meta: Dict[str, Any]) -> str:
        label = _UNSAFE_CHARS.sub("-", str(meta.get("step_label", "step")))
        filename = f"screenshot-metadata-{test_case_id}-{label}-{time.time_ns()}.json"
        file_path = self._write_json(filename, self._stamp({**meta, "iteration": iteration, "test_case_id": test_case_id}))
        self.screenshots.append(file_path)
        return file_path

    def save_failure_snapshot(self, snapshot: Dict[str, Any]) -> str:
        filename = f"failure-snapshot-{self.session_id or 'default'}-{time.time_ns()}.json"
        file_path = self._write_json(filename, self._stamp(snapshot))
        self.failure_snapshots.append(file_path)
        logging.info(f"Failure snapshot saved: {file_path}")
        return file_path

    def save_planner_output(self, iteration: int, planner_output: Dict[str, Any]) -> str:
        filename = f"planner-iteration-{iteration}-{self.session_id}.json"
        file_path = self._write_json(filename, self._stamp({**planner_output, "iteration": iteration}))
        self.planner_outputs.append(file_path)
        return file_path

    def save_generator_output(self, iteration: int, test_case_id: str, generator_output: Dict[str, Any]) -> str:
        filename = f"generator-iteration-{iteration}-{test_case_id}-{self.session_id}.json"
        data = self._stamp({**generator_output, "iteration": iteration, "test_case_id": test_case_id})
        file_path = self._write_json(filename, data)
        self.generator_outputs.append(file_path)
        return file_path

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "output_dir": self.output_dir,
            "planner_outputs": list(self.planner_outputs),
            "generator_outputs": list(self.generator_outputs),
            "screenshots": list(self.screenshots),
            "failure_snapshots": list(self.failure_snapshots),
        }
