"""
Script loading and the replace-only script holder.
"""
from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Iterable, List, Union

import pydantic
import structlog

from devprobe.exceptions import ScriptFormatError
from devprobe.models import TestStep

logger = structlog.get_logger()

ScriptSource = Union[str, bytes, Iterable[Any]]


def parse_script(data: ScriptSource) -> List[TestStep]:
    """
    Build a step list from script JSON or already-decoded step mappings.

    Args:
        data: JSON text/bytes holding a list of steps, or a list whose items
              are step mappings or TestStep instances

    Raises:
        ScriptFormatError: input is not a non-empty list of valid steps
    """
    if isinstance(data, (str, bytes, bytearray)):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ScriptFormatError(f"Script is not valid JSON: {e}", details={"error": str(e)})

    if data is None or isinstance(data, (dict, str, bytes)):
        raise ScriptFormatError("Script must be a list of steps")

    steps: List[TestStep] = []
    for index, item in enumerate(data):
        if isinstance(item, TestStep):
            steps.append(item.model_copy(deep=True))
            continue
        try:
            steps.append(TestStep.model_validate(item))
        except pydantic.ValidationError as e:
            raise ScriptFormatError(
                f"Step {index} is malformed",
                details={"step_index": index, "errors": e.errors(include_url=False)},
            )

    if not steps:
        raise ScriptFormatError("Script contains no steps")
    return steps


def load_script_file(path: Union[str, Path]) -> List[TestStep]:
    """Read and parse a script JSON file."""
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ScriptFormatError(f"Cannot read script {path}: {e}", details={"path": str(path)})
    steps = parse_script(raw)
    logger.info("script_file_loaded", path=str(path), step_count=len(steps))
    return steps


class ScriptStore:
    """
    Holds the current test script.

    Loading replaces the whole script; there is no incremental editing.
    get_all_steps() hands out a deep copy, so a run started from it is not
    affected by a later load.
    """

    def __init__(self):
        self._steps: List[TestStep] = []
        self._lock = threading.Lock()

    def add_step(self, new_steps: Iterable[TestStep]) -> None:
        """Replace the held script with ``new_steps``."""
        replacement = [step.model_copy(deep=True) for step in new_steps]
        with self._lock:
            self._steps = replacement
        logger.debug("script_replaced", step_count=len(replacement))

    def load(self, data: ScriptSource) -> List[TestStep]:
        """
        Parse ``data`` and replace the held script with it.

        A script that fails to parse leaves the previous one in place.
        """
        steps = parse_script(data)
        self.add_step(steps)
        return self.get_all_steps()

    def clear(self) -> None:
        with self._lock:
            self._steps = []

    def get_all_steps(self) -> List[TestStep]:
        with self._lock:
            return [step.model_copy(deep=True) for step in self._steps]

    def __len__(self) -> int:
        with self._lock:
            return len(self._steps)
