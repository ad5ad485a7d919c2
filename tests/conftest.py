# tests/conftest.py
"""
Shared fixtures for the Meowlang test suite.
"""

from pathlib import Path
from typing import List

import pytest

from interpreter import Hooks, RuntimeEvent


REPO_ROOT = Path(__file__).resolve().parent.parent
HISTOGRAM_EXT = REPO_ROOT / "ext" / "histogram.py"


class Recorder:
    """Collects every side effect a run produces."""

    def __init__(self) -> None:
        self.pauses = 0
        self.meows = 0
        self.errors: List[str] = []
        self.events: List[RuntimeEvent] = []

    def _pause(self) -> None:
        self.pauses += 1

    def _meow(self) -> None:
        self.meows += 1

    def hooks(self) -> Hooks:
        return Hooks(
            on_error=self.errors.append,
            on_pause=self._pause,
            on_meow=self._meow,
            on_step=self.events.append,
        )

    @property
    def opnames(self) -> List[str]:
        return [e.opname for e in self.events if not e.is_final]

    @property
    def final_events(self) -> List[RuntimeEvent]:
        return [e for e in self.events if e.is_final]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def histogram_ext() -> Path:
    return HISTOGRAM_EXT
