"""Helpers shared by the timer tests."""

from __future__ import annotations

import sys
from pathlib import Path

TIMER_SCRIPT = Path(__file__).resolve().parents[1] / "python" / "timer.py"


def py(code: str) -> list[str]:
    """A command vector running a snippet with the current interpreter."""
    return [sys.executable, "-c", code]


class FakeClock:
    """Hands out a fixed series of 'SECONDS.MICROSECONDS' stamps."""

    def __init__(self, *stamps):
        self.stamps = list(stamps)
        self.calls = 0

    def __call__(self):
        stamp = self.stamps[self.calls]
        self.calls += 1
        return stamp
