"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from tests.helpers import FakeClock
from timer import ClockSampler, ExecutionContext


@pytest.fixture
def fake_clock():
    """A sampler whose start/end stamps are exactly 1.001034s apart."""
    return ClockSampler(source=FakeClock("1700000000.250000", "1700000001.251034"))


@pytest.fixture(params=[True, False], ids=["fail-fast", "no-fail-fast"])
def context(request):
    """An execution context in each starting state."""
    return ExecutionContext(fail_fast=request.param)
