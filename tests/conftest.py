"""Shared fixtures for paneforge tests."""

import pytest

from paneforge.launcher import RecordingProcessLayer
from paneforge.pipeline import DryRunStepExecutor


@pytest.fixture
def process_layer() -> RecordingProcessLayer:
    """A process layer that records requests."""
    return RecordingProcessLayer()


@pytest.fixture
def executor() -> DryRunStepExecutor:
    """A step executor where every command succeeds."""
    return DryRunStepExecutor()
