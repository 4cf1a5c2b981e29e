"""Global test configuration and fixtures."""
from datetime import datetime, timezone

import pytest

from volumescaler.config.settings import ControllerConfig
from volumescaler.core.engine import ReconcileEngine

from tests.test_utils import StaticSampler

FIXED_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    """Fixed clock used by engine fixtures."""
    return FIXED_NOW


@pytest.fixture
def sampler():
    """Sampler reporting 80% usage."""
    return StaticSampler(percent=80)


@pytest.fixture
def engine(sampler, now):
    """Decision engine with a fixed clock and no failure lookup."""
    return ReconcileEngine(sampler, clock=lambda: now)


@pytest.fixture
def controller_config(tmp_path):
    """Controller configuration pointing at a temporary pods directory."""
    pods = tmp_path / "pods"
    pods.mkdir()
    return ControllerConfig(kubelet_pods_path=str(pods), poll_interval=0.05, api_timeout=0)


@pytest.fixture
def pods_path(controller_config):
    return controller_config.kubelet_pods_path
