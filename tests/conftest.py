"""Shared pytest fixtures for all tests."""

import pytest

from tests.fake_ledger import FakeLedger, make_snapshot
from uploader.config import build_run_config


@pytest.fixture
def fake_ledger():
    """
    In-memory ledger with fast inclusion.

    Returns:
        FakeLedger instance
    """
    return FakeLedger()


@pytest.fixture
def snapshot():
    """
    Endpoint snapshot with four data endpoints and one index endpoint.

    Returns:
        EndpointSnapshot
    """
    return make_snapshot(4)


@pytest.fixture
def run_config():
    """
    Factory for validated run configurations with short test timeouts.

    Returns:
        Callable accepting RunConfig field overrides
    """
    def factory(**overrides):
        values = {
            "confirmation_timeout_ms": 2000,
            "poll_interval_ms": 5,
            "run_timeout_ms": 20000,
        }
        values.update(overrides)
        return build_run_config(**values)

    return factory


@pytest.fixture
def sample_bytes():
    """
    Deterministic non-repeating payload of 100 KiB.

    Returns:
        bytes
    """
    return bytes((i * 31 + i // 251) % 256 for i in range(100 * 1024))
