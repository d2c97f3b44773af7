"""
Pytest configuration for the ULP monitor test suite.

    python -m pytest                 # everything under tests/
    python -m pytest -m monitor      # only the interactive monitor tests
"""

import pytest

from ulp_cli import UlpCLI
from ulp_loader import RtcSlowMemory
from ulp_session import ProgramSession


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "monitor: tests that drive the UlpCLI command loop")


@pytest.fixture
def session():
    """A fresh 50-slot program session."""
    return ProgramSession()


@pytest.fixture
def rtc():
    """RTC slow memory with the default reservation."""
    return RtcSlowMemory()


@pytest.fixture
def monitor(session, rtc):
    """A monitor bound to the session and rtc fixtures."""
    return UlpCLI(session=session, loader=rtc)
