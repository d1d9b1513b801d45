"""Shared fixtures for link tests."""

import pytest

from fakes import FakeEngineAPI
from pipelink.config import Settings
from pipelink.models import Script


@pytest.fixture
def settings() -> Settings:
    """Settings with instant retries and polling."""
    return Settings(launch_interval=0.0, message_interval=0.0)


@pytest.fixture
def fake_api() -> FakeEngineAPI:
    return FakeEngineAPI(
        scripts=[
            Script(
                id="dtbook-to-pef",
                href="http://localhost:8181/ws/scripts/dtbook-to-pef",
            )
        ]
    )
