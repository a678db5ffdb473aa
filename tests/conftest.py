import os

import pytest

# Settings() is built at import time; keep a developer's real .env values out of the tests
for name in ("JIRA_INSTANCE", "JIRA_USERNAME", "JIRA_API_TOKEN", "JIRA_AUTH_TYPE"):
    os.environ.pop(name, None)
os.environ.setdefault("LOG_LEVEL", "INFO")

from helpers import FakeApi, FakeClock, SleepRecorder  # noqa: E402


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def sleeper():
    return SleepRecorder()
