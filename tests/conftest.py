"""Shared pytest fixtures for wamux tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from helpers import FakeConnector, RecordingWebhooks, RecordingWriter, make_settings  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in the test's temp dir."""
    return make_settings(tmp_path)


@pytest.fixture
def connector(settings):
    return FakeConnector(settings)


@pytest.fixture
def webhooks():
    return RecordingWebhooks()


@pytest.fixture
def writer():
    return RecordingWriter()
