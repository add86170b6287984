"""
Shared fixtures for mail-watch tests.

The in-memory collaborators live in tests/fakes.py.
"""
import logging
import os

import pytest

from mailwatch.history import HistoryStore
from mailwatch.models import AccountHandle
from mailwatch.poll_cycle import PollCycleExecutor
from mailwatch.secrets import SECRET_PREFIX
from tests.fakes import FakeSecretStore, RecordingNotifier, make_account


@pytest.fixture
def secret_store():
    return FakeSecretStore({"me@example.com": "s3cret"})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def history_store(tmp_path):
    return HistoryStore(tmp_path / "notification_history")


@pytest.fixture
def account():
    return make_account()


@pytest.fixture
def handle(account):
    return AccountHandle(account)


@pytest.fixture
def session_factory():
    """
    Factory returning a scripted session. Assign .session before running a cycle.
    """
    class _Factory:
        session = None
        calls = []

        def __call__(self, config, password, timeout):
            self.calls.append((config.email, password, timeout))
            return self.session

    factory = _Factory()
    factory.calls = []
    return factory


@pytest.fixture
def executor(secret_store, notifier, history_store, session_factory):
    return PollCycleExecutor(
        secret_store=secret_store,
        notifier=notifier,
        history_store=history_store,
        session_factory=session_factory,
        timeout=5,
    )


@pytest.fixture(autouse=True)
def _isolate_environment():
    """Drop password variables and logging handlers a test may have installed."""
    before = {key for key in os.environ if key.startswith(SECRET_PREFIX)}
    yield
    for key in list(os.environ):
        if key.startswith(SECRET_PREFIX) and key not in before:
            del os.environ[key]
    package_logger = logging.getLogger('mailwatch')
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)
