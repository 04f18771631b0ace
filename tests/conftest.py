import asyncio
import inspect
import os
import re
import sys
import tempfile
from pathlib import Path

# must be in place before credkeep.config is first imported
_TEST_ENV = {
    "SHARED_FS_ROOT": tempfile.mkdtemp(prefix="credkeep_test_"),
    "TEST_MODE": "true",
    "USE_MEMORY_STORE": "true",
    "ALLOW_REDIS_FALLBACK_DEV": "true",
    "JWT_SECRET": "test-secret-key-for-testing-only-do-not-use-in-production",
    # empty: rate limits and TFA lockouts stay in process
    "REDIS_URL": "",
    "LOG_JSON": "false",
}
for _name, _value in _TEST_ENV.items():
    os.environ.setdefault(_name, _value)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from credkeep.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

_TOKEN_IN_LINK = re.compile(r"token=([A-Za-z0-9_\-]+)")


class Mailbox:
    """Notification sink that keeps every message instead of sending it."""

    def __init__(self):
        self.sent = []

    def send(self, to_email, subject, body):
        self.sent.append((to_email, subject, body))
        return True

    def last_token(self):
        """Token from the link in the most recent message."""
        return _TOKEN_IN_LINK.search(self.sent[-1][2]).group(1)


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # the memory store reloads its snapshot, so each test gets its own root
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def mailbox():
    """A Mailbox also wired into the app runtime in place of SMTP."""
    box = Mailbox()
    get_runtime().auth.notifier = box
    return box


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: run the coroutine test with asyncio.run")
