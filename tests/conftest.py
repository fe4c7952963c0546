import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="hivehr_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-testing-only-do-not-use")
os.environ.setdefault("ROOT_DOMAIN", "example.com")
os.environ.setdefault("APP_BASE_URL", "https://example.com")
os.environ.setdefault("NOTIFICATION_RETRY_DELAY_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hivehr.config import Settings  # noqa: E402
from hivehr.service.email import EmailService  # noqa: E402
from hivehr.service.runtime import reset_runtime_for_tests  # noqa: E402
from hivehr.storage.memory import MemoryStore  # noqa: E402


class RecordingEmailService(EmailService):
    """EmailService that records messages instead of talking SMTP."""

    def __init__(self, *, fail: bool = False) -> None:
        super().__init__(from_name="HiveHR")
        self.fail = fail
        self.sent: list[dict] = []

    def _send_email(self, to_email, subject, html_body, text_body=None) -> bool:
        self.sent.append(
            {"to": to_email, "subject": subject, "html": html_body, "text": text_body or ""}
        )
        return not self.fail


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own persisted store state
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        shared_fs_root=str(tmp_path),
        session_secret="unit-test-session-secret-0123456789abcdef",
        root_domain="example.com",
        app_base_url="https://example.com",
        test_mode=True,
        notification_retry_delay_seconds=0,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def email_outbox():
    return RecordingEmailService()


@pytest.fixture
def failing_outbox():
    return RecordingEmailService(fail=True)


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
    config.addinivalue_line("markers", "asyncio: mark test as async")
