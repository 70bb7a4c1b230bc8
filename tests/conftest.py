import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL selects the in-memory cache without a connection attempt
os.environ.setdefault("REDIS_URL", "")
# TestClient talks plain HTTP, so Secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("COOKIE_SAMESITE", "lax")
os.environ.setdefault("CLIENT_URL", "http://client.test")
os.environ.setdefault("BACKEND_URL", "http://testserver")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authera.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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


@pytest.fixture
def runtime(reset_runtime_state):
    from authera.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def client(runtime):
    from fastapi.testclient import TestClient

    from authera import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def outbox(runtime):
    """Capture magic links instead of sending them."""
    sent = []

    def _capture(to_email, link, *, expires_in_minutes=5):
        sent.append({"to": to_email, "link": link, "expires_in_minutes": expires_in_minutes})
        return True

    runtime.email.send_magic_link = _capture
    return sent
