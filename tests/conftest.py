import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before huddle.app reads settings at import
_test_tmp_dir = tempfile.mkdtemp(prefix="huddle_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from huddle.config import Settings  # noqa: E402
from huddle.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        password_hash_time_cost=1,
    )


@pytest.fixture
def services(settings):
    """A fully wired runtime that is not registered as the app singleton."""
    return Runtime(settings)


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from huddle import app as app_module

    with TestClient(app_module.app) as test_client:
        yield test_client


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
