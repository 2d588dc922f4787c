import asyncio
import inspect
import itertools
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="venueauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Blacklist and rate limits stay process-local so tests do not depend on a Redis server
os.environ["REDIS_URL"] = ""
os.environ["SESSION_CLEANUP_ENABLED"] = "false"

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from venueauth.service.auth import format_phone  # noqa: E402
from venueauth.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from venueauth.storage.models import VerificationChannel  # noqa: E402

DEFAULT_PASSWORD = "Secret123"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # the memory store reloads its state file, so every test gets its own root
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def create_customer(runtime):
    """Factory for customer accounts with a saved password."""
    counter = itertools.count(1)

    def _create(*, password=DEFAULT_PASSWORD, verify_phone=True, verify_email=False, active=True):
        n = next(counter)
        store = runtime.store
        with store.transaction():
            user = store.create_user(
                f"customer{n}@example.com",
                phone_number=format_phone(f"0101234{n:04d}"),
                full_name=f"Customer Number{n}",
            )
            runtime.auth.save_password(user.id, password)
            if verify_phone:
                store.mark_verified(user.id, VerificationChannel.PHONE)
            if verify_email:
                store.mark_verified(user.id, VerificationChannel.EMAIL)
            if not active:
                store.set_user_active(user.id, False)
        return store.get_user(user.id)

    return _create


@pytest.fixture
def create_venue_owner(runtime):
    """Factory returning ``(user, venue)`` for a verified venue account."""
    counter = itertools.count(1)

    def _create(*, password=DEFAULT_PASSWORD, verify_phone=True):
        n = next(counter)
        store = runtime.store
        with store.transaction():
            venue = store.create_venue(f"Arena {n}", "football_court", email=f"venue{n}@example.com")
            user = store.create_user(
                f"venue{n}@example.com",
                phone_number=format_phone(f"0111234{n:04d}"),
                venue_id=venue.id,
            )
            runtime.auth.save_password(user.id, password)
            if verify_phone:
                store.mark_verified(user.id, VerificationChannel.PHONE)
        return store.get_user(user.id), store.get_venue(venue.id)

    return _create


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
