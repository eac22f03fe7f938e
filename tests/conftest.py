import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="admincore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SEED_DEFAULTS", "true")
os.environ.setdefault("SEED_DEV_USERS", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from admincore.config import Settings  # noqa: E402
from admincore.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from admincore.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable clock handed to services that take a ``clock`` callable."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-test-secret-key-with-enough-entropy-0123456789",
        test_mode=True,
        use_memory_store=True,
        seed_defaults=True,
        seed_dev_users=False,
        max_login_attempts=5,
        lock_duration_ms=30 * 60 * 1000,
    )


@pytest.fixture
def events():
    return []


@pytest.fixture
def runtime(settings, clock, events):
    """Fully wired services over a fresh seeded memory store."""
    rt = Runtime(settings, store=MemoryStore(), clock=clock, event_sink=events.append)
    yield rt
    rt.close()


@pytest.fixture
def make_user(runtime):
    """Create a user holding the default role plus any extra role names."""

    def _make(email="person@example.com", password="s3cret-pass", roles=()):
        role_ids = {runtime.store.get_role_by_name(runtime.settings.default_role_name).id}
        for name in roles:
            role_ids.add(runtime.store.get_role_by_name(name).id)
        return runtime.store.create_user(
            email,
            runtime.passwords.hash(password),
            is_email_verified=True,
            role_ids=role_ids,
        )

    return _make
