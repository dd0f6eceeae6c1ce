import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports authcore.app
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in unit tests: OAuth state uses the in-process cache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("OAUTH_REDIRECT_URI", "http://localhost:8000/v1/auth/oauth/{provider}/callback")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings  # noqa: E402
from authcore.service.errors import BadGatewayError  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.service.sessions import SessionRotator  # noqa: E402
from authcore.service.tokens import TokenIssuer  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path):
    # Fresh snapshot directory per test so MemoryStore state never leaks between tests.
    # Own MonkeyPatch context so the test's monkeypatch is undone before the final reset.
    with pytest.MonkeyPatch.context() as mp:
        mp.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
        reset_runtime_for_tests()
        yield
        reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        test_mode=True,
        oauth_redirect_uri="http://localhost:8000/v1/auth/oauth/{provider}/callback",
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_github_client_id="github-client",
        oauth_github_client_secret="github-secret",
    )


@pytest.fixture
def memory_store(tmp_path, settings):
    return MemoryStore(
        fs_root=str(tmp_path / "store"), mfa_encryption_key=settings.mfa_key_material
    )


@pytest.fixture
def issuer(settings, memory_store):
    return TokenIssuer(settings, memory_store)


@pytest.fixture
def rotator(memory_store, issuer):
    return SessionRotator(memory_store, memory_store, issuer)


class RecordingProfileClient:
    """Profile client double that records calls and can be told to fail."""

    def __init__(self) -> None:
        self.created: list[tuple[str, str, str, bool]] = []
        self.statuses: list[tuple[str, str]] = []
        self.two_factor: list[tuple[str, bool]] = []
        self.fail_create = False

    async def create_profile(self, user_id, email, username, *, oauth_enabled=False):
        if self.fail_create:
            raise BadGatewayError("profile service unavailable")
        self.created.append((user_id, email, username, oauth_enabled))

    async def update_status(self, user_id, status):
        self.statuses.append((user_id, status))

    async def update_two_factor_state(self, user_id, enabled):
        self.two_factor.append((user_id, enabled))


@pytest.fixture
def profiles():
    return RecordingProfileClient()


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
