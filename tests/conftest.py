import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before any import that might build the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="horizonauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty REDIS_URL selects the in-memory TTL cache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-material-for-automation-only-0123456789")
os.environ.setdefault("OAUTH_CLIENTS", '{"web-app": ["https://app.example.com/callback"]}')

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from horizonauth.service.accounts import AccountManager  # noqa: E402
from horizonauth.service.auth import AuthService  # noqa: E402
from horizonauth.service.devices import DeviceInfo, DeviceTracker  # noqa: E402
from horizonauth.service.email import CallbackEmailProvider, EmailDispatcher  # noqa: E402
from horizonauth.service.keys import SigningKeys, generate_key_pair  # noqa: E402
from horizonauth.service.oauth import OAuthBridge  # noqa: E402
from horizonauth.service.passwords import PasswordHasher  # noqa: E402
from horizonauth.service.push_tokens import PushTokenRegistry  # noqa: E402
from horizonauth.service.revocation import RevocationCache  # noqa: E402
from horizonauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from horizonauth.service.social import SocialLoginService  # noqa: E402
from horizonauth.service.tokens import TokenCodec  # noqa: E402
from horizonauth.service.two_factor import TwoFactorEngine  # noqa: E402
from horizonauth.storage.memory import MemoryStore  # noqa: E402
from horizonauth.storage.redis_cache import MemoryCache  # noqa: E402

TEST_PASSWORD = "Secret123!"
CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.6099.109 Safari/537.36"
)
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)


@pytest.fixture(scope="session")
def rsa_key_pair():
    return generate_key_pair()


@pytest.fixture
def signing_keys(rsa_key_pair):
    private_pem, public_pem = rsa_key_pair
    return SigningKeys(public_pem=public_pem, kid="test-key-1", private_pem=private_pem)


@pytest.fixture
def codec(signing_keys):
    return TokenCodec(signing_keys, issuer="horizon-auth", audience="horizon-api")


@pytest.fixture(scope="session")
def passwords():
    return PasswordHasher()


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="test-mfa-key-material")


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def revocation(cache):
    return RevocationCache(cache)


@pytest.fixture
def two_factor(store):
    # bcrypt's minimum cost keeps backup-code tests fast
    return TwoFactorEngine(store, issuer="HorizonAuth", backup_code_rounds=4)


@pytest.fixture
def push_tokens(store):
    return PushTokenRegistry(store)


@pytest.fixture
def devices(store, revocation, push_tokens):
    return DeviceTracker(store, revocation=revocation, push_tokens=push_tokens)


@pytest.fixture
def accounts(store, revocation):
    return AccountManager(store, revocation=revocation)


@pytest.fixture
def outbox():
    """Messages handed to the email callback as ``(to, subject, html)``."""
    return []


@pytest.fixture
def email(outbox):
    async def capture(to, subject, html):
        outbox.append((to, subject, html))

    return EmailDispatcher(CallbackEmailProvider(capture), base_url="https://app.example.com")


@pytest.fixture
def auth(store, codec, revocation, passwords, two_factor, devices, accounts, email):
    return AuthService(
        store,
        codec,
        revocation,
        passwords,
        two_factor=two_factor,
        devices=devices,
        accounts=accounts,
        email=email,
    )


@pytest.fixture
def bare_auth(store, codec, revocation, passwords):
    """AuthService with every optional subsystem left out."""
    return AuthService(store, codec, revocation, passwords)


@pytest.fixture
def oauth(store, auth):
    return OAuthBridge(store, auth)


@pytest.fixture
def social(store, auth):
    return SocialLoginService(store, auth)


@pytest.fixture
def device_info():
    return DeviceInfo(user_agent=CHROME_UA, device_name="Work laptop", ip="203.0.113.7")


@pytest.fixture
def runtime():
    return reset_runtime_for_tests()


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
