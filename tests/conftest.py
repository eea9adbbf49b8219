import asyncio
import inspect
import os
import sys
from pathlib import Path
from urllib.parse import parse_qsl, quote

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_JSON", "false")

import httpx  # noqa: E402
import pytest  # noqa: E402
from starlette.requests import Request  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from bffauth.config import Settings, reset_settings_cache  # noqa: E402
from bffauth.service.discovery import OpenIDDiscovery  # noqa: E402
from bffauth.service.oauth import OAuthAuthenticationService  # noqa: E402
from bffauth.session.manager import SessionManager  # noqa: E402
from bffauth.session.signing import sign  # noqa: E402
from bffauth.storage.memory import MemorySessionStore  # noqa: E402

ISSUER = "https://idp.example.com"
SESSION_SECRET = "test-session-secret-do-not-use-in-production"


class FakeIdP:
    """In-process OpenID provider served through ``httpx.MockTransport``."""

    def __init__(self):
        self.requests = []
        self.token_forms = []
        self.revoked = []
        self.token_responses = []
        self.userinfo_responses = []
        self.fail_refresh_tokens = set()
        self.discovery_status = 200
        self.revoke_status = 200
        self.expires_in = 3600
        self.token_gate = None
        self.user_info = {
            "sub": "user-1",
            "email": "ada@example.com",
            "name": "Ada Lovelace",
            "preferred_username": "ada",
        }
        self.config = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/oauth/token",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
            "end_session_endpoint": f"{ISSUER}/v2/logout",
            "revocation_endpoint": f"{ISSUER}/oauth/revoke",
        }
        self._issued = 0

    def count(self, path):
        return sum(1 for _, p in self.requests if p == path)

    def _issue_tokens(self):
        self._issued += 1
        n = self._issued
        return {
            "access_token": f"access-{n}",
            "refresh_token": f"refresh-{n}",
            "id_token": f"id-{n}",
            "expires_in": self.expires_in,
            "token_type": "Bearer",
        }

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))

        if path == "/.well-known/openid-configuration":
            if self.discovery_status != 200:
                return httpx.Response(self.discovery_status, json={"error": "unavailable"})
            return httpx.Response(200, json=self.config)

        if path == "/oauth/token":
            form = dict(parse_qsl(request.content.decode()))
            self.token_forms.append(form)
            if self.token_gate is not None:
                await self.token_gate.wait()
            if self.token_responses:
                status, body = self.token_responses.pop(0)
                return httpx.Response(status, json=body)
            if form.get("refresh_token") in self.fail_refresh_tokens:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self._issue_tokens())

        if path == "/userinfo":
            if self.userinfo_responses:
                item = self.userinfo_responses.pop(0)
                if isinstance(item, Exception):
                    raise item
                return item
            return httpx.Response(200, json=self.user_info)

        if path == "/oauth/revoke":
            form = dict(parse_qsl(request.content.decode()))
            self.revoked.append(form.get("token"))
            return httpx.Response(self.revoke_status)

        return httpx.Response(404)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def now_ms(self):
        return int(self.now * 1000)

    def advance(self, seconds):
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class FakeRedis:
    """Subset of the ``redis.asyncio`` client used by the session store."""

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.closed = False
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get(self, key):
        self._check()
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.values[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def expire(self, key, seconds):
        self._check()
        if key not in self.values:
            return False
        self.ttls[key] = seconds
        return True

    async def scan_iter(self, match=None):
        self._check()
        prefix = match[:-1] if match and match.endswith("*") else match
        for key in list(self.values):
            if prefix is None or key.startswith(prefix):
                yield key

    async def aclose(self):
        self.closed = True


def make_request(cookie=None, *, path="/", method="GET", headers=None):
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookie:
        raw_headers.append((b"cookie", cookie.encode()))
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "headers": raw_headers,
        "scheme": "http",
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 1234),
    }
    return Request(scope)


def session_cookie(manager, session_id, data):
    payload = manager.store.cookie_value(session_id, data)
    value = quote(sign(payload, manager.secrets[0], manager.algorithm), safe="")
    return f"{manager.cookie_name}={value}"


def authenticated_data(clock, *, expires_in_seconds=3600, refresh_token="refresh-old", **auth):
    data = {
        "auth": {
            "is_authenticated": True,
            "access_token": "access-old",
            "id_token": "id-old",
            "refresh_token": refresh_token,
            "expires_at": clock.now_ms() + expires_in_seconds * 1000,
            "user_info": {"sub": "user-1", "email": "ada@example.com"},
        },
        "user": {"sub": "user-1"},
    }
    data["auth"].update(auth)
    return data


def build_settings(**overrides):
    values = {
        "issuer": ISSUER,
        "client_id": "bff-client",
        "client_secret": "bff-client-secret",
        "callback_uri": "http://testserver/api/auth/callback",
        "session_secrets": [SESSION_SECRET],
        "token_refresh_api_key": "refresh-api-key",
        "logout_url": "http://testserver/",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return build_settings()


@pytest.fixture
def idp():
    return FakeIdP()


@pytest.fixture
def http_client(idp):
    return httpx.AsyncClient(transport=httpx.MockTransport(idp.handler))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def sessions(store, settings):
    return SessionManager(store, settings.session_secrets)


@pytest.fixture
def service(settings, sessions, http_client, clock, sleeper):
    discovery = OpenIDDiscovery(settings.issuer, http_client)
    return OAuthAuthenticationService(
        settings, sessions, discovery, http_client, clock=clock, sleep=sleeper
    )


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
