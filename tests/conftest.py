import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the runtime before anything imports tenantgate
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("OLLAMA_URL", "http://ollama.test:11434")

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantgate.service.llm import InferenceProxy  # noqa: E402
from tenantgate.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def client():
    from tenantgate import app as app_module

    return TestClient(app_module.app)


class FakeOllama:
    """Records upstream calls and answers like an Ollama server."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.chat_reply = {
            "model": "llama2",
            "message": {"role": "assistant", "content": "Hello from the model"},
            "created_at": "2024-01-01T00:00:00Z",
            "done": True,
        }
        self.tags_reply = {"models": [{"name": "llama2:latest"}, {"name": "mistral:latest"}]}
        self.fail_with: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, text="model 'missing' not found")
        if request.url.path == "/api/chat":
            return httpx.Response(200, json=self.chat_reply)
        if request.url.path == "/api/tags":
            return httpx.Response(200, json=self.tags_reply)
        if request.url.path == "/":
            return httpx.Response(200, text="Ollama is running")
        return httpx.Response(404, text="not found")

    def proxy(self, base_url: str = "http://ollama.test:11434") -> InferenceProxy:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return InferenceProxy(base_url, timeout=5.0, client=client)


@pytest.fixture
def fake_ollama():
    fake = FakeOllama()
    get_runtime().inference = fake.proxy()
    return fake


def _register_tenant(client, domain="acme.com", email=None, username="admin", password="SecurePass123"):
    response = client.post(
        "/api/auth/register",
        json={
            "tenant_name": f"{domain.split('.')[0].title()} Corp",
            "domain": domain,
            "username": username,
            "email": email or f"admin@{domain}",
            "password": password,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth_headers(token: str, tenant_id: str | None = None) -> dict:
    headers = {"Authorization": f"Bearer {token}"}
    if tenant_id is not None:
        headers["X-Tenant-ID"] = tenant_id
    return headers


@pytest.fixture
def register(client):
    """Register a tenant with its admin through the API; returns the response data."""
    return lambda **kwargs: _register_tenant(client, **kwargs)


@pytest.fixture
def auth_headers():
    return _auth_headers


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
