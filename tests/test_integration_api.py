"""End-to-end tests through the FastAPI app with the in-memory store.

Covers registration, login, logout, admin user management, tenant and
session routes, and the tenant-scoped inference proxy.
"""

import json

import pytest
from fastapi.testclient import TestClient

from tenantgate.service.runtime import get_runtime


def _login(client, email, password, **selector):
    return client.post("/api/auth/login", json={"email": email, "password": password, **selector})


class TestRegistration:
    def test_register_then_me(self, client, register, auth_headers):
        data = register(domain="acme.com")

        assert data["token"]
        assert data["tenant"]["domain"] == "acme.com"
        assert data["user"]["role"] == "admin"
        assert "password" not in data["user"]

        response = client.get("/api/auth/me", headers=auth_headers(data["token"]))
        assert response.status_code == 200
        body = response.json()["data"]
        assert body["user"]["email"] == "admin@acme.com"
        assert body["tenant"]["domain"] == "acme.com"
        assert body["scope"] == ["admin", "user"]

    def test_register_duplicate_domain_conflicts(self, client, register):
        register(domain="acme.com")

        response = client.post(
            "/api/auth/register",
            json={
                "tenant_name": "Acme Again",
                "domain": "acme.com",
                "username": "other",
                "email": "other@acme.com",
                "password": "SecurePass123",
            },
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_accepts_camel_case_tenant_name(self, client):
        response = client.post(
            "/api/auth/register",
            json={
                "tenantName": "Globex",
                "domain": "globex.com",
                "username": "hank",
                "email": "hank@globex.com",
                "password": "SecurePass123",
            },
        )

        assert response.status_code == 201

    @pytest.mark.parametrize(
        "override",
        [
            {"domain": "not a domain"},
            {"username": "no spaces allowed"},
            {"username": "ab"},
            {"email": "invalid-email"},
            {"password": "short"},
            {"tenant_name": "ab"},
        ],
    )
    def test_register_validates_payload(self, client, override):
        payload = {
            "tenant_name": "Acme Corp",
            "domain": "acme.com",
            "username": "admin",
            "email": "admin@acme.com",
            "password": "SecurePass123",
            **override,
        }

        response = client.post("/api/auth/register", json=payload)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"


class TestLogin:
    def test_login_by_domain_and_by_tenant_id(self, client, register):
        data = register(domain="acme.com")

        by_domain = _login(client, "admin@acme.com", "SecurePass123", domain="acme.com")
        by_id = _login(
            client, "admin@acme.com", "SecurePass123", tenant_id=data["tenant"]["tenant_id"]
        )

        assert by_domain.status_code == 200
        assert by_id.status_code == 200
        assert by_domain.json()["data"]["session_id"]
        assert "password" not in by_domain.json()["data"]["user"]

    def test_login_records_session_with_user_agent(self, client, register, auth_headers):
        register(domain="acme.com")

        response = client.post(
            "/api/auth/login",
            json={"email": "admin@acme.com", "password": "SecurePass123", "domain": "acme.com"},
            headers={"User-Agent": "pytest-agent"},
        )
        data = response.json()["data"]

        session = client.get(
            f"/api/sessions/{data['session_id']}", headers=auth_headers(data["token"])
        )
        assert session.status_code == 200
        assert session.json()["data"]["user_agent"] == "pytest-agent"

    def test_wrong_domain_is_not_found(self, client, register):
        register(domain="acme.com")

        response = _login(client, "admin@acme.com", "SecurePass123", domain="wrong.com")

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Tenant not found"

    def test_tenant_id_that_names_another_record_is_not_found(self, client, register):
        data = register(domain="acme.com")
        tenant_id = data["tenant"]["tenant_id"]
        user_id = data["user"]["user_id"]

        for selector in ("domain:acme.com", f"{tenant_id}:user:{user_id}"):
            response = _login(client, "admin@acme.com", "SecurePass123", tenant_id=selector)

            assert response.status_code == 404
            assert response.json()["error"]["code"] == "not_found"
            assert response.json()["error"]["message"] == "Tenant not found"

    def test_wrong_password_and_unknown_email_look_identical(self, client, register):
        register(domain="acme.com")

        wrong_password = _login(client, "admin@acme.com", "WrongPass999", domain="acme.com")
        unknown_email = _login(client, "nobody@acme.com", "SecurePass123", domain="acme.com")

        assert wrong_password.status_code == unknown_email.status_code == 401
        assert wrong_password.json()["error"] == unknown_email.json()["error"]
        assert wrong_password.json()["error"]["message"] == "Invalid credentials"

    def test_requires_exactly_one_tenant_selector(self, client, register):
        data = register(domain="acme.com")

        neither = _login(client, "admin@acme.com", "SecurePass123")
        both = _login(
            client,
            "admin@acme.com",
            "SecurePass123",
            domain="acme.com",
            tenant_id=data["tenant"]["tenant_id"],
        )

        assert neither.status_code == 422
        assert both.status_code == 422

    def test_inactive_tenant_is_forbidden(self, client, register, auth_headers):
        data = register(domain="acme.com")
        tenant_id = data["tenant"]["tenant_id"]
        client.patch(
            "/api/tenant",
            json={"status": "suspended"},
            headers=auth_headers(data["token"], tenant_id),
        )

        response = _login(client, "admin@acme.com", "SecurePass123", domain="acme.com")

        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Tenant is not active"

    def test_inactive_user_is_forbidden(self, client, register, auth_headers):
        data = register(domain="acme.com")
        created = client.post(
            "/api/users",
            json={"username": "bob", "email": "bob@acme.com", "password": "BobPass1234"},
            headers=auth_headers(data["token"]),
        ).json()["data"]
        client.patch(
            f"/api/users/{created['user_id']}",
            json={"status": "inactive"},
            headers=auth_headers(data["token"]),
        )

        response = _login(client, "bob@acme.com", "BobPass1234", domain="acme.com")

        assert response.status_code == 403
        assert response.json()["error"]["message"] == "User account is not active"


class TestLogout:
    def test_logout_revokes_token(self, client, register, auth_headers):
        data = register(domain="acme.com")
        headers = auth_headers(data["token"])

        assert client.post("/api/auth/logout", headers=headers).status_code == 200

        response = client.get("/api/auth/me", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_logout_requires_token(self, client):
        assert client.post("/api/auth/logout").status_code == 401


class TestAuthentication:
    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": "Bearer"},
            {"Authorization": "Bearer not.a.token"},
            {"Authorization": "Basic YWRtaW46cGFzcw=="},
        ],
    )
    def test_rejects_bad_credentials(self, client, headers):
        response = client.get("/api/auth/me", headers=headers)

        assert response.status_code == 401
        assert response.json()["status"] == "error"

    def test_token_for_deleted_user_is_rejected_like_bad_token(self, client, register, auth_headers):
        data = register(domain="acme.com")
        runtime = get_runtime()
        token = runtime.tokens.issue("ghost", data["tenant"]["tenant_id"], "admin")

        ghost = client.get("/api/auth/me", headers=auth_headers(token))
        garbage = client.get("/api/auth/me", headers=auth_headers("x.y.z"))

        assert ghost.status_code == garbage.status_code == 401
        assert ghost.json()["error"] == garbage.json()["error"]


class TestUserManagement:
    def test_duplicate_email_conflicts_only_within_tenant(self, client, register, auth_headers):
        acme = register(domain="acme.com")
        globex = register(domain="globex.com")
        bob = {"username": "bob", "email": "bob@acme.com", "password": "BobPass1234"}

        first = client.post("/api/users", json=bob, headers=auth_headers(acme["token"]))
        again = client.post("/api/users", json=bob, headers=auth_headers(acme["token"]))
        elsewhere = client.post("/api/users", json=bob, headers=auth_headers(globex["token"]))

        assert first.status_code == 201
        assert first.json()["data"]["role"] == "user"
        assert again.status_code == 409
        assert again.json()["error"]["message"] == "User with this email already exists in tenant"
        assert elsewhere.status_code == 201

    def test_non_admin_is_forbidden_not_unauthorized(self, client, register, auth_headers):
        admin = register(domain="acme.com")
        client.post(
            "/api/users",
            json={"username": "bob", "email": "bob@acme.com", "password": "BobPass1234"},
            headers=auth_headers(admin["token"]),
        )
        bob_token = _login(client, "bob@acme.com", "BobPass1234", domain="acme.com").json()["data"]["token"]

        listing = client.get("/api/users", headers=auth_headers(bob_token))
        creating = client.post(
            "/api/users",
            json={"username": "eve", "email": "eve@acme.com", "password": "EvePass1234"},
            headers=auth_headers(bob_token),
        )

        assert listing.status_code == 403
        assert creating.status_code == 403
        assert listing.json()["error"]["code"] == "forbidden"

    def test_list_get_and_update_users(self, client, register, auth_headers):
        admin = register(domain="acme.com")
        headers = auth_headers(admin["token"])
        created = client.post(
            "/api/users",
            json={"username": "bob", "email": "bob@acme.com", "password": "BobPass1234"},
            headers=headers,
        ).json()["data"]

        listing = client.get("/api/users", headers=headers).json()["data"]
        assert listing["count"] == 2
        assert all("password" not in u for u in listing["users"])

        fetched = client.get(f"/api/users/{created['user_id']}", headers=headers)
        assert fetched.json()["data"]["email"] == "bob@acme.com"

        promoted = client.patch(
            f"/api/users/{created['user_id']}", json={"role": "admin"}, headers=headers
        )
        assert promoted.json()["data"]["role"] == "admin"

        assert client.get("/api/users/missing", headers=headers).status_code == 404

    def test_user_id_that_names_an_index_key_is_not_found(self, client, register, auth_headers):
        admin = register(domain="acme.com")
        headers = auth_headers(admin["token"])

        fetched = client.get("/api/users/email:admin@acme.com", headers=headers)
        patched = client.patch(
            "/api/users/email:admin@acme.com", json={"role": "user"}, headers=headers
        )

        assert fetched.status_code == 404
        assert fetched.json()["error"]["message"] == "User not found"
        assert patched.status_code == 404

    def test_admin_cannot_reach_other_tenant_users(self, client, register, auth_headers):
        acme = register(domain="acme.com")
        globex = register(domain="globex.com")

        response = client.get(
            f"/api/users/{globex['user']['user_id']}", headers=auth_headers(acme["token"])
        )

        assert response.status_code == 404


class TestTenantAndSessions:
    def test_get_and_update_tenant(self, client, register, auth_headers):
        data = register(domain="acme.com")
        tenant_id = data["tenant"]["tenant_id"]

        fetched = client.get("/api/tenant", headers=auth_headers(data["token"]))
        assert fetched.json()["data"]["status"] == "active"

        without_header = client.patch(
            "/api/tenant", json={"name": "Acme Inc"}, headers=auth_headers(data["token"])
        )
        assert without_header.status_code == 403

        updated = client.patch(
            "/api/tenant",
            json={"name": "Acme Inc", "settings": {"max_users": 10}},
            headers=auth_headers(data["token"], tenant_id),
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["name"] == "Acme Inc"
        assert updated.json()["data"]["settings"] == {"max_users": 10}

    def test_sessions_are_tenant_scoped(self, client, register, auth_headers):
        register(domain="acme.com")
        globex = register(domain="globex.com")
        acme_login = _login(client, "admin@acme.com", "SecurePass123", domain="acme.com").json()["data"]

        foreign = client.get(
            f"/api/sessions/{acme_login['session_id']}", headers=auth_headers(globex["token"])
        )
        assert foreign.status_code == 404

        own = client.delete(
            f"/api/sessions/{acme_login['session_id']}", headers=auth_headers(acme_login["token"])
        )
        assert own.status_code == 200
        gone = client.get(
            f"/api/sessions/{acme_login['session_id']}", headers=auth_headers(acme_login["token"])
        )
        assert gone.status_code == 404

    def test_session_id_that_names_another_key_is_not_found(self, client, register, auth_headers):
        data = register(domain="acme.com")
        tenant_id = data["tenant"]["tenant_id"]

        for session_id in (f"tenant:{tenant_id}", "domain:acme.com"):
            response = client.get(f"/api/sessions/{session_id}", headers=auth_headers(data["token"]))

            assert response.status_code == 404


class TestInferenceProxy:
    def _chat_body(self, **overrides):
        return {
            "model": "llama2",
            "messages": [{"role": "user", "content": "Hello"}],
            **overrides,
        }

    def test_chat_is_annotated_with_identity(self, client, register, auth_headers, fake_ollama):
        data = register(domain="acme.com")
        tenant_id = data["tenant"]["tenant_id"]

        response = client.post(
            "/api/llm/chat",
            json=self._chat_body(stream=True),
            headers=auth_headers(data["token"], tenant_id),
        )

        assert response.status_code == 200
        body = response.json()["data"]
        assert body["tenant_id"] == tenant_id
        assert body["user_id"] == data["user"]["user_id"]
        assert body["message"]["content"] == "Hello from the model"
        assert json.loads(fake_ollama.requests[0].content)["stream"] is False

    def test_mismatched_tenant_never_reaches_upstream(self, client, register, auth_headers, fake_ollama):
        acme = register(domain="acme.com")
        globex = register(domain="globex.com")

        response = client.post(
            "/api/llm/chat",
            json=self._chat_body(),
            headers=auth_headers(acme["token"], globex["tenant"]["tenant_id"]),
        )

        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Tenant ID does not match authenticated user"
        assert fake_ollama.requests == []

    def test_missing_tenant_header_is_forbidden(self, client, register, auth_headers, fake_ollama):
        data = register(domain="acme.com")

        response = client.post(
            "/api/llm/chat", json=self._chat_body(), headers=auth_headers(data["token"])
        )

        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Missing X-Tenant-ID header"
        assert fake_ollama.requests == []

    def test_chat_without_token_is_unauthorized(self, client, fake_ollama):
        response = client.post(
            "/api/llm/chat", json=self._chat_body(), headers={"X-Tenant-ID": "anything"}
        )

        assert response.status_code == 401
        assert fake_ollama.requests == []

    @pytest.mark.parametrize(
        "body",
        [
            {"model": "llama2", "messages": []},
            {"model": "llama2", "messages": [{"role": "robot", "content": "hi"}]},
            {"messages": [{"role": "user", "content": "hi"}]},
            {"model": "llama2", "messages": [{"role": "user", "content": "hi"}], "options": {"temperature": 5}},
        ],
    )
    def test_chat_validates_payload(self, client, register, auth_headers, fake_ollama, body):
        data = register(domain="acme.com")

        response = client.post(
            "/api/llm/chat", json=body, headers=auth_headers(data["token"], data["tenant"]["tenant_id"])
        )

        assert response.status_code == 422
        assert fake_ollama.requests == []

    def test_upstream_failure_is_bad_gateway(self, client, register, auth_headers, fake_ollama):
        data = register(domain="acme.com")
        fake_ollama.fail_with = 404

        response = client.post(
            "/api/llm/chat",
            json=self._chat_body(),
            headers=auth_headers(data["token"], data["tenant"]["tenant_id"]),
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "bad_gateway"
        assert "not found" in response.json()["error"]["message"]

    def test_models_are_annotated_with_tenant(self, client, register, auth_headers, fake_ollama):
        data = register(domain="acme.com")
        tenant_id = data["tenant"]["tenant_id"]

        response = client.get("/api/llm/models", headers=auth_headers(data["token"], tenant_id))

        assert response.status_code == 200
        assert response.json()["data"]["tenant_id"] == tenant_id
        assert len(response.json()["data"]["models"]) == 2

    def test_llm_health(self, client, fake_ollama):
        assert client.get("/api/llm/health").status_code == 200

        fake_ollama.fail_with = 500
        response = client.get("/api/llm/health")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"


class TestSystemRoutes:
    def test_health_and_index(self, client):
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["data"]["store"] == "healthy"

        index = client.get("/")
        assert index.status_code == 200
        assert index.json()["data"]["endpoints"]["llm"]["chat"] == "POST /api/llm/chat"

    def test_health_reports_store_outage(self, client, monkeypatch):
        async def broken_ping():
            raise ConnectionError("redis down")

        monkeypatch.setattr(get_runtime().store, "ping", broken_ping)

        response = client.get("/health")
        assert response.status_code == 503

    def test_store_outage_on_login_is_server_error(self, monkeypatch):
        from tenantgate import app as app_module

        async def broken_get(key):
            raise ConnectionError("redis down")

        monkeypatch.setattr(get_runtime().store, "get", broken_get)
        client = TestClient(app_module.app, raise_server_exceptions=False)

        response = _login(client, "admin@acme.com", "SecurePass123", domain="acme.com")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"
