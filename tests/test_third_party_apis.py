import httpx

from app.main import get_http_client, get_secret_store
from app.models import ThirdPartyAPIAudit
from app.third_party import ThirdPartyAPIRepository, build_auth_headers, resolve_brink_access_token
from app.vault import SecretStore
from tests.fakes import FakeSecretClient, make_client, make_session_factory

BRINK_API = {
    "TenantId": "t1",
    "Name": "PAR Brink Production",
    "Provider": "PAR Brink",
    "BaseUrl": "https://api11.brinkpos.net",
    "AuthType": "custom",
    "Category": "POS",
    "ConfigurationJson": {"accessToken": "from-config"},
}


def _make_client(session_factory=None):
    vault = FakeSecretClient()
    store = SecretStore(client=vault)
    client = make_client(session_factory, overrides={get_secret_store: lambda: store})
    return client, vault


def test_register_and_fetch_api() -> None:
    client, _ = _make_client()
    with client:
        resp = client.post("/api/third-party-apis", json=BRINK_API)
        assert resp.status_code == 201
        api = resp.json()["data"]
        assert api["Provider"] == "PAR Brink"
        assert api["IsActive"] is True
        assert api["ConfigurationJson"] == {"accessToken": "from-config"}

        listed = client.get("/api/third-party-apis").json()
        assert listed["count"] == 1
        assert client.get("/api/third-party-apis", params={"provider": "Weather"}).json()["count"] == 0

        fetched = client.get(f"/api/third-party-apis/{api['Id']}")
        assert fetched.json()["data"]["Name"] == "PAR Brink Production"


def test_register_requires_core_fields() -> None:
    client, _ = _make_client()
    with client:
        resp = client.post("/api/third-party-apis", json={"Name": "Incomplete"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Missing required fields: Name, Provider, BaseUrl, AuthType"


def test_duplicate_registration_conflicts() -> None:
    client, _ = _make_client()
    with client:
        assert client.post("/api/third-party-apis", json=BRINK_API).status_code == 201
        resp = client.post("/api/third-party-apis", json=BRINK_API)
        assert resp.status_code == 409
        assert "already exists" in resp.json()["error"]


def test_duplicate_global_registration_conflicts() -> None:
    global_api = {key: value for key, value in BRINK_API.items() if key != "TenantId"}
    client, _ = _make_client()
    with client:
        assert client.post("/api/third-party-apis", json=global_api).status_code == 201
        resp = client.post("/api/third-party-apis", json=global_api)
        assert resp.status_code == 409
        # the same name under a tenant is a separate registration
        assert client.post("/api/third-party-apis", json=BRINK_API).status_code == 201


def test_update_cannot_collide_with_another_api() -> None:
    client, _ = _make_client()
    with client:
        client.post("/api/third-party-apis", json=BRINK_API)
        staging = {**BRINK_API, "Name": "PAR Brink Staging"}
        api_id = client.post("/api/third-party-apis", json=staging).json()["data"]["Id"]
        url = f"/api/third-party-apis/{api_id}"
        assert client.put(url, json={"Name": "PAR Brink Production"}).status_code == 409
        renamed = client.put(url, json={"Name": "PAR Brink Staging", "Version": "2"})
        assert renamed.status_code == 200


def test_update_and_soft_delete_api() -> None:
    client, _ = _make_client()
    with client:
        api_id = client.post("/api/third-party-apis", json=BRINK_API).json()["data"]["Id"]

        assert client.put(f"/api/third-party-apis/{api_id}", json={}).status_code == 400

        resp = client.put(f"/api/third-party-apis/{api_id}", json={"Version": "2.0", "Description": "prod"})
        assert resp.status_code == 200
        assert resp.json()["data"]["Version"] == "2.0"

        assert client.put("/api/third-party-apis/999", json={"Version": "x"}).status_code == 404

        assert client.delete(f"/api/third-party-apis/{api_id}").status_code == 200
        assert client.get(f"/api/third-party-apis/{api_id}").status_code == 404
        assert client.get("/api/third-party-apis").json()["count"] == 0


def test_configuration_flow_stores_auth_in_vault() -> None:
    client, vault = _make_client()
    payload = {
        "tenantId": "t1",
        "name": "OpenWeather",
        "category": "Weather",
        "provider": "OpenWeather",
        "baseUrl": "https://api.openweathermap.org",
        "authConfig": {"type": "apikey", "apiKey": "k"},
    }
    with client:
        resp = client.post("/api/third-party-apis/configurations", json=payload)
        assert resp.status_code == 201
        api = resp.json()["data"]
        assert api["AuthType"] == "apikey"
        assert api["KeyVaultSecretName"].startswith("third-party-api-t1-openweather-")
        assert api["KeyVaultSecretName"] in vault.secrets

        dup = client.post("/api/third-party-apis/configurations", json=payload)
        assert dup.status_code == 409
        # the secret written for the rejected duplicate is removed again
        assert len(vault.secrets) <= 1

        missing = client.post("/api/third-party-apis/configurations", json={"name": "x"})
        assert missing.status_code == 400
        assert missing.json()["error"] == "Missing required fields: category, baseUrl, authConfig"


def test_configuration_flow_removes_secret_when_insert_fails() -> None:
    factory = make_session_factory()
    ThirdPartyAPIAudit.__table__.drop(factory.kw["bind"])
    client, vault = _make_client(factory)
    payload = {
        "name": "OpenWeather",
        "category": "Weather",
        "baseUrl": "https://api.openweathermap.org",
        "authConfig": {"type": "apikey", "apiKey": "k"},
    }
    with client:
        resp = client.post("/api/third-party-apis/configurations", json=payload)
        assert resp.status_code == 500
        assert resp.json()["error"] == "Failed to create API configuration"
        assert vault.secrets == {}


def test_database_probe() -> None:
    client, _ = _make_client()
    with client:
        resp = client.get("/api/third-party-apis/test-connection")
        assert resp.status_code == 200
        assert resp.json()["details"]["dialect"] == "sqlite"


def test_connection_test_uses_auth_headers() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/health":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(503)

    http = httpx.Client(transport=httpx.MockTransport(handler))
    client = make_client(overrides={get_http_client: lambda: http})
    with client:
        ok = client.post(
            "/api/third-party-apis/test",
            json={
                "baseUrl": "https://example.test/",
                "authType": "bearer",
                "credentials": {"token": "abc"},
                "healthCheckEndpoint": "/health",
            },
        ).json()
        assert ok["success"] is True
        assert ok["status"] == 200
        assert seen[0].headers["Authorization"] == "Bearer abc"
        assert seen[0].headers["User-Agent"] == "UKG-Sync-App/1.0"

        down = client.post("/api/third-party-apis/test", json={"baseUrl": "https://example.test"}).json()
        assert down["success"] is False
        assert down["message"] == "HTTP 503: Service Unavailable"

        invalid = client.post("/api/third-party-apis/test", json={})
        assert invalid.status_code == 400
        assert invalid.json()["error"] == "Invalid request"


def test_build_auth_headers() -> None:
    assert build_auth_headers("apikey", {"apiKey": "k", "headerName": "X-Key"}) == {"X-Key": "k"}
    assert build_auth_headers("ApiKey", {"apiKey": "k"}) == {"X-API-Key": "k"}
    assert build_auth_headers("basic", {"username": "u", "password": "p"}) == {"Authorization": "Basic dTpw"}
    assert build_auth_headers("bearer", {}) == {}
    assert build_auth_headers("none", None) == {}


def test_resolve_brink_access_token_prefers_vault() -> None:
    session = make_session_factory()()
    repo = ThirdPartyAPIRepository(session)
    assert resolve_brink_access_token(repo, None, "env-token") == "env-token"

    vault = FakeSecretClient()
    secrets = SecretStore(client=vault)
    repo.create_api({**BRINK_API, "KeyVaultSecretName": "brink-secret"})
    assert resolve_brink_access_token(repo, secrets, "env-token") == "from-config"

    secrets.store_json("brink-secret", {"accessToken": "from-vault"})
    assert resolve_brink_access_token(repo, secrets, "env-token") == "from-vault"

    secrets.store_json("brink-secret", {"accessToken": "demo-access-token"})
    secrets.cache.flush()
    assert resolve_brink_access_token(repo, secrets, "env-token") == "env-token"
    session.close()
