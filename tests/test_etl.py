import asyncio

import httpx
import pytest

from app.brink import Employee
from app.errors import UkgError
from app.etl import dry_run_preview, format_date_for_ukg, load_to_ukg, run_pipeline, transform_employee
from app.main import get_async_http_client, get_brink_client
from tests.fakes import ACCESS_TOKEN, CASTLE_ROCK, brink_client, make_client, soap

MANAGER = Employee(
    "11",
    "Ana",
    "Ruiz",
    job_code_id="10",
    security_level_id="1",
    hire_date="2019-03-04T00:00:00",
    pay_rate=21.5,
    ssn="123-45-6789",
    date_of_birth="1990-07-08T00:00:00",
    email="ana@example.test",
    phone="555-0100",
    address="1 Main St",
    city="Denver",
    state="CO",
    zip_code="80202",
)
CREW = Employee("12", "Bo", "Lee", active=False, job_code_id="99", hire_date="03/04/2019")

EMPLOYEES_XML = soap(
    "<Employees>"
    "<Employee><Id>11</Id><FirstName>Ana</FirstName><LastName>Ruiz</LastName><JobCodeId>10</JobCodeId>"
    "<SecurityLevelId>1</SecurityLevelId><SocialSecurityNumber>123-45-6789</SocialSecurityNumber>"
    "<EmailAddress>ana@example.test</EmailAddress></Employee>"
    "<Employee><Id>12</Id><FirstName>Bo</FirstName><LastName>Lee</LastName><JobCodeId>20</JobCodeId></Employee>"
    "</Employees>"
)


class FakeUkgClient:
    def __init__(self, connected: bool = True, counts=(10, 11)) -> None:
        self.connected = connected
        self.counts = list(counts)
        self.loaded = []

    async def test_connection(self) -> bool:
        return self.connected

    async def get_employee_count(self) -> int:
        return self.counts.pop(0)

    async def batch_create_employees(self, employees):
        self.loaded.extend(employees)
        return {
            "totalProcessed": len(employees),
            "successful": len(employees) - 1,
            "failed": 1,
            "results": [],
            "errors": ["Employee 12: Duplicate employee"],
        }


def test_format_date_for_ukg() -> None:
    assert format_date_for_ukg("2019-03-04T00:00:00") == "2019-03-04"
    assert format_date_for_ukg("2019-03-04T23:30:00Z") == "2019-03-04"
    assert format_date_for_ukg("03/04/2019") == "03/04/2019"
    assert format_date_for_ukg(None) is None


def test_transform_employee() -> None:
    record = transform_employee(MANAGER)
    assert record["employeeNumber"] == "11"
    assert record["jobTitle"] == "Manager"
    assert record["department"] == "Manager"
    assert record["hireDate"] == "2019-03-04"
    assert record["birthDate"] == "1990-07-08"
    assert record["address"] == {"street": "1 Main St", "city": "Denver", "state": "CO", "zipCode": "80202"}

    other = transform_employee(CREW)
    assert other["jobTitle"] == "Job Code 99"
    assert other["department"] == "Security Level "
    assert other["address"] is None
    assert other["isActive"] is False


def test_dry_run_preview_statistics() -> None:
    preview = dry_run_preview([transform_employee(MANAGER), transform_employee(CREW)])
    stats = preview["statistics"]
    assert stats["totalEmployees"] == 2
    assert stats["activeEmployees"] == 1
    assert stats["inactiveEmployees"] == 1
    assert stats["withEmail"] == 1
    assert stats["withPhone"] == 1
    assert stats["jobDistribution"] == {"Manager": 1, "Job Code 99": 1}
    assert len(preview["sampleEmployees"]) == 2


def test_load_to_ukg_summarizes_batch() -> None:
    client = FakeUkgClient()
    result = asyncio.run(load_to_ukg([transform_employee(MANAGER), transform_employee(CREW)], client))
    assert result["employeeCountBefore"] == 10
    assert result["employeeCountAfter"] == 11
    assert result["employeesAdded"] == 1
    assert result["summary"] == {"totalProcessed": 2, "successful": 1, "failed": 1, "successRate": "50.0%"}
    assert [e["employeeNumber"] for e in client.loaded] == ["11", "12"]


def test_load_to_ukg_requires_connection() -> None:
    with pytest.raises(UkgError, match="connection test failed"):
        asyncio.run(load_to_ukg([], FakeUkgClient(connected=False)))


def test_run_pipeline_modes() -> None:
    dry = asyncio.run(run_pipeline([MANAGER, CREW]))
    assert dry["extracted"] == 2
    assert len(dry["preview"]) == 2
    assert dry["loadResult"]["message"].startswith("Dry run completed")

    live = asyncio.run(run_pipeline([MANAGER], dry_run=False, client=FakeUkgClient(counts=(5, 5))))
    assert "preview" not in live
    assert live["loadResult"]["employeesAdded"] == 0

    with pytest.raises(UkgError, match="configuration required"):
        asyncio.run(run_pipeline([MANAGER], dry_run=False))


def test_etl_route_dry_run() -> None:
    client = make_client(overrides={get_brink_client: lambda: brink_client({"GetEmployees": EMPLOYEES_XML})})
    tokens = {"accessToken": ACCESS_TOKEN, "locationToken": CASTLE_ROCK}
    with client:
        assert client.post("/api/etl/par-brink-to-ukg").status_code == 400

        live = client.post("/api/etl/par-brink-to-ukg", json={**tokens, "dryRun": False})
        assert live.status_code == 400
        assert live.json()["error"] == "UKG Ready configuration required for live ETL"

        resp = client.post("/api/etl/par-brink-to-ukg", json=tokens)
        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "ETL Pipeline completed successfully (dry run)"
        assert body["data"]["loadResult"]["statistics"]["jobDistribution"] == {"Manager": 1, "Crew Member": 1}


def test_etl_route_reports_extract_failure() -> None:
    client = make_client(overrides={get_brink_client: lambda: brink_client({"GetEmployees": (401, "")})})
    with client:
        resp = client.post(
            "/api/etl/par-brink-to-ukg", json={"accessToken": ACCESS_TOKEN, "locationToken": CASTLE_ROCK}
        )
        assert resp.status_code == 500
        assert resp.json()["error"] == "ETL Pipeline failed"
        assert "authentication failed" in resp.json()["details"]


def test_employee_probe_omits_sensitive_fields() -> None:
    client = make_client(overrides={get_brink_client: lambda: brink_client({"GetEmployees": EMPLOYEES_XML})})
    with client:
        resp = client.post(
            "/api/test/par-brink-employees", json={"accessToken": ACCESS_TOKEN, "locationToken": CASTLE_ROCK}
        )
        body = resp.json()
        assert body["count"] == 2
        assert body["data"][0]["EmployeeId"] == "11"
        assert all("SocialSecurityNumber" not in record and "ssn" not in record for record in body["data"])


def test_ukg_connection_probe() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/authentication/access_token":
            return httpx.Response(200, json={"access_token": "tok"})
        if request.url.path.endswith("/count"):
            return httpx.Response(200, json={"count": 7})
        return httpx.Response(200, json=[])

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = make_client(overrides={get_async_http_client: lambda: http})
    credentials = {
        "baseUrl": "https://ukg.example.test",
        "clientId": "cid",
        "clientSecret": "cs",
        "username": "u",
        "password": "p",
        "companyShortName": "ACME",
    }
    with client:
        resp = client.post("/api/test/ukg-ready-connection", json=credentials)
        assert resp.json()["data"] == {"connected": True, "employeeCount": 7}

        incomplete = client.post("/api/test/ukg-ready-connection", json={"baseUrl": "x"})
        assert incomplete.status_code == 400
