from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from app.errors import UkgError, UkgRequestError
from app.tenants import TenantService

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 3600
DEFAULT_TENANT_SCOPE = "read write"
MODULES = ("timeentries", "employees")


@dataclass
class UkgReadyConfig:
    base_url: str
    client_id: str
    client_secret: str
    username: str
    password: str
    company_short_name: str


def _token_payload(response: httpx.Response, failure: str) -> dict:
    try:
        payload = response.json()
    except ValueError as exc:
        raise UkgError(f"{failure}: token response is not JSON") from exc
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise UkgError(f"{failure}: token response has no access_token")
    return payload


def to_ukg_payload(employee: dict) -> dict:
    """Shape a transformed employee into the UKG Ready personnel body."""
    address = employee.get("address")
    return {
        "employeeNumber": employee.get("employeeNumber"),
        "firstName": employee.get("firstName"),
        "lastName": employee.get("lastName"),
        "middleName": employee.get("middleName"),
        "personalContact": {
            "email": employee.get("personalEmail"),
            "homePhone": employee.get("homePhone"),
            "address": {
                "line1": address.get("street"),
                "city": address.get("city"),
                "state": address.get("state"),
                "postalCode": address.get("zipCode"),
            }
            if address
            else None,
        },
        "employmentStatus": {
            "hireDate": employee.get("hireDate"),
            "terminationDate": employee.get("terminationDate"),
            "isActive": employee.get("isActive"),
        },
        "jobInformation": {
            "jobTitle": employee.get("jobTitle"),
            "department": employee.get("department"),
            "location": employee.get("location"),
            "payRate": employee.get("payRate"),
        },
        "personalInformation": {
            "ssn": employee.get("ssn"),
            "birthDate": employee.get("birthDate"),
        },
    }


class UkgReadyClient:
    """UKG Ready personnel API, authenticated with the password grant."""

    def __init__(
        self,
        config: UkgReadyConfig,
        http_client: httpx.AsyncClient,
        batch_size: int = 10,
        batch_delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.http = http_client
        self.batch_size = max(1, batch_size)
        self.batch_delay_seconds = batch_delay_seconds
        self._sleep = sleep
        self._clock = clock
        self.access_token: Optional[str] = None
        self.token_expiry: Optional[float] = None

    @property
    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    @property
    def employees_url(self) -> str:
        return f"{self.base_url}/personnel/v1/{self.config.company_short_name}/employees"

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}", "Accept": "application/json"}

    async def authenticate(self) -> None:
        form = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "username": self.config.username,
            "password": self.config.password,
            "grant_type": "password",
            "scope": "employee_management",
        }
        try:
            response = await self.http.post(
                f"{self.base_url}/authentication/access_token",
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise UkgError(f"UKG Ready authentication failed: {exc}") from exc
        if not response.is_success:
            raise UkgError(
                f"UKG Ready authentication failed: Authentication failed: "
                f"{response.status_code} {response.reason_phrase}"
            )
        payload = _token_payload(response, "UKG Ready authentication failed")
        self.access_token = payload["access_token"]
        self.token_expiry = self._clock() + float(payload.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
        logger.info("UKG Ready authentication successful")

    async def ensure_valid_token(self) -> None:
        if not self.access_token or self.token_expiry is None or self._clock() >= self.token_expiry:
            await self.authenticate()

    async def create_or_update_employee(self, employee: dict) -> dict:
        await self.ensure_valid_token()
        try:
            response = await self.http.post(
                self.employees_url,
                json=to_ukg_payload(employee),
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as exc:
            logger.error("Failed to create/update employee %s: %s", employee.get("employeeNumber"), exc)
            return {"success": False, "errors": [str(exc)]}
        try:
            result = response.json()
        except ValueError:
            result = {}
        if response.is_success:
            return {
                "success": True,
                "employeeId": result.get("employeeId") or employee.get("employeeNumber"),
                "warnings": result.get("warnings") or [],
            }
        return {
            "success": False,
            "errors": result.get("errors") or [f"HTTP {response.status_code}: {response.reason_phrase}"],
        }

    async def batch_create_employees(self, employees: list[dict]) -> dict:
        results: list[dict] = []
        errors: list[str] = []
        successful = 0
        failed = 0
        total_batches = (len(employees) + self.batch_size - 1) // self.batch_size

        for start in range(0, len(employees), self.batch_size):
            batch = employees[start : start + self.batch_size]
            logger.info("Processing UKG Ready batch %d/%d", start // self.batch_size + 1, total_batches)
            outcomes = await asyncio.gather(
                *(self.create_or_update_employee(employee) for employee in batch),
                return_exceptions=True,
            )
            for employee, outcome in zip(batch, outcomes):
                number = employee.get("employeeNumber")
                if isinstance(outcome, BaseException):
                    failed += 1
                    errors.append(f"Employee {number}: {outcome}")
                    results.append({"success": False, "errors": [str(outcome)]})
                    continue
                results.append(outcome)
                if outcome["success"]:
                    successful += 1
                else:
                    failed += 1
                    errors.append(f"Employee {number}: {', '.join(map(str, outcome.get('errors') or []))}")
            if start + self.batch_size < len(employees):
                await self._sleep(self.batch_delay_seconds)

        logger.info("UKG Ready batch complete", extra={"successful": successful, "failed": failed})
        return {
            "totalProcessed": len(employees),
            "successful": successful,
            "failed": failed,
            "results": results,
            "errors": errors,
        }

    async def test_connection(self) -> bool:
        try:
            await self.authenticate()
            response = await self.http.get(
                self.employees_url, params={"limit": 1}, headers=self._auth_headers()
            )
        except (UkgError, httpx.HTTPError) as exc:
            logger.warning("UKG Ready connection test failed: %s", exc)
            return False
        if not response.is_success:
            logger.warning("UKG Ready API test failed: %s %s", response.status_code, response.reason_phrase)
        return response.is_success

    async def get_employee_count(self) -> int:
        try:
            await self.ensure_valid_token()
            response = await self.http.get(f"{self.employees_url}/count", headers=self._auth_headers())
            if not response.is_success:
                logger.warning("Failed to get employee count: %s", response.status_code)
                return -1
            return int(response.json().get("count") or 0)
        except (UkgError, httpx.HTTPError, ValueError) as exc:
            logger.warning("Error getting employee count: %s", exc)
            return -1


# -- tenant-scoped REST gateway ------------------------------------------------


@dataclass
class UkgCall:
    method: str
    path: str
    params: Optional[dict] = None
    body: Any = None


def _filters(query: dict, *names: str) -> Optional[dict]:
    picked = {name: query[name] for name in names if query.get(name)}
    return picked or None


def _require_method(method: str, expected: str, action: str) -> None:
    if method != expected:
        raise UkgRequestError(f"{expected} method required for {action} action")


def _time_entries_call(action: Optional[str], method: str, query: dict, body: Any) -> UkgCall:
    entry_id = query.get("id")
    if action == "list":
        return UkgCall("GET", "/timeentries", _filters(query, "startDate", "endDate", "employeeId", "status"))
    if action == "get":
        if not entry_id:
            raise UkgRequestError("Time entry ID is required")
        return UkgCall("GET", f"/timeentries/{entry_id}")
    if action == "create":
        _require_method(method, "POST", action)
        return UkgCall("POST", "/timeentries", body=body)
    if action == "update":
        _require_method(method, "PUT", action)
        if not entry_id:
            raise UkgRequestError("Time entry ID is required")
        return UkgCall("PUT", f"/timeentries/{entry_id}", body=body)
    if action == "delete":
        _require_method(method, "DELETE", action)
        if not entry_id:
            raise UkgRequestError("Time entry ID is required")
        return UkgCall("DELETE", f"/timeentries/{entry_id}")
    if action in ("approve", "reject"):
        _require_method(method, "POST", action)
        return UkgCall("POST", f"/timeentries/{action}", body=body)
    if action == "payperiod":
        period = query.get("period")
        if not period:
            raise UkgRequestError("Pay period is required")
        return UkgCall("GET", f"/timeentries/payperiod/{period}")
    raise UkgRequestError(f"Unknown time entries action: {action}")


def _employees_call(action: Optional[str], method: str, query: dict, body: Any) -> UkgCall:
    employee_id = query.get("id")
    if action == "list":
        return UkgCall("GET", "/employees", _filters(query, "department", "status", "manager", "hireDate"))
    if action == "get":
        if not employee_id:
            raise UkgRequestError("Employee ID is required")
        return UkgCall("GET", f"/employees/{employee_id}")
    if action == "create":
        _require_method(method, "POST", action)
        return UkgCall("POST", "/employees", body=body)
    if action == "update":
        _require_method(method, "PUT", action)
        if not employee_id:
            raise UkgRequestError("Employee ID is required")
        return UkgCall("PUT", f"/employees/{employee_id}", body=body)
    if action == "deactivate":
        _require_method(method, "PUT", action)
        if not employee_id:
            raise UkgRequestError("Employee ID is required")
        return UkgCall("PUT", f"/employees/{employee_id}/deactivate")
    if action == "terminate":
        _require_method(method, "PUT", action)
        termination_date = query.get("terminationDate")
        if not employee_id or not termination_date:
            raise UkgRequestError("Employee ID and termination date are required")
        return UkgCall("PUT", f"/employees/{employee_id}/terminate", body={"terminationDate": termination_date})
    if action in ("departments", "positions", "managers"):
        return UkgCall("GET", f"/employees/{action}")
    if action == "schedule":
        schedule_for = query.get("employeeId")
        if not schedule_for:
            raise UkgRequestError("Employee ID is required for schedule")
        return UkgCall("GET", f"/employees/{schedule_for}/schedule", _filters(query, "startDate", "endDate"))
    raise UkgRequestError(f"Unknown employees action: {action}")


def resolve_call(module: str, action: Optional[str], method: str, query: dict, body: Any = None) -> UkgCall:
    """Map a module/action pair from the query string onto a UKG REST call."""
    if module == "timeentries":
        return _time_entries_call(action, method.upper(), query, body)
    if module == "employees":
        return _employees_call(action, method.upper(), query, body)
    raise UkgRequestError('Module must be "timeentries" or "employees"')


class UkgTenantGateway:
    """Calls UKG Ready REST on behalf of a stored tenant, using client credentials."""

    def __init__(self, tenants: TenantService, http_client: httpx.AsyncClient) -> None:
        self.tenants = tenants
        self.http = http_client

    async def _token(self, tenant: dict, client_secret: str) -> str:
        form = {
            "grant_type": "client_credentials",
            "client_id": tenant["clientId"],
            "client_secret": client_secret,
            "scope": tenant.get("scope") or DEFAULT_TENANT_SCOPE,
        }
        response = await self.http.post(tenant["tokenEndpoint"], data=form)
        if not response.is_success:
            raise UkgError(f"Token request failed: {response.status_code}")
        return _token_payload(response, "Token request failed")["access_token"]

    async def request(self, tenant_id: str, call: UkgCall) -> Any:
        tenant = self.tenants.get_tenant(tenant_id)
        if tenant is None:
            raise UkgError("Tenant not found")
        client_secret = self.tenants.get_client_secret(tenant_id)
        if not client_secret:
            raise UkgError("Client secret not found")

        try:
            token = await self._token(tenant, client_secret)
            url = f"{tenant['baseUrl'].rstrip('/')}/ta/rest/v2/companies/{tenant['companyId']}{call.path}"
            logger.info("UKG Ready request", extra={"tenantId": tenant_id, "method": call.method, "path": call.path})
            response = await self.http.request(
                call.method,
                url,
                params=call.params,
                json=call.body,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise UkgError(f"UKG Ready request failed: {exc}") from exc
        if not response.is_success:
            raise UkgError(f"API request failed: {response.status_code} {response.reason_phrase}")
        if not response.content:
            return None
        return response.json()
