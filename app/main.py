from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel, to_pascal
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.brink import (
    DEMO_ACCESS_TOKEN,
    BrinkClient,
    business_date_for,
    business_dates,
    default_shift_date,
    summarize_clocked_in,
    transform_employees,
    transform_sales,
    transform_shifts,
    transform_tills,
    transform_tips,
    utc_offset_minutes,
)
from app.config import settings
from app.dashboard import build_dashboard
from app.db import SessionLocal, get_engine
from app.errors import (
    BrinkError,
    DatabaseConnectionError,
    DuplicateAPIConfigurationError,
    IntegrationError,
    SecretStoreError,
    TenantAlreadyExistsError,
    UkgError,
    UkgRequestError,
)
from app.etl import extracted_record, run_pipeline
from app.logging_config import configure_logging, correlation_id, mask_token
from app.models import Tenant
from app.stores import (
    CACHE_ERRORS,
    SOURCE_BUILTIN,
    UPDATABLE_STORE_FIELDS,
    StoreConfigService,
    StoreRepository,
)
from app.tenants import TenantService
from app.third_party import (
    ThirdPartyAPIRepository,
    ThirdPartyAPITester,
    resolve_brink_access_token,
    serialize_api,
)
from app.ukg import MODULES, UkgReadyClient, UkgReadyConfig, UkgTenantGateway, resolve_call
from app.vault import SecretStore, generate_secret_name
from app.weather import WeatherService

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="UKG Sync Backend")

BRINK_SOURCE = "par-brink-api"
MAX_WEATHER_STORES = 10


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _fail(status_code: int, error: str, **extra: Any) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": error, **extra})


@contextmanager
def _failure(message: str):
    """Turn database and vault failures inside the block into a 500 carrying ``message``."""
    try:
        yield
    except (SQLAlchemyError, IntegrationError) as exc:
        logger.exception(message)
        raise _fail(500, message, details=str(exc)) from exc


# -- middleware and error rendering ---------------------------------------------


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    cid = request.headers.get("X-Correlation-Id") or request.headers.get("X-Request-Id") or uuid4().hex
    token = correlation_id.set(cid)
    started = time.perf_counter()
    try:
        response = await call_next(request)
        response.headers["X-Correlation-Id"] = cid
        logger.info(
            "request completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "durationMs": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return response
    finally:
        correlation_id.reset(token)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    body: dict[str, Any] = {"success": False}
    if isinstance(exc.detail, dict):
        body.update(exc.detail)
    else:
        body["error"] = exc.detail
    return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )


@app.exception_handler(IntegrationError)
async def integration_exception_handler(request: Request, exc: IntegrationError) -> JSONResponse:
    logger.error("Unhandled integration error: %s", exc, exc_info=exc)
    return JSONResponse({"success": False, "error": str(exc)}, status_code=500)


# -- dependencies ------------------------------------------------------------------


def get_db() -> Session:
    db = SessionLocal(bind=get_engine())
    try:
        yield db
    finally:
        db.close()


@lru_cache
def get_secret_store() -> SecretStore:
    return SecretStore()


def get_optional_secret_store() -> Optional[SecretStore]:
    try:
        return get_secret_store()
    except SecretStoreError as exc:
        logger.warning("Secret store unavailable: %s", exc)
        return None


def get_http_client() -> httpx.Client:
    with httpx.Client(timeout=settings.par_brink_timeout_seconds) as client:
        yield client


async def get_async_http_client() -> httpx.AsyncClient:
    async with httpx.AsyncClient(timeout=settings.par_brink_timeout_seconds) as client:
        yield client


def get_brink_client(http: httpx.Client = Depends(get_http_client)) -> BrinkClient:
    return BrinkClient(http, settings)


def _new_session() -> Session:
    return SessionLocal(bind=get_engine())


def get_session_factory() -> Callable[[], Session]:
    return _new_session


@lru_cache
def get_store_service() -> StoreConfigService:
    return StoreConfigService(settings.store_cache_path, settings.store_cache_ttl_seconds, _new_session)


@lru_cache
def get_weather_service() -> WeatherService:
    return WeatherService(settings.openweather_api_key, httpx.Client(), settings.openweather_base_url)


def get_ukg_gateway(
    db: Session = Depends(get_db),
    secrets: Optional[SecretStore] = Depends(get_optional_secret_store),
    http: httpx.AsyncClient = Depends(get_async_http_client),
) -> UkgTenantGateway:
    return UkgTenantGateway(TenantService(db, secrets), http)


def _audit_context(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


# -- request models ----------------------------------------------------------------


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TenantPayload(CamelModel):
    tenant_name: Optional[str] = None
    company_id: Optional[str] = None
    base_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    description: Optional[str] = None
    scope: Optional[str] = None
    is_active: Optional[bool] = None


class ThirdPartyAPIPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)

    tenant_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    provider: Optional[str] = None
    base_url: Optional[str] = None
    version: Optional[str] = None
    auth_type: Optional[str] = None
    key_vault_secret_name: Optional[str] = None
    configuration_json: Optional[dict] = None
    is_active: Optional[bool] = None


class APIConfigurationPayload(CamelModel):
    tenant_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    provider: Optional[str] = None
    base_url: Optional[str] = None
    version: Optional[str] = None
    auth_type: Optional[str] = None
    auth_config: Optional[dict] = None
    configuration: Optional[dict] = None


class ConnectionTestPayload(CamelModel):
    base_url: str
    auth_type: str = "none"
    credentials: Optional[dict] = None
    health_check_endpoint: str = ""


class BrinkTokens(CamelModel):
    access_token: Optional[str] = None
    location_token: Optional[str] = None


class BusinessDatePayload(BrinkTokens):
    business_date: Optional[str] = None


class DateRangePayload(BrinkTokens):
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class UkgReadyCredentials(CamelModel):
    base_url: str
    client_id: str
    client_secret: str
    username: str
    password: str
    company_short_name: str

    def to_config(self) -> UkgReadyConfig:
        return UkgReadyConfig(**self.model_dump())


class EtlPayload(BrinkTokens):
    dry_run: bool = True
    ukg_ready: Optional[UkgReadyCredentials] = None


class StorePayload(CamelModel):
    token: Optional[str] = None
    name: Optional[str] = None
    id: Optional[str] = None
    timezone: Optional[str] = None
    state: Optional[str] = None
    region: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    storeurl: Optional[str] = None
    google_maps_url: Optional[str] = None
    daily_hours: Optional[dict] = None
    manager: Optional[str] = None
    manager_email: Optional[str] = None
    opening_hour: Optional[int] = None
    closing_hour: Optional[int] = None
    is_active: Optional[bool] = None


# -- tenants ---------------------------------------------------------------------------

REQUIRED_TENANT_FIELDS = ("tenantName", "companyId", "baseUrl", "clientId", "clientSecret")
EXPLICIT_TENANT_FIELDS = ("description", "isActive")


def _with_name(tenant: dict) -> dict:
    return {**tenant, "name": tenant["tenantName"]}


def _create_tenant(payload: TenantPayload, db: Session, secrets: SecretStore, request: Request) -> dict:
    data = payload.model_dump(by_alias=True, exclude_none=True)
    missing = [name for name in REQUIRED_TENANT_FIELDS if not data.get(name)]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")
    with _failure("Failed to create tenant"):
        try:
            return TenantService(db, secrets).create_tenant(data, **_audit_context(request))
        except TenantAlreadyExistsError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc


def _update_tenant(
    tenant_id: str, payload: TenantPayload, db: Session, secrets: SecretStore, request: Request
) -> dict:
    data = payload.model_dump(by_alias=True, exclude_unset=True)
    if not data:
        raise HTTPException(status_code=400, detail="At least one field must be provided for update")
    changes = {key: value for key, value in data.items() if value or key in EXPLICIT_TENANT_FIELDS}
    service = TenantService(db, secrets)
    with _failure("Failed to update tenant"):
        try:
            updated = service.update_tenant(tenant_id, changes, **_audit_context(request))
        except TenantAlreadyExistsError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if not updated:
            raise HTTPException(status_code=404, detail="Tenant not found")
        return service.get_tenant(tenant_id) or {"id": tenant_id}


def _delete_tenant(tenant_id: str, db: Session, request: Request) -> None:
    with _failure("Failed to delete tenant"):
        if not TenantService(db).delete_tenant(tenant_id, **_audit_context(request)):
            raise HTTPException(status_code=404, detail="Tenant not found")


def _tenant_credentials(tenant_id: str, db: Session, secrets: SecretStore) -> dict:
    service = TenantService(db, secrets)
    with _failure("Failed to retrieve tenant credentials"):
        tenant = service.get_tenant(tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail="Tenant not found")
    client_secret = service.get_client_secret(tenant_id)
    if not client_secret:
        raise HTTPException(status_code=500, detail="Client secret not found")
    return {
        "tenantId": tenant["id"],
        "tenantName": tenant["tenantName"],
        "companyId": tenant["companyId"],
        "baseUrl": tenant["baseUrl"],
        "clientId": tenant["clientId"],
        "clientSecret": client_secret,
        "tokenEndpoint": tenant["tokenEndpoint"],
    }


@app.get("/api/tenants", tags=["Tenants"])
def list_tenants(db: Session = Depends(get_db)) -> dict:
    with _failure("Failed to retrieve tenants"):
        tenants = TenantService(db).list_tenants()
    return {"success": True, "data": tenants, "count": len(tenants), "meta": _meta()}


@app.get("/api/tenants/{tenant_id}", tags=["Tenants"])
def get_tenant(tenant_id: str, db: Session = Depends(get_db)) -> dict:
    with _failure("Failed to retrieve tenant"):
        tenant = TenantService(db).get_tenant(tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return {"success": True, "data": tenant, "meta": _meta()}


@app.post("/api/tenants", status_code=201, tags=["Tenants"])
def create_tenant(
    payload: TenantPayload,
    request: Request,
    db: Session = Depends(get_db),
    secrets: SecretStore = Depends(get_secret_store),
) -> dict:
    tenant = _create_tenant(payload, db, secrets, request)
    return {"success": True, "data": tenant, "message": "Tenant created successfully", "meta": _meta()}


@app.put("/api/tenants/{tenant_id}", tags=["Tenants"])
def update_tenant(
    tenant_id: str,
    payload: TenantPayload,
    request: Request,
    db: Session = Depends(get_db),
    secrets: SecretStore = Depends(get_secret_store),
) -> dict:
    tenant = _update_tenant(tenant_id, payload, db, secrets, request)
    return {"success": True, "data": tenant, "message": "Tenant updated successfully", "meta": _meta()}


@app.delete("/api/tenants/{tenant_id}", tags=["Tenants"])
def delete_tenant(tenant_id: str, request: Request, db: Session = Depends(get_db)) -> dict:
    _delete_tenant(tenant_id, db, request)
    return {"success": True, "message": "Tenant deleted successfully", "meta": _meta()}


@app.get("/api/tenants/{tenant_id}/credentials", tags=["Tenants"])
def get_tenant_credentials(
    tenant_id: str,
    db: Session = Depends(get_db),
    secrets: SecretStore = Depends(get_secret_store),
) -> dict:
    return {"success": True, "data": _tenant_credentials(tenant_id, db, secrets), "meta": _meta()}


def _require_query_id(tenant_id: Optional[str]) -> str:
    if not tenant_id:
        raise HTTPException(status_code=400, detail="Tenant ID is required in query parameter")
    return tenant_id


@app.get("/api/v2/tenants/credentials", tags=["Tenants v2"])
def get_tenant_credentials_v2(
    tenant_id: Optional[str] = Query(None, alias="id"),
    db: Session = Depends(get_db),
    secrets: SecretStore = Depends(get_secret_store),
) -> dict:
    tenant_id = _require_query_id(tenant_id)
    credentials = _tenant_credentials(tenant_id, db, secrets)
    data = {**credentials, "id": credentials["tenantId"], "name": credentials["tenantName"]}
    return {"success": True, "data": data, "meta": _meta()}


@app.get("/api/v2/tenants", tags=["Tenants v2"])
def get_tenants_v2(tenant_id: Optional[str] = Query(None, alias="id"), db: Session = Depends(get_db)) -> dict:
    service = TenantService(db)
    if tenant_id:
        with _failure("Failed to retrieve tenant"):
            tenant = service.get_tenant(tenant_id)
        if tenant is None:
            raise HTTPException(status_code=404, detail="Tenant not found")
        return {"success": True, "data": _with_name(tenant), "meta": _meta()}
    with _failure("Failed to retrieve tenants"):
        tenants = [_with_name(tenant) for tenant in service.list_tenants()]
    return {"success": True, "data": tenants, "count": len(tenants), "meta": _meta()}


@app.post("/api/v2/tenants", status_code=201, tags=["Tenants v2"])
def create_tenant_v2(
    payload: TenantPayload,
    request: Request,
    db: Session = Depends(get_db),
    secrets: SecretStore = Depends(get_secret_store),
) -> dict:
    tenant = _with_name(_create_tenant(payload, db, secrets, request))
    return {"success": True, "data": tenant, "message": "Tenant created successfully", "meta": _meta()}


@app.put("/api/v2/tenants", tags=["Tenants v2"])
def update_tenant_v2(
    payload: TenantPayload,
    request: Request,
    tenant_id: Optional[str] = Query(None, alias="id"),
    db: Session = Depends(get_db),
    secrets: SecretStore = Depends(get_secret_store),
) -> dict:
    tenant = _update_tenant(_require_query_id(tenant_id), payload, db, secrets, request)
    if "tenantName" in tenant:
        tenant = _with_name(tenant)
    return {"success": True, "data": tenant, "message": "Tenant updated successfully", "meta": _meta()}


@app.delete("/api/v2/tenants", tags=["Tenants v2"])
def delete_tenant_v2(
    request: Request,
    tenant_id: Optional[str] = Query(None, alias="id"),
    db: Session = Depends(get_db),
) -> dict:
    _delete_tenant(_require_query_id(tenant_id), db, request)
    return {"success": True, "message": "Tenant deleted successfully", "meta": _meta()}


# -- third-party APIs ---------------------------------------------------------------

REQUIRED_API_FIELDS = ("Name", "Provider", "BaseUrl", "AuthType")
REQUIRED_CONFIGURATION_FIELDS = ("name", "category", "baseUrl", "authConfig")


@app.get("/api/third-party-apis/test-connection", tags=["Third-party APIs"])
def test_third_party_database(db: Session = Depends(get_db)) -> dict:
    result = ThirdPartyAPIRepository(db).test_connection()
    if not result["success"]:
        raise _fail(500, result["message"])
    return {**result, "meta": _meta()}


@app.post("/api/third-party-apis/configurations", status_code=201, tags=["Third-party APIs"])
def create_api_configuration(
    payload: APIConfigurationPayload,
    db: Session = Depends(get_db),
    secrets: SecretStore = Depends(get_secret_store),
) -> dict:
    data = payload.model_dump(by_alias=True, exclude_none=True)
    missing = [name for name in REQUIRED_CONFIGURATION_FIELDS if not data.get(name)]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")

    provider = payload.provider or payload.name
    secret_name = generate_secret_name(payload.tenant_id, provider)
    secrets.store_json(secret_name, payload.auth_config)
    record = {
        "TenantId": payload.tenant_id,
        "Name": payload.name,
        "Description": payload.description,
        "Category": payload.category,
        "Provider": provider,
        "BaseUrl": payload.base_url,
        "Version": payload.version,
        "AuthType": payload.auth_type or payload.auth_config.get("type") or "custom",
        "KeyVaultSecretName": secret_name,
        "ConfigurationJson": payload.configuration,
    }
    with _failure("Failed to create API configuration"):
        try:
            api = ThirdPartyAPIRepository(db).create_api(record)
        except DuplicateAPIConfigurationError as exc:
            secrets.delete_secret(secret_name)
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except SQLAlchemyError:
            secrets.delete_secret(secret_name)
            raise
    return {
        "success": True,
        "data": serialize_api(api),
        "message": "API configuration created successfully",
        "meta": _meta(),
    }


@app.post("/api/third-party-apis/test", tags=["Third-party APIs"])
def test_third_party_api(payload: ConnectionTestPayload, http: httpx.Client = Depends(get_http_client)) -> dict:
    result = ThirdPartyAPITester(http).test_connection(
        payload.base_url, payload.auth_type, payload.credentials, payload.health_check_endpoint
    )
    return {**result, "meta": _meta()}


@app.post("/api/third-party-apis/test-par-brink-connection", tags=["Third-party APIs"])
def test_par_brink_connection(payload: BrinkTokens, brink: BrinkClient = Depends(get_brink_client)) -> dict:
    if not payload.access_token or not payload.location_token:
        raise HTTPException(status_code=400, detail="accessToken and locationToken are required")
    try:
        employees = brink.get_employees(payload.access_token, payload.location_token)
    except BrinkError as exc:
        logger.warning("PAR Brink connection test failed: %s", exc)
        raise _fail(500, str(exc), employeeCount=0) from exc
    return {
        "success": True,
        "message": "PAR Brink connection successful",
        "employeeCount": len(employees),
        "meta": _meta(),
    }


@app.get("/api/third-party-apis", tags=["Third-party APIs"])
def list_third_party_apis(provider: Optional[str] = None, db: Session = Depends(get_db)) -> dict:
    repo = ThirdPartyAPIRepository(db)
    with _failure("Failed to retrieve API configurations"):
        apis = repo.list_by_provider(provider) if provider else repo.list_apis()
    data = [serialize_api(api) for api in apis]
    return {"success": True, "data": data, "count": len(data), "meta": _meta()}


@app.get("/api/third-party-apis/{api_id}", tags=["Third-party APIs"])
def get_third_party_api(api_id: int, db: Session = Depends(get_db)) -> dict:
    with _failure("Failed to retrieve API configuration"):
        api = ThirdPartyAPIRepository(db).get_api(api_id)
    if api is None:
        raise HTTPException(status_code=404, detail="API configuration not found")
    return {"success": True, "data": serialize_api(api), "meta": _meta()}


@app.post("/api/third-party-apis", status_code=201, tags=["Third-party APIs"])
def create_third_party_api(payload: ThirdPartyAPIPayload, db: Session = Depends(get_db)) -> dict:
    data = payload.model_dump(by_alias=True, exclude_none=True)
    if any(not data.get(name) for name in REQUIRED_API_FIELDS):
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(REQUIRED_API_FIELDS)}")
    with _failure("Failed to create API configuration"):
        try:
            api = ThirdPartyAPIRepository(db).create_api(data)
        except DuplicateAPIConfigurationError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {
        "success": True,
        "data": serialize_api(api),
        "message": "API configuration created successfully",
        "meta": _meta(),
    }


@app.put("/api/third-party-apis/{api_id}", tags=["Third-party APIs"])
def update_third_party_api(api_id: int, payload: ThirdPartyAPIPayload, db: Session = Depends(get_db)) -> dict:
    fields = payload.model_dump(by_alias=True, exclude_none=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    repo = ThirdPartyAPIRepository(db)
    with _failure("Failed to update API configuration"):
        try:
            updated = repo.update_api(api_id, fields)
        except DuplicateAPIConfigurationError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if not updated:
            raise HTTPException(status_code=404, detail="API configuration not found")
        api = repo.get_api(api_id)
    return {
        "success": True,
        "data": serialize_api(api) if api else None,
        "message": "API configuration updated successfully",
        "meta": _meta(),
    }


@app.delete("/api/third-party-apis/{api_id}", tags=["Third-party APIs"])
def delete_third_party_api(api_id: int, db: Session = Depends(get_db)) -> dict:
    with _failure("Failed to delete API configuration"):
        if not ThirdPartyAPIRepository(db).delete_api(api_id):
            raise HTTPException(status_code=404, detail="API configuration not found")
    return {"success": True, "message": "API configuration deleted successfully", "meta": _meta()}


# -- PAR Brink ---------------------------------------------------------------------------


def _brink_data(label: str, fetch: Callable[[], list]) -> dict:
    try:
        data = fetch()
    except BrinkError as exc:
        logger.warning("PAR Brink fetch failed: %s", exc)
        raise _fail(
            501, f"Failed to fetch {label}: {exc}", timestamp=_now().isoformat(), source=BRINK_SOURCE
        ) from exc
    return {
        "success": True,
        "data": data,
        "timestamp": _now().isoformat(),
        "source": BRINK_SOURCE,
        "meta": _meta(),
    }


def _orders(brink: BrinkClient, payload: DateRangePayload) -> list:
    orders = []
    for business_date in business_dates(payload.start_date, payload.end_date):
        orders.extend(brink.get_orders(payload.access_token, payload.location_token, business_date))
    return orders


def _tills(brink: BrinkClient, payload: DateRangePayload) -> list:
    tills = []
    for business_date in business_dates(payload.start_date, payload.end_date):
        tills.extend(brink.get_tills(payload.access_token, payload.location_token, business_date))
    return tills


def _range_from_query(
    start_date: Optional[str],
    end_date: Optional[str],
    access_token: Optional[str],
    location_token: Optional[str],
) -> DateRangePayload:
    return DateRangePayload(
        start_date=start_date,
        end_date=end_date,
        access_token=access_token,
        location_token=location_token,
    )


@app.post("/api/par-brink/labor-shifts", tags=["PAR Brink"])
def labor_shifts(payload: BusinessDatePayload, brink: BrinkClient = Depends(get_brink_client)) -> dict:
    business_date = payload.business_date or default_shift_date()
    return _brink_data(
        "clocked-in employees",
        lambda: transform_shifts(brink.get_shifts(payload.access_token, payload.location_token, business_date)),
    )


@app.post("/api/par-brink/employees", tags=["PAR Brink"])
def employees(payload: BrinkTokens, brink: BrinkClient = Depends(get_brink_client)) -> dict:
    return _brink_data(
        "employees",
        lambda: transform_employees(brink.get_employees(payload.access_token, payload.location_token)),
    )


@app.post("/api/par-brink/sales", tags=["PAR Brink"])
def sales(payload: DateRangePayload, brink: BrinkClient = Depends(get_brink_client)) -> dict:
    return _brink_data("sales data", lambda: transform_sales(_orders(brink, payload)))


@app.get("/api/par-brink/sales", tags=["PAR Brink"])
def sales_query(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    access_token: Optional[str] = Header(None, alias="AccessToken"),
    location_token: Optional[str] = Header(None, alias="LocationToken"),
    brink: BrinkClient = Depends(get_brink_client),
) -> dict:
    return sales(_range_from_query(start_date, end_date, access_token, location_token), brink)


@app.post("/api/par-brink/tips", tags=["PAR Brink"])
def tips(payload: DateRangePayload, brink: BrinkClient = Depends(get_brink_client)) -> dict:
    return _brink_data("tips data", lambda: transform_tips(_orders(brink, payload)))


@app.get("/api/par-brink/tips", tags=["PAR Brink"])
def tips_query(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    access_token: Optional[str] = Header(None, alias="AccessToken"),
    location_token: Optional[str] = Header(None, alias="LocationToken"),
    brink: BrinkClient = Depends(get_brink_client),
) -> dict:
    return tips(_range_from_query(start_date, end_date, access_token, location_token), brink)


@app.post("/api/par-brink/tills", tags=["PAR Brink"])
def tills(payload: DateRangePayload, brink: BrinkClient = Depends(get_brink_client)) -> dict:
    return _brink_data("tills data", lambda: transform_tills(_tills(brink, payload)))


@app.get("/api/par-brink/tills", tags=["PAR Brink"])
def tills_query(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    access_token: Optional[str] = Header(None, alias="AccessToken"),
    location_token: Optional[str] = Header(None, alias="LocationToken"),
    brink: BrinkClient = Depends(get_brink_client),
) -> dict:
    return tills(_range_from_query(start_date, end_date, access_token, location_token), brink)


def _store_for(payload: BrinkTokens, stores: StoreConfigService) -> dict:
    if not payload.location_token or not payload.access_token:
        raise HTTPException(
            status_code=400,
            detail="Missing required parameters: locationToken and accessToken are required",
        )
    store = stores.get_store(payload.location_token)
    if store is None:
        raise HTTPException(status_code=400, detail="Invalid location token")
    return store


@app.post("/api/par-brink/clocked-in", tags=["PAR Brink"])
def clocked_in(
    payload: BusinessDatePayload,
    brink: BrinkClient = Depends(get_brink_client),
    stores: StoreConfigService = Depends(get_store_service),
) -> dict:
    store = _store_for(payload, stores)
    timezone_name = store["timezone"]
    now = datetime.now(ZoneInfo(timezone_name))
    business_date = payload.business_date or business_date_for(
        timezone_name, settings.business_day_cutover_hour, now
    ).isoformat()

    try:
        employees = brink.get_employees(payload.access_token, payload.location_token)
    except BrinkError as exc:
        logger.error("Clocked-in employee fetch failed: %s", exc)
        raise _fail(500, str(exc)) from exc

    warnings = []
    try:
        punches = brink.get_punches(
            payload.access_token,
            payload.location_token,
            business_date,
            utc_offset_minutes(timezone_name, now),
        )
    except BrinkError as exc:
        logger.warning("Punch details unavailable: %s", exc)
        warnings.append(f"Punch data unavailable: {exc}")
        punches = []

    working = summarize_clocked_in(employees, punches, timezone_name, now)
    data = {
        "location": store["name"],
        "locationId": store["id"],
        "businessDate": business_date,
        "currentTime": now.isoformat(),
        "clockedInEmployees": working,
        "totalEmployeesWorking": len(working),
        "employeesOnBreak": sum(1 for entry in working if entry["currentStatus"] == "on-break"),
        "lastUpdated": _now().isoformat(),
    }
    return {"success": True, "data": data, "meta": _meta(warnings=warnings)}


def _location_entry(store: dict) -> dict:
    return {
        "id": store["name"].lower().replace(" ", "-"),
        "name": store["name"],
        "locationId": store["id"],
        "token": store["token"],
        "isActive": store.get("isActive", True),
        "timezone": store.get("timezone"),
        "address": store.get("address"),
        "phone": store.get("phone"),
        "storeurl": store.get("storeurl"),
        "googleMapsUrl": store.get("googleMapsUrl"),
        "dailyHours": store.get("dailyHours"),
    }


@app.get("/api/par-brink/configurations", tags=["PAR Brink"])
def par_brink_configurations(
    db: Session = Depends(get_db),
    stores: StoreConfigService = Depends(get_store_service),
    secrets: Optional[SecretStore] = Depends(get_optional_secret_store),
) -> dict:
    try:
        access_token = resolve_brink_access_token(
            ThirdPartyAPIRepository(db), secrets, settings.par_brink_access_token, DEMO_ACCESS_TOKEN
        )
    except SQLAlchemyError as exc:
        logger.warning("PAR Brink API record unavailable: %s", exc)
        access_token = settings.par_brink_access_token

    active, source = stores.active_stores()
    locations = [_location_entry(store) for store in active]
    if source == SOURCE_BUILTIN:
        logger.error("Store service unavailable, serving built-in store table")
        flags = {"enhanced": False, "fallback": True}
    else:
        flags = {"enhanced": True}

    return {
        "success": True,
        "accessToken": access_token,
        "locations": locations,
        "totalLocations": len(locations),
        **flags,
        "meta": _meta(),
    }


@app.post("/api/par-brink/dashboard", tags=["PAR Brink"])
def dashboard(
    payload: BusinessDatePayload,
    brink: BrinkClient = Depends(get_brink_client),
    stores: StoreConfigService = Depends(get_store_service),
) -> dict:
    store = _store_for(payload, stores)
    try:
        data, warnings = build_dashboard(
            brink,
            store,
            payload.access_token,
            payload.business_date,
            settings.business_day_cutover_hour,
        )
    except (ValueError, KeyError, ZoneInfoNotFoundError) as exc:
        logger.exception("Dashboard assembly failed")
        raise _fail(500, "Internal server error", details=str(exc)) from exc
    return {"success": True, "data": data, "meta": _meta(warnings=warnings)}


# -- UKG Ready ---------------------------------------------------------------------------


@app.api_route("/api/ukg-ready", methods=["GET", "POST", "PUT", "DELETE"], tags=["UKG Ready"])
async def ukg_ready(
    request: Request,
    tenant: Optional[str] = None,
    module: Optional[str] = None,
    action: Optional[str] = None,
    gateway: UkgTenantGateway = Depends(get_ukg_gateway),
) -> dict:
    if not tenant:
        raise HTTPException(status_code=400, detail="Tenant ID is required")
    if module not in MODULES:
        raise HTTPException(status_code=400, detail='Module must be "timeentries" or "employees"')

    body = None
    if await request.body():
        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON") from exc

    try:
        call = resolve_call(module, action, request.method, dict(request.query_params), body)
        data = await gateway.request(tenant, call)
    except UkgRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UkgError as exc:
        logger.error("UKG Ready API error: %s", exc, extra={"tenantId": tenant, "module": module})
        raise _fail(500, "Internal server error", message=str(exc)) from exc
    return {"success": True, "data": data, "meta": _meta()}


# -- ETL ---------------------------------------------------------------------------------


def _ukg_client(credentials: UkgReadyCredentials, http: httpx.AsyncClient) -> UkgReadyClient:
    return UkgReadyClient(
        credentials.to_config(),
        http,
        batch_size=settings.ukg_batch_size,
        batch_delay_seconds=settings.ukg_batch_delay_seconds,
    )


@app.post("/api/etl/par-brink-to-ukg", tags=["ETL"])
async def par_brink_to_ukg(
    payload: Optional[EtlPayload] = Body(None),
    brink: BrinkClient = Depends(get_brink_client),
    http: httpx.AsyncClient = Depends(get_async_http_client),
) -> dict:
    if payload is None:
        raise HTTPException(status_code=400, detail="Request body required with PAR Brink configuration")
    if not payload.access_token or not payload.location_token:
        raise HTTPException(status_code=400, detail="accessToken and locationToken are required")
    if not payload.dry_run and payload.ukg_ready is None:
        raise HTTPException(status_code=400, detail="UKG Ready configuration required for live ETL")

    client = None if payload.dry_run else _ukg_client(payload.ukg_ready, http)
    try:
        extracted = await run_in_threadpool(brink.get_employees, payload.access_token, payload.location_token)
        data = await run_pipeline(extracted, payload.dry_run, client)
    except IntegrationError as exc:
        logger.error("ETL pipeline failed: %s", exc)
        raise _fail(500, "ETL Pipeline failed", details=str(exc)) from exc

    mode = "dry run" if payload.dry_run else "live"
    return {
        "success": True,
        "message": f"ETL Pipeline completed successfully ({mode})",
        "data": data,
        "meta": _meta(),
    }


@app.post("/api/test/par-brink-employees", tags=["ETL"])
def test_par_brink_employees(payload: BrinkTokens, brink: BrinkClient = Depends(get_brink_client)) -> dict:
    try:
        extracted = brink.get_employees(payload.access_token, payload.location_token)
    except BrinkError as exc:
        raise _fail(500, str(exc)) from exc
    return {
        "success": True,
        "message": "PAR Brink employees retrieved successfully",
        "data": [extracted_record(employee) for employee in extracted[:5]],
        "count": len(extracted),
        "meta": _meta(),
    }


@app.post("/api/test/ukg-ready-connection", tags=["ETL"])
async def test_ukg_ready_connection(
    payload: UkgReadyCredentials,
    http: httpx.AsyncClient = Depends(get_async_http_client),
) -> dict:
    client = _ukg_client(payload, http)
    connected = await client.test_connection()
    count = await client.get_employee_count() if connected else -1
    return {
        "success": connected,
        "data": {"connected": connected, "employeeCount": count},
        "meta": _meta(),
    }


# -- stores -----------------------------------------------------------------------------


@app.get("/api/stores/health", tags=["Stores"])
def stores_health(stores: StoreConfigService = Depends(get_store_service)):
    health = stores.health_check()
    if health["cacheStatus"] == "missing":
        return JSONResponse({"success": False, "data": health}, status_code=503)
    return {"success": True, "data": health, "meta": _meta()}


@app.post("/api/stores/refresh", tags=["Stores"])
def refresh_stores(stores: StoreConfigService = Depends(get_store_service)) -> dict:
    try:
        cache = stores.refresh_cache()
    except CACHE_ERRORS as exc:
        logger.exception("Store cache refresh failed")
        raise _fail(500, "Failed to refresh store cache", details=str(exc)) from exc
    return {
        "success": True,
        "message": "Store cache refreshed",
        "data": {"totalStores": cache["totalStores"], "lastRefresh": cache["lastRefresh"]},
        "meta": _meta(),
    }


@app.get("/api/stores/lookup", tags=["Stores"])
def lookup_store(token: Optional[str] = None, stores: StoreConfigService = Depends(get_store_service)) -> dict:
    if not token:
        raise HTTPException(status_code=400, detail="Missing token parameter")
    store = stores.get_store(token)
    if store is None:
        raise _fail(404, "Store not found", token=mask_token(token))
    return {"success": True, "data": store, "meta": _meta()}


@app.get("/api/stores", tags=["Stores"])
def list_stores(state: Optional[str] = None, stores: StoreConfigService = Depends(get_store_service)) -> dict:
    found = stores.list_stores_by_state(state) if state else stores.list_active_stores()
    by_state: dict[str, int] = {}
    for store in found:
        key = store.get("state") or "unknown"
        by_state[key] = by_state.get(key, 0) + 1
    health = stores.health_check()
    return {
        "success": True,
        "summary": {
            "totalStores": len(found),
            "filter": {"state": state} if state else "all",
            "byState": by_state,
            "withAddress": sum(1 for store in found if store.get("address")),
            "lastRefresh": health["lastRefresh"],
        },
        "data": found,
        "meta": _meta(),
    }


@app.post("/api/stores", status_code=201, tags=["Stores"])
def add_store(
    payload: StorePayload,
    db: Session = Depends(get_db),
    stores: StoreConfigService = Depends(get_store_service),
) -> dict:
    data = payload.model_dump(by_alias=True, exclude_none=True)
    missing = [name for name in ("token", "name", "id") if not data.get(name)]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")
    with _failure("Failed to add store"):
        try:
            store = StoreRepository(db).add_store(data)
        except IntegrityError as exc:
            db.rollback()
            raise HTTPException(status_code=409, detail="Store with this token already exists") from exc
    stores.refresh_cache()
    return {"success": True, "data": store, "message": "Store added successfully", "meta": _meta()}


@app.put("/api/stores/{token:path}", tags=["Stores"])
def update_store(
    token: str,
    payload: StorePayload,
    db: Session = Depends(get_db),
    stores: StoreConfigService = Depends(get_store_service),
) -> dict:
    fields = {key: value for key, value in payload.model_dump(exclude_none=True).items() if key in UPDATABLE_STORE_FIELDS}
    if not fields:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    with _failure("Failed to update store"):
        if not StoreRepository(db).update_store(token, fields):
            raise _fail(404, "Store not found", token=mask_token(token))
    stores.refresh_cache()
    return {"success": True, "message": "Store updated successfully", "meta": _meta()}


# -- weather ----------------------------------------------------------------------------


def _business_hours_today(store: dict) -> Optional[dict]:
    daily = store.get("dailyHours") or {}
    try:
        weekday = datetime.now(ZoneInfo(store.get("timezone") or "UTC")).strftime("%A").lower()
    except ZoneInfoNotFoundError:
        weekday = _now().strftime("%A").lower()
    hours = daily.get(weekday)
    if isinstance(hours, dict) and hours.get("open") and hours.get("close"):
        return {"open": hours["open"], "close": hours["close"]}
    return None


def _store_summary(store: dict, business_hours: Optional[dict]) -> dict:
    return {
        "token": store["token"],
        "name": store["name"],
        "address": store.get("address"),
        "timezone": store.get("timezone"),
        "businessHours": business_hours,
    }


@app.get("/api/weather/health", tags=["Weather"])
def weather_health(
    weather: WeatherService = Depends(get_weather_service),
    stores: StoreConfigService = Depends(get_store_service),
):
    weather_status = weather.health_check()
    store_health = stores.health_check()
    healthy = weather_status["status"] == "healthy" and store_health["cacheStatus"] == "healthy"
    body = {
        "service": "WeatherDashboard",
        "status": "healthy" if healthy else "degraded",
        "components": {
            "weatherService": weather_status,
            "storeService": {
                "status": store_health["cacheStatus"],
                "totalStores": store_health["totalStores"],
                "lastRefresh": store_health["lastRefresh"],
            },
        },
        "timestamp": _now().isoformat(),
    }
    return JSONResponse(body, status_code=200 if healthy else 503)


@app.get("/api/weather/stores", tags=["Weather"])
def weather_for_stores(
    state: Optional[str] = None,
    weather: WeatherService = Depends(get_weather_service),
    stores: StoreConfigService = Depends(get_store_service),
) -> dict:
    found = stores.list_stores_by_state(state) if state else stores.list_active_stores()
    with_address = [store for store in found if store.get("address")]
    if not with_address:
        raise _fail(400, "No stores with addresses found", totalStores=len(found), storesWithAddresses=0)

    results = []
    for store in with_address[:MAX_WEATHER_STORES]:
        hours = _business_hours_today(store)
        forecast = weather.get_restaurant_weather(store["address"], hours)
        results.append({"store": _store_summary(store, hours), "weather": forecast, "success": forecast is not None})

    successful = sum(1 for result in results if result["success"])
    return {
        "success": True,
        "filter": {"state": state} if state else "all",
        "summary": {
            "totalRequested": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "totalStoresInSystem": len(found),
            "storesWithAddresses": len(with_address),
        },
        "results": results,
        "timestamp": _now().isoformat(),
        "meta": _meta(),
    }


@app.get("/api/weather", tags=["Weather"])
def weather_for_store(
    token: Optional[str] = None,
    weather: WeatherService = Depends(get_weather_service),
    stores: StoreConfigService = Depends(get_store_service),
) -> dict:
    if not token:
        raise HTTPException(status_code=400, detail="Missing token parameter")
    store = stores.get_store(token)
    if store is None:
        raise _fail(404, "Store not found", token=mask_token(token))
    if not store.get("address"):
        raise _fail(400, "Store address not available", store=store["name"])

    hours = _business_hours_today(store)
    forecast = weather.get_restaurant_weather(store["address"], hours)
    if forecast is None:
        raise HTTPException(status_code=503, detail="Weather data unavailable")
    summary = _store_summary(store, hours)
    summary.pop("token")
    return {
        "success": True,
        "store": summary,
        "weather": forecast,
        "timestamp": _now().isoformat(),
        "meta": _meta(),
    }


# -- health ------------------------------------------------------------------------------


@app.get("/api/health", tags=["health"])
def health(session_factory: Callable[[], Session] = Depends(get_session_factory)):
    try:
        db = session_factory()
        try:
            count = db.execute(
                select(func.count()).select_from(Tenant).where(Tenant.is_active.is_(True))
            ).scalar_one()
        finally:
            db.close()
    except (SQLAlchemyError, DatabaseConnectionError) as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(
            {"status": "unhealthy", "timestamp": _now().isoformat(), "error": str(exc)},
            status_code=500,
        )
    return {
        "status": "healthy",
        "timestamp": _now().isoformat(),
        "database": {"connected": True, "tenantCount": count},
        "message": "API and database are working correctly",
    }
