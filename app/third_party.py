from __future__ import annotations

import base64
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db import check_connection
from app.errors import DuplicateAPIConfigurationError, SecretStoreError
from app.models import ThirdPartyAPI, ThirdPartyAPIAudit
from app.vault import SecretStore

logger = logging.getLogger(__name__)

USER_AGENT = "UKG-Sync-App/1.0"
TEST_TIMEOUT_SECONDS = 10.0
PAR_BRINK_PROVIDER = "PAR Brink"

# PascalCase request keys to model attributes.
UPDATABLE_FIELDS = {
    "TenantId": "tenant_id",
    "Name": "name",
    "Description": "description",
    "Category": "category",
    "Provider": "provider",
    "BaseUrl": "base_url",
    "Version": "version",
    "AuthType": "auth_type",
    "KeyVaultSecretName": "key_vault_secret_name",
    "ConfigurationJson": "configuration_json",
    "IsActive": "is_active",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_api(api: ThirdPartyAPI) -> dict:
    return {
        "Id": api.id,
        "TenantId": api.tenant_id,
        "Name": api.name,
        "Description": api.description,
        "Category": api.category,
        "Provider": api.provider,
        "BaseUrl": api.base_url,
        "Version": api.version,
        "AuthType": api.auth_type,
        "KeyVaultSecretName": api.key_vault_secret_name,
        "ConfigurationJson": api.configuration_json,
        "IsActive": api.is_active,
        "CreatedAt": api.created_at.isoformat() if api.created_at else None,
        "UpdatedAt": api.updated_at.isoformat() if api.updated_at else None,
        "CreatedBy": api.created_by,
        "UpdatedBy": api.updated_by,
    }


class ThirdPartyAPIRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _audit(self, api_id: int, action: str, changed_by: str, changes: Optional[dict] = None) -> None:
        self.db.add(
            ThirdPartyAPIAudit(
                api_id=api_id,
                action=action,
                changes=changes,
                changed_by=changed_by,
                changed_at=_now(),
            )
        )

    def _ensure_unique(
        self, tenant_id: Optional[str], provider: str, name: str, exclude_id: Optional[int] = None
    ) -> None:
        # NULL tenant ids are distinct to the unique index on sqlite and Postgres.
        tenant_clause = (
            ThirdPartyAPI.tenant_id.is_(None) if tenant_id is None else ThirdPartyAPI.tenant_id == tenant_id
        )
        query = select(ThirdPartyAPI.id).where(
            tenant_clause, ThirdPartyAPI.provider == provider, ThirdPartyAPI.name == name
        )
        if exclude_id is not None:
            query = query.where(ThirdPartyAPI.id != exclude_id)
        if self.db.execute(query.limit(1)).first() is not None:
            raise DuplicateAPIConfigurationError(
                f"API configuration '{name}' for provider '{provider}' already exists"
            )

    def create_api(self, data: dict, created_by: str = "system") -> ThirdPartyAPI:
        self._ensure_unique(data.get("TenantId"), data["Provider"], data["Name"])
        now = _now()
        api = ThirdPartyAPI(
            tenant_id=data.get("TenantId"),
            name=data["Name"],
            description=data.get("Description"),
            category=data.get("Category") or "API",
            provider=data["Provider"],
            base_url=data["BaseUrl"],
            version=data.get("Version"),
            auth_type=data["AuthType"],
            key_vault_secret_name=data.get("KeyVaultSecretName"),
            configuration_json=data.get("ConfigurationJson"),
            is_active=data.get("IsActive", True),
            created_at=now,
            updated_at=now,
            created_by=created_by,
            updated_by=created_by,
        )
        try:
            self.db.add(api)
            self.db.flush()
            self._audit(api.id, "CREATE", created_by, {"Name": api.name, "Provider": api.provider})
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateAPIConfigurationError(
                f"API configuration '{data['Name']}' for provider '{data['Provider']}' already exists"
            ) from exc
        self.db.refresh(api)
        return api

    def list_apis(self) -> list[ThirdPartyAPI]:
        query = select(ThirdPartyAPI).where(ThirdPartyAPI.is_active.is_(True)).order_by(ThirdPartyAPI.name)
        return list(self.db.execute(query).scalars())

    def get_api(self, api_id: int) -> Optional[ThirdPartyAPI]:
        api = self.db.get(ThirdPartyAPI, api_id)
        if api is None or not api.is_active:
            return None
        return api

    def list_by_provider(self, provider: str) -> list[ThirdPartyAPI]:
        query = (
            select(ThirdPartyAPI)
            .where(ThirdPartyAPI.provider == provider, ThirdPartyAPI.is_active.is_(True))
            .order_by(ThirdPartyAPI.name)
        )
        return list(self.db.execute(query).scalars())

    def update_api(self, api_id: int, fields: dict, updated_by: str = "system") -> bool:
        changes = {key: value for key, value in fields.items() if key in UPDATABLE_FIELDS and value is not None}
        if not changes:
            return False
        api = self.get_api(api_id)
        if api is None:
            return False
        self._ensure_unique(
            changes.get("TenantId", api.tenant_id),
            changes.get("Provider", api.provider),
            changes.get("Name", api.name),
            exclude_id=api.id,
        )
        for key, value in changes.items():
            setattr(api, UPDATABLE_FIELDS[key], value)
        api.updated_at = _now()
        api.updated_by = updated_by
        try:
            self._audit(api.id, "UPDATE", updated_by, changes)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateAPIConfigurationError(f"API configuration {api_id} conflicts with an existing one") from exc
        return True

    def delete_api(self, api_id: int, deleted_by: str = "system") -> bool:
        api = self.get_api(api_id)
        if api is None:
            return False
        api.is_active = False
        api.updated_at = _now()
        api.updated_by = deleted_by
        self._audit(api.id, "DELETE", deleted_by)
        self.db.commit()
        return True

    def test_connection(self) -> dict:
        return check_connection(self.db.get_bind())


def build_auth_headers(auth_type: str, credentials: Optional[dict]) -> dict:
    credentials = credentials or {}
    kind = (auth_type or "").lower()
    if kind == "bearer" and credentials.get("token"):
        return {"Authorization": f"Bearer {credentials['token']}"}
    if kind == "apikey" and credentials.get("apiKey"):
        return {credentials.get("headerName") or "X-API-Key": credentials["apiKey"]}
    if kind == "basic" and credentials.get("username"):
        raw = f"{credentials['username']}:{credentials.get('password', '')}".encode()
        return {"Authorization": f"Basic {base64.b64encode(raw).decode()}"}
    return {}


class ThirdPartyAPITester:
    """Reachability probe for a registered third-party API."""

    def __init__(self, http_client: httpx.Client) -> None:
        self.http = http_client

    def test_connection(
        self,
        base_url: str,
        auth_type: str,
        credentials: Optional[dict[str, Any]] = None,
        health_check_endpoint: str = "",
    ) -> dict:
        headers = {"User-Agent": USER_AGENT, **build_auth_headers(auth_type, credentials)}
        url = base_url.rstrip("/") + (health_check_endpoint or "")
        started = time.perf_counter()
        try:
            response = self.http.get(url, headers=headers, timeout=TEST_TIMEOUT_SECONDS)
        except httpx.HTTPError as exc:
            elapsed = int((time.perf_counter() - started) * 1000)
            logger.warning("Third-party API test failed: %s", exc)
            return {"success": False, "status": None, "responseTime": elapsed, "message": f"Connection failed: {exc}"}
        elapsed = int((time.perf_counter() - started) * 1000)
        if response.is_success:
            message = "Connection successful"
        else:
            message = f"HTTP {response.status_code}: {response.reason_phrase}"
        return {
            "success": response.is_success,
            "status": response.status_code,
            "responseTime": elapsed,
            "message": message,
        }


def resolve_brink_access_token(
    repo: ThirdPartyAPIRepository,
    secrets: Optional[SecretStore],
    fallback: Optional[str],
    demo_token: str = "demo-access-token",
) -> Optional[str]:
    """Access token for the registered PAR Brink API: vault secret, then stored JSON, then ``fallback``."""
    apis = repo.list_by_provider(PAR_BRINK_PROVIDER)
    token: Optional[str] = None
    if apis:
        api = apis[0]
        if api.key_vault_secret_name and secrets is not None:
            try:
                stored = secrets.get_json(api.key_vault_secret_name)
            except SecretStoreError as exc:
                logger.warning("PAR Brink credentials unavailable from vault: %s", exc)
                stored = None
            if stored:
                token = stored.get("accessToken")
        if not token and isinstance(api.configuration_json, dict):
            token = api.configuration_json.get("accessToken")
    if not token or token == demo_token:
        return fallback or token
    return token
