from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import IntegrationError, TenantAlreadyExistsError
from app.models import Tenant, TenantAudit, UKGApiConfiguration
from app.vault import SecretStore, tenant_secret_name

logger = logging.getLogger(__name__)


def token_endpoint_for(base_url: str, company_id: str) -> str:
    return f"{base_url.rstrip('/')}/ta/rest/v2/companies/{company_id}/oauth2/token"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _audit_summary(tenant: Tenant) -> str:
    return f"TenantName:{tenant.tenant_name}; CompanyId:{tenant.company_id}; BaseUrl:{tenant.base_url}"


class TenantService:
    """Tenant records, their UKG API configuration and the client secret held in the vault."""

    def __init__(self, db: Session, secrets: Optional[SecretStore] = None) -> None:
        self.db = db
        self.secrets = secrets

    def _rows(self, tenant_id: Optional[str] = None):
        query = (
            select(Tenant, UKGApiConfiguration)
            .outerjoin(
                UKGApiConfiguration,
                (UKGApiConfiguration.tenant_id == Tenant.id) & (UKGApiConfiguration.is_active.is_(True)),
            )
            .where(Tenant.is_active.is_(True))
        )
        if tenant_id is not None:
            query = query.where(Tenant.id == tenant_id)
        return self.db.execute(query.order_by(Tenant.tenant_name)).all()

    @staticmethod
    def _serialize(tenant: Tenant, config: Optional[UKGApiConfiguration]) -> dict:
        return {
            "id": tenant.id,
            "tenantName": tenant.tenant_name,
            "companyId": tenant.company_id,
            "baseUrl": tenant.base_url,
            "clientId": tenant.client_id,
            "description": tenant.description,
            "isActive": tenant.is_active,
            "createdDate": _iso(tenant.created_date),
            "modifiedDate": _iso(tenant.modified_date),
            "tokenEndpoint": config.token_endpoint if config else None,
            "apiVersion": config.api_version if config else None,
            "scope": config.scope if config else None,
        }

    def list_tenants(self) -> list[dict]:
        return [self._serialize(tenant, config) for tenant, config in self._rows()]

    def get_tenant(self, tenant_id: str) -> Optional[dict]:
        rows = self._rows(tenant_id)
        if not rows:
            return None
        tenant, config = rows[0]
        return self._serialize(tenant, config)

    def _name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        query = select(Tenant.id).where(Tenant.tenant_name == name)
        if exclude_id is not None:
            query = query.where(Tenant.id != exclude_id)
        return self.db.execute(query).first() is not None

    def _audit(
        self,
        tenant_id: str,
        action: str,
        changed_by: str,
        old_values: Optional[str] = None,
        new_values: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.db.add(
            TenantAudit(
                tenant_id=tenant_id,
                action=action,
                old_values=old_values,
                new_values=new_values,
                changed_by=changed_by,
                changed_date=_now(),
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )

    def create_tenant(self, data: dict, created_by: str = "system", **audit) -> dict:
        if self._name_taken(data["tenantName"]):
            raise TenantAlreadyExistsError(data["tenantName"])

        tenant_id = str(uuid4())
        now = _now()
        tenant = Tenant(
            id=tenant_id,
            tenant_name=data["tenantName"],
            company_id=data["companyId"],
            base_url=data["baseUrl"],
            client_id=data["clientId"],
            description=data.get("description"),
            is_active=True,
            created_by=created_by,
            created_date=now,
        )
        config = UKGApiConfiguration(
            tenant_id=tenant_id,
            token_endpoint=token_endpoint_for(data["baseUrl"], data["companyId"]),
            api_version="v1",
            scope=data.get("scope"),
            is_active=True,
            created_by=created_by,
            created_date=now,
        )
        secret_name = tenant_secret_name(tenant_id)
        secret_written = False
        try:
            self.db.add(tenant)
            self.db.flush()
            self.db.add(config)
            if self.secrets is not None:
                self.secrets.set_secret(secret_name, data["clientSecret"])
                secret_written = True
            self._audit(tenant_id, "CREATE", created_by, new_values=_audit_summary(tenant), **audit)
            self.db.commit()
        except (SQLAlchemyError, IntegrationError) as exc:
            self.db.rollback()
            if secret_written:
                self.secrets.delete_secret(secret_name)
            if isinstance(exc, IntegrityError):
                raise TenantAlreadyExistsError(data["tenantName"]) from exc
            raise
        logger.info("Tenant created", extra={"tenantId": tenant_id})
        return self._serialize(tenant, config)

    def update_tenant(self, tenant_id: str, data: dict, modified_by: str = "system", **audit) -> bool:
        tenant = self.db.get(Tenant, tenant_id)
        if tenant is None or not tenant.is_active:
            return False
        if data.get("tenantName") and self._name_taken(data["tenantName"], exclude_id=tenant_id):
            raise TenantAlreadyExistsError(data["tenantName"])

        old_values = _audit_summary(tenant)
        now = _now()
        field_map = {
            "tenantName": "tenant_name",
            "companyId": "company_id",
            "baseUrl": "base_url",
            "clientId": "client_id",
            "description": "description",
            "isActive": "is_active",
        }
        for key, attr in field_map.items():
            if key in data and data[key] is not None:
                setattr(tenant, attr, data[key])
        tenant.modified_by = modified_by
        tenant.modified_date = now

        config = self.db.execute(
            select(UKGApiConfiguration).where(
                UKGApiConfiguration.tenant_id == tenant_id,
                UKGApiConfiguration.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if config is not None:
            config.token_endpoint = token_endpoint_for(tenant.base_url, tenant.company_id)
            config.modified_by = modified_by
            config.modified_date = now

        try:
            if data.get("clientSecret") and self.secrets is not None:
                self.secrets.set_secret(tenant_secret_name(tenant_id), data["clientSecret"])
            self._audit(
                tenant_id,
                "UPDATE",
                modified_by,
                old_values=old_values,
                new_values=_audit_summary(tenant),
                **audit,
            )
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise TenantAlreadyExistsError(tenant.tenant_name) from exc
        except IntegrationError:
            self.db.rollback()
            raise
        logger.info("Tenant updated", extra={"tenantId": tenant_id})
        return True

    def delete_tenant(self, tenant_id: str, deleted_by: str = "system", **audit) -> bool:
        tenant = self.db.get(Tenant, tenant_id)
        if tenant is None or not tenant.is_active:
            return False
        now = _now()
        tenant.is_active = False
        tenant.modified_by = deleted_by
        tenant.modified_date = now
        configs = self.db.execute(
            select(UKGApiConfiguration).where(UKGApiConfiguration.tenant_id == tenant_id)
        ).scalars()
        for config in configs:
            config.is_active = False
            config.modified_by = deleted_by
            config.modified_date = now
        self._audit(tenant_id, "DELETE", deleted_by, old_values=_audit_summary(tenant), **audit)
        self.db.commit()
        logger.info("Tenant soft-deleted", extra={"tenantId": tenant_id})
        return True

    def get_client_secret(self, tenant_id: str) -> Optional[str]:
        if self.secrets is None:
            return None
        try:
            return self.secrets.get_secret(tenant_secret_name(tenant_id))
        except IntegrationError:
            logger.exception("Failed to read client secret", extra={"tenantId": tenant_id})
            return None
