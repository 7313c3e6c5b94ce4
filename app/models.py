from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
GUID_TYPE = String(36)


class Tenant(Base):
    __tablename__ = "Tenants"

    id: Mapped[str] = mapped_column("Id", GUID_TYPE, primary_key=True)
    tenant_name: Mapped[str] = mapped_column("TenantName", String(255), nullable=False, unique=True)
    company_id: Mapped[str] = mapped_column("CompanyId", String(100), nullable=False)
    base_url: Mapped[str] = mapped_column("BaseUrl", String(500), nullable=False)
    client_id: Mapped[str] = mapped_column("ClientId", String(255), nullable=False)
    description: Mapped[str | None] = mapped_column("Description", Text)
    is_active: Mapped[bool] = mapped_column("IsActive", Boolean, nullable=False, default=True)
    created_by: Mapped[str] = mapped_column("CreatedBy", String(255), nullable=False, default="system")
    created_date: Mapped[datetime] = mapped_column("CreatedDate", DateTime(timezone=True), nullable=False)
    modified_by: Mapped[str | None] = mapped_column("ModifiedBy", String(255))
    modified_date: Mapped[datetime | None] = mapped_column("ModifiedDate", DateTime(timezone=True))


class UKGApiConfiguration(Base):
    __tablename__ = "UKGApiConfigurations"

    id: Mapped[int] = mapped_column("Id", ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(
        "TenantId", GUID_TYPE, ForeignKey("Tenants.Id", ondelete="CASCADE"), nullable=False
    )
    token_endpoint: Mapped[str] = mapped_column("TokenEndpoint", String(500), nullable=False)
    api_version: Mapped[str] = mapped_column("ApiVersion", String(20), nullable=False, default="v1")
    scope: Mapped[str | None] = mapped_column("Scope", String(255))
    is_active: Mapped[bool] = mapped_column("IsActive", Boolean, nullable=False, default=True)
    created_by: Mapped[str] = mapped_column("CreatedBy", String(255), nullable=False, default="system")
    created_date: Mapped[datetime] = mapped_column("CreatedDate", DateTime(timezone=True), nullable=False)
    modified_by: Mapped[str | None] = mapped_column("ModifiedBy", String(255))
    modified_date: Mapped[datetime | None] = mapped_column("ModifiedDate", DateTime(timezone=True))


class TenantAudit(Base):
    __tablename__ = "TenantAudit"
    __table_args__ = (
        CheckConstraint("Action IN ('CREATE', 'UPDATE', 'DELETE')", name="CK_TenantAudit_Action"),
    )

    id: Mapped[int] = mapped_column("Id", ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column("TenantId", GUID_TYPE, nullable=False)
    action: Mapped[str] = mapped_column("Action", String(20), nullable=False)
    old_values: Mapped[str | None] = mapped_column("OldValues", Text)
    new_values: Mapped[str | None] = mapped_column("NewValues", Text)
    changed_by: Mapped[str] = mapped_column("ChangedBy", String(255), nullable=False)
    changed_date: Mapped[datetime] = mapped_column("ChangedDate", DateTime(timezone=True), nullable=False)
    ip_address: Mapped[str | None] = mapped_column("IPAddress", String(45))
    user_agent: Mapped[str | None] = mapped_column("UserAgent", String(500))


class ThirdPartyAPI(Base):
    __tablename__ = "ThirdPartyAPIs"
    __table_args__ = (
        UniqueConstraint("TenantId", "Provider", "Name", name="UQ_ThirdPartyAPIs_Tenant_Provider_Name"),
        Index("IX_ThirdPartyAPIs_Provider", "Provider"),
    )

    id: Mapped[int] = mapped_column("Id", ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column("TenantId", GUID_TYPE)
    name: Mapped[str] = mapped_column("Name", String(255), nullable=False)
    description: Mapped[str | None] = mapped_column("Description", Text)
    category: Mapped[str] = mapped_column("Category", String(100), nullable=False, default="API")
    provider: Mapped[str] = mapped_column("Provider", String(255), nullable=False)
    base_url: Mapped[str] = mapped_column("BaseUrl", String(500), nullable=False)
    version: Mapped[str | None] = mapped_column("Version", String(50))
    auth_type: Mapped[str] = mapped_column("AuthType", String(50), nullable=False)
    key_vault_secret_name: Mapped[str | None] = mapped_column("KeyVaultSecretName", String(255))
    configuration_json: Mapped[dict | None] = mapped_column("ConfigurationJson", JSON_TYPE)
    is_active: Mapped[bool] = mapped_column("IsActive", Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column("CreatedAt", DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column("UpdatedAt", DateTime(timezone=True), nullable=False)
    created_by: Mapped[str | None] = mapped_column("CreatedBy", String(255))
    updated_by: Mapped[str | None] = mapped_column("UpdatedBy", String(255))


class ThirdPartyAPIAudit(Base):
    __tablename__ = "ThirdPartyAPIAudit"

    id: Mapped[int] = mapped_column("Id", ID_TYPE, primary_key=True, autoincrement=True)
    api_id: Mapped[int] = mapped_column("ApiId", BigInteger, nullable=False)
    action: Mapped[str] = mapped_column("Action", String(20), nullable=False)
    changes: Mapped[dict | None] = mapped_column("Changes", JSON_TYPE)
    changed_by: Mapped[str] = mapped_column("ChangedBy", String(255), nullable=False)
    changed_at: Mapped[datetime] = mapped_column("ChangedAt", DateTime(timezone=True), nullable=False)


class StoreConfiguration(Base):
    __tablename__ = "store_configurations"
    __table_args__ = (
        CheckConstraint("opening_hour >= 0 AND opening_hour <= 23", name="CK_store_opening_hour"),
        CheckConstraint("closing_hour >= 0 AND closing_hour <= 23", name="CK_store_closing_hour"),
        Index("IX_store_configurations_state", "state"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_token: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    store_name: Mapped[str] = mapped_column(String(255), nullable=False)
    par_brink_location_id: Mapped[str] = mapped_column(String(50), nullable=False)
    timezone: Mapped[str] = mapped_column(String(50), nullable=False)
    state: Mapped[str] = mapped_column(String(2), nullable=False)
    region: Mapped[str | None] = mapped_column(String(50))
    address: Mapped[str | None] = mapped_column(String(500))
    phone: Mapped[str | None] = mapped_column(String(20))
    storeurl: Mapped[str | None] = mapped_column(String(500))
    google_maps_url: Mapped[str | None] = mapped_column(String(500))
    daily_hours: Mapped[dict | None] = mapped_column(JSON_TYPE)
    manager_name: Mapped[str | None] = mapped_column(String(255))
    manager_email: Mapped[str | None] = mapped_column(String(255))
    opening_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    closing_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=22)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(255))
