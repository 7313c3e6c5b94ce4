from __future__ import annotations

import logging
import struct
import threading
from typing import Any, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import Settings, settings
from app.errors import DatabaseConnectionError

logger = logging.getLogger(__name__)

SQL_COPT_SS_ACCESS_TOKEN = 1256
AZURE_SQL_SCOPE = "https://database.windows.net/.default"


class Base(DeclarativeBase):
    pass


SessionLocal = sessionmaker(autoflush=False, autocommit=False)

_engine: Optional[Engine] = None
_engine_lock = threading.Lock()


def parse_connection_string(value: str) -> dict:
    """Split an ADO-style ``key=value;`` connection string into driver arguments."""
    config: dict[str, Any] = {"encrypt": True}
    for part in value.split(";"):
        if "=" not in part:
            continue
        key, _, raw = part.partition("=")
        key = key.strip().lower()
        raw = raw.strip()
        if key in ("server", "data source", "address", "addr"):
            host = raw
            if host.lower().startswith("tcp:"):
                host = host[4:]
            if "," in host:
                host, port = host.split(",", 1)
                config["port"] = int(port)
            config["server"] = host
        elif key in ("database", "initial catalog"):
            config["database"] = raw
        elif key in ("user id", "uid", "user"):
            config["user"] = raw
        elif key in ("password", "pwd"):
            config["password"] = raw
        elif key == "encrypt":
            config["encrypt"] = raw.lower() in ("true", "yes", "1", "mandatory")
    return config


def _odbc_query(cfg: Settings, encrypt: bool) -> dict:
    return {
        "driver": cfg.azure_sql_driver,
        "Encrypt": "yes" if encrypt else "no",
        "TrustServerCertificate": "no",
    }


def _sql_login_engine(cfg: Settings) -> Engine:
    parsed = parse_connection_string(cfg.azure_sql_connection_string or "")
    missing = [key for key in ("server", "database", "user", "password") if not parsed.get(key)]
    if missing:
        raise DatabaseConnectionError(
            f"AZURE_SQL_CONNECTION_STRING is missing: {', '.join(missing)}"
        )
    url = URL.create(
        "mssql+pyodbc",
        username=parsed["user"],
        password=parsed["password"],
        host=parsed["server"],
        port=parsed.get("port", 1433),
        database=parsed["database"],
        query=_odbc_query(cfg, parsed["encrypt"]),
    )
    return create_engine(url, pool_pre_ping=True)


def access_token_attrs(credential) -> dict:
    token = credential.get_token(AZURE_SQL_SCOPE).token.encode("utf-16-le")
    return {SQL_COPT_SS_ACCESS_TOKEN: struct.pack(f"<I{len(token)}s", len(token), token)}


def attach_access_token(engine: Engine, credential) -> Engine:
    """Hand pyodbc a fresh AAD token on every new DBAPI connection."""

    @event.listens_for(engine, "do_connect")
    def _inject_token(dialect, conn_rec, cargs, cparams):
        cparams["attrs_before"] = access_token_attrs(credential)

    return engine


def _managed_identity_engine(cfg: Settings) -> Engine:
    from azure.identity import DefaultAzureCredential

    parsed = parse_connection_string(cfg.azure_sql_connection_string or "")
    server = cfg.azure_sql_server or parsed.get("server")
    database = cfg.azure_sql_database or parsed.get("database")
    if not server or not database:
        raise DatabaseConnectionError("AZURE_SQL_SERVER and AZURE_SQL_DATABASE are required for managed identity")

    url = URL.create(
        "mssql+pyodbc",
        host=server,
        port=1433,
        database=database,
        query=_odbc_query(cfg, True),
    )
    return attach_access_token(create_engine(url, pool_pre_ping=True), DefaultAzureCredential())


def _probe(engine: Engine) -> Engine:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return engine


def build_engine(cfg: Settings = settings) -> Engine:
    if cfg.database_url:
        connect_args = {"check_same_thread": False} if cfg.database_url.startswith("sqlite") else {}
        return create_engine(cfg.database_url, pool_pre_ping=True, connect_args=connect_args)

    auth_type = cfg.sql_auth_type.lower()
    use_managed_identity = auth_type == "managed-identity" or (auth_type == "auto" and cfg.running_in_azure)

    if not use_managed_identity:
        if not cfg.azure_sql_connection_string:
            raise DatabaseConnectionError(
                "AZURE_SQL_CONNECTION_STRING environment variable is required for development"
            )
        logger.info("Connecting to SQL with SQL authentication")
        return _sql_login_engine(cfg)

    try:
        logger.info("Connecting to SQL with managed identity")
        return _probe(_managed_identity_engine(cfg))
    except Exception as managed_exc:
        logger.warning("Managed identity connection failed: %s", managed_exc)
        if not cfg.azure_sql_connection_string:
            raise DatabaseConnectionError(
                "Managed identity failed and no AZURE_SQL_CONNECTION_STRING provided. "
                f"Error: {managed_exc}"
            ) from managed_exc
        try:
            return _probe(_sql_login_engine(cfg))
        except Exception as sql_exc:
            raise DatabaseConnectionError(
                "Both managed identity and SQL auth failed. "
                f"Managed: {managed_exc}, SQL: {sql_exc}"
            ) from sql_exc


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = build_engine(settings)
    return _engine


def check_connection(engine: Engine) -> dict:
    try:
        with engine.connect() as conn:
            current = conn.execute(text("SELECT CURRENT_TIMESTAMP")).scalar()
    except SQLAlchemyError as exc:
        return {"success": False, "message": f"Database connection failed: {exc}", "details": None}
    return {
        "success": True,
        "message": "Database connection successful",
        "details": {"currentTime": str(current), "dialect": engine.dialect.name},
    }
