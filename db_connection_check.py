import argparse

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app import models  # noqa: F401  registers the tables on Base.metadata
from app.config import settings
from app.db import Base, build_engine
from app.errors import DatabaseConnectionError


def _target() -> str:
    if settings.database_url:
        return f"DATABASE_URL={settings.database_url}"
    mode = settings.sql_auth_type
    if mode == "auto":
        mode = "managed-identity" if settings.running_in_azure else "sql"
    server = settings.azure_sql_server or "(from AZURE_SQL_CONNECTION_STRING)"
    return f"Azure SQL server={server} auth={mode}"


def main() -> None:
    parser = argparse.ArgumentParser(description="Check the configured database connection.")
    parser.add_argument("--create-tables", action="store_true", help="create any missing tables")
    args = parser.parse_args()

    print(_target())
    try:
        engine = build_engine(settings)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
    except (DatabaseConnectionError, SQLAlchemyError) as exc:
        print("DB connection FAILED")
        print(exc)
        raise SystemExit(1)

    if args.create_tables:
        Base.metadata.create_all(engine)
        print(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")


if __name__ == "__main__":
    main()
