from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: Optional[str] = None

    sql_auth_type: str = "auto"
    azure_sql_connection_string: Optional[str] = None
    azure_sql_server: Optional[str] = None
    azure_sql_database: Optional[str] = None
    azure_sql_driver: str = "ODBC Driver 18 for SQL Server"

    functions_worker_runtime: Optional[str] = None
    website_site_name: Optional[str] = None

    azure_key_vault_url: Optional[str] = None
    secret_cache_ttl_seconds: int = 300

    par_brink_sales_url: str = "https://api11.brinkpos.net/sales2.svc"
    par_brink_labor_url: str = "https://api11.brinkpos.net/labor2.svc"
    par_brink_settings_url: str = "https://api11.brinkpos.net/Settings2.svc"
    par_brink_access_token: Optional[str] = None
    par_brink_timeout_seconds: float = 30.0
    business_day_cutover_hour: int = 5

    ukg_batch_size: int = 10
    ukg_batch_delay_seconds: float = 1.0

    openweather_api_key: Optional[str] = None
    openweather_base_url: str = "https://api.openweathermap.org"

    store_cache_path: str = "data/store-cache.json"
    store_cache_ttl_seconds: int = 900

    log_level: str = "INFO"
    log_json: bool = True
    service_name: str = "ukg-sync-backend"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="", case_sensitive=False)

    @property
    def running_in_azure(self) -> bool:
        return bool(self.functions_worker_runtime or self.website_site_name)


settings = Settings()
