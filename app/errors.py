from typing import Optional


class IntegrationError(Exception):
    """Base class for failures talking to the database, the vault or an upstream API."""


class DatabaseConnectionError(IntegrationError):
    pass


class TenantAlreadyExistsError(IntegrationError):
    def __init__(self, tenant_name: str) -> None:
        super().__init__(f"Tenant with name '{tenant_name}' already exists")
        self.tenant_name = tenant_name


class DuplicateAPIConfigurationError(IntegrationError):
    pass


class SecretStoreError(IntegrationError):
    pass


class BrinkError(IntegrationError):
    pass


def _for_action(action: Optional[str], message: str) -> str:
    return f"PAR Brink {action} failed: {message}" if action else message


class BrinkSoapFault(BrinkError):
    def __init__(self, fault_string: str, action: Optional[str] = None) -> None:
        super().__init__(_for_action(action, f"PAR Brink SOAP Fault: {fault_string}"))
        self.fault_string = fault_string


class BrinkApiError(BrinkError):
    def __init__(self, result_code: int, message: str, action: Optional[str] = None) -> None:
        super().__init__(_for_action(action, f"PAR Brink API error (Code {result_code}): {message}"))
        self.result_code = result_code


class UkgError(IntegrationError):
    pass


class UkgRequestError(UkgError):
    """Caller-side mistake on the tenant-scoped UKG route (bad action, missing id)."""


class WeatherError(IntegrationError):
    pass
