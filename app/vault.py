from __future__ import annotations

import json
import logging
import re
import threading
import time
from typing import Any, Optional

from azure.core.exceptions import AzureError, ResourceNotFoundError

from app.config import settings
from app.errors import SecretStoreError

logger = logging.getLogger(__name__)

SECRET_CONTENT_TYPE = "application/json"


class TTLCache:
    """Process-local key/value cache with a single time-to-live for every entry."""

    def __init__(self, ttl_seconds: float = 300, clock=time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._items: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._items[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._items[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def has(self, key: str) -> bool:
        with self._lock:
            entry = self._items.get(key)
            return entry is not None and entry[0] > self._clock()

    def keys(self) -> list[str]:
        now = self._clock()
        with self._lock:
            return [key for key, (expires_at, _) in self._items.items() if expires_at > now]

    def flush(self) -> None:
        with self._lock:
            self._items.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> dict:
        return {"hits": self.hits, "misses": self.misses, "keys": len(self.keys())}


def tenant_secret_name(tenant_id: str) -> str:
    return f"tenant-{tenant_id}-client-secret"


def generate_secret_name(tenant_id: Optional[str], provider: str, timestamp: Optional[int] = None) -> str:
    # Key Vault names allow only alphanumerics and dashes.
    sanitized = re.sub(r"[^a-z0-9]", "-", provider.lower())
    ts = timestamp if timestamp is not None else int(time.time() * 1000)
    return f"third-party-api-{tenant_id or 'global'}-{sanitized}-{ts}"


class SecretStore:
    def __init__(
        self,
        vault_url: Optional[str] = None,
        client: Any = None,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        if client is None:
            vault_url = vault_url or settings.azure_key_vault_url
            if not vault_url:
                raise SecretStoreError("AZURE_KEY_VAULT_URL environment variable is required")
            from azure.identity import DefaultAzureCredential
            from azure.keyvault.secrets import SecretClient

            client = SecretClient(vault_url=vault_url, credential=DefaultAzureCredential())
        self._client = client
        self.cache = TTLCache(settings.secret_cache_ttl_seconds if ttl_seconds is None else ttl_seconds)

    def set_secret(self, name: str, value: str) -> None:
        try:
            self._client.set_secret(name, value, content_type=SECRET_CONTENT_TYPE)
        except AzureError as exc:
            raise SecretStoreError(f"Failed to store secret {name}: {exc}") from exc
        self.cache.set(name, value)
        logger.info("Secret stored", extra={"secretName": name})

    def get_secret(self, name: str) -> Optional[str]:
        cached = self.cache.get(name)
        if cached is not None:
            return cached
        try:
            secret = self._client.get_secret(name)
        except ResourceNotFoundError:
            return None
        except AzureError as exc:
            raise SecretStoreError(f"Failed to retrieve secret {name}: {exc}") from exc
        if secret.value is not None:
            self.cache.set(name, secret.value)
        return secret.value

    def delete_secret(self, name: str) -> bool:
        self.cache.delete(name)
        try:
            poller = self._client.begin_delete_secret(name)
            poller.wait()
        except ResourceNotFoundError:
            return False
        except AzureError as exc:
            raise SecretStoreError(f"Failed to delete secret {name}: {exc}") from exc
        logger.info("Secret deleted", extra={"secretName": name})
        return True

    def store_json(self, name: str, payload: dict) -> None:
        self.set_secret(name, json.dumps(payload))

    def get_json(self, name: str) -> Optional[dict]:
        raw = self.get_secret(name)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise SecretStoreError(f"Secret {name} does not contain valid JSON") from exc
