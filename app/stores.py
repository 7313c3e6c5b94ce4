from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import IntegrationError
from app.logging_config import mask_token
from app.models import StoreConfiguration

logger = logging.getLogger(__name__)

CACHE_VERSION = "1.0"
SOURCE_DATABASE = "database"
SOURCE_BUILTIN = "builtin"
CACHE_ERRORS = (OSError, ValueError, KeyError, TypeError)

# token -> (name, PAR Brink location id)
HARDCODED_STORES = {
    "RPNrrDYtnke+OHNLfy74/A==": ("Castle Rock", "109"),
    "16U5e0+GFEW/ixlKo+VJhg==": ("Centre", "159"),
    "xQwecGX8lUGnpLlTbheuug==": ("Creekwalk", "651"),
    "BhFEGI1ffUi1CLVe8/qtKw==": ("Crown Point", "479"),
    "XbEjtd0tKkavxcJ043UsUg==": ("Diamond Circle", "204133"),
    "kRRYZ8SCiUatilX4KO7dBg==": ("Dublin Commons", "20408"),
    "dWQm28UaeEq0qStmvTfACg==": ("Falcon Landing", "67"),
    "Q58QIT+t+kGf9tzqHN2OCA==": ("Forest Trace", "188"),
    "2LUEj0hnMk+kCQlUcySYBQ==": ("Greeley", "354"),
    "x/S/SDwyrEem54+ZoCILeg==": ("Highlands Ranch", "204049"),
    "gAAbGt6udki8DwPMkonciA==": ("Johnstown", "722"),
    "37CE8WDS8k6isMGLMB9PRA==": ("Lowry", "619"),
    "7yC7X4KjZEuoZCDviTwspA==": ("McCastlin Marketplace", "161"),
    "SUsjq0mEck6HwRkd7uNACg==": ("Northfield Commons", "336"),
    "M4X3DyDrLUKwi3CQHbqlOQ==": ("Polaris Pointe", "1036"),
    "38AZmQGFQEy5VNajl9utlA==": ("Park Meadows", "26"),
    "ZOJMZlffDEqC849w6PnF0g==": ("Ralston Creek", "441"),
    "A2dHEwIh9USNnpMrXCrpQw==": ("Sheridan Parkway", "601"),
    "y4xlWfqFJEuvmkocDGZGtw==": ("South Academy Highlands", "204047"),
    "6OwU+/7IOka+PV9JzAgzYQ==": ("Tower", "579"),
    "YUn21EMuwki+goWuIJ5yGg==": ("Wellington", "652"),
    "OpM9o1kTOkyMM2vevMMqdw==": ("Westminster Promenade", "202794"),
}
HARDCODED_TIMEZONE = "America/Denver"
HARDCODED_STATE = "CO"

# request field -> column
UPDATABLE_STORE_FIELDS = {
    "name": "store_name",
    "timezone": "timezone",
    "state": "state",
    "region": "region",
    "address": "address",
    "phone": "phone",
    "manager": "manager_name",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def hardcoded_store(token: str, now: Optional[datetime] = None) -> Optional[dict]:
    entry = HARDCODED_STORES.get(token)
    if entry is None:
        return None
    name, location_id = entry
    return {
        "token": token,
        "name": name,
        "id": location_id,
        "timezone": HARDCODED_TIMEZONE,
        "state": HARDCODED_STATE,
        "isActive": True,
        "lastUpdated": (now or _now()).isoformat(),
    }


def hardcoded_stores() -> list[dict]:
    now = _now()
    return [hardcoded_store(token, now) for token in HARDCODED_STORES]


def serialize_store(row: StoreConfiguration) -> dict:
    return {
        "token": row.location_token,
        "name": row.store_name,
        "id": row.par_brink_location_id,
        "timezone": row.timezone,
        "state": row.state,
        "region": row.region,
        "address": row.address,
        "phone": row.phone,
        "storeurl": row.storeurl,
        "googleMapsUrl": row.google_maps_url,
        "manager": row.manager_name,
        "isActive": row.is_active,
        "lastUpdated": row.last_updated.isoformat() if row.last_updated else None,
        "dailyHours": row.daily_hours,
        "openingHour": row.opening_hour,
        "closingHour": row.closing_hour,
    }


class StoreRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _active(self):
        return select(StoreConfiguration).where(StoreConfiguration.is_active.is_(True))

    def get_all(self) -> list[dict]:
        rows = self.db.execute(self._active().order_by(StoreConfiguration.store_name)).scalars()
        return [serialize_store(row) for row in rows]

    def get_by_token(self, token: str) -> Optional[dict]:
        row = self.db.execute(self._active().where(StoreConfiguration.location_token == token)).scalar_one_or_none()
        return serialize_store(row) if row is not None else None

    def get_by_state(self, state: str) -> list[dict]:
        query = self._active().where(StoreConfiguration.state == state).order_by(StoreConfiguration.store_name)
        return [serialize_store(row) for row in self.db.execute(query).scalars()]

    def get_hours(self, token: str) -> Optional[dict]:
        row = self.db.execute(self._active().where(StoreConfiguration.location_token == token)).scalar_one_or_none()
        if row is None:
            return None
        return {"opening": row.opening_hour, "closing": row.closing_hour}

    def update_store(self, token: str, fields: dict, updated_by: str = "system") -> bool:
        changes = {UPDATABLE_STORE_FIELDS[k]: v for k, v in fields.items() if k in UPDATABLE_STORE_FIELDS and v is not None}
        if not changes:
            return False
        row = self.db.execute(
            select(StoreConfiguration).where(StoreConfiguration.location_token == token)
        ).scalar_one_or_none()
        if row is None:
            return False
        for attr, value in changes.items():
            setattr(row, attr, value)
        row.last_updated = _now()
        row.updated_by = updated_by
        self.db.commit()
        logger.info("Store updated", extra={"locationToken": mask_token(token), "fields": sorted(changes)})
        return True

    def add_store(self, store: dict, created_by: str = "system") -> dict:
        now = _now()
        row = StoreConfiguration(
            location_token=store["token"],
            store_name=store["name"],
            par_brink_location_id=str(store["id"]),
            timezone=store.get("timezone") or HARDCODED_TIMEZONE,
            state=store.get("state") or HARDCODED_STATE,
            region=store.get("region"),
            address=store.get("address"),
            phone=store.get("phone"),
            storeurl=store.get("storeurl"),
            google_maps_url=store.get("googleMapsUrl"),
            daily_hours=store.get("dailyHours"),
            manager_name=store.get("manager"),
            manager_email=store.get("managerEmail"),
            opening_hour=store.get("openingHour", 10),
            closing_hour=store.get("closingHour", 22),
            is_active=store.get("isActive", True),
            created_date=now,
            last_updated=now,
            updated_by=created_by,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return serialize_store(row)

    def count_active(self) -> int:
        query = select(func.count()).select_from(StoreConfiguration).where(StoreConfiguration.is_active.is_(True))
        return self.db.execute(query).scalar_one()


class StoreConfigService:
    """Read-through store cache: memory, then a JSON file, then the database, then the built-in table."""

    def __init__(
        self,
        cache_path: str,
        ttl_seconds: int,
        session_factory: Callable[[], Session],
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.cache_path = Path(cache_path)
        self.ttl_seconds = ttl_seconds
        self.session_factory = session_factory
        self._clock = clock
        self._cache: Optional[dict] = None
        self._refresh_lock = threading.Lock()

    # -- database access

    def _load_from_db(self) -> tuple[list[dict], str]:
        try:
            db = self.session_factory()
            try:
                return StoreRepository(db).get_all(), SOURCE_DATABASE
            finally:
                db.close()
        except (SQLAlchemyError, IntegrationError) as exc:
            logger.warning("Store database query failed, using built-in store table: %s", exc)
            return hardcoded_stores(), SOURCE_BUILTIN

    def _store_from_db(self, token: str) -> Optional[dict]:
        try:
            db = self.session_factory()
            try:
                store = StoreRepository(db).get_by_token(token)
            finally:
                db.close()
            if store is not None:
                return store
            logger.warning("Store not found in database", extra={"locationToken": mask_token(token)})
        except (SQLAlchemyError, IntegrationError) as exc:
            logger.warning("Store database query failed, using built-in store table: %s", exc)
        return hardcoded_store(token)

    # -- cache file

    def _age_seconds(self, cache: dict) -> float:
        last = datetime.fromisoformat(cache["lastRefresh"])
        return (self._clock() - last).total_seconds()

    def _read_file(self) -> Optional[dict]:
        try:
            with self.cache_path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Store cache file unreadable: %s", exc)
            return None
        if not isinstance(data, dict) or "stores" not in data or "lastRefresh" not in data:
            return None
        return data

    def _write_file(self) -> None:
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.cache_path.with_suffix(self.cache_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as fh:
                json.dump(self._cache, fh, indent=2)
            os.replace(tmp_path, self.cache_path)
        except OSError as exc:
            # The in-memory cache still serves requests.
            logger.error("Failed to save store cache file: %s", exc)

    # -- cache lifecycle

    def refresh_cache(self) -> dict:
        stores, source = self._load_from_db()
        self._cache = {
            "stores": {store["token"]: store for store in stores},
            "lastRefresh": self._clock().isoformat(),
            "cacheVersion": CACHE_VERSION,
            "totalStores": len(stores),
            "source": source,
        }
        self._write_file()
        logger.info("Store cache refreshed", extra={"totalStores": len(stores)})
        return self._cache

    def _is_fresh(self, cache: Optional[dict]) -> bool:
        return cache is not None and self._age_seconds(cache) < self.ttl_seconds

    def _load_cache(self) -> None:
        try:
            from_file = self._read_file()
            if self._is_fresh(from_file):
                self._cache = from_file
                return
            self.refresh_cache()
        except CACHE_ERRORS:
            if self._cache is not None:
                logger.warning("Using stale store cache after refresh failure", exc_info=True)
                return
            raise

    def ensure_cache_valid(self) -> None:
        if self._is_fresh(self._cache):
            return
        # Concurrent callers wait here and reuse whatever the first caller loaded.
        with self._refresh_lock:
            if self._is_fresh(self._cache):
                return
            self._load_cache()

    # -- lookups

    def get_store(self, token: str) -> Optional[dict]:
        try:
            self.ensure_cache_valid()
        except CACHE_ERRORS:
            logger.exception("Store cache unavailable, falling back to database")
        if self._cache is None:
            return self._store_from_db(token)
        store = self._cache["stores"].get(token)
        if store is None:
            logger.warning("Store not found", extra={"locationToken": mask_token(token)})
        return store

    def active_stores(self) -> tuple[list[dict], str]:
        """Active stores sorted by name, with where they came from (``database`` or ``builtin``)."""
        try:
            self.ensure_cache_valid()
        except CACHE_ERRORS:
            logger.exception("Store cache unavailable, falling back to database")
        cache = self._cache
        if cache is not None:
            stores, source = list(cache["stores"].values()), cache.get("source", SOURCE_DATABASE)
        else:
            stores, source = self._load_from_db()
        return sorted((s for s in stores if s.get("isActive", True)), key=lambda s: s["name"]), source

    def list_active_stores(self) -> list[dict]:
        return self.active_stores()[0]

    def list_stores_by_state(self, state: str) -> list[dict]:
        return [store for store in self.list_active_stores() if store.get("state") == state]

    def health_check(self) -> dict:
        if self._cache is None:
            return {"cacheStatus": "missing", "totalStores": 0, "lastRefresh": None, "cacheAge": None}
        age = self._age_seconds(self._cache)
        return {
            "cacheStatus": "healthy" if age < self.ttl_seconds else "stale",
            "totalStores": self._cache["totalStores"],
            "lastRefresh": self._cache["lastRefresh"],
            "cacheAge": int(age),
        }
