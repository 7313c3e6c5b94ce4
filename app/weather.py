from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from app.errors import WeatherError
from app.vault import TTLCache

logger = logging.getLogger(__name__)

GEOCODE_CACHE_TTL_SECONDS = 24 * 3600
DEFAULT_BUSINESS_HOURS = {"open": "10:00", "close": "22:00"}
HEALTH_PROBE = {"lat": 39.7392, "lon": -104.9903}
NORMAL_STAFFING = "Normal staffing levels recommended"


def icon_url(code: str) -> str:
    return f"https://openweathermap.org/img/wn/{code}@2x.png"


def _minutes(value: str) -> int:
    hour, _, minute = value.partition(":")
    return int(hour) * 60 + int(minute or 0)


def within_business_hours(minute_of_day: int, open_at: str, close_at: str) -> bool:
    opening = _minutes(open_at)
    closing = _minutes(close_at)
    if closing <= opening:
        # overnight window, e.g. 22:00-02:00
        return minute_of_day >= opening or minute_of_day <= closing
    return opening <= minute_of_day <= closing


def _hour_label(moment: datetime, today) -> str:
    label = f"{moment.hour % 12 or 12} {'AM' if moment.hour < 12 else 'PM'}"
    if moment.date() != today:
        label = f"{moment.strftime('%a')} {label}"
    return label


def extract_business_hours_weather(
    hourly: list[dict],
    business_hours: Optional[dict],
    offset_seconds: int = 0,
    now: Optional[datetime] = None,
) -> list[dict]:
    hours = business_hours or DEFAULT_BUSINESS_HOURS
    tz = timezone(timedelta(seconds=offset_seconds))
    today = (now or datetime.now(timezone.utc)).astimezone(tz).date()
    results = []
    for entry in hourly[:48]:
        moment = datetime.fromtimestamp(entry["dt"], tz)
        if not within_business_hours(moment.hour * 60 + moment.minute, hours["open"], hours["close"]):
            continue
        condition = (entry.get("weather") or [{}])[0]
        results.append(
            {
                "hour": _hour_label(moment, today),
                "temp": round(entry.get("temp", 0)),
                "feels_like": round(entry.get("feels_like", 0)),
                "condition": condition.get("description", ""),
                "icon": condition.get("icon", ""),
                "precipProbability": round(entry.get("pop", 0) * 100),
                "windSpeed": round(entry.get("wind_speed", 0)),
                "humidity": entry.get("humidity"),
            }
        )
    return results


def summarize_weather(business_hours_weather: list[dict], current: dict) -> dict:
    if not business_hours_weather:
        temp = round(current.get("temp", 0))
        return {
            "avgTemp": temp,
            "maxTemp": temp,
            "minTemp": temp,
            "precipChance": 0,
            "dominantCondition": (current.get("weather") or [{}])[0].get("description", ""),
            "customerTrafficImpact": "neutral",
            "staffingRecommendation": NORMAL_STAFFING,
        }

    temps = [h["temp"] for h in business_hours_weather]
    avg_temp = round(sum(temps) / len(temps))
    precip = max(h["precipProbability"] for h in business_hours_weather)
    dominant = Counter(h["condition"] for h in business_hours_weather).most_common(1)[0][0]

    impact, recommendation = "neutral", NORMAL_STAFFING
    if precip > 70 or "storm" in dominant or "heavy" in dominant:
        impact = "negative"
        recommendation = "Consider reduced staffing - severe weather may decrease foot traffic"
    elif avg_temp > 85 or avg_temp < 32:
        impact = "negative"
        recommendation = "Extreme temperatures may affect customer comfort - prepare accordingly"
    elif 65 <= avg_temp <= 80 and precip < 30:
        impact = "positive"
        recommendation = "Pleasant weather - consider increasing staffing for higher traffic"
    elif precip > 30:
        impact = "negative"
        recommendation = "Rain likely - expect reduced outdoor seating and delivery challenges"

    return {
        "avgTemp": avg_temp,
        "maxTemp": max(temps),
        "minTemp": min(temps),
        "precipChance": precip,
        "dominantCondition": dominant,
        "customerTrafficImpact": impact,
        "staffingRecommendation": recommendation,
    }


class WeatherService:
    """OpenWeatherMap geocoding and one-call forecasts shaped for restaurant staffing."""

    def __init__(self, api_key: Optional[str], http_client: httpx.Client, base_url: str) -> None:
        self.api_key = api_key
        self.http = http_client
        self.base_url = base_url.rstrip("/")
        self.geocode_cache = TTLCache(GEOCODE_CACHE_TTL_SECONDS)
        if not api_key:
            logger.warning("OpenWeatherMap API key not found. Weather service will be unavailable.")

    def _get_json(self, path: str, params: dict):
        response = self.http.get(f"{self.base_url}{path}", params={**params, "appid": self.api_key}, timeout=10.0)
        if not response.is_success:
            raise WeatherError(f"{path} failed: {response.status_code} {response.reason_phrase}")
        return response.json()

    def geocode(self, address: str) -> Optional[dict]:
        if not self.api_key:
            return None
        key = address.lower().strip()
        cached = self.geocode_cache.get(key)
        if cached is not None:
            return cached
        try:
            data = self._get_json("/geo/1.0/direct", {"q": address, "limit": 1})
        except (httpx.HTTPError, WeatherError, ValueError) as exc:
            logger.error("Geocoding error: %s", exc)
            return None
        if not data:
            logger.warning("No geocoding results found", extra={"address": address})
            return None
        hit = data[0]
        location = {
            "lat": hit["lat"],
            "lon": hit["lon"],
            "name": hit.get("name"),
            "country": hit.get("country"),
            "state": hit.get("state"),
        }
        self.geocode_cache.set(key, location)
        return location

    def get_restaurant_weather(self, address: str, business_hours: Optional[dict] = None) -> Optional[dict]:
        if not self.api_key:
            logger.warning("Weather service unavailable: no API key configured")
            return None
        location = self.geocode(address)
        if location is None:
            return None
        try:
            data = self._get_json(
                "/data/3.0/onecall",
                {
                    "lat": location["lat"],
                    "lon": location["lon"],
                    "exclude": "minutely,daily",
                    "units": "imperial",
                },
            )
        except (httpx.HTTPError, WeatherError, ValueError) as exc:
            logger.error("Weather service error: %s", exc)
            return None

        hourly = data.get("hourly") or []
        business = extract_business_hours_weather(hourly, business_hours, data.get("timezone_offset", 0))
        return {
            "location": location,
            "current": data.get("current") or {},
            "hourly": hourly[:24],
            "alerts": data.get("alerts"),
            "businessHoursWeather": business,
            "weatherSummary": summarize_weather(business, data.get("current") or {}),
        }

    def health_check(self) -> dict:
        if not self.api_key:
            return {"status": "unavailable", "hasApiKey": False, "message": "OpenWeatherMap API key not configured"}
        try:
            response = self.http.get(
                f"{self.base_url}/data/2.5/weather",
                params={**HEALTH_PROBE, "appid": self.api_key},
                timeout=10.0,
            )
        except httpx.HTTPError as exc:
            logger.warning("Weather health probe failed: %s", exc)
            return {"status": "degraded", "hasApiKey": True, "message": "API connection failed"}
        if response.is_success:
            return {"status": "healthy", "hasApiKey": True, "message": "Weather service operational"}
        return {"status": "degraded", "hasApiKey": True, "message": f"API response error: {response.status_code}"}
