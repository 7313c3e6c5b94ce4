from datetime import datetime, timezone

import httpx

from app.main import get_store_service, get_weather_service
from app.weather import (
    WeatherService,
    extract_business_hours_weather,
    icon_url,
    summarize_weather,
    within_business_hours,
)
from tests.fakes import CASTLE_ROCK, make_client, store_service

DENVER_OFFSET = -6 * 3600
NOW = datetime(2024, 5, 1, 15, 0, tzinfo=timezone.utc)


def _at(hour_utc: int, day: int = 1) -> int:
    return int(datetime(2024, 5, day, hour_utc, 0, tzinfo=timezone.utc).timestamp())


def _hour(dt: int, temp: float, pop: float = 0.0, description: str = "clear sky") -> dict:
    return {
        "dt": dt,
        "temp": temp,
        "feels_like": temp,
        "pop": pop,
        "wind_speed": 5.4,
        "humidity": 30,
        "weather": [{"description": description, "icon": "01d"}],
    }


HOURLY = [
    _hour(_at(15), 60),  # 09:00 local
    _hour(_at(18), 72.4),  # 12:00 local
    _hour(_at(21), 75.6, pop=0.1),  # 15:00 local
    _hour(_at(5, day=2), 50),  # 23:00 local
    _hour(_at(18, day=2), 70),  # 12:00 local tomorrow
]


def _handler(calls: list):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/geo/1.0/direct":
            if request.url.params["q"] == "nowhere":
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[{"lat": 39.37, "lon": -104.86, "name": "Castle Rock", "country": "US"}])
        if request.url.path == "/data/3.0/onecall":
            return httpx.Response(
                200,
                json={"timezone_offset": DENVER_OFFSET, "current": {"temp": 70.2}, "hourly": HOURLY},
            )
        if request.url.path == "/data/2.5/weather":
            return httpx.Response(200, json={})
        return httpx.Response(404)

    return handler


def _service(calls: list, api_key: str = "key") -> WeatherService:
    http = httpx.Client(transport=httpx.MockTransport(_handler(calls)))
    return WeatherService(api_key, http, "https://api.openweathermap.org")


def test_business_hour_windows() -> None:
    assert within_business_hours(10 * 60, "10:00", "22:00")
    assert not within_business_hours(9 * 60 + 59, "10:00", "22:00")
    assert within_business_hours(23 * 60, "22:00", "02:00")
    assert within_business_hours(60, "22:00", "02:00")
    assert not within_business_hours(12 * 60, "22:00", "02:00")
    assert icon_url("10d") == "https://openweathermap.org/img/wn/10d@2x.png"


def test_extract_business_hours_weather() -> None:
    rows = extract_business_hours_weather(HOURLY, None, DENVER_OFFSET, now=NOW)
    assert [row["hour"] for row in rows] == ["12 PM", "3 PM", "Thu 12 PM"]
    assert rows[0]["temp"] == 72
    assert rows[1]["precipProbability"] == 10
    assert rows[0]["condition"] == "clear sky"


def test_summarize_weather() -> None:
    pleasant = summarize_weather(extract_business_hours_weather(HOURLY, None, DENVER_OFFSET, now=NOW), {})
    assert pleasant["customerTrafficImpact"] == "positive"
    assert pleasant["maxTemp"] == 76
    assert pleasant["minTemp"] == 70

    stormy = summarize_weather([{"temp": 70, "precipProbability": 80, "condition": "thunderstorm"}], {})
    assert stormy["customerTrafficImpact"] == "negative"
    assert stormy["staffingRecommendation"].startswith("Consider reduced staffing")

    fallback = summarize_weather([], {"temp": 41.6, "weather": [{"description": "snow"}]})
    assert fallback["avgTemp"] == 42
    assert fallback["dominantCondition"] == "snow"
    assert fallback["customerTrafficImpact"] == "neutral"


def test_geocode_results_are_cached() -> None:
    calls = []
    service = _service(calls)
    first = service.geocode("5650 Allen Way, Castle Rock, CO")
    second = service.geocode("  5650 ALLEN WAY, Castle Rock, CO")
    assert first == second
    assert first["lat"] == 39.37
    assert calls == ["/geo/1.0/direct"]
    assert service.geocode("nowhere") is None


def test_restaurant_weather() -> None:
    service = _service([])
    weather = service.get_restaurant_weather("5650 Allen Way", {"open": "11:00", "close": "14:00"})
    assert weather["location"]["name"] == "Castle Rock"
    assert len(weather["hourly"]) == 5
    assert [row["temp"] for row in weather["businessHoursWeather"]] == [72, 70]
    assert weather["weatherSummary"]["avgTemp"] == 71


def test_weather_without_api_key() -> None:
    calls = []
    service = _service(calls, api_key=None)
    assert service.get_restaurant_weather("5650 Allen Way") is None
    assert service.health_check()["status"] == "unavailable"
    assert calls == []


def test_weather_health_probe() -> None:
    assert _service([]).health_check() == {
        "status": "healthy",
        "hasApiKey": True,
        "message": "Weather service operational",
    }

    failing = WeatherService(
        "key", httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(401))), "https://x.test"
    )
    assert failing.health_check()["message"] == "API response error: 401"


def test_weather_routes(tmp_path) -> None:
    stores = store_service(tmp_path)
    weather = _service([])
    client = make_client(overrides={get_weather_service: lambda: weather, get_store_service: lambda: stores})
    with client:
        assert client.get("/api/weather").status_code == 400
        missing = client.get("/api/weather", params={"token": "unknown-token"})
        assert missing.status_code == 404
        assert missing.json()["token"] == "unknown-to..."

        resp = client.get("/api/weather", params={"token": CASTLE_ROCK})
        assert resp.status_code == 200
        body = resp.json()
        assert body["store"]["name"] == "Castle Rock"
        assert body["store"]["businessHours"] == {"open": "10:30", "close": "21:00"}
        assert "token" not in body["store"]

        many = client.get("/api/weather/stores").json()
        assert many["summary"]["successful"] == 1
        assert many["results"][0]["store"]["token"] == CASTLE_ROCK

        assert client.get("/api/weather/stores", params={"state": "WY"}).status_code == 400

        health = client.get("/api/weather/health")
        assert health.status_code == 200
        assert health.json()["status"] == "healthy"


def test_weather_health_degrades_without_store_cache(tmp_path) -> None:
    stores = store_service(tmp_path)
    client = make_client(
        overrides={get_weather_service: lambda: _service([]), get_store_service: lambda: stores}
    )
    with client:
        resp = client.get("/api/weather/health")
        assert resp.status_code == 503
        assert resp.json()["components"]["storeService"]["status"] == "missing"
