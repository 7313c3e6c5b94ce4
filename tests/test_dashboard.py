from datetime import datetime, timezone

from app.brink import Order, Shift
from app.dashboard import (
    build_dashboard,
    build_hourly_labor,
    build_hourly_sales,
    compute_totals,
    is_future,
    validate_dashboard,
)
from app.errors import BrinkError
from app.main import get_brink_client, get_store_service
from tests.fakes import ACCESS_TOKEN, CASTLE_ROCK, CASTLE_ROCK_STORE, brink_client, make_client, soap, store_service

DENVER = "America/Denver"

# 2024-05-01 14:00 in Denver (MDT, UTC-6)
NOW = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)

LUNCH = Order("1", "101", "Smith", 25.5, first_send_time="2024-05-01T18:15:00Z")
LATER = Order("2", "102", "Jones", 12.0, first_send_time="2024-05-01T21:30:00Z")
OVERNIGHT = Order("3", "103", "Kim", 8.0, first_send_time="2024-05-02T07:10:00Z")
MORNING_SHIFT = Shift("s1", "11", minutes_worked=180, pay_rate=15.0, start_time="2024-05-01T15:00:00Z")


class FakeBrink:
    def __init__(self, orders=(), shifts=(), fail_shifts=False) -> None:
        self.orders = list(orders)
        self.shifts = list(shifts)
        self.fail_shifts = fail_shifts
        self.dates = []

    def get_orders(self, access_token, location_token, business_date):
        self.dates.append(business_date)
        return self.orders

    def get_shifts(self, access_token, location_token, business_date):
        if self.fail_shifts:
            raise BrinkError("PAR Brink GetShifts failed: HTTP 502: Bad Gateway")
        return self.shifts


def _by_hour(rows: list[dict]) -> dict:
    return {row["hour"]: row for row in rows}


def test_is_future_follows_business_day_order() -> None:
    assert is_future(15, 14)
    assert not is_future(14, 14)
    assert not is_future(5, 14)
    # 01:00 and 04:00 belong to the tail of the business day
    assert is_future(1, 14)
    assert is_future(4, 14)
    assert not is_future(23, 1)
    assert not is_future(15, 4)
    assert not is_future(5, 4)
    assert not is_future(15, None)
    assert not is_future(4, 14, cutover_hour=3)


def test_hourly_sales_buckets_by_local_hour() -> None:
    hourly = build_hourly_sales([LUNCH, LATER, OVERNIGHT], DENVER)
    assert [row["hour"] for row in hourly[:2]] == ["03:00", "04:00"]
    assert hourly[-1]["hour"] == "02:00"
    by_hour = _by_hour(hourly)
    assert by_hour["12:00"] == {"hour": "12:00", "sales": 25.5, "guests": 1, "orders": 1, "guestAverage": 25.5}
    assert by_hour["15:00"]["sales"] == 12.0
    assert by_hour["01:00"]["sales"] == 8.0


def test_hourly_sales_blocks_future_hours() -> None:
    by_hour = _by_hour(build_hourly_sales([LUNCH, LATER, OVERNIGHT], DENVER, current_hour=14))
    assert by_hour["12:00"]["sales"] == 25.5
    assert by_hour["15:00"]["sales"] == 0
    assert by_hour["01:00"]["orders"] == 0


def test_hourly_labor_spreads_hours_across_the_shift() -> None:
    by_hour = _by_hour(build_hourly_labor([MORNING_SHIFT], DENVER))
    assert [by_hour[h]["hoursWorked"] for h in ("09:00", "10:00", "11:00", "12:00")] == [0.75] * 4
    assert by_hour["09:00"]["laborCost"] == 11.25
    assert by_hour["13:00"]["employeesWorking"] == 0

    blocked = _by_hour(build_hourly_labor([MORNING_SHIFT], DENVER, current_hour=10))
    assert blocked["09:00"]["hoursWorked"] == 1.5
    assert blocked["10:00"]["laborCost"] == 22.5
    assert blocked["11:00"]["hoursWorked"] == 0


def test_compute_totals() -> None:
    sales = build_hourly_sales([LUNCH, LATER], DENVER)
    labor = build_hourly_labor([MORNING_SHIFT], DENVER)
    totals = compute_totals(sales, labor)
    assert totals["totalSales"] == 37.5
    assert totals["totalOrders"] == 2
    assert totals["totalLaborCost"] == 45.0
    assert totals["totalLaborHours"] == 3.0
    assert totals["laborPercentage"] == 120.0
    assert totals["overallGuestAverage"] == 18.75


def test_validate_empty_dashboard() -> None:
    result = validate_dashboard(build_hourly_sales([], DENVER), build_hourly_labor([], DENVER), 12)
    assert result["dataQualityScore"] == 65
    assert result["totalIssuesFound"] == 0
    assert result["recommendedActions"] == []


def test_validate_flags_alignment_and_future_data() -> None:
    sales = [
        {"hour": "13:00", "sales": 150.0, "orders": 2, "guests": 2, "guestAverage": 75.0},
        {"hour": "16:00", "sales": 10.0, "orders": 1, "guests": 1, "guestAverage": 10.0},
    ]
    labor = [{"hour": "13:00", "laborCost": 0.0, "hoursWorked": 0.0, "employeesWorking": 0}]
    result = validate_dashboard(sales, labor, 14)
    categories = result["validationCategories"]
    assert categories["alignmentValidation"]["issuesFound"] == 1
    assert categories["futureDataBlocking"]["issuesFound"] == 1
    assert result["totalIssuesFound"] == 2
    assert result["dataQualityScore"] == 50

    unblocked = validate_dashboard(sales, labor, 14, block_future=False)
    assert unblocked["validationCategories"]["futureDataBlocking"]["enabled"] is False
    assert unblocked["validationCategories"]["futureDataBlocking"]["issuesFound"] == 0


def test_validate_recommends_labor_review() -> None:
    sales = build_hourly_sales([LUNCH], DENVER)
    labor = build_hourly_labor([MORNING_SHIFT], DENVER)
    result = validate_dashboard(sales, labor, 14)
    assert result["recommendedActions"] == ["Review labor scheduling and efficiency"]


def test_build_dashboard_for_current_day() -> None:
    brink = FakeBrink(orders=[LUNCH, LATER], shifts=[MORNING_SHIFT])
    data, warnings = build_dashboard(brink, CASTLE_ROCK_STORE, ACCESS_TOKEN, now=NOW)

    assert warnings == []
    assert brink.dates == ["2024-05-01"]
    assert data["location"] == "Castle Rock"
    assert data["businessDate"] == "2024-05-01"
    assert data["totalSales"] == 25.5
    assert data["validationResults"]["currentHour"] == 14
    assert data["validationResults"]["validationCategories"]["futureDataBlocking"]["enabled"] is True


def test_build_dashboard_for_past_day_keeps_every_hour() -> None:
    brink = FakeBrink(orders=[LUNCH, LATER], fail_shifts=True)
    data, warnings = build_dashboard(brink, CASTLE_ROCK_STORE, ACCESS_TOKEN, business_date="2024-04-30", now=NOW)

    assert data["totalSales"] == 37.5
    assert data["totalLaborHours"] == 0
    assert warnings == ["Labor data unavailable: PAR Brink GetShifts failed: HTTP 502: Bad Gateway"]
    assert data["validationResults"]["validationCategories"]["futureDataBlocking"]["enabled"] is False


def test_dashboard_route(tmp_path) -> None:
    orders = soap(
        "<Orders><Order><Id>1</Id><Number>101</Number><Name>Smith</Name><Total>25.50</Total>"
        "<FirstSendTime><DateTime>2024-05-01T18:15:00Z</DateTime></FirstSendTime></Order></Orders>"
    )
    stores = store_service(tmp_path)
    responses = {"GetOrders": orders, "GetShifts": soap("<Shifts/>")}
    client = make_client(
        overrides={get_brink_client: lambda: brink_client(responses), get_store_service: lambda: stores}
    )
    with client:
        resp = client.post(
            "/api/par-brink/dashboard",
            json={"accessToken": ACCESS_TOKEN, "locationToken": CASTLE_ROCK, "businessDate": "2024-05-01"},
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["locationId"] == "109"
        assert data["totalSales"] == 25.5
        assert len(data["hourlySales"]) == 24
        assert len(data["hourlyLabor"]) == 24

        missing = client.post("/api/par-brink/dashboard", json={"locationToken": CASTLE_ROCK})
        assert missing.status_code == 400


def test_build_dashboard_before_cutover_keeps_the_previous_day() -> None:
    # 04:30 on 2024-05-02 in Denver is still business date 2024-05-01
    early = datetime(2024, 5, 2, 10, 30, tzinfo=timezone.utc)
    brink = FakeBrink(orders=[LUNCH, LATER, OVERNIGHT], shifts=[MORNING_SHIFT])
    data, warnings = build_dashboard(brink, CASTLE_ROCK_STORE, ACCESS_TOKEN, now=early)

    assert brink.dates == ["2024-05-01"]
    assert data["businessDate"] == "2024-05-01"
    assert data["totalSales"] == 45.5
    assert data["totalLaborHours"] == 3.0
    assert data["validationResults"]["currentHour"] == 4
    assert data["validationResults"]["validationCategories"]["futureDataBlocking"]["issuesFound"] == 0
    assert [row["hour"] for row in data["hourlySales"][:2]] == ["03:00", "04:00"]
