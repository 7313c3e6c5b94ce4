from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from xml.sax.saxutils import escape
from zoneinfo import ZoneInfo

import httpx

from app.config import Settings, settings
from app.errors import BrinkApiError, BrinkError, BrinkSoapFault
from app.logging_config import mask_token

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
BRINK_WS = "http://www.brinksoftware.com/webservices"
DEMO_ACCESS_TOKEN = "demo-access-token"
NO_END_SENTINEL = "0001-01-01"
MAX_RANGE_DAYS = 31

UNREACHABLE_MESSAGE = "PAR Brink server unreachable. Please check server URL and network connectivity."
AUTH_FAILED_MESSAGE = "PAR Brink authentication failed. Please check access token and credentials."

# action -> (settings attribute holding the URL, service path, service contract)
ACTIONS = {
    "GetShifts": ("par_brink_labor_url", "labor/v2", "ILaborWebService2"),
    "GetPunchDetailsByBusinessDate": ("par_brink_labor_url", "labor/v2", "ILaborWebService2"),
    "GetEmployees": ("par_brink_settings_url", "settings/v2", "ISettingsWebService2"),
    "GetOrders": ("par_brink_sales_url", "sales/v2", "ISalesWebService2"),
    "GetTills": ("par_brink_sales_url", "sales/v2", "ISalesWebService2"),
}


@dataclass
class Shift:
    id: str
    employee_id: str
    job_id: Optional[str] = None
    minutes_worked: int = 0
    pay_rate: float = 0.0
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    business_date: Optional[str] = None


@dataclass
class Employee:
    employee_id: str
    first_name: str = ""
    last_name: str = ""
    active: bool = True
    middle_name: Optional[str] = None
    employee_number: Optional[str] = None
    home_location_id: Optional[str] = None
    job_code_id: Optional[str] = None
    security_level_id: Optional[str] = None
    job_title: Optional[str] = None
    hire_date: Optional[str] = None
    termination_date: Optional[str] = None
    pay_rate: float = 0.0
    ssn: Optional[str] = None
    date_of_birth: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


@dataclass
class PaymentDetail:
    id: Optional[str]
    tip_amount: float = 0.0
    employee_id: Optional[str] = None
    till_number: Optional[str] = None


@dataclass
class Payment:
    id: str
    amount: float = 0.0
    tender_id: Optional[str] = None
    tip_amount: float = 0.0
    employee_id: Optional[str] = None
    payment_type: Optional[str] = None
    till_number: Optional[str] = None
    business_date: Optional[str] = None
    details: list[PaymentDetail] = field(default_factory=list)


@dataclass
class Order:
    id: str
    number: str
    name: str
    total: float
    business_date: Optional[str] = None
    first_send_time: Optional[str] = None
    modified_time: Optional[str] = None
    payments: list[Payment] = field(default_factory=list)


@dataclass
class PaidInOut:
    id: Optional[str]
    amount: float
    description: str = ""
    reason: str = ""
    is_paid_in: bool = False
    time: Optional[str] = None


@dataclass
class Till:
    id: str
    number: Optional[str] = None
    employee_id: Optional[str] = None
    opened_at: Optional[str] = None
    closed_at: Optional[str] = None
    starting_balance: float = 0.0
    paid_ins_outs: list[PaidInOut] = field(default_factory=list)


@dataclass
class Punch:
    employee_id: str
    local_time: str
    punch_type: str
    status: str
    location: str = ""


def parse_brink_datetime(value: Optional[str], tz: Optional[ZoneInfo] = None) -> Optional[datetime]:
    """Parse the ISO timestamps PAR Brink emits (``Z`` suffix, 7-digit fractions).

    Naive values are taken to be in ``tz`` when given, UTC otherwise.
    """
    if not value or value.startswith(NO_END_SENTINEL):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = re.sub(r"(\.\d{6})\d+", r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz or timezone.utc)
    return parsed


def default_shift_date(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return (now - timedelta(hours=7)).date().isoformat()


def default_sales_date(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.date().isoformat()


def business_dates(
    start: Optional[str],
    end: Optional[str],
    now: Optional[datetime] = None,
    max_days: int = MAX_RANGE_DAYS,
) -> list[str]:
    """Inclusive list of business dates between ``start`` and ``end`` (both default to today, UTC)."""
    today = default_sales_date(now)
    try:
        first = date.fromisoformat((start or today)[:10])
        last = date.fromisoformat((end or start or today)[:10])
    except ValueError as exc:
        raise BrinkError(f"Invalid business date: {exc}") from exc
    if last < first:
        raise BrinkError("endDate must not be before startDate")
    span = (last - first).days + 1
    if span > max_days:
        raise BrinkError(f"Date range exceeds {max_days} days")
    return [(first + timedelta(days=offset)).isoformat() for offset in range(span)]


def classify_punch(punch_type: str) -> str:
    kind = punch_type.lower()
    if "in" in kind or "start" in kind:
        return "clocked-in"
    if "break" in kind:
        return "on-break"
    return "clocked-out"


# -- envelopes ---------------------------------------------------------------


def _envelope(prefix: str, service: str, action: str, fields: list[tuple[str, object]]) -> str:
    body = "".join(f"<{prefix}:{name}>{escape(str(value))}</{prefix}:{name}>" for name, value in fields)
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soapenv:Envelope xmlns:soapenv="{SOAP_ENV_NS}" xmlns:{prefix}="{BRINK_WS}/{service}">'
        "<soapenv:Header/>"
        "<soapenv:Body>"
        f"<{prefix}:{action}><{prefix}:request>{body}</{prefix}:request></{prefix}:{action}>"
        "</soapenv:Body>"
        "</soapenv:Envelope>"
    )


def build_envelope(action: str, **params) -> str:
    if action not in ACTIONS:
        raise BrinkError(f"Unsupported PAR Brink action: {action}")
    service = ACTIONS[action][1]
    if action == "GetShifts":
        return _envelope("v2", service, action, [("BusinessDate", f"{params['business_date']}T00:00:00")])
    if action == "GetEmployees":
        return _envelope("set", service, action, [("IncludeJobTypeInfo", "true")])
    if action == "GetOrders":
        return _envelope(
            "v2",
            service,
            action,
            [
                ("BusinessDate", params["business_date"]),
                ("ExcludeOpenOrders", "false"),
                ("PriceRollUp", "RollUpAndDetails"),
            ],
        )
    if action == "GetTills":
        return _envelope("v2", service, action, [("BusinessDate", params["business_date"])])
    # GetPunchDetailsByBusinessDate takes its arguments directly, not wrapped in a request object
    body = (
        f"<v2:businessDate>{escape(str(params['business_date']))}</v2:businessDate>"
        f"<v2:timezoneOffsetMinutes>{int(params.get('timezone_offset_minutes', 0))}</v2:timezoneOffsetMinutes>"
    )
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soapenv:Envelope xmlns:soapenv="{SOAP_ENV_NS}" xmlns:v2="{BRINK_WS}/{service}">'
        "<soapenv:Header/>"
        f"<soapenv:Body><v2:{action}>{body}</v2:{action}></soapenv:Body>"
        "</soapenv:Envelope>"
    )


def soap_action(action: str) -> str:
    _, service, contract = ACTIONS[action]
    return f"{BRINK_WS}/{service}/{contract}/{action}"


# -- parsing -----------------------------------------------------------------


def _text(elem: ET.Element, *names: str) -> Optional[str]:
    for name in names:
        child = elem.find(f"{{*}}{name}")
        if child is not None and child.text and child.text.strip():
            return child.text.strip()
    return None


def _float(elem: ET.Element, *names: str) -> float:
    raw = _text(elem, *names)
    try:
        return float(raw) if raw is not None else 0.0
    except ValueError:
        return 0.0


def _bool(raw: Optional[str], default: bool = False) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in ("true", "1", "yes")


def _nested_datetime(elem: ET.Element, name: str) -> Optional[str]:
    child = elem.find(f"{{*}}{name}")
    if child is None:
        return None
    inner = child.find("{*}DateTime")
    raw = inner.text if inner is not None else child.text
    if not raw or not raw.strip() or raw.strip().startswith(NO_END_SENTINEL):
        return None
    return raw.strip()


def _root(xml: str, action: Optional[str] = None) -> ET.Element:
    try:
        return ET.fromstring(xml)
    except ET.ParseError as exc:
        raise BrinkError(f"PAR Brink {action or 'response'} failed: invalid XML ({exc})") from exc


def check_response(root: ET.Element, action: Optional[str] = None) -> None:
    fault = root.find(".//{*}Fault")
    if fault is not None:
        fault_string = _text(fault, "faultstring") or "".join(fault.itertext()).strip() or "Unknown fault"
        raise BrinkSoapFault(fault_string, action)
    code = root.find(".//{*}ResultCode")
    if code is not None and code.text and code.text.strip() not in ("0", ""):
        message = root.find(".//{*}Message")
        try:
            result_code = int(code.text.strip())
        except ValueError:
            result_code = -1
        raise BrinkApiError(result_code, (message.text or "").strip() if message is not None else "", action)


def parse_shifts(xml: str) -> list[Shift]:
    shifts = []
    for elem in _root(xml).findall(".//{*}Shift"):
        shift_id = _text(elem, "Id")
        employee_id = _text(elem, "EmployeeId")
        if not shift_id or not employee_id:
            continue
        minutes = _text(elem, "MinutesWorked")
        shifts.append(
            Shift(
                id=shift_id,
                employee_id=employee_id,
                job_id=_text(elem, "JobId"),
                minutes_worked=int(float(minutes)) if minutes else 0,
                pay_rate=_float(elem, "PayRate"),
                start_time=_nested_datetime(elem, "StartTime"),
                end_time=_nested_datetime(elem, "EndTime"),
                business_date=_text(elem, "BusinessDate"),
            )
        )
    return shifts


def parse_employees(xml: str) -> list[Employee]:
    employees = []
    for elem in _root(xml).findall(".//{*}Employee"):
        employee_id = _text(elem, "EmployeeId", "Id")
        if not employee_id:
            continue
        employees.append(
            Employee(
                employee_id=employee_id,
                first_name=_text(elem, "FirstName") or "",
                last_name=_text(elem, "LastName") or "",
                active=_bool(_text(elem, "IsActive", "Active"), default=True),
                middle_name=_text(elem, "MiddleName"),
                employee_number=_text(elem, "EmployeeNumber"),
                home_location_id=_text(elem, "HomeLocationId"),
                job_code_id=_text(elem, "JobCodeId"),
                security_level_id=_text(elem, "SecurityLevelId"),
                job_title=_text(elem, "JobTitle", "Position"),
                hire_date=_text(elem, "HireDate"),
                termination_date=_text(elem, "TerminationDate"),
                pay_rate=_float(elem, "PayRate"),
                ssn=_text(elem, "SocialSecurityNumber"),
                date_of_birth=_text(elem, "DateOfBirth"),
                phone=_text(elem, "PhoneNumber"),
                email=_text(elem, "EmailAddress"),
                address=_text(elem, "Address"),
                city=_text(elem, "City"),
                state=_text(elem, "State"),
                zip_code=_text(elem, "ZipCode"),
            )
        )
    return employees


def _parse_payment(elem: ET.Element) -> Optional[Payment]:
    payment_id = _text(elem, "Id")
    if not payment_id:
        return None
    details = []
    container = elem.find("{*}Details")
    if container is None:
        container = elem
    for detail in container.findall("{*}Detail") + container.findall("{*}PaymentDetail"):
        details.append(
            PaymentDetail(
                id=_text(detail, "Id"),
                tip_amount=_float(detail, "TipAmount"),
                employee_id=_text(detail, "EmployeeId"),
                till_number=_text(detail, "TillNumber"),
            )
        )
    return Payment(
        id=payment_id,
        amount=_float(elem, "Amount"),
        tender_id=_text(elem, "TenderId"),
        tip_amount=_float(elem, "TipAmount"),
        employee_id=_text(elem, "EmployeeId"),
        payment_type=_text(elem, "PaymentType"),
        till_number=_text(elem, "TillNumber"),
        business_date=_text(elem, "BusinessDate"),
        details=details,
    )


def parse_orders(xml: str) -> list[Order]:
    orders = []
    for elem in _root(xml).findall(".//{*}Order"):
        order_id = _text(elem, "Id")
        number = _text(elem, "Number")
        total = _float(elem, "Total")
        if not order_id or not number or total <= 0:
            continue
        payments = []
        container = elem.find("{*}Payments")
        if container is not None:
            payment_elems = container.findall("{*}OrderPayment") or container.findall("{*}Payment")
            for payment_elem in payment_elems:
                payment = _parse_payment(payment_elem)
                if payment is not None:
                    payments.append(payment)
        orders.append(
            Order(
                id=order_id,
                number=number,
                name=_text(elem, "Name") or f"Order {number}",
                total=total,
                business_date=_text(elem, "BusinessDate"),
                first_send_time=_nested_datetime(elem, "FirstSendTime"),
                modified_time=_nested_datetime(elem, "ModifiedTime"),
                payments=payments,
            )
        )
    return orders


def _parse_paid_in_out(elem: ET.Element) -> PaidInOut:
    amount = _float(elem, "Amount")
    flag = _text(elem, "IsPaidIn")
    kind = (_text(elem, "Type") or "").lower().replace(" ", "")
    if flag is not None:
        is_paid_in = _bool(flag)
    elif kind:
        is_paid_in = "paidin" in kind or kind == "in"
    else:
        is_paid_in = amount > 0
    return PaidInOut(
        id=_text(elem, "Id"),
        amount=abs(amount),
        description=_text(elem, "Description") or "",
        reason=_text(elem, "Reason", "ReasonName") or "",
        is_paid_in=is_paid_in,
        time=_nested_datetime(elem, "Time") or _text(elem, "BusinessDate"),
    )


def parse_tills(xml: str) -> list[Till]:
    tills = []
    for elem in _root(xml).findall(".//{*}Till"):
        till_id = _text(elem, "Id")
        if not till_id:
            continue
        tills.append(
            Till(
                id=till_id,
                number=_text(elem, "Number"),
                employee_id=_text(elem, "EmployeeId"),
                opened_at=_nested_datetime(elem, "OpenedTime") or _nested_datetime(elem, "OpenTime"),
                closed_at=_nested_datetime(elem, "ClosedTime") or _nested_datetime(elem, "CloseTime"),
                starting_balance=_float(elem, "StartingBalance", "StartingAmount"),
                paid_ins_outs=[_parse_paid_in_out(p) for p in elem.findall(".//{*}PaidInOut")],
            )
        )
    return tills


def parse_punches(xml: str) -> list[Punch]:
    punches = []
    for elem in _root(xml).findall(".//{*}PunchDetail"):
        employee_id = _text(elem, "EmployeeId")
        local_time = _text(elem, "LocalTime")
        punch_type = _text(elem, "Type", "PunchType")
        if not employee_id or not local_time or not punch_type:
            continue
        punches.append(
            Punch(
                employee_id=employee_id,
                local_time=local_time,
                punch_type=punch_type,
                status=classify_punch(punch_type),
                location=_text(elem, "CostCenter1", "Location") or "",
            )
        )
    return punches


# -- client ------------------------------------------------------------------


class BrinkClient:
    """SOAP 1.1 client for the PAR Brink sales, labor and settings services."""

    def __init__(self, http_client: httpx.Client, cfg: Settings = settings) -> None:
        self.http = http_client
        self.cfg = cfg

    @staticmethod
    def _validate_tokens(access_token: Optional[str], location_token: Optional[str]) -> None:
        if not access_token:
            raise BrinkError("PAR Brink access token is required but not provided in the request.")
        if access_token == DEMO_ACCESS_TOKEN:
            raise BrinkError("Demo access token detected. Please provide a valid PAR Brink access token.")
        if not location_token:
            raise BrinkError("PAR Brink location token is required but not provided in the request.")

    def call(self, action: str, access_token: Optional[str], location_token: Optional[str], **params) -> str:
        if action not in ACTIONS:
            raise BrinkError(f"Unsupported PAR Brink action: {action}")
        self._validate_tokens(access_token, location_token)
        url = getattr(self.cfg, ACTIONS[action][0])
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "AccessToken": access_token,
            "LocationToken": location_token,
            "SOAPAction": soap_action(action),
        }
        logger.info(
            "PAR Brink request",
            extra={"action": action, "url": url, "locationToken": mask_token(location_token)},
        )
        try:
            response = self.http.post(
                url,
                content=build_envelope(action, **params).encode("utf-8"),
                headers=headers,
                timeout=self.cfg.par_brink_timeout_seconds,
            )
        except httpx.TransportError as exc:
            logger.error("PAR Brink %s transport error: %s", action, exc)
            raise BrinkError(UNREACHABLE_MESSAGE) from exc

        if response.status_code == 401:
            raise BrinkError(AUTH_FAILED_MESSAGE)
        if not response.is_success:
            # SOAP 1.1 reports faults with HTTP 500; surface the fault text when there is one.
            try:
                root = ET.fromstring(response.text)
            except ET.ParseError:
                root = None
            if root is not None:
                check_response(root, action)
            raise BrinkError(f"PAR Brink {action} failed: HTTP {response.status_code}: {response.reason_phrase}")

        check_response(_root(response.text, action), action)
        return response.text

    def get_shifts(self, access_token: str, location_token: str, business_date: str) -> list[Shift]:
        return parse_shifts(self.call("GetShifts", access_token, location_token, business_date=business_date))

    def get_employees(self, access_token: str, location_token: str) -> list[Employee]:
        return parse_employees(self.call("GetEmployees", access_token, location_token))

    def get_orders(self, access_token: str, location_token: str, business_date: str) -> list[Order]:
        return parse_orders(self.call("GetOrders", access_token, location_token, business_date=business_date))

    def get_tills(self, access_token: str, location_token: str, business_date: str) -> list[Till]:
        return parse_tills(self.call("GetTills", access_token, location_token, business_date=business_date))

    def get_punches(
        self,
        access_token: str,
        location_token: str,
        business_date: str,
        timezone_offset_minutes: int = 0,
    ) -> list[Punch]:
        xml = self.call(
            "GetPunchDetailsByBusinessDate",
            access_token,
            location_token,
            business_date=business_date,
            timezone_offset_minutes=timezone_offset_minutes,
        )
        return parse_punches(xml)


# -- transforms --------------------------------------------------------------


def transform_shifts(shifts: list[Shift]) -> list[dict]:
    return [
        {
            "ShiftId": shift.id,
            "EmployeeId": shift.employee_id,
            "StartTime": shift.start_time,
            "EndTime": shift.end_time,
            "JobId": shift.job_id,
            "JobName": "",
            "Hours": round(shift.minutes_worked / 60, 2),
            "Status": "clocked-out" if shift.end_time else "clocked-in",
        }
        for shift in shifts
    ]


def transform_employees(employees: list[Employee]) -> list[dict]:
    return [
        {
            "EmployeeId": employee.employee_id,
            "FirstName": employee.first_name,
            "LastName": employee.last_name,
            "Status": "active" if employee.active else "inactive",
            "Position": "",
            "HourlyRate": 0,
        }
        for employee in employees
    ]


def transform_sales(orders: list[Order]) -> list[dict]:
    return [
        {
            "SaleId": order.id,
            "Amount": order.total,
            "Timestamp": order.first_send_time or order.business_date,
            "ItemCount": 0,
            "PaymentMethod": "",
            "EmployeeId": "",
            "Number": order.number,
            "Name": order.name,
        }
        for order in orders
    ]


def transform_tips(orders: list[Order]) -> list[dict]:
    tips = []
    for order in orders:
        for payment in order.payments:
            base = {
                "OrderId": order.id,
                "OrderNumber": order.number,
                "CustomerName": order.name,
                "PaymentType": payment.tender_id or "Unknown",
                "PaymentAmount": payment.amount,
                "BusinessDate": order.business_date,
                "Timestamp": payment.business_date or order.business_date,
                "PaymentId": payment.id,
            }
            if payment.tip_amount > 0:
                tips.append(
                    {
                        **base,
                        "TipAmount": payment.tip_amount,
                        "EmployeeId": payment.employee_id,
                        "TillNumber": payment.till_number,
                    }
                )
            for detail in payment.details:
                if detail.tip_amount > 0:
                    tips.append(
                        {
                            **base,
                            "TipAmount": detail.tip_amount,
                            "EmployeeId": detail.employee_id or payment.employee_id,
                            "TillNumber": detail.till_number or payment.till_number,
                            "DetailId": detail.id,
                        }
                    )
    return tips


def _is_tip_entry(entry: PaidInOut) -> bool:
    return "tip" in entry.description.lower() or "tip" in entry.reason.lower()


def transform_tills(tills: list[Till]) -> list[dict]:
    results = []
    for till in tills:
        paid_in = sum(entry.amount for entry in till.paid_ins_outs if entry.is_paid_in)
        paid_out = sum(entry.amount for entry in till.paid_ins_outs if not entry.is_paid_in)
        cash_tips = sum(
            entry.amount for entry in till.paid_ins_outs if not entry.is_paid_in and _is_tip_entry(entry)
        )
        results.append(
            {
                "TillId": till.id,
                "Number": till.number,
                "EmployeeId": till.employee_id,
                "OpenedAt": till.opened_at,
                "ClosedAt": till.closed_at,
                "StartingBalance": till.starting_balance,
                "PaidIn": round(paid_in, 2),
                "PaidOut": round(paid_out, 2),
                "CashTips": round(cash_tips, 2),
                "Entries": [
                    {
                        "Id": entry.id,
                        "Amount": entry.amount,
                        "Type": "paid-in" if entry.is_paid_in else "paid-out",
                        "Description": entry.description,
                        "Reason": entry.reason,
                        "Time": entry.time,
                    }
                    for entry in till.paid_ins_outs
                ],
            }
        )
    return results


def format_duration(start: datetime, end: datetime) -> str:
    minutes = max(0, int((end - start).total_seconds() // 60))
    return f"{minutes // 60}h {minutes % 60}m"


def summarize_clocked_in(
    employees: list[Employee],
    punches: list[Punch],
    timezone_name: str,
    now: Optional[datetime] = None,
) -> list[dict]:
    tz = ZoneInfo(timezone_name)
    now = now or datetime.now(tz)
    by_id = {employee.employee_id: employee for employee in employees if employee.active}

    grouped: dict[str, list[Punch]] = {}
    for punch in punches:
        grouped.setdefault(punch.employee_id, []).append(punch)

    working = []
    for employee_id, entries in grouped.items():
        employee = by_id.get(employee_id)
        if employee is None:
            continue
        entries.sort(key=lambda p: parse_brink_datetime(p.local_time, tz) or now)
        is_working = False
        status = "clocked-in"
        clock_in: Optional[str] = None
        location = ""
        for entry in entries:
            if entry.status == "clocked-in":
                is_working = True
                status = "clocked-in"
                clock_in = clock_in or entry.local_time
                location = entry.location
            elif entry.status == "on-break":
                status = "on-break"
                location = entry.location
            else:
                is_working = False
                clock_in = None
        if not is_working or clock_in is None:
            continue
        started = parse_brink_datetime(clock_in, tz) or now
        working.append(
            {
                "employeeId": employee.employee_id,
                "employeeNumber": employee.employee_number or "",
                "firstName": employee.first_name,
                "lastName": employee.last_name,
                "position": employee.job_title or "",
                "clockInTime": clock_in,
                "duration": format_duration(started, now),
                "location": location,
                "currentStatus": status,
                "timeZone": timezone_name,
            }
        )
    working.sort(key=lambda item: parse_brink_datetime(item["clockInTime"], tz) or now)
    return working


def utc_offset_minutes(timezone_name: str, at: Optional[datetime] = None) -> int:
    at = at or datetime.now(timezone.utc)
    offset = at.astimezone(ZoneInfo(timezone_name)).utcoffset() or timedelta(0)
    return abs(int(offset.total_seconds() // 60))


def business_date_for(timezone_name: str, cutover_hour: int, now: Optional[datetime] = None) -> date:
    local = (now or datetime.now(timezone.utc)).astimezone(ZoneInfo(timezone_name))
    if local.hour < cutover_hour:
        return local.date() - timedelta(days=1)
    return local.date()
