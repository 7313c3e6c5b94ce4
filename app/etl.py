from __future__ import annotations

import logging
from collections import Counter
from typing import Optional

from app.brink import Employee, parse_brink_datetime
from app.errors import UkgError
from app.ukg import UkgReadyClient

logger = logging.getLogger(__name__)

JOB_CODE_MAPPING = {
    "10": "Manager",
    "20": "Crew Member",
    "30": "Shift Leader",
}
SECURITY_LEVEL_MAPPING = {
    "1": "Manager",
    "2": "Staff",
    "5": "Shift Leader",
}

PREVIEW_SIZE = 5
SAMPLE_SIZE = 3


def format_date_for_ukg(value: Optional[str]) -> Optional[str]:
    """``YYYY-MM-DD`` for anything that parses as a timestamp; other values pass through."""
    if not value:
        return value
    parsed = parse_brink_datetime(value)
    return parsed.date().isoformat() if parsed is not None else value


def extracted_record(employee: Employee) -> dict:
    return {
        "EmployeeId": employee.employee_id,
        "FirstName": employee.first_name,
        "LastName": employee.last_name,
        "MiddleName": employee.middle_name,
        "HomeLocationId": employee.home_location_id or "",
        "JobCodeId": employee.job_code_id or "",
        "SecurityLevelId": employee.security_level_id or "",
        "HireDate": employee.hire_date or "",
        "TerminationDate": employee.termination_date,
        "PayRate": employee.pay_rate,
        "IsActive": employee.active,
        "PhoneNumber": employee.phone,
        "EmailAddress": employee.email,
        "City": employee.city,
        "State": employee.state,
    }


def transform_employee(employee: Employee) -> dict:
    job_code = employee.job_code_id or ""
    security_level = employee.security_level_id or ""
    return {
        "employeeNumber": employee.employee_id,
        "firstName": employee.first_name,
        "lastName": employee.last_name,
        "middleName": employee.middle_name,
        "personalEmail": employee.email,
        "homePhone": employee.phone,
        "hireDate": format_date_for_ukg(employee.hire_date),
        "terminationDate": format_date_for_ukg(employee.termination_date),
        "jobTitle": JOB_CODE_MAPPING.get(job_code, f"Job Code {job_code}"),
        "department": SECURITY_LEVEL_MAPPING.get(security_level, f"Security Level {security_level}"),
        "location": employee.home_location_id,
        "payRate": employee.pay_rate,
        "isActive": employee.active,
        "ssn": employee.ssn,
        "birthDate": format_date_for_ukg(employee.date_of_birth),
        "address": {
            "street": employee.address,
            "city": employee.city,
            "state": employee.state,
            "zipCode": employee.zip_code,
        }
        if employee.address
        else None,
    }


def transform_employees(employees: list[Employee]) -> list[dict]:
    return [transform_employee(employee) for employee in employees]


def dry_run_preview(employees: list[dict]) -> dict:
    active = sum(1 for e in employees if e["isActive"])
    return {
        "message": "Dry run completed - data ready for UKG Ready",
        "statistics": {
            "totalEmployees": len(employees),
            "activeEmployees": active,
            "inactiveEmployees": len(employees) - active,
            "withEmail": sum(1 for e in employees if e.get("personalEmail")),
            "withPhone": sum(1 for e in employees if e.get("homePhone")),
            "jobDistribution": dict(Counter(e["jobTitle"] for e in employees if e.get("jobTitle"))),
            "departmentDistribution": dict(Counter(e["department"] for e in employees if e.get("department"))),
        },
        "sampleEmployees": employees[:SAMPLE_SIZE],
    }


async def load_to_ukg(employees: list[dict], client: UkgReadyClient) -> dict:
    if not await client.test_connection():
        raise UkgError("UKG Ready connection test failed")

    count_before = await client.get_employee_count()
    batch = await client.batch_create_employees(employees)
    count_after = await client.get_employee_count()

    total = batch["totalProcessed"]
    success_rate = batch["successful"] / total * 100 if total else 0.0
    logger.info(
        "UKG Ready load finished",
        extra={"successful": batch["successful"], "failed": batch["failed"], "total": total},
    )
    return {
        "message": "Employees loaded to UKG Ready successfully",
        "batchResult": batch,
        "employeeCountBefore": count_before,
        "employeeCountAfter": count_after,
        "employeesAdded": count_after - count_before if count_after > count_before else 0,
        "summary": {
            "totalProcessed": total,
            "successful": batch["successful"],
            "failed": batch["failed"],
            "successRate": f"{success_rate:.1f}%",
        },
    }


async def run_pipeline(
    employees: list[Employee],
    dry_run: bool = True,
    client: Optional[UkgReadyClient] = None,
) -> dict:
    """Transform extracted PAR Brink employees and either preview or load them."""
    transformed = transform_employees(employees)
    if dry_run:
        load_result = dry_run_preview(transformed)
    else:
        if client is None:
            raise UkgError("UKG Ready configuration required for live ETL")
        load_result = await load_to_ukg(transformed, client)

    data = {
        "extracted": len(employees),
        "transformed": len(transformed),
        "loadResult": load_result,
    }
    if dry_run:
        data["preview"] = transformed[:PREVIEW_SIZE]
    return data
