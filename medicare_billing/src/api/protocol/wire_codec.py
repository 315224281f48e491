"""
Line codec for the billing protocol.

Every message is one newline-terminated line:

    request:  <patientId>|<visitDate YYYY-MM-DD>|<patientCategory>|<serviceCode>
    success:  SUCCESS:<serviceCode>|<baseFee>|<coveragePlan>|<proportionalDiscount>|
              <flatDiscount>|<totalDiscount>|<patientCategory>|<surcharge>|<finalAmount>
    failure:  ERROR:<message>

Monetary fields are written with exactly 2 decimal places.
"""
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Collection, List, Optional

from pydantic import ValidationError

from ..models.billing_models import (
    BillBreakdown, BillingRequest, BillingResponse, CoveragePlan, PatientCategory, round_money,
)
from .errors import (
    InvalidCategory, InvalidPatientId, InvalidServiceCode, InvalidVisitDate, MalformedRequest, MalformedResponse,
    UnknownResponse,
)

FIELD_DELIMITER = "|"
LINE_TERMINATOR = "\n"
SUCCESS_PREFIX = "SUCCESS:"
ERROR_PREFIX = "ERROR:"
ENCODING = "utf-8"

REQUEST_FIELD_COUNT = 4
RESPONSE_FIELD_COUNT = 9

# Patient ids are stored in a 32-bit INT column
MAX_PATIENT_ID = 2**31 - 1
MIN_VISIT_YEAR = 2000
MAX_VISIT_YEAR = 2100

_PATIENT_ID_PATTERN = re.compile(r"[+-]?[0-9]+")
_VISIT_DATE_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


def _format_money(amount: Decimal) -> str:
    return format(round_money(amount), "f")


def _single_line(text: str) -> str:
    # Keeps an embedded newline from splitting one message into two lines
    return " ".join(text.splitlines())


def frame(line: str) -> bytes:
    return (line + LINE_TERMINATOR).encode(ENCODING)


def unframe(raw: bytes) -> str:
    return raw.decode(ENCODING, errors="replace").rstrip("\r\n")


# --- Requests ---

def encode_request(request: BillingRequest) -> str:
    return FIELD_DELIMITER.join([
        str(request.patient_id),
        request.visit_date.isoformat(),
        request.patient_category.value,
        request.service_code,
    ])


def _parse_patient_id(raw_value: str) -> int:
    if not _PATIENT_ID_PATTERN.fullmatch(raw_value):
        raise InvalidPatientId()
    patient_id = int(raw_value)
    if patient_id <= 0 or patient_id > MAX_PATIENT_ID:
        raise InvalidPatientId()
    return patient_id


def _parse_visit_date(raw_value: str) -> date:
    if not _VISIT_DATE_PATTERN.fullmatch(raw_value):
        raise InvalidVisitDate()
    try:
        visit_date = date.fromisoformat(raw_value)
    except ValueError:
        raise InvalidVisitDate()
    if not (MIN_VISIT_YEAR <= visit_date.year <= MAX_VISIT_YEAR):
        raise InvalidVisitDate(f"Invalid visit date. Year must be between {MIN_VISIT_YEAR} and {MAX_VISIT_YEAR}.")
    return visit_date


def decode_request(line: str, valid_codes: Optional[Collection[str]] = None) -> BillingRequest:
    """
    Parses one request line.

    Fields are trimmed and the service code is uppercased. When `valid_codes` is given
    the service code is checked against it before the category; without it the code is
    left for whoever owns the pricing table. Checks run in the order listed below and
    the first failure wins.

    Raises:
        MalformedRequest: the line does not have exactly 4 fields.
        InvalidPatientId: the id is not a positive integer.
        InvalidVisitDate: the date is not a real YYYY-MM-DD date in range.
        InvalidServiceCode: the code is not in `valid_codes`.
        InvalidCategory: the category is not one of the PatientCategory values.
    """
    parts = line.rstrip("\r\n").split(FIELD_DELIMITER)
    if len(parts) != REQUEST_FIELD_COUNT:
        raise MalformedRequest()

    raw_patient_id, raw_visit_date, raw_category, raw_service_code = (part.strip() for part in parts)

    patient_id = _parse_patient_id(raw_patient_id)
    visit_date = _parse_visit_date(raw_visit_date)
    service_code = raw_service_code.upper()
    if valid_codes is not None and service_code not in valid_codes:
        raise InvalidServiceCode.for_valid_codes(valid_codes)
    patient_category = PatientCategory.from_wire(raw_category)
    if patient_category is None:
        raise InvalidCategory()

    return BillingRequest(
        patient_id=patient_id,
        visit_date=visit_date,
        patient_category=patient_category,
        service_code=service_code,
    )


# --- Responses ---

def encode_success(breakdown: BillBreakdown) -> str:
    fields = [
        breakdown.service_code,
        _format_money(breakdown.base_fee),
        breakdown.coverage_plan.value,
        _format_money(breakdown.proportional_discount),
        _format_money(breakdown.flat_discount),
        _format_money(breakdown.total_discount),
        breakdown.patient_category.value,
        _format_money(breakdown.surcharge),
        _format_money(breakdown.final_amount),
    ]
    return SUCCESS_PREFIX + FIELD_DELIMITER.join(fields)


def encode_error(message: str) -> str:
    return ERROR_PREFIX + _single_line(message)


def _parse_money(raw_value: str, field_name: str) -> Decimal:
    try:
        amount = Decimal(raw_value.strip())
    except InvalidOperation:
        raise MalformedResponse(f"Failed to parse bill data: {field_name} is not a number ({raw_value!r}).")
    if not amount.is_finite():
        raise MalformedResponse(f"Failed to parse bill data: {field_name} is not a finite number ({raw_value!r}).")
    return amount


def _decode_breakdown(payload: str) -> BillBreakdown:
    fields: List[str] = payload.split(FIELD_DELIMITER)
    if len(fields) != RESPONSE_FIELD_COUNT:
        raise MalformedResponse(
            f"Failed to parse bill data: expected {RESPONSE_FIELD_COUNT} fields, got {len(fields)}."
        )

    coverage_plan = CoveragePlan.from_wire(fields[2])
    if coverage_plan is None:
        raise MalformedResponse(f"Failed to parse bill data: unknown coverage plan {fields[2]!r}.")
    patient_category = PatientCategory.from_wire(fields[6])
    if patient_category is None:
        raise MalformedResponse(f"Failed to parse bill data: unknown patient category {fields[6]!r}.")

    try:
        return BillBreakdown(
            service_code=fields[0].strip(),
            base_fee=_parse_money(fields[1], "baseFee"),
            coverage_plan=coverage_plan,
            proportional_discount=_parse_money(fields[3], "proportionalDiscount"),
            flat_discount=_parse_money(fields[4], "flatDiscount"),
            total_discount=_parse_money(fields[5], "totalDiscount"),
            patient_category=patient_category,
            surcharge=_parse_money(fields[7], "surcharge"),
            final_amount=_parse_money(fields[8], "finalAmount"),
        )
    except ValidationError as e:
        raise MalformedResponse(f"Failed to parse bill data: {e.error_count()} invalid field(s).") from e


def decode_response(line: str) -> BillingResponse:
    """
    Parses one response line into either a breakdown or the server's error message.

    Raises:
        MalformedResponse: a SUCCESS line whose fields cannot be parsed.
        UnknownResponse: a line with neither prefix.
    """
    line = line.rstrip("\r\n")
    if line.startswith(SUCCESS_PREFIX):
        return BillingResponse(breakdown=_decode_breakdown(line[len(SUCCESS_PREFIX):]))
    if line.startswith(ERROR_PREFIX):
        return BillingResponse(error_message=line[len(ERROR_PREFIX):])
    raise UnknownResponse(f"Unrecognized server response: {line!r}")
