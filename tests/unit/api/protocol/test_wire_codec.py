import pytest
from datetime import date
from decimal import Decimal

from medicare_billing.src.api.models.billing_models import (
    BillBreakdown, BillingRequest, CoveragePlan, PatientCategory,
)
from medicare_billing.src.api.protocol import wire_codec
from medicare_billing.src.api.protocol.errors import (
    InvalidCategory, InvalidPatientId, InvalidServiceCode, InvalidVisitDate, MalformedRequest, MalformedResponse,
    UnknownResponse,
)
from medicare_billing.src.processing.billing_engine import BillingEngine


@pytest.fixture
def emergency_imaging_bill(billing_engine: BillingEngine) -> BillBreakdown:
    return billing_engine.compute_bill("IMG330", CoveragePlan.BASIC, PatientCategory.EMERGENCY)


# --- Requests ---

def test_decode_request():
    request = wire_codec.decode_request("3|2024-01-15|Emergency|img330\n")
    assert request == BillingRequest(
        patient_id=3,
        visit_date=date(2024, 1, 15),
        patient_category=PatientCategory.EMERGENCY,
        service_code="IMG330",
    )

def test_decode_request_trims_fields():
    request = wire_codec.decode_request(" 12 | 2024-02-29 |  Inpatient\t| lab210 \r\n")
    assert request.patient_id == 12
    assert request.visit_date == date(2024, 2, 29)
    assert request.patient_category is PatientCategory.INPATIENT
    assert request.service_code == "LAB210"

def test_decode_request_leaves_catalog_check_to_caller():
    request = wire_codec.decode_request("1|2024-01-15|Outpatient|NOSUCH")
    assert request.service_code == "NOSUCH"

@pytest.mark.parametrize("line", [
    "1|2024-01-15|Outpatient",
    "1|2024-01-15|Outpatient|CONS100|extra",
    "",
    "hello",
])
def test_wrong_field_count_is_malformed(line: str):
    with pytest.raises(MalformedRequest) as exc_info:
        wire_codec.decode_request(line)
    assert exc_info.value.message == "Invalid request format. Expected: patientId|visitDate|patientType|serviceCode"

@pytest.mark.parametrize("patient_id", ["abc", "0", "-5", "1.5", "", "2147483648", "99999999999999999999"])
def test_invalid_patient_id(patient_id: str):
    with pytest.raises(InvalidPatientId) as exc_info:
        wire_codec.decode_request(f"{patient_id}|2024-01-15|Outpatient|CONS100")
    assert exc_info.value.message == "Invalid patient ID. Must be a positive number."

def test_explicit_plus_sign_accepted():
    assert wire_codec.decode_request("+7|2024-01-15|Outpatient|CONS100").patient_id == 7

@pytest.mark.parametrize("visit_date", ["2024-13-01", "2023-02-29", "15/01/2024", "2024-1-5", "", "20240115"])
def test_invalid_visit_date(visit_date: str):
    with pytest.raises(InvalidVisitDate):
        wire_codec.decode_request(f"1|{visit_date}|Outpatient|CONS100")

@pytest.mark.parametrize("visit_date", ["1999-12-31", "2101-01-01"])
def test_visit_date_year_out_of_range(visit_date: str):
    with pytest.raises(InvalidVisitDate, match="Year must be between 2000 and 2100"):
        wire_codec.decode_request(f"1|{visit_date}|Outpatient|CONS100")

@pytest.mark.parametrize("category", ["outpatient", "EMERGENCY", "Urgent", ""])
def test_invalid_category(category: str):
    with pytest.raises(InvalidCategory) as exc_info:
        wire_codec.decode_request(f"1|2024-01-15|{category}|CONS100")
    assert exc_info.value.message == "Invalid patient type. Valid types: Outpatient, Inpatient, Emergency"

def test_patient_id_checked_before_other_fields():
    with pytest.raises(InvalidPatientId):
        wire_codec.decode_request("x|not-a-date|Nope|???")

CATALOG_CODES = ("CONS100", "LAB210", "IMG330", "US400", "MRI700")

def test_service_code_checked_against_catalog_when_given():
    assert wire_codec.decode_request("1|2024-01-15|Outpatient|mri700", valid_codes=CATALOG_CODES).service_code == "MRI700"
    with pytest.raises(InvalidServiceCode) as exc_info:
        wire_codec.decode_request("1|2024-01-15|Outpatient|NOSUCH", valid_codes=CATALOG_CODES)
    assert exc_info.value.message == "Invalid service code. Valid codes: CONS100, LAB210, IMG330, US400, MRI700"

def test_service_code_checked_before_category():
    with pytest.raises(InvalidServiceCode):
        wire_codec.decode_request("1|2024-01-15|Walk-in|XRAY999", valid_codes=CATALOG_CODES)

def test_encode_request_round_trip():
    request = BillingRequest(
        patient_id=5, visit_date=date(2025, 6, 1), patient_category=PatientCategory.INPATIENT, service_code="US400"
    )
    line = wire_codec.encode_request(request)
    assert line == "5|2025-06-01|Inpatient|US400"
    assert wire_codec.decode_request(line) == request


# --- Responses ---

def test_encode_success(emergency_imaging_bill: BillBreakdown):
    assert wire_codec.encode_success(emergency_imaging_bill) == (
        "SUCCESS:IMG330|25.00|Basic|0.00|10.00|10.00|Emergency|2.25|17.25"
    )

def test_encode_success_rounds_half_up():
    bill = BillBreakdown(
        service_code="US400",
        base_fee=Decimal("35.0"),
        coverage_plan=CoveragePlan.STANDARD,
        proportional_discount=Decimal("3.500"),
        flat_discount=Decimal("8.0"),
        total_discount=Decimal("11.500"),
        patient_category=PatientCategory.EMERGENCY,
        surcharge=Decimal("3.52500"),
        final_amount=Decimal("27.02500"),
    )
    assert wire_codec.encode_success(bill).endswith("|Emergency|3.53|27.03")

def test_success_round_trip_equals_rounded_breakdown(billing_engine: BillingEngine):
    for plan in CoveragePlan:
        for category in PatientCategory:
            bill = billing_engine.compute_bill("US400", plan, category)
            response = wire_codec.decode_response(wire_codec.encode_success(bill))
            assert response.is_success
            assert response.breakdown == bill.rounded()

def test_decode_error_response():
    response = wire_codec.decode_response("ERROR:Patient ID not found in database.\n")
    assert not response.is_success
    assert response.breakdown is None
    assert response.error_message == "Patient ID not found in database."

def test_encode_error_keeps_one_line():
    assert wire_codec.encode_error("first\nsecond\r\nthird") == "ERROR:first second third"

@pytest.mark.parametrize("line", ["HELLO", "", "success:CONS100|...", "CONNECTED:MedicareServer Ready"])
def test_unknown_response(line: str):
    with pytest.raises(UnknownResponse):
        wire_codec.decode_response(line)

@pytest.mark.parametrize("payload", [
    "IMG330|25.00|Basic|0.00|10.00",
    "IMG330|25.00|Basic|0.00|10.00|10.00|Emergency|2.25|17.25|extra",
    "IMG330|abc|Basic|0.00|10.00|10.00|Emergency|2.25|17.25",
    "IMG330|25.00|Gold|0.00|10.00|10.00|Emergency|2.25|17.25",
    "IMG330|25.00|Basic|0.00|10.00|10.00|Walk-in|2.25|17.25",
    "IMG330|25.00|Basic|0.00|10.00|10.00|Emergency|2.25|NaN",
    "IMG330|25.00|Basic|0.00|10.00|10.00|Emergency|2.25|Infinity",
    "IMG330|-25.00|Basic|0.00|10.00|10.00|Emergency|2.25|17.25",
])
def test_malformed_success_payload(payload: str):
    with pytest.raises(MalformedResponse):
        wire_codec.decode_response(wire_codec.SUCCESS_PREFIX + payload)

def test_frame_and_unframe():
    assert wire_codec.frame("ERROR:x") == b"ERROR:x\n"
    assert wire_codec.unframe(b"SUCCESS:abc\r\n") == "SUCCESS:abc"
