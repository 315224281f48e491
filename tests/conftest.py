import asyncio
import pytest
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock

from medicare_billing.src.api.models.billing_models import CoveragePlan, PatientBillRecord, round_money
from medicare_billing.src.core.monitoring.app_metrics import MetricsCollector
from medicare_billing.src.processing.billing_engine import BillingEngine
from medicare_billing.src.processing.pricing_table import PricingTable

# Mirrors the seeded reference patients
REFERENCE_PATIENT_PLANS: Dict[int, CoveragePlan] = {
    1: CoveragePlan.PREMIUM,
    2: CoveragePlan.STANDARD,
    3: CoveragePlan.BASIC,
    4: CoveragePlan.PREMIUM,
    5: CoveragePlan.STANDARD,
}


class FakeBillingStore:
    """In-memory BillingStore with switchable failures and call recording."""

    def __init__(self, patients: Optional[Dict[int, CoveragePlan]] = None):
        self.patients = dict(REFERENCE_PATIENT_PLANS if patients is None else patients)
        self.records: List[PatientBillRecord] = []
        self.lookup_calls: List[int] = []
        self.append_calls: List[Tuple[int, date, Decimal]] = []
        self.fail_lookup = False
        self.fail_append = False
        self.connection_ok = True
        self.operation_delay_seconds = 0.0

    async def lookup_coverage_plan(self, patient_id: int) -> Optional[CoveragePlan]:
        self.lookup_calls.append(patient_id)
        if self.operation_delay_seconds:
            await asyncio.sleep(self.operation_delay_seconds)
        if self.fail_lookup:
            raise ConnectionError("simulated lookup failure")
        return self.patients.get(patient_id)

    async def append_bill_record(self, patient_id: int, visit_date: date, amount: Decimal) -> int:
        self.append_calls.append((patient_id, visit_date, amount))
        if self.operation_delay_seconds:
            await asyncio.sleep(self.operation_delay_seconds)
        if self.fail_append:
            raise ConnectionError("simulated persist failure")
        record = PatientBillRecord(
            bill_id=len(self.records) + 1,
            patient_id=patient_id,
            visit_date=visit_date,
            bill_amount=round_money(amount),
        )
        self.records.append(record)
        return record.bill_id

    async def list_bills_for_patient(self, patient_id: int) -> List[PatientBillRecord]:
        return [record for record in self.records if record.patient_id == patient_id]

    async def check_connection(self) -> bool:
        return self.connection_ok


@pytest.fixture
def pricing_table() -> PricingTable:
    return PricingTable()

@pytest.fixture
def billing_engine(pricing_table: PricingTable) -> BillingEngine:
    return BillingEngine(pricing_table=pricing_table)

@pytest.fixture
def fake_store() -> FakeBillingStore:
    return FakeBillingStore()

@pytest.fixture
def mock_metrics_collector() -> MagicMock:
    mmc = MagicMock(spec=MetricsCollector)
    # time_db_query is used as a context manager
    mock_timer = MagicMock()
    mock_timer.__enter__ = MagicMock(return_value=None)
    mock_timer.__exit__ = MagicMock(return_value=False)
    mmc.time_db_query.return_value = mock_timer
    return mmc

@pytest.fixture
def fake_store_factory():
    return FakeBillingStore
