from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional, Protocol

import structlog
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..api.models.billing_models import CoveragePlan, PatientBillRecord, round_money
from ..core.database.models.patient_bill_db import PatientBillModel
from ..core.database.models.patient_db import PatientModel
from ..core.monitoring.app_metrics import MetricsCollector

logger = structlog.get_logger(__name__)


class BillingStore(Protocol):
    """
    Patient directory and append-only bill ledger used by the billing server.

    Implementations must be safe for concurrent independent calls. Failures are
    raised, not returned; the connection handler decides what the peer is told.
    """

    async def lookup_coverage_plan(self, patient_id: int) -> Optional[CoveragePlan]:
        """Coverage plan of the patient, or None when the patient does not exist."""
        ...

    async def append_bill_record(self, patient_id: int, visit_date: date, amount: Decimal) -> int:
        """Inserts one bill row and returns its id. Never updates an existing row."""
        ...

    async def list_bills_for_patient(self, patient_id: int) -> List[PatientBillRecord]:
        ...

    async def check_connection(self) -> bool:
        ...


class SQLAlchemyBillingStore:
    def __init__(self, db_session_factory: Callable[[], AsyncSession], metrics_collector: MetricsCollector):
        """
        Args:
            db_session_factory: factory returning a new AsyncSession per call; every
                operation opens its own session so concurrent connections never share one.
            metrics_collector: used to time each query.
        """
        self.db_session_factory = db_session_factory
        self.metrics_collector = metrics_collector
        logger.info("SQLAlchemyBillingStore initialized.")

    async def lookup_coverage_plan(self, patient_id: int) -> Optional[CoveragePlan]:
        async with self.db_session_factory() as session:
            with self.metrics_collector.time_db_query("lookup_coverage_plan"):
                stmt = select(PatientModel.insurance_plan_type).where(PatientModel.id == patient_id)
                result = await session.execute(stmt)
                plan_value = result.scalar_one_or_none()

        if plan_value is None:
            logger.warn("Patient not found", patient_id=patient_id)
            return None

        coverage_plan = CoveragePlan.from_wire(plan_value)
        if coverage_plan is None:
            # The column is an ENUM, so this only happens if the schema and the code disagree
            raise ValueError(f"Unknown insurance plan type {plan_value!r} stored for patient {patient_id}")
        logger.debug("Coverage plan resolved", patient_id=patient_id, coverage_plan=coverage_plan.value)
        return coverage_plan

    async def append_bill_record(self, patient_id: int, visit_date: date, amount: Decimal) -> int:
        record = PatientBillModel(
            patient_id=patient_id,
            visit_date=visit_date,
            bill_amount=round_money(amount),
        )
        async with self.db_session_factory() as session:
            with self.metrics_collector.time_db_query("append_bill_record"):
                async with session.begin():
                    session.add(record)
                    await session.flush()
                    bill_id = record.bill_id
        logger.info("Bill record appended", bill_id=bill_id, patient_id=patient_id,
                    visit_date=visit_date.isoformat(), bill_amount=str(record.bill_amount))
        return bill_id

    async def list_bills_for_patient(self, patient_id: int) -> List[PatientBillRecord]:
        async with self.db_session_factory() as session:
            with self.metrics_collector.time_db_query("list_bills_for_patient"):
                stmt = (
                    select(PatientBillModel)
                    .where(PatientBillModel.patient_id == patient_id)
                    .order_by(PatientBillModel.bill_id)
                )
                result = await session.execute(stmt)
                rows = result.scalars().all()
        return [PatientBillRecord.model_validate(row) for row in rows]

    async def check_connection(self) -> bool:
        try:
            async with self.db_session_factory() as session:
                with self.metrics_collector.time_db_query("check_connection"):
                    result = await session.execute(text("SELECT 1"))
                    return result.scalar_one() == 1
        except Exception as e:
            logger.error("Database connection check failed", error=str(e), exc_info=True)
            return False
