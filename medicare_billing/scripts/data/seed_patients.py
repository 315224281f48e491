import asyncio
from pathlib import Path
import sys
from typing import Callable, Dict, List

import structlog
from sqlalchemy import delete, text
from sqlalchemy.ext.asyncio import AsyncSession

# Allows running as `python medicare_billing/scripts/data/seed_patients.py` from the project root
sys.path.append(str(Path(__file__).resolve().parents[3]))

from medicare_billing.src.core.database.db_session import create_engine_from_settings, create_session_factory
from medicare_billing.src.core.database.models.patient_bill_db import PatientBillModel
from medicare_billing.src.core.database.models.patient_db import PatientModel
from medicare_billing.src.core.logging_config import setup_logging

logger = structlog.get_logger(__name__)

REFERENCE_PATIENTS: List[Dict] = [
    {"id": 1, "name": "Ahmed Al-Rashid", "age": 45, "insurance_plan_type": "Premium"},
    {"id": 2, "name": "Fatima Al-Balushi", "age": 32, "insurance_plan_type": "Standard"},
    {"id": 3, "name": "Mohammed Al-Habsi", "age": 28, "insurance_plan_type": "Basic"},
    {"id": 4, "name": "Aisha Al-Lawati", "age": 55, "insurance_plan_type": "Premium"},
    {"id": 5, "name": "Khalid Al-Siyabi", "age": 40, "insurance_plan_type": "Standard"},
]


async def _reset_patient_id_sequence(session: AsyncSession):
    # Explicit ids do not advance a PostgreSQL serial sequence
    if session.get_bind().dialect.name != "postgresql":
        return
    table = PatientModel.__tablename__
    await session.execute(text(
        f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), (SELECT MAX(id) FROM {table}))"
    ))
    logger.info(f"Reset {table}.id sequence to follow the reference patients.")


async def seed_patients(session_factory: Callable[[], AsyncSession]) -> int:
    """
    Replaces the patient table contents with the reference patients.

    Bill rows are cleared as well, since every bill references a patient.
    Returns the number of patients inserted.
    """
    async with session_factory() as session:
        async with session.begin():
            logger.info(f"Clearing existing data from {PatientBillModel.__tablename__} and {PatientModel.__tablename__}...")
            await session.execute(delete(PatientBillModel))
            await session.execute(delete(PatientModel))

            session.add_all([PatientModel(**patient) for patient in REFERENCE_PATIENTS])
            await session.flush()
            await _reset_patient_id_sequence(session)
    logger.info(f"Successfully loaded {len(REFERENCE_PATIENTS)} reference patients into the database.")
    return len(REFERENCE_PATIENTS)


async def main():
    engine = create_engine_from_settings()
    try:
        await seed_patients(create_session_factory(engine))
    except Exception as e:
        logger.error(f"An error occurred while seeding patients: {e}", exc_info=True)
        raise
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    logger.info("Running patient seed script...")
    asyncio.run(main())
    logger.info("Patient seed script finished.")
