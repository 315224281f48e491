# Importing the models here registers them on Base.metadata, so create_all and
# migrations see every table once this package is imported.

from .patient_db import PatientModel
from .patient_bill_db import PatientBillModel

__all__ = [
    "PatientModel",
    "PatientBillModel",
]
