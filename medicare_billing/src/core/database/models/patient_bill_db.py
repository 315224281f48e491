from sqlalchemy import Column, Integer, Date, Numeric, ForeignKey
from ..db_session import Base

class PatientBillModel(Base):
    __tablename__ = "patient_bill"

    # Append-only: rows are inserted per billed visit, never updated or deleted by the service.
    # Resubmitting the same visit produces a second row.
    bill_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    patient_id = Column(Integer, ForeignKey("patient.id", ondelete="CASCADE"), nullable=False, index=True)
    visit_date = Column(Date, nullable=False)
    bill_amount = Column(Numeric(10, 2), nullable=False)

    def __repr__(self):
        return f"<PatientBillModel(bill_id={self.bill_id}, patient_id={self.patient_id}, bill_amount={self.bill_amount})>"
