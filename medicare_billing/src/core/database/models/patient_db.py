from sqlalchemy import Column, Integer, String, Enum as SAEnum
from ..db_session import Base

class PatientModel(Base):
    __tablename__ = "patient"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    age = Column(Integer, nullable=False)

    # Stored as the exact wire spelling of CoveragePlan
    insurance_plan_type = Column(
        SAEnum("Premium", "Standard", "Basic", name="insurance_plan_type"),
        nullable=False
    )

    def __repr__(self):
        return f"<PatientModel(id={self.id}, name='{self.name}', insurance_plan_type='{self.insurance_plan_type}')>"
