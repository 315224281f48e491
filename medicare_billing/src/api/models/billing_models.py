from pydantic import BaseModel, Field, condecimal
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

CENTS = Decimal("0.01")

def round_money(amount: Decimal) -> Decimal:
    """Rounds an amount to 2 decimal places the way it is transmitted and displayed."""
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


class CoveragePlan(str, Enum):
    """Insurance tier of a patient. Values are the exact wire/database spellings."""
    PREMIUM = "Premium"
    STANDARD = "Standard"
    BASIC = "Basic"

    @classmethod
    def from_wire(cls, value: str) -> Optional["CoveragePlan"]:
        try:
            return cls(value.strip())
        except ValueError:
            return None


class PatientCategory(str, Enum):
    """Encounter type of a visit. Values are the exact wire spellings."""
    OUTPATIENT = "Outpatient"
    INPATIENT = "Inpatient"
    EMERGENCY = "Emergency"

    @classmethod
    def from_wire(cls, value: str) -> Optional["PatientCategory"]:
        try:
            return cls(value.strip())
        except ValueError:
            return None


class ServiceCatalogEntry(BaseModel):
    code: str = Field(min_length=1)
    description: str = ""
    base_fee: condecimal(ge=Decimal(0))

    model_config = {"frozen": True}


class BillingRequest(BaseModel):
    patient_id: int = Field(gt=0)
    visit_date: date
    patient_category: PatientCategory
    # Checked against the pricing table by the server, not here
    service_code: str

    model_config = {"frozen": True}


class BillBreakdown(BaseModel):
    service_code: str
    base_fee: condecimal(ge=Decimal(0))
    coverage_plan: CoveragePlan
    proportional_discount: condecimal(ge=Decimal(0))
    flat_discount: condecimal(ge=Decimal(0))
    total_discount: condecimal(ge=Decimal(0))
    patient_category: PatientCategory
    surcharge: condecimal(ge=Decimal(0))
    final_amount: condecimal(ge=Decimal(0))

    model_config = {"frozen": True}

    @property
    def discounted_subtotal(self) -> Decimal:
        return max(Decimal(0), self.base_fee - self.total_discount)

    def rounded(self) -> "BillBreakdown":
        """Copy with every monetary field rounded to 2 places, i.e. what survives transmission."""
        return self.model_copy(update={
            "base_fee": round_money(self.base_fee),
            "proportional_discount": round_money(self.proportional_discount),
            "flat_discount": round_money(self.flat_discount),
            "total_discount": round_money(self.total_discount),
            "surcharge": round_money(self.surcharge),
            "final_amount": round_money(self.final_amount),
        })

    def format_receipt(self) -> str:
        rule = "=" * 44
        thin_rule = "-" * 44
        lines = [
            rule,
            "       MEDICARE OMAN - BILL RECEIPT         ",
            rule,
            f"Service Code:        {self.service_code}",
            f"Base Fee:            {round_money(self.base_fee)} OMR",
            thin_rule,
            f"Insurance Plan:      {self.coverage_plan.value}",
            f"Percentage Discount: -{round_money(self.proportional_discount)} OMR",
            f"Fixed Discount:      -{round_money(self.flat_discount)} OMR",
            f"Total Discount:      -{round_money(self.total_discount)} OMR",
            thin_rule,
            f"Subtotal:            {round_money(self.discounted_subtotal)} OMR",
            thin_rule,
            f"Patient Type:        {self.patient_category.value}",
            f"Surcharge:           +{round_money(self.surcharge)} OMR",
            rule,
            f"FINAL AMOUNT:        {round_money(self.final_amount)} OMR",
            rule,
        ]
        return "\n".join(lines) + "\n"


class BillingResponse(BaseModel):
    """Decoded server response: either a breakdown or the server's error message."""
    breakdown: Optional[BillBreakdown] = None
    error_message: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.breakdown is not None


class PatientBillRecord(BaseModel):
    bill_id: int
    patient_id: int
    visit_date: date
    bill_amount: Decimal

    model_config = {"from_attributes": True}
