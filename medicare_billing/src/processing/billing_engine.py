from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Tuple
import structlog

from ..api.models.billing_models import BillBreakdown, CoveragePlan, PatientCategory
from ..api.protocol.errors import InvalidServiceCode
from .pricing_table import PricingTable, normalize_service_code

logger = structlog.get_logger(__name__)

# (proportional discount rate, flat discount in OMR)
PLAN_DISCOUNTS: Mapping[CoveragePlan, Tuple[Decimal, Decimal]] = MappingProxyType({
    CoveragePlan.PREMIUM: (Decimal("0.15"), Decimal("5.0")),
    CoveragePlan.STANDARD: (Decimal("0.10"), Decimal("8.0")),
    CoveragePlan.BASIC: (Decimal("0.0"), Decimal("10.0")),
})

CATEGORY_SURCHARGE_RATES: Mapping[PatientCategory, Decimal] = MappingProxyType({
    PatientCategory.OUTPATIENT: Decimal("0.0"),
    PatientCategory.INPATIENT: Decimal("0.05"),
    PatientCategory.EMERGENCY: Decimal("0.15"),
})


class BillingEngine:
    """
    Turns (service code, coverage plan, patient category) into an itemized bill.

    The computation is pure: no I/O, no shared mutable state, and Decimal arithmetic
    so identical inputs always yield identical breakdowns. Amounts are kept at full
    precision; rounding happens only when a breakdown is transmitted or displayed.

    Order of application:
      1. base fee from the pricing table
      2. proportional plan discount on the base fee
      3. flat plan discount
      4. discounted subtotal = max(0, base fee - total discount)
      5. category surcharge on the discounted subtotal (not on the base fee)
      6. final amount = discounted subtotal + surcharge
    """

    def __init__(self, pricing_table: PricingTable):
        self.pricing_table = pricing_table

    def compute_bill(self, service_code: str, coverage_plan: CoveragePlan, patient_category: PatientCategory) -> BillBreakdown:
        # Plans and categories must already be parsed at the request boundary
        if not isinstance(coverage_plan, CoveragePlan):
            raise TypeError(f"coverage_plan must be a CoveragePlan, got {coverage_plan!r}")
        if not isinstance(patient_category, PatientCategory):
            raise TypeError(f"patient_category must be a PatientCategory, got {patient_category!r}")

        code = normalize_service_code(service_code)
        base_fee = self.pricing_table.base_fee(code)
        if base_fee is None:
            raise InvalidServiceCode.for_valid_codes(self.pricing_table.valid_codes)

        discount_rate, flat_discount = PLAN_DISCOUNTS[coverage_plan]
        proportional_discount = base_fee * discount_rate
        total_discount = proportional_discount + flat_discount

        # Only the subtotal is clamped; the final amount is neither clamped nor capped.
        discounted_subtotal = max(Decimal(0), base_fee - total_discount)

        surcharge = discounted_subtotal * CATEGORY_SURCHARGE_RATES[patient_category]
        final_amount = discounted_subtotal + surcharge

        breakdown = BillBreakdown(
            service_code=code,
            base_fee=base_fee,
            coverage_plan=coverage_plan,
            proportional_discount=proportional_discount,
            flat_discount=flat_discount,
            total_discount=total_discount,
            patient_category=patient_category,
            surcharge=surcharge,
            final_amount=final_amount,
        )
        logger.debug("Bill computed", service_code=code, coverage_plan=coverage_plan.value,
                     patient_category=patient_category.value, final_amount=str(final_amount))
        return breakdown
