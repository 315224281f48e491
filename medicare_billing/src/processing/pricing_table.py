import csv
from decimal import Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, List, Optional, Tuple, Union
import structlog

from ..api.models.billing_models import ServiceCatalogEntry

logger = structlog.get_logger(__name__)

# Reference catalog, fees in OMR
REFERENCE_SERVICE_CATALOG: Tuple[ServiceCatalogEntry, ...] = (
    ServiceCatalogEntry(code="CONS100", description="Consultation", base_fee=Decimal("12.0")),
    ServiceCatalogEntry(code="LAB210", description="Lab Test", base_fee=Decimal("8.5")),
    ServiceCatalogEntry(code="IMG330", description="X-Ray", base_fee=Decimal("25.0")),
    ServiceCatalogEntry(code="US400", description="Ultrasound", base_fee=Decimal("35.0")),
    ServiceCatalogEntry(code="MRI700", description="MRI", base_fee=Decimal("180.0")),
)


def normalize_service_code(code: str) -> str:
    return code.strip().upper()


class PricingTable:
    """Read-only mapping from service code to base fee.

    Built once at startup and shared by every connection; it exposes no mutation,
    so concurrent readers need no locking.
    """

    def __init__(self, entries: Iterable[ServiceCatalogEntry] = REFERENCE_SERVICE_CATALOG):
        catalog = {}
        for entry in entries:
            code = normalize_service_code(entry.code)
            if code in catalog:
                raise ValueError(f"Duplicate service code in catalog: {code}")
            catalog[code] = entry.model_copy(update={"code": code})
        if not catalog:
            raise ValueError("Service catalog must contain at least one entry.")
        self._entries = MappingProxyType(catalog)
        logger.info("PricingTable initialized", service_codes=list(self._entries))

    @classmethod
    def from_csv(cls, csv_path: Union[str, Path]) -> "PricingTable":
        """Loads a catalog from a CSV file with `code,description,base_fee` columns."""
        path = Path(csv_path)
        entries: List[ServiceCatalogEntry] = []
        with open(path, mode='r', encoding='utf-8', newline='') as csvfile:
            reader = csv.DictReader(csvfile)
            for line_number, row in enumerate(reader, start=2):
                try:
                    entries.append(ServiceCatalogEntry(
                        code=row['code'],
                        description=row.get('description') or "",
                        base_fee=Decimal(row['base_fee'].strip()),
                    ))
                except Exception as e:
                    # Any bad row rejects the whole file
                    raise ValueError(f"Invalid service catalog row {line_number} in {path}: {e}") from e
        logger.info("Service catalog loaded from CSV", path=str(path), entries=len(entries))
        return cls(entries)

    def base_fee(self, code: str) -> Optional[Decimal]:
        entry = self._entries.get(normalize_service_code(code))
        return entry.base_fee if entry is not None else None

    def is_valid_code(self, code: str) -> bool:
        return normalize_service_code(code) in self._entries

    @property
    def valid_codes(self) -> Tuple[str, ...]:
        return tuple(self._entries)

    @property
    def entries(self) -> Tuple[ServiceCatalogEntry, ...]:
        return tuple(self._entries.values())

    def describe(self) -> str:
        """Human-readable listing of the catalog."""
        width = max(len(code) for code in self._entries)
        lines = ["Available Service Codes:"]
        for entry in self._entries.values():
            lines.append(f"  {entry.code:<{width}} - {entry.description}: {entry.base_fee} OMR")
        return "\n".join(lines) + "\n"
