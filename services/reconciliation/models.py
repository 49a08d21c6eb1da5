"""Reconciliation data model: contract baseline, discrepancies and the verdict."""

from datetime import date
from enum import Enum
from typing import Any

from pydantic import Field, field_serializer, model_validator

from services.extraction.schema import InvoiceDraft
from services.shared.schema import Amount, FrozenCamelModel, json_number


class DiscrepancyType(str, Enum):
    PRICE = "price"
    QUANTITY = "quantity"
    TAX = "tax"
    MISSING_ITEM = "missing_item"
    UNAUTHORIZED_ITEM = "unauthorized_item"
    PAYMENT_TERMS = "payment_terms"
    OTHER = "other"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class ComplianceStatus(str, Enum):
    COMPLIANT = "compliant"
    DISCREPANCY = "discrepancy"
    NON_COMPLIANT = "non_compliant"


class PricingTerm(FrozenCamelModel):
    item: str = Field(..., min_length=1)
    price: Amount = Field(..., gt=0)
    unit: str
    conditions: str | None = None


class DiscountTerm(FrozenCamelModel):
    type: str
    amount: Amount
    conditions: str = ""


class ContractTerms(FrozenCamelModel):
    """Immutable snapshot of contract terms used as the comparison baseline."""

    payment_terms: str
    pricing: tuple[PricingTerm, ...]
    discounts: tuple[DiscountTerm, ...] | None = None
    tax_rate: Amount | None = Field(None, ge=0, le=100)
    effective_date: date
    expiration_date: date | None = None

    @model_validator(mode="after")
    def _check_dates(self) -> "ContractTerms":
        if self.expiration_date is not None and self.effective_date > self.expiration_date:
            raise ValueError("effectiveDate must not be after expirationDate")
        return self


class VendorInfo(FrozenCamelModel):
    name: str
    id: str
    contact_email: str | None = Field(None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Discrepancy(FrozenCamelModel):
    """One detected deviation between invoice and contract."""

    type: DiscrepancyType
    severity: Severity
    field: str
    expected: Any = None
    actual: Any = None
    difference: Amount | None = None
    impact: Amount | None = Field(None, description="Absolute financial impact in currency")
    description: str
    recommendation: str | None = None

    @field_serializer("expected", "actual", when_used="json")
    def _serialize_value(self, value: Any) -> Any:
        return json_number(value)


class AnalysisResult(FrozenCamelModel):
    """Terminal artifact of an invoice analysis."""

    success: bool
    confidence: float = Field(..., ge=0, le=1)
    discrepancies: tuple[Discrepancy, ...] = ()
    compliance_status: ComplianceStatus
    ai_reasoning: str | None = None
    processing_time: int = 0
    extracted_data: InvoiceDraft | None = None
