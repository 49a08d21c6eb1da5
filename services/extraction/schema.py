"""Draft records produced by extraction providers.

Drafts are deliberately lax: a vision model may leave any field empty. Structural
requirements are enforced downstream by the reconciliation engine, which has to
tell "could not compare" apart from "compared and found a problem".
"""

from datetime import date
from typing import Annotated

from pydantic import Field

from services.shared.schema import Amount, CamelModel

Confidence = Annotated[float, Field(ge=0, le=1, allow_inf_nan=False)]


class LineItem(CamelModel):
    """A single invoice line as read from the document."""

    description: str = Field("", description="Line description as printed")
    quantity: Amount | None = Field(None, description="Billed quantity")
    unit_price: Amount | None = Field(None, description="Price per unit")
    total_price: Amount | None = Field(None, description="Line total as printed")
    unit: str | None = Field(None, description="Unit of measure (case, loaf, ...)")


class InvoiceDraft(CamelModel):
    """Structured invoice data extracted from a document image."""

    invoice_number: str | None = Field(None, description="Unique invoice identifier")
    invoice_date: date | None = Field(None, alias="date", description="Date invoice was issued")
    due_date: date | None = Field(None, description="Payment due date")

    vendor_name: str | None = Field(None, description="Supplier/vendor company name")
    vendor_address: str | None = Field(None, description="Supplier address")

    total_amount: Amount | None = Field(None, description="Total amount including tax")
    subtotal: Amount | None = Field(None, description="Subtotal before tax")
    tax_amount: Amount | None = Field(None, description="Tax amount")
    tax_rate: Amount | None = Field(None, description="Tax rate in percent")

    line_items: list[LineItem] = Field(default_factory=list)
    payment_terms: str | None = Field(None, description="Payment terms as stated")

    # Confidence tracking
    confidence: Confidence | None = Field(None, description="Overall extraction confidence")
    field_confidence: dict[str, Confidence] = Field(
        default_factory=dict,
        description="Per-field confidence keyed by field path, e.g. lineItems[0].unitPrice",
    )


class ExtractedPricing(CamelModel):
    """Pricing entry read from a contract; price may be missing."""

    item: str
    price: Amount | None = None
    unit: str | None = None
    conditions: str | None = None


class ExtractedDiscount(CamelModel):
    type: str
    amount: Amount | None = None
    conditions: str = ""


class ReconciliationSummary(CamelModel):
    """Plain-language digest of the contract clauses that matter for reconciliation."""

    overview: str = ""
    pricing_terms: list[str] = Field(default_factory=list)
    discounts: list[str] = Field(default_factory=list)
    critical_clauses: list[str] = Field(default_factory=list)


class ExtractedVendorData(CamelModel):
    vendor_name: str | None = None
    business_category: str | None = None
    contact_email: str | None = None
    phone: str | None = None
    address: str | None = None


class ExtractedContractData(CamelModel):
    contract_title: str | None = None
    effective_date: date | None = None
    expiration_date: date | None = None
    payment_terms: str | None = None
    pricing: list[ExtractedPricing] = Field(default_factory=list)
    discounts: list[ExtractedDiscount] = Field(default_factory=list)
    tax_rate: Amount | None = None
    reconciliation_summary: ReconciliationSummary | None = None


class ContractDraft(CamelModel):
    """Vendor and contract data extracted from a contract document."""

    vendor: ExtractedVendorData = Field(default_factory=ExtractedVendorData)
    contract: ExtractedContractData = Field(default_factory=ExtractedContractData)
    confidence: float = Field(0.0, ge=0, le=1)
