"""Response schema for contract/vendor analysis."""

import logging

from pydantic import Field, ValidationError

from services.extraction.schema import (
    ContractDraft,
    ExtractedContractData,
    ExtractedVendorData,
)
from services.reconciliation.models import ContractTerms, DiscountTerm, PricingTerm
from services.shared.schema import FrozenCamelModel

logger = logging.getLogger(__name__)


class ContractAnalysisResult(FrozenCamelModel):
    """Vendor and contract data extracted from a contract document.

    Attributes:
        contract_terms: Baseline for later invoice analyses; None when the
            extracted contract lacks an effective date, payment terms or any
            priced item
    """

    success: bool
    confidence: float = Field(..., ge=0, le=1)
    processing_time: int = 0
    extracted_vendor_data: ExtractedVendorData
    extracted_contract_data: ExtractedContractData
    contract_terms: ContractTerms | None = None


def to_contract_terms(draft: ContractDraft) -> ContractTerms | None:
    """Build a reconciliation baseline from an extracted contract.

    Pricing entries without a positive price or a unit and discounts without
    an amount are dropped.
    """
    contract = draft.contract
    if contract.effective_date is None or not contract.payment_terms:
        return None

    pricing = tuple(
        PricingTerm(item=p.item, price=p.price, unit=p.unit, conditions=p.conditions)
        for p in contract.pricing
        if p.item and p.price is not None and p.price > 0 and p.unit
    )
    if not pricing:
        return None

    discounts = tuple(
        DiscountTerm(type=d.type, amount=d.amount, conditions=d.conditions)
        for d in contract.discounts
        if d.amount is not None
    )
    try:
        return ContractTerms(
            payment_terms=contract.payment_terms,
            pricing=pricing,
            discounts=discounts or None,
            tax_rate=contract.tax_rate,
            effective_date=contract.effective_date,
            expiration_date=contract.expiration_date,
        )
    except ValidationError as e:
        logger.info(f"Extracted contract is not usable as reconciliation baseline: {e}")
        return None
