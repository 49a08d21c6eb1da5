"""Deterministic extraction provider for mock mode and tests.

Returns the same Sysco Food Services invoice and contract for every document.
The invoice is internally consistent and deliberately deviates from the
contract in two places (a Fresh Vegetables overcharge and an uncontracted
sanitizer line) so the full reconciliation path is exercised end to end.
"""

from datetime import date
from decimal import Decimal

from services.extraction.base import (
    ContractExtraction,
    ExtractionProvider,
    InvoiceExtraction,
)
from services.extraction.schema import (
    ContractDraft,
    ExtractedContractData,
    ExtractedDiscount,
    ExtractedPricing,
    ExtractedVendorData,
    InvoiceDraft,
    LineItem,
    ReconciliationSummary,
)

MOCK_MODEL = "mock"
MOCK_TOKENS = 1500

_LINES = (
    ("Fresh Vegetables - Mixed Case", "15", "45.50", "682.50", "case"),
    ("Ground Beef 80/20", "40", "25.15", "1006.00", "lb"),
    ("Whole Wheat Bread", "30", "14.10", "423.00", "loaf"),
    ("Paper Towels", "15", "4.75", "71.25", "case"),
    ("Hand Sanitizer Gallon", "5", "88.45", "442.25", "case"),
)


def mock_invoice() -> InvoiceDraft:
    """Sysco invoice INV-2024-001234."""
    line_items = [
        LineItem(
            description=description,
            quantity=Decimal(quantity),
            unit_price=Decimal(unit_price),
            total_price=Decimal(total),
            unit=unit,
        )
        for description, quantity, unit_price, total, unit in _LINES
    ]
    field_confidence = {
        "totalAmount": 0.97,
        "subtotal": 0.96,
        "taxAmount": 0.95,
        "taxRate": 0.93,
    }
    for index in range(len(line_items)):
        field_confidence[f"lineItems[{index}].unitPrice"] = 0.94
        field_confidence[f"lineItems[{index}].totalPrice"] = 0.95

    return InvoiceDraft(
        invoice_number="INV-2024-001234",
        invoice_date=date(2024, 1, 15),
        due_date=date(2024, 2, 14),
        vendor_name="Sysco Food Services",
        vendor_address="1390 Enclave Parkway, Houston, TX 77077",
        subtotal=Decimal("2625.00"),
        tax_amount=Decimal("222.50"),
        tax_rate=Decimal("8.5"),
        total_amount=Decimal("2847.50"),
        line_items=line_items,
        payment_terms="Net 30",
        confidence=0.95,
        field_confidence=field_confidence,
    )


def mock_contract() -> ContractDraft:
    """Sysco food service supply agreement for 2024."""
    return ContractDraft(
        vendor=ExtractedVendorData(
            vendor_name="Sysco Food Services",
            business_category="Food Service Distribution",
            contact_email="accounts@sysco.example.com",
            phone="(555) 010-2400",
            address="1390 Enclave Parkway, Houston, TX 77077",
        ),
        contract=ExtractedContractData(
            contract_title="Food Service Supply Agreement 2024",
            effective_date=date(2024, 1, 1),
            expiration_date=date(2024, 12, 31),
            payment_terms="Net 30",
            tax_rate=Decimal("8.5"),
            pricing=[
                ExtractedPricing(
                    item="Fresh Vegetables",
                    price=Decimal("42.00"),
                    unit="case",
                    conditions="minimum 10 cases",
                ),
                ExtractedPricing(item="Ground Beef", price=Decimal("25.15"), unit="lb"),
                ExtractedPricing(item="Whole Wheat Bread", price=Decimal("14.10"), unit="loaf"),
                ExtractedPricing(item="Paper Towels", price=Decimal("4.75"), unit="case"),
            ],
            discounts=[
                ExtractedDiscount(
                    type="volume", amount=Decimal("5"), conditions="orders over $5,000"
                ),
            ],
            reconciliation_summary=ReconciliationSummary(
                overview=(
                    "Annual supply agreement for produce, meat, bakery and paper goods "
                    "at fixed unit prices, payable net 30."
                ),
                pricing_terms=[
                    "Fresh Vegetables $42.00 per case, minimum 10 cases",
                    "Ground Beef $25.15 per lb",
                    "Whole Wheat Bread $14.10 per loaf",
                    "Paper Towels $4.75 per case",
                ],
                discounts=["5% volume discount on orders over $5,000"],
                critical_clauses=[
                    "Prices fixed through December 31, 2024",
                    "Items not listed require written approval before delivery",
                ],
            ),
        ),
        confidence=0.92,
    )


class MockExtractionProvider(ExtractionProvider):
    """Returns fixed drafts without calling any model."""

    @property
    def provider_name(self) -> str:
        return "mock"

    @property
    def model_name(self) -> str:
        return MOCK_MODEL

    def is_available(self) -> bool:
        return True

    def extract_invoice(self, image_url: str) -> InvoiceExtraction:
        return InvoiceExtraction(
            success=True,
            draft=mock_invoice(),
            tokens_used=MOCK_TOKENS,
            model=self.model_name,
            provider=self.provider_name,
        )

    def extract_contract(self, image_url: str) -> ContractExtraction:
        return ContractExtraction(
            success=True,
            draft=mock_contract(),
            tokens_used=MOCK_TOKENS,
            model=self.model_name,
            provider=self.provider_name,
        )
