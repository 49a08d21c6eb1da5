"""Invoice-to-contract reconciliation engine.

Compares an extracted invoice draft with the contract terms it was billed
under and produces an AnalysisResult: the discrepancies found, a confidence
score that never exceeds the extraction confidence, and a compliance verdict.

The engine is deterministic. It reads no clock and holds no mutable state, so
reconciling the same inputs twice yields identical results. Structural defects
in the draft raise DataIntegrityError; everything the comparison finds is
returned as data.
"""

import logging
import re
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal
from difflib import SequenceMatcher
from statistics import fmean

from pydantic import BaseModel

from services.extraction.schema import InvoiceDraft, LineItem
from services.reconciliation.conditions import parse_condition
from services.reconciliation.matching import ItemMatcher, create_matcher, normalize_item
from services.reconciliation.models import (
    AnalysisResult,
    ComplianceStatus,
    ContractTerms,
    Discrepancy,
    DiscrepancyType,
    DiscountTerm,
    PricingTerm,
    Severity,
    VendorInfo,
)
from services.shared.config import Settings
from services.shared.errors import DataIntegrityError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

_AMOUNT_FIELDS = frozenset({"totalAmount", "subtotal", "taxAmount"})
_LINE_AMOUNT_FIELD = re.compile(r"^lineItems\[\d+\]\.(?:unitPrice|totalPrice)$")
_UNIT_ALIASES = {"ea": "each", "pc": "piece", "pcs": "piece", "lbs": "lb", "cs": "case"}
_PAYMENT_NOISE = re.compile(r"\b(?:days?|payment|terms?)\b")


class ReconciliationConfig(BaseModel):
    """Business thresholds for reconciliation.

    Percentages are expressed in percent (5 means 5%). Amounts are in invoice
    currency.
    """

    price_tolerance_percent: Decimal = Decimal("1")
    severity_medium_percent: Decimal = Decimal("5")
    severity_high_percent: Decimal = Decimal("15")
    price_impact_floor: Decimal = Decimal("100")
    high_amount_threshold: Decimal = Decimal("1000")
    tax_tolerance_percent: Decimal = Decimal("1")
    amount_tolerance: Decimal = Decimal("0.01")
    confidence_review_threshold: float = 0.5

    # Confidence penalty per discrepancy, by severity
    penalty_low: float = 0.02
    penalty_medium: float = 0.05
    penalty_high: float = 0.10

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconciliationConfig":
        return cls(
            price_tolerance_percent=settings.price_tolerance_percent,
            severity_medium_percent=settings.severity_medium_percent,
            severity_high_percent=settings.severity_high_percent,
            price_impact_floor=settings.price_impact_floor,
            high_amount_threshold=settings.high_amount_threshold,
            tax_tolerance_percent=settings.tax_tolerance_percent,
            amount_tolerance=settings.amount_tolerance,
            confidence_review_threshold=settings.confidence_review_threshold,
        )


def _required(value: Decimal | None, path: str) -> Decimal:
    """Value of a field that passed structural checks."""
    if value is None:
        raise DataIntegrityError(
            "Extracted invoice failed structural checks and cannot be reconciled",
            details=[f"{path} is missing"],
        )
    return value


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _percent(difference: Decimal, base: Decimal) -> Decimal:
    """Relative magnitude of ``difference`` against ``base`` in percent."""
    if base == 0:
        return Decimal("0") if difference == 0 else HUNDRED
    return abs(difference) / abs(base) * HUNDRED


def _normalize_unit(unit: str | None) -> str:
    text = (unit or "").lower().strip().rstrip(".")
    text = _UNIT_ALIASES.get(text, text)
    if text.endswith(("xes", "ches", "shes")):
        return text[:-2]
    if text.endswith("s") and len(text) > 2 and not text.endswith("ss"):
        return text[:-1]
    return text


def _normalize_payment_terms(terms: str) -> str:
    text = re.sub(r"([a-z])(\d)", r"\1 \2", terms.lower())
    text = _PAYMENT_NOISE.sub(" ", text)
    return normalize_item(text)


def _is_amount_field(path: str) -> bool:
    return path in _AMOUNT_FIELDS or bool(_LINE_AMOUNT_FIELD.match(path))


def _is_material_field(path: str) -> bool:
    return _is_amount_field(path) or path == "taxRate" or path.startswith("lineItems")


class ReconciliationEngine:
    """Compares invoice drafts with contract terms.

    Attributes:
        config: Thresholds used for tolerances and severities
        matcher: Strategy pairing invoice lines with contract pricing entries
    """

    def __init__(
        self,
        config: ReconciliationConfig | None = None,
        matcher: ItemMatcher | None = None,
    ) -> None:
        self.config = config or ReconciliationConfig()
        self.matcher = matcher or create_matcher()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconciliationEngine":
        return cls(
            config=ReconciliationConfig.from_settings(settings),
            matcher=create_matcher(settings.matching_strategy, settings.similarity_threshold),
        )

    def reconcile(
        self,
        draft: InvoiceDraft,
        terms: ContractTerms | None = None,
        vendor_info: VendorInfo | None = None,
        processing_time_ms: int = 0,
    ) -> AnalysisResult:
        """Reconcile an invoice draft against optional contract terms.

        Args:
            draft: Extracted invoice
            terms: Contract baseline; without it only internal consistency is checked
            vendor_info: Caller's vendor record, used for a name consistency check
            processing_time_ms: Elapsed time to report on the result

        Returns:
            Immutable AnalysisResult

        Raises:
            DataIntegrityError: If the draft lacks required totals or has malformed lines
        """
        self._check_integrity(draft)

        findings: list[Discrepancy] = []
        findings.extend(self._check_line_arithmetic(draft))
        findings.extend(self._check_subtotal(draft))
        findings.extend(self._check_total(draft))

        if terms is None:
            findings.extend(self._check_stated_tax_rate(draft))
        else:
            findings.extend(self._check_line_items(draft, terms))
            findings.extend(self._check_contract_tax(draft, terms))
            findings.extend(self._check_payment_terms(draft, terms))
            findings.extend(self._check_contract_period(draft, terms))

        if vendor_info is not None:
            findings.extend(self._check_vendor(draft, vendor_info))

        confidence = self._aggregate_confidence(draft, findings)
        if confidence < self.config.confidence_review_threshold:
            findings.append(self._review_flag(confidence))

        ordered = tuple(
            sorted(findings, key=lambda d: (-d.severity.rank, -(d.impact or Decimal("0"))))
        )
        status = self._compliance_status(ordered)

        logger.debug(
            f"Reconciled invoice {draft.invoice_number}: {len(ordered)} discrepancies, "
            f"status={status.value}, confidence={confidence:.3f}"
        )

        return AnalysisResult(
            success=True,
            confidence=confidence,
            discrepancies=ordered,
            compliance_status=status,
            ai_reasoning=self._build_reasoning(draft, terms, ordered, status, confidence),
            processing_time=processing_time_ms,
            extracted_data=draft,
        )

    # Structural validation

    def _check_integrity(self, draft: InvoiceDraft) -> None:
        problems: list[str] = []
        if draft.total_amount is None:
            problems.append("totalAmount is missing")
        if draft.subtotal is None:
            problems.append("subtotal is missing")
        for index, line in enumerate(draft.line_items):
            path = f"lineItems[{index}]"
            if line.quantity is None or line.quantity <= 0:
                problems.append(f"{path}.quantity must be greater than zero")
            if line.unit_price is None or line.unit_price < 0:
                problems.append(f"{path}.unitPrice must be zero or more")
            if line.total_price is None:
                problems.append(f"{path}.totalPrice is missing")
        if draft.confidence is not None and not 0 <= draft.confidence <= 1:
            problems.append("confidence must be between 0 and 1")
        for path, score in draft.field_confidence.items():
            if not 0 <= score <= 1:
                problems.append(f"fieldConfidence[{path}] must be between 0 and 1")
        if problems:
            raise DataIntegrityError(
                "Extracted invoice failed structural checks and cannot be reconciled",
                details=problems,
            )

    # Internal consistency

    def _check_line_arithmetic(self, draft: InvoiceDraft) -> Iterable[Discrepancy]:
        for index, line in enumerate(draft.line_items):
            path = f"lineItems[{index}]"
            quantity = _required(line.quantity, f"{path}.quantity")
            unit_price = _required(line.unit_price, f"{path}.unitPrice")
            total_price = _required(line.total_price, f"{path}.totalPrice")
            expected = _money(quantity * unit_price)
            difference = total_price - expected
            if abs(difference) <= self.config.amount_tolerance:
                continue
            yield Discrepancy(
                type=DiscrepancyType.OTHER,
                severity=self._severity_for(_percent(difference, expected)),
                field=f"{path}.totalPrice",
                expected=expected,
                actual=total_price,
                difference=_money(difference),
                impact=_money(abs(difference)),
                description=(
                    f"Line total for {line.description or 'line ' + str(index + 1)} is "
                    f"${total_price} but {quantity} x ${unit_price} = ${expected}"
                ),
                recommendation="Ask the vendor to correct the line extension",
            )

    def _check_subtotal(self, draft: InvoiceDraft) -> Iterable[Discrepancy]:
        if not draft.line_items:
            return
        subtotal = _required(draft.subtotal, "subtotal")
        lines_total = _money(
            sum((line.total_price or Decimal("0") for line in draft.line_items), Decimal("0"))
        )
        difference = subtotal - lines_total
        if abs(difference) <= self.config.amount_tolerance:
            return
        yield Discrepancy(
            type=DiscrepancyType.OTHER,
            severity=self._severity_for(_percent(difference, lines_total)),
            field="subtotal",
            expected=lines_total,
            actual=subtotal,
            difference=_money(difference),
            impact=_money(abs(difference)),
            description=(
                f"Subtotal ${subtotal} does not equal the sum of line items ${lines_total}"
            ),
            recommendation="Request an itemized correction before payment",
        )

    def _check_total(self, draft: InvoiceDraft) -> Iterable[Discrepancy]:
        total_amount = _required(draft.total_amount, "totalAmount")
        expected = _required(draft.subtotal, "subtotal") + (draft.tax_amount or Decimal("0"))
        difference = total_amount - expected
        if abs(difference) <= self.config.amount_tolerance:
            return
        yield Discrepancy(
            type=DiscrepancyType.TAX,
            severity=self._severity_for(_percent(difference, expected)),
            field="totalAmount",
            expected=_money(expected),
            actual=total_amount,
            difference=_money(difference),
            impact=_money(abs(difference)),
            description=(
                f"Total ${total_amount} does not equal subtotal plus tax ${_money(expected)}"
            ),
            recommendation="Verify the invoice total with the vendor",
        )

    def _check_stated_tax_rate(self, draft: InvoiceDraft) -> Iterable[Discrepancy]:
        if draft.tax_rate is None or draft.tax_amount is None:
            return
        yield from self._check_tax_amount(draft, draft.tax_rate, "stated")

    # Contract comparison

    def _check_line_items(self, draft: InvoiceDraft, terms: ContractTerms) -> Iterable[Discrepancy]:
        for index, line in enumerate(draft.line_items):
            path = f"lineItems[{index}]"
            term = self.matcher.find(line.description, terms.pricing)
            if term is None:
                yield self._unauthorized(line, path)
                continue

            if line.unit and term.unit and _normalize_unit(line.unit) != _normalize_unit(term.unit):
                yield Discrepancy(
                    type=DiscrepancyType.QUANTITY,
                    severity=Severity.MEDIUM,
                    field=f"{path}.unit",
                    expected=term.unit,
                    actual=line.unit,
                    description=(
                        f"{line.description} is billed per {line.unit} but contracted "
                        f"per {term.unit}; prices cannot be compared"
                    ),
                    recommendation="Confirm the unit of measure and request a restated line",
                )
                continue

            minimum = self._check_minimum_quantity(line, term, path)
            if minimum is not None:
                yield minimum

            price = self._check_price(draft, line, term, terms, path)
            if price is not None:
                yield price

    def _unauthorized(self, line: LineItem, path: str) -> Discrepancy:
        amount = line.total_price or Decimal("0")
        severity = (
            Severity.HIGH if amount > self.config.high_amount_threshold else Severity.MEDIUM
        )
        return Discrepancy(
            type=DiscrepancyType.UNAUTHORIZED_ITEM,
            severity=severity,
            field=f"{path}.description",
            expected=None,
            actual=line.description,
            difference=amount,
            impact=_money(abs(amount)),
            description=f"{line.description} (${amount}) is not covered by the contract pricing",
            recommendation="Confirm the item was ordered and obtain contract coverage or a credit",
        )

    def _check_minimum_quantity(
        self, line: LineItem, term: PricingTerm, path: str
    ) -> Discrepancy | None:
        parsed = parse_condition(term.conditions)
        condition = parsed.condition
        if condition is None or condition.metric != "quantity" or not condition.is_minimum:
            return None
        quantity = _required(line.quantity, f"{path}.quantity")
        if condition.is_satisfied(quantity, line.total_price or Decimal("0")):
            return None
        return Discrepancy(
            type=DiscrepancyType.QUANTITY,
            severity=Severity.LOW,
            field=f"{path}.quantity",
            expected=condition.threshold,
            actual=quantity,
            difference=quantity - condition.threshold,
            description=(
                f"Quantity ({quantity}) of {line.description} is below the contracted "
                f"minimum ({term.conditions})"
            ),
            recommendation="Verify if minimum order requirements apply or adjust future orders",
        )

    def _check_price(
        self,
        draft: InvoiceDraft,
        line: LineItem,
        term: PricingTerm,
        terms: ContractTerms,
        path: str,
    ) -> Discrepancy | None:
        quantity = _required(line.quantity, f"{path}.quantity")
        unit_price = _required(line.unit_price, f"{path}.unitPrice")
        expected, discount = self._expected_price(draft, quantity, term, terms)
        difference = unit_price - expected
        deviation = _percent(difference, expected)
        if deviation <= self.config.price_tolerance_percent:
            return None

        impact = _money(abs(difference) * quantity)
        if difference < 0:
            severity = Severity.LOW
        elif impact < self.config.price_impact_floor:
            severity = Severity.LOW
        else:
            severity = self._severity_for(deviation)

        rate = f"${expected} per {term.unit}"
        if discount is not None:
            rate += f" after the {discount.type} discount"
        if difference > 0:
            description = (
                f"Unit price for {line.description} exceeds contracted rate of {rate} "
                f"by ${_money(difference)} ({deviation:.1f}%)"
            )
            recommendation = (
                "Contact vendor to apply correct pricing or obtain approval for price increase"
            )
        else:
            description = (
                f"Unit price for {line.description} is below contracted rate of {rate} "
                f"by ${_money(-difference)} ({deviation:.1f}%)"
            )
            recommendation = "Confirm the lower price is intentional before relying on it"

        return Discrepancy(
            type=DiscrepancyType.PRICE,
            severity=severity,
            field=f"{path}.unitPrice",
            expected=expected,
            actual=unit_price,
            difference=_money(difference),
            impact=impact,
            description=description,
            recommendation=recommendation,
        )

    def _expected_price(
        self, draft: InvoiceDraft, quantity: Decimal, term: PricingTerm, terms: ContractTerms
    ) -> tuple[Decimal, DiscountTerm | None]:
        """Contract price after the single most favourable applicable discount.

        Quantity conditions are checked against the line; amount conditions
        against the invoice subtotal (the order value). Discounts are not stacked.
        """
        best_price, best_discount = term.price, None
        order_value = draft.subtotal or Decimal("0")
        for discount in terms.discounts or ():
            if not self._discount_targets(discount, term, terms.pricing):
                continue
            parsed = parse_condition(discount.conditions)
            if not parsed.understood:
                logger.debug(f"Skipping discount with unparsed conditions: {discount.conditions}")
                continue
            if not parsed.applies(quantity, order_value):
                continue
            price = self._apply_discount(term.price, discount)
            if price is not None and price < best_price:
                best_price, best_discount = price, discount
        return _money(best_price), best_discount

    @staticmethod
    def _discount_targets(
        discount: DiscountTerm, term: PricingTerm, pricing: tuple[PricingTerm, ...]
    ) -> bool:
        """A discount naming contract items applies only to those items."""
        text = normalize_item(f"{discount.type} {discount.conditions}")
        named = [p for p in pricing if normalize_item(p.item) and normalize_item(p.item) in text]
        return not named or term in named

    @staticmethod
    def _apply_discount(price: Decimal, discount: DiscountTerm) -> Decimal | None:
        kind = discount.type.lower()
        if discount.amount <= 0:
            return None
        if any(word in kind for word in ("fixed", "flat", "unit", "dollar", "amount")):
            discounted = price - discount.amount
        else:
            if discount.amount >= HUNDRED:
                return None
            discounted = price * (HUNDRED - discount.amount) / HUNDRED
        return discounted if discounted > 0 else None

    def _check_contract_tax(
        self, draft: InvoiceDraft, terms: ContractTerms
    ) -> Iterable[Discrepancy]:
        if terms.tax_rate is None:
            yield from self._check_stated_tax_rate(draft)
            return
        if draft.tax_rate is not None and draft.tax_rate != terms.tax_rate:
            difference = draft.tax_rate - terms.tax_rate
            yield Discrepancy(
                type=DiscrepancyType.TAX,
                severity=self._severity_for(_percent(difference, terms.tax_rate)),
                field="taxRate",
                expected=terms.tax_rate,
                actual=draft.tax_rate,
                difference=difference,
                description=(
                    f"Invoice tax rate {draft.tax_rate}% differs from contracted {terms.tax_rate}%"
                ),
                recommendation="Confirm the applicable tax jurisdiction with the vendor",
            )
        yield from self._check_tax_amount(draft, terms.tax_rate, "contracted")

    def _check_tax_amount(
        self, draft: InvoiceDraft, rate: Decimal, source: str
    ) -> Iterable[Discrepancy]:
        expected = _required(draft.subtotal, "subtotal") * rate / HUNDRED
        actual = draft.tax_amount or Decimal("0")
        difference = actual - expected
        tolerance = max(
            self.config.amount_tolerance,
            abs(expected) * self.config.tax_tolerance_percent / HUNDRED,
        )
        if abs(difference) <= tolerance:
            return
        yield Discrepancy(
            type=DiscrepancyType.TAX,
            severity=self._severity_for(_percent(difference, expected)),
            field="taxAmount",
            expected=_money(expected),
            actual=actual,
            difference=_money(difference),
            impact=_money(abs(difference)),
            description=(
                f"Tax amount ${actual} does not match {rate}% {source} rate on subtotal "
                f"${draft.subtotal} (expected ${_money(expected)})"
            ),
            recommendation="Request a corrected tax calculation",
        )

    def _check_payment_terms(
        self, draft: InvoiceDraft, terms: ContractTerms
    ) -> Iterable[Discrepancy]:
        if not draft.payment_terms:
            return
        if _normalize_payment_terms(draft.payment_terms) == _normalize_payment_terms(
            terms.payment_terms
        ):
            return
        yield Discrepancy(
            type=DiscrepancyType.PAYMENT_TERMS,
            severity=Severity.LOW,
            field="paymentTerms",
            expected=terms.payment_terms,
            actual=draft.payment_terms,
            description=(
                f"Invoice payment terms '{draft.payment_terms}' differ from contracted "
                f"'{terms.payment_terms}'"
            ),
            recommendation="Schedule payment according to the contracted terms",
        )

    def _check_contract_period(
        self, draft: InvoiceDraft, terms: ContractTerms
    ) -> Iterable[Discrepancy]:
        issued = draft.invoice_date
        if issued is None:
            return
        if issued < terms.effective_date:
            boundary, relation = terms.effective_date, "before the contract took effect"
        elif terms.expiration_date is not None and issued > terms.expiration_date:
            boundary, relation = terms.expiration_date, "after the contract expired"
        else:
            return
        yield Discrepancy(
            type=DiscrepancyType.OTHER,
            severity=Severity.MEDIUM,
            field="date",
            expected=boundary,
            actual=issued,
            description=f"Invoice dated {issued} falls {relation} ({boundary})",
            recommendation="Confirm which agreement governs this invoice",
        )

    def _check_vendor(self, draft: InvoiceDraft, vendor_info: VendorInfo) -> Iterable[Discrepancy]:
        if not draft.vendor_name:
            return
        invoiced = normalize_item(draft.vendor_name)
        expected = normalize_item(vendor_info.name)
        if not invoiced or not expected or invoiced in expected or expected in invoiced:
            return
        if SequenceMatcher(None, invoiced, expected).ratio() >= 0.6:
            return
        yield Discrepancy(
            type=DiscrepancyType.OTHER,
            severity=Severity.LOW,
            field="vendorName",
            expected=vendor_info.name,
            actual=draft.vendor_name,
            description=(
                f"Invoice vendor '{draft.vendor_name}' does not match vendor "
                f"'{vendor_info.name}' on file"
            ),
            recommendation="Confirm the invoice was filed under the right vendor",
        )

    # Verdict

    def _severity_for(self, deviation_percent: Decimal) -> Severity:
        if deviation_percent > self.config.severity_high_percent:
            return Severity.HIGH
        if deviation_percent >= self.config.severity_medium_percent:
            return Severity.MEDIUM
        return Severity.LOW

    def _penalty(self, severity: Severity) -> float:
        return {
            Severity.LOW: self.config.penalty_low,
            Severity.MEDIUM: self.config.penalty_medium,
            Severity.HIGH: self.config.penalty_high,
        }[severity]

    def _aggregate_confidence(self, draft: InvoiceDraft, findings: list[Discrepancy]) -> float:
        """Combine extraction confidence with a discrepancy penalty.

        The result is capped by the mean confidence of financially material
        fields, the lowest amount-bearing field confidence and the overall draft
        confidence. A draft with no confidence information scores zero.
        """
        scores = draft.field_confidence
        material = [v for k, v in scores.items() if _is_material_field(k)]
        amounts = [v for k, v in scores.items() if _is_amount_field(k)]

        caps: list[float] = []
        if material:
            caps.append(fmean(material))
        if amounts:
            caps.append(min(amounts))
        if draft.confidence is not None:
            caps.append(draft.confidence)
        extraction = min(caps) if caps else 0.0

        penalty_floor = max(0.0, 1.0 - sum(self._penalty(f.severity) for f in findings))
        return min(extraction, penalty_floor)

    def _review_flag(self, confidence: float) -> Discrepancy:
        threshold = self.config.confidence_review_threshold
        return Discrepancy(
            type=DiscrepancyType.OTHER,
            severity=Severity.HIGH,
            field="confidence",
            expected=threshold,
            actual=confidence,
            description=(
                f"Analysis confidence {confidence:.0%} is below the review threshold "
                f"{threshold:.0%}"
            ),
            recommendation="Route this invoice to a reviewer before approving payment",
        )

    @staticmethod
    def _compliance_status(findings: tuple[Discrepancy, ...]) -> ComplianceStatus:
        if not findings:
            return ComplianceStatus.COMPLIANT
        if any(f.severity is Severity.HIGH for f in findings):
            return ComplianceStatus.NON_COMPLIANT
        return ComplianceStatus.DISCREPANCY

    @staticmethod
    def _build_reasoning(
        draft: InvoiceDraft,
        terms: ContractTerms | None,
        findings: tuple[Discrepancy, ...],
        status: ComplianceStatus,
        confidence: float,
    ) -> str:
        invoice = draft.invoice_number or "(unnumbered)"
        vendor = draft.vendor_name or "unknown vendor"
        lines = [f"Analysis of invoice {invoice} from {vendor}."]
        if terms is None:
            lines.append(
                "No contract terms were supplied; only internal consistency checks were performed."
            )
        if findings:
            lines.append(f"{len(findings)} discrepancies found:")
            lines.extend(
                f"{n}. [{f.severity.value.upper()}] {f.description}"
                for n, f in enumerate(findings, start=1)
            )
        else:
            lines.append("No discrepancies found.")
        lines.append(f"Compliance status: {status.value} (confidence {confidence:.0%}).")
        return "\n".join(lines)
