"""Parsing of free-text contract conditions.

Contract pricing and discount entries carry conditions written by humans
("orders over 100 cases", "minimum 10 units", "purchases of $500 or more").
This module recognises the threshold forms that can be checked against an
invoice line's quantity or amount. Anything else is reported as unparseable
and the caller decides how to treat it.
"""

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Literal

Metric = Literal["quantity", "amount"]
Operator = Literal[">", ">=", "<", "<="]

_NUMBER = r"\$?\s*(\d[\d,]*(?:\.\d+)?)"

# Order matters: inclusive and negated forms must win over their substrings
# ("no more than" contains "more than").
_RULES: tuple[tuple[re.Pattern[str], Operator], ...] = (
    (
        re.compile(
            r"(?:>=|at least|minimum(?: [a-z]+)?(?: of)?|min\.?|no less than|not less than)\s*"
            + _NUMBER
        ),
        ">=",
    ),
    (re.compile(_NUMBER + r"\s*(?:[a-z]+\s+)?(?:or more|or greater|\+|and (?:up|above))"), ">="),
    (
        re.compile(
            r"(?:<=|at most|up to|maximum(?: of)?|max\.?|no more than|not more than)\s*" + _NUMBER
        ),
        "<=",
    ),
    (
        re.compile(r"(?:>|over|more than|greater than|above|exceeding|in excess of)\s*" + _NUMBER),
        ">",
    ),
    (re.compile(r"(?:<|under|less than|below|fewer than)\s*" + _NUMBER), "<"),
)

_AMOUNT_HINT = re.compile(r"\$|\b(?:order total|total|spend|spent|amount|dollars|usd)\b")

_UNCONDITIONAL = frozenset(
    {"", "all", "all orders", "always", "none", "n/a", "na", "standard", "any"}
)


@dataclass(frozen=True)
class Condition:
    """A threshold on a line's quantity or amount."""

    metric: Metric
    operator: Operator
    threshold: Decimal

    def is_satisfied(self, quantity: Decimal, amount: Decimal) -> bool:
        value = quantity if self.metric == "quantity" else amount
        if self.operator == ">":
            return value > self.threshold
        if self.operator == ">=":
            return value >= self.threshold
        if self.operator == "<":
            return value < self.threshold
        return value <= self.threshold

    @property
    def is_minimum(self) -> bool:
        return self.operator in (">", ">=")


@dataclass(frozen=True)
class ParsedCondition:
    """Outcome of parsing one conditions string.

    ``unconditional`` means the text imposes no threshold; ``condition`` is None
    and ``unconditional`` False when the text could not be understood.
    """

    text: str
    condition: Condition | None = None
    unconditional: bool = False

    @property
    def understood(self) -> bool:
        return self.unconditional or self.condition is not None

    def applies(self, quantity: Decimal, amount: Decimal) -> bool:
        if self.unconditional:
            return True
        if self.condition is None:
            return False
        return self.condition.is_satisfied(quantity, amount)


def parse_condition(text: str | None) -> ParsedCondition:
    """Parse a conditions string into a checkable threshold."""
    normalized = " ".join((text or "").lower().split())
    if normalized.strip(" .") in _UNCONDITIONAL:
        return ParsedCondition(text=text or "", unconditional=True)

    for pattern, operator in _RULES:
        match = pattern.search(normalized)
        if not match:
            continue
        try:
            threshold = Decimal(match.group(1).replace(",", ""))
        except InvalidOperation:
            continue
        metric: Metric = "amount" if _AMOUNT_HINT.search(normalized) else "quantity"
        return ParsedCondition(
            text=text or "",
            condition=Condition(metric=metric, operator=operator, threshold=threshold),
        )

    return ParsedCondition(text=text or "")
