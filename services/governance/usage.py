"""Usage ledger for AI invocations.

Records every extraction call with its token count, estimated cost, latency
and outcome, and reports daily/7-day/monthly aggregates on demand. Daily cost
and request ceilings are advisory: breaches are logged and counted, never
enforced here.

Pricing follows the per-1K-token model:
https://openai.com/api/pricing/
"""

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from enum import Enum

from prometheus_client import Counter
from pydantic import Field

from services.shared.config import Settings
from services.shared.schema import Amount, FrozenCamelModel

logger = logging.getLogger(__name__)

# Input/output split is not reported separately upstream; this is a fixed estimate.
INPUT_TOKEN_SHARE = Decimal("0.8")
OUTPUT_TOKEN_SHARE = Decimal("0.2")

ai_requests_total = Counter(
    "ai_requests_total",
    "Extraction provider invocations recorded in the usage ledger",
    ["operation", "model", "status"],
)

ai_tokens_total = Counter(
    "ai_tokens_total",
    "Tokens consumed by extraction provider invocations",
    ["model"],
)

ai_cost_usd_total = Counter(
    "ai_cost_usd_total",
    "Estimated spend on extraction provider invocations in USD",
    ["model"],
)

usage_limit_breaches_total = Counter(
    "usage_limit_breaches_total",
    "Advisory daily usage ceiling breaches",
    ["limit"],
)


class UsageOperation(str, Enum):
    INVOICE_ANALYSIS = "invoice_analysis"
    CONTRACT_PARSING = "contract_parsing"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""

    input_cost_per_1k: Decimal
    output_cost_per_1k: Decimal


DEFAULT_PRICING: dict[str, ModelPricing] = {
    "gpt-4o": ModelPricing(Decimal("0.0025"), Decimal("0.01")),
    "gpt-4o-mini": ModelPricing(Decimal("0.00015"), Decimal("0.0006")),
    "gpt-4-vision-preview": ModelPricing(Decimal("0.01"), Decimal("0.03")),
    "mock": ModelPricing(Decimal("0"), Decimal("0")),
}


class UsageRecord(FrozenCamelModel):
    """One ledger entry per extraction provider invocation."""

    timestamp: datetime
    operation: UsageOperation
    tokens_used: int = Field(..., ge=0)
    estimated_cost: Amount
    model: str
    success: bool
    processing_time: int = Field(..., ge=0, description="Milliseconds")


class UsageAggregate(FrozenCamelModel):
    """Rollup over a set of usage records."""

    date: str | None = None
    total_requests: int = 0
    total_tokens: int = 0
    total_cost: Amount = Decimal("0")
    success_rate: float = Field(0.0, description="Percent of successful invocations")
    average_processing_time: float = 0.0


class UsageBreach(FrozenCamelModel):
    limit: str
    value: Amount
    ceiling: Amount


class UsageSummary(FrozenCamelModel):
    today: UsageAggregate
    last7_days: list[UsageAggregate] = Field(..., alias="last7Days")
    current_month: UsageAggregate
    limits: dict[str, Amount]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class UsageLedger:
    """Append-only, thread-safe record of AI invocations.

    Attributes:
        daily_cost_limit: Advisory spend ceiling per UTC day
        daily_request_limit: Advisory invocation ceiling per UTC day
    """

    def __init__(
        self,
        daily_cost_limit: Decimal = Decimal("100"),
        daily_request_limit: int = 1000,
        pricing: dict[str, ModelPricing] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize usage ledger.

        Args:
            daily_cost_limit: Advisory USD ceiling per day
            daily_request_limit: Advisory request ceiling per day
            pricing: Model price table (defaults to DEFAULT_PRICING)
            clock: Source of timezone-aware timestamps (injectable for tests)
        """
        self.daily_cost_limit = daily_cost_limit
        self.daily_request_limit = daily_request_limit
        self.pricing = dict(DEFAULT_PRICING if pricing is None else pricing)
        self._clock = clock
        self._records: list[UsageRecord] = []
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "UsageLedger":
        return cls(
            daily_cost_limit=settings.daily_cost_limit,
            daily_request_limit=settings.daily_request_limit,
        )

    def estimate_cost(self, model: str, tokens: int) -> Decimal:
        """Estimate cost of ``tokens`` on ``model`` using the 80/20 split.

        Unknown models cost zero and log a warning.
        """
        model_pricing = self.pricing.get(model)
        if model_pricing is None:
            logger.warning("Unknown model pricing", extra={"model": model})
            return Decimal("0")

        input_tokens = int(tokens * INPUT_TOKEN_SHARE)
        output_tokens = int(tokens * OUTPUT_TOKEN_SHARE)
        input_cost = Decimal(input_tokens) / 1000 * model_pricing.input_cost_per_1k
        output_cost = Decimal(output_tokens) / 1000 * model_pricing.output_cost_per_1k
        return input_cost + output_cost

    def record(
        self,
        operation: UsageOperation | str,
        tokens_used: int,
        model: str,
        success: bool,
        processing_time: int,
    ) -> UsageRecord:
        """Append one invocation to the ledger and check the daily ceilings.

        Args:
            operation: invoice_analysis or contract_parsing
            tokens_used: Total tokens reported by the provider
            model: Model identifier used for pricing
            success: Whether the invocation succeeded
            processing_time: Provider latency in milliseconds

        Returns:
            The stored record
        """
        entry = UsageRecord(
            timestamp=self._clock(),
            operation=UsageOperation(operation),
            tokens_used=tokens_used,
            estimated_cost=self.estimate_cost(model, tokens_used),
            model=model,
            success=success,
            processing_time=processing_time,
        )
        with self._lock:
            self._records.append(entry)

        status = "success" if success else "failed"
        ai_requests_total.labels(operation=entry.operation.value, model=model, status=status).inc()
        ai_tokens_total.labels(model=model).inc(tokens_used)
        ai_cost_usd_total.labels(model=model).inc(float(entry.estimated_cost))

        logger.info(
            "AI invocation recorded",
            extra={
                "operation": entry.operation.value,
                "model": model,
                "tokens_used": tokens_used,
                "estimated_cost": str(entry.estimated_cost),
                "success": success,
                "duration_ms": processing_time,
            },
        )

        self.check_daily_limits()
        return entry

    def records(self) -> list[UsageRecord]:
        """Snapshot of all records in insertion order."""
        with self._lock:
            return list(self._records)

    def daily_usage(self, day: date | None = None) -> UsageAggregate:
        """Aggregate the records whose UTC timestamp falls on ``day`` (default today)."""
        target = day or self._clock().astimezone(UTC).date()
        records = [r for r in self.records() if r.timestamp.astimezone(UTC).date() == target]
        return self._aggregate(records, label=target.isoformat())

    def trailing_usage(self, days: int = 7) -> list[UsageAggregate]:
        """Daily aggregates for today and the preceding ``days - 1`` days, newest first."""
        today = self._clock().astimezone(UTC).date()
        return [self.daily_usage(today - timedelta(days=offset)) for offset in range(days)]

    def monthly_usage(self, year: int | None = None, month: int | None = None) -> UsageAggregate:
        """Aggregate a calendar month (default the current one)."""
        now = self._clock().astimezone(UTC)
        year = year or now.year
        month = month or now.month
        records = [
            r
            for r in self.records()
            if (r.timestamp.astimezone(UTC).year, r.timestamp.astimezone(UTC).month)
            == (year, month)
        ]
        return self._aggregate(records, label=f"{year:04d}-{month:02d}")

    def usage_summary(self) -> UsageSummary:
        """Today, the trailing 7 days and the current month, for monitoring."""
        return UsageSummary(
            today=self.daily_usage(),
            last7_days=self.trailing_usage(7),
            current_month=self.monthly_usage(),
            limits={
                "dailyCost": self.daily_cost_limit,
                "dailyRequests": Decimal(self.daily_request_limit),
            },
        )

    def check_daily_limits(self) -> list[UsageBreach]:
        """Report (and log) today's advisory ceiling breaches.

        Returns:
            Breaches found; empty when usage is within both ceilings
        """
        today = self.daily_usage()
        breaches: list[UsageBreach] = []

        if today.total_cost > self.daily_cost_limit:
            breaches.append(
                UsageBreach(
                    limit="daily_cost", value=today.total_cost, ceiling=self.daily_cost_limit
                )
            )
            logger.error(
                "Daily cost limit exceeded",
                extra={"daily_cost": str(today.total_cost), "limit": str(self.daily_cost_limit)},
            )

        if today.total_requests > self.daily_request_limit:
            breaches.append(
                UsageBreach(
                    limit="daily_requests",
                    value=Decimal(today.total_requests),
                    ceiling=Decimal(self.daily_request_limit),
                )
            )
            logger.warning(
                "Daily request limit exceeded",
                extra={
                    "daily_requests": today.total_requests,
                    "limit": self.daily_request_limit,
                },
            )

        for breach in breaches:
            usage_limit_breaches_total.labels(limit=breach.limit).inc()
        return breaches

    @staticmethod
    def _aggregate(records: Iterable[UsageRecord], label: str | None) -> UsageAggregate:
        items = list(records)
        if not items:
            return UsageAggregate(date=label)
        total = len(items)
        successes = sum(1 for r in items if r.success)
        return UsageAggregate(
            date=label,
            total_requests=total,
            total_tokens=sum(r.tokens_used for r in items),
            total_cost=sum((r.estimated_cost for r in items), Decimal("0")),
            success_rate=successes / total * 100,
            average_processing_time=sum(r.processing_time for r in items) / total,
        )
