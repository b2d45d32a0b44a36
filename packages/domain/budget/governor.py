"""
Budget Governor - hard spending ceilings for language-model calls

Enforced BEFORE every model call:
- Per-user monthly cap (default $0.20)
- System-wide daily cap (default $50.00)

Usage records (one document per scope and period):
- User monthly:  "{household_id}_{user_id}_{YYYY-MM}"
- System daily:  "system_all_{YYYY-MM-DD}"

Flow:
1. check_budget(scope, estimated_cost) → BudgetDecision (allowed or denied with reason)
2. Model call happens only when allowed
3. record_usage(scope, tokens_in, tokens_out, actual_cost) after a successful call

Failure policy:
- Store read failure during check_budget → allowed (fail open), logged
- Store write failure during record_usage → logged and swallowed

The increment is read-modify-write: two concurrent writers on the same record
can lose an update. Spend can under-count slightly; it never over-counts.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional

import structlog

from packages.common.config import Settings
from packages.common.errors import UsageStoreError
from packages.common.kv_store import KeyValueStore
from packages.common.schemas.inventory import BudgetDenialReason, UsageRecord

logger = structlog.get_logger()


@dataclass(frozen=True)
class BudgetScope:
    """Who is spending: a user within a household"""
    household_id: str
    user_id: str


@dataclass(frozen=True)
class BudgetDecision:
    """Outcome of a pre-flight budget check"""
    allowed: bool
    estimated_cost: Decimal
    user_monthly_spend: Decimal
    user_monthly_cap: Decimal
    system_daily_spend: Decimal
    system_daily_cap: Decimal
    reason: Optional[BudgetDenialReason] = None
    message: Optional[str] = None
    suggestion: Optional[str] = None
    degraded: bool = False


def month_period(now: datetime) -> str:
    return now.strftime("%Y-%m")


def day_period(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def user_monthly_id(scope: BudgetScope, period: str) -> str:
    return f"{scope.household_id}_{scope.user_id}_{period}"


def system_daily_id(period: str) -> str:
    return f"system_all_{period}"


class BudgetGovernor:
    """
    Pre-flight budget enforcement and usage accounting.

    The user ceiling is checked first: a user over their monthly cap always
    gets USER_MONTHLY_EXCEEDED, whatever the system spend is.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Settings,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.user_monthly_cap = settings.user_monthly_cap
        self.system_daily_cap = settings.system_daily_cap
        self.input_cost_per_1k = settings.cost_per_1k_input_tokens
        self.output_cost_per_1k = settings.cost_per_1k_output_tokens
        self.clock = clock

    def _now(self) -> datetime:
        now = self.clock()
        if now.tzinfo is None:
            return now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> Decimal:
        """
        Calculate cost of a model call.

        Args:
            input_tokens: Number of input tokens
            output_tokens: Number of output tokens

        Returns:
            Total cost in USD
        """
        input_cost = (Decimal(input_tokens) / 1000) * self.input_cost_per_1k
        output_cost = (Decimal(output_tokens) / 1000) * self.output_cost_per_1k
        return input_cost + output_cost

    async def _get_spend(self, record_id: str) -> Decimal:
        try:
            doc = await self.store.get(record_id)
        except Exception as e:
            raise UsageStoreError(f"Failed to read usage record {record_id}: {e}") from e
        if not doc:
            return Decimal("0")
        try:
            spend = Decimal(str(doc.get("llm_cost_usd", "0")))
        except (InvalidOperation, TypeError, ValueError) as e:
            raise UsageStoreError(f"Corrupt usage record {record_id}: {e}") from e
        if not spend.is_finite():
            raise UsageStoreError(f"Corrupt usage record {record_id}: cost {spend}")
        return spend

    async def check_budget(self, scope: BudgetScope, estimated_cost: Decimal) -> BudgetDecision:
        """
        Check whether a model call with this estimated cost is allowed.

        Args:
            scope: Household/user making the call
            estimated_cost: Estimated USD cost of the call

        Returns:
            BudgetDecision (denials carry a reason and a human message)
        """
        now = self._now()
        user_id = user_monthly_id(scope, month_period(now))
        system_id = system_daily_id(day_period(now))

        try:
            user_spend = await self._get_spend(user_id)
            system_spend = await self._get_spend(system_id)
        except UsageStoreError as e:
            logger.warning("budget_check_failed_open",
                           household_id=scope.household_id,
                           user_id=scope.user_id,
                           error=str(e))
            return BudgetDecision(
                allowed=True,
                estimated_cost=estimated_cost,
                user_monthly_spend=Decimal("0"),
                user_monthly_cap=self.user_monthly_cap,
                system_daily_spend=Decimal("0"),
                system_daily_cap=self.system_daily_cap,
                message="Budget check error - allowing operation",
                degraded=True,
            )

        decision_kwargs = dict(
            estimated_cost=estimated_cost,
            user_monthly_spend=user_spend,
            user_monthly_cap=self.user_monthly_cap,
            system_daily_spend=system_spend,
            system_daily_cap=self.system_daily_cap,
        )

        if user_spend + estimated_cost > self.user_monthly_cap:
            logger.warning("budget_denied",
                           reason=BudgetDenialReason.USER_MONTHLY_EXCEEDED.value,
                           household_id=scope.household_id,
                           user_id=scope.user_id,
                           user_monthly_spend=float(user_spend),
                           estimated_cost=float(estimated_cost))
            return BudgetDecision(
                allowed=False,
                reason=BudgetDenialReason.USER_MONTHLY_EXCEEDED,
                message=(
                    f"User monthly LLM budget exceeded (${self.user_monthly_cap}). "
                    "Line queued for overnight processing."
                ),
                suggestion="Try again next month",
                **decision_kwargs,
            )

        if system_spend + estimated_cost > self.system_daily_cap:
            logger.warning("budget_denied",
                           reason=BudgetDenialReason.SYSTEM_DAILY_EXCEEDED.value,
                           household_id=scope.household_id,
                           system_daily_spend=float(system_spend),
                           estimated_cost=float(estimated_cost))
            return BudgetDecision(
                allowed=False,
                reason=BudgetDenialReason.SYSTEM_DAILY_EXCEEDED,
                message=(
                    f"System daily LLM budget exceeded (${self.system_daily_cap}). "
                    "Line queued for off-peak processing."
                ),
                suggestion="Try again later",
                **decision_kwargs,
            )

        logger.debug("budget_check_passed",
                     household_id=scope.household_id,
                     user_id=scope.user_id,
                     estimated_cost=float(estimated_cost),
                     user_monthly_spend=float(user_spend),
                     system_daily_spend=float(system_spend))
        return BudgetDecision(allowed=True, **decision_kwargs)

    async def record_usage(
        self,
        scope: BudgetScope,
        input_tokens: int,
        output_tokens: int,
        actual_cost: Decimal,
    ) -> None:
        """
        Add a successful call's actual usage to both period records.

        Never raises: a lost usage record must not fail the parse that paid for it.
        """
        now = self._now()
        month = month_period(now)
        day = day_period(now)

        for record in (
            UsageRecord(
                id=user_monthly_id(scope, month),
                household_id=scope.household_id,
                user_id=scope.user_id,
                period=month,
                period_type="monthly",
                llm_calls=1,
                llm_tokens_in=input_tokens,
                llm_tokens_out=output_tokens,
                llm_cost_usd=actual_cost,
                created_at=now,
                updated_at=now,
            ),
            UsageRecord(
                id=system_daily_id(day),
                household_id="system",
                period=day,
                period_type="daily",
                llm_calls=1,
                llm_tokens_in=input_tokens,
                llm_tokens_out=output_tokens,
                llm_cost_usd=actual_cost,
                created_at=now,
                updated_at=now,
            ),
        ):
            try:
                await self._increment(record)
            except Exception as e:
                logger.error("usage_record_failed",
                             record_id=record.id,
                             cost_usd=float(actual_cost),
                             error=str(e))

        logger.info("llm_usage_recorded",
                    household_id=scope.household_id,
                    user_id=scope.user_id,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    cost_usd=float(actual_cost))

    async def _increment(self, delta: UsageRecord) -> None:
        """Read-modify-write upsert of one usage record"""
        existing = await self.store.get(delta.id)

        if existing:
            current = UsageRecord.model_validate(existing)
            updated = current.model_copy(update={
                "llm_calls": current.llm_calls + delta.llm_calls,
                "llm_tokens_in": current.llm_tokens_in + delta.llm_tokens_in,
                "llm_tokens_out": current.llm_tokens_out + delta.llm_tokens_out,
                "llm_cost_usd": current.llm_cost_usd + delta.llm_cost_usd,
                "updated_at": delta.updated_at,
            })
        else:
            updated = delta

        # Usage records are never expired
        await self.store.put(delta.id, updated.model_dump(mode="json"), ttl_seconds=None)

    async def get_user_monthly_spend(self, scope: BudgetScope) -> Decimal:
        """Current-month spend for a user"""
        return await self._get_spend(user_monthly_id(scope, month_period(self._now())))

    async def get_system_daily_spend(self) -> Decimal:
        """Today's system-wide spend"""
        return await self._get_spend(system_daily_id(day_period(self._now())))

    async def get_user_history(self, scope: BudgetScope, months: int = 3) -> List[UsageRecord]:
        """
        Monthly usage records for a user, newest first.

        Months without usage are omitted.
        """
        now = self._now()
        year, month = now.year, now.month
        history: List[UsageRecord] = []

        for _ in range(months):
            record_id = user_monthly_id(scope, f"{year:04d}-{month:02d}")
            try:
                doc = await self.store.get(record_id)
            except Exception as e:
                raise UsageStoreError(f"Failed to get cost history: {e}") from e
            if doc:
                history.append(UsageRecord.model_validate(doc))

            month -= 1
            if month == 0:
                year, month = year - 1, 12

        return history
