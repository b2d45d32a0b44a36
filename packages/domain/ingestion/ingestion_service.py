"""
Ingestion Service - purchase upload → candidates → transactions

Two steps, so a human can review in between:

1. parse_batch() / parse_csv(): every line goes through the parsing cascade
   (bounded concurrency, input order kept) and then the merge resolver
   against the household's current items. Nothing is persisted.
2. commit_candidates(): accepted candidates become transactions.
   - MergeInto  → transaction on the existing item (+ SKU mapping)
   - CreateNew  → new item + transaction
   - Ambiguous, fallback, or anything flagged for review → skipped

A bad or over-budget line never fails the batch; an unreachable item or
transaction store does (DataStoreFailure propagates).
"""
import asyncio
import csv
import io
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from packages.common.config import Settings
from packages.common.inventory_repository import ItemReader, ItemWriter, TransactionWriter
from packages.common.schemas.inventory import (
    Ambiguous,
    CreateNew,
    Item,
    MergeInto,
    ParsedCandidate,
    Retailer,
    ReviewAction,
    Transaction,
)
from packages.domain.budget.governor import BudgetScope
from packages.domain.merge.resolver import MergeResolver, sku_key
from packages.domain.normalization.cascade import ParsingCascade
from packages.parsers.retailer_dispatcher import RetailerDispatcher

logger = structlog.get_logger()

UploadLine = Union[str, Mapping[str, str]]

# Fields a reviewer may correct on the edit action
EDITABLE_FIELDS = frozenset({
    "canonical_name",
    "brand",
    "category",
    "quantity",
    "unit_of_measure",
    "package_size",
    "package_unit",
    "price",
    "purchase_date",
    "retailer_sku",
})


def _line_text(line: UploadLine) -> str:
    if isinstance(line, str):
        return line.strip()
    return " ".join(str(v).strip() for v in line.values() if isinstance(v, str) and v.strip())


@dataclass
class BatchParseResult:
    """Candidates of one upload, in input order, with summary counts"""
    candidates: List[ParsedCandidate] = field(default_factory=list)
    auto_accepted: int = 0
    needs_review: int = 0
    fallbacks: int = 0
    budget_denials: int = 0
    by_method: Dict[str, int] = field(default_factory=dict)
    average_confidence: float = 0.0

    @classmethod
    def from_candidates(cls, candidates: List[ParsedCandidate]) -> "BatchParseResult":
        result = cls(candidates=candidates)
        for candidate in candidates:
            if candidate.is_fallback:
                result.fallbacks += 1
            elif candidate.needs_review:
                result.needs_review += 1
            else:
                result.auto_accepted += 1
            if candidate.budget_denial is not None:
                result.budget_denials += 1

        result.by_method = dict(Counter(c.resolution_method.value for c in candidates))
        if candidates:
            result.average_confidence = sum(c.confidence for c in candidates) / len(candidates)
        return result


@dataclass
class CommitResult:
    transactions_created: int = 0
    items_created: int = 0
    skipped: int = 0
    transaction_ids: List[str] = field(default_factory=list)


@dataclass
class ReviewResult:
    """What a review decision wrote"""
    action: ReviewAction
    item_id: Optional[str] = None
    transaction_id: Optional[str] = None
    merged: bool = False
    item_created: bool = False
    cached: bool = False


class _ItemStore(ItemReader, ItemWriter):
    """Type of the item store ingestion needs (read and write)"""


class IngestionService:
    """
    Upload parsing and committing for one household at a time.

    Collaborators are injected; see pipeline_factory for the wiring.
    """

    def __init__(
        self,
        cascade: ParsingCascade,
        resolver: MergeResolver,
        dispatcher: RetailerDispatcher,
        items: _ItemStore,
        transactions: TransactionWriter,
        settings: Settings,
    ):
        self.cascade = cascade
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.items = items
        self.transactions = transactions
        self.concurrency = settings.parse_worker_concurrency
        self.cache_write_threshold = settings.cache_write_threshold

    async def parse_batch(
        self,
        lines: Sequence[UploadLine],
        retailer: Union[Retailer, str],
        scope: BudgetScope,
        header: Optional[Sequence[str]] = None,
        purchased_on: Optional[date] = None,
    ) -> BatchParseResult:
        """
        Parse an upload.

        Args:
            lines: Free-text lines, or CSV records keyed by column name
            retailer: Retailer of the upload
            scope: Household/user paying for model calls
            header: CSV header (enables retailer format detection)
            purchased_on: Purchase date for lines that carry none

        Returns:
            BatchParseResult with candidates in input order
        """
        retailer = Retailer.normalize(retailer)
        lines = [line for line in lines if not (isinstance(line, str) and not line.strip())]

        existing_items = await self.items.get_by_household(scope.household_id)
        semaphore = asyncio.Semaphore(self.concurrency)

        logger.info("batch_parse_started",
                    household_id=scope.household_id,
                    retailer=retailer.value,
                    lines=len(lines))

        async def resolve_line(line: UploadLine) -> ParsedCandidate:
            try:
                row = self.dispatcher.to_row(line, retailer, header)
                async with semaphore:
                    candidate = await self.cascade.resolve(
                        row.raw_text, retailer, scope, row=row, purchased_on=purchased_on
                    )
                if candidate.is_fallback:
                    return candidate
                return self.resolver.apply(candidate, existing_items)
            except Exception as e:
                logger.error("line_resolution_failed",
                             household_id=scope.household_id,
                             retailer=retailer.value,
                             error_type=type(e).__name__,
                             error=str(e),
                             exc_info=True)
                return self.cascade.fallback_candidate(_line_text(line), retailer, purchased_on)

        candidates = list(await asyncio.gather(*(resolve_line(line) for line in lines)))
        result = BatchParseResult.from_candidates(candidates)

        logger.info("batch_parse_completed",
                    household_id=scope.household_id,
                    retailer=retailer.value,
                    total=len(candidates),
                    auto_accepted=result.auto_accepted,
                    needs_review=result.needs_review,
                    fallbacks=result.fallbacks,
                    budget_denials=result.budget_denials,
                    by_method=result.by_method,
                    average_confidence=round(result.average_confidence, 3))
        return result

    async def parse_csv(
        self,
        csv_text: str,
        retailer: Union[Retailer, str],
        scope: BudgetScope,
        purchased_on: Optional[date] = None,
    ) -> BatchParseResult:
        """Parse a CSV export: header row first, one record per purchase"""
        reader = csv.DictReader(io.StringIO(csv_text.lstrip("\ufeff")))
        header = reader.fieldnames or []
        records = [
            record for record in reader
            if any((value or "").strip() for value in record.values() if isinstance(value, str))
        ]
        return await self.parse_batch(records, retailer, scope, header=header, purchased_on=purchased_on)

    async def commit_candidates(
        self,
        household_id: str,
        candidates: Sequence[ParsedCandidate],
        user_id: Optional[str] = None,
    ) -> CommitResult:
        """
        Persist accepted candidates as transactions.

        CreateNew candidates are re-resolved against items created earlier in
        the same commit, so a product appearing twice in one upload yields one
        item.

        Raises:
            DataStoreFailure: If the item or transaction store is unreachable
        """
        result = CommitResult()
        created: List[Item] = []

        for candidate in candidates:
            if candidate.needs_review or candidate.is_fallback or candidate.merge is None:
                result.skipped += 1
                continue

            outcome = candidate.merge
            if isinstance(outcome, CreateNew) and created:
                outcome = self.resolver.resolve(candidate, created)

            if isinstance(outcome, MergeInto):
                item_id = outcome.item_id
            elif isinstance(outcome, CreateNew):
                item = await self.items.create_item(self._new_item(household_id, candidate))
                created.append(item)
                result.items_created += 1
                item_id = item.id
            else:
                result.skipped += 1
                continue

            transaction = await self._record_purchase(household_id, item_id, candidate, user_id)
            result.transactions_created += 1
            result.transaction_ids.append(transaction.id)

        logger.info("candidates_committed",
                    household_id=household_id,
                    transactions_created=result.transactions_created,
                    items_created=result.items_created,
                    skipped=result.skipped)
        return result

    @staticmethod
    def _new_item(household_id: str, candidate: ParsedCandidate) -> Item:
        return Item(
            id="",
            household_id=household_id,
            canonical_name=candidate.canonical_name,
            brand=candidate.brand,
            category=candidate.category,
            package_size=candidate.package_size,
            package_unit=candidate.package_unit,
        )

    async def _record_purchase(
        self,
        household_id: str,
        item_id: str,
        candidate: ParsedCandidate,
        user_id: Optional[str],
    ) -> Transaction:
        """Transaction + SKU mapping + last purchase for one committed line"""
        transaction = await self.transactions.create_transaction(Transaction(
            id="",
            household_id=household_id,
            item_id=item_id,
            purchase_date=candidate.purchase_date,
            quantity=candidate.quantity,
            price=candidate.price,
            vendor=candidate.vendor,
            resolution_method=candidate.resolution_method,
            confidence=candidate.confidence,
            raw_text=candidate.raw_text,
            created_by=user_id,
        ))

        if candidate.retailer_sku:
            await self.items.add_retailer_sku(item_id, sku_key(candidate.vendor.value, candidate.retailer_sku))
        await self.items.update_last_purchase(item_id, candidate.purchase_date, candidate.price)
        return transaction

    async def submit_review(
        self,
        household_id: str,
        candidate: ParsedCandidate,
        action: Union[ReviewAction, str],
        corrections: Optional[Mapping[str, Any]] = None,
        target_item_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ReviewResult:
        """
        Apply a reviewer's decision to a held candidate.

        - accept: commit as parsed
        - edit: apply corrections, confidence becomes 1.0, cache the result
        - reject: nothing is written

        On accept/edit the item is target_item_id when given. Otherwise the
        candidate is re-resolved against the household's items, and a
        name-only match is merged since a person has now seen it.

        Raises:
            ValueError: Unknown action, or edit without valid corrections
            DataStoreFailure: If the item or transaction store is unreachable
        """
        action = ReviewAction(action)

        if action == ReviewAction.REJECT:
            logger.info("review_rejected",
                        household_id=household_id,
                        user_id=user_id,
                        raw_text=candidate.raw_text[:80],
                        resolution_method=candidate.resolution_method.value)
            return ReviewResult(action=action)

        if action == ReviewAction.EDIT:
            candidate = self._apply_corrections(candidate, corrections)

        if target_item_id:
            outcome = MergeInto(item_id=target_item_id, auto=False, matched_on="review")
        else:
            existing_items = await self.items.get_by_household(household_id)
            outcome = self.resolver.resolve(candidate, existing_items)

        result = ReviewResult(action=action)
        if isinstance(outcome, (MergeInto, Ambiguous)):
            item_id = outcome.item_id
            result.merged = True
        else:
            item = await self.items.create_item(self._new_item(household_id, candidate))
            item_id = item.id
            result.item_created = True

        transaction = await self._record_purchase(household_id, item_id, candidate, user_id)
        result.item_id = item_id
        result.transaction_id = transaction.id

        if not candidate.is_fallback and candidate.confidence >= self.cache_write_threshold:
            await self.cascade.cache.set(candidate.raw_text, candidate.vendor.value, candidate.normalized())
            result.cached = True

        logger.info("review_submitted",
                    household_id=household_id,
                    user_id=user_id,
                    action=action.value,
                    item_id=item_id,
                    merged=result.merged,
                    cached=result.cached)
        return result

    @staticmethod
    def _apply_corrections(
        candidate: ParsedCandidate,
        corrections: Optional[Mapping[str, Any]],
    ) -> ParsedCandidate:
        if not corrections:
            raise ValueError("The edit action needs corrections")
        unknown = set(corrections) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be corrected: {', '.join(sorted(unknown))}")

        payload = candidate.model_dump(exclude={"merge"})
        payload.update(corrections)
        payload.update(
            confidence=1.0,
            needs_review=False,
            is_fallback=False,
            budget_denial=None,
        )
        return ParsedCandidate.model_validate(payload)
