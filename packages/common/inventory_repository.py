"""
Inventory store interfaces (items and transactions)

The item/transaction stores belong to the host application. The pipeline only
depends on these narrow interfaces:

- TransactionReader.get_by_item()           ← prediction engine
- ItemReader.get_by_household() / get_distinct_household_ids() / get_running_out_soon()
- ItemWriter.update_prediction() / create_item() / add_retailer_sku() / update_last_purchase()
- TransactionWriter.create_transaction()    ← commit_candidates

InMemoryInventoryRepository implements all four for development, the worker
default, and tests. A host plugs its own implementation in through the
INVENTORY_REPOSITORY setting ("module.path:ClassName").

Implementations raise DataStoreFailure when the store is unreachable; the
pipeline never masks it.
"""
import asyncio
import importlib
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import uuid4

import structlog

from packages.common.schemas.inventory import (
    Item,
    PredictionConfidence,
    Transaction,
)

logger = structlog.get_logger()


class TransactionReader(ABC):
    @abstractmethod
    async def get_by_item(self, item_id: str) -> List[Transaction]:
        """All purchase transactions of an item, any order"""
        pass


class TransactionWriter(ABC):
    @abstractmethod
    async def create_transaction(self, transaction: Transaction) -> Transaction:
        pass


class ItemReader(ABC):
    @abstractmethod
    async def get_by_household(self, household_id: str) -> List[Item]:
        pass

    @abstractmethod
    async def get_distinct_household_ids(self) -> List[str]:
        pass

    @abstractmethod
    async def get_running_out_soon(self, household_id: str, days: int = 7) -> List[Item]:
        """Items predicted to run out within `days`, soonest first"""
        pass


class ItemWriter(ABC):
    @abstractmethod
    async def create_item(self, item: Item) -> Item:
        pass

    @abstractmethod
    async def update_prediction(
        self,
        item_id: str,
        predicted_run_out_date: date,
        prediction_confidence: PredictionConfidence,
        avg_frequency_days: float,
        avg_consumption_rate: float,
    ) -> None:
        pass

    @abstractmethod
    async def add_retailer_sku(self, item_id: str, sku_mapping: str) -> None:
        pass

    @abstractmethod
    async def update_last_purchase(self, item_id: str, purchase_date: date, price: Optional[Decimal]) -> None:
        pass


class InMemoryInventoryRepository(TransactionReader, TransactionWriter, ItemReader, ItemWriter):
    """Process-local item and transaction store."""

    def __init__(self, today=date.today):
        self.items: Dict[str, Item] = {}
        self.transactions: Dict[str, Transaction] = {}
        self._lock = asyncio.Lock()
        self.today = today

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def create_item(self, item: Item) -> Item:
        async with self._lock:
            if not item.id:
                item = item.model_copy(update={"id": str(uuid4())})
            stamped = item.model_copy(update={
                "created_at": item.created_at or self._now(),
                "updated_at": self._now(),
            })
            self.items[stamped.id] = stamped
        logger.debug("item_created", item_id=stamped.id, household_id=stamped.household_id)
        return stamped

    async def create_transaction(self, transaction: Transaction) -> Transaction:
        async with self._lock:
            if not transaction.id:
                transaction = transaction.model_copy(update={"id": str(uuid4())})
            stamped = transaction.model_copy(update={"created_at": transaction.created_at or self._now()})
            self.transactions[stamped.id] = stamped
        return stamped

    async def get_by_item(self, item_id: str) -> List[Transaction]:
        async with self._lock:
            return [t for t in self.transactions.values() if t.item_id == item_id]

    async def get_by_household(self, household_id: str) -> List[Item]:
        async with self._lock:
            return [i for i in self.items.values() if i.household_id == household_id]

    async def get_distinct_household_ids(self) -> List[str]:
        async with self._lock:
            return sorted({i.household_id for i in self.items.values()})

    async def get_running_out_soon(self, household_id: str, days: int = 7) -> List[Item]:
        cutoff = self.today() + timedelta(days=days)
        async with self._lock:
            due = [
                i for i in self.items.values()
                if i.household_id == household_id
                and i.predicted_run_out_date is not None
                and i.predicted_run_out_date <= cutoff
            ]
        return sorted(due, key=lambda i: i.predicted_run_out_date)

    async def update_prediction(
        self,
        item_id: str,
        predicted_run_out_date: date,
        prediction_confidence: PredictionConfidence,
        avg_frequency_days: float,
        avg_consumption_rate: float,
    ) -> None:
        async with self._lock:
            item = self.items[item_id]
            self.items[item_id] = item.model_copy(update={
                "predicted_run_out_date": predicted_run_out_date,
                "prediction_confidence": prediction_confidence,
                "avg_frequency_days": avg_frequency_days,
                "avg_consumption_rate": avg_consumption_rate,
                "updated_at": self._now(),
            })

    async def add_retailer_sku(self, item_id: str, sku_mapping: str) -> None:
        async with self._lock:
            item = self.items[item_id]
            if sku_mapping in item.retailer_skus:
                return
            self.items[item_id] = item.model_copy(update={
                "retailer_skus": [*item.retailer_skus, sku_mapping],
                "updated_at": self._now(),
            })

    async def update_last_purchase(self, item_id: str, purchase_date: date, price: Optional[Decimal]) -> None:
        async with self._lock:
            item = self.items[item_id]
            if item.last_purchase_date and item.last_purchase_date > purchase_date:
                return
            self.items[item_id] = item.model_copy(update={
                "last_purchase_date": purchase_date,
                "last_purchase_price": price if price is not None else item.last_purchase_price,
                "updated_at": self._now(),
            })


def load_inventory_repository(dotted_path: str):
    """
    Instantiate an inventory repository from "module.path:Attribute".

    The attribute may be a class or a zero-argument factory.
    """
    module_path, _, attribute = dotted_path.partition(":")
    if not module_path or not attribute:
        raise ValueError(f"INVENTORY_REPOSITORY must look like 'module:Attribute', got {dotted_path!r}")
    module = importlib.import_module(module_path)
    factory = getattr(module, attribute)
    repository = factory()
    logger.info("inventory_repository_loaded", path=dotted_path)
    return repository
