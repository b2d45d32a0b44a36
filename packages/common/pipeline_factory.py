"""
Pipeline wiring

Builds every service from one Settings object:

    settings → key-value stores (postgres | memory) → cache, governor
             → dispatcher + generator → cascade → ingestion service
             → inventory repository → prediction engine

Hosts, the Celery worker and the scripts all go through build_pipeline(), so
there are no module-level service singletons.
"""
from dataclasses import dataclass
from typing import Optional

import structlog

from packages.common.background import BackgroundTaskQueue
from packages.common.config import Settings, get_settings
from packages.common.database import DatabaseSessionManager
from packages.common.inventory_repository import load_inventory_repository
from packages.common.kv_store import KeyValueStore, MemoryKeyValueStore, PostgresKeyValueStore
from packages.common.normalization_cache import NormalizationCache
from packages.domain.budget.governor import BudgetGovernor
from packages.domain.ingestion.ingestion_service import IngestionService
from packages.domain.merge.resolver import MergeResolver
from packages.domain.normalization.cascade import ParsingCascade
from packages.domain.normalization.structured_generator import (
    AnthropicStructuredGenerator,
    StructuredGenerator,
)
from packages.domain.prediction.prediction_engine import PredictionEngine
from packages.parsers.retailer_dispatcher import RetailerDispatcher

logger = structlog.get_logger()


@dataclass
class Pipeline:
    """Fully wired services sharing one set of stores"""
    settings: Settings
    background: BackgroundTaskQueue
    cache: NormalizationCache
    governor: BudgetGovernor
    cascade: ParsingCascade
    resolver: MergeResolver
    ingestion: IngestionService
    prediction: PredictionEngine
    inventory: object
    db: Optional[DatabaseSessionManager] = None

    async def start(self, prewarm: bool = True) -> None:
        """Process start: preload the hottest cache entries"""
        if prewarm:
            await self.cache.prewarm()

    async def close(self) -> None:
        """Wait for background cache updates, then release the database"""
        await self.background.drain()
        if self.db is not None:
            await self.db.close()


def _stores(settings: Settings, db: Optional[DatabaseSessionManager]):
    if settings.kv_store_backend == "memory":
        return MemoryKeyValueStore(), MemoryKeyValueStore(), None

    db = db or DatabaseSessionManager(settings)
    cache_store: KeyValueStore = PostgresKeyValueStore(db, "normalization_cache")
    usage_store: KeyValueStore = PostgresKeyValueStore(db, "llm_usage")
    return cache_store, usage_store, db


def build_pipeline(
    settings: Optional[Settings] = None,
    inventory=None,
    generator: Optional[StructuredGenerator] = None,
    db: Optional[DatabaseSessionManager] = None,
) -> Pipeline:
    """
    Wire the pipeline.

    Args:
        settings: Defaults to get_settings()
        inventory: Item/transaction repository; loaded from
            INVENTORY_REPOSITORY when omitted
        generator: Structured generator; Anthropic when omitted
        db: Shared session manager (postgres backend only)
    """
    settings = settings or get_settings()

    cache_store, usage_store, db = _stores(settings, db)
    background = BackgroundTaskQueue(settings.background_queue_size)

    cache = NormalizationCache(cache_store, settings, background=background)
    governor = BudgetGovernor(usage_store, settings)
    dispatcher = RetailerDispatcher(rule_confidence=settings.rule_confidence)
    generator = generator or AnthropicStructuredGenerator(settings)
    cascade = ParsingCascade(dispatcher, cache, governor, generator, settings)
    resolver = MergeResolver(ambiguous_confidence_cap=settings.ambiguous_confidence_cap)

    if inventory is None:
        inventory = load_inventory_repository(settings.inventory_repository)

    ingestion = IngestionService(cascade, resolver, dispatcher, inventory, inventory, settings)
    prediction = PredictionEngine(inventory, inventory, settings)

    logger.info("pipeline_built",
                kv_store_backend=settings.kv_store_backend,
                model=settings.model_name,
                environment=settings.environment)

    return Pipeline(
        settings=settings,
        background=background,
        cache=cache,
        governor=governor,
        cascade=cascade,
        resolver=resolver,
        ingestion=ingestion,
        prediction=prediction,
        inventory=inventory,
        db=db,
    )
