"""Shared fixtures: in-memory stores, fixed clocks, a scripted model."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from packages.common.config import Settings
from packages.common.inventory_repository import InMemoryInventoryRepository
from packages.common.kv_store import KeyValueStore, MemoryKeyValueStore
from packages.common.normalization_cache import NormalizationCache
from packages.common.schemas.inventory import (
    Category,
    NormalizedItem,
    ParsedCandidate,
    ResolutionMethod,
    Retailer,
    UnitOfMeasure,
)
from packages.domain.budget.governor import BudgetGovernor, BudgetScope
from packages.domain.normalization.structured_generator import GenerationResult, StructuredGenerator

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
TODAY = date(2025, 3, 15)

TRAIL_MIX = {
    "canonical_name": "Trail Mix",
    "brand": "Kirkland Signature",
    "category": "Snacks",
    "quantity": 1,
    "unit_of_measure": "bag",
    "package_size": 4,
    "package_unit": "lb",
    "confidence": 0.93,
}


class MutableClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FailingStore(KeyValueStore):
    """Key-value store whose backend is down."""

    async def get(self, key):
        raise ConnectionError("store unreachable")

    async def put(self, key, value, ttl_seconds=None):
        raise ConnectionError("store unreachable")

    async def top(self, limit, order_field):
        raise ConnectionError("store unreachable")


class FakeGenerator(StructuredGenerator):
    """Returns a fixed payload (or raises) and records every prompt."""

    def __init__(self, data=None, error=None, input_tokens=400, output_tokens=60):
        self.data = data if data is not None else dict(TRAIL_MIX)
        self.error = error
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.prompts = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt, schema, max_output_tokens):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return GenerationResult(
            data=dict(self.data),
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )


def make_settings(**overrides) -> Settings:
    values = {
        "kv_store_backend": "memory",
        "environment": "test",
        "anthropic_api_key": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_normalized(**overrides) -> NormalizedItem:
    values = {
        "canonical_name": "Organic Whole Milk",
        "brand": "Horizon",
        "category": Category.DAIRY,
        "quantity": Decimal("1"),
        "unit_of_measure": UnitOfMeasure.EACH,
        "package_size": Decimal("64"),
        "package_unit": UnitOfMeasure.FLUID_OUNCES,
        "confidence": 0.95,
    }
    values.update(overrides)
    return NormalizedItem(**values)


def make_candidate(**overrides) -> ParsedCandidate:
    values = {
        "raw_text": "Horizon - Organic Whole Milk, 64 fl oz",
        "canonical_name": "Organic Whole Milk",
        "brand": "Horizon",
        "category": Category.DAIRY,
        "package_size": Decimal("64"),
        "package_unit": UnitOfMeasure.FLUID_OUNCES,
        "price": Decimal("5.99"),
        "purchase_date": TODAY,
        "vendor": Retailer.AMAZON,
        "confidence": 0.9,
        "resolution_method": ResolutionMethod.RULE,
    }
    values.update(overrides)
    return ParsedCandidate(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def scope():
    return BudgetScope(household_id="house-1", user_id="user-1")


@pytest.fixture
def kv_store(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def usage_store(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def cache(kv_store, settings, clock):
    return NormalizationCache(kv_store, settings, clock=clock)


@pytest.fixture
def governor(usage_store, settings, clock):
    return BudgetGovernor(usage_store, settings, clock=clock)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def repository():
    return InMemoryInventoryRepository(today=lambda: TODAY)
