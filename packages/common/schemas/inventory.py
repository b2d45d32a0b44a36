"""
Inventory pipeline schemas (Pydantic models)

Shapes shared by the parsing cascade, merge resolver and prediction engine:
- NormalizedItem: the cacheable part of a parse
- ParsedCandidate: one line's structured interpretation (immutable)
- MergeInto | CreateNew | Ambiguous: merge resolver outcomes
- Item / Transaction: external entities, referenced not owned here
- PredictionResult: run-out prediction for one item
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class Retailer(str, Enum):
    """Retailer an upload came from"""
    AMAZON = "amazon"
    COSTCO = "costco"
    WALMART = "walmart"
    TARGET = "target"
    INSTACART = "instacart"
    OTHER = "other"

    @classmethod
    def normalize(cls, value: Union[str, "Retailer", None]) -> "Retailer":
        """Map a free-form retailer name onto the enum (unknown → OTHER)"""
        if isinstance(value, Retailer):
            return value
        if not value:
            return cls.OTHER
        cleaned = value.strip().lower().replace("'", "").replace(" ", "")
        for member in cls:
            if member.value == cleaned:
                return member
        return cls.OTHER


class Category(str, Enum):
    """Product category"""
    DAIRY = "Dairy & Eggs"
    PRODUCE = "Produce"
    MEAT_SEAFOOD = "Meat & Seafood"
    BAKERY = "Bakery"
    PANTRY = "Pantry Staples"
    BEVERAGES = "Beverages"
    SNACKS = "Snacks"
    FROZEN = "Frozen Foods"
    HOUSEHOLD = "Household Supplies"
    PERSONAL_CARE = "Personal Care"
    PET_SUPPLIES = "Pet Supplies"
    BABY = "Baby Products"
    OTHER = "Other"


class UnitOfMeasure(str, Enum):
    """Unit of measure for quantities and package sizes"""
    # Volume
    FLUID_OUNCES = "fl oz"
    MILLILITERS = "ml"
    LITERS = "L"
    GALLONS = "gal"
    CUPS = "cup"

    # Weight
    OUNCES = "oz"
    POUNDS = "lb"
    GRAMS = "g"
    KILOGRAMS = "kg"

    # Count
    EACH = "each"
    PACK = "pack"
    DOZEN = "dozen"
    BOX = "box"
    BAG = "bag"
    BOTTLE = "bottle"
    CAN = "can"
    JAR = "jar"
    CARTON = "carton"

    OTHER = "other"


class ResolutionMethod(str, Enum):
    """Cascade tier that produced a candidate"""
    RULE = "rule"
    CACHE = "cache"
    MODEL = "model"


class PredictionConfidence(str, Enum):
    """Confidence band of a run-out prediction"""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class BudgetDenialReason(str, Enum):
    """Which spending ceiling stopped a model call"""
    USER_MONTHLY_EXCEEDED = "user_monthly_exceeded"
    SYSTEM_DAILY_EXCEEDED = "system_daily_exceeded"


class LineOutcome(str, Enum):
    """User-visible per-line ingestion outcome"""
    ACCEPTED = "accepted"
    NEEDS_REVIEW = "needs_review"
    LOW_CONFIDENCE_FALLBACK = "low_confidence_fallback"


class ReviewAction(str, Enum):
    """Decision a person makes on a candidate held for review"""
    ACCEPT = "accept"
    EDIT = "edit"
    REJECT = "reject"


class NormalizedItem(BaseModel):
    """Normalized product data, as produced by a rule or the model and stored in the cache"""
    canonical_name: str = Field(..., min_length=1, description="Normalized product name")
    brand: Optional[str] = Field(None, description="Brand name if identified")
    category: Category = Category.OTHER
    quantity: Decimal = Field(default=Decimal("1"), gt=0, description="Units purchased")
    unit_of_measure: UnitOfMeasure = UnitOfMeasure.EACH
    package_size: Decimal = Field(..., gt=0, description="Size per unit (e.g. 64 for 64 fl oz)")
    package_unit: UnitOfMeasure
    confidence: float = Field(..., ge=0.0, le=1.0)

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "canonical_name": "Milk, Organic, Whole",
                "brand": "Horizon",
                "category": "Dairy & Eggs",
                "quantity": 2,
                "unit_of_measure": "pack",
                "package_size": 64,
                "package_unit": "fl oz",
                "confidence": 0.95,
            }
        }


class MergeInto(BaseModel):
    """Attach the line to an existing item"""
    kind: Literal["merge_into"] = "merge_into"
    item_id: str
    auto: bool = True
    match_confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    matched_on: Literal["sku", "name_brand", "review"]

    class Config:
        frozen = True


class CreateNew(BaseModel):
    """No existing item matches; create a new one"""
    kind: Literal["create_new"] = "create_new"
    create_new: bool = True

    class Config:
        frozen = True


class Ambiguous(BaseModel):
    """Potential match on name only; a human decides"""
    kind: Literal["ambiguous"] = "ambiguous"
    ambiguous: bool = True
    item_id: str = Field(..., description="Existing item that might be the same product")
    reason: str

    class Config:
        frozen = True


MergeOutcome = Annotated[Union[MergeInto, CreateNew, Ambiguous], Field(discriminator="kind")]


class ParsedCandidate(BaseModel):
    """
    One line's structured interpretation.

    Created once per input line and never mutated; the merge step returns a
    copy carrying the merge outcome.
    """
    raw_text: str
    canonical_name: str
    brand: Optional[str] = None
    category: Category = Category.OTHER
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    unit_of_measure: UnitOfMeasure = UnitOfMeasure.EACH
    package_size: Decimal = Field(default=Decimal("1"), gt=0)
    package_unit: UnitOfMeasure = UnitOfMeasure.EACH
    price: Optional[Decimal] = Field(None, description="Line total paid")
    purchase_date: date
    vendor: Retailer
    retailer_sku: Optional[str] = Field(None, description="ASIN / item number when the export carries one")

    confidence: float = Field(..., ge=0.0, le=1.0)
    resolution_method: ResolutionMethod
    needs_review: bool = False
    is_fallback: bool = False
    budget_denial: Optional[BudgetDenialReason] = None
    merge: Optional[MergeOutcome] = None

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "raw_text": "Horizon - Organic Whole Milk, 64 fl oz",
                "canonical_name": "Organic Whole Milk",
                "brand": "Horizon",
                "category": "Dairy & Eggs",
                "quantity": 1,
                "unit_of_measure": "each",
                "package_size": 64,
                "package_unit": "fl oz",
                "price": 5.99,
                "purchase_date": "2025-01-15",
                "vendor": "amazon",
                "confidence": 0.9,
                "resolution_method": "rule",
                "needs_review": False,
            }
        }

    @property
    def line_outcome(self) -> LineOutcome:
        if self.is_fallback:
            return LineOutcome.LOW_CONFIDENCE_FALLBACK
        if self.needs_review:
            return LineOutcome.NEEDS_REVIEW
        return LineOutcome.ACCEPTED

    def normalized(self) -> NormalizedItem:
        """Project the cacheable fields"""
        return NormalizedItem(
            canonical_name=self.canonical_name,
            brand=self.brand,
            category=self.category,
            quantity=self.quantity,
            unit_of_measure=self.unit_of_measure,
            package_size=self.package_size,
            package_unit=self.package_unit,
            confidence=self.confidence,
        )


class CacheEntry(BaseModel):
    """Normalization cache record (durable layer document)"""
    key: str = Field(..., description="SHA-256 of lower(raw_text)_lower(retailer)")
    raw_text: str
    retailer: str
    normalized: NormalizedItem
    hit_count: int = Field(default=0, ge=0)
    last_accessed_at: datetime
    created_at: datetime
    ttl_seconds: int


class UsageRecord(BaseModel):
    """LLM usage aggregate for one (scope, period)"""
    id: str
    household_id: str
    user_id: Optional[str] = None
    period: str = Field(..., description="YYYY-MM for monthly, YYYY-MM-DD for daily")
    period_type: Literal["monthly", "daily"]
    llm_calls: int = Field(default=0, ge=0)
    llm_tokens_in: int = Field(default=0, ge=0)
    llm_tokens_out: int = Field(default=0, ge=0)
    llm_cost_usd: Decimal = Field(default=Decimal("0"), ge=0)
    created_at: datetime
    updated_at: datetime


class Item(BaseModel):
    """Tracked inventory item (external entity)"""
    id: str
    household_id: str
    canonical_name: str
    brand: Optional[str] = None
    category: Category = Category.OTHER
    package_size: Optional[Decimal] = None
    package_unit: Optional[UnitOfMeasure] = None
    retailer_skus: List[str] = Field(default_factory=list, description='"retailer:sku" mappings')

    last_purchase_date: Optional[date] = None
    last_purchase_price: Optional[Decimal] = None

    predicted_run_out_date: Optional[date] = None
    prediction_confidence: Optional[PredictionConfidence] = None
    avg_frequency_days: Optional[float] = None
    avg_consumption_rate: Optional[float] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Transaction(BaseModel):
    """One purchase event for an item (external entity)"""
    id: str
    household_id: str
    item_id: str
    purchase_date: date
    quantity: Decimal = Decimal("1")
    price: Optional[Decimal] = None
    vendor: Retailer = Retailer.OTHER

    # Provenance
    resolution_method: Optional[ResolutionMethod] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    raw_text: Optional[str] = None

    created_at: Optional[datetime] = None
    created_by: Optional[str] = None


class PredictionMetadata(BaseModel):
    """Derived values behind a prediction"""
    purchase_count: int
    recent_purchase: bool
    consistency: float = Field(..., description="Coefficient of variation of cleaned intervals, percent")
    outliers_removed: int
    last_purchase_date: date
    intervals: List[int]
    cleaned_intervals: List[int]


class PredictionResult(BaseModel):
    """Run-out prediction for one item"""
    item_id: str
    predicted_run_out_date: date
    confidence: PredictionConfidence
    smoothed_interval: float
    days_until_run_out: int
    metadata: PredictionMetadata
