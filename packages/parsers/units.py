"""
Package size / unit parsing

Pulls a package size out of free product text. Tried in order, first match wins:
1. Multi-pack: "12 x 8 oz", "12×8oz", "6 pack 12 fl oz"  → total size, unit, pack count
2. Mixed number: "2 1/4 gal"
3. Fraction: "1/2 lb"
4. Decimal: "64 fl oz", "2.5 lb", "500 ml"

Promotional noise ("NEW!", "20% off", "buy 2 get 1") is stripped first so it
cannot be mistaken for a size. Quarts and pints have no unit of their own and
are converted to fluid ounces.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
import re

from packages.common.schemas.inventory import UnitOfMeasure

UNIT_PATTERN = (
    r'(fl\.?\s?oz|oz|lbs?|pounds?|gal(?:lons?)?|qt|pt|cups?|ml|l|liters?|litres?'
    r'|kg|g|grams?|ct|count|pk|pack|dozen|each|ea)\b'
)

MULTI_PACK_PATTERN = re.compile(r'(\d+)\s*[x×*]\s*(\d+(?:\.\d+)?)\s*' + UNIT_PATTERN, re.IGNORECASE)
PACK_OF_PATTERN = re.compile(
    r'(\d+)\s*[- ]?\s*(?:pack|pk|ct|count)\s*(?:of\s+)?[,/]?\s*(\d+(?:\.\d+)?)\s*' + UNIT_PATTERN,
    re.IGNORECASE,
)
MIXED_NUMBER_PATTERN = re.compile(r'(\d+)\s+(\d+)/(\d+)\s*' + UNIT_PATTERN, re.IGNORECASE)
FRACTION_PATTERN = re.compile(r'(?<![\d/])(\d+)/(\d+)\s*' + UNIT_PATTERN, re.IGNORECASE)
DECIMAL_PATTERN = re.compile(r'(?<![\d/.])(\d+(?:\.\d+)?)\s*' + UNIT_PATTERN, re.IGNORECASE)

PROMO_PATTERNS = [
    re.compile(r'new!', re.IGNORECASE),
    re.compile(r'\bsale\b', re.IGNORECASE),
    re.compile(r'\d+%\s*off', re.IGNORECASE),
    re.compile(r'buy\s+\d+\s+get\s+\d+(\s+free)?', re.IGNORECASE),
    re.compile(r'save\s+\$\d+(\.\d+)?', re.IGNORECASE),
    re.compile(r'\$\d+\.\d+\s*off', re.IGNORECASE),
]

UNIT_MAP = {
    'oz': UnitOfMeasure.OUNCES,
    'lb': UnitOfMeasure.POUNDS,
    'lbs': UnitOfMeasure.POUNDS,
    'pound': UnitOfMeasure.POUNDS,
    'pounds': UnitOfMeasure.POUNDS,
    'g': UnitOfMeasure.GRAMS,
    'gram': UnitOfMeasure.GRAMS,
    'grams': UnitOfMeasure.GRAMS,
    'kg': UnitOfMeasure.KILOGRAMS,
    'fl oz': UnitOfMeasure.FLUID_OUNCES,
    'floz': UnitOfMeasure.FLUID_OUNCES,
    'fl. oz': UnitOfMeasure.FLUID_OUNCES,
    'fl.oz': UnitOfMeasure.FLUID_OUNCES,
    'ml': UnitOfMeasure.MILLILITERS,
    'l': UnitOfMeasure.LITERS,
    'liter': UnitOfMeasure.LITERS,
    'liters': UnitOfMeasure.LITERS,
    'litre': UnitOfMeasure.LITERS,
    'litres': UnitOfMeasure.LITERS,
    'gal': UnitOfMeasure.GALLONS,
    'gallon': UnitOfMeasure.GALLONS,
    'gallons': UnitOfMeasure.GALLONS,
    'cup': UnitOfMeasure.CUPS,
    'cups': UnitOfMeasure.CUPS,
    'count': UnitOfMeasure.EACH,
    'ct': UnitOfMeasure.EACH,
    'each': UnitOfMeasure.EACH,
    'ea': UnitOfMeasure.EACH,
    'pack': UnitOfMeasure.PACK,
    'pk': UnitOfMeasure.PACK,
    'dozen': UnitOfMeasure.DOZEN,
    'box': UnitOfMeasure.BOX,
    'bag': UnitOfMeasure.BAG,
    'bottle': UnitOfMeasure.BOTTLE,
    'can': UnitOfMeasure.CAN,
    'jar': UnitOfMeasure.JAR,
    'carton': UnitOfMeasure.CARTON,
}

# Units without an enum member, converted to fluid ounces
FLUID_OUNCE_FACTORS = {
    'qt': Decimal('32'),
    'pt': Decimal('16'),
}


@dataclass(frozen=True)
class PackageSize:
    """Parsed package size"""
    size: Decimal
    unit: UnitOfMeasure
    pack_count: int = 1
    method: str = 'decimal'
    matched_text: str = ''


def map_unit_string(unit: str) -> UnitOfMeasure:
    """Map a unit string to UnitOfMeasure (unknown → OTHER)"""
    key = re.sub(r'\s+', ' ', unit.strip().lower())
    if key in UNIT_MAP:
        return UNIT_MAP[key]
    key = key.replace(' ', '')
    if key in ('floz', 'fl.oz'):
        return UnitOfMeasure.FLUID_OUNCES
    return UNIT_MAP.get(key, UnitOfMeasure.OTHER)


def canonicalize_input(text: str) -> str:
    """Lowercase, strip promotional text, collapse whitespace"""
    result = text.lower()
    for pattern in PROMO_PATTERNS:
        result = pattern.sub('', result)
    return re.sub(r'\s+', ' ', result).strip()


def canonicalize_item_name(name: str) -> str:
    """Canonical form used for name matching (letters, digits, single spaces)"""
    return re.sub(r'\s+', ' ', re.sub(r'[^a-z0-9\s]', '', canonicalize_input(name))).strip()


def _build(value: Decimal, unit_text: str, pack_count: int, method: str, matched: str) -> Optional[PackageSize]:
    unit_key = re.sub(r'\s+', ' ', unit_text.lower())
    if unit_key in FLUID_OUNCE_FACTORS:
        value = value * FLUID_OUNCE_FACTORS[unit_key]
        unit = UnitOfMeasure.FLUID_OUNCES
    else:
        unit = map_unit_string(unit_text)

    if value <= 0 or unit == UnitOfMeasure.OTHER:
        return None

    return PackageSize(size=value, unit=unit, pack_count=pack_count, method=method, matched_text=matched)


def parse_package_size(text: str) -> Optional[PackageSize]:
    """
    Extract the package size from product text.

    Multi-packs report the size of one unit and the pack count; callers decide
    whether to multiply.

    Returns:
        PackageSize or None if no size could be found
    """
    if not text:
        return None

    canonical = canonicalize_input(text)

    for pattern in (MULTI_PACK_PATTERN, PACK_OF_PATTERN):
        match = pattern.search(canonical)
        if match:
            count = int(match.group(1))
            result = _build(Decimal(match.group(2)), match.group(3), count, 'multi-pack', match.group(0))
            if result and count > 0:
                return result

    match = MIXED_NUMBER_PATTERN.search(canonical)
    if match:
        whole, num, den = (int(g) for g in match.group(1, 2, 3))
        if den:
            value = Decimal(whole) + Decimal(num) / Decimal(den)
            result = _build(value, match.group(4), 1, 'fraction', match.group(0))
            if result:
                return result

    match = FRACTION_PATTERN.search(canonical)
    if match:
        num, den = int(match.group(1)), int(match.group(2))
        if den:
            result = _build(Decimal(num) / Decimal(den), match.group(3), 1, 'fraction', match.group(0))
            if result:
                return result

    match = DECIMAL_PATTERN.search(canonical)
    if match:
        return _build(Decimal(match.group(1)), match.group(2), 1, 'decimal', match.group(0))

    return None


def strip_size_text(text: str, size: Optional[PackageSize]) -> str:
    """Remove the matched size phrase and dangling separators from a name"""
    if size is None or not size.matched_text:
        return text.strip()
    pattern = re.compile(re.escape(size.matched_text).replace(r'\ ', r'\s*'), re.IGNORECASE)
    cleaned = pattern.sub('', text, count=1)
    cleaned = re.sub(r'\s+', ' ', cleaned)
    return cleaned.strip(' ,-/|')
