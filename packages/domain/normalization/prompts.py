"""
Prompt template and JSON schema for tier-3 line normalization
"""
import json
import math
from typing import Any, Dict

from packages.common.schemas.inventory import Category, UnitOfMeasure

UNIT_VALUES = [u.value for u in UnitOfMeasure]

NORMALIZATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "canonical_name": {"type": "string", "description": "Normalized product name"},
        "brand": {"type": ["string", "null"], "description": "Brand name (optional)"},
        "category": {
            "type": "string",
            "enum": [c.value for c in Category],
            "description": "Product category",
        },
        "quantity": {"type": "number", "description": "Quantity purchased"},
        "unit_of_measure": {"type": "string", "enum": UNIT_VALUES, "description": "Unit of measure"},
        "package_size": {"type": "number", "description": "Size per package (e.g., 64 for 64 fl oz)"},
        "package_unit": {"type": "string", "enum": UNIT_VALUES, "description": "Unit for package size"},
        "confidence": {"type": "number", "description": "Confidence score 0.0-1.0"},
    },
    "required": [
        "canonical_name",
        "category",
        "quantity",
        "unit_of_measure",
        "package_size",
        "package_unit",
        "confidence",
    ],
}


def build_normalization_prompt(raw_text: str, retailer: str) -> str:
    """
    Build the model prompt for one purchase line.

    Args:
        raw_text: Raw line text
        retailer: Retailer name

    Returns:
        Prompt text
    """
    milk_example = json.dumps({
        "canonical_name": "Milk, Organic, Whole",
        "brand": "Horizon",
        "category": "Dairy & Eggs",
        "quantity": 2,
        "unit_of_measure": "pack",
        "package_size": 64,
        "package_unit": "fl oz",
        "confidence": 0.95,
    }, indent=2)

    banana_example = json.dumps({
        "canonical_name": "Bananas",
        "brand": None,
        "category": "Produce",
        "quantity": 1,
        "unit_of_measure": "bag",
        "package_size": 3,
        "package_unit": "lb",
        "confidence": 0.90,
    }, indent=2)

    return f"""Parse this grocery item from a {retailer} receipt/order:

"{raw_text}"

Extract:
- canonical_name: Standardized product name (e.g., "Milk, Organic, Whole")
- brand: Brand name if identifiable, otherwise null
- category: Best matching category from the enum
- quantity: Number of items purchased
- unit_of_measure: How the item is counted (each, pack, bottle, etc.)
- package_size: Size per unit (e.g., 64 for "64 fl oz")
- package_unit: Unit for package size (fl oz, oz, lb, etc.)
- confidence: Your confidence in this parsing (0.0-1.0)

If the text is vague, give your best guess and LOWER the confidence.

Examples:
Input: "Organic Whole Milk, 64 fl oz - Horizon, 2-Pack"
Output: {milk_example}

Input: "Bananas, Fresh, 3 lbs"
Output: {banana_example}
"""


def estimate_input_tokens(prompt: str) -> int:
    """Roughly 4 characters per token"""
    return math.ceil(len(prompt) / 4)
