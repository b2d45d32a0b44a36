"""
Normalization Module - raw purchase text → structured candidates

Three-tier cascade:
1. Retailer rules (free, deterministic)
2. Normalization cache (free)
3. Budget-governed model call (~$0.001 per line)

Cache strategy:
- First time seeing a line → rule or model → cached
- Subsequent times → cache hit (free)
"""

from packages.domain.normalization.cascade import ParsingCascade
from packages.domain.normalization.structured_generator import (
    AnthropicStructuredGenerator,
    GenerationResult,
    StructuredGenerator,
)

__all__ = [
    'ParsingCascade',
    'AnthropicStructuredGenerator',
    'GenerationResult',
    'StructuredGenerator',
]
