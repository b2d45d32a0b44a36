"""
Merge Module - duplicate-item prevention

SKU match → auto merge; name + brand match → auto merge;
name-only match → ambiguous (human review); otherwise → new item.
"""

from packages.domain.merge.resolver import MergeResolver, sku_key

__all__ = [
    'MergeResolver',
    'sku_key',
]
