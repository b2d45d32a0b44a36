"""
Ingestion Module - purchase uploads into inventory transactions
"""

from packages.domain.ingestion.ingestion_service import (
    BatchParseResult,
    CommitResult,
    IngestionService,
    ReviewResult,
)

__all__ = [
    'BatchParseResult',
    'CommitResult',
    'IngestionService',
    'ReviewResult',
]
