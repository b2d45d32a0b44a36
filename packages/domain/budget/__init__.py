"""
Budget Module - spending ceilings for language-model calls

- Per-user monthly cap and system-wide daily cap, checked before every call
- Actual usage recorded after successful calls
"""

from packages.domain.budget.governor import (
    BudgetDecision,
    BudgetGovernor,
    BudgetScope,
)

__all__ = [
    'BudgetDecision',
    'BudgetGovernor',
    'BudgetScope',
]
