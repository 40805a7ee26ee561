"""
Budget tracking against daily and monthly spend.

Turns configured budgets and aggregated costs into alert levels for display.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

# Fraction of the budget at which a warning is raised
WARNING_THRESHOLD = 0.75


class BudgetLevel(Enum):
    """Alert level for a budget, in order of severity."""
    DISABLED = "disabled"  # No budget configured
    OK = "ok"
    WARNING = "warning"
    EXCEEDED = "exceeded"


@dataclass(frozen=True)
class BudgetStatus:
    """Spend measured against a single budget."""
    period: str  # "daily" or "monthly"
    amount_used: float
    budget: float
    level: BudgetLevel
    
    @property
    def amount_remaining(self) -> float:
        return max(self.budget - self.amount_used, 0.0)
    
    @property
    def fraction_used(self) -> Optional[float]:
        """Share of the budget spent, or None when no budget is set."""
        if self.budget <= 0:
            return None
        return self.amount_used / self.budget


def check_budget(period: str, amount_used: float, budget: float) -> BudgetStatus:
    """Evaluate spend against a budget.
    
    Args:
        period: Label for the budget window
        amount_used: Cost accumulated in the window
        budget: Budget limit in USD; 0 disables the check
        
    Returns:
        BudgetStatus with the computed alert level
        
    Raises:
        ValueError: If budget or amount_used is negative
    """
    if budget < 0:
        raise ValueError("budget cannot be negative")
    if amount_used < 0:
        raise ValueError("amount_used cannot be negative")
    
    if budget == 0:
        level = BudgetLevel.DISABLED
    elif amount_used >= budget:
        level = BudgetLevel.EXCEEDED
    elif amount_used >= budget * WARNING_THRESHOLD:
        level = BudgetLevel.WARNING
    else:
        level = BudgetLevel.OK
    
    return BudgetStatus(
        period=period,
        amount_used=amount_used,
        budget=budget,
        level=level,
    )
