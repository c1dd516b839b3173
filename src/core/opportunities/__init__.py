"""
SalesOps Opportunities

Opportunity lifecycle: stage transitions, forecast categories, line item
and bundle pricing, contact roles, duplicate detection and read models.
"""

from .forecast import ForecastCategory, categorize
from .models import (
    ContactRole,
    ContactRoleInput,
    FixedDiscount,
    LifecycleState,
    LineItem,
    LineItemPatch,
    LineItemType,
    NewLineItem,
    Opportunity,
    OpportunityCreate,
    OpportunityDetail,
    OpportunityFilters,
    OpportunityPatch,
    PercentDiscount,
    StageHistoryEntry,
)
from .service import (
    OpportunityService,
    get_opportunity_service,
    reset_opportunity_service,
)
from .transitions import StageTransition, StageTransitionEngine, TransitionKind

__all__ = [
    # Forecast
    "ForecastCategory",
    "categorize",
    # Models
    "ContactRole",
    "ContactRoleInput",
    "FixedDiscount",
    "LifecycleState",
    "LineItem",
    "LineItemPatch",
    "LineItemType",
    "NewLineItem",
    "Opportunity",
    "OpportunityCreate",
    "OpportunityDetail",
    "OpportunityFilters",
    "OpportunityPatch",
    "PercentDiscount",
    "StageHistoryEntry",
    # Engines
    "OpportunityService",
    "get_opportunity_service",
    "reset_opportunity_service",
    "StageTransition",
    "StageTransitionEngine",
    "TransitionKind",
]
