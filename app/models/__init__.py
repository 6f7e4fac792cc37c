# Import all models so they are registered with Base.metadata
from app.models.market import (
    AreaStatistics,
    ContributedRentalRecord,
    InvestmentRecommendation,
    PropertyType,
)

__all__ = [
    "AreaStatistics",
    "ContributedRentalRecord",
    "InvestmentRecommendation",
    "PropertyType",
]
