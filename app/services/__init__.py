__all__ = [
    "cache",
    "market_sources",
    "contribution_service",
    "market_analysis",
    "market_service",
    "investment_service",
    "recommendation_service",
]
