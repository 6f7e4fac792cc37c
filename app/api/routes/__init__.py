from app.api.routes.market import router as market_router
from app.api.routes.recommendations import router as recommendations_router

__all__ = [
    "market_router",
    "recommendations_router",
]
