"""
Investment Recommendation Service
Ranks (area, property type) opportunities by gross rental yield and keeps
one stored set of recommendations per user.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ConcurrencyConflictError, DataValidationError
from app.core.locks import KeyedLocks, user_locks
from app.models.market import InvestmentRecommendation
from app.services import market_analysis as analysis
from app.services.market_service import MarketService
from app.services.market_sources import SourceKind

logger = logging.getLogger(__name__)


class RecommendationPersister:
    """
    Swaps a user's stored recommendations in one transaction.
    Other sessions see either the old set or the new one, never an empty gap.
    """

    MAX_ATTEMPTS = 2

    def __init__(self, db: Session, locks: Optional[KeyedLocks] = None):
        self.db = db
        self.locks = locks if locks is not None else user_locks

    def replace_for_user(
        self, user_ref: str, opportunities: Sequence[Dict[str, Any]]
    ) -> List[InvestmentRecommendation]:
        with self.locks.hold(user_ref):
            for attempt in range(1, self.MAX_ATTEMPTS + 1):
                try:
                    (
                        self.db.query(InvestmentRecommendation)
                        .filter(InvestmentRecommendation.user_ref == user_ref)
                        .delete(synchronize_session=False)
                    )
                    rows = [
                        InvestmentRecommendation(
                            user_ref=user_ref,
                            area=opp["area"],
                            property_type=opp["property_type"],
                            average_price=opp["average_price"],
                            monthly_rent=opp["monthly_rent"],
                            rental_yield=opp["rental_yield"],
                            rank=rank,
                            description=opp["description"],
                        )
                        for rank, opp in enumerate(opportunities, start=1)
                    ]
                    self.db.add_all(rows)
                    self.db.commit()
                except (IntegrityError, OperationalError) as e:
                    self.db.rollback()
                    if attempt == self.MAX_ATTEMPTS:
                        logger.error(f"[Recommendations] Could not replace set for {user_ref}: {e}")
                        raise ConcurrencyConflictError(
                            "Could not save recommendations; please retry",
                            details={"user_ref": user_ref},
                        ) from e
                    logger.warning(f"[Recommendations] Conflict replacing set for {user_ref}, retrying")
                    continue

                logger.info(f"[Recommendations] Stored {len(rows)} recommendations for {user_ref}")
                return rows

    def list_for_user(self, user_ref: str) -> List[InvestmentRecommendation]:
        return (
            self.db.query(InvestmentRecommendation)
            .filter(InvestmentRecommendation.user_ref == user_ref)
            .order_by(InvestmentRecommendation.rank)
            .all()
        )


class InvestmentService:
    """Builds yield-ranked opportunities from the market dashboard."""

    def __init__(
        self,
        db: Session,
        market: MarketService,
        persister: Optional[RecommendationPersister] = None,
        response_limit: int = settings.RECOMMENDATION_RESPONSE_LIMIT,
        saved_limit: int = settings.SAVED_RECOMMENDATION_LIMIT,
    ):
        self.db = db
        self.market = market
        self.persister = persister or RecommendationPersister(db)
        self.response_limit = response_limit
        self.saved_limit = saved_limit

    def _opportunities_for(
        self,
        area: Optional[str],
        property_types: Optional[Sequence[str]],
        bedrooms: Optional[int],
    ) -> List[Dict[str, Any]]:
        dashboard = self.market.collect_market_dashboard_data(
            area=area,
            bedrooms=bedrooms,
            required_sources=(SourceKind.HOUSE_PRICE_INDEX,),
        )
        found = []
        for row in dashboard["area_breakdown"]:
            for pt in row["property_types"]:
                if property_types and pt["type"] not in property_types:
                    continue
                if pt["rental_yield"] is None:
                    continue
                found.append({
                    "area": row["name"],
                    "property_type": pt["type"],
                    "average_price": pt["average_sale_price"],
                    "monthly_rent": pt["average_rent"],
                    "rental_yield": pt["rental_yield"],
                    "data_points": pt["data_points"],
                })
        return found

    def generate_investment_recommendations(
        self,
        user_ref: Optional[str] = None,
        min_yield: Optional[float] = None,
        areas: Optional[Sequence[str]] = None,
        property_types: Optional[Sequence[str]] = None,
        bedrooms: Optional[int] = None,
        budget_min: Optional[float] = None,
        budget_max: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Return {recommendations, saved_recommendation_count}.
        With a user_ref the user's stored set is replaced by the top entries,
        even when nothing qualifies.
        """
        if budget_min is not None and budget_max is not None and budget_min > budget_max:
            raise DataValidationError(
                "budget_min cannot exceed budget_max",
                details={"budget_min": budget_min, "budget_max": budget_max},
            )

        candidates: List[Dict[str, Any]] = []
        seen = set()
        for area in (areas or [None]):
            for opp in self._opportunities_for(area, property_types, bedrooms):
                key = (opp["area"].lower(), opp["property_type"])
                if key in seen:
                    continue
                seen.add(key)
                candidates.append(opp)

        ranked = [
            opp for opp in candidates
            if (min_yield is None or opp["rental_yield"] >= min_yield)
            and (budget_min is None or opp["average_price"] >= budget_min)
            and (budget_max is None or opp["average_price"] <= budget_max)
        ]
        ranked.sort(key=lambda o: o["rental_yield"], reverse=True)
        for opp in ranked:
            opp["description"] = analysis.recommendation_description(
                opp["area"], opp["property_type"], opp["rental_yield"],
                opp["average_price"], opp["monthly_rent"],
            )

        saved = 0
        if user_ref:
            saved = len(self.persister.replace_for_user(user_ref, ranked[: self.saved_limit]))

        logger.info(
            f"[InvestmentService] {len(ranked)} opportunities (min_yield={min_yield}), "
            f"saved={saved} for user={user_ref}"
        )
        return {
            "recommendations": ranked[: self.response_limit],
            "saved_recommendation_count": saved,
        }
