"""
Market Intelligence Routes
Student-let market dashboard, contributed rent data and investment insight.

Endpoints:
  GET  /api/market-intelligence/dashboard-data           → fused market dashboard
  POST /api/market-intelligence/contribute-rental-data   → submit an observed rent
  GET  /api/market-intelligence/contributed-data         → raw contributions (landlord/agent/admin)
  GET  /api/market-intelligence/area-statistics          → derived statistics for every area
  GET  /api/market-intelligence/area-statistics/{area}   → derived statistics for one area
  POST /api/market-intelligence/calculate-yield          → gross yield with market comparison
  GET  /api/market-intelligence/market-analysis          → trends, predictions, opportunities
  GET  /api/market-intelligence/user-recommendations     → generate and store investment picks
  GET  /api/market-intelligence/saved-recommendations    → the caller's stored picks
  GET  /api/market-intelligence/competitor-analysis      → rent spread and market gaps
"""
import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.errors import MarketIntelError
from app.dependencies import (
    ROLE_ADMIN,
    ROLE_AGENT,
    ROLE_LANDLORD,
    CurrentUser,
    get_contribution_store,
    get_current_user,
    get_investment_service,
    get_market_service,
    get_recommendation_persister,
    require_role,
    require_user,
)
from app.models.market import PropertyType
from app.schemas.market import (
    AreaStatisticsOut,
    ContributionOut,
    ContributionResponse,
    InvestmentRecommendationOut,
    InvestmentRecommendationsResponse,
    MarketDataResponse,
    RentalContributionCreate,
    RentalYieldRequest,
    SavedRecommendationsResponse,
)
from app.services.contribution_service import ContributionStore
from app.services.investment_service import InvestmentService, RecommendationPersister
from app.services.market_service import MarketService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Market Intelligence"])


def _type_filter(property_type: Optional[PropertyType]) -> Optional[str]:
    return property_type.value if property_type else None


def _server_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"[market] {action} failed: {e}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}. Please try again.",
    )


# ── Dashboard & analysis ───────────────────────────────────────────────────

@router.get("/dashboard-data", response_model=MarketDataResponse)
def get_dashboard_data(
    area: Optional[str] = Query(None, description="Area or city; omit for the whole market"),
    property_type: Optional[PropertyType] = Query(None),
    bedrooms: Optional[int] = Query(None, ge=0),
    service: MarketService = Depends(get_market_service),
):
    """
    Overall stats, per-type and per-area breakdowns. Sources that could not
    be reached are listed in `unavailable_sources`.
    """
    try:
        data = service.collect_market_dashboard_data(
            area=area, property_type=_type_filter(property_type), bedrooms=bedrooms
        )
        return MarketDataResponse(data=data)
    except (HTTPException, MarketIntelError):
        raise
    except Exception as e:
        raise _server_error("load market dashboard", e)


@router.get("/market-analysis", response_model=MarketDataResponse)
def get_market_analysis(
    area: Optional[str] = Query(None),
    property_type: Optional[PropertyType] = Query(None),
    time_period: Literal["month", "quarter", "year"] = Query("month"),
    include_nearby_areas: bool = Query(False),
    service: MarketService = Depends(get_market_service),
):
    try:
        data = service.generate_market_analysis(
            area=area,
            property_type=_type_filter(property_type),
            time_period=time_period,
            include_nearby_areas=include_nearby_areas,
        )
        return MarketDataResponse(data=data)
    except (HTTPException, MarketIntelError):
        raise
    except Exception as e:
        raise _server_error("generate market analysis", e)


@router.post("/calculate-yield", response_model=MarketDataResponse)
def calculate_yield(
    payload: RentalYieldRequest,
    service: MarketService = Depends(get_market_service),
):
    try:
        data = service.calculate_rental_yield(
            purchase_price=payload.purchase_price,
            monthly_rent=payload.monthly_rent,
            area=payload.area,
        )
        return MarketDataResponse(data=data)
    except (HTTPException, MarketIntelError):
        raise
    except Exception as e:
        raise _server_error("calculate rental yield", e)


@router.get("/competitor-analysis", response_model=MarketDataResponse)
def get_competitor_analysis(
    area: Optional[str] = Query(None),
    property_type: Optional[PropertyType] = Query(None),
    bedrooms: Optional[int] = Query(None, ge=0),
    service: MarketService = Depends(get_market_service),
):
    try:
        data = service.get_competitor_analysis(
            area=area, property_type=_type_filter(property_type), bedrooms=bedrooms
        )
        return MarketDataResponse(data=data)
    except (HTTPException, MarketIntelError):
        raise
    except Exception as e:
        raise _server_error("run competitor analysis", e)


# ── Contributions ──────────────────────────────────────────────────────────

@router.post(
    "/contribute-rental-data",
    response_model=ContributionResponse,
    status_code=status.HTTP_201_CREATED,
)
def contribute_rental_data(
    payload: RentalContributionCreate,
    current_user: CurrentUser = Depends(get_current_user),
    store: ContributionStore = Depends(get_contribution_store),
):
    """
    Record an observed rent. The area is derived from the postcode and its
    statistics are recomputed before this call returns.
    """
    if not payload.is_anonymous and not current_user.user_ref:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Sign in to submit a non-anonymous contribution",
        )
    try:
        record, stats = store.add_contribution(
            postcode=payload.postcode,
            property_type=payload.property_type,
            bedrooms=payload.bedrooms,
            monthly_rent=payload.monthly_rent,
            bills_included=payload.bills_included,
            included_bills=payload.included_bills,
            property_features=payload.property_features,
            is_anonymous=payload.is_anonymous,
            notes=payload.notes,
            submitter_ref=current_user.user_ref,
        )
        return ContributionResponse(
            message="Thank you for contributing rental data",
            contribution=ContributionOut.model_validate(record),
            area_statistics=AreaStatisticsOut.model_validate(stats),
        )
    except (HTTPException, MarketIntelError):
        raise
    except Exception as e:
        raise _server_error("store contribution", e)


@router.get("/contributed-data", response_model=List[ContributionOut])
def list_contributed_data(
    area: Optional[str] = Query(None),
    property_type: Optional[PropertyType] = Query(None),
    bedrooms: Optional[int] = Query(None, ge=0),
    postcode: Optional[str] = Query(None, description="Substring match, case-insensitive"),
    limit: int = Query(100, ge=1, le=1000),
    current_user: CurrentUser = Depends(require_role(ROLE_LANDLORD, ROLE_AGENT, ROLE_ADMIN)),
    store: ContributionStore = Depends(get_contribution_store),
):
    """Submitter references are only shown to admins."""
    records = store.list_contributions(
        area=area,
        property_type=property_type,
        bedrooms=bedrooms,
        postcode=postcode,
        limit=limit,
    )
    items = [ContributionOut.model_validate(r) for r in records]
    if not current_user.is_admin:
        items = [item.model_copy(update={"submitter_ref": None}) for item in items]
    return items


@router.get("/area-statistics", response_model=List[AreaStatisticsOut])
def list_area_statistics(store: ContributionStore = Depends(get_contribution_store)):
    return store.list_area_statistics()


@router.get("/area-statistics/{area}", response_model=AreaStatisticsOut)
def get_area_statistics(area: str, store: ContributionStore = Depends(get_contribution_store)):
    stats = store.get_area_statistics(area)
    if stats is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No contributed data for '{area}' yet.",
        )
    return stats


# ── Investment recommendations ─────────────────────────────────────────────

@router.get("/user-recommendations", response_model=InvestmentRecommendationsResponse)
def get_user_recommendations(
    min_yield: Optional[float] = Query(None, ge=0, allow_inf_nan=False),
    areas: Optional[List[str]] = Query(None),
    property_types: Optional[List[PropertyType]] = Query(None),
    bedrooms: Optional[int] = Query(None, ge=0),
    budget_min: Optional[float] = Query(None, ge=0, allow_inf_nan=False),
    budget_max: Optional[float] = Query(None, ge=0, allow_inf_nan=False),
    current_user: CurrentUser = Depends(require_user),
    service: InvestmentService = Depends(get_investment_service),
):
    """Generate yield-ranked opportunities and replace the caller's stored set."""
    try:
        result = service.generate_investment_recommendations(
            user_ref=current_user.user_ref,
            min_yield=min_yield,
            areas=areas,
            property_types=[t.value for t in property_types] if property_types else None,
            bedrooms=bedrooms,
            budget_min=budget_min,
            budget_max=budget_max,
        )
        return InvestmentRecommendationsResponse(**result)
    except (HTTPException, MarketIntelError):
        raise
    except Exception as e:
        raise _server_error("generate investment recommendations", e)


@router.get("/saved-recommendations", response_model=SavedRecommendationsResponse)
def get_saved_recommendations(
    current_user: CurrentUser = Depends(require_user),
    persister: RecommendationPersister = Depends(get_recommendation_persister),
):
    return SavedRecommendationsResponse(
        recommendations=[
            InvestmentRecommendationOut.model_validate(r)
            for r in persister.list_for_user(current_user.user_ref)
        ]
    )
