"""
Property Recommendation Routes

Endpoints:
  POST /api/recommendations/properties   → score catalog properties against preferences
  POST /api/recommendations/university   → properties near a university, closest first
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.core.config import settings
from app.dependencies import get_property_recommender
from app.schemas.recommendation import (
    PropertyRecommendationRequest,
    PropertyRecommendationResponse,
    UniversityRecommendationRequest,
    UniversityRecommendationResponse,
)
from app.services.recommendation_service import (
    PropertyRecommender,
    get_university_based_recommendations,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Recommendations"])


@router.post("/properties", response_model=PropertyRecommendationResponse)
def recommend_properties(
    payload: PropertyRecommendationRequest,
    recommender: PropertyRecommender = Depends(get_property_recommender),
):
    """
    Rank the supplied properties for the tenant's preferences. Only the first
    MATCH_BATCH_SIZE candidates are scored.
    """
    try:
        matches = recommender.generate_property_recommendations(
            payload.preferences,
            payload.properties,
            count=payload.count,
            include_reasons=payload.include_reasons,
        )
        return PropertyRecommendationResponse(
            recommendations=matches,
            evaluated=min(len(payload.properties), recommender.batch_size),
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[recommendations] property scoring failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate recommendations. Please try again.",
        )


@router.post("/university", response_model=UniversityRecommendationResponse)
def recommend_for_university(payload: UniversityRecommendationRequest):
    properties = get_university_based_recommendations(
        payload.university,
        payload.property_type,
        payload.properties,
        count=payload.count or settings.DEFAULT_RECOMMENDATION_COUNT,
    )
    return UniversityRecommendationResponse(properties=properties)
