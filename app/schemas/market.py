"""
Pydantic schemas for the Market Intelligence feature.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.models.market import PropertyType


# ── Contributions ─────────────────────────────────────────────────────────────

class RentalContributionCreate(BaseModel):
    """A tenant or landlord reporting what a property actually lets for."""
    postcode: str = Field(..., min_length=2, max_length=10)
    property_type: PropertyType
    bedrooms: int = Field(..., ge=0, le=20)
    monthly_rent: float = Field(..., gt=0, allow_inf_nan=False)
    bills_included: bool = False
    included_bills: List[str] = []      # ["water", "internet", ...]
    property_features: List[str] = []
    is_anonymous: bool = True
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("postcode")
    @classmethod
    def postcode_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("postcode is required")
        return v.strip()


class ContributionOut(BaseModel):
    id: uuid.UUID
    submitter_ref: Optional[str] = None   # hidden from non-admins
    postcode: str
    area: str
    property_type: PropertyType
    bedrooms: int
    monthly_rent: float
    bills_included: bool
    included_bills: List[str] = []
    property_features: List[str] = []
    is_anonymous: bool
    notes: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class PropertyTypeAverage(BaseModel):
    type: str
    average_rent: float
    count: int


class AreaStatisticsOut(BaseModel):
    area: str
    average_rent: float
    property_type_averages: List[PropertyTypeAverage] = []
    data_point_count: int
    last_recalculated_at: datetime

    model_config = {"from_attributes": True}


class ContributionResponse(BaseModel):
    success: bool = True
    message: str
    contribution: ContributionOut
    area_statistics: AreaStatisticsOut


# ── Yield calculator ──────────────────────────────────────────────────────────

class RentalYieldRequest(BaseModel):
    purchase_price: float = Field(..., gt=0, allow_inf_nan=False)
    monthly_rent: float = Field(..., gt=0, allow_inf_nan=False)
    area: Optional[str] = None


# ── Investment recommendations ────────────────────────────────────────────────

class InvestmentRecommendationOut(BaseModel):
    id: uuid.UUID
    area: str
    property_type: str
    average_price: float
    monthly_rent: float
    rental_yield: float
    rank: int
    description: str
    created_at: datetime

    model_config = {"from_attributes": True}


class InvestmentOpportunity(BaseModel):
    area: str
    property_type: str
    average_price: float
    monthly_rent: float
    rental_yield: float
    data_points: int = 0
    description: str


class InvestmentRecommendationsResponse(BaseModel):
    success: bool = True
    recommendations: List[InvestmentOpportunity]
    saved_recommendation_count: int


class SavedRecommendationsResponse(BaseModel):
    success: bool = True
    recommendations: List[InvestmentRecommendationOut]


# ── Generic envelope for dashboard / analysis payloads ────────────────────────

class MarketDataResponse(BaseModel):
    success: bool = True
    data: Dict[str, Any]
