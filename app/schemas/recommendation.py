"""
Pydantic schemas for property recommendations.
Candidate properties come from the property catalog; this service only
scores them.
"""
from __future__ import annotations

import json
from datetime import date
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class PropertyPreference(BaseModel):
    budget: Optional[float] = Field(None, gt=0, allow_inf_nan=False)     # monthly, GBP
    location: Optional[str] = None
    property_type: Optional[str] = None
    min_bedrooms: Optional[int] = Field(None, ge=0)
    must_have_features: List[str] = []
    university: Optional[str] = None
    move_in_date: Optional[date] = None
    max_distance: Optional[float] = Field(None, ge=0, allow_inf_nan=False)  # miles


class CandidateProperty(BaseModel):
    id: str
    title: Optional[str] = None
    city: Optional[str] = None
    price: Optional[float] = None
    property_type: Optional[str] = None
    bedrooms: Optional[int] = None
    # list, JSON-encoded list, or "wifi, garden" style string
    features: Union[List[str], str, None] = None
    university: Optional[str] = None
    nearby_universities: List[str] = []
    distance_to_university: Optional[float] = None   # miles
    bills_included: bool = False
    furnished: bool = False
    available: bool = True

    @field_validator("id", mode="before")
    @classmethod
    def id_as_string(cls, v: Any) -> str:
        return str(v)

    @field_validator("nearby_universities", mode="before")
    @classmethod
    def parse_universities(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
            except ValueError:
                return [u.strip() for u in v.split(",") if u.strip()]
            return parsed if isinstance(parsed, list) else [str(parsed)]
        return v


class PropertyMatch(BaseModel):
    property_ref: str
    title: Optional[str] = None
    score: int = Field(..., ge=0, le=100)
    matched_features: List[str] = []
    matched_criteria: List[str] = []
    match_reasons: List[str] = []     # in rule order


class PropertyRecommendationRequest(BaseModel):
    preferences: PropertyPreference
    properties: List[CandidateProperty]
    count: Optional[int] = Field(None, ge=1, le=50)
    include_reasons: bool = True


class UniversityRecommendationRequest(BaseModel):
    university: str = Field(..., min_length=2)
    property_type: Optional[str] = None
    properties: List[CandidateProperty]
    count: Optional[int] = Field(None, ge=1, le=50)


class PropertyRecommendationResponse(BaseModel):
    success: bool = True
    recommendations: List[PropertyMatch]
    evaluated: int


class UniversityRecommendationResponse(BaseModel):
    success: bool = True
    properties: List[CandidateProperty]
