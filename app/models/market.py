"""
Market Intelligence Models
Contributed rental observations, the per-area statistics derived from them,
and the investment recommendations stored per user.
"""
import uuid
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, Float, Integer, JSON, String, Text, Uuid,
    Index,
)

from app.db.base import Base, utcnow


# ── Enums ──────────────────────────────────────────────────────────────────────

class PropertyType(str, PyEnum):
    FLAT = "flat"
    TERRACED = "terraced"
    SEMI_DETACHED = "semi-detached"
    DETACHED = "detached"
    OTHER = "other"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ── Models ─────────────────────────────────────────────────────────────────────

class ContributedRentalRecord(Base):
    """
    One user-submitted rent observation.
    Rows are never updated: a correction is a new record.
    submitter_ref is NULL for anonymous contributions.
    """
    __tablename__ = "contributed_rental_data"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    submitter_ref = Column(String(64), nullable=True, index=True)

    postcode = Column(String(10), nullable=False, index=True)   # normalized, e.g. "M14 5TH"
    area = Column(String(100), nullable=False, index=True)      # derived from postcode prefix
    property_type = Column(
        Enum(PropertyType, name="propertytype", values_callable=_enum_values),
        nullable=False,
        index=True,
    )
    bedrooms = Column(Integer, nullable=False)
    monthly_rent = Column(Float, nullable=False)

    bills_included = Column(Boolean, nullable=False, default=False)
    included_bills = Column(JSON, nullable=True, default=list)      # ["water", "internet", ...]
    property_features = Column(JSON, nullable=True, default=list)   # ["garden", "parking", ...]
    is_anonymous = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_contributed_area_type", "area", "property_type"),
    )


class AreaStatistics(Base):
    """
    Rolling rent statistics per derived area.
    Fully derived from contributed_rental_data and rebuilt by the
    AreaStatisticsAggregator; never edited by hand.
    data_point_count always equals the number of records in average_rent.
    """
    __tablename__ = "area_statistics"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    area = Column(String(100), nullable=False, unique=True, index=True)

    average_rent = Column(Float, nullable=False)

    # [{"type": "flat", "average_rent": 850.0, "count": 3}, ...]
    property_type_averages = Column(JSON, nullable=False, default=list)

    data_point_count = Column(Integer, nullable=False, default=0)
    last_recalculated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class InvestmentRecommendation(Base):
    """
    A stored investment recommendation.
    The whole set for a user is replaced in a single transaction.
    """
    __tablename__ = "investment_recommendations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_ref = Column(String(64), nullable=False, index=True)

    area = Column(String(100), nullable=False)
    property_type = Column(String(20), nullable=False)
    average_price = Column(Float, nullable=False)
    monthly_rent = Column(Float, nullable=False)
    rental_yield = Column(Float, nullable=False)   # percent
    rank = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
