"""
FastAPI dependencies: caller identity, shared caches and service factories.

Authentication happens upstream; the gateway forwards the caller as
X-User-Id / X-User-Role headers. Shared state (caches, source adapter)
is built once per process through lru_cache'd factories; the per-key locks
are the process-wide registries in app.core.locks. Tests can swap any of
them with app.dependency_overrides.
"""
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.locks import KeyedLocks, area_locks, user_locks
from app.database import get_db
from app.services.cache import TTLCache
from app.services.contribution_service import ContributionStore
from app.services.investment_service import InvestmentService, RecommendationPersister
from app.services.market_service import MarketService
from app.services.market_sources import MarketDataCache, SourceAdapter, build_source_adapter
from app.services.recommendation_service import PropertyRecommender


# ── Identity ───────────────────────────────────────────────────────────────

ROLE_ADMIN = "admin"
ROLE_LANDLORD = "landlord"
ROLE_AGENT = "agent"
ROLE_TENANT = "tenant"


@dataclass(frozen=True)
class CurrentUser:
    user_ref: Optional[str]
    role: str = ROLE_TENANT

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> CurrentUser:
    role = (x_user_role or ROLE_TENANT).strip().lower()
    user_ref = x_user_id.strip() if x_user_id and x_user_id.strip() else None
    return CurrentUser(user_ref=user_ref, role=role)


def require_user(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.user_ref:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identity",
        )
    return current_user


def require_role(*roles: str):
    def role_checker(user: CurrentUser = Depends(require_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user
    return role_checker


# ── Shared process state ───────────────────────────────────────────────────

@lru_cache()
def get_source_adapter() -> SourceAdapter:
    return build_source_adapter(settings)


@lru_cache()
def get_snapshot_cache() -> TTLCache:
    return TTLCache(timedelta(hours=settings.SNAPSHOT_CACHE_TTL_HOURS), name="snapshots")


@lru_cache()
def get_analysis_cache() -> TTLCache:
    return TTLCache(timedelta(hours=settings.ANALYSIS_CACHE_TTL_HOURS), name="analysis")


@lru_cache()
def get_match_cache() -> TTLCache:
    return TTLCache(
        timedelta(seconds=settings.MATCH_CACHE_TTL_SECONDS),
        max_entries=settings.MATCH_CACHE_MAX_ENTRIES,
        name="matches",
    )


def get_area_locks() -> KeyedLocks:
    return area_locks


def get_user_locks() -> KeyedLocks:
    return user_locks


def get_market_data_cache(
    adapter: SourceAdapter = Depends(get_source_adapter),
    cache: TTLCache = Depends(get_snapshot_cache),
) -> MarketDataCache:
    return MarketDataCache(adapter, cache)


# ── Services ───────────────────────────────────────────────────────────────

def get_contribution_store(
    db: Session = Depends(get_db),
    locks: KeyedLocks = Depends(get_area_locks),
) -> ContributionStore:
    return ContributionStore(db, locks=locks)


def get_market_service(
    db: Session = Depends(get_db),
    snapshots: MarketDataCache = Depends(get_market_data_cache),
    analysis_cache: TTLCache = Depends(get_analysis_cache),
    store: ContributionStore = Depends(get_contribution_store),
) -> MarketService:
    return MarketService(db, snapshots, analysis_cache, contributions=store)


def get_recommendation_persister(
    db: Session = Depends(get_db),
    locks: KeyedLocks = Depends(get_user_locks),
) -> RecommendationPersister:
    return RecommendationPersister(db, locks=locks)


def get_investment_service(
    db: Session = Depends(get_db),
    market: MarketService = Depends(get_market_service),
    persister: RecommendationPersister = Depends(get_recommendation_persister),
) -> InvestmentService:
    return InvestmentService(db, market, persister=persister)


def get_property_recommender(cache: TTLCache = Depends(get_match_cache)) -> PropertyRecommender:
    return PropertyRecommender(cache)
