"""
Property Recommendation Service
Scores catalog properties against a tenant's preferences.

Scoring starts at BASE_SCORE and folds the rules in SCORING_RULES in order.
Each rule is a pure function returning the adjustments it triggers, so the
reasons list always follows rule order. The total is clamped to 0-100.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from app.core.config import settings
from app.schemas.recommendation import CandidateProperty, PropertyMatch, PropertyPreference
from app.services.cache import TTLCache

logger = logging.getLogger(__name__)


# ── Weights (tuned product constants) ────────────────────────────────────────

BASE_SCORE = 50
MIN_SCORE = 0
MAX_SCORE = 100

LOCATION_MATCH = 25
UNIVERSITY_EXACT = 20
UNIVERSITY_NEARBY = 15
UNIVERSITY_CLOSE_BONUS = 10
UNIVERSITY_CLOSE_MILES = 1.5
BUDGET_WITHIN = 20
BUDGET_GREAT_VALUE = 10
BUDGET_GREAT_VALUE_RATIO = 0.85
BUDGET_SLIGHTLY_OVER = -5
BUDGET_SLIGHTLY_OVER_RATIO = 0.10
BUDGET_OVER = -15
PROPERTY_TYPE_MATCH = 15
BEDROOMS_MET = 15
BEDROOMS_SHORT = -10
FEATURE_PRESENT = 10
FEATURE_MISSING = -5
BILLS_INCLUDED = 10
FURNISHED = 10


@dataclass(frozen=True)
class ScoreAdjustment:
    delta: int
    reason: str
    criterion: Optional[str] = None
    feature: Optional[str] = None


ScoringRule = Callable[[PropertyPreference, CandidateProperty], List[ScoreAdjustment]]


def parse_features(value: Any) -> List[str]:
    """Features arrive as a list, a JSON-encoded list or a comma-separated string."""
    if not value:
        return []
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return [f.strip() for f in value.split(",") if f.strip()]
        if isinstance(parsed, list):
            return [str(f) for f in parsed]
        return [str(parsed)]
    return [str(f) for f in value]


def _fmt_money(value: float) -> str:
    return f"{value:g}"


# ── Rules ────────────────────────────────────────────────────────────────────

def location_rule(prefs: PropertyPreference, prop: CandidateProperty) -> List[ScoreAdjustment]:
    if prefs.location and prop.city and prefs.location.lower() in prop.city.lower():
        return [ScoreAdjustment(LOCATION_MATCH, f"Located in requested city: {prop.city}", "location")]
    return []


def university_rule(prefs: PropertyPreference, prop: CandidateProperty) -> List[ScoreAdjustment]:
    if not (prefs.university and prop.university):
        return []
    wanted = prefs.university.lower()
    adjustments = []
    if wanted in prop.university.lower():
        adjustments.append(ScoreAdjustment(
            UNIVERSITY_EXACT, f"Near requested university: {prop.university}", "university"
        ))
    elif any(wanted in uni.lower() for uni in prop.nearby_universities):
        adjustments.append(ScoreAdjustment(
            UNIVERSITY_NEARBY, "Near a related university", "nearby university"
        ))
    distance = prop.distance_to_university
    if distance is not None and distance < UNIVERSITY_CLOSE_MILES:
        adjustments.append(ScoreAdjustment(
            UNIVERSITY_CLOSE_BONUS, f"Very close to university ({distance:g} miles)"
        ))
    return adjustments


def budget_rule(prefs: PropertyPreference, prop: CandidateProperty) -> List[ScoreAdjustment]:
    if not prefs.budget or prop.price is None:
        return []
    budget, price = prefs.budget, prop.price
    if price <= budget:
        adjustments = [ScoreAdjustment(
            BUDGET_WITHIN, f"Within budget at £{_fmt_money(price)} per month", "budget"
        )]
        if price <= budget * BUDGET_GREAT_VALUE_RATIO:
            adjustments.append(ScoreAdjustment(
                BUDGET_GREAT_VALUE, "Great value: significantly below max budget"
            ))
        return adjustments
    over = (price - budget) / budget
    if over <= BUDGET_SLIGHTLY_OVER_RATIO:
        return [ScoreAdjustment(
            BUDGET_SLIGHTLY_OVER, f"Slightly over budget ({round(over * 100)}% above max)"
        )]
    return [ScoreAdjustment(BUDGET_OVER, f"Over budget at £{_fmt_money(price)} per month")]


def property_type_rule(prefs: PropertyPreference, prop: CandidateProperty) -> List[ScoreAdjustment]:
    if (
        prefs.property_type and prop.property_type
        and prefs.property_type.lower() == prop.property_type.lower()
    ):
        return [ScoreAdjustment(
            PROPERTY_TYPE_MATCH, f"Requested property type: {prop.property_type}", "property type"
        )]
    return []


def bedrooms_rule(prefs: PropertyPreference, prop: CandidateProperty) -> List[ScoreAdjustment]:
    if prefs.min_bedrooms is None or prop.bedrooms is None:
        return []
    if prop.bedrooms >= prefs.min_bedrooms:
        return [ScoreAdjustment(
            BEDROOMS_MET,
            f"Has {prop.bedrooms} bedrooms (minimum requested: {prefs.min_bedrooms})",
            "bedroom count",
        )]
    return [ScoreAdjustment(
        BEDROOMS_SHORT,
        f"Only has {prop.bedrooms} bedrooms (minimum requested: {prefs.min_bedrooms})",
    )]


def features_rule(prefs: PropertyPreference, prop: CandidateProperty) -> List[ScoreAdjustment]:
    available = [f.lower() for f in parse_features(prop.features)]
    adjustments = []
    for feature in prefs.must_have_features:
        wanted = feature.lower()
        if any(wanted in f for f in available):
            adjustments.append(ScoreAdjustment(
                FEATURE_PRESENT, f"Has requested feature: {feature}", feature=feature
            ))
        else:
            adjustments.append(ScoreAdjustment(FEATURE_MISSING, f"Missing requested feature: {feature}"))
    return adjustments


def bills_rule(prefs: PropertyPreference, prop: CandidateProperty) -> List[ScoreAdjustment]:
    if prop.bills_included:
        return [ScoreAdjustment(BILLS_INCLUDED, "Bills included in rent", feature="bills included")]
    return []


def furnished_rule(prefs: PropertyPreference, prop: CandidateProperty) -> List[ScoreAdjustment]:
    if prop.furnished:
        return [ScoreAdjustment(FURNISHED, "Property is furnished", feature="furnished")]
    return []


SCORING_RULES: Sequence[ScoringRule] = (
    location_rule,
    university_rule,
    budget_rule,
    property_type_rule,
    bedrooms_rule,
    features_rule,
    bills_rule,
    furnished_rule,
)


def score_property(
    prefs: PropertyPreference,
    prop: CandidateProperty,
    rules: Sequence[ScoringRule] = SCORING_RULES,
) -> PropertyMatch:
    score = BASE_SCORE
    reasons: List[str] = []
    criteria: List[str] = []
    features: List[str] = []
    for rule in rules:
        for adj in rule(prefs, prop):
            score += adj.delta
            reasons.append(adj.reason)
            if adj.criterion and adj.criterion not in criteria:
                criteria.append(adj.criterion)
            if adj.feature and adj.feature not in features:
                features.append(adj.feature)
    return PropertyMatch(
        property_ref=prop.id,
        title=prop.title,
        score=max(MIN_SCORE, min(MAX_SCORE, score)),
        matched_features=features,
        matched_criteria=criteria,
        match_reasons=reasons,
    )


# ── Recommender ──────────────────────────────────────────────────────────────

class PropertyRecommender:
    """Ranks candidate batches; identical requests are served from a short-lived cache."""

    def __init__(
        self,
        cache: TTLCache,
        batch_size: int = settings.MATCH_BATCH_SIZE,
        default_count: int = settings.DEFAULT_RECOMMENDATION_COUNT,
        rules: Sequence[ScoringRule] = SCORING_RULES,
    ):
        self.cache = cache
        self.batch_size = batch_size
        self.default_count = default_count
        self.rules = rules

    def generate_property_recommendations(
        self,
        preferences: PropertyPreference,
        candidates: Sequence[CandidateProperty],
        count: Optional[int] = None,
        include_reasons: bool = True,
    ) -> List[PropertyMatch]:
        count = count or self.default_count
        cache_key = (
            preferences.model_dump_json(),
            tuple(c.id for c in candidates),
            count,
            include_reasons,
        )
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug("[Recommendations] Serving ranked list from cache")
            return cached

        if not candidates:
            return []

        batch = list(candidates)[: self.batch_size]
        if len(candidates) > self.batch_size:
            logger.info(
                f"[Recommendations] Scoring first {self.batch_size} of {len(candidates)} candidates"
            )
        scored = [score_property(preferences, c, self.rules) for c in batch]
        scored.sort(key=lambda m: m.score, reverse=True)
        top = scored[:count]

        if not include_reasons:
            top = [
                m.model_copy(update={"match_reasons": [], "matched_features": [], "matched_criteria": []})
                for m in top
            ]

        self.cache.set(cache_key, top)
        logger.info(f"[Recommendations] Generated {len(top)} recommendations")
        return top


def _near_university(prop: CandidateProperty, wanted: str) -> bool:
    if prop.university and wanted in prop.university.lower():
        return True
    return any(wanted in uni.lower() for uni in prop.nearby_universities)


def get_university_based_recommendations(
    university: str,
    property_type: Optional[str],
    properties: Sequence[CandidateProperty],
    count: int = settings.DEFAULT_RECOMMENDATION_COUNT,
) -> List[CandidateProperty]:
    """
    Properties near `university`, closest first. When fewer than `count`
    also match the property type, the type filter is dropped.
    """
    wanted = university.lower()
    near = [p for p in properties if _near_university(p, wanted)]
    filtered = near
    if property_type:
        filtered = [
            p for p in near
            if p.property_type and p.property_type.lower() == property_type.lower()
        ]
        if len(filtered) < count:
            filtered = near
    ordered = sorted(
        filtered,
        key=lambda p: (p.distance_to_university is None, p.distance_to_university or 0),
    )
    return ordered[:count]
