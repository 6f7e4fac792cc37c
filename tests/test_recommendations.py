from datetime import timedelta

import pytest

from app.schemas.recommendation import CandidateProperty, PropertyPreference
from app.services.cache import TTLCache
from app.services.recommendation_service import (
    PropertyRecommender,
    get_university_based_recommendations,
    parse_features,
    score_property,
)


def _prop(id, **fields):
    return CandidateProperty(id=id, **fields)


@pytest.fixture
def recommender(clock):
    cache = TTLCache(timedelta(seconds=300), clock=clock, max_entries=100, name="matches")
    return PropertyRecommender(cache, batch_size=50, default_count=4)


# ── Scoring ──────────────────────────────────────────────────────────────────

def test_reasons_follow_rule_order():
    prefs = PropertyPreference(
        location="Manchester", university="Manchester", budget=600,
        min_bedrooms=2, must_have_features=["wifi"],
    )
    prop = _prop(
        1, city="Manchester", university="University of Manchester", distance_to_university=0.8,
        price=500, bedrooms=3, features="wifi, garden", bills_included=True,
    )

    match = score_property(prefs, prop)

    assert match.property_ref == "1"
    assert match.score == 100
    assert match.match_reasons == [
        "Located in requested city: Manchester",
        "Near requested university: University of Manchester",
        "Very close to university (0.8 miles)",
        "Within budget at £500 per month",
        "Great value: significantly below max budget",
        "Has 3 bedrooms (minimum requested: 2)",
        "Has requested feature: wifi",
        "Bills included in rent",
    ]
    assert match.matched_criteria == ["location", "university", "budget", "bedroom count"]
    assert match.matched_features == ["wifi", "bills included"]


def test_score_never_drops_below_zero():
    prefs = PropertyPreference(
        budget=400, min_bedrooms=4,
        must_have_features=["parking", "garden", "gym", "pool", "sauna", "lift", "balcony", "cinema", "desk", "bike store"],
    )
    match = score_property(prefs, _prop("p", price=900, bedrooms=1))

    assert match.score == 0
    assert match.match_reasons[0] == "Over budget at £900 per month"
    assert match.match_reasons[1] == "Only has 1 bedrooms (minimum requested: 4)"
    assert match.matched_criteria == []


def test_neutral_preferences_score_the_base():
    assert score_property(PropertyPreference(), _prop("p", price=700)).score == 50


@pytest.mark.parametrize("price, score, reason", [
    (540, 45, "Slightly over budget (8% above max)"),
    (550, 45, "Slightly over budget (10% above max)"),
    (600, 35, "Over budget at £600 per month"),
    (420, 80, "Within budget at £420 per month"),
])
def test_budget_bands(price, score, reason):
    match = score_property(PropertyPreference(budget=500), _prop("p", price=price))
    assert match.score == score
    assert match.match_reasons[0] == reason


def test_nearby_university_and_furnished():
    prefs = PropertyPreference(university="Leeds Beckett", property_type="Flat")
    prop = _prop(
        "p", university="University of Leeds", nearby_universities="Leeds Beckett University, Leeds Trinity",
        distance_to_university=3, property_type="flat", furnished=True,
    )
    match = score_property(prefs, prop)

    assert match.score == 50 + 15 + 15 + 10
    assert match.matched_criteria == ["nearby university", "property type"]
    assert match.match_reasons == [
        "Near a related university",
        "Requested property type: flat",
        "Property is furnished",
    ]


def test_missing_feature_is_penalized_without_feature_list():
    match = score_property(PropertyPreference(must_have_features=["wifi"]), _prop("p"))
    assert match.score == 45
    assert match.match_reasons == ["Missing requested feature: wifi"]


@pytest.mark.parametrize("raw, parsed", [
    (None, []),
    ("", []),
    (["wifi", "garden"], ["wifi", "garden"]),
    ('["wifi", "desk"]', ["wifi", "desk"]),
    ("wifi, garden ,", ["wifi", "garden"]),
])
def test_parse_features(raw, parsed):
    assert parse_features(raw) == parsed


def test_candidate_coerces_catalog_shapes():
    prop = CandidateProperty(id=42, nearby_universities='["UCL", "KCL"]', features="wifi")
    assert prop.id == "42"
    assert prop.nearby_universities == ["UCL", "KCL"]
    assert CandidateProperty(id="x", nearby_universities=None).nearby_universities == []


# ── Recommender ──────────────────────────────────────────────────────────────

def test_ranked_best_first_with_default_count(recommender):
    prefs = PropertyPreference(location="Leeds", budget=800)
    candidates = [_prop(str(i), city="York", price=900) for i in range(8)]
    candidates[5] = _prop("5", city="Leeds", price=600)

    matches = recommender.generate_property_recommendations(prefs, candidates)

    assert len(matches) == 4
    assert matches[0].property_ref == "5"
    # equal scores keep catalog order
    assert [m.property_ref for m in matches[1:]] == ["0", "1", "2"]


def test_only_first_batch_is_scored(recommender):
    prefs = PropertyPreference(location="Leeds")
    candidates = [_prop(str(i), city="York") for i in range(59)]
    candidates.append(_prop("late", city="Leeds"))

    matches = recommender.generate_property_recommendations(prefs, candidates, count=50)

    assert len(matches) == 50
    assert "late" not in [m.property_ref for m in matches]


def test_reasons_can_be_left_out(recommender):
    prefs = PropertyPreference(location="Leeds")
    [match] = recommender.generate_property_recommendations(
        prefs, [_prop("a", city="Leeds", bills_included=True)], count=1, include_reasons=False
    )
    assert match.score == 85
    assert match.match_reasons == []
    assert match.matched_features == []
    assert match.matched_criteria == []


def test_identical_requests_hit_the_cache(recommender, clock):
    prefs = PropertyPreference(location="Leeds")
    candidates = [_prop("a", city="Leeds"), _prop("b", city="York")]

    first = recommender.generate_property_recommendations(prefs, candidates)
    assert recommender.generate_property_recommendations(prefs, candidates) is first
    assert recommender.generate_property_recommendations(prefs, candidates, include_reasons=False) is not first

    clock.advance(seconds=301)
    assert recommender.generate_property_recommendations(prefs, candidates) is not first


def test_no_candidates(recommender):
    assert recommender.generate_property_recommendations(PropertyPreference(), []) == []


# ── University search ────────────────────────────────────────────────────────

@pytest.fixture
def campus_properties():
    return [
        _prop("far-flat", university="University of Leeds", property_type="flat", distance_to_university=2.0),
        _prop("close-house", nearby_universities=["University of Leeds"], property_type="house",
              distance_to_university=0.5),
        _prop("unknown-flat", university="University of Leeds", property_type="flat"),
        _prop("york", university="University of York", property_type="flat", distance_to_university=0.2),
    ]


def test_university_search_keeps_type_when_enough(campus_properties):
    result = get_university_based_recommendations("leeds", "flat", campus_properties, count=2)
    assert [p.id for p in result] == ["far-flat", "unknown-flat"]


def test_university_search_broadens_when_short(campus_properties):
    result = get_university_based_recommendations("Leeds", "flat", campus_properties, count=3)
    assert [p.id for p in result] == ["close-house", "far-flat", "unknown-flat"]


def test_university_search_without_matches(campus_properties):
    assert get_university_based_recommendations("Oxford", None, campus_properties) == []
