import pytest

from app import dependencies
from app.core.errors import SourceUnavailableError
from app.core.locks import KeyedLocks
from app.main import app
from app.services.market_sources import FixtureSourceAdapter, SourceKind

BASE = "/api/market-intelligence"

CONTRIBUTION = {
    "postcode": "m14 5th",
    "property_type": "flat",
    "bedrooms": 2,
    "monthly_rent": 850,
}


def _headers(user="user-1", role=None):
    headers = {"X-User-Id": user}
    if role:
        headers["X-User-Role"] = role
    return headers


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["success"] is True


# ── Contributions ──────────────────────────────────────────────────────────

def test_contribute_rental_data(client):
    response = client.post(f"{BASE}/contribute-rental-data", json=CONTRIBUTION)

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["contribution"]["postcode"] == "M14 5TH"
    assert body["contribution"]["area"] == "Manchester"
    assert body["contribution"]["submitter_ref"] is None
    assert body["area_statistics"]["area"] == "Manchester"
    assert body["area_statistics"]["data_point_count"] == 1

    stats = client.get(f"{BASE}/area-statistics/manchester")
    assert stats.status_code == 200
    assert stats.json()["average_rent"] == 850


def test_named_contribution_needs_identity(client):
    payload = {**CONTRIBUTION, "is_anonymous": False}

    assert client.post(f"{BASE}/contribute-rental-data", json=payload).status_code == 401

    response = client.post(f"{BASE}/contribute-rental-data", json=payload, headers=_headers("tenant-9"))
    assert response.status_code == 201
    assert response.json()["contribution"]["submitter_ref"] == "tenant-9"


@pytest.mark.parametrize("override", [
    {"monthly_rent": 0},
    {"bedrooms": -1},
    {"postcode": "   "},
    {"property_type": "castle"},
])
def test_invalid_contribution_is_rejected(client, override):
    response = client.post(f"{BASE}/contribute-rental-data", json={**CONTRIBUTION, **override})

    assert response.status_code == 422
    assert response.json()["success"] is False
    assert client.get(f"{BASE}/area-statistics").json() == []


def test_non_finite_rent_is_rejected(client):
    body = '{"postcode": "M14 5TH", "property_type": "flat", "bedrooms": 2, "monthly_rent": Infinity}'
    response = client.post(
        f"{BASE}/contribute-rental-data",
        content=body,
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 422
    assert client.get(f"{BASE}/area-statistics").json() == []


def test_overlong_postcode_is_rejected(client):
    response = client.post(f"{BASE}/contribute-rental-data", json={**CONTRIBUTION, "postcode": "SW1A1AAXXX"})

    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"
    assert client.get(f"{BASE}/area-statistics").json() == []


def test_unknown_area_statistics_is_404(client):
    assert client.get(f"{BASE}/area-statistics/Atlantis").status_code == 404


def test_contributed_data_is_role_gated(client):
    client.post(
        f"{BASE}/contribute-rental-data",
        json={**CONTRIBUTION, "is_anonymous": False},
        headers=_headers("tenant-9"),
    )
    url = f"{BASE}/contributed-data"

    assert client.get(url).status_code == 401
    assert client.get(url, headers=_headers("tenant-9")).status_code == 403

    landlord = client.get(url, headers=_headers("landlord-1", "landlord"))
    assert landlord.status_code == 200
    assert [r["submitter_ref"] for r in landlord.json()] == [None]

    admin = client.get(url, headers=_headers("admin-1", "admin"))
    assert [r["submitter_ref"] for r in admin.json()] == ["tenant-9"]

    filtered = client.get(url, params={"postcode": "m14", "bedrooms": 3}, headers=_headers("a", "agent"))
    assert filtered.json() == []


# ── Market endpoints ───────────────────────────────────────────────────────

def test_dashboard_data(client):
    response = client.get(f"{BASE}/dashboard-data", params={"area": "Manchester"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["area_breakdown"][0]["name"] == "Manchester"
    assert data["unavailable_sources"] == []


def test_calculate_yield(client):
    response = client.post(f"{BASE}/calculate-yield", json={"purchase_price": 120000, "monthly_rent": 1000})

    assert response.status_code == 200
    assert response.json()["data"]["yield"] == pytest.approx(10.0)


def test_calculate_yield_rejects_zero_price(client):
    response = client.post(f"{BASE}/calculate-yield", json={"purchase_price": 0, "monthly_rent": 1000})
    assert response.status_code == 422


def test_calculate_yield_rejects_non_finite_price(client):
    response = client.post(
        f"{BASE}/calculate-yield",
        content='{"purchase_price": Infinity, "monthly_rent": 1000}',
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 422


def test_market_analysis(client):
    response = client.get(f"{BASE}/market-analysis", params={"area": "Leeds", "include_nearby_areas": True})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["area"] == "Leeds"
    assert [c["area"] for c in data["nearby_area_comparison"]] == ["Bradford", "York"]
    assert data["market_predictions"]["timeframe"] == "12 months"


def test_market_analysis_rejects_unknown_period(client):
    response = client.get(f"{BASE}/market-analysis", params={"time_period": "decade"})
    assert response.status_code == 422


def test_competitor_analysis(client):
    client.post(f"{BASE}/contribute-rental-data", json=CONTRIBUTION)
    client.post(f"{BASE}/contribute-rental-data", json={**CONTRIBUTION, "monthly_rent": 950})

    response = client.get(f"{BASE}/competitor-analysis", params={"area": "Manchester", "property_type": "flat"})

    data = response.json()["data"]
    assert data["overview"]["total_comparable_properties"] == 2
    assert data["overview"]["average_rent"] == 900


# ── Investment recommendations ─────────────────────────────────────────────

def test_user_recommendations_are_saved(client):
    client.post(f"{BASE}/contribute-rental-data", json=CONTRIBUTION)

    assert client.get(f"{BASE}/user-recommendations").status_code == 401

    response = client.get(f"{BASE}/user-recommendations", headers=_headers("investor-1"))
    assert response.status_code == 200
    body = response.json()
    assert [(r["area"], r["property_type"]) for r in body["recommendations"]] == [("Manchester", "flat")]
    assert body["saved_recommendation_count"] == 1

    saved = client.get(f"{BASE}/saved-recommendations", headers=_headers("investor-1")).json()
    assert [(r["area"], r["rank"]) for r in saved["recommendations"]] == [("Manchester", 1)]
    other = client.get(f"{BASE}/saved-recommendations", headers=_headers("investor-2")).json()
    assert other["recommendations"] == []


def test_user_locks_do_not_accumulate(client):
    locks = KeyedLocks()
    app.dependency_overrides[dependencies.get_user_locks] = lambda: locks

    for n in range(25):
        response = client.get(f"{BASE}/user-recommendations", headers=_headers(f"investor-{n}"))
        assert response.status_code == 200

    assert len(locks) == 0


def test_domain_errors_use_the_error_envelope(client):
    response = client.get(
        f"{BASE}/user-recommendations",
        params={"budget_min": 300000, "budget_max": 100000},
        headers=_headers("investor-1"),
    )

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "VALIDATION_ERROR"
    assert "budget_min" in body["detail"]


class PriceIndexOutage(FixtureSourceAdapter):
    def fetch_raw(self, kind, region, period):
        if kind == SourceKind.HOUSE_PRICE_INDEX:
            raise SourceUnavailableError(kind.value, region, "HTTP 503")
        return super().fetch_raw(kind, region, period)


def test_required_source_outage_is_503(client):
    outage = PriceIndexOutage()
    app.dependency_overrides[dependencies.get_source_adapter] = lambda: outage

    response = client.get(f"{BASE}/user-recommendations", headers=_headers("investor-1"))

    assert response.status_code == 503
    body = response.json()
    assert body["error_code"] == "SOURCE_UNAVAILABLE"
    assert body["details"]["source_kind"] == "house_price_index"

    dashboard = client.get(f"{BASE}/dashboard-data", params={"area": "Leeds"}).json()["data"]
    assert dashboard["unavailable_sources"] == ["house_price_index"]
    assert dashboard["area_breakdown"] == []


# ── Property recommendations ───────────────────────────────────────────────

CATALOG = [
    {"id": 1, "title": "Fallowfield flat", "city": "Manchester", "price": 650, "bills_included": True},
    {"id": 2, "title": "Headingley house", "city": "Leeds", "price": 550},
    {"id": 3, "title": "Rusholme studio", "city": "Manchester", "price": 900},
]


def test_recommend_properties(client):
    response = client.post("/api/recommendations/properties", json={
        "preferences": {"location": "Manchester", "budget": 700},
        "properties": CATALOG,
        "count": 2,
    })

    assert response.status_code == 200
    body = response.json()
    assert body["evaluated"] == 3
    assert [m["property_ref"] for m in body["recommendations"]] == ["1", "2"]
    assert body["recommendations"][0]["match_reasons"][0] == "Located in requested city: Manchester"


def test_recommend_for_university(client):
    response = client.post("/api/recommendations/university", json={
        "university": "Leeds",
        "properties": [
            {"id": "a", "university": "University of Leeds", "distance_to_university": 1.2},
            {"id": "b", "nearby_universities": "Leeds Beckett", "distance_to_university": 0.4},
            {"id": "c", "university": "University of York"},
        ],
    })

    assert response.status_code == 200
    assert [p["id"] for p in response.json()["properties"]] == ["b", "a"]


def test_recommend_properties_rejects_non_finite_budget(client):
    response = client.post(
        "/api/recommendations/properties",
        content='{"preferences": {"budget": NaN}, "properties": []}',
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 422
