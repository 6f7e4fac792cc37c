"""
Market Analysis Rules
Pure functions that turn dashboard rows into trend, yield, prediction and
competitor insights. No I/O here; MarketService feeds these with data from
the snapshot cache and the contributed statistics.

Area rows carry: name, average_sale_price, average_rent, rental_yield,
sale_trend, rent_trend. Contribution rows carry: property_type, bedrooms,
monthly_rent, bills_included.

The thresholds, deltas and weights below are tuned product constants; keep
them as they are unless product signs off a change.
"""
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence


class TrendBand(str, Enum):
    RISING_FAST = "rising_fast"
    RISING = "rising"
    STABLE = "stable"
    FALLING = "falling"
    FALLING_FAST = "falling_fast"


UNKNOWN_TREND = "unknown"

# Exclusive lower bounds for rising_fast / rising / stable / falling.
SALE_TREND_THRESHOLDS = (5.0, 1.0, -1.0, -5.0)
RENT_TREND_THRESHOLDS = (4.0, 1.0, -1.0, -4.0)

TREND_SCORES = {
    TrendBand.RISING_FAST.value: 2,
    TrendBand.RISING.value: 1,
    TrendBand.STABLE.value: 0,
    TrendBand.FALLING.value: -1,
    TrendBand.FALLING_FAST.value: -2,
}

# 12-month % deltas per band
PRICE_GROWTH_BY_TREND = {
    TrendBand.RISING_FAST.value: 7,
    TrendBand.RISING.value: 4,
    TrendBand.STABLE.value: 1,
    TrendBand.FALLING.value: -2,
    TrendBand.FALLING_FAST.value: -5,
}
RENT_GROWTH_BY_TREND = {
    TrendBand.RISING_FAST.value: 6,
    TrendBand.RISING.value: 3,
    TrendBand.STABLE.value: 1,
    TrendBand.FALLING.value: -1,
    TrendBand.FALLING_FAST.value: -3,
}

PREDICTION_TIMEFRAME = "12 months"
PREDICTION_DISCLAIMER = (
    "Predictions are based on current trends and should not be used as the "
    "sole basis for investment decisions"
)

UNDERVALUED_MIN_YIELD = 4.5
YIELD_FOCUS_MIN_YIELD = 5.0
BALANCED_MIN_YIELD = 4.0
TOP_AREA_LIMIT = 3

SIGNIFICANT_PRICE_GAP = 50_000
SIGNIFICANT_RENT_GAP = 200
NEARBY_DISTANCE_LABEL = "< 10 miles"

BILLS_INCLUDED_PREVALENCE = 0.6
PRICE_BAND_LOW = 0.9
PRICE_BAND_HIGH = 1.1

# Dashboard labels and recommendation-text labels per sale property type
PROPERTY_TYPE_LABELS = {
    "flat": "Flat/Apartment",
    "terraced": "Terraced",
    "semi-detached": "Semi-Detached",
    "detached": "Detached",
}
DESCRIPTION_LABELS = {
    "flat": "flats/apartments",
    "terraced": "terraced houses",
    "semi-detached": "semi-detached houses",
    "detached": "detached houses",
}

NEARBY_AREAS: Dict[str, List[str]] = {
    "london": ["Croydon", "Bromley", "Barnet", "Enfield", "Harrow"],
    "manchester": ["Salford", "Stockport", "Bolton", "Oldham", "Rochdale"],
    "birmingham": ["Solihull", "Wolverhampton", "Walsall", "Dudley", "Coventry"],
    "leeds": ["Bradford", "Wakefield", "York", "Harrogate", "Huddersfield"],
    "edinburgh": ["Glasgow", "Dundee", "Stirling", "Perth", "Falkirk"],
}


# ── Basic figures ─────────────────────────────────────────────────────────────

def _band(change: Optional[float], thresholds: Sequence[float]) -> str:
    if change is None:
        return UNKNOWN_TREND
    fast, rising, stable, falling = thresholds
    if change > fast:
        return TrendBand.RISING_FAST.value
    if change > rising:
        return TrendBand.RISING.value
    if change > stable:
        return TrendBand.STABLE.value
    if change > falling:
        return TrendBand.FALLING.value
    return TrendBand.FALLING_FAST.value


def classify_sale_trend(annual_change: Optional[float]) -> str:
    """Band a sale-price annual % change; 5.0 is 'rising', -5.0 is 'falling_fast'."""
    return _band(annual_change, SALE_TREND_THRESHOLDS)


def classify_rent_trend(annual_change: Optional[float]) -> str:
    """Band a rent annual % change; rents use the narrower 4% outer bound."""
    return _band(annual_change, RENT_TREND_THRESHOLDS)


def rental_yield(monthly_rent: Optional[float], price: Optional[float]) -> Optional[float]:
    """Gross yield in percent, or None when an operand is missing or the price is not positive."""
    if monthly_rent is None or price is None or price <= 0:
        return None
    return monthly_rent * 12 * 100 / price


def mean(values: Iterable[float]) -> Optional[float]:
    values = list(values)
    if not values:
        return None
    return sum(values) / len(values)


def median(values: Iterable[float]) -> Optional[float]:
    ordered = sorted(values)
    if not ordered:
        return None
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def _is_rising(trend: Optional[str]) -> bool:
    return trend in (TrendBand.RISING.value, TrendBand.RISING_FAST.value)


def _with_yield(areas: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [a for a in areas if a.get("rental_yield") is not None]


# ── Area-level insights ───────────────────────────────────────────────────────

def trending_areas(rows: List[Dict[str, Any]], classify, limit: int = TOP_AREA_LIMIT) -> List[Dict[str, Any]]:
    """Rising areas ordered by annual change, highest first."""
    known = [r for r in rows if r.get("annual_change") is not None]
    ordered = sorted(known, key=lambda r: r["annual_change"], reverse=True)
    result = []
    for row in ordered:
        trend = classify(row["annual_change"])
        if not _is_rising(trend):
            continue
        result.append({"name": row["area"], "annual_change": row["annual_change"], "trend": trend})
        if len(result) == limit:
            break
    return result


def overall_trend(areas: List[Dict[str, Any]]) -> str:
    scores = []
    for area in areas:
        for key in ("sale_trend", "rent_trend"):
            trend = area.get(key)
            if trend in TREND_SCORES:
                scores.append(TREND_SCORES[trend])
    avg = sum(scores) / len(scores) if scores else 0
    if avg > 1.5:
        return "Strongly Rising"
    if avg > 0.5:
        return "Rising"
    if avg > -0.5:
        return "Stable"
    if avg > -1.5:
        return "Falling"
    return "Strongly Falling"


def top_performing_areas(areas: List[Dict[str, Any]], limit: int = TOP_AREA_LIMIT) -> List[Dict[str, Any]]:
    def score(area):
        sale = 2 if area["sale_trend"] == TrendBand.RISING_FAST.value else 1
        rent = area.get("rent_trend")
        rent_weight = 2 if rent == TrendBand.RISING_FAST.value else 1 if rent == TrendBand.RISING.value else 0
        return sale + rent_weight

    rising = [a for a in areas if _is_rising(a.get("sale_trend"))]
    ranked = sorted(rising, key=score, reverse=True)[:limit]
    return [
        {
            "name": a["name"],
            "average_price": a.get("average_sale_price"),
            "annual_growth": "High" if a["sale_trend"] == TrendBand.RISING_FAST.value else "Moderate",
            "rental_trend": a.get("rent_trend"),
        }
        for a in ranked
    ]


def undervalued_areas(areas: List[Dict[str, Any]], limit: int = TOP_AREA_LIMIT) -> List[Dict[str, Any]]:
    candidates = [a for a in _with_yield(areas) if a["rental_yield"] > UNDERVALUED_MIN_YIELD]
    ranked = sorted(candidates, key=lambda a: a["rental_yield"], reverse=True)[:limit]
    return [
        {
            "name": a["name"],
            "average_price": a.get("average_sale_price"),
            "rental_yield": a["rental_yield"],
            "potential_upside": "High" if _is_rising(a.get("sale_trend")) else "Moderate",
        }
        for a in ranked
    ]


def demand_level(data_points: int, average_rent: Optional[float]) -> str:
    """More contributed observations read as more demand."""
    if not average_rent:
        return "Unknown"
    if data_points > 20:
        return "Very High"
    if data_points > 10:
        return "High"
    if data_points > 5:
        return "Moderate"
    return "Low"


def property_type_analysis(
    property_types: List[Dict[str, Any]], property_type: Optional[str] = None
) -> List[Dict[str, Any]]:
    rows = [pt for pt in property_types if not property_type or pt["type"] == property_type]
    return [
        {
            "type": pt["type"],
            "average_price": pt.get("average_sale_price"),
            "average_rent": pt.get("average_rent"),
            "rental_yield": rental_yield(pt.get("average_rent"), pt.get("average_sale_price")),
            "demand_level": demand_level(pt.get("data_points", 0), pt.get("average_rent")),
        }
        for pt in rows
    ]


def rental_yield_insights(areas: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Average, best and worst yields across areas; None when no area has a yield."""
    with_yield = _with_yield(areas)
    if not with_yield:
        return None
    average = mean(a["rental_yield"] for a in with_yield)
    highest = max(with_yield, key=lambda a: a["rental_yield"])
    lowest = min(with_yield, key=lambda a: a["rental_yield"])
    spread = (
        f"There is a {highest['rental_yield'] - lowest['rental_yield']:.2f}% difference "
        f"between highest and lowest yield areas"
        if len(with_yield) > 3
        else "Limited yield data available"
    )
    return {
        "average_yield": average,
        "yield_range": {
            "highest": {"area": highest["name"], "yield": highest["rental_yield"]},
            "lowest": {"area": lowest["name"], "yield": lowest["rental_yield"]},
        },
        "insights": [
            f"The average rental yield across analyzed areas is {average:.2f}%",
            f"{highest['name']} offers the highest yield at {highest['rental_yield']:.2f}%",
            spread,
        ],
    }


def market_predictions(areas: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Project price and rent 12 months ahead from the current trend bands.
    Areas with an unknown band are projected as stable.
    """
    predictions = []
    for area in areas:
        sale_trend = area.get("sale_trend")
        rent_trend = area.get("rent_trend")
        price_change = PRICE_GROWTH_BY_TREND.get(sale_trend, PRICE_GROWTH_BY_TREND[TrendBand.STABLE.value])
        rent_change = RENT_GROWTH_BY_TREND.get(rent_trend, RENT_GROWTH_BY_TREND[TrendBand.STABLE.value])

        price = area.get("average_sale_price")
        rent = area.get("average_rent")
        predicted_price = price * (1 + price_change / 100) if price is not None else None
        predicted_rent = rent * (1 + rent_change / 100) if rent is not None else None
        predictions.append({
            "area": area["name"],
            "current_price": price,
            "predicted_price": predicted_price,
            "price_change": price_change,
            "current_rent": rent,
            "predicted_rent": predicted_rent,
            "rent_change": rent_change,
            "current_yield": area.get("rental_yield"),
            "predicted_yield": rental_yield(predicted_rent, predicted_price),
        })

    predictions.sort(key=lambda p: p["price_change"], reverse=True)
    return {
        "timeframe": PREDICTION_TIMEFRAME,
        "predictions": predictions,
        "disclaimer": PREDICTION_DISCLAIMER,
    }


def investment_opportunities(areas: List[Dict[str, Any]], limit: int = TOP_AREA_LIMIT) -> Dict[str, Any]:
    with_yield = _with_yield(areas)

    yield_focus = sorted(
        [a for a in with_yield if a["rental_yield"] > YIELD_FOCUS_MIN_YIELD],
        key=lambda a: a["rental_yield"],
        reverse=True,
    )[:limit]

    capital_growth = sorted(
        [a for a in areas if _is_rising(a.get("sale_trend"))],
        key=lambda a: 2 if a["sale_trend"] == TrendBand.RISING_FAST.value else 1,
        reverse=True,
    )[:limit]

    balanced = sorted(
        [
            a for a in with_yield
            if a["rental_yield"] > BALANCED_MIN_YIELD
            and a.get("sale_trend") in (TrendBand.RISING.value, TrendBand.STABLE.value)
        ],
        key=lambda a: a["rental_yield"] + (1 if a["sale_trend"] == TrendBand.RISING.value else 0),
        reverse=True,
    )[:limit]

    return {
        "strategies": [
            {
                "name": "Yield Focus",
                "description": "Areas with high rental yields for income-focused investors",
                "opportunities": [
                    {
                        "area": a["name"],
                        "yield": a["rental_yield"],
                        "average_price": a.get("average_sale_price"),
                        "monthly_rent": a.get("average_rent"),
                    }
                    for a in yield_focus
                ],
            },
            {
                "name": "Capital Growth Focus",
                "description": "Areas with strong price growth potential",
                "opportunities": [
                    {
                        "area": a["name"],
                        "price_growth_potential": (
                            "High" if a["sale_trend"] == TrendBand.RISING_FAST.value else "Moderate"
                        ),
                        "average_price": a.get("average_sale_price"),
                        "monthly_rent": a.get("average_rent"),
                    }
                    for a in capital_growth
                ],
            },
            {
                "name": "Balanced Approach",
                "description": "Areas offering both decent yields and some growth potential",
                "opportunities": [
                    {
                        "area": a["name"],
                        "yield": a["rental_yield"],
                        "growth_potential": (
                            "Moderate" if a["sale_trend"] == TrendBand.RISING.value else "Stable"
                        ),
                        "average_price": a.get("average_sale_price"),
                        "monthly_rent": a.get("average_rent"),
                    }
                    for a in balanced
                ],
            },
        ]
    }


# ── Nearby comparison ─────────────────────────────────────────────────────────

def nearby_areas(area: Optional[str]) -> List[str]:
    if not area:
        return []
    return list(NEARBY_AREAS.get(area.strip().lower(), []))


def _direction(diff: float) -> str:
    return "higher" if diff > 0 else "lower"


def comparison_summary(main_area: str, nearby_area: str, price_diff: float, rent_diff: float, yield_diff: float) -> str:
    price_q = "significantly" if abs(price_diff) > SIGNIFICANT_PRICE_GAP else "slightly"
    rent_q = "significantly" if abs(rent_diff) > SIGNIFICANT_RENT_GAP else "slightly"
    price_dir, rent_dir, yield_dir = _direction(price_diff), _direction(rent_diff), _direction(yield_diff)
    return (
        f"{nearby_area} has {price_q} {price_dir} property prices "
        f"({abs(round(price_diff / 1000))}k {price_dir}) and {rent_q} {rent_dir} rents "
        f"(£{abs(round(rent_diff))} {rent_dir} per month) compared to {main_area}. "
        f"Rental yields are {abs(yield_diff):.1f}% {yield_dir}."
    )


def compare_area(main_area: str, main: Dict[str, Any], nearby: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Price, rent and yield deltas of `nearby` against `main`; None if a figure is missing."""
    figures = ("average_sale_price", "average_rent", "rental_yield")
    if any(main.get(f) is None or nearby.get(f) is None for f in figures):
        return None
    price_diff = nearby["average_sale_price"] - main["average_sale_price"]
    rent_diff = nearby["average_rent"] - main["average_rent"]
    yield_diff = nearby["rental_yield"] - main["rental_yield"]
    return {
        "area": nearby["name"],
        "distance_from_main": NEARBY_DISTANCE_LABEL,
        "price_comparison": {
            "value": price_diff,
            "percentage": price_diff / main["average_sale_price"] * 100,
            "direction": _direction(price_diff),
        },
        "rent_comparison": {
            "value": rent_diff,
            "percentage": rent_diff / main["average_rent"] * 100 if main["average_rent"] else None,
            "direction": _direction(rent_diff),
        },
        "yield_comparison": {"value": yield_diff, "direction": _direction(yield_diff)},
        "summary": comparison_summary(main_area, nearby["name"], price_diff, rent_diff, yield_diff),
    }


# ── Competitor analysis ───────────────────────────────────────────────────────

def price_distribution(rents: List[float]) -> Dict[str, int]:
    avg = mean(rents)
    if avg is None:
        return {"low": 0, "medium": 0, "high": 0}
    low_bound, high_bound = avg * PRICE_BAND_LOW, avg * PRICE_BAND_HIGH
    return {
        "low": sum(1 for r in rents if r < low_bound),
        "medium": sum(1 for r in rents if low_bound <= r <= high_bound),
        "high": sum(1 for r in rents if r > high_bound),
    }


def competitive_advantage(records: List[Dict[str, Any]]) -> Dict[str, Any]:
    with_bills = [r["monthly_rent"] for r in records if r.get("bills_included")]
    without_bills = [r["monthly_rent"] for r in records if not r.get("bills_included")]
    prevalence = len(with_bills) / (len(records) or 1)
    avg_with, avg_without = mean(with_bills), mean(without_bills)
    return {
        "bills_included": {
            "prevalence": f"{round(prevalence * 100)}%",
            "price_difference": (
                avg_with - avg_without if avg_with is not None and avg_without is not None else None
            ),
            "recommendation": (
                "Consider offering bills included to remain competitive"
                if prevalence > BILLS_INCLUDED_PREVALENCE
                else "Bills included is not common in this area"
            ),
        }
    }


def _segment_label(property_type: str, bedrooms: int) -> str:
    return f"{property_type} with {bedrooms} bedroom{'' if bedrooms == 1 else 's'}"


def market_gaps(records: List[Dict[str, Any]], limit: int = TOP_AREA_LIMIT) -> Dict[str, Any]:
    """Segments (type, bedrooms) with the fewest records; ties keep first-seen order."""
    segments: Dict[tuple, List[float]] = {}
    for r in records:
        segments.setdefault((r["property_type"], r["bedrooms"]), []).append(r["monthly_rent"])

    counted = [
        {"segment": _segment_label(ptype, beds), "count": len(rents), "average_rent": mean(rents)}
        for (ptype, beds), rents in segments.items()
    ]
    counted.sort(key=lambda s: s["count"])
    if counted:
        gap = counted[0]
        opportunity = (
            f"The {gap['segment']} segment appears underserved with only "
            f"{gap['count']} properties in the dataset"
        )
    else:
        opportunity = "Insufficient data to identify market gaps"
    return {
        "market_gap": counted[0]["segment"] if counted else None,
        "underserved_segments": counted[:limit],
        "opportunities": opportunity,
    }


def competitor_summary(records: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Overview, price points, bills advantage and gaps for comparable contributions."""
    rents = [r["monthly_rent"] for r in records]
    avg = mean(rents)
    low = min(rents) if rents else None
    high = max(rents) if rents else None
    return {
        "overview": {
            "total_comparable_properties": len(records),
            "average_rent": avg,
            "min_rent": low,
            "max_rent": high,
            "median_rent": median(rents),
            "rent_range": high - low if rents else None,
            "price_distribution": price_distribution(rents),
        },
        "price_points": {"budget": low, "standard": avg, "premium": high},
        "competitive_advantage": competitive_advantage(records),
        "gaps": market_gaps(records),
    }


def recommendation_description(
    area: str, property_type: str, yield_pct: float, average_price: float, monthly_rent: float
) -> str:
    label = DESCRIPTION_LABELS.get(property_type, property_type)
    return (
        f"{area} offers good investment potential for {label} with an average rental "
        f"yield of {yield_pct:.1f}%. The average property price is £{round(average_price):,} "
        f"with monthly rental income around £{round(monthly_rent):,}."
    )
