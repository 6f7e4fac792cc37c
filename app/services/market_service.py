"""
Market Intelligence Service
Fuses house-price index and rental statistics snapshots with contributed
rental statistics into the dashboard, the cached market analysis, the yield
calculator and competitor analysis.

Rent resolution per area:
  1. contributed statistics for derived areas whose name contains the
     market area name ("London" picks up "North London", "SE London" ...)
  2. otherwise the official median rent from rental statistics
Per-type rents come from contributions only; official figures are area-wide.

Source failures are tolerated: the affected sub-results are None and the
source is listed in `unavailable_sources`, unless the caller marks that
source as required.
"""
import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.errors import DataValidationError, SourceUnavailableError
from app.services import market_analysis as analysis
from app.services.cache import TTLCache
from app.services.contribution_service import ContributionStore
from app.services.market_sources import MarketDataCache, MarketSnapshot, SourceKind

logger = logging.getLogger(__name__)

NATIONAL_REGION = "england"

TOP_YIELD_MIN = 4.0


def _type_value(value: Any) -> str:
    return getattr(value, "value", value)


def _find_area(rows: List[Dict[str, Any]], name: Optional[str]) -> Optional[Dict[str, Any]]:
    if not name:
        return None
    wanted = name.strip().lower()
    return next((r for r in rows if r["name"].lower() == wanted), None)


class MarketService:
    """Dashboard fusion and analysis over cached snapshots and contributions."""

    def __init__(
        self,
        db: Session,
        snapshots: MarketDataCache,
        analysis_cache: TTLCache,
        contributions: Optional[ContributionStore] = None,
    ):
        self.db = db
        self.snapshots = snapshots
        self.analysis_cache = analysis_cache
        self.contributions = contributions or ContributionStore(db)

    # ─────────────────────────────────────────────────────────────────────
    # Source access
    # ─────────────────────────────────────────────────────────────────────

    def _snapshot(
        self,
        kind: SourceKind,
        region: str,
        required: Iterable[SourceKind],
        unavailable: List[str],
    ) -> Optional[MarketSnapshot]:
        try:
            return self.snapshots.get(kind, region)
        except SourceUnavailableError as e:
            if kind in required:
                raise
            logger.warning(f"[MarketService] {e.message}; continuing without it")
            if kind.value not in unavailable:
                unavailable.append(kind.value)
            return None

    def _contributed_rent(
        self,
        area_name: Optional[str],
        property_type: Optional[str] = None,
        bedrooms: Optional[int] = None,
    ) -> Tuple[Optional[float], int]:
        """Mean contributed rent for areas containing `area_name`, with its data point count."""
        if bedrooms is None:
            if area_name:
                rows = self.contributions.area_statistics_containing(area_name)
            else:
                rows = self.contributions.list_area_statistics()
            total, count = 0.0, 0
            for stats in rows:
                if property_type:
                    for entry in stats.property_type_averages or []:
                        if entry["type"] == property_type:
                            total += entry["average_rent"] * entry["count"]
                            count += entry["count"]
                else:
                    total += stats.average_rent * stats.data_point_count
                    count += stats.data_point_count
            return (total / count if count else None), count

        records = self.contributions.list_contributions(property_type=property_type, bedrooms=bedrooms)
        rents = [
            r.monthly_rent for r in records
            if not area_name or area_name.lower() in r.area.lower()
        ]
        return analysis.mean(rents), len(rents)

    # ─────────────────────────────────────────────────────────────────────
    # Dashboard
    # ─────────────────────────────────────────────────────────────────────

    def collect_market_dashboard_data(
        self,
        area: Optional[str] = None,
        property_type: Optional[str] = None,
        bedrooms: Optional[int] = None,
        required_sources: Iterable[SourceKind] = (),
    ) -> Dict[str, Any]:
        """
        Return {overall_stats, property_type_breakdown, area_breakdown,
        recent_sales, unavailable_sources}. recent_sales is only filled in
        when a specific area is requested.
        """
        required = set(required_sources)
        scoped = bool(area) and area.strip().lower() != "all"
        region = area.strip() if scoped else NATIONAL_REGION
        unavailable: List[str] = []

        hpi = self._snapshot(SourceKind.HOUSE_PRICE_INDEX, region, required, unavailable)
        rents = self._snapshot(SourceKind.RENTAL_STATISTICS, region, required, unavailable)

        hpi_rows = hpi.areas() if hpi else []
        rent_rows = rents.areas() if rents else []

        area_breakdown = [
            self._area_row(row, rents, property_type, bedrooms) for row in hpi_rows
        ]

        property_type_breakdown = []
        for ptype, label in analysis.PROPERTY_TYPE_LABELS.items():
            prices = [r["type_prices"][ptype] for r in hpi_rows if r["type_prices"].get(ptype)]
            rent, points = self._contributed_rent(region if scoped else None, ptype, bedrooms)
            sale_price = analysis.mean(prices)
            property_type_breakdown.append({
                "type": ptype,
                "label": label,
                "average_sale_price": sale_price,
                "average_rent": rent,
                "rental_yield": analysis.rental_yield(rent, sale_price),
                "data_points": points,
            })

        avg_price = analysis.mean(r["average_price"] for r in hpi_rows)
        avg_rent = analysis.mean(r["median_rent"] for r in rent_rows)
        contribution_count = len(
            [
                r for r in self.contributions.list_contributions(property_type=property_type, bedrooms=bedrooms)
                if not scoped or region.lower() in r.area.lower()
            ]
        )
        top_yield = sorted(
            [a for a in area_breakdown if (a["rental_yield"] or 0) > TOP_YIELD_MIN],
            key=lambda a: a["rental_yield"],
            reverse=True,
        )[: analysis.TOP_AREA_LIMIT]

        overall_stats = {
            "average_sale_price": avg_price,
            "average_rent": avg_rent,
            "rental_yield": analysis.rental_yield(avg_rent, avg_price),
            "user_contribution_count": contribution_count,
            "trending_sale_areas": analysis.trending_areas(hpi_rows, analysis.classify_sale_trend),
            "trending_rental_areas": analysis.trending_areas(rent_rows, analysis.classify_rent_trend),
            "top_yield_areas": [
                {"name": a["name"], "rental_yield": a["rental_yield"]} for a in top_yield
            ],
        }

        recent_sales = None
        if scoped:
            sales = self._snapshot(SourceKind.PRICE_PAID, region, required, unavailable)
            if sales is not None:
                recent_sales = self._summarize_sales(sales.transactions())

        logger.info(
            f"[MarketService] Dashboard for '{region}': {len(area_breakdown)} areas, "
            f"unavailable={unavailable or 'none'}"
        )
        return {
            "overall_stats": overall_stats,
            "property_type_breakdown": property_type_breakdown,
            "area_breakdown": area_breakdown,
            "recent_sales": recent_sales,
            "unavailable_sources": unavailable,
        }

    def _area_row(
        self,
        hpi_row: Dict[str, Any],
        rents: Optional[MarketSnapshot],
        property_type: Optional[str],
        bedrooms: Optional[int],
    ) -> Dict[str, Any]:
        name = hpi_row["area"]
        official = rents.area_row(name) if rents else None
        contributed, points = self._contributed_rent(name, property_type, bedrooms)

        if contributed is not None:
            average_rent, rent_source = contributed, "contributed"
        elif official is not None and not property_type:
            average_rent, rent_source = official["median_rent"], "official"
        else:
            average_rent, rent_source = None, None

        sale_price = hpi_row["average_price"]
        if property_type and hpi_row["type_prices"].get(property_type):
            sale_price = hpi_row["type_prices"][property_type]

        type_rows = []
        for ptype in analysis.PROPERTY_TYPE_LABELS:
            type_price = hpi_row["type_prices"].get(ptype)
            type_rent, type_points = self._contributed_rent(name, ptype, bedrooms)
            type_rows.append({
                "type": ptype,
                "average_sale_price": type_price,
                "average_rent": type_rent,
                "rental_yield": analysis.rental_yield(type_rent, type_price),
                "data_points": type_points,
            })

        return {
            "name": name,
            "average_sale_price": sale_price,
            "average_rent": average_rent,
            "rent_source": rent_source,
            "rental_yield": analysis.rental_yield(average_rent, sale_price),
            "sale_trend": analysis.classify_sale_trend(hpi_row.get("annual_change")),
            "rent_trend": analysis.classify_rent_trend(official.get("annual_change") if official else None),
            "annual_price_change": hpi_row.get("annual_change"),
            "annual_rent_change": official.get("annual_change") if official else None,
            "contributed_data_points": points,
            "property_types": type_rows,
        }

    @staticmethod
    def _summarize_sales(transactions: List[Dict[str, Any]]) -> Dict[str, Any]:
        prices = [t["price"] for t in transactions if t.get("price")]
        by_type: Dict[str, int] = {}
        for t in transactions:
            by_type[t["property_type"]] = by_type.get(t["property_type"], 0) + 1
        dates = [t["date"] for t in transactions if t.get("date")]
        return {
            "transaction_count": len(transactions),
            "average_price": analysis.mean(prices),
            "median_price": analysis.median(prices),
            "by_property_type": by_type,
            "latest_date": max(dates) if dates else None,
        }

    # ─────────────────────────────────────────────────────────────────────
    # Analysis
    # ─────────────────────────────────────────────────────────────────────

    def generate_market_analysis(
        self,
        area: Optional[str] = None,
        property_type: Optional[str] = None,
        time_period: str = "month",
        include_nearby_areas: bool = False,
    ) -> Dict[str, Any]:
        """
        Full analysis for an area (or the whole market). Complete results are
        cached per (area, type, period, nearby flag); partial results are not.
        `time_period` labels the analysis and partitions the cache. Snapshots
        always come from the latest source period.
        """
        cache_key = (
            (area or "all").strip().lower(),
            property_type or "all",
            time_period,
            "nearby" if include_nearby_areas else "exact",
        )
        cached = self.analysis_cache.get(cache_key)
        if cached is not None:
            logger.debug(f"[MarketService] Analysis cache hit {cache_key}")
            return cached

        dashboard = self.collect_market_dashboard_data(area=area, property_type=property_type)
        areas = dashboard["area_breakdown"]
        unavailable = list(dashboard["unavailable_sources"])

        insights: Dict[str, Any] = {
            "area": area or "UK",
            "date": self.analysis_cache.clock().date().isoformat(),
            "time_period": time_period,
            "overall_trend": analysis.overall_trend(areas),
            "top_performing_areas": analysis.top_performing_areas(areas),
            "undervalued_areas": analysis.undervalued_areas(areas),
            "property_type_analysis": analysis.property_type_analysis(
                dashboard["property_type_breakdown"], property_type
            ),
            "rental_yield_insights": analysis.rental_yield_insights(areas),
            "market_predictions": analysis.market_predictions(areas),
            "investment_opportunities": analysis.investment_opportunities(areas),
            "nearby_area_comparison": None,
            "unavailable_sources": unavailable,
        }

        if include_nearby_areas and area and area.strip().lower() != "all":
            insights["nearby_area_comparison"] = self._compare_nearby(area, areas, unavailable)

        if not unavailable:
            self.analysis_cache.set(cache_key, insights)
        return insights

    def _compare_nearby(
        self, area: str, areas: List[Dict[str, Any]], unavailable: List[str]
    ) -> List[Dict[str, Any]]:
        main = _find_area(areas, area)
        if main is None:
            return []
        comparisons = []
        for neighbour in analysis.nearby_areas(area):
            data = self.collect_market_dashboard_data(area=neighbour)
            for source in data["unavailable_sources"]:
                if source not in unavailable:
                    unavailable.append(source)
            row = _find_area(data["area_breakdown"], neighbour)
            if row is None:
                continue
            comparison = analysis.compare_area(area, main, row)
            if comparison is not None:
                comparisons.append(comparison)
        return comparisons

    # ─────────────────────────────────────────────────────────────────────
    # Yield calculator
    # ─────────────────────────────────────────────────────────────────────

    def calculate_rental_yield(
        self,
        purchase_price: float,
        monthly_rent: float,
        area: Optional[str] = None,
    ) -> Dict[str, Any]:
        if purchase_price is None or not math.isfinite(purchase_price) or not purchase_price > 0:
            raise DataValidationError(
                "purchase_price must be a finite amount greater than zero", details={"field": "purchase_price"}
            )
        if monthly_rent is None or not math.isfinite(monthly_rent) or not monthly_rent > 0:
            raise DataValidationError(
                "monthly_rent must be a finite amount greater than zero", details={"field": "monthly_rent"}
            )

        result: Dict[str, Any] = {
            "purchase_price": purchase_price,
            "monthly_rent": monthly_rent,
            "annual_rent": monthly_rent * 12,
            "yield": analysis.rental_yield(monthly_rent, purchase_price),
            "market_comparison": None,
            "unavailable_sources": [],
        }

        if area:
            dashboard = self.collect_market_dashboard_data(area=area)
            result["unavailable_sources"] = dashboard["unavailable_sources"]
            row = _find_area(dashboard["area_breakdown"], area)
            if row is not None:
                area_yield = row["rental_yield"]
                result["market_comparison"] = {
                    "area_name": row["name"],
                    "area_average_rent": row["average_rent"],
                    "area_average_sale_price": row["average_sale_price"],
                    "area_average_yield": area_yield,
                    "comparison_to_average": (
                        result["yield"] - area_yield if area_yield is not None else None
                    ),
                }
        return result

    # ─────────────────────────────────────────────────────────────────────
    # Competitor analysis
    # ─────────────────────────────────────────────────────────────────────

    def get_competitor_analysis(
        self,
        area: Optional[str] = None,
        property_type: Optional[str] = None,
        bedrooms: Optional[int] = None,
    ) -> Dict[str, Any]:
        records = self.contributions.list_contributions(property_type=property_type, bedrooms=bedrooms)
        comparable = [
            {
                "property_type": _type_value(r.property_type),
                "bedrooms": r.bedrooms,
                "monthly_rent": r.monthly_rent,
                "bills_included": r.bills_included,
            }
            for r in records
            if not area or area.strip().lower() in r.area.lower()
        ]
        summary = analysis.competitor_summary(comparable)

        unavailable: List[str] = []
        trend_area = area or "London"
        rents = self._snapshot(SourceKind.RENTAL_STATISTICS, trend_area, (), unavailable)
        official = rents.area_row(trend_area) if rents else None
        summary["overview"]["market_trend"] = analysis.classify_rent_trend(
            official.get("annual_change") if official else None
        )

        logger.info(
            f"[MarketService] Competitor analysis area={area} type={property_type} "
            f"bedrooms={bedrooms}: {len(comparable)} comparables"
        )
        return {
            "area": area,
            "property_type": property_type,
            "bedrooms": bedrooms,
            **summary,
            "unavailable_sources": unavailable,
        }
