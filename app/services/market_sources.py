"""
Market Data Sources
Adapters that fetch house-price, rental and price-paid figures and
normalize them into one canonical snapshot shape, plus the 24-hour snapshot
cache that sits in front of them.

Canonical payloads:
  house_price_index  {"areas": [{"area", "average_price", "type_prices",
                                 "annual_change", "monthly_change"}]}
  rental_statistics  {"areas": [{"area", "median_rent", "lower_quartile_rent",
                                 "upper_quartile_rent", "bedroom_rents",
                                 "annual_change"}]}
  price_paid         {"transactions": [{"transaction_id", "property_type",
                                        "price", "date", "postcode"}]}
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.core.errors import SourceUnavailableError
from app.services.cache import TTLCache

logger = logging.getLogger(__name__)


class SourceKind(str, Enum):
    HOUSE_PRICE_INDEX = "house_price_index"
    RENTAL_STATISTICS = "rental_statistics"
    PRICE_PAID = "price_paid"


NATIONAL_REGIONS = {"england", "uk", "all", "united kingdom"}

SALE_PROPERTY_TYPES = ("flat", "terraced", "semi-detached", "detached")


@dataclass(frozen=True)
class MarketSnapshot:
    """Normalized, timestamped copy of one source's figures for a region."""

    source_kind: SourceKind
    region: str
    period: str
    fetched_at: datetime
    payload: Dict[str, Any]

    def areas(self) -> List[Dict[str, Any]]:
        return list(self.payload.get("areas", []))

    def area_row(self, name: str) -> Optional[Dict[str, Any]]:
        wanted = name.strip().lower()
        for row in self.payload.get("areas", []):
            if row["area"].lower() == wanted:
                return row
        return None

    def transactions(self) -> List[Dict[str, Any]]:
        return list(self.payload.get("transactions", []))


def matches_region(area: str, region: Optional[str]) -> bool:
    """An area belongs to a region when either name contains the other."""
    if not region or region.strip().lower() in NATIONAL_REGIONS:
        return True
    a, r = area.lower(), region.strip().lower()
    return a in r or r in a


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
        return _to_float(value)
    if isinstance(value, dict):
        return _to_float(value.get("_value"))
    return float(value)


def _label(value: Any) -> Optional[str]:
    """Pull a display label out of linked-data shapes (str, dict, list)."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return _label(value[0]) if value else None
    if isinstance(value, dict):
        for key in ("_value", "label", "prefLabel", "_about"):
            if key in value:
                return _label(value[key])
    return str(value)


# ── Adapters ──────────────────────────────────────────────────────────────────

class SourceAdapter:
    """Fetches a raw payload for one source kind and normalizes it."""

    name = "base"

    def fetch_raw(self, kind: SourceKind, region: str, period: str) -> Any:
        raise NotImplementedError

    def normalize(self, kind: SourceKind, region: str, raw: Any) -> Dict[str, Any]:
        raise NotImplementedError

    def fetch(self, kind: SourceKind, region: str, period: str) -> Dict[str, Any]:
        raw = self.fetch_raw(kind, region, period)
        try:
            return self.normalize(kind, region, raw)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.error(f"[{self.name}] could not normalize {kind.value} for '{region}': {exc}")
            raise SourceUnavailableError(kind.value, region, f"unparseable payload: {exc}") from exc


# Reference figures for the fixture adapter (GBP). Fixed values so every run
# sees the same market.
_FIXTURE_HOUSE_PRICES: List[Dict[str, Any]] = [
    {"area": "London", "average_price": 525_000, "flat": 420_000, "terraced": 610_000,
     "semi-detached": 720_000, "detached": 1_150_000, "annual_change": 1.8, "monthly_change": 0.3},
    {"area": "Manchester", "average_price": 245_000, "flat": 190_000, "terraced": 215_000,
     "semi-detached": 280_000, "detached": 420_000, "annual_change": 6.2, "monthly_change": 0.6},
    {"area": "Birmingham", "average_price": 235_000, "flat": 160_000, "terraced": 200_000,
     "semi-detached": 255_000, "detached": 405_000, "annual_change": 3.4, "monthly_change": 0.4},
    {"area": "Leeds", "average_price": 230_000, "flat": 165_000, "terraced": 195_000,
     "semi-detached": 245_000, "detached": 390_000, "annual_change": 4.1, "monthly_change": 0.3},
    {"area": "Edinburgh", "average_price": 310_000, "flat": 235_000, "terraced": 300_000,
     "semi-detached": 340_000, "detached": 520_000, "annual_change": -0.6, "monthly_change": -0.1},
    {"area": "Salford", "average_price": 215_000, "flat": 175_000, "terraced": 190_000,
     "semi-detached": 240_000, "detached": 360_000, "annual_change": 7.1, "monthly_change": 0.7},
    {"area": "Stockport", "average_price": 285_000, "flat": 170_000, "terraced": 225_000,
     "semi-detached": 300_000, "detached": 470_000, "annual_change": 3.0, "monthly_change": 0.2},
    {"area": "Bolton", "average_price": 180_000, "flat": 110_000, "terraced": 140_000,
     "semi-detached": 195_000, "detached": 310_000, "annual_change": 2.2, "monthly_change": 0.2},
    {"area": "Croydon", "average_price": 440_000, "flat": 300_000, "terraced": 470_000,
     "semi-detached": 560_000, "detached": 820_000, "annual_change": -1.4, "monthly_change": -0.2},
    {"area": "Bradford", "average_price": 170_000, "flat": 105_000, "terraced": 130_000,
     "semi-detached": 175_000, "detached": 290_000, "annual_change": 5.4, "monthly_change": 0.5},
    {"area": "York", "average_price": 340_000, "flat": 230_000, "terraced": 310_000,
     "semi-detached": 350_000, "detached": 530_000, "annual_change": 0.4, "monthly_change": 0.0},
    {"area": "Coventry", "average_price": 250_000, "flat": 150_000, "terraced": 215_000,
     "semi-detached": 265_000, "detached": 420_000, "annual_change": -5.6, "monthly_change": -0.6},
    {"area": "Glasgow", "average_price": 190_000, "flat": 140_000, "terraced": 185_000,
     "semi-detached": 230_000, "detached": 340_000, "annual_change": 2.9, "monthly_change": 0.2},
]

_FIXTURE_RENTS: List[Dict[str, Any]] = [
    {"area": "London", "median_rent": 2_100, "annual_change": 6.1},
    {"area": "Manchester", "median_rent": 1_250, "annual_change": 7.5},
    {"area": "Birmingham", "median_rent": 1_050, "annual_change": 5.0},
    {"area": "Leeds", "median_rent": 1_000, "annual_change": 3.2},
    {"area": "Edinburgh", "median_rent": 1_350, "annual_change": 2.0},
    {"area": "Salford", "median_rent": 1_150, "annual_change": 6.0},
    {"area": "Stockport", "median_rent": 1_100, "annual_change": 3.8},
    {"area": "Bolton", "median_rent": 800, "annual_change": 2.4},
    {"area": "Croydon", "median_rent": 1_600, "annual_change": 0.5},
    {"area": "Bradford", "median_rent": 725, "annual_change": 3.0},
    {"area": "York", "median_rent": 1_150, "annual_change": 1.2},
    {"area": "Coventry", "median_rent": 950, "annual_change": -0.8},
    {"area": "Glasgow", "median_rent": 1_100, "annual_change": 4.5},
]

_FIXTURE_OUTWARD_CODES = {
    "London": "SE1", "Manchester": "M14", "Birmingham": "B29", "Leeds": "LS6",
    "Edinburgh": "EH8", "Salford": "M6", "Stockport": "SK4", "Bolton": "BL1",
    "Croydon": "CR0", "Bradford": "BD7", "York": "YO10", "Coventry": "CV1",
    "Glasgow": "G12",
}


class FixtureSourceAdapter(SourceAdapter):
    """
    Deterministic stand-in for the public sources, used in development and
    tests. Pass custom rows to model a specific market.
    """

    name = "fixture"

    def __init__(
        self,
        house_prices: Optional[List[Dict[str, Any]]] = None,
        rents: Optional[List[Dict[str, Any]]] = None,
        reference_date: str = "2024-06-30",
    ):
        self.house_prices = house_prices if house_prices is not None else _FIXTURE_HOUSE_PRICES
        self.rents = rents if rents is not None else _FIXTURE_RENTS
        self.reference_date = reference_date
        self.fetch_count = 0

    def fetch_raw(self, kind: SourceKind, region: str, period: str) -> Any:
        self.fetch_count += 1
        if kind == SourceKind.HOUSE_PRICE_INDEX:
            return [r for r in self.house_prices if matches_region(r["area"], region)]
        if kind == SourceKind.RENTAL_STATISTICS:
            return [r for r in self.rents if matches_region(r["area"], region)]
        return self._transactions(region)

    def _transactions(self, region: str) -> List[Dict[str, Any]]:
        rows = []
        for area_row in self.house_prices:
            if not matches_region(area_row["area"], region):
                continue
            outward = _FIXTURE_OUTWARD_CODES.get(area_row["area"], area_row["area"][:2].upper())
            for type_index, ptype in enumerate(SALE_PROPERTY_TYPES):
                base = area_row.get(ptype)
                if not base:
                    continue
                for n, factor in enumerate((0.92, 1.0, 1.08)):
                    rows.append({
                        "transaction_id": f"FX-{area_row['area'][:3].upper()}-{type_index}{n}",
                        "property_type": ptype,
                        "price": round(base * factor),
                        "date": self.reference_date,
                        "postcode": f"{outward} {n + 1}AB",
                    })
        return rows

    def normalize(self, kind: SourceKind, region: str, raw: Any) -> Dict[str, Any]:
        if kind == SourceKind.HOUSE_PRICE_INDEX:
            return {"areas": [
                {
                    "area": r["area"],
                    "average_price": _to_float(r.get("average_price")),
                    "type_prices": {t: _to_float(r.get(t)) for t in SALE_PROPERTY_TYPES if r.get(t)},
                    "annual_change": _to_float(r.get("annual_change")),
                    "monthly_change": _to_float(r.get("monthly_change")),
                }
                for r in raw
            ]}
        if kind == SourceKind.RENTAL_STATISTICS:
            areas = []
            for r in raw:
                median = _to_float(r.get("median_rent"))
                areas.append({
                    "area": r["area"],
                    "median_rent": median,
                    "lower_quartile_rent": _to_float(r.get("lower_quartile_rent")) or round(median * 0.8),
                    "upper_quartile_rent": _to_float(r.get("upper_quartile_rent")) or round(median * 1.3),
                    "bedroom_rents": r.get("bedroom_rents") or {
                        "1": round(median * 0.8),
                        "2": median,
                        "3": round(median * 1.25),
                        "4+": round(median * 1.6),
                    },
                    "annual_change": _to_float(r.get("annual_change")),
                })
            return {"areas": areas}
        return {"transactions": copy.deepcopy(raw)}


_PPD_TYPE_LABELS = {
    "flat-maisonette": "flat",
    "flat": "flat",
    "terraced": "terraced",
    "semi-detached": "semi-detached",
    "detached": "detached",
}


class HttpSourceAdapter(SourceAdapter):
    """
    Fetches figures from the public Land Registry and rental statistics
    endpoints. Every request carries a timeout; any transport, status or
    parsing failure becomes SourceUnavailableError.
    """

    name = "http"

    def __init__(
        self,
        ukhpi_base_url: str,
        rental_stats_url: str,
        price_paid_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.ukhpi_base_url = ukhpi_base_url.rstrip("/")
        self.rental_stats_url = rental_stats_url
        self.price_paid_url = price_paid_url
        self.timeout = timeout
        self.transport = transport

    def _request_for(self, kind: SourceKind, region: str, period: str) -> Tuple[str, Dict[str, Any]]:
        slug = region.strip().lower().replace(" ", "-")
        if kind == SourceKind.HOUSE_PRICE_INDEX:
            if period == "latest":
                return f"{self.ukhpi_base_url}/{slug}.json", {}
            return f"{self.ukhpi_base_url}/{slug}/month/{period}.json", {}
        if kind == SourceKind.RENTAL_STATISTICS:
            params = {"geography": slug}
            if period != "latest":
                params["time"] = period
            return self.rental_stats_url, params
        params: Dict[str, Any] = {
            "propertyAddress.town": region.strip().upper(),
            "_pageSize": 100,
            "_sort": "-transactionDate",
        }
        if ":" in period:
            start, end = period.split(":", 1)
            params["min-transactionDate"] = start
            params["max-transactionDate"] = end
        return self.price_paid_url, params

    def fetch_raw(self, kind: SourceKind, region: str, period: str) -> Any:
        url, params = self._request_for(kind, region, period)
        try:
            with httpx.Client(
                timeout=self.timeout,
                transport=self.transport,
                headers={"Accept": "application/json"},
            ) as client:
                response = client.get(url, params=params)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as exc:
            logger.error(f"[{self.name}] {kind.value} timed out for '{region}' after {self.timeout}s")
            raise SourceUnavailableError(kind.value, region, f"timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            logger.error(f"[{self.name}] {kind.value} request failed for '{region}': {exc}")
            raise SourceUnavailableError(kind.value, region, str(exc)) from exc
        except ValueError as exc:
            raise SourceUnavailableError(kind.value, region, "response was not valid JSON") from exc

    def normalize(self, kind: SourceKind, region: str, raw: Any) -> Dict[str, Any]:
        if kind == SourceKind.HOUSE_PRICE_INDEX:
            return {"areas": [self._hpi_row(item, region) for item in self._hpi_items(raw)]}
        if kind == SourceKind.RENTAL_STATISTICS:
            return {"areas": [self._rental_row(item, region) for item in raw["observations"]]}
        return {"transactions": [self._ppd_row(item) for item in raw["result"]["items"]]}

    @staticmethod
    def _hpi_items(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
        result = raw["result"]
        if "primaryTopic" in result:
            return [result["primaryTopic"]]
        return list(result["items"])

    @staticmethod
    def _hpi_row(item: Dict[str, Any], region: str) -> Dict[str, Any]:
        type_fields = {
            "flat": "averagePriceFlatMaisonette",
            "terraced": "averagePriceTerraced",
            "semi-detached": "averagePriceSemiDetached",
            "detached": "averagePriceDetached",
        }
        type_prices = {}
        for ptype, field in type_fields.items():
            price = _to_float(item.get(field))
            if price is not None:
                type_prices[ptype] = price
        area = _label(item.get("refRegion")) or region.title()
        return {
            "area": area.split("/")[-1].replace("-", " ").title() if area.startswith("http") else area,
            "average_price": _to_float(item["averagePrice"]),
            "type_prices": type_prices,
            "annual_change": _to_float(item.get("percentageAnnualChange")),
            "monthly_change": _to_float(item.get("percentageChange")),
        }

    @staticmethod
    def _rental_row(item: Dict[str, Any], region: str) -> Dict[str, Any]:
        def pick(*keys):
            for key in keys:
                if item.get(key) not in (None, ""):
                    return item[key]
            return None

        median = _to_float(pick("median_rent", "medianRent", "observation"))
        if median is None:
            raise ValueError("observation without a median rent")
        return {
            "area": _label(pick("area", "geography", "areaName")) or region.title(),
            "median_rent": median,
            "lower_quartile_rent": _to_float(pick("lower_quartile_rent", "lowerQuartileRent")),
            "upper_quartile_rent": _to_float(pick("upper_quartile_rent", "upperQuartileRent")),
            "bedroom_rents": pick("bedroom_rents", "bedroomRents") or {},
            "annual_change": _to_float(pick("annual_change", "annualChange", "percentageAnnualChange")),
        }

    @staticmethod
    def _ppd_row(item: Dict[str, Any]) -> Dict[str, Any]:
        type_label = (_label(item.get("propertyType")) or "other").split("/")[-1].lower()
        address = item.get("propertyAddress") or {}
        return {
            "transaction_id": _label(item.get("transactionId")) or _label(item.get("_about")),
            "property_type": _PPD_TYPE_LABELS.get(type_label, "other"),
            "price": _to_float(item["pricePaid"]),
            "date": _label(item.get("transactionDate")),
            "postcode": _label(address.get("postcode")),
        }


def build_source_adapter(config) -> SourceAdapter:
    """Pick the adapter named by MARKET_DATA_SOURCE."""
    if config.uses_live_sources:
        logger.info("[MarketSources] Using live HTTP market data sources")
        return HttpSourceAdapter(
            ukhpi_base_url=config.UKHPI_BASE_URL,
            rental_stats_url=config.RENTAL_STATS_URL,
            price_paid_url=config.PRICE_PAID_URL,
            timeout=config.SOURCE_TIMEOUT_SECONDS,
        )
    logger.info("[MarketSources] Using deterministic fixture market data")
    return FixtureSourceAdapter()


# ── Snapshot cache ────────────────────────────────────────────────────────────

class MarketDataCache:
    """
    get(source_kind, region, period) -> MarketSnapshot.
    Snapshots are cached per (source, region, period) for the cache TTL and
    are only stored after a successful fetch.
    """

    def __init__(self, adapter: SourceAdapter, cache: TTLCache):
        self.adapter = adapter
        self.cache = cache

    @staticmethod
    def cache_key(kind: SourceKind, region: str, period: str) -> Tuple[str, str, str]:
        return (kind.value, region.strip().lower(), period)

    def get(
        self,
        source_kind: SourceKind,
        region: str = "england",
        period: str = "latest",
    ) -> MarketSnapshot:
        kind = SourceKind(source_kind)
        region = (region or "england").strip()
        key = self.cache_key(kind, region, period)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"[MarketDataCache] hit {key}")
            return cached

        payload = self.adapter.fetch(kind, region, period)
        snapshot = MarketSnapshot(
            source_kind=kind,
            region=region,
            period=period,
            fetched_at=self.cache.clock(),
            payload=payload,
        )
        self.cache.set(key, snapshot)
        logger.info(f"[MarketDataCache] fetched {kind.value} for '{region}' ({period}) via {self.adapter.name}")
        return snapshot
