"""
Rental Contribution Service
Stores user-submitted rent observations and keeps the derived per-area
statistics in step with them.

Every contribution is written and folded into its area's statistics in the
same transaction, while holding that area's lock, so a read issued right
after the call always sees the new record.
"""
import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.core.errors import ConcurrencyConflictError, DataValidationError
from app.core.locks import KeyedLocks, area_locks
from app.db.base import utcnow
from app.models.market import AreaStatistics, ContributedRentalRecord, PropertyType
from app.services.cache import Clock

logger = logging.getLogger(__name__)


# ── Postcode → area table ────────────────────────────────────────────────────
# Evaluated longest prefix first; equal-length prefixes keep this order.
POSTCODE_AREA_RULES: Sequence[Tuple[str, str]] = (
    ("N", "North London"),
    ("NW", "North West London"),
    ("W", "West London"),
    ("SW", "South West London"),
    ("SE", "South East London"),
    ("E", "East London"),
    ("EC", "East Central London"),
    ("WC", "West Central London"),
    ("M", "Manchester"),
    ("B", "Birmingham"),
    ("L", "Liverpool"),
    ("G", "Glasgow"),
    ("EH", "Edinburgh"),
    ("CF", "Cardiff"),
    ("BS", "Bristol"),
    ("LS", "Leeds"),
    ("S", "Sheffield"),
    ("NG", "Nottingham"),
)

UNMATCHED_AREA = "Other"

# Width of the stored postcode column.
POSTCODE_MAX_LENGTH = 10

_ORDERED_RULES = sorted(POSTCODE_AREA_RULES, key=lambda rule: len(rule[0]), reverse=True)


def normalize_postcode(raw: str) -> str:
    """Uppercase with a single space before the inward code ('m145th' -> 'M14 5TH')."""
    compact = "".join((raw or "").split()).upper()
    if len(compact) >= 5:
        return f"{compact[:-3]} {compact[-3:]}"
    return compact


def derive_area(postcode: str) -> str:
    outward = normalize_postcode(postcode).split(" ")[0]
    for prefix, area in _ORDERED_RULES:
        if outward.startswith(prefix):
            return area
    return UNMATCHED_AREA


def _coerce_property_type(value: Any) -> PropertyType:
    if isinstance(value, PropertyType):
        return value
    try:
        return PropertyType(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(t.value for t in PropertyType)
        raise DataValidationError(
            f"property_type must be one of: {allowed}",
            details={"field": "property_type", "value": value},
        )


def _type_value(value: Any) -> str:
    return value.value if isinstance(value, PropertyType) else str(value)


# ── Aggregator ────────────────────────────────────────────────────────────────

class AreaStatisticsAggregator:
    """Rebuilds the AreaStatistics row for one area from its contributions."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def lock_row(self, area: str) -> Optional[AreaStatistics]:
        """SELECT ... FOR UPDATE on the area's statistics row (no-op on SQLite)."""
        return (
            self.db.query(AreaStatistics)
            .filter(AreaStatistics.area == area)
            .with_for_update()
            .one_or_none()
        )

    def recompute(self, area: str) -> Optional[AreaStatistics]:
        """
        Fold every stored rent for `area` into its statistics row.
        With no records the existing row (if any) is returned untouched.
        The caller owns the transaction.
        """
        rows = (
            self.db.query(ContributedRentalRecord.property_type, ContributedRentalRecord.monthly_rent)
            .filter(ContributedRentalRecord.area == area)
            .order_by(ContributedRentalRecord.created_at)
            .all()
        )
        stats = self.lock_row(area)
        if not rows:
            logger.debug(f"[Contributions] No records for '{area}', statistics left as they are")
            return stats

        rents_by_type: Dict[str, List[float]] = {}
        for ptype, rent in rows:
            rents_by_type.setdefault(_type_value(ptype), []).append(rent)
        all_rents = [rent for _, rent in rows]

        if stats is None:
            stats = AreaStatistics(area=area)
            self.db.add(stats)

        stats.average_rent = round(sum(all_rents) / len(all_rents), 2)
        stats.property_type_averages = [
            {
                "type": ptype,
                "average_rent": round(sum(rents) / len(rents), 2),
                "count": len(rents),
            }
            for ptype, rents in rents_by_type.items()
        ]
        stats.data_point_count = len(all_rents)
        stats.last_recalculated_at = self.clock()
        self.db.flush()

        logger.info(
            f"[Contributions] Recomputed '{area}': avg={stats.average_rent} "
            f"points={stats.data_point_count}"
        )
        return stats


# ── Store ─────────────────────────────────────────────────────────────────────

class ContributionStore:
    """Validation, persistence and queries for contributed rental data."""

    # One retry after a unique-constraint or lock-timeout failure.
    MAX_ATTEMPTS = 2

    def __init__(
        self,
        db: Session,
        locks: Optional[KeyedLocks] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.locks = locks if locks is not None else area_locks
        self.aggregator = AreaStatisticsAggregator(db, clock=clock)

    # ─────────────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────────────

    def _validate(self, postcode: Any, bedrooms: Any, monthly_rent: Any) -> None:
        if not isinstance(postcode, str) or not postcode.strip():
            raise DataValidationError("postcode is required", details={"field": "postcode"})
        if isinstance(bedrooms, bool) or not isinstance(bedrooms, int) or bedrooms < 0:
            raise DataValidationError(
                "bedrooms must be a whole number of 0 or more",
                details={"field": "bedrooms", "value": bedrooms},
            )
        if (
            isinstance(monthly_rent, bool)
            or not isinstance(monthly_rent, (int, float))
            or not math.isfinite(monthly_rent)
            or not monthly_rent > 0
        ):
            raise DataValidationError(
                "monthly_rent must be a finite amount greater than zero",
                details={"field": "monthly_rent", "value": str(monthly_rent)},
            )

    def add_contribution(
        self,
        *,
        postcode: str,
        property_type: Any,
        bedrooms: int,
        monthly_rent: float,
        bills_included: bool = False,
        included_bills: Optional[List[str]] = None,
        property_features: Optional[List[str]] = None,
        is_anonymous: bool = True,
        notes: Optional[str] = None,
        submitter_ref: Optional[str] = None,
    ) -> Tuple[ContributedRentalRecord, AreaStatistics]:
        """
        Validate, persist and fold one observation into its area statistics.
        Returns the stored record and the recomputed statistics row.
        """
        self._validate(postcode, bedrooms, monthly_rent)
        ptype = _coerce_property_type(property_type)
        normalized = normalize_postcode(postcode)
        if len(normalized) > POSTCODE_MAX_LENGTH:
            raise DataValidationError(
                f"postcode must be at most {POSTCODE_MAX_LENGTH} characters once normalized",
                details={"field": "postcode", "value": normalized},
            )
        area = derive_area(normalized)

        with self.locks.hold(area):
            for attempt in range(1, self.MAX_ATTEMPTS + 1):
                try:
                    self.aggregator.lock_row(area)
                    record = ContributedRentalRecord(
                        submitter_ref=None if is_anonymous else submitter_ref,
                        postcode=normalized,
                        area=area,
                        property_type=ptype,
                        bedrooms=bedrooms,
                        monthly_rent=float(monthly_rent),
                        bills_included=bool(bills_included),
                        included_bills=list(included_bills or []),
                        property_features=list(property_features or []),
                        is_anonymous=bool(is_anonymous),
                        notes=notes,
                    )
                    self.db.add(record)
                    self.db.flush()
                    stats = self.aggregator.recompute(area)
                    self.db.commit()
                except (IntegrityError, OperationalError) as exc:
                    self.db.rollback()
                    if attempt == self.MAX_ATTEMPTS:
                        logger.error(f"[Contributions] Giving up on '{area}' after {attempt} attempts: {exc}")
                        raise ConcurrencyConflictError(
                            f"Could not record contribution for {area}; please retry",
                            details={"area": area},
                        ) from exc
                    logger.warning(f"[Contributions] Write conflict on '{area}', retrying: {exc}")
                    continue

                self.db.refresh(record)
                self.db.refresh(stats)
                logger.info(
                    f"[Contributions] Stored {ptype.value} {bedrooms}br £{monthly_rent} in '{area}'"
                )
                return record, stats

    def recalculate_area(self, area: str) -> Optional[AreaStatistics]:
        """Recompute one area's statistics on demand."""
        with self.locks.hold(area):
            stats = self.aggregator.recompute(area)
            self.db.commit()
        if stats is not None:
            self.db.refresh(stats)
        return stats

    # ─────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────

    def list_contributions(
        self,
        area: Optional[str] = None,
        property_type: Optional[Any] = None,
        bedrooms: Optional[int] = None,
        postcode: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ContributedRentalRecord]:
        """Filters combine with AND; postcode is a case-insensitive substring."""
        query = self.db.query(ContributedRentalRecord)
        if area:
            query = query.filter(ContributedRentalRecord.area == area)
        if property_type:
            query = query.filter(
                ContributedRentalRecord.property_type == _coerce_property_type(property_type)
            )
        if bedrooms is not None:
            query = query.filter(ContributedRentalRecord.bedrooms == bedrooms)
        if postcode:
            query = query.filter(ContributedRentalRecord.postcode.ilike(f"%{postcode.strip()}%"))
        query = query.order_by(ContributedRentalRecord.created_at.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def get_area_statistics(self, area: str) -> Optional[AreaStatistics]:
        return (
            self.db.query(AreaStatistics)
            .filter(func.lower(AreaStatistics.area) == area.strip().lower())
            .one_or_none()
        )

    def list_area_statistics(self) -> List[AreaStatistics]:
        return (
            self.db.query(AreaStatistics)
            .order_by(AreaStatistics.data_point_count.desc(), AreaStatistics.area)
            .all()
        )

    def area_statistics_containing(self, name: str) -> List[AreaStatistics]:
        """Statistics rows whose derived area name contains `name` ("London" -> all London areas)."""
        return (
            self.db.query(AreaStatistics)
            .filter(AreaStatistics.area.ilike(f"%{name.strip()}%"))
            .order_by(AreaStatistics.area)
            .all()
        )
