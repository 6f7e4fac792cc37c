import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from app.core.errors import ConcurrencyConflictError, DataValidationError
from app.core.locks import KeyedLocks
from app.db.base import Base
from app.models.market import AreaStatistics, ContributedRentalRecord, PropertyType
from app.services.contribution_service import (
    ContributionStore,
    derive_area,
    normalize_postcode,
)


# ── Postcode handling ────────────────────────────────────────────────────────

@pytest.mark.parametrize("postcode, area", [
    ("M14 5TH", "Manchester"),
    ("SE1 7EH", "South East London"),
    ("se17eh", "South East London"),
    ("EH8 9YL", "Edinburgh"),
    ("NW1 2DB", "North West London"),
    ("N7 8DB", "North London"),
    ("EC1V 0HB", "East Central London"),
    ("E1 6AN", "East London"),
    ("LS6 3HN", "Leeds"),
    ("B29 6BD", "Birmingham"),
    ("ZZ1 1ZZ", "Other"),
])
def test_derive_area_prefers_longest_prefix(postcode, area):
    assert derive_area(postcode) == area


@pytest.mark.parametrize("raw, expected", [
    ("m145th", "M14 5TH"),
    ("  sw1a   1aa ", "SW1A 1AA"),
    ("EH8 9YL", "EH8 9YL"),
    ("SE1", "SE1"),
])
def test_normalize_postcode(raw, expected):
    assert normalize_postcode(raw) == expected


# ── add_contribution ─────────────────────────────────────────────────────────

def test_contribution_is_visible_in_area_statistics(store):
    record, stats = store.add_contribution(
        postcode="M14 5TH", property_type="flat", bedrooms=2, monthly_rent=850,
    )

    assert record.area == "Manchester"
    assert record.postcode == "M14 5TH"
    assert record.property_type == PropertyType.FLAT
    assert record.submitter_ref is None

    fresh = store.get_area_statistics("manchester")
    assert fresh.data_point_count >= 1
    assert fresh.average_rent == 850
    assert stats.property_type_averages == [{"type": "flat", "average_rent": 850.0, "count": 1}]


def test_statistics_track_every_record(store, contribute, clock):
    contribute(monthly_rent=800)
    clock.advance(minutes=5)
    contribute(monthly_rent=1000, property_type="terraced", bedrooms=3)
    contribute(monthly_rent=900)

    stats = store.get_area_statistics("Manchester")
    assert stats.data_point_count == 3
    assert stats.average_rent == 900
    # SQLite hands datetimes back without tzinfo
    assert stats.last_recalculated_at.replace(tzinfo=None) == clock().replace(tzinfo=None)
    by_type = {entry["type"]: entry for entry in stats.property_type_averages}
    assert by_type["flat"] == {"type": "flat", "average_rent": 850.0, "count": 2}
    assert by_type["terraced"]["count"] == 1


def test_non_anonymous_keeps_submitter(store):
    record, _ = store.add_contribution(
        postcode="LS6 3HN", property_type="terraced", bedrooms=4, monthly_rent=1600,
        is_anonymous=False, submitter_ref="user-42",
        bills_included=True, included_bills=["water", "internet"],
    )
    assert record.submitter_ref == "user-42"
    assert record.bills_included is True
    assert record.included_bills == ["water", "internet"]


def test_anonymous_drops_submitter(store):
    record, _ = store.add_contribution(
        postcode="LS6 3HN", property_type="flat", bedrooms=1, monthly_rent=700,
        is_anonymous=True, submitter_ref="user-42",
    )
    assert record.submitter_ref is None


@pytest.mark.parametrize("overrides, field", [
    ({"monthly_rent": 0}, "monthly_rent"),
    ({"monthly_rent": -250}, "monthly_rent"),
    ({"monthly_rent": float("inf")}, "monthly_rent"),
    ({"monthly_rent": float("nan")}, "monthly_rent"),
    ({"postcode": ""}, "postcode"),
    ({"postcode": "   "}, "postcode"),
    ({"postcode": "SW1A1AAXXX"}, "postcode"),
    ({"bedrooms": -1}, "bedrooms"),
    ({"bedrooms": 1.5}, "bedrooms"),
    ({"property_type": "castle"}, "property_type"),
])
def test_invalid_contribution_writes_nothing(store, db, overrides, field):
    fields = dict(postcode="M14 5TH", property_type="flat", bedrooms=2, monthly_rent=850)
    fields.update(overrides)

    with pytest.raises(DataValidationError) as exc:
        store.add_contribution(**fields)

    assert exc.value.details["field"] == field
    assert db.query(ContributedRentalRecord).count() == 0
    assert db.query(AreaStatistics).count() == 0


def test_studio_with_zero_bedrooms_is_accepted(contribute):
    record = contribute(bedrooms=0, monthly_rent=650)
    assert record.bedrooms == 0


# ── Retry behaviour ──────────────────────────────────────────────────────────

def _flaky_recompute(store, failures):
    real = store.aggregator.recompute
    calls = {"n": 0}

    def recompute(area):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise OperationalError("UPDATE area_statistics", {}, Exception("database is locked"))
        return real(area)

    store.aggregator.recompute = recompute
    return calls


def test_single_conflict_is_retried(store, db):
    calls = _flaky_recompute(store, failures=1)

    record, stats = store.add_contribution(
        postcode="B29 6BD", property_type="flat", bedrooms=2, monthly_rent=780,
    )

    assert calls["n"] == 2
    assert stats.data_point_count == 1
    assert db.query(ContributedRentalRecord).count() == 1
    assert record.area == "Birmingham"


def test_repeated_conflict_raises(store, db):
    _flaky_recompute(store, failures=2)

    with pytest.raises(ConcurrencyConflictError) as exc:
        store.add_contribution(
            postcode="B29 6BD", property_type="flat", bedrooms=2, monthly_rent=780,
        )

    assert exc.value.details == {"area": "Birmingham"}
    assert db.query(ContributedRentalRecord).count() == 0


def test_concurrent_contributions_are_both_counted(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'contributions.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    locks = KeyedLocks()
    start = threading.Barrier(2)
    errors = []

    def submit(rent):
        session = Session()
        try:
            start.wait()
            ContributionStore(session, locks=locks).add_contribution(
                postcode="M14 5TH", property_type="flat", bedrooms=2, monthly_rent=rent,
            )
        except Exception as exc:  # surfaced below
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=submit, args=(rent,)) for rent in (800, 1000)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    session = Session()
    try:
        stats = ContributionStore(session, locks=locks).get_area_statistics("Manchester")
        assert stats.data_point_count == 2
        assert stats.average_rent == 900
    finally:
        session.close()
        engine.dispose()


# ── Queries ──────────────────────────────────────────────────────────────────

def test_list_contributions_filters_combine(store, contribute):
    contribute(postcode="M14 5TH", property_type="flat", bedrooms=2, monthly_rent=850)
    contribute(postcode="M14 6AA", property_type="flat", bedrooms=3, monthly_rent=1000)
    contribute(postcode="M20 2RN", property_type="terraced", bedrooms=2, monthly_rent=950)
    contribute(postcode="LS6 3HN", property_type="flat", bedrooms=2, monthly_rent=700)

    assert len(store.list_contributions(area="Manchester")) == 3
    assert len(store.list_contributions(area="Manchester", property_type="flat")) == 2
    assert len(store.list_contributions(area="Manchester", property_type="flat", bedrooms=2)) == 1
    assert {r.postcode for r in store.list_contributions(postcode="m14")} == {"M14 5TH", "M14 6AA"}
    assert store.list_contributions(area="Leeds", property_type="terraced") == []
    assert len(store.list_contributions(limit=2)) == 2


def test_recalculate_is_idempotent(store, contribute):
    contribute(monthly_rent=800)
    contribute(monthly_rent=1000)

    first = store.recalculate_area("Manchester")
    snapshot = (first.average_rent, first.data_point_count, list(first.property_type_averages))
    second = store.recalculate_area("Manchester")

    assert (second.average_rent, second.data_point_count, second.property_type_averages) == snapshot


def test_recalculate_without_records_returns_none(store):
    assert store.recalculate_area("Cardiff") is None


def test_area_statistics_containing(contribute, store):
    contribute(postcode="SE1 7EH", monthly_rent=1500)
    contribute(postcode="NW1 2DB", monthly_rent=1700)
    contribute(postcode="M14 5TH", monthly_rent=850)

    london = store.area_statistics_containing("london")
    assert [s.area for s in london] == ["North West London", "South East London"]
    assert len(store.list_area_statistics()) == 3
