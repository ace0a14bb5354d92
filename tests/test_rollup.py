"""Cost rollup over calendar assignments."""

from datetime import date

import pytest
from pydantic import ValidationError

from calsync.domain.calendar_sync.repository import CalendarAssignmentRepository
from calsync.domain.calendar_sync.rollup import CostRollupEngine
from calsync.domain.calendar_sync.schemas import DateRange

pytestmark = pytest.mark.unit


@pytest.fixture
def assign(db):
    def _assign(assignee_id, start, end, rate=None, entity_id="P-1", calendar_id="primary"):
        assignment = CalendarAssignmentRepository.upsert_assignment(
            db,
            "project",
            entity_id,
            assignee_id,
            calendar_id,
            start_date=start,
            end_date=end,
            rate_per_hour=rate,
        )
        db.commit()
        return assignment

    return _assign


def _rollup(db, start, end, hours_per_day=8.0):
    return CostRollupEngine(db, hours_per_day).rollup("project", "P-1", DateRange(start=start, end=end))


def test_unknown_rate_counts_hours_but_no_cost(db, assign):
    assign("E-1", date(2024, 6, 1), date(2024, 6, 5), rate=None)

    result = _rollup(db, date(2024, 6, 2), date(2024, 6, 4))

    assert result.total_hours == 24.0
    assert result.total_cost == 0.0
    [item] = result.breakdown
    assert item.days == 3
    assert item.rate_unknown is True
    assert item.rate_per_hour is None


def test_known_zero_rate_is_not_flagged_unknown(db, assign):
    assign("E-1", date(2024, 6, 1), date(2024, 6, 1), rate=0.0)

    [item] = _rollup(db, date(2024, 6, 1), date(2024, 6, 1)).breakdown

    assert item.cost == 0.0
    assert item.rate_unknown is False
    assert item.rate_per_hour == 0.0


def test_range_outside_assignment_is_zero(db, assign):
    assign("E-1", date(2024, 6, 1), date(2024, 6, 5), rate=50.0)

    result = _rollup(db, date(2024, 7, 1), date(2024, 7, 31))

    assert result.total_hours == 0.0
    assert result.total_cost == 0.0
    assert result.breakdown == []


def test_overlap_is_clipped_to_query_range(db, assign):
    assign("E-1", date(2024, 5, 28), date(2024, 6, 2), rate=50.0)

    result = _rollup(db, date(2024, 6, 1), date(2024, 6, 30))

    assert result.breakdown[0].days == 2
    assert result.total_hours == 16.0
    assert result.total_cost == 800.0


def test_open_ended_assignment_runs_to_range_end(db, assign):
    assign("E-1", date(2024, 6, 10), None, rate=40.0)

    result = _rollup(db, date(2024, 6, 1), date(2024, 6, 14))

    assert result.breakdown[0].days == 5
    assert result.total_cost == 1600.0


def test_costs_are_rounded_to_cents(db, assign):
    assign("E-1", date(2024, 6, 1), date(2024, 6, 1), rate=33.333)

    result = _rollup(db, date(2024, 6, 1), date(2024, 6, 1))

    assert result.total_cost == 266.66


def test_breakdown_is_sorted_and_totals_add_up(db, assign):
    assign("S-2", date(2024, 6, 1), date(2024, 6, 2), rate=60.0)
    assign("E-1", date(2024, 6, 1), date(2024, 6, 1), rate=30.0)
    assign("E-1", date(2024, 6, 3), date(2024, 6, 3), rate=30.0, calendar_id="crew")

    result = _rollup(db, date(2024, 6, 1), date(2024, 6, 30))

    assert [item.assignee_id for item in result.breakdown] == ["E-1", "S-2"]
    assert result.breakdown[0].days == 2
    assert result.total_hours == 32.0
    assert result.total_cost == 480.0 + 960.0


def test_other_entities_are_ignored(db, assign):
    assign("E-1", date(2024, 6, 1), date(2024, 6, 1), rate=30.0, entity_id="P-2")

    assert _rollup(db, date(2024, 6, 1), date(2024, 6, 1)).breakdown == []


def test_hours_per_day_is_configurable(db, assign):
    assign("E-1", date(2024, 6, 1), date(2024, 6, 2), rate=10.0)

    result = _rollup(db, date(2024, 6, 1), date(2024, 6, 2), hours_per_day=10.0)

    assert result.total_hours == 20.0
    assert result.total_cost == 200.0


def test_date_range_rejects_end_before_start():
    with pytest.raises(ValidationError):
        DateRange(start=date(2024, 6, 5), end=date(2024, 6, 1))
