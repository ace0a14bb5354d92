"""Cost rollup - Labor hours and cost per entity from calendar assignments"""

import logging
from collections import defaultdict

from sqlalchemy.orm import Session

from .repository import CalendarAssignmentRepository
from .schemas import AssigneeCost, CostRollup, DateRange

logger = logging.getLogger(__name__)


class CostRollupEngine:
    """
    Aggregates assignments overlapping a date range.

    Only the overlap with the query range counts. Days are inclusive and each
    overlapping day credits ``hours_per_day`` hours. A missing rate contributes
    hours but no cost, and the assignee is flagged ``rate_unknown``.
    """

    def __init__(self, db: Session, hours_per_day: float = 8.0):
        self.db = db
        self.hours_per_day = hours_per_day
        self.repo = CalendarAssignmentRepository()

    def rollup(self, entity_type: str, entity_id: str, date_range: DateRange) -> CostRollup:
        assignments = self.repo.list_overlapping(
            self.db, entity_type, entity_id, date_range.start, date_range.end
        )

        days_by_assignee = defaultdict(int)
        cost_by_assignee = defaultdict(float)
        rates_by_assignee = defaultdict(set)
        unknown_rate = set()

        for assignment in assignments:
            # Open-ended assignments run to the end of the query
            assignment_end = assignment.end_date or date_range.end
            overlap_start = max(assignment.start_date, date_range.start)
            overlap_end = min(assignment_end, date_range.end)
            if overlap_end < overlap_start:
                continue

            days = (overlap_end - overlap_start).days + 1
            hours = days * self.hours_per_day
            assignee_id = assignment.assignee_id
            days_by_assignee[assignee_id] += days

            if assignment.rate_per_hour is None:
                unknown_rate.add(assignee_id)
            else:
                rates_by_assignee[assignee_id].add(assignment.rate_per_hour)
                cost_by_assignee[assignee_id] += hours * assignment.rate_per_hour

        breakdown = []
        for assignee_id in sorted(days_by_assignee):
            rates = rates_by_assignee[assignee_id]
            breakdown.append(
                AssigneeCost(
                    assignee_id=assignee_id,
                    days=days_by_assignee[assignee_id],
                    hours=days_by_assignee[assignee_id] * self.hours_per_day,
                    cost=round(cost_by_assignee[assignee_id], 2),
                    # Report a rate only when it is unambiguous
                    rate_per_hour=next(iter(rates)) if len(rates) == 1 and assignee_id not in unknown_rate else None,
                    rate_unknown=assignee_id in unknown_rate,
                )
            )

        result = CostRollup(
            entity_type=entity_type,
            entity_id=entity_id,
            start=date_range.start,
            end=date_range.end,
            total_hours=sum(item.hours for item in breakdown),
            total_cost=round(sum(cost_by_assignee.values()), 2),
            breakdown=breakdown,
        )
        logger.info(
            f"💰 Rollup for {entity_type} {entity_id} ({date_range.start} to {date_range.end}): "
            f"{result.total_hours}h, ${result.total_cost}"
        )
        return result
