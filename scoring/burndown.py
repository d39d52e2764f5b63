"""
Sprint burndown reconstruction.
Replays each ticket's status history to find where it stood at the end of every sprint day.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from normalize.models import Sprint, StatusChangeEvent
from normalize.util import parse_timestamp

DONE_STATUSES = frozenset({'Done', 'Closed', 'Resolved'})
IN_REVIEW_STATUSES = frozenset({'In Review', 'Code Review', 'Review'})
IN_PROGRESS_STATUSES = frozenset({'In Progress', 'In Development', 'Development'})

TODO = 'todo'
IN_PROGRESS = 'in_progress'
IN_REVIEW = 'in_review'
DONE = 'done'


def status_bucket(status: Optional[str]) -> str:
    """Map a tracker status name onto one of the four burndown buckets; unknown names are todo."""
    if status in DONE_STATUSES:
        return DONE
    if status in IN_REVIEW_STATUSES:
        return IN_REVIEW
    if status in IN_PROGRESS_STATUSES:
        return IN_PROGRESS
    return TODO


def status_at(changes: Iterable[StatusChangeEvent], moment: datetime) -> Optional[str]:
    """Status a ticket held at ``moment``: the latest transition at or before it, or None."""
    latest_at: Optional[datetime] = None
    latest: Optional[str] = None
    for c in changes:
        changed = parse_timestamp(c.changed_at)
        if changed <= moment and (latest_at is None or changed >= latest_at):
            latest_at = changed
            latest = c.to_status
    return latest


def day_end(day: date) -> datetime:
    return datetime.combine(day, time(23, 59, 59, 999999), tzinfo=timezone.utc)


def sprint_days(start: date, end: date) -> List[date]:
    days: List[date] = []
    current = start
    while current <= end:
        days.append(current)
        current += timedelta(days=1)
    return days


class BurndownDay:
    def __init__(self, day: date, todo: int = 0, in_progress: int = 0, in_review: int = 0, done: int = 0, remaining: int = 0, commits: int = 0):
        self.date = day
        self.todo = todo
        self.in_progress = in_progress
        self.in_review = in_review
        self.done = done
        self.remaining = remaining
        self.commits = commits

    def to_dict(self) -> Dict[str, object]:
        return {
            'date': self.date.isoformat(),
            'todo': self.todo,
            'in_progress': self.in_progress,
            'in_review': self.in_review,
            'done': self.done,
            'remaining': self.remaining,
            'commits': self.commits,
        }


class Burndown:
    def __init__(self, days: List[BurndownDay], total_tickets: int):
        self.days = days
        self.total_tickets = total_tickets

    def to_dict(self) -> Dict[str, object]:
        return {'total_tickets': self.total_tickets, 'days': [d.to_dict() for d in self.days]}


def _as_date(value: str) -> date:
    return parse_timestamp(value).astimezone(timezone.utc).date()


def reconstruct_burndown(
    sprint: Sprint,
    status_changes: Mapping[str, Sequence[StatusChangeEvent]],
    commit_timestamps: Iterable[str] = (),
) -> Burndown:
    """
    Build one BurndownDay per calendar day in [sprint.start_date, sprint.end_date].

    Parameters:
        sprint: sprint with start and end dates.
        status_changes: ticket key -> status history; the keys are the sprint's tickets.
        commit_timestamps: timestamps of commits on branches linked to those tickets.

    A ticket with no transition by the end of a day counts as todo for that day.
    """
    if not sprint.start_date or not sprint.end_date:
        raise ValueError(f"sprint {sprint.name!r} has no date range")

    commits_per_day: Dict[date, int] = {}
    for ts in commit_timestamps:
        d = _as_date(ts)
        commits_per_day[d] = commits_per_day.get(d, 0) + 1

    total = len(status_changes)
    days: List[BurndownDay] = []
    for day in sprint_days(_as_date(sprint.start_date), _as_date(sprint.end_date)):
        moment = day_end(day)
        record = BurndownDay(day, commits=commits_per_day.get(day, 0))
        for changes in status_changes.values():
            bucket = status_bucket(status_at(changes, moment))
            setattr(record, bucket, getattr(record, bucket) + 1)
        record.remaining = total - record.done
        days.append(record)
    return Burndown(days, total)


def status_breakdown(statuses: Iterable[Optional[str]]) -> Dict[str, int]:
    """Count current ticket statuses per bucket; unknown or missing statuses count as todo."""
    counts = {'total': 0, TODO: 0, IN_PROGRESS: 0, IN_REVIEW: 0, DONE: 0}
    for status in statuses:
        counts['total'] += 1
        counts[status_bucket(status)] += 1
    return counts
