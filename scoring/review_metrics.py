"""
Review metrics derived from a pull request's activity log.
Every metric is recomputed from the full chronologically ordered history; nothing is accumulated incrementally.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from normalize.models import Approval, ChangesRequested, Comment, PRActivityEvent, PullRequestRecord, Update
from normalize.util import minutes_between, parse_timestamp, utcnow

TERMINAL_STATES = ('MERGED', 'DECLINED', 'SUPERSEDED')
DEFAULT_ACTIVITY_MAX_AGE_MINUTES = 30

REVIEW_KINDS = (Approval, Comment, ChangesRequested)


class ReviewState(Enum):
    NEUTRAL = 'neutral'
    AWAITING_FIX = 'awaiting_fix'


class PRMetrics:
    def __init__(self, time_to_first_review_mins: Optional[int], time_to_merge_mins: Optional[int], review_rounds: int):
        self.time_to_first_review_mins = time_to_first_review_mins
        self.time_to_merge_mins = time_to_merge_mins
        self.review_rounds = review_rounds

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {
            'time_to_first_review_mins': self.time_to_first_review_mins,
            'time_to_merge_mins': self.time_to_merge_mins,
            'review_rounds': self.review_rounds,
        }

    def __repr__(self):
        return f"PRMetrics({self.to_dict()!r})"


def _chronological(events: Iterable[PRActivityEvent]) -> List[PRActivityEvent]:
    # sorted() is stable, so events sharing a timestamp keep their log order
    return sorted(events, key=lambda e: parse_timestamp(e.timestamp))


def _is_review_by_other(event: PRActivityEvent, author: Optional[str]) -> bool:
    return isinstance(event, REVIEW_KINDS) and event.actor != author


def time_to_first_review(pr: PullRequestRecord, events: Iterable[PRActivityEvent]) -> Optional[int]:
    """Minutes from PR creation to the first approval, comment or change request by someone other than the author."""
    for ev in _chronological(events):
        if _is_review_by_other(ev, pr.author_name):
            return minutes_between(pr.created_at, ev.timestamp)
    return None


def time_to_merge(pr: PullRequestRecord, events: Iterable[PRActivityEvent]) -> Optional[int]:
    """Minutes from creation to merge, for merged PRs only.

    The merge moment is the first update carrying new_state MERGED, else the PR's last update time.
    """
    if pr.state != 'MERGED':
        return None
    for ev in _chronological(events):
        if isinstance(ev, Update) and ev.new_state == 'MERGED':
            return minutes_between(pr.created_at, ev.timestamp)
    return minutes_between(pr.created_at, pr.updated_at)


def review_rounds(events: Iterable[PRActivityEvent]) -> int:
    """Count change-request rounds closed by a later update.

    A change request moves NEUTRAL -> AWAITING_FIX; the next update closes the round
    and moves back to NEUTRAL. Repeated change requests and unprompted updates do nothing.
    """
    state = ReviewState.NEUTRAL
    rounds = 0
    for ev in _chronological(events):
        if isinstance(ev, ChangesRequested) and state is ReviewState.NEUTRAL:
            state = ReviewState.AWAITING_FIX
        elif isinstance(ev, Update) and state is ReviewState.AWAITING_FIX:
            rounds += 1
            state = ReviewState.NEUTRAL
    return rounds


def compute_pr_metrics(pr: PullRequestRecord, events: Sequence[PRActivityEvent]) -> PRMetrics:
    events = list(events)
    return PRMetrics(
        time_to_first_review_mins=time_to_first_review(pr, events),
        time_to_merge_mins=time_to_merge(pr, events),
        review_rounds=review_rounds(events),
    )


def needs_activity_refresh(pr: PullRequestRecord, now: Optional[datetime] = None, max_age_minutes: int = DEFAULT_ACTIVITY_MAX_AGE_MINUTES) -> bool:
    """Open PRs refresh when metrics are missing or older than ``max_age_minutes``; terminal PRs refresh once."""
    if pr.metrics_computed_at is None:
        return True
    if pr.state in TERMINAL_STATES:
        return False
    cutoff = (now or utcnow()) - timedelta(minutes=max_age_minutes)
    return parse_timestamp(pr.metrics_computed_at) < cutoff


class ReviewerStats:
    def __init__(self, reviewer: str):
        self.reviewer = reviewer
        self.prs_reviewed = 0
        self.approvals = 0
        self.changes_requested = 0
        self.comments = 0
        self._response_minutes: List[int] = []

    @property
    def avg_first_response_mins(self) -> Optional[float]:
        if not self._response_minutes:
            return None
        return round(sum(self._response_minutes) / len(self._response_minutes), 1)

    def to_dict(self) -> Dict[str, object]:
        return {
            'reviewer': self.reviewer,
            'prs_reviewed': self.prs_reviewed,
            'approvals': self.approvals,
            'changes_requested': self.changes_requested,
            'comments': self.comments,
            'avg_first_response_mins': self.avg_first_response_mins,
        }


def reviewer_leaderboard(prs: Iterable[PullRequestRecord], events_by_pr: Mapping[int, Sequence[PRActivityEvent]]) -> List[ReviewerStats]:
    """Aggregate review activity per reviewer across PRs.

    ``events_by_pr`` is keyed by PR row id. Authors reviewing their own PR are ignored.
    Ordered by PRs reviewed, then approvals, then name.
    """
    stats: Dict[str, ReviewerStats] = {}
    for pr in prs:
        first_seen: Dict[str, str] = {}
        for ev in _chronological(events_by_pr.get(pr.row_id, ())):
            if not _is_review_by_other(ev, pr.author_name) or not ev.actor:
                continue
            s = stats.setdefault(ev.actor, ReviewerStats(ev.actor))
            if isinstance(ev, Approval):
                s.approvals += 1
            elif isinstance(ev, ChangesRequested):
                s.changes_requested += 1
            else:
                s.comments += 1
            first_seen.setdefault(ev.actor, ev.timestamp)
        for actor, ts in first_seen.items():
            s = stats[actor]
            s.prs_reviewed += 1
            response = minutes_between(pr.created_at, ts)
            if response >= 0:
                s._response_minutes.append(response)
    return sorted(stats.values(), key=lambda s: (-s.prs_reviewed, -s.approvals, s.reviewer))

class SprintPRStats:
    def __init__(self, pull_requests: int, merged: int, avg_time_to_merge_hours: Optional[float], avg_review_rounds: Optional[float]):
        self.pull_requests = pull_requests
        self.merged = merged
        self.avg_time_to_merge_hours = avg_time_to_merge_hours
        self.avg_review_rounds = avg_review_rounds

    def to_dict(self) -> Dict[str, object]:
        return {
            'pull_requests': self.pull_requests,
            'merged': self.merged,
            'avg_time_to_merge_hours': self.avg_time_to_merge_hours,
            'avg_review_rounds': self.avg_review_rounds,
        }


def sprint_pr_stats(
    prs: Iterable[PullRequestRecord], ticket_keys: Iterable[str], branch_keys: Mapping[Tuple[str, str], str]
) -> SprintPRStats:
    """Roll cached PR metrics up over the PRs whose source branch is bound to one of ``ticket_keys``.

    ``branch_keys`` maps (repo, branch) to the branch's ticket key. Averages cover merged PRs only;
    time to merge skips merged PRs whose metrics have not been computed yet.
    """
    wanted = set(ticket_keys)
    linked = [pr for pr in prs if branch_keys.get((pr.repo, pr.source_branch)) in wanted]
    merged = [pr for pr in linked if pr.state == 'MERGED']
    merge_mins = [pr.time_to_merge_mins for pr in merged if pr.time_to_merge_mins is not None]
    avg_hours = round(sum(merge_mins) / len(merge_mins) / 60, 1) if merge_mins else None
    avg_rounds = round(sum(pr.review_rounds for pr in merged) / len(merged), 1) if merged else None
    return SprintPRStats(len(linked), len(merged), avg_hours, avg_rounds)
