"""
Pull request rows, their activity logs, and cached review metrics.
"""

import json
from datetime import datetime
from typing import Iterable, List, Optional

from normalize.models import ACTIVITY_KINDS, Approval, ChangesRequested, Comment, PRActivityEvent, PullRequestRecord, Update
from normalize.util import load_json_list, to_iso, utcnow
from scoring.review_metrics import DEFAULT_ACTIVITY_MAX_AGE_MINUTES, needs_activity_refresh
from .database import Database


def _row_to_pr(row) -> PullRequestRecord:
    return PullRequestRecord(
        repo=row['repo'],
        pr_id=row['pr_id'],
        title=row['title'],
        state=row['state'],
        url=row['url'],
        source_branch=row['source_branch'],
        target_branch=row['target_branch'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
        author_name=row['author_name'],
        description=row['description'],
        reviewers=load_json_list(row['reviewers']),
        approvals=row['approvals'] or 0,
        comment_count=row['comment_count'] or 0,
        row_id=row['id'],
        time_to_first_review_mins=row['time_to_first_review_mins'],
        time_to_merge_mins=row['time_to_merge_mins'],
        review_rounds=row['review_rounds'] or 0,
        metrics_computed_at=row['metrics_computed_at'],
    )


# noinspection SqlResolve
def upsert_pull_requests(db: Database, prs: Iterable[PullRequestRecord]) -> List[PullRequestRecord]:
    """Insert or refresh PR rows by (repo, pr_id). Cached metrics survive unless the state changed.

    Returns the records with ``row_id`` and the stored metric fields filled in.
    """
    stored: List[PullRequestRecord] = []
    with db.transaction() as cur:
        for pr in prs:
            cur.execute(
                'INSERT INTO pull_requests(repo, pr_id, title, description, state, url, source_branch, target_branch, author_name, '
                'reviewers, approvals, comment_count, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) '
                'ON CONFLICT(repo, pr_id) DO UPDATE SET title = excluded.title, description = excluded.description, '
                'state = excluded.state, url = excluded.url, source_branch = excluded.source_branch, '
                'target_branch = excluded.target_branch, author_name = excluded.author_name, reviewers = excluded.reviewers, '
                'approvals = excluded.approvals, comment_count = excluded.comment_count, created_at = excluded.created_at, '
                'updated_at = excluded.updated_at, '
                # a state transition (e.g. OPEN -> MERGED) invalidates the cached metrics
                'metrics_computed_at = CASE WHEN pull_requests.state = excluded.state THEN pull_requests.metrics_computed_at ELSE NULL END',
                (
                    pr.repo, pr.pr_id, pr.title, pr.description, pr.state, pr.url, pr.source_branch, pr.target_branch,
                    pr.author_name, json.dumps(pr.reviewers), pr.approvals, pr.comment_count, pr.created_at, pr.updated_at,
                ),
            )
            cur.execute('SELECT * FROM pull_requests WHERE repo = ? AND pr_id = ?', (pr.repo, pr.pr_id))
            stored.append(_row_to_pr(cur.fetchone()))
    return stored


# noinspection SqlResolve
def pull_requests_for(db: Database, repo: str) -> List[PullRequestRecord]:
    return [_row_to_pr(r) for r in db.query('SELECT * FROM pull_requests WHERE repo = ? ORDER BY pr_id', (repo,))]


# noinspection SqlResolve
def store_activities(db: Database, pr_row_id: int, events: Iterable[PRActivityEvent]) -> int:
    """Append activity events, skipping any (pull request, timestamp, kind, actor) already stored."""
    added = 0
    with db.transaction() as cur:
        for ev in events:
            cur.execute(
                'SELECT 1 FROM pr_activities WHERE pull_request_id = ? AND timestamp = ? AND type = ? AND actor_name IS ?',
                (pr_row_id, ev.timestamp, ev.kind, ev.actor),
            )
            if cur.fetchone():
                continue
            cur.execute(
                'INSERT INTO pr_activities(pull_request_id, type, actor_name, timestamp, text, new_state, commit_hash) VALUES (?, ?, ?, ?, ?, ?, ?)',
                (
                    pr_row_id, ev.kind, ev.actor, ev.timestamp,
                    getattr(ev, 'text', None), getattr(ev, 'new_state', None), getattr(ev, 'commit_hash', None),
                ),
            )
            added += 1
    return added


def _row_to_event(row) -> Optional[PRActivityEvent]:
    cls = ACTIVITY_KINDS.get(row['type'])
    if cls is Approval or cls is ChangesRequested:
        return cls(actor=row['actor_name'], timestamp=row['timestamp'])
    if cls is Comment:
        return Comment(actor=row['actor_name'], timestamp=row['timestamp'], text=row['text'] or '')
    if cls is Update:
        return Update(actor=row['actor_name'], timestamp=row['timestamp'], new_state=row['new_state'], commit_hash=row['commit_hash'])
    return None


# noinspection SqlResolve
def activities_for(db: Database, pr_row_id: int) -> List[PRActivityEvent]:
    """Full activity log for one PR in chronological order."""
    rows = db.query('SELECT * FROM pr_activities WHERE pull_request_id = ? ORDER BY timestamp, id', (pr_row_id,))
    events = [_row_to_event(r) for r in rows]
    return [e for e in events if e is not None]


def stale_activity_prs(db: Database, repo: str, now: Optional[datetime] = None, max_age_minutes: int = DEFAULT_ACTIVITY_MAX_AGE_MINUTES) -> List[PullRequestRecord]:
    """PRs whose activity log should be re-fetched: open ones past ``max_age_minutes``, terminal ones never computed."""
    now = now or utcnow()
    return [pr for pr in pull_requests_for(db, repo) if needs_activity_refresh(pr, now, max_age_minutes)]


# noinspection SqlResolve
def cache_pr_metrics(db: Database, pr_row_id: int, metrics, now: Optional[datetime] = None) -> None:
    """Store computed metrics (a scoring.review_metrics.PRMetrics) and stamp the computation time."""
    with db.transaction() as cur:
        cur.execute(
            'UPDATE pull_requests SET time_to_first_review_mins = ?, time_to_merge_mins = ?, review_rounds = ?, metrics_computed_at = ? WHERE id = ?',
            (metrics.time_to_first_review_mins, metrics.time_to_merge_mins, metrics.review_rounds, to_iso(now or utcnow()), pr_row_id),
        )
