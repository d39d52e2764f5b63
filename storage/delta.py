"""
Delta-aware persistence for scanned commits and branches.

Commits are immutable and keyed by sha: only unseen shas are inserted.
Branches carry mutable liveness: every scan marks a repo's rows inactive, re-activates
what it observes, and reports the remainder as gone. Rows are never deleted.
"""

import json
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from correlate.linker import ticket_key_from_branch
from normalize.models import BranchRecord, CommitRecord, PullRequestSnapshot, StoredBranch
from normalize.util import load_json_list, to_iso, utcnow
from .database import CHUNK_SIZE, Database, chunked, placeholders
from .scope import RepoScope

logger = logging.getLogger(__name__)


class CommitDelta:
    def __init__(self, new_commits: List[CommitRecord], existing_count: int):
        self.new_commits = new_commits
        self.existing_count = existing_count

    def __repr__(self):
        return f"CommitDelta(new={len(self.new_commits)}, existing={self.existing_count})"


class BranchDelta:
    def __init__(self, new: List[str], updated: List[str], gone: List[str]):
        self.new = new
        self.updated = updated
        self.gone = gone

    def __eq__(self, other):
        if not isinstance(other, BranchDelta):
            return NotImplemented
        return (self.new, self.updated, self.gone) == (other.new, other.updated, other.gone)

    def __repr__(self):
        return f"BranchDelta(new={self.new!r}, updated={self.updated!r}, gone={self.gone!r})"


# noinspection SqlResolve
def existing_shas(db: Database, shas: Sequence[str], chunk_size: int = CHUNK_SIZE) -> Set[str]:
    found: Set[str] = set()
    for chunk in chunked(list(shas), chunk_size):
        rows = db.query(f'SELECT sha FROM commits WHERE sha IN ({placeholders(len(chunk))})', chunk)
        found.update(r['sha'] for r in rows)
    return found


# noinspection SqlResolve
def store_commits(db: Database, commits: Iterable[CommitRecord], run_id: Optional[int], chunk_size: int = CHUNK_SIZE) -> CommitDelta:
    """Insert commits whose sha is not stored yet, tagging them with ``run_id``.

    Safe to repeat: a second call with the same input inserts nothing and reports
    every input commit as existing.
    """
    commits = list(commits)
    unique: Dict[str, CommitRecord] = {}
    for c in commits:
        unique.setdefault(c.sha, c)

    present = existing_shas(db, list(unique), chunk_size)
    new_commits = [c for sha, c in unique.items() if sha not in present]

    with db.transaction() as cur:
        for chunk in chunked(new_commits, chunk_size):
            cur.executemany(
                'INSERT OR IGNORE INTO commits(sha, short_sha, repo, branch, author_name, author_email, message, timestamp, '
                'files_changed, insertions, deletions, diff_summary, ticket_keys, first_seen_run) '
                'VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
                [
                    (
                        c.sha, c.short_sha, c.repo, c.branch, c.author_name, c.author_email, c.message, c.timestamp,
                        c.files_changed, c.insertions, c.deletions, c.diff_summary, json.dumps(list(c.ticket_keys)), run_id,
                    )
                    for c in chunk
                ],
            )

    delta = CommitDelta(new_commits, len(commits) - len(new_commits))
    logger.debug("stored commits: %s", delta)
    return delta


def reconcile(known: Iterable[str], observed: Iterable[str]) -> BranchDelta:
    """Classify branch names for one repo.

    new: observed but never stored; updated: observed and already stored;
    gone: stored but not observed in this scan.
    """
    known_set = set(known)
    observed_set = set(observed)
    return BranchDelta(
        new=sorted(observed_set - known_set),
        updated=sorted(observed_set & known_set),
        gone=sorted(known_set - observed_set),
    )


# noinspection SqlResolve
def update_branches(db: Database, repo: str, branches: Iterable[BranchRecord], now: Optional[str] = None) -> BranchDelta:
    """Mark-sweep the stored branches of ``repo`` against one scan's observations.

    Runs in a single transaction: mark all rows inactive, upsert the observed
    branches (first_seen is kept, last_seen and last_commit_* are refreshed),
    leave the rest inactive.
    """
    now = now or to_iso(utcnow())
    observed: Dict[str, BranchRecord] = {}
    for b in branches:
        observed[b.name] = b

    known = [r['name'] for r in db.query('SELECT name FROM branches WHERE repo = ?', (repo,))]
    delta = reconcile(known, observed)

    with db.transaction() as cur:
        cur.execute('UPDATE branches SET is_active = 0 WHERE repo = ?', (repo,))
        for name, b in observed.items():
            cur.execute(
                'INSERT INTO branches(repo, name, author_email, first_seen, last_seen, last_commit_sha, last_commit_date, is_active, ticket_key) '
                'VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?) '
                'ON CONFLICT(repo, name) DO UPDATE SET '
                'last_seen = excluded.last_seen, last_commit_sha = excluded.last_commit_sha, '
                'last_commit_date = excluded.last_commit_date, author_email = excluded.author_email, '
                'is_active = 1, ticket_key = excluded.ticket_key',
                (repo, name, b.last_commit_author_email, now, now, b.last_commit_sha, b.last_commit_date, ticket_key_from_branch(name)),
            )

    if delta.gone:
        logger.info("%s: %d branch(es) no longer observed: %s", repo, len(delta.gone), ", ".join(delta.gone))
    return delta


# noinspection SqlResolve
def update_branch_pr(db: Database, repo: str, branch: str, pr: PullRequestSnapshot) -> bool:
    """Attach the latest pull request snapshot to a stored branch. Returns False when the branch is unknown."""
    with db.transaction() as cur:
        cur.execute(
            'UPDATE branches SET pr_id = ?, pr_title = ?, pr_state = ?, pr_url = ?, pr_target_branch = ?, '
            'pr_reviewers = ?, pr_approvals = ?, pr_created_at = ?, pr_updated_at = ? WHERE repo = ? AND name = ?',
            (
                pr.pr_id, pr.title, pr.state, pr.url, pr.target_branch, json.dumps(pr.reviewers),
                pr.approvals, pr.created_at, pr.updated_at, repo, branch,
            ),
        )
        return cur.rowcount > 0


def _row_to_branch(row) -> StoredBranch:
    pr = None
    if row['pr_id'] is not None:
        pr = PullRequestSnapshot(
            pr_id=row['pr_id'],
            title=row['pr_title'],
            state=row['pr_state'],
            url=row['pr_url'],
            target_branch=row['pr_target_branch'],
            reviewers=load_json_list(row['pr_reviewers']),
            approvals=row['pr_approvals'] or 0,
            created_at=row['pr_created_at'],
            updated_at=row['pr_updated_at'],
        )
    return StoredBranch(
        repo=row['repo'],
        name=row['name'],
        author_email=row['author_email'],
        first_seen=row['first_seen'],
        last_seen=row['last_seen'],
        last_commit_sha=row['last_commit_sha'],
        last_commit_date=row['last_commit_date'],
        is_active=bool(row['is_active']),
        ticket_key=row['ticket_key'],
        pull_request=pr,
    )


# noinspection SqlResolve
def get_branch(db: Database, repo: str, name: str) -> Optional[StoredBranch]:
    row = db.query_one('SELECT * FROM branches WHERE repo = ? AND name = ?', (repo, name))
    return _row_to_branch(row) if row else None


# noinspection SqlResolve
def active_branches(db: Database, repo: str) -> List[StoredBranch]:
    rows = db.query('SELECT * FROM branches WHERE repo = ? AND is_active = 1 ORDER BY name', (repo,))
    return [_row_to_branch(r) for r in rows]


# noinspection SqlResolve
def inactive_branches(db: Database, repo: str) -> List[StoredBranch]:
    rows = db.query('SELECT * FROM branches WHERE repo = ? AND is_active = 0 ORDER BY name', (repo,))
    return [_row_to_branch(r) for r in rows]


# noinspection SqlResolve
def branch_ticket_keys(db: Database, repos: Iterable[str], scope: Optional[RepoScope] = None) -> Dict[Tuple[str, str], str]:
    """Return {(repo, branch): ticket_key} for stored branches that carry a key."""
    repos = list(repos)
    if scope is not None:
        repos = scope.filter(repos)
    result: Dict[Tuple[str, str], str] = {}
    for chunk in chunked(repos):
        rows = db.query(
            f'SELECT repo, name, ticket_key FROM branches WHERE ticket_key IS NOT NULL AND repo IN ({placeholders(len(chunk))})',
            chunk,
        )
        for r in rows:
            result[(r['repo'], r['name'])] = r['ticket_key']
    return result


def pull_requests_by_branch(db: Database, repo: str) -> Mapping[str, PullRequestSnapshot]:
    """Branch name -> PR snapshot for branches of ``repo`` that have one attached."""
    return {b.name: b.pull_request for b in active_branches(db, repo) + inactive_branches(db, repo) if b.pull_request}
