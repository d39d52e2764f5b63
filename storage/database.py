"""
SQLite persistence for scans, tickets, pull requests and summaries.
One connection per Database, guarded by a re-entrant lock; writes go through transaction().
"""

import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from normalize.util import to_iso, utcnow

# SQLite caps bound parameters per statement; batch IN (...) lists and inserts below it
CHUNK_SIZE = 500


# noinspection SqlResolve
SQL_CREATE = """
CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    repos_scanned INTEGER DEFAULT 0,
    commits_found INTEGER DEFAULT 0,
    new_commits INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS commits (
    sha TEXT PRIMARY KEY,
    short_sha TEXT,
    repo TEXT NOT NULL,
    branch TEXT,
    author_name TEXT,
    author_email TEXT,
    message TEXT,
    timestamp TEXT,
    files_changed INTEGER DEFAULT 0,
    insertions INTEGER DEFAULT 0,
    deletions INTEGER DEFAULT 0,
    diff_summary TEXT,
    ticket_keys TEXT,
    first_seen_run INTEGER
);
CREATE INDEX IF NOT EXISTS idx_commits_repo_branch ON commits(repo, branch);

CREATE TABLE IF NOT EXISTS branches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repo TEXT NOT NULL,
    name TEXT NOT NULL,
    author_email TEXT,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    last_commit_sha TEXT,
    last_commit_date TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    ticket_key TEXT,
    pr_id INTEGER,
    pr_title TEXT,
    pr_state TEXT,
    pr_url TEXT,
    pr_target_branch TEXT,
    pr_reviewers TEXT,
    pr_approvals INTEGER DEFAULT 0,
    pr_created_at TEXT,
    pr_updated_at TEXT,
    UNIQUE(repo, name)
);

CREATE TABLE IF NOT EXISTS tickets (
    jira_key TEXT PRIMARY KEY,
    summary TEXT,
    description TEXT,
    status TEXT,
    assignee TEXT,
    priority TEXT,
    ticket_type TEXT,
    parent_key TEXT,
    subtasks TEXT,
    labels TEXT,
    last_comments TEXT,
    last_updated TEXT,
    fetched_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ticket_status_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    jira_key TEXT NOT NULL,
    changed_at TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    actor TEXT,
    UNIQUE(jira_key, changed_at, to_status)
);

CREATE TABLE IF NOT EXISTS ticket_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    jira_key TEXT NOT NULL,
    repo TEXT NOT NULL,
    commit_shas TEXT,
    author_emails TEXT,
    branch_names TEXT,
    summary_text TEXT NOT NULL,
    session_id TEXT,
    previous_id INTEGER REFERENCES ticket_summaries(id),
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_summaries_key_repo ON ticket_summaries(jira_key, repo);

CREATE TABLE IF NOT EXISTS sprints (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id INTEGER NOT NULL UNIQUE,
    board_id INTEGER,
    name TEXT,
    state TEXT,
    start_date TEXT,
    end_date TEXT,
    goal TEXT
);

CREATE TABLE IF NOT EXISTS sprint_tickets (
    sprint_id INTEGER NOT NULL REFERENCES sprints(id),
    jira_key TEXT NOT NULL,
    PRIMARY KEY (sprint_id, jira_key)
);

CREATE TABLE IF NOT EXISTS pull_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repo TEXT NOT NULL,
    pr_id INTEGER NOT NULL,
    title TEXT,
    description TEXT,
    state TEXT,
    url TEXT,
    source_branch TEXT,
    target_branch TEXT,
    author_name TEXT,
    reviewers TEXT,
    approvals INTEGER DEFAULT 0,
    comment_count INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT,
    time_to_first_review_mins INTEGER,
    time_to_merge_mins INTEGER,
    review_rounds INTEGER DEFAULT 0,
    metrics_computed_at TEXT,
    UNIQUE(repo, pr_id)
);

CREATE TABLE IF NOT EXISTS pr_activities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pull_request_id INTEGER NOT NULL REFERENCES pull_requests(id),
    type TEXT NOT NULL,
    actor_name TEXT,
    timestamp TEXT NOT NULL,
    text TEXT,
    new_state TEXT,
    commit_hash TEXT
);
CREATE INDEX IF NOT EXISTS idx_pr_activities_pr ON pr_activities(pull_request_id, timestamp);
"""


def chunked(items: Sequence[Any], size: int = CHUNK_SIZE) -> Iterator[Sequence[Any]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


class Database:
    def __init__(self, path: Optional[str] = None):
        """Open (and create if needed) the store.

        :param path: SQLite file path or None for in-memory.
        """
        self.path = path or ':memory:'
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(SQL_CREATE)
            self.conn.commit()

    def close(self):
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run a block of statements atomically; rolls back on any exception."""
        with self._lock:
            cur = self.conn.cursor()
            try:
                yield cur
            except BaseException:
                self.conn.rollback()
                raise
            else:
                self.conn.commit()

    def query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(sql, tuple(params))
            return cur.fetchall()

    def query_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    # --- run lifecycle ---

    # noinspection SqlResolve
    def start_run(self, now: Optional[str] = None) -> int:
        with self.transaction() as cur:
            cur.execute('INSERT INTO runs(started_at) VALUES (?)', (now or to_iso(utcnow()),))
            return cur.lastrowid

    # noinspection SqlResolve
    def complete_run(self, run_id: int, repos_scanned: int, commits_found: int, new_commits: int, now: Optional[str] = None) -> None:
        with self.transaction() as cur:
            cur.execute(
                'UPDATE runs SET completed_at = ?, repos_scanned = ?, commits_found = ?, new_commits = ? WHERE id = ?',
                (now or to_iso(utcnow()), repos_scanned, commits_found, new_commits, run_id),
            )

    # noinspection SqlResolve
    def last_completed_run(self) -> Optional[Dict[str, Any]]:
        row = self.query_one('SELECT * FROM runs WHERE completed_at IS NOT NULL ORDER BY id DESC LIMIT 1')
        return dict(row) if row else None


__all__ = ["Database", "chunked", "placeholders", "CHUNK_SIZE"]
