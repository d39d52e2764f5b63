"""
Append-only summary chain storage. The head of a (jira_key, repo) chain is its highest id.
"""

import json
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from normalize.models import TicketSummaryRecord
from normalize.util import load_json_list, to_iso, utcnow
from .database import Database, chunked, placeholders


def _row_to_summary(row) -> TicketSummaryRecord:
    return TicketSummaryRecord(
        id=row['id'],
        run_id=row['run_id'],
        jira_key=row['jira_key'],
        repo=row['repo'],
        commit_shas=tuple(load_json_list(row['commit_shas'])),
        summary_text=row['summary_text'],
        created_at=row['created_at'],
        author_emails=tuple(load_json_list(row['author_emails'])),
        branch_names=tuple(load_json_list(row['branch_names'])),
        session_id=row['session_id'],
        previous_id=row['previous_id'],
    )


# noinspection SqlResolve
def append_summary(
    db: Database,
    jira_key: str,
    repo: str,
    summary_text: str,
    commit_shas: Sequence[str],
    run_id: Optional[int] = None,
    author_emails: Iterable[str] = (),
    branch_names: Iterable[str] = (),
    session_id: Optional[str] = None,
    previous_id: Optional[int] = None,
    created_at: Optional[str] = None,
) -> TicketSummaryRecord:
    """Insert a new chain head. Existing rows are never modified."""
    created_at = created_at or to_iso(utcnow())
    shas = list(dict.fromkeys(commit_shas))
    emails = sorted(set(author_emails))
    names = sorted(set(branch_names))
    with db.transaction() as cur:
        cur.execute(
            'INSERT INTO ticket_summaries(run_id, jira_key, repo, commit_shas, author_emails, branch_names, summary_text, session_id, previous_id, created_at) '
            'VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
            (run_id, jira_key, repo, json.dumps(shas), json.dumps(emails), json.dumps(names), summary_text, session_id, previous_id, created_at),
        )
        new_id = cur.lastrowid
    return TicketSummaryRecord(
        id=new_id,
        run_id=run_id,
        jira_key=jira_key,
        repo=repo,
        commit_shas=tuple(shas),
        summary_text=summary_text,
        created_at=created_at,
        author_emails=tuple(emails),
        branch_names=tuple(names),
        session_id=session_id,
        previous_id=previous_id,
    )


# noinspection SqlResolve
def latest_summary(db: Database, jira_key: str, repo: str) -> Optional[TicketSummaryRecord]:
    row = db.query_one('SELECT * FROM ticket_summaries WHERE jira_key = ? AND repo = ? ORDER BY id DESC LIMIT 1', (jira_key, repo))
    return _row_to_summary(row) if row else None


# noinspection SqlResolve
def summary_history(db: Database, jira_key: str, repo: Optional[str] = None) -> List[TicketSummaryRecord]:
    """All chain links for a ticket, oldest first."""
    if repo is None:
        rows = db.query('SELECT * FROM ticket_summaries WHERE jira_key = ? ORDER BY id', (jira_key,))
    else:
        rows = db.query('SELECT * FROM ticket_summaries WHERE jira_key = ? AND repo = ? ORDER BY id', (jira_key, repo))
    return [_row_to_summary(r) for r in rows]


# noinspection SqlResolve
def summaries_for_run(db: Database, run_id: int) -> List[TicketSummaryRecord]:
    rows = db.query('SELECT * FROM ticket_summaries WHERE run_id = ? ORDER BY jira_key, repo, id', (run_id,))
    return [_row_to_summary(r) for r in rows]


# noinspection SqlResolve
def latest_summaries(db: Database, jira_keys: Iterable[str]) -> Dict[Tuple[str, str], TicketSummaryRecord]:
    """Chain heads for the given tickets, keyed by (jira_key, repo)."""
    heads: Dict[Tuple[str, str], TicketSummaryRecord] = {}
    for chunk in chunked(list(dict.fromkeys(jira_keys))):
        rows = db.query(
            'SELECT s.* FROM ticket_summaries s JOIN ('
            f'  SELECT MAX(id) AS id FROM ticket_summaries WHERE jira_key IN ({placeholders(len(chunk))}) GROUP BY jira_key, repo'
            ') h ON s.id = h.id',
            chunk,
        )
        for r in rows:
            rec = _row_to_summary(r)
            heads[(rec.jira_key, rec.repo)] = rec
    return heads
