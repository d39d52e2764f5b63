"""
Ticket metadata, status history and sprint membership storage.
"""

import json
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from normalize.models import Sprint, StatusChangeEvent, TicketRecord
from normalize.util import load_json_list, parse_timestamp, to_iso, utcnow
from .database import Database, chunked, placeholders
from .scope import RepoScope


DEFAULT_TICKET_MAX_AGE_MINUTES = 60


# noinspection SqlResolve
def stale_ticket_keys(db: Database, jira_keys: Iterable[str], now: Optional[datetime] = None, max_age_minutes: int = DEFAULT_TICKET_MAX_AGE_MINUTES) -> List[str]:
    """Keys never fetched, or fetched longer than ``max_age_minutes`` ago, in input order."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=max_age_minutes)
    keys = list(dict.fromkeys(jira_keys))
    fetched: Dict[str, str] = {}
    for chunk in chunked(keys):
        for r in db.query(f'SELECT jira_key, fetched_at FROM tickets WHERE jira_key IN ({placeholders(len(chunk))})', chunk):
            fetched[r['jira_key']] = r['fetched_at']
    return [k for k in keys if k not in fetched or parse_timestamp(fetched[k]) < cutoff]


# noinspection SqlResolve
def upsert_tickets(db: Database, tickets: Iterable[TicketRecord], now: Optional[datetime] = None) -> int:
    fetched_at = to_iso(now or utcnow())
    count = 0
    with db.transaction() as cur:
        for t in tickets:
            cur.execute(
                'INSERT INTO tickets(jira_key, summary, description, status, assignee, priority, ticket_type, parent_key, subtasks, labels, last_comments, last_updated, fetched_at) '
                'VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) '
                'ON CONFLICT(jira_key) DO UPDATE SET summary = excluded.summary, description = excluded.description, '
                'status = excluded.status, assignee = excluded.assignee, priority = excluded.priority, '
                'ticket_type = excluded.ticket_type, parent_key = excluded.parent_key, subtasks = excluded.subtasks, '
                'labels = excluded.labels, last_comments = excluded.last_comments, last_updated = excluded.last_updated, '
                'fetched_at = excluded.fetched_at',
                (
                    t.jira_key, t.summary, t.description, t.status, t.assignee, t.priority, t.ticket_type, t.parent_key,
                    json.dumps(t.subtasks), json.dumps(t.labels), json.dumps(t.last_comments), t.last_updated, fetched_at,
                ),
            )
            count += 1
    return count


def _row_to_ticket(row) -> TicketRecord:
    return TicketRecord(
        jira_key=row['jira_key'],
        summary=row['summary'],
        description=row['description'],
        status=row['status'],
        assignee=row['assignee'],
        priority=row['priority'],
        ticket_type=row['ticket_type'],
        parent_key=row['parent_key'],
        subtasks=load_json_list(row['subtasks']),
        labels=load_json_list(row['labels']),
        last_comments=load_json_list(row['last_comments']),
        last_updated=row['last_updated'],
    )


# noinspection SqlResolve
def tickets_by_keys(db: Database, jira_keys: Iterable[str]) -> Dict[str, TicketRecord]:
    result: Dict[str, TicketRecord] = {}
    for chunk in chunked(list(dict.fromkeys(jira_keys))):
        for r in db.query(f'SELECT * FROM tickets WHERE jira_key IN ({placeholders(len(chunk))})', chunk):
            result[r['jira_key']] = _row_to_ticket(r)
    return result


# noinspection SqlResolve
def store_status_changes(db: Database, jira_key: str, changes: Iterable[StatusChangeEvent]) -> int:
    """Insert status transitions, skipping any (jira_key, changed_at, to_status) already stored. Returns rows added."""
    added = 0
    with db.transaction() as cur:
        for c in changes:
            cur.execute(
                'INSERT OR IGNORE INTO ticket_status_changes(jira_key, changed_at, from_status, to_status, actor) VALUES (?, ?, ?, ?, ?)',
                (jira_key, c.changed_at, c.from_status, c.to_status, c.actor),
            )
            added += cur.rowcount
    return added


# noinspection SqlResolve
def status_changes_for(db: Database, jira_keys: Iterable[str]) -> Dict[str, List[StatusChangeEvent]]:
    """Status history per key, oldest first. Keys without history map to an empty list."""
    keys = list(dict.fromkeys(jira_keys))
    result: Dict[str, List[StatusChangeEvent]] = {k: [] for k in keys}
    for chunk in chunked(keys):
        rows = db.query(
            f'SELECT * FROM ticket_status_changes WHERE jira_key IN ({placeholders(len(chunk))}) ORDER BY changed_at, id',
            chunk,
        )
        for r in rows:
            result[r['jira_key']].append(StatusChangeEvent(r['changed_at'], r['from_status'], r['to_status'], r['actor']))
    return result


def _row_to_sprint(row) -> Sprint:
    return Sprint(
        id=row['id'],
        external_id=row['external_id'],
        board_id=row['board_id'],
        name=row['name'],
        state=row['state'],
        start_date=row['start_date'],
        end_date=row['end_date'],
        goal=row['goal'],
    )


# noinspection SqlResolve
def upsert_sprints(db: Database, sprints: Iterable[Sprint]) -> List[Sprint]:
    """Insert or refresh sprints by external id; returns them with storage ids filled in."""
    stored: List[Sprint] = []
    with db.transaction() as cur:
        for s in sprints:
            cur.execute(
                'INSERT INTO sprints(external_id, board_id, name, state, start_date, end_date, goal) VALUES (?, ?, ?, ?, ?, ?, ?) '
                'ON CONFLICT(external_id) DO UPDATE SET board_id = excluded.board_id, name = excluded.name, state = excluded.state, '
                'start_date = excluded.start_date, end_date = excluded.end_date, goal = excluded.goal',
                (s.external_id, s.board_id, s.name, s.state, s.start_date, s.end_date, s.goal),
            )
            cur.execute('SELECT id FROM sprints WHERE external_id = ?', (s.external_id,))
            s.id = cur.fetchone()['id']
            stored.append(s)
    return stored


# noinspection SqlResolve
def set_sprint_tickets(db: Database, sprint_id: int, jira_keys: Iterable[str]) -> None:
    """Replace the ticket membership of a sprint."""
    keys = list(dict.fromkeys(jira_keys))
    with db.transaction() as cur:
        cur.execute('DELETE FROM sprint_tickets WHERE sprint_id = ?', (sprint_id,))
        cur.executemany('INSERT INTO sprint_tickets(sprint_id, jira_key) VALUES (?, ?)', [(sprint_id, k) for k in keys])


# noinspection SqlResolve
def sprint_by_id(db: Database, sprint_id: int) -> Optional[Sprint]:
    row = db.query_one('SELECT * FROM sprints WHERE id = ?', (sprint_id,))
    return _row_to_sprint(row) if row else None


# noinspection SqlResolve
def sprint_by_external_id(db: Database, external_id: int) -> Optional[Sprint]:
    row = db.query_one('SELECT * FROM sprints WHERE external_id = ?', (external_id,))
    return _row_to_sprint(row) if row else None


# noinspection SqlResolve
def active_sprint(db: Database) -> Optional[Sprint]:
    row = db.query_one("SELECT * FROM sprints WHERE state = 'active' ORDER BY start_date DESC, id DESC LIMIT 1")
    return _row_to_sprint(row) if row else None


# noinspection SqlResolve
def sprint_ticket_keys(db: Database, sprint_id: int) -> List[str]:
    return [r['jira_key'] for r in db.query('SELECT jira_key FROM sprint_tickets WHERE sprint_id = ? ORDER BY jira_key', (sprint_id,))]


# noinspection SqlResolve
def sprint_commit_timestamps(db: Database, sprint_id: int, scope: Optional[RepoScope] = None) -> List[str]:
    """Timestamps of stored commits on branches bound to one of the sprint's tickets."""
    scope = scope or RepoScope()
    clause, params = scope.sql('c.repo')
    rows = db.query(
        'SELECT c.timestamp FROM commits c '
        'JOIN branches b ON b.repo = c.repo AND b.name = c.branch '
        'JOIN sprint_tickets st ON st.jira_key = b.ticket_key '
        f'WHERE st.sprint_id = ? AND {clause} ORDER BY c.timestamp',
        (sprint_id,) + tuple(params),
    )
    return [r['timestamp'] for r in rows if r['timestamp']]
