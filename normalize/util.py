"""
Normalization utility helpers.
Small helpers to normalize raw payloads (Jira, Bitbucket, scan files) into normalize.models entities.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from normalize.models import (
    Approval,
    BranchRecord,
    ChangesRequested,
    Comment,
    CommitRecord,
    PRActivityEvent,
    PullRequestRecord,
    StatusChangeEvent,
    TicketRecord,
    Update,
)

COMMENT_TEXT_LIMIT = 500
LAST_COMMENTS = 5


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware datetime (naive values are taken as UTC).

    Accepts the 'Z' suffix and Jira's '+0000' offset form.
    """
    text = (value or '').strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    # Jira sends offsets without a colon: 2024-01-02T10:00:00.000+0000
    if len(text) > 5 and text[-5] in '+-' and text[-4:].isdigit() and 'T' in text:
        text = text[:-2] + ':' + text[-2:]
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def minutes_between(start: str, end: str) -> int:
    delta = parse_timestamp(end) - parse_timestamp(start)
    return int(round(delta.total_seconds() / 60.0))


def extract_adf_text(node: Any) -> str:
    """Recursively extract plain text from Atlassian Document Format content."""
    if not node:
        return ''
    if isinstance(node, str):
        return node
    if not isinstance(node, dict):
        return ''
    if node.get('type') == 'text':
        return node.get('text') or ''
    text = ''
    children = node.get('content')
    if isinstance(children, list):
        text = ''.join(extract_adf_text(child) for child in children)
        if node.get('type') in ('paragraph', 'heading', 'bulletList', 'orderedList', 'listItem'):
            text += '\n'
    return text


def parse_status_changes(raw: Dict[str, Any]) -> List[StatusChangeEvent]:
    """Extract status transitions from an issue changelog, oldest first."""
    changes: List[StatusChangeEvent] = []
    changelog = raw.get('changelog') or {}
    histories = changelog.get('histories', []) if isinstance(changelog, dict) else []
    for h in histories:
        for it in (h.get('items') or []):
            if (it.get('field') or '').lower() != 'status':
                continue
            changes.append(StatusChangeEvent(
                changed_at=h.get('created') or '',
                from_status=it.get('fromString'),
                to_status=it.get('toString') or 'Unknown',
                actor=(h.get('author') or {}).get('displayName'),
            ))
    changes.sort(key=lambda c: c.changed_at)
    return changes


def _name_of(value: Any) -> Optional[str]:
    return value.get('name') if isinstance(value, dict) else value


def normalize_ticket(jira_key: str, raw: Dict[str, Any]) -> TicketRecord:
    """Create a TicketRecord from a raw Jira issue dict (fetched with expand=changelog)."""
    fields = raw.get('fields') or {}
    raw_comments = ((fields.get('comment') or {}).get('comments') or [])[-LAST_COMMENTS:]
    comments = [
        {
            'author': (c.get('author') or {}).get('displayName') or 'Unknown',
            'date': c.get('created'),
            'body': extract_adf_text(c.get('body')).strip(),
        }
        for c in raw_comments
    ]
    return TicketRecord(
        jira_key=jira_key,
        summary=fields.get('summary'),
        description=extract_adf_text(fields.get('description')).strip() or None,
        status=_name_of(fields.get('status')),
        assignee=(fields.get('assignee') or {}).get('displayName'),
        priority=_name_of(fields.get('priority')),
        ticket_type=_name_of(fields.get('issuetype')),
        parent_key=(fields.get('parent') or {}).get('key'),
        subtasks=[s.get('key') for s in (fields.get('subtasks') or []) if s.get('key')],
        labels=list(fields.get('labels') or []),
        last_comments=comments,
        last_updated=fields.get('updated'),
        status_changes=parse_status_changes(raw),
    )


def normalize_pull_request(repo: str, raw: Dict[str, Any]) -> Optional[PullRequestRecord]:
    """Create a PullRequestRecord from a Bitbucket pull request payload; None without a source branch."""
    source_branch = ((raw.get('source') or {}).get('branch') or {}).get('name')
    if not source_branch:
        return None
    participants = raw.get('participants') or []
    reviewers = [
        (p.get('user') or {}).get('display_name') or (p.get('user') or {}).get('nickname') or 'Unknown'
        for p in participants
        if p.get('role') == 'REVIEWER'
    ]
    return PullRequestRecord(
        repo=repo,
        pr_id=int(raw.get('id')),
        title=raw.get('title') or '',
        state=raw.get('state') or 'OPEN',
        url=((raw.get('links') or {}).get('html') or {}).get('href') or '',
        source_branch=source_branch,
        target_branch=((raw.get('destination') or {}).get('branch') or {}).get('name') or '',
        created_at=raw.get('created_on') or '',
        updated_at=raw.get('updated_on') or '',
        author_name=(raw.get('author') or {}).get('display_name'),
        description=raw.get('description'),
        reviewers=reviewers,
        approvals=sum(1 for p in participants if p.get('approved') is True),
        comment_count=int(raw.get('comment_count') or 0),
    )


def parse_activity_entry(entry: Dict[str, Any]) -> Optional[PRActivityEvent]:
    """Map one Bitbucket activity entry onto its event variant; unknown entries yield None."""
    if entry.get('approval'):
        a = entry['approval']
        return Approval(actor=(a.get('user') or {}).get('display_name'), timestamp=a.get('date') or '')

    if entry.get('comment'):
        c = entry['comment']
        raw_text = (c.get('content') or {}).get('raw') or ''
        return Comment(actor=(c.get('user') or {}).get('display_name'), timestamp=c.get('created_on') or '', text=raw_text[:COMMENT_TEXT_LIMIT])

    if entry.get('update'):
        u = entry['update']
        actor = (u.get('author') or {}).get('display_name')
        status_change = ((u.get('changes') or {}).get('status') or {}).get('new')
        if status_change == 'changes_requested' or u.get('state') == 'changes_requested':
            return ChangesRequested(actor=actor, timestamp=u.get('date') or '')
        return Update(
            actor=actor,
            timestamp=u.get('date') or '',
            new_state=u.get('state'),
            commit_hash=((u.get('source') or {}).get('commit') or {}).get('hash'),
        )
    return None


def commit_from_dict(repo: str, raw: Dict[str, Any]) -> CommitRecord:
    """Build a CommitRecord from a scan-file entry (camelCase or snake_case keys).

    Without an explicit key list, ticket keys are parsed from the message followed by the branch name,
    so a key that only appears in the branch is still carried on the commit.
    """
    from correlate.linker import find_issue_keys_in_text

    def pick(*names, default=None):
        for n in names:
            if raw.get(n) is not None:
                return raw[n]
        return default

    sha = pick('sha')
    message = pick('message', default='')
    branch = pick('branch', default='')
    keys = pick('ticketKeys', 'ticket_keys', 'jiraKeys')
    if keys is None:
        keys = find_issue_keys_in_text(f"{message} {branch}")
    return CommitRecord(
        sha=sha,
        short_sha=pick('shortSha', 'short_sha', default=sha[:7]),
        repo=pick('repo', default=repo),
        branch=branch,
        author_name=pick('authorName', 'author_name', default=''),
        author_email=(pick('authorEmail', 'author_email', default='') or '').lower(),
        message=message,
        timestamp=pick('timestamp', 'date', default=''),
        files_changed=int(pick('filesChanged', 'files_changed', default=0)),
        insertions=int(pick('insertions', default=0)),
        deletions=int(pick('deletions', default=0)),
        diff_summary=pick('diffSummary', 'diff_summary', 'diffStat'),
        ticket_keys=tuple(keys),
    )


def branch_from_dict(raw: Dict[str, Any]) -> BranchRecord:
    return BranchRecord(
        name=raw['name'],
        remote=raw.get('remote') or 'origin',
        last_commit_sha=raw.get('lastCommitSha') or raw.get('last_commit_sha') or '',
        last_commit_date=raw.get('lastCommitDate') or raw.get('last_commit_date') or '',
        last_commit_author_email=(raw.get('lastCommitAuthorEmail') or raw.get('last_commit_author_email') or '').lower(),
        last_commit_message=raw.get('lastCommitMessage') or raw.get('last_commit_message') or '',
    )


def load_json_list(raw: Optional[str]) -> list:
    """Decode a JSON array column; corrupt or missing values yield an empty list."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []
