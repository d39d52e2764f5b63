"""
Unified data models for scanned commits, branches, tickets and pull requests.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union


@dataclass(frozen=True)
class CommitRecord:
    """
    A commit as produced by the scan source. Immutable once stored; identity is the sha.
    """
    sha: str
    short_sha: str
    repo: str
    branch: str
    author_name: str
    author_email: str
    message: str
    timestamp: str
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    diff_summary: Optional[str] = None
    ticket_keys: Tuple[str, ...] = ()

    @property
    def subject(self) -> str:
        return self.message.split("\n", 1)[0]


class BranchRecord:
    """
    A branch as observed by one scan.
    """
    def __init__(self, name: str, last_commit_sha: str, last_commit_date: str, last_commit_author_email: str, last_commit_message: str = '', remote: str = 'origin'):
        self.name = name
        self.remote = remote
        self.last_commit_sha = last_commit_sha
        self.last_commit_date = last_commit_date
        self.last_commit_author_email = last_commit_author_email
        self.last_commit_message = last_commit_message


class PullRequestSnapshot:
    """
    Pull request details attached to a stored branch row.
    """
    def __init__(self, pr_id: int, title: str, state: str, url: str, target_branch: str, reviewers: Optional[List[str]] = None, approvals: int = 0, created_at: Optional[str] = None, updated_at: Optional[str] = None):
        self.pr_id = pr_id
        self.title = title
        self.state = state
        self.url = url
        self.target_branch = target_branch
        self.reviewers = reviewers or []
        self.approvals = approvals
        self.created_at = created_at
        self.updated_at = updated_at


class StoredBranch:
    """
    Persisted branch row. first_seen never changes after insert; liveness is refreshed every scan.
    """
    def __init__(self, repo: str, name: str, author_email: str, first_seen: str, last_seen: str, last_commit_sha: Optional[str] = None, last_commit_date: Optional[str] = None, is_active: bool = True, ticket_key: Optional[str] = None, pull_request: Optional[PullRequestSnapshot] = None):
        self.repo = repo
        self.name = name
        self.author_email = author_email
        self.first_seen = first_seen
        self.last_seen = last_seen
        self.last_commit_sha = last_commit_sha
        self.last_commit_date = last_commit_date
        self.is_active = is_active
        self.ticket_key = ticket_key
        self.pull_request = pull_request


@dataclass(frozen=True)
class StatusChangeEvent:
    """A single status transition from a ticket changelog."""
    changed_at: str
    from_status: Optional[str]
    to_status: str
    actor: Optional[str] = None


class TicketRecord:
    """
    Normalized issue-tracker ticket.
    """
    def __init__(self, jira_key: str, summary: Optional[str] = None, description: Optional[str] = None, status: Optional[str] = None, assignee: Optional[str] = None, priority: Optional[str] = None, ticket_type: Optional[str] = None, parent_key: Optional[str] = None, subtasks: Optional[List[str]] = None, labels: Optional[List[str]] = None, last_comments: Optional[List[dict]] = None, last_updated: Optional[str] = None, status_changes: Optional[List[StatusChangeEvent]] = None):
        self.jira_key = jira_key
        self.summary = summary
        self.description = description
        self.status = status
        self.assignee = assignee
        self.priority = priority
        self.ticket_type = ticket_type
        self.parent_key = parent_key
        self.subtasks = subtasks or []
        self.labels = labels or []
        self.last_comments = last_comments or []  # [{'author': ..., 'date': ..., 'body': ...}]
        self.last_updated = last_updated
        self.status_changes = status_changes or []


class PullRequestRecord:
    """
    Pull request row: current provider state plus cached review metrics.
    """
    def __init__(self, repo: str, pr_id: int, title: str, state: str, url: str, source_branch: str, target_branch: str, created_at: str, updated_at: str, author_name: Optional[str] = None, description: Optional[str] = None, reviewers: Optional[List[str]] = None, approvals: int = 0, comment_count: int = 0, row_id: Optional[int] = None, time_to_first_review_mins: Optional[int] = None, time_to_merge_mins: Optional[int] = None, review_rounds: int = 0, metrics_computed_at: Optional[str] = None):
        self.repo = repo
        self.pr_id = pr_id
        self.title = title
        self.state = state
        self.url = url
        self.source_branch = source_branch
        self.target_branch = target_branch
        self.created_at = created_at
        self.updated_at = updated_at
        self.author_name = author_name
        self.description = description
        self.reviewers = reviewers or []
        self.approvals = approvals
        self.comment_count = comment_count
        self.row_id = row_id
        self.time_to_first_review_mins = time_to_first_review_mins
        self.time_to_merge_mins = time_to_merge_mins
        self.review_rounds = review_rounds
        self.metrics_computed_at = metrics_computed_at

    def snapshot(self) -> PullRequestSnapshot:
        return PullRequestSnapshot(self.pr_id, self.title, self.state, self.url, self.target_branch, self.reviewers, self.approvals, self.created_at, self.updated_at)


# --- pull request activity: one variant per event kind ---

@dataclass(frozen=True)
class Approval:
    actor: Optional[str]
    timestamp: str
    kind = 'approval'


@dataclass(frozen=True)
class Comment:
    actor: Optional[str]
    timestamp: str
    text: str = ''
    kind = 'comment'


@dataclass(frozen=True)
class Update:
    actor: Optional[str]
    timestamp: str
    new_state: Optional[str] = None
    commit_hash: Optional[str] = None
    kind = 'update'


@dataclass(frozen=True)
class ChangesRequested:
    actor: Optional[str]
    timestamp: str
    kind = 'request_changes'


PRActivityEvent = Union[Approval, Comment, Update, ChangesRequested]

ACTIVITY_KINDS = {cls.kind: cls for cls in (Approval, Comment, Update, ChangesRequested)}


@dataclass(frozen=True)
class TicketSummaryRecord:
    """
    One link of the append-only summary chain for a (jira_key, repo) pair.
    """
    id: int
    run_id: Optional[int]
    jira_key: str
    repo: str
    commit_shas: Tuple[str, ...]
    summary_text: str
    created_at: str
    author_emails: Tuple[str, ...] = ()
    branch_names: Tuple[str, ...] = ()
    session_id: Optional[str] = None
    previous_id: Optional[int] = None


class Sprint:
    """
    Issue-tracker sprint with its date range.
    """
    def __init__(self, external_id: int, board_id: int, name: str, state: str, start_date: Optional[str] = None, end_date: Optional[str] = None, goal: Optional[str] = None, id: Optional[int] = None):
        self.id = id
        self.external_id = external_id
        self.board_id = board_id
        self.name = name
        self.state = state
        self.start_date = start_date
        self.end_date = end_date
        self.goal = goal


@dataclass
class RepoScanResult:
    """Output of the scan source for one repository."""
    repo: str
    path: Optional[str]
    commits: List[CommitRecord] = field(default_factory=list)
    branches: List[BranchRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
