"""
Incremental summary chain.

For each (ticket, repo) the latest stored summary decides what this run does:
- reuse: the head is within the window and no commit is new; its text is carried forward as-is
- extend: the head is within the window and some commits are new; only those are summarized,
  with the old text as context
- regenerate: no head, or the head is older than the window; the whole bundle is summarized

Every outcome appends a new head. Earlier links are never modified.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional

from correlate.models import TicketWorkBundle, is_orphan_key
from ingest.git import GitError, checked_out
from normalize.models import CommitRecord, PullRequestSnapshot, TicketRecord, TicketSummaryRecord
from normalize.util import parse_timestamp, to_iso, utcnow
from storage.database import Database
from storage.summaries import append_summary, latest_summary
from .invoke import SummarizationError, SummaryRequest
from .prompt import DEFAULT_MAX_DIFF_LINES, build_ticket_prompt

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(days=7)

REUSE = 'reuse'
EXTEND = 'extend'
REGENERATE = 'regenerate'


class SummaryPlan:
    def __init__(self, action: str, previous: Optional[TicketSummaryRecord], commits: List[CommitRecord]):
        self.action = action
        self.previous = previous
        self.commits = commits

    def __repr__(self):
        return f"SummaryPlan(action={self.action!r}, commits={len(self.commits)})"


class TicketOutcome:
    def __init__(self, ticket_key: str, repo: str, action: Optional[str], summary: Optional[TicketSummaryRecord] = None, error: Optional[str] = None):
        self.ticket_key = ticket_key
        self.repo = repo
        self.action = action
        self.summary = summary
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None


def plan_summary(previous: Optional[TicketSummaryRecord], bundle: TicketWorkBundle, now: Optional[datetime] = None, window: timedelta = DEFAULT_WINDOW) -> SummaryPlan:
    now = now or utcnow()
    if previous is not None and now - parse_timestamp(previous.created_at) <= window:
        seen = set(previous.commit_shas)
        new_commits = [c for c in bundle.commits if c.sha not in seen]
        if not new_commits:
            return SummaryPlan(REUSE, previous, [])
        return SummaryPlan(EXTEND, previous, new_commits)
    return SummaryPlan(REGENERATE, previous, list(bundle.commits))


def advance_chain(
    db: Database,
    ticket_key: str,
    repo: str,
    bundle: TicketWorkBundle,
    run_id: Optional[int],
    summarizer,
    now: Optional[datetime] = None,
    window: timedelta = DEFAULT_WINDOW,
    ticket: Optional[TicketRecord] = None,
    pr_by_branch: Optional[Mapping[str, PullRequestSnapshot]] = None,
    repo_path: Optional[str] = None,
    checked_out_branch: Optional[str] = None,
    max_diff_lines: int = DEFAULT_MAX_DIFF_LINES,
    plan: Optional[SummaryPlan] = None,
) -> TicketOutcome:
    """Append the next chain head for (ticket_key, repo). Raises SummarizationError if the summarizer fails."""
    now = now or utcnow()
    if plan is None:
        plan = plan_summary(latest_summary(db, ticket_key, repo), bundle, now, window)
    previous = plan.previous
    created_at = to_iso(now)

    if plan.action == REUSE:
        record = append_summary(
            db, ticket_key, repo, previous.summary_text, previous.commit_shas, run_id=run_id,
            author_emails=set(previous.author_emails) | bundle.author_emails,
            branch_names=set(previous.branch_names) | bundle.branch_names,
            session_id=previous.session_id, previous_id=previous.id, created_at=created_at,
        )
        return TicketOutcome(ticket_key, repo, REUSE, record)

    prompt = build_ticket_prompt(
        ticket_key, repo, bundle,
        commits=plan.commits,
        ticket=None if is_orphan_key(ticket_key) else ticket,
        pr_by_branch=pr_by_branch,
        previous=previous if plan.action == EXTEND else None,
        checked_out_branch=checked_out_branch,
        max_diff_lines=max_diff_lines,
    )
    result = summarizer.summarize(SummaryRequest(ticket_key, repo, prompt, cwd=repo_path))

    if plan.action == EXTEND:
        shas = list(previous.commit_shas) + [c.sha for c in plan.commits]
        emails = set(previous.author_emails) | bundle.author_emails
        branches = set(previous.branch_names) | bundle.branch_names
    else:
        shas = bundle.commit_shas
        emails = bundle.author_emails
        branches = bundle.branch_names

    record = append_summary(
        db, ticket_key, repo, result.text, shas, run_id=run_id,
        author_emails=emails, branch_names=branches, session_id=result.session_id,
        previous_id=previous.id if previous else None, created_at=created_at,
    )
    return TicketOutcome(ticket_key, repo, plan.action, record)


def summarize_bundles(
    db: Database,
    bundles: Mapping[str, Mapping[str, TicketWorkBundle]],
    run_id: Optional[int],
    summarizer,
    repo_paths: Mapping[str, Optional[str]],
    tickets: Optional[Mapping[str, TicketRecord]] = None,
    pr_by_repo: Optional[Mapping[str, Mapping[str, PullRequestSnapshot]]] = None,
    now: Optional[datetime] = None,
    window: timedelta = DEFAULT_WINDOW,
    max_diff_lines: int = DEFAULT_MAX_DIFF_LINES,
) -> List[TicketOutcome]:
    """
    Advance the chain of every (ticket, repo) bundle, one summarizer call at a time.

    Parameters:
        bundles: ticket key -> repo -> bundle, as produced by correlate.group_commits_by_ticket.
        repo_paths: repo name -> local working copy; a missing path skips the checkout.
        tickets: stored ticket metadata by key, used as prompt context.
        pr_by_repo: repo -> branch -> PR snapshot, used as prompt context.

    A ticket whose summarization fails is reported with ``error`` set and the loop moves on.
    """
    now = now or utcnow()
    tickets = tickets or {}
    pr_by_repo = pr_by_repo or {}
    outcomes: List[TicketOutcome] = []

    for ticket_key in sorted(bundles):
        for repo in sorted(bundles[ticket_key]):
            bundle = bundles[ticket_key][repo]
            plan = plan_summary(latest_summary(db, ticket_key, repo), bundle, now, window)
            kwargs: Dict[str, object] = dict(
                now=now, window=window, ticket=tickets.get(ticket_key), pr_by_branch=pr_by_repo.get(repo, {}),
                max_diff_lines=max_diff_lines, plan=plan,
            )
            try:
                if plan.action == REUSE:
                    outcome = advance_chain(db, ticket_key, repo, bundle, run_id, summarizer, **kwargs)
                else:
                    repo_path = repo_paths.get(repo)
                    with checked_out(repo_path, bundle.primary_branch()) as branch:
                        outcome = advance_chain(
                            db, ticket_key, repo, bundle, run_id, summarizer,
                            repo_path=repo_path, checked_out_branch=branch, **kwargs
                        )
            except (SummarizationError, GitError) as ex:
                logger.error("summary for %s in %s failed: %s", ticket_key, repo, ex)
                outcomes.append(TicketOutcome(ticket_key, repo, plan.action, error=str(ex)))
                continue
            logger.info("%s in %s: %s", ticket_key, repo, outcome.action)
            outcomes.append(outcome)
    return outcomes
