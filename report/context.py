"""
Assembles the input for the external report renderer: ticket sections, burndown series,
sprint aggregates, reviewer leaderboard and run totals. No text formatting happens here.
"""
import json
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional

from correlate.models import TicketWorkBundle, is_orphan_key
from normalize.models import CommitRecord, TicketRecord
from scoring.burndown import Burndown
from scoring.review_metrics import ReviewerStats


def _commit_row(c: CommitRecord) -> Dict[str, Any]:
    return {
        'sha': c.sha,
        'short_sha': c.short_sha,
        'subject': c.subject,
        'author': c.author_name,
        'author_email': c.author_email,
        'branch': c.branch,
        'date': c.timestamp,
        'files_changed': c.files_changed,
        'insertions': c.insertions,
        'deletions': c.deletions,
    }


def _ticket_fields(t: Optional[TicketRecord]) -> Optional[Dict[str, Any]]:
    if t is None:
        return None
    return {
        'key': t.jira_key,
        'summary': t.summary,
        'status': t.status,
        'assignee': t.assignee,
        'priority': t.priority,
        'type': t.ticket_type,
        'labels': t.labels,
    }


def ticket_sections(
    bundles: Mapping[str, Mapping[str, TicketWorkBundle]],
    tickets: Mapping[str, TicketRecord],
    outcomes: Iterable[Any] = (),
    heads: Optional[Mapping[tuple, Any]] = None,
) -> List[Dict[str, Any]]:
    """One section per ticket key; each lists its repos with the chain head text and commit rows.

    ``outcomes`` are this run's summarize.TicketOutcome values; ``heads`` are stored chain
    heads keyed by (ticket key, repo), used when a bundle was not summarized this run.
    """
    by_pair = {(o.ticket_key, o.repo): o for o in outcomes}
    heads = heads or {}
    sections: List[Dict[str, Any]] = []
    for key in sorted(bundles):
        repos = []
        for repo in sorted(bundles[key]):
            bundle = bundles[key][repo]
            outcome = by_pair.get((key, repo))
            head = outcome.summary if outcome is not None and outcome.summary is not None else heads.get((key, repo))
            repos.append({
                'repo': repo,
                'branches': sorted(bundle.branch_names),
                'authors': sorted(bundle.author_emails),
                'summary': head.summary_text if head is not None else None,
                'summary_action': outcome.action if outcome is not None else None,
                'summary_error': outcome.error if outcome is not None else None,
                'commits': [_commit_row(c) for c in sorted(bundle.commits, key=lambda c: c.timestamp)],
            })
        sections.append({
            'ticket_key': key,
            'orphan': is_orphan_key(key),
            'ticket': _ticket_fields(tickets.get(key)),
            'repos': repos,
        })
    return sections


def build_report_context(
    run: Mapping[str, Any],
    sections: List[Dict[str, Any]],
    burndown: Optional[Burndown] = None,
    reviewers: Iterable[ReviewerStats] = (),
    generated_at: Optional[str] = None,
    sprint_stats: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        'generated_at': generated_at,
        'run': dict(run),
        'tickets': sections,
        'burndown': burndown.to_dict() if burndown is not None else None,
        'sprint_stats': dict(sprint_stats) if sprint_stats is not None else None,
        'reviewers': [r.to_dict() for r in reviewers],
    }


def render_json(context: Mapping[str, Any]) -> str:
    return json.dumps(context, indent=2, default=str)


def write_report_context(path: str, context: Mapping[str, Any]) -> str:
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as fh:
        fh.write(render_json(context))
    return path
