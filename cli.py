"""
CLI entry point for shipsignal. Wires the pipeline:
scan file -> delta store -> pull requests + review metrics -> tickets + sprints -> correlation -> summary chain -> report input
"""

import argparse
import json
import logging
import time
from contextlib import nullcontext
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from correlate.linker import filter_allowed_keys, group_commits_by_ticket
from correlate.models import is_orphan_key
from ingest.bitbucket import BitbucketClient, api_url_from_base, latest_pr_per_branch
from ingest.jira import JiraClient
from ingest.scan import ScanFileError, load_scan_results
from normalize.models import RepoScanResult, Sprint
from normalize.util import to_iso, utcnow
from report.context import build_report_context, ticket_sections, write_report_context
from scoring.burndown import Burndown, reconstruct_burndown, status_breakdown
from scoring.review_metrics import compute_pr_metrics, reviewer_leaderboard, sprint_pr_stats
from settings.loader import ConfigError, Settings, load_settings, require_integrations
from settings.log import setup_logging
from storage.database import Database
from storage.delta import branch_ticket_keys, pull_requests_by_branch, store_commits, update_branch_pr, update_branches
from storage.lock import WriterLockError, writer_lock
from storage.pull_requests import activities_for, cache_pr_metrics, pull_requests_for, stale_activity_prs, store_activities, upsert_pull_requests
from storage.retry import configure_retry
from storage.scope import RepoScope
from storage.summaries import latest_summaries
from storage.tickets import (
    active_sprint,
    set_sprint_tickets,
    sprint_by_external_id,
    sprint_by_id,
    sprint_commit_timestamps,
    sprint_ticket_keys,
    stale_ticket_keys,
    status_changes_for,
    store_status_changes,
    tickets_by_keys,
    upsert_sprints,
    upsert_tickets,
)
from summarize.chain import summarize_bundles
from summarize.invoke import CommandSummarizer

logger = logging.getLogger("shipsignal")


def _print_json(obj):
    print(json.dumps(obj, indent=2, default=str))


def sync_pull_requests(db: Database, client: BitbucketClient, repo: str, now: datetime, max_age_minutes: int, pr_delay: float = 0.2) -> Dict[str, int]:
    """Refresh PR rows for one repo, then re-read activity and recompute metrics for stale PRs."""
    stored = upsert_pull_requests(db, client.fetch_pull_requests(repo))
    for branch, pr in latest_pr_per_branch(stored).items():
        update_branch_pr(db, repo, branch, pr.snapshot())

    refreshed = 0
    for i, pr in enumerate(stale_activity_prs(db, repo, now, max_age_minutes)):
        if i and pr_delay:
            time.sleep(pr_delay)
        events = client.fetch_activity(repo, pr.pr_id)
        if events is None:
            # leave metrics unstamped so the next run tries again
            continue
        store_activities(db, pr.row_id, events)
        cache_pr_metrics(db, pr.row_id, compute_pr_metrics(pr, activities_for(db, pr.row_id)), now)
        refreshed += 1
    return {'pull_requests': len(stored), 'metrics_refreshed': refreshed}


def sync_sprints(db: Database, client: JiraClient, project_keys: Iterable[str], count: int) -> List[Sprint]:
    """Store the recent sprints of each project's scrum board and their ticket membership."""
    synced: List[Sprint] = []
    for project in project_keys:
        board_id = client.fetch_board_id(project)
        if board_id is None:
            print(f"Sprints: no scrum board found for project {project}")
            continue
        for sprint in upsert_sprints(db, client.fetch_sprints(board_id, count)):
            if sprint.state != 'future':
                set_sprint_tickets(db, sprint.id, client.fetch_sprint_issue_keys(sprint.external_id))
            synced.append(sprint)
    return synced


def sync_tickets(db: Database, client: JiraClient, jira_keys: Iterable[str], project_keys: List[str], now: datetime, max_age_minutes: int) -> Dict[str, int]:
    """Fetch metadata and status history for keys that are missing or older than ``max_age_minutes``."""
    keys = [k for k in dict.fromkeys(jira_keys) if not is_orphan_key(k)]
    if project_keys:
        keys, skipped = filter_allowed_keys(keys, project_keys)
        if skipped:
            logger.info("skipping %d key(s) outside configured projects", len(skipped))
    stale = stale_ticket_keys(db, keys, now, max_age_minutes)
    tickets, errors = client.fetch_tickets(stale)
    upsert_tickets(db, tickets, now)
    changes = 0
    for t in tickets:
        changes += store_status_changes(db, t.jira_key, t.status_changes)
    return {'requested': len(stale), 'fetched': len(tickets), 'errors': len(errors), 'status_changes': changes}


def resolve_sprint(db: Database, sprint_ref: str) -> Optional[Sprint]:
    """'active', a stored sprint id, or a Jira sprint id."""
    if sprint_ref == 'active':
        return active_sprint(db)
    try:
        ref = int(sprint_ref)
    except ValueError:
        return None
    return sprint_by_id(db, ref) or sprint_by_external_id(db, ref)


def compute_burndown(db: Database, sprint: Sprint, scope: RepoScope) -> Burndown:
    keys = sprint_ticket_keys(db, sprint.id)
    return reconstruct_burndown(sprint, status_changes_for(db, keys), sprint_commit_timestamps(db, sprint.id, scope))


def compute_sprint_stats(db: Database, sprint: Sprint, repos: Iterable[str], scope: RepoScope) -> Dict[str, object]:
    """Current ticket status counts and merged-PR aggregates for a sprint's tickets."""
    keys = sprint_ticket_keys(db, sprint.id)
    repos = scope.filter(repos)
    tickets = tickets_by_keys(db, keys)
    prs = [pr for repo in repos for pr in pull_requests_for(db, repo)]
    return {
        'sprint': sprint.name,
        'tickets': status_breakdown(tickets[k].status if k in tickets else None for k in keys),
        'pull_requests': sprint_pr_stats(prs, keys, branch_ticket_keys(db, repos, scope)).to_dict(),
    }


def run_pipeline(args, settings: Settings, db: Database, scan_results: List[RepoScanResult], clients: Dict[str, object]) -> Dict[str, object]:
    """Execute one scan run against an open database and return run totals."""
    now = utcnow()
    scope = settings.scope
    run_id = db.start_run(to_iso(now))
    totals = {'run_id': run_id, 'repos_scanned': len(scan_results), 'commits_found': 0, 'new_commits': 0, 'existing_commits': 0}

    for result in scan_results:
        delta = store_commits(db, result.commits, run_id)
        branches = update_branches(db, result.repo, result.branches, to_iso(now))
        totals['commits_found'] += len(result.commits)
        totals['new_commits'] += len(delta.new_commits)
        totals['existing_commits'] += delta.existing_count
        print(f"{result.repo}: {len(delta.new_commits)} new commit(s), {delta.existing_count} already stored; "
              f"branches +{len(branches.new)} ~{len(branches.updated)} gone {len(branches.gone)}")

    in_scope = [r for r in scan_results if scope.includes(r.repo)]
    repos = [r.repo for r in in_scope]

    bitbucket = clients.get('bitbucket')
    if bitbucket is not None:
        for repo in repos:
            stats = sync_pull_requests(db, bitbucket, repo, now, settings.pr_activity_max_age_minutes, float(settings.bitbucket.get('page_delay_seconds') or 0))
            print(f"{repo}: {stats['pull_requests']} pull request(s), metrics refreshed for {stats['metrics_refreshed']}")

    bundles = group_commits_by_ticket(in_scope, branch_ticket_keys(db, repos, scope))
    print(f"Correlated {sum(len(r) for r in bundles.values())} ticket/repo bundle(s) across {len(bundles)} key(s)")

    jira = clients.get('jira')
    if jira is not None:
        project_keys = list(settings.jira.get('project_keys') or [])
        sprints = sync_sprints(db, jira, project_keys, int(settings.jira.get('recent_sprints') or 10))
        wanted = list(bundles)
        current = active_sprint(db)
        if current is not None:
            wanted += sprint_ticket_keys(db, current.id)
        stats = sync_tickets(db, jira, wanted, project_keys, now, settings.ticket_max_age_minutes)
        print(f"Jira: {len(sprints)} sprint(s); {stats['fetched']}/{stats['requested']} stale ticket(s) refreshed, {stats['errors']} error(s)")

    tickets = tickets_by_keys(db, [k for k in bundles if not is_orphan_key(k)])
    outcomes = []
    if not args.no_summary and bundles:
        summarizer = CommandSummarizer(settings.summaries['command'], settings.summaries['timeout_seconds'])
        outcomes = summarize_bundles(
            db, bundles, run_id, summarizer,
            repo_paths={r.repo: r.path for r in in_scope},
            tickets=tickets,
            pr_by_repo={repo: pull_requests_by_branch(db, repo) for repo in repos},
            now=now,
            window=settings.summary_window,
            max_diff_lines=int(settings.summaries['max_diff_lines']),
        )
        failed = [o for o in outcomes if not o.ok]
        print(f"Summaries: {len(outcomes) - len(failed)} written, {len(failed)} failed")
        for o in failed:
            print(f"  {o.ticket_key} ({o.repo}): {o.error}")

    burndown = None
    sprint_stats = None
    if args.burndown:
        sprint = resolve_sprint(db, args.burndown)
        if sprint is None or not sprint.start_date or not sprint.end_date:
            print(f"Burndown: sprint {args.burndown!r} not found or has no dates")
        else:
            burndown = compute_burndown(db, sprint, scope)
            sprint_stats = compute_sprint_stats(db, sprint, repos, scope)
            _print_json({'sprint': sprint.name, **burndown.to_dict()})
            _print_json(sprint_stats)

    if args.report_out:
        prs = [pr for repo in repos for pr in pull_requests_for(db, repo)]
        leaderboard = reviewer_leaderboard(prs, {pr.row_id: activities_for(db, pr.row_id) for pr in prs})
        sections = ticket_sections(bundles, tickets, outcomes, latest_summaries(db, bundles))
        context = build_report_context(totals, sections, burndown, leaderboard, generated_at=to_iso(utcnow()), sprint_stats=sprint_stats)
        print(f"Wrote report input to {write_report_context(args.report_out, context)}")

    db.complete_run(run_id, totals['repos_scanned'], totals['commits_found'], totals['new_commits'], to_iso(utcnow()))
    return totals


def build_clients(settings: Settings, creds: Dict[str, Optional[tuple]]) -> Dict[str, object]:
    clients: Dict[str, object] = {}
    if creds.get('jira'):
        clients['jira'] = JiraClient(settings.jira['base_url'], *creds['jira'])
    if creds.get('bitbucket'):
        clients['bitbucket'] = BitbucketClient(
            settings.bitbucket['workspace'], *creds['bitbucket'],
            api_url=api_url_from_base(settings.bitbucket.get('base_url')),
            page_delay=float(settings.bitbucket.get('page_delay_seconds') or 0),
        )
    return clients


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delivery signal correlation: commits, branches, pull requests and tickets")
    parser.add_argument("--config", type=str, default="", help="Path to YAML config (default config/shipsignal.yaml)")
    parser.add_argument("--scan-file", type=str, required=True, help="JSON output of the git history scanner")
    parser.add_argument("--db", type=str, default="", help="SQLite database path (overrides config and SHIPSIGNAL_DB)")
    parser.add_argument("--no-summary", action="store_true", help="Skip the summary chain")
    parser.add_argument("--no-jira", action="store_true", help="Skip ticket and sprint sync")
    parser.add_argument("--no-prs", action="store_true", help="Skip pull request and review metric sync")
    parser.add_argument("--burndown", nargs="?", const="active", default=None, metavar="SPRINT_ID",
                        help="Print the burndown for a sprint (stored id or Jira id; default: the active sprint)")
    parser.add_argument("--report-out", type=str, default="", help="Write the report input JSON to this path")
    parser.add_argument("--log-level", type=str, default=None, help="Log level (overrides config and SHIPSIGNAL_LOG_LEVEL)")
    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # everything that can fail on configuration happens before the database is opened
    try:
        settings = load_settings(args.config or None)
        creds = require_integrations(settings, use_jira=not args.no_jira, use_bitbucket=not args.no_prs)
        scan_results = load_scan_results(args.scan_file, settings.repo_paths)
    except (ConfigError, ScanFileError) as ex:
        parser.error(str(ex))

    setup_logging(args.log_level or settings.log_level)
    configure_retry(retry_delay=settings.retry_delay)
    db_path = args.db or settings.database

    lock = nullcontext() if db_path == ':memory:' else writer_lock(db_path)
    try:
        with lock, Database(db_path) as db:
            totals = run_pipeline(args, settings, db, scan_results, build_clients(settings, creds))
    except WriterLockError as ex:
        parser.exit(1, f"{ex}\n")

    print(f"Run #{totals['run_id']} completed: {totals['repos_scanned']} repo(s), "
          f"{totals['new_commits']} new commit(s), {totals['existing_commits']} already stored")
    return totals


if __name__ == "__main__":
    main()
