"""
Builds the text sent to the summarizer for one ticket bundle, using the Jinja2 template in summarize/templates.
"""
import os
from typing import Dict, List, Mapping, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from correlate.models import ORPHAN_PREFIX, TicketWorkBundle, is_orphan_key
from normalize.models import CommitRecord, PullRequestSnapshot, TicketRecord, TicketSummaryRecord

MAX_PROMPT_CHARS = 50000
MAX_DESCRIPTION_CHARS = 500
DEFAULT_MAX_DIFF_LINES = 200
TEMPLATE_NAME = 'ticket_prompt.md.j2'


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + '...'


def _head_lines(text: str, limit: int) -> str:
    lines = text.splitlines()
    if len(lines) <= limit:
        return text.rstrip('\n')
    return '\n'.join(lines[:limit] + [f'... ({len(lines) - limit} more lines)'])


def _environment() -> Environment:
    tmpl_dir = os.path.join(os.path.dirname(__file__), 'templates')
    env = Environment(loader=FileSystemLoader(tmpl_dir), autoescape=select_autoescape(['html', 'xml']), trim_blocks=True, lstrip_blocks=True)
    env.filters['clip'] = _clip
    env.filters['head_lines'] = _head_lines
    return env


def _branch_sections(commits: Sequence[CommitRecord], pr_by_branch: Mapping[str, PullRequestSnapshot]) -> List[Dict[str, object]]:
    by_branch: Dict[str, List[CommitRecord]] = {}
    for c in commits:
        by_branch.setdefault(c.branch, []).append(c)
    sections = []
    for name in sorted(by_branch):
        branch_commits = by_branch[name]
        sections.append({
            'name': name,
            'pr': pr_by_branch.get(name),
            'authors': list(dict.fromkeys(c.author_name for c in branch_commits)),
            'commits': branch_commits,
        })
    return sections


def build_ticket_prompt(
    ticket_key: str,
    repo: str,
    bundle: TicketWorkBundle,
    commits: Optional[Sequence[CommitRecord]] = None,
    ticket: Optional[TicketRecord] = None,
    pr_by_branch: Optional[Mapping[str, PullRequestSnapshot]] = None,
    previous: Optional[TicketSummaryRecord] = None,
    checked_out_branch: Optional[str] = None,
    max_diff_lines: int = DEFAULT_MAX_DIFF_LINES,
) -> str:
    """Render the summarization request for one (ticket, repo) bundle.

    ``commits`` are the commits to describe (defaults to the whole bundle). When ``previous``
    is given the prompt frames them as new activity on top of that earlier summary.
    Per-commit diffs are dropped if the rendered prompt grows past MAX_PROMPT_CHARS.
    """
    commits = list(bundle.commits if commits is None else commits)
    orphan = is_orphan_key(ticket_key)
    context = {
        'ticket_key': ticket_key,
        'repo': repo,
        'orphan': orphan,
        'orphan_branch': ticket_key[len(ORPHAN_PREFIX):] if orphan else None,
        'ticket': ticket,
        'previous': previous,
        'new_count': len(commits),
        'branches': _branch_sections(commits, pr_by_branch or {}),
        'checked_out_branch': checked_out_branch,
        'description_limit': MAX_DESCRIPTION_CHARS,
        'max_diff_lines': max_diff_lines,
        'include_diffs': True,
    }
    tmpl = _environment().get_template(TEMPLATE_NAME)
    prompt = tmpl.render(**context).strip()
    if len(prompt) > MAX_PROMPT_CHARS:
        context['include_diffs'] = False
        prompt = tmpl.render(**context).strip()
        prompt += "\n\n> Note: Per-commit diffs omitted for size. Read the changed files if needed."
    return prompt
