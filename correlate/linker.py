"""
Linker heuristics to associate commits and branches with issue-tracker tickets.
- explicit key match in commit message text
- key embedded in a branch name (persisted on the branch row)
- fallback: orphan commits grouped under their branch name
"""
import re
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from normalize.models import RepoScanResult
from .models import TicketWorkBundle, orphan_key

# letters, optional alphanumerics, dash, digits; all-zero suffixes such as X-0 are rejected
TICKET_KEY_PATTERN = r"[A-Z][A-Z0-9]*-(?!0+(?!\d))\d+"

_KEY_RE = re.compile(TICKET_KEY_PATTERN)


def find_issue_keys_in_text(text: str, key_pattern: Optional[str] = None) -> List[str]:
    """Return unique ticket keys in order of first appearance."""
    if not text:
        return []
    pattern = re.compile(key_pattern) if key_pattern else _KEY_RE
    seen: List[str] = []
    for m in pattern.finditer(text):
        if m.group(0) not in seen:
            seen.append(m.group(0))
    return seen


def ticket_key_from_branch(branch_name: str) -> Optional[str]:
    """Derive the ticket key bound to a branch: the first key-shaped substring of its name."""
    if not branch_name:
        return None
    m = _KEY_RE.search(branch_name)
    return m.group(0) if m else None


def filter_allowed_keys(keys: Iterable[str], allowed_projects: Iterable[str]) -> Tuple[List[str], List[str]]:
    """Split keys into those belonging to an allowed project and the rest."""
    projects = {p.upper() for p in allowed_projects}
    allowed: List[str] = []
    skipped: List[str] = []
    for key in keys:
        project = key.split('-', 1)[0].upper()
        if project in projects:
            allowed.append(key)
        else:
            skipped.append(key)
    return allowed, skipped


def group_commits_by_ticket(
    scan_results: Iterable[RepoScanResult], branch_ticket_keys: Mapping[Tuple[str, str], str]
) -> Dict[str, Dict[str, TicketWorkBundle]]:
    """
    Group scanned commits into work bundles keyed by ticket key, then repo.

    Parameters:
        scan_results: per-repo scan output.
        branch_ticket_keys: (repo, branch) -> ticket key, taken from persisted branch rows.

    Returns:
        ticket key -> repo -> TicketWorkBundle. The keys a commit is filed under are the
        union of its branch's bound key and every key in its message, so one commit may
        land in several bundles. Commits with no key go under ``branch:<name>``.
    """
    bundles: Dict[str, Dict[str, TicketWorkBundle]] = {}

    def _add(key: str, repo: str, commit) -> None:
        repo_map = bundles.setdefault(key, {})
        bundle = repo_map.get(repo)
        if bundle is None:
            bundle = repo_map[repo] = TicketWorkBundle()
        bundle.add(commit)

    for result in scan_results:
        for commit in result.commits:
            keys: List[str] = []
            branch_key = branch_ticket_keys.get((result.repo, commit.branch))
            if branch_key:
                keys.append(branch_key)
            for k in commit.ticket_keys:
                if k not in keys:
                    keys.append(k)

            if not keys:
                _add(orphan_key(commit.branch), result.repo, commit)
                continue
            for k in keys:
                _add(k, result.repo, commit)
    return bundles
