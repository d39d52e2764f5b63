"""
Loads the output of the external git-history scanner.

Expected JSON shape (either the object or the bare list is accepted):

    {"repos": [{"repo": "api", "path": "/src/api",
                "commits": [{"sha": ..., "branch": ..., "authorEmail": ..., ...}],
                "branches": [{"name": ..., "lastCommitSha": ..., ...}],
                "errors": []}]}
"""

import json
import logging
from typing import Any, Dict, List, Optional

from normalize.models import RepoScanResult
from normalize.util import branch_from_dict, commit_from_dict

logger = logging.getLogger(__name__)


class ScanFileError(ValueError):
    pass


def scan_result_from_dict(raw: Dict[str, Any]) -> RepoScanResult:
    repo = raw.get('repo') or raw.get('repoName') or raw.get('name')
    if not repo:
        raise ScanFileError("scan entry without a repo name")
    commits = [commit_from_dict(repo, c) for c in raw.get('commits') or [] if c.get('sha')]
    branches = [branch_from_dict(b) for b in raw.get('branches') or [] if b.get('name')]
    return RepoScanResult(
        repo=repo,
        path=raw.get('path') or raw.get('repoPath'),
        commits=commits,
        branches=branches,
        errors=list(raw.get('errors') or []),
    )


def load_scan_results(path: str, repo_paths: Optional[Dict[str, str]] = None) -> List[RepoScanResult]:
    """Read a scan file. ``repo_paths`` fills in working-copy paths the file does not carry."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except OSError as ex:
        raise ScanFileError(f"cannot read scan file {path}: {ex}") from ex
    except ValueError as ex:
        raise ScanFileError(f"scan file {path} is not valid JSON: {ex}") from ex

    entries = data.get('repos') if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ScanFileError(f"scan file {path} has no 'repos' list")

    results = [scan_result_from_dict(e) for e in entries]
    for r in results:
        if not r.path and repo_paths:
            r.path = repo_paths.get(r.repo)
        for err in r.errors:
            logger.warning("%s: scan reported: %s", r.repo, err)
    return results
