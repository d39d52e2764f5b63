"""
In-memory grouping of commits by resolved ticket key.
"""

from typing import Dict, List, Set

from normalize.models import CommitRecord


ORPHAN_PREFIX = 'branch:'


class TicketWorkBundle:
    """
    Commits touched for one ticket key in one repo during a run, plus the branches and authors involved.
    Rebuilt every run and never persisted.
    """

    def __init__(self):
        self.commits: List[CommitRecord] = []
        self.branch_names: Set[str] = set()
        self.author_emails: Set[str] = set()
        self._shas: Set[str] = set()

    def add(self, commit: CommitRecord) -> None:
        # the same commit can be observed on several branches; keep one copy
        if commit.sha not in self._shas:
            self._shas.add(commit.sha)
            self.commits.append(commit)
        self.branch_names.add(commit.branch)
        self.author_emails.add(commit.author_email)

    @property
    def commit_shas(self) -> List[str]:
        return [c.sha for c in self.commits]

    def commits_on(self, branch: str) -> List[CommitRecord]:
        return [c for c in self.commits if c.branch == branch]

    def primary_branch(self) -> str:
        """Branch carrying the most commits; ties broken by name."""
        counts: Dict[str, int] = {}
        for c in self.commits:
            counts[c.branch] = counts.get(c.branch, 0) + 1
        if not counts:
            return sorted(self.branch_names)[0] if self.branch_names else ''
        return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]

    def __len__(self):
        return len(self.commits)


def orphan_key(branch: str) -> str:
    return f"{ORPHAN_PREFIX}{branch}"


def is_orphan_key(key: str) -> bool:
    return key.startswith(ORPHAN_PREFIX)
