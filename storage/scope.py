"""
Repository scope: the one place that decides which repos take part in queries and reports.
"""

from typing import Iterable, List, Tuple

DEFAULT_EXCLUDED_REPOS = ("test-repo",)


class RepoScope:
    """Exclusion predicate over repository names, usable in Python and in SQL."""

    def __init__(self, excluded: Iterable[str] = DEFAULT_EXCLUDED_REPOS):
        self.excluded = tuple(sorted(set(excluded)))

    def includes(self, repo: str) -> bool:
        return repo not in self.excluded

    def __call__(self, repo: str) -> bool:
        return self.includes(repo)

    def filter(self, repos: Iterable[str]) -> List[str]:
        return [r for r in repos if self.includes(r)]

    def sql(self, column: str = "repo") -> Tuple[str, Tuple[str, ...]]:
        """Return a WHERE fragment and its params; always valid to AND into a query."""
        if not self.excluded:
            return "1 = 1", ()
        marks = ", ".join("?" for _ in self.excluded)
        return f"{column} NOT IN ({marks})", self.excluded

    def __repr__(self):
        return f"RepoScope(excluded={list(self.excluded)!r})"


ALL_REPOS = RepoScope(())
