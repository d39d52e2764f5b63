"""
Working-copy helpers: check a branch out detached for the summarizer and put the repo back afterwards.
Commit and branch history itself is read by the external scan source, not here.
"""
import logging
import subprocess
from contextlib import contextmanager
from typing import Iterator, List, Optional

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 60


class GitError(RuntimeError):
    pass


class CheckoutState:
    """Where a working copy pointed before we moved it: a branch name, or a commit when detached."""

    def __init__(self, ref: str, detached: bool = False):
        self.ref = ref
        self.detached = detached

    def __repr__(self):
        return f"CheckoutState(ref={self.ref!r}, detached={self.detached})"


def _git(repo_path: str, args: List[str]) -> str:
    try:
        proc = subprocess.run(['git'] + args, cwd=repo_path, capture_output=True, text=True, timeout=GIT_TIMEOUT_SECONDS)
    except (OSError, subprocess.TimeoutExpired) as ex:
        raise GitError(f"git {' '.join(args)} failed in {repo_path}: {ex}") from ex
    if proc.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed in {repo_path}: {(proc.stderr or '').strip()}")
    return (proc.stdout or '').strip()


def record_state(repo_path: str) -> CheckoutState:
    try:
        return CheckoutState(_git(repo_path, ['symbolic-ref', '--short', 'HEAD']))
    except GitError:
        return CheckoutState(_git(repo_path, ['rev-parse', 'HEAD']), detached=True)


def checkout_detached(repo_path: str, branch: str, remote: str = 'origin') -> None:
    _git(repo_path, ['checkout', f'{remote}/{branch}', '--detach'])


def restore_state(repo_path: str, state: CheckoutState) -> bool:
    """Return the working copy to ``state``. Failures are logged, never raised."""
    args = ['checkout', state.ref]
    if state.detached:
        args.append('--detach')
    try:
        _git(repo_path, args)
        return True
    except GitError as ex:
        logger.warning("could not restore %s to %s: %s", repo_path, state.ref, ex)
        return False


@contextmanager
def checked_out(repo_path: Optional[str], branch: Optional[str], remote: str = 'origin') -> Iterator[Optional[str]]:
    """Check ``branch`` out detached for the duration of the block and restore the previous state on exit.

    Yields the branch name when the checkout succeeded, otherwise None; a failed checkout
    is logged and the block still runs against whatever is checked out.
    """
    if not repo_path or not branch:
        yield None
        return

    state = record_state(repo_path)
    current: Optional[str] = None
    try:
        try:
            checkout_detached(repo_path, branch, remote)
            current = branch
        except GitError as ex:
            logger.warning("checkout of %s skipped: %s", branch, ex)
        yield current
    finally:
        restore_state(repo_path, state)
