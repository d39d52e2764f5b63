"""
Bitbucket Cloud ingestion client: recent pull requests and their activity logs.
Pages are fetched one at a time with a short pause between them to stay under the rate limit.
"""

import logging
import time
from typing import Dict, List, Optional, Tuple

from normalize.models import PRActivityEvent, PullRequestRecord
from normalize.util import normalize_pull_request, parse_activity_entry
from storage.retry import get_with_retry

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.bitbucket.org/2.0"
PAGE_LEN = 50
PR_PAGES = 2
ACTIVITY_PAGES = 3
PAGE_DELAY_SECONDS = 0.2


def api_url_from_base(base_url: Optional[str]) -> str:
    """Map the browser URL (https://bitbucket.org) to the REST root."""
    if not base_url:
        return DEFAULT_API_URL
    base = base_url.rstrip('/')
    if '://bitbucket.org' in base:
        return base.replace('://bitbucket.org', '://api.bitbucket.org/2.0')
    return base


class BitbucketClient:
    def __init__(self, workspace: str, username: str, api_token: str, api_url: str = DEFAULT_API_URL, page_delay: float = PAGE_DELAY_SECONDS):
        self.workspace = workspace
        self.api_url = api_url.rstrip('/')
        self.auth: Tuple[str, str] = (username, api_token)
        self.headers = {"Accept": "application/json"}
        self.page_delay = page_delay

    def _pages(self, url: str, max_pages: int, what: str) -> Optional[List[Dict[str, object]]]:
        """Collect `values` across pages. None when the first page fails; later failures keep what was read."""
        values: List[Dict[str, object]] = []
        next_url: Optional[str] = url
        pages = 0
        while next_url and pages < max_pages:
            if pages > 0 and self.page_delay:
                time.sleep(self.page_delay)
            res = get_with_retry(next_url, headers=self.headers, auth=self.auth)
            status = res.get('status', 0)
            if status != 200:
                if status == 401:
                    logger.error("Bitbucket authentication failed; check credentials")
                else:
                    logger.warning("Bitbucket API error %s fetching %s", status, what)
                return values if pages else None
            data = res.get('response') or {}
            values.extend(data.get('values') or [])
            next_url = data.get('next')
            pages += 1
        return values

    def fetch_pull_requests(self, repo_slug: str, max_pages: int = PR_PAGES) -> List[PullRequestRecord]:
        """Recently updated PRs of a repo (open, merged and declined), newest first."""
        url = (
            f"{self.api_url}/repositories/{self.workspace}/{repo_slug}/pullrequests"
            f"?state=OPEN&state=MERGED&state=DECLINED&sort=-updated_on&pagelen={PAGE_LEN}"
        )
        prs: List[PullRequestRecord] = []
        for raw in self._pages(url, max_pages, f"pull requests for {repo_slug}") or []:
            pr = normalize_pull_request(repo_slug, raw)
            if pr is not None:
                prs.append(pr)
        return prs

    def fetch_activity(self, repo_slug: str, pr_id: int, max_pages: int = ACTIVITY_PAGES) -> Optional[List[PRActivityEvent]]:
        """Activity of one PR in chronological order, or None if it could not be read. Unrecognised entries are dropped."""
        url = f"{self.api_url}/repositories/{self.workspace}/{repo_slug}/pullrequests/{pr_id}/activity?pagelen={PAGE_LEN}"
        entries = self._pages(url, max_pages, f"activity for PR #{pr_id}")
        if entries is None:
            return None
        events = [parse_activity_entry(entry) for entry in entries]
        events = [e for e in events if e is not None and e.timestamp]
        # Bitbucket returns newest first
        events.sort(key=lambda e: e.timestamp)
        return events


def latest_pr_per_branch(prs: List[PullRequestRecord]) -> Dict[str, PullRequestRecord]:
    """Most recently updated PR for each source branch."""
    result: Dict[str, PullRequestRecord] = {}
    for pr in prs:
        current = result.get(pr.source_branch)
        if current is None or pr.updated_at > current.updated_at:
            result[pr.source_branch] = pr
    return result
