"""
Jira ingestion client used by the CLI pipeline.
Fetches ticket metadata with status history, and sprint/board data from the Agile API.
Every call goes through storage.retry.get_with_retry, so failures come back as status codes.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from normalize.models import Sprint, TicketRecord
from normalize.util import normalize_ticket
from storage.retry import get_with_retry

logger = logging.getLogger(__name__)

ISSUE_FIELDS = "summary,status,assignee,priority,issuetype,parent,subtasks,labels,comment,description,updated"
SPRINT_PAGE_SIZE = 200
RECENT_SPRINTS = 10


class JiraClient:
    """Minimal Jira Cloud client using Basic auth (account email + API token)."""

    def __init__(self, base_url: str, email: str, api_token: str):
        self.base_url = (base_url or '').rstrip('/')
        self.auth: Tuple[str, str] = (email, api_token)
        self.headers = {"Accept": "application/json"}

    def _get(self, path: str, params: Optional[Dict[str, object]] = None) -> Dict[str, object]:
        return get_with_retry(f"{self.base_url}{path}", headers=self.headers, params=params, auth=self.auth)

    def fetch_ticket(self, jira_key: str) -> Optional[TicketRecord]:
        """Return the ticket, or None when Jira answers 404 (deleted or not visible).

        Other failures raise JiraError so the caller can collect them.
        """
        res = self._get(f"/rest/api/3/issue/{jira_key}", {"fields": ISSUE_FIELDS, "expand": "changelog"})
        status = res.get('status', 0)
        if status == 404:
            return None
        if status != 200 or not isinstance(res.get('response'), dict):
            raise JiraError(jira_key, status, res.get('response'))
        return normalize_ticket(jira_key, res['response'])

    def fetch_tickets(self, jira_keys: Iterable[str]) -> Tuple[List[TicketRecord], List[str]]:
        """Fetch tickets one at a time. Returns (tickets, errors); 404s are skipped silently."""
        tickets: List[TicketRecord] = []
        errors: List[str] = []
        for key in jira_keys:
            try:
                ticket = self.fetch_ticket(key)
            except JiraError as ex:
                logger.warning("%s", ex)
                errors.append(str(ex))
                continue
            if ticket is None:
                logger.debug("%s not found; skipping", key)
                continue
            tickets.append(ticket)
        return tickets, errors

    def fetch_board_id(self, project_key: str) -> Optional[int]:
        res = self._get("/rest/agile/1.0/board", {"projectKeyOrId": project_key, "type": "scrum"})
        if res.get('status') != 200:
            logger.warning("board lookup for %s failed (%s)", project_key, res.get('status'))
            return None
        values = (res.get('response') or {}).get('values') or []
        return values[0].get('id') if values else None

    def fetch_sprints(self, board_id: int, count: int = RECENT_SPRINTS) -> List[Sprint]:
        """The most recent ``count`` sprints of a board (active, closed and future).

        The Agile API lists sprints oldest first, so read the total and page to the end.
        """
        params = {"state": "active,closed,future", "maxResults": 1}
        probe = self._get(f"/rest/agile/1.0/board/{board_id}/sprint", params)
        if probe.get('status') != 200:
            logger.warning("sprint list for board %s failed (%s)", board_id, probe.get('status'))
            return []
        total = int((probe.get('response') or {}).get('total') or 0)
        if total == 0:
            return []

        params = {"state": "active,closed,future", "maxResults": count, "startAt": max(0, total - count)}
        res = self._get(f"/rest/agile/1.0/board/{board_id}/sprint", params)
        if res.get('status') != 200:
            logger.warning("sprint list for board %s failed (%s)", board_id, res.get('status'))
            return []
        return [
            Sprint(
                external_id=s['id'],
                board_id=board_id,
                name=s.get('name') or f"Sprint {s['id']}",
                state=s.get('state') or 'closed',
                start_date=s.get('startDate'),
                end_date=s.get('endDate'),
                goal=s.get('goal'),
            )
            for s in ((res.get('response') or {}).get('values') or [])
        ]

    def fetch_sprint_issue_keys(self, sprint_id: int) -> List[str]:
        keys: List[str] = []
        start_at = 0
        while True:
            params = {"fields": "key", "maxResults": SPRINT_PAGE_SIZE, "startAt": start_at}
            res = self._get(f"/rest/agile/1.0/sprint/{sprint_id}/issue", params)
            if res.get('status') != 200:
                logger.warning("issues for sprint %s failed (%s)", sprint_id, res.get('status'))
                break
            data = res.get('response') or {}
            issues = data.get('issues') or []
            if not issues:
                break
            keys.extend(i['key'] for i in issues if i.get('key'))
            start_at += len(issues)
            if start_at >= int(data.get('total') or 0):
                break
        return keys


class JiraError(RuntimeError):
    def __init__(self, jira_key: str, status: int, body=None):
        self.jira_key = jira_key
        self.status = status
        detail = body if isinstance(body, str) else ''
        super().__init__(f"Jira fetch for {jira_key} failed ({status}) {detail[:200]}".rstrip())
