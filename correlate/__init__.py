"""
Correlate package: group scanned commits into per-ticket work bundles.
"""

from .linker import find_issue_keys_in_text, group_commits_by_ticket, ticket_key_from_branch
from .models import TicketWorkBundle, is_orphan_key

__all__ = ["find_issue_keys_in_text", "group_commits_by_ticket", "ticket_key_from_branch", "TicketWorkBundle", "is_orphan_key"]
