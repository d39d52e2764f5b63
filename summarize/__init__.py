"""
Summarize package: the incremental per-ticket summary chain and its summarizer adapter.
"""

from .chain import REGENERATE, REUSE, EXTEND, SummaryPlan, TicketOutcome, advance_chain, plan_summary, summarize_bundles
from .invoke import CommandSummarizer, SummarizationError, SummaryRequest, SummaryResult

__all__ = [
    "REGENERATE", "REUSE", "EXTEND", "SummaryPlan", "TicketOutcome", "advance_chain", "plan_summary", "summarize_bundles",
    "CommandSummarizer", "SummarizationError", "SummaryRequest", "SummaryResult",
]
