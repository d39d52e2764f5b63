"""
Adapter around the external text-generation command that writes ticket summaries.
"""
import logging
import re
import subprocess
import time
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120
SESSION_RE = re.compile(r"session[:\s]+([a-f0-9-]+)", re.IGNORECASE)


class SummarizationError(RuntimeError):
    """The summarizer could not produce text for one request."""


class SummaryRequest:
    def __init__(self, ticket_key: str, repo: str, prompt: str, cwd: Optional[str] = None):
        self.ticket_key = ticket_key
        self.repo = repo
        self.prompt = prompt
        self.cwd = cwd


class SummaryResult:
    def __init__(self, text: str, session_id: Optional[str] = None, duration_ms: int = 0):
        self.text = text
        self.session_id = session_id
        self.duration_ms = duration_ms


class CommandSummarizer:
    """Run a command with the prompt as its final argument and take stdout as the summary.

    The command runs inside the repository working copy so it can read the checked-out code.
    """

    def __init__(self, command: Sequence[str], timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        if not command:
            raise ValueError("summarizer command must not be empty")
        self.command: List[str] = list(command)
        self.timeout_seconds = timeout_seconds

    def summarize(self, request: SummaryRequest) -> SummaryResult:
        args = self.command + [request.prompt]
        start = time.monotonic()
        try:
            proc = subprocess.run(args, cwd=request.cwd, capture_output=True, text=True, timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired as ex:
            raise SummarizationError(f"{request.ticket_key}: summarizer timed out after {self.timeout_seconds}s") from ex
        except OSError as ex:
            raise SummarizationError(f"{request.ticket_key}: could not start summarizer: {ex}") from ex
        duration_ms = int((time.monotonic() - start) * 1000)

        if proc.returncode != 0:
            detail = (proc.stderr or '').strip()[:500] or f"exit code {proc.returncode}"
            raise SummarizationError(f"{request.ticket_key}: summarizer failed: {detail}")
        text = (proc.stdout or '').strip()
        if not text:
            raise SummarizationError(f"{request.ticket_key}: summarizer returned no output")

        m = SESSION_RE.search(proc.stderr or '')
        logger.debug("summarized %s/%s in %dms", request.repo, request.ticket_key, duration_ms)
        return SummaryResult(text=text, session_id=m.group(1) if m else None, duration_ms=duration_ms)
