"""
Rate-limit-aware HTTP GET helper.
Upstream APIs get exactly one retry after a fixed delay when they answer 429 or 5xx.
Results are plain dicts so callers branch on status codes instead of exceptions.
"""

import logging
import os
import time
from typing import Any, Dict, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

# - SHIPSIGNAL_RETRY_DELAY: float (seconds) to wait before the single retry
DEFAULT_RETRY_DELAY = float(os.getenv("SHIPSIGNAL_RETRY_DELAY", "5.0"))
DEFAULT_TIMEOUT = 30.0

# runtime override (set from CLI/config at startup)
_runtime_retry_delay: Optional[float] = None


def configure_retry(retry_delay: Optional[float] = None):
    """Configure the retry delay at runtime (e.g. from config)."""
    global _runtime_retry_delay
    if retry_delay is not None:
        _runtime_retry_delay = float(retry_delay)


def _resolve_delay(retry_delay: Optional[float]) -> float:
    if retry_delay is not None:
        return float(retry_delay)
    if _runtime_retry_delay is not None:
        return _runtime_retry_delay
    return DEFAULT_RETRY_DELAY


def _should_retry(status: int) -> bool:
    return status == 429 or 500 <= status < 600


def _parse_body(resp):
    try:
        return resp.json()
    except ValueError:
        return getattr(resp, 'text', None)


def _attempt_request_once(url: str, headers: Dict[str, str], params: Dict[str, Any], auth: Optional[Tuple[str, str]], timeout: float) -> Dict[str, Any]:
    try:
        resp = requests.get(url, headers=headers or {}, params=params or {}, auth=auth, timeout=timeout)
    except requests.RequestException as ex:
        return {'response': str(ex), 'status': 0, 'timestamp': time.time()}
    return {'response': _parse_body(resp), 'status': getattr(resp, 'status_code', 0), 'timestamp': time.time()}


def get_with_retry(
    url: str,
    headers: Dict[str, str] = None,
    params: Dict[str, Any] = None,
    auth: Optional[Tuple[str, str]] = None,
    retry_delay: Optional[float] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Dict[str, Any]:
    """Perform a GET; on 429/5xx sleep once and try again.

    Returns {'response': parsed body or error text, 'status': int, 'timestamp': float}.
    A network failure yields status 0 and is not retried.
    """
    result = _attempt_request_once(url, headers, params, auth, timeout)
    if not _should_retry(result['status']):
        return result

    delay = _resolve_delay(retry_delay)
    logger.warning("GET %s returned %s; retrying once in %.1fs", url, result['status'], delay)
    time.sleep(delay)
    result = _attempt_request_once(url, headers, params, auth, timeout)
    if _should_retry(result['status']):
        logger.warning("GET %s still failing with %s; giving up", url, result['status'])
    return result


__all__ = ["configure_retry", "get_with_retry"]
