"""
middleware.py — Cross-cutting helpers wrapped around the prompt invokers.

Implements:
  - PIIMiddleware          (mask contact details before they reach the logs)
  - ModelRetryMiddleware   (backoff on transient provider errors only)
  - ToolCallLimitMiddleware (cap tool invocations per booking run)
"""

import re
import time
import logging
from collections import Counter
from typing import Tuple, Type

import openai

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# PIIMiddleware
# ─────────────────────────────────────────────
class PIIMiddleware:
    """Masks user contact details before logging."""

    EMAIL_RE = re.compile(r"([\w.+-])[\w.+-]*@([\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,})")
    PHONE_RE = re.compile(r"\+?\d[\d\s().-]{7,}\d")

    @classmethod
    def mask(cls, text) -> str:
        if not isinstance(text, str):
            text = str(text)
        # keep first character and domain: alice@example.com -> a***@example.com
        text = cls.EMAIL_RE.sub(r"\1***@\2", text)
        text = cls.PHONE_RE.sub("***-***-****", text)
        return text


# ─────────────────────────────────────────────
# ModelRetryMiddleware
# ─────────────────────────────────────────────
TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class ModelRetryMiddleware:
    """
    Re-issues a provider call with exponential backoff when the failure is transient.
    Anything else (bad request, auth, malformed output) propagates on the first attempt.
    """

    def __init__(self, max_retries: int = 2, base_delay: float = 1.0,
                 retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS):
        self.max_retries = max(1, max_retries)
        self.base_delay  = base_delay
        self.retry_on    = retry_on

    def call(self, fn, *args, **kwargs):
        for attempt in range(1, self.max_retries + 1):
            try:
                return fn(*args, **kwargs)
            except self.retry_on as e:
                if attempt == self.max_retries:
                    logger.error("[ModelRetryMiddleware] Giving up after %d attempts: %s",
                                 attempt, e)
                    raise
                wait = self.base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "[ModelRetryMiddleware] Attempt %d/%d failed (%s) — retrying in %.1fs",
                    attempt, self.max_retries, type(e).__name__, wait,
                )
                time.sleep(wait)


# ─────────────────────────────────────────────
# ToolCallLimitMiddleware
# ─────────────────────────────────────────────
class ToolCallLimitMiddleware:
    """Stops a model that keeps calling tools inside one booking run."""

    def __init__(self, max_calls: int = 3):
        self.max_calls = max_calls
        self._calls: Counter = Counter()

    def check(self, run_id: str, tool_name: str) -> None:
        self._calls[(run_id, tool_name)] += 1
        made = self._calls[(run_id, tool_name)]
        if made > self.max_calls:
            raise RuntimeError(
                f"[ToolCallLimitMiddleware] {tool_name} called {made} times in run {run_id} "
                f"(limit {self.max_calls})."
            )
        logger.debug("[ToolCallLimitMiddleware] %s → call %d/%d", tool_name, made, self.max_calls)

    def count(self, run_id: str, tool_name: str) -> int:
        return self._calls[(run_id, tool_name)]

    def reset(self, run_id: str) -> None:
        for key in [k for k in self._calls if k[0] == run_id]:
            del self._calls[key]
