"""Classification of chat send failures into user-visible outcomes."""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from healthchat.services.functions.base import RemoteFunctionError

GENERIC_ERROR_MESSAGE = "Failed to send message. Please try again."
SUBSCRIPTION_ERROR_MESSAGE = "This feature requires a Pro subscription. Please upgrade to continue."
RATE_LIMIT_MESSAGE = "You've reached your usage limit. Chat will be available again shortly."

_SUBSCRIPTION_RE = re.compile(r"subscription|upgrade", re.IGNORECASE)


@dataclass
class ChatFailure:
    kind: str  # "rate_limited" | "subscription_required" | "generic"
    message: str
    resume_at: datetime | None = None


def _resume_time(payload: dict, now: datetime, default_timeout: float) -> datetime:
    timeout_end = payload.get("timeout_end")
    if isinstance(timeout_end, (int, float)) and not isinstance(timeout_end, bool) and timeout_end > 0:
        return datetime.fromtimestamp(timeout_end / 1000, tz=timezone.utc)
    retry_after = payload.get("retry_after_seconds")
    if isinstance(retry_after, (int, float)) and not isinstance(retry_after, bool) and retry_after > 0:
        return now + timedelta(seconds=retry_after)
    return now + timedelta(seconds=default_timeout)


def classify_chat_failure(
    error: BaseException,
    *,
    now: datetime | None = None,
    default_timeout: float = 30 * 60,
) -> ChatFailure:
    """Map an exception from a chat send to a ChatFailure. Never raises."""
    now = now or datetime.now(timezone.utc)
    try:
        message = str(getattr(error, "message", None) or error)
    except Exception:
        message = ""
    status = getattr(error, "status", None)
    payload = error.payload if isinstance(error, RemoteFunctionError) else {}
    if not isinstance(payload, dict):
        payload = {}

    if status == 429 or "token limit" in message.lower():
        try:
            resume_at = _resume_time(payload, now, default_timeout)
        except (OverflowError, OSError, ValueError):
            resume_at = now + timedelta(seconds=default_timeout)
        return ChatFailure("rate_limited", RATE_LIMIT_MESSAGE, resume_at)
    if _SUBSCRIPTION_RE.search(message):
        return ChatFailure("subscription_required", SUBSCRIPTION_ERROR_MESSAGE)
    return ChatFailure("generic", GENERIC_ERROR_MESSAGE)
