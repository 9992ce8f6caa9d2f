import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Optional

from iterqa_agent.exceptions import SessionLostError, ValidationError

# Backend messages that mean the handshake has to be redone. Anything not
# listed here is treated as an ordinary action failure.
SESSION_LOST_SIGNATURES = (
    re.compile(r"session.*closed", re.IGNORECASE),
    re.compile(r"session.*disconnected", re.IGNORECASE),
    re.compile(r"connection.*closed", re.IGNORECASE),
    re.compile(r"websocket.*closed", re.IGNORECASE),
    re.compile(r"mcp.*disconnected", re.IGNORECASE),
)


def is_session_lost(error: BaseException) -> bool:
    if isinstance(error, SessionLostError):
        return True
    message = str(error)
    return any(pattern.search(message) for pattern in SESSION_LOST_SIGNATURES)


def backoff_delay(attempt: int, retry_delay: float, backoff_multiplier: float, max_retry_delay: float) -> float:
    return min(retry_delay * backoff_multiplier ** (attempt - 1), max_retry_delay)


async def execute_with_retry(
    action: Callable[[], Awaitable[Any]],
    label: str = "action",
    max_retries: int = 0,
    retry_delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    max_retry_delay: float = 30.0,
    on_retry: Optional[Callable[[BaseException, int], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """Run ``action`` up to ``max_retries + 1`` times with exponential backoff.

    The first attempt runs immediately. After the last failed attempt the
    error from that attempt is re-raised unchanged. ``ValidationError`` is
    raised straight away since retrying bad input cannot help.

    Args:
        action: zero-argument coroutine factory; called once per attempt.
        label: name used in log records.
        on_retry: awaited with ``(error, attempt)`` before each backoff sleep.
        sleep: injectable for tests.
    """
    if max_retries < 0:
        raise ValidationError("max_retries must be >= 0")

    attempt = 0
    try:
        while True:
            attempt += 1
            try:
                return await action()
            except ValidationError:
                raise
            except Exception as e:
                if attempt > max_retries:
                    logging.error(f"{label} failed after {attempt} attempt(s): {e}")
                    raise
                delay = backoff_delay(attempt, retry_delay, backoff_multiplier, max_retry_delay)
                logging.warning(
                    f"{label} attempt {attempt}/{max_retries + 1} failed: {e}; retrying in {delay:.2f}s",
                    extra={
                        "retry_attempt": {
                            "action": label,
                            "attempt_number": attempt,
                            "max_retries": max_retries,
                            "delay": delay,
                            "outcome": "retry",
                        }
                    },
                )
                if on_retry is not None:
                    await on_retry(e, attempt)
                await sleep(delay)
    finally:
        logging.debug(
            f"retry telemetry: {label} attempts={attempt} max_retries={max_retries}",
            extra={"retry_telemetry": {"action": label, "attempts": attempt, "max_retries": max_retries}},
        )
