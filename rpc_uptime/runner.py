import time
import logging
import subprocess
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional

from .errors import CommandFailedError, ErrorKind, snippet

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    stdout: str
    stderr: str


def log_retry(attempt: int, error: Exception, delay: float):
    logger.warning(
        f"Retry attempt {attempt} after {delay * 1000:.0f}ms due to: {snippet(error)}"
    )


def backoff_delay(
    attempt: int, base_delay: float, max_delay: float, backoff_multiplier: float = 2
) -> float:
    """Delay to wait after the given failed attempt (1-based)."""
    return min(base_delay * backoff_multiplier ** (attempt - 1), max_delay)


def exec_with_retry(
    command: str,
    timeout: float = 30,
    max_retries: int = 3,
    base_delay: float = 1,
    max_delay: float = 30,
    backoff_multiplier: float = 2,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    Run a shell command with a hard per-attempt timeout and exponential backoff.

    A non-zero exit status or a timeout counts as a failed attempt. After
    ``max_retries + 1`` attempts a CommandFailedError wrapping the last
    underlying error is raised. Times are in seconds.
    """
    on_retry = on_retry or log_retry
    last_error = None
    attempts = max_retries + 1

    for attempt in range(1, attempts + 1):
        try:
            completed = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                check=True,
            )
            return CommandResult(stdout=completed.stdout, stderr=completed.stderr)
        except (subprocess.SubprocessError, OSError) as e:
            last_error = e

        if attempt == attempts:
            break

        delay = backoff_delay(attempt, base_delay, max_delay, backoff_multiplier)
        on_retry(attempt, last_error, delay)
        time.sleep(delay)

    kind = (
        ErrorKind.TIMEOUT
        if isinstance(last_error, subprocess.TimeoutExpired)
        else ErrorKind.TRANSPORT
    )
    raise CommandFailedError(command, attempts, last_error, kind) from last_error


def bounded_map(
    fn: Callable,
    items: Iterable,
    width: int = 10,
    on_error: Optional[Callable] = None,
) -> List:
    """
    Apply fn to every item with at most ``width`` calls in flight.

    Results come back in input order. An exception raised for one item is
    handed to ``on_error(item, exc)``, whose return value takes that item's
    place, so one failure never cancels the rest.
    """
    items = list(items)
    if not items:
        return []

    def call(item):
        try:
            return fn(item)
        except Exception as e:
            if on_error is None:
                logger.error(f"Worker failed for {item!r}: {e}")
                return None
            return on_error(item, e)

    with ThreadPoolExecutor(max_workers=max(1, min(width, len(items)))) as ex:
        return list(ex.map(call, items))
