"""
Process Helpers

Runs external CLIs (jj, gh) off the event loop and retries idempotent
operations with exponential backoff.
"""

import asyncio
import subprocess
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple, Type, TypeVar

from rich.console import Console

from .config import Constants

console = Console(stderr=True)

T = TypeVar("T")


async def run_command(
    args: List[str],
    timeout: float,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess:
    """Run a command in a worker thread and capture its output.

    Args:
        args: Command and arguments
        timeout: Seconds before the process is killed
        cwd: Working directory (default: current directory)

    Returns:
        CompletedProcess with text stdout/stderr

    Raises:
        FileNotFoundError: If the executable does not exist
        subprocess.TimeoutExpired: If the command outlives timeout
    """
    return await asyncio.to_thread(
        subprocess.run,
        args,
        capture_output=True,
        text=True,
        cwd=cwd,
        timeout=timeout,
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    description: str,
    retry_on: Tuple[Type[BaseException], ...],
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
) -> T:
    """Run an idempotent async operation, retrying with exponential backoff.

    Only use this for reads and for writes that are safe to repeat.

    Args:
        operation: Zero-argument coroutine factory
        description: What is being attempted, for warnings
        retry_on: Exception types that trigger a retry
        attempts: Total attempts (default: from Constants)
        base_delay: First backoff delay in seconds, doubled each retry

    Returns:
        The operation's result

    Raises:
        The last exception raised by operation once attempts are exhausted
    """
    attempts = attempts or Constants.RETRY_ATTEMPTS
    delay = Constants.RETRY_BASE_DELAY if base_delay is None else base_delay

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == attempts:
                raise
            console.print(
                f"[yellow]{description} failed (attempt {attempt}/{attempts}), "
                f"retrying in {delay:.1f}s: {e}[/yellow]"
            )
            await asyncio.sleep(delay)
            delay *= 2

    raise RuntimeError("unreachable")
