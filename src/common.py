"""Common utilities and types for cluster bootstrap automation."""

import logging
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from errors import CancelledError, ReadinessTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Result returned by an action."""
    success: bool
    message: str = ''
    duration: float = 0.0


class CancelToken:
    """Cooperative cancellation flag checked between states and inside waits."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = ''

    def cancel(self, reason: str = 'cancelled') -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = '') -> None:
        """Raise CancelledError if cancellation was requested."""
        if self._event.is_set():
            suffix = f" during {where}" if where else ''
            raise CancelledError(f"Run {self.reason}{suffix}")


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    input_data: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=input_data,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def tool_available(name: str) -> bool:
    """Check whether an executable is on PATH."""
    return shutil.which(name) is not None


def wait_until(
    check: Callable[[], Any],
    timeout: float,
    interval: float = 10,
    description: str = 'condition',
    cancel: Optional[CancelToken] = None,
) -> Any:
    """Poll check() until it returns a truthy value and return that value.

    check() raises to signal a terminal failure (never going to succeed);
    returning a falsy value means "not yet".

    Raises:
        ReadinessTimeoutError: If the deadline expires first
        CancelledError: If the cancel token is set
    """
    logger.debug(f"Waiting for {description} (timeout {timeout}s)...")
    deadline = time.time() + timeout
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled(f"wait for {description}")
        result = check()
        if result:
            return result
        if time.time() >= deadline:
            raise ReadinessTimeoutError(f"Timed out after {timeout}s waiting for {description}")
        logger.debug(f"{description} not ready, retrying in {interval}s...")
        time.sleep(interval)
