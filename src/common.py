"""Common utilities and error types for environment automation."""

import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class ManagerNotFoundError(Exception):
    """The conda executable could not be located."""


class ManagerError(Exception):
    """A conda query (not an install) failed."""


class ManifestDirectoryMissingError(Exception):
    """The manifest directory does not exist."""


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: Optional[int] = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    timeout=None waits for the command indefinitely.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout or '', result.stderr or ''
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except Exception as e:
        return -1, '', str(e)


def tail_lines(text: str, count: int = 20) -> str:
    """Return the last `count` non-empty lines of text."""
    lines = [line for line in text.splitlines() if line.strip()]
    return '\n'.join(lines[-count:])
