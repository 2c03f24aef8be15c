"""PowerShell invocation for Task Scheduler operations."""

import logging
import subprocess

logger = logging.getLogger(__name__)


class ShellError(Exception):
    """Raised when PowerShell cannot be started or does not finish in time."""


def ps_quote(value: str) -> str:
    """Quote a value as a single-quoted PowerShell string literal."""
    return "'" + value.replace("'", "''") + "'"


def run_powershell(
    script: str,
    powershell: str = "powershell.exe",
    timeout: int = 120,
) -> tuple[int, str, str]:
    """
    Run a PowerShell script block non-interactively.

    Args:
        script: PowerShell source passed via ``-Command``
        powershell: PowerShell executable (``powershell.exe`` or ``pwsh``)
        timeout: Seconds before the call is abandoned

    Returns:
        Tuple of (exit_code, stdout, stderr)

    Raises:
        ShellError: If PowerShell is missing or times out
    """
    cmd = [powershell, "-NoProfile", "-NonInteractive", "-Command", script]
    logger.debug("PowerShell: %s", script)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as exc:
        raise ShellError(f"{powershell} not found: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise ShellError(f"{powershell} did not finish within {timeout}s") from exc

    if result.returncode != 0:
        logger.debug("PowerShell exited %d: %s", result.returncode, (result.stderr or "").strip())
    return result.returncode, result.stdout or "", result.stderr or ""
