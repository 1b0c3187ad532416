from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import subprocess

from diskmon.logging_utils import TRACE_LEVEL

DEFAULT_COMMAND_TIMEOUT_S = 20.0

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    command: list[str], timeout: float | None = DEFAULT_COMMAND_TIMEOUT_S
) -> CommandResult | None:
    """Run a diagnostic command and capture its output.

    Returns None when the binary is missing, not executable, or exceeds the
    timeout (the child is killed in that case). Non-zero exits are returned
    to the caller, since several tools report partial data that way.
    """
    try:
        result = subprocess.run(
            command,
            check=False,
            text=True,
            capture_output=True,
            errors="replace",
            timeout=timeout,
        )
    except FileNotFoundError:
        logger.debug("Command not found: %s", command[0])
        return None
    except PermissionError:
        logger.debug("Command not executable: %s", command[0])
        return None
    except subprocess.TimeoutExpired:
        logger.debug("Command timed out after %ss: %s", timeout, " ".join(command))
        return None
    if result.returncode != 0:
        logger.debug(
            "Command failed (%s): %s", result.returncode, " ".join(command)
        )
        if result.stderr:
            logger.log(TRACE_LEVEL, "stderr: %s", result.stderr.strip())
    if result.stdout:
        logger.log(TRACE_LEVEL, "stdout: %s", result.stdout.strip())
    return CommandResult(
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
    )


def read_text(path: str | Path) -> str | None:
    """Read a file and return its contents stripped, or None if unreadable."""
    try:
        return Path(path).read_text(errors="replace").strip()
    except OSError:
        return None
