import logging
import shutil
import subprocess
from typing import Sequence

from .errors import ConversionTimeout, ProcessingError, ToolUnavailable

logger = logging.getLogger(__name__)

# Single ceiling for any external process; the job itself has its own timeout.
DEFAULT_TOOL_TIMEOUT_SEC = 600


def find_tool(*names: str, explicit: str | None = None) -> str:
    """Resolve an executable from PATH (or an explicit path) or raise ToolUnavailable."""
    if explicit:
        found = shutil.which(explicit)
        if found:
            return found
    for name in names:
        found = shutil.which(name)
        if found:
            return found
    raise ToolUnavailable(f"{' / '.join(names)} not found in PATH")


def run_tool(args: Sequence[str], *, timeout: float = DEFAULT_TOOL_TIMEOUT_SEC) -> subprocess.CompletedProcess:
    logger.debug("running %s", args[0])
    try:
        return subprocess.run(
            list(args),
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise ToolUnavailable(f"{args[0]} not found") from e
    except subprocess.TimeoutExpired as e:
        raise ConversionTimeout(f"{args[0]} exceeded {timeout:.0f}s") from e
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or b"").decode("utf-8", errors="replace").strip()
        tail = stderr.splitlines()[-1] if stderr else f"exit code {e.returncode}"
        raise ProcessingError(f"{args[0]} failed: {tail}") from e
