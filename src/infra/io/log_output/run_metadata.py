"""Per-run debug log file for warden runs.

Every warden invocation gets a run id. With debug logging enabled, all
loggers in the 'src' namespace write DEBUG+ records to
``<artifacts_dir>/<timestamp>_<run_id>.debug.log`` for post-mortem analysis
of flaky runs.
"""

import logging
import os
import uuid
from datetime import datetime, UTC
from pathlib import Path

DEBUG_HANDLER_PREFIX = "warden_debug_"


def new_run_id() -> str:
    return str(uuid.uuid4())


def configure_debug_logging(artifacts_dir: Path, run_id: str) -> Path | None:
    """Configure Python logging to write debug logs to a file.

    This function is best-effort: if the directory cannot be created or the
    log file cannot be opened (read-only filesystem, permission denied), it
    returns None and the run continues without debug logging.

    Set WARDEN_DISABLE_DEBUG_LOG=1 to disable debug logging entirely.

    Args:
        artifacts_dir: Directory that receives the log file.
        run_id: Run ID (UUID); its first 8 characters go in the filename.

    Returns:
        Path to the debug log file, or None if logging could not be configured
        or is disabled.
    """
    if os.environ.get("WARDEN_DISABLE_DEBUG_LOG") == "1":
        return None

    try:
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S")
        log_path = artifacts_dir / f"{timestamp}_{run_id[:8]}.debug.log"

        handler = logging.FileHandler(log_path)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        handler.set_name(f"{DEBUG_HANDLER_PREFIX}{run_id}")

        src_logger = logging.getLogger("src")
        src_logger.setLevel(logging.DEBUG)

        # One debug handler per process
        for existing in src_logger.handlers[:]:
            if getattr(existing, "name", "").startswith(DEBUG_HANDLER_PREFIX):
                existing.close()
                src_logger.removeHandler(existing)

        src_logger.addHandler(handler)
        return log_path
    except OSError:
        return None


def cleanup_debug_logging(run_id: str) -> bool:
    """Remove and close the FileHandler of the given run.

    Returns:
        True if a handler was found and cleaned up, False otherwise.
    """
    src_logger = logging.getLogger("src")
    handler_name = f"{DEBUG_HANDLER_PREFIX}{run_id}"

    for handler in src_logger.handlers[:]:
        if getattr(handler, "name", "") == handler_name:
            handler.close()
            src_logger.removeHandler(handler)
            return True

    return False
