from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

LOG_FILE_NAME = "liveiso-build.log"
DEFAULT_LOG_PATH = f"logs/{LOG_FILE_NAME}"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure logging for a build.

    The build log always records DEBUG, which is where captured tool output
    (debootstrap, apt, mksquashfs, xorriso) ends up; ``level`` only applies
    to the console. If the requested location is not writable we fall back
    to a file in the current directory.

    Returns the actual file path being used.
    """

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # Second call: only the console threshold can change.
    if getattr(logger, "_liveiso_configured", False):
        existing = getattr(logger, "_liveiso_console", None)
        if existing is not None:
            existing.setLevel(level)
        return getattr(logger, "_liveiso_log_path", log_path)

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        chosen_path = log_path
    except OSError:
        chosen_path = str(Path.cwd() / LOG_FILE_NAME)
        file_handler = logging.FileHandler(chosen_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    logger.addHandler(file_handler)

    console: Optional[logging.Handler] = None
    if also_console:
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(fmt)
        logger.addHandler(console)

    setattr(logger, "_liveiso_configured", True)
    setattr(logger, "_liveiso_log_path", chosen_path)
    setattr(logger, "_liveiso_console", console)

    logging.getLogger(__name__).info(
        "Logging initialized (requested=%s, actual=%s, console=%s)",
        log_path,
        chosen_path,
        logging.getLevelName(level),
    )
    return chosen_path
