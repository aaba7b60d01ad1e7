import logging
import sys

LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"

# Chatty on every request, would drown out the keep-alive lines
NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler")


def setup_logging(level: str = "INFO") -> None:
    """Console logging for the backend process."""
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    logging.basicConfig(
        level=resolved,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # basicConfig is a no-op once handlers exist, the level still has to follow LOG_LEVEL
    logging.getLogger().setLevel(resolved)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
