import logging
import sys

from newsletter.core.config import settings


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for the API and worker processes."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stdout,
    )
