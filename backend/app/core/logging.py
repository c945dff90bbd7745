"""
Process-wide logging setup. Called once from app.main.
"""
import logging

from app.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install a stream handler on the root logger at *level* (default from settings)."""
    resolved = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    # SQL echo is controlled separately so INFO logs stay readable.
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.SQL_ECHO else logging.WARNING
    )
