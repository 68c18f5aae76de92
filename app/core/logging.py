import logging

from app.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
    )
    # urllib3 logs every retry at DEBUG; keep provider noise out of app logs
    logging.getLogger("urllib3").setLevel(logging.WARNING)
