import logging

from .settings import config_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install a stream handler on the root logger at the configured level."""
    logging.basicConfig(
        level=level or config_settings.LOG_LEVEL,
        format=LOG_FORMAT,
    )
