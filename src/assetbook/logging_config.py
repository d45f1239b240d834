import logging

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s - %(message)s"


def configure_logging(level: str | int = logging.INFO) -> None:
    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    # SQL echo is governed by the engine's echo flag
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
