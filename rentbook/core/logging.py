import logging

from rentbook.core.config import LoggingConfig


def configure_logging(config: LoggingConfig) -> None:
    """Install the root handler once per process."""
    level = getattr(logging, config.level.upper(), logging.INFO)
    kwargs = {"level": level, "format": config.format, "force": True}
    if config.file_path:
        kwargs["filename"] = config.file_path
    logging.basicConfig(**kwargs)
    # uvicorn access lines duplicate the request log middleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
