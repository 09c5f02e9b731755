import logging
import os
from typing import Optional, Union


QUIET_LOGGERS = ('websockets', 'aiohttp.access', 'uvicorn.access')


def setup_logging(level: Optional[Union[int, str]] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Called once from the engine or API entrypoint. The level falls back to the
    LOG_LEVEL environment variable, then INFO. Subsequent calls are ignored if
    handlers already exist.
    """
    if logging.getLogger().handlers:
        return

    if level is None:
        level = os.getenv('LOG_LEVEL', 'INFO').upper()
    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
