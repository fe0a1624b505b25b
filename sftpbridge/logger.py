"""Module with the logger shared by all bridge components."""

import logging
from typing import Any, Iterable, Optional

# Requests are handled on RPC worker threads, so every line names its thread
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(threadName)s - %(message)s"


def _get_logger(name: str = "sftpbridge") -> logging.Logger:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logger = logging.getLogger(name)
    logger.addHandler(handler)

    return logger


def set_verbosity(debug: bool) -> None:
    """Log everything while debugging and only errors otherwise."""
    log.setLevel(logging.DEBUG if debug else logging.ERROR)


def summarize(obj: Any, max_length: int = 255) -> str:
    """Return the string form of an object, cut off at the given length."""
    text = str(obj)

    if len(text) > max_length:
        return text[: max_length - 3] + "..."

    return text


def summarize_call(method: Optional[str], args: Iterable[Any]) -> str:
    """Describe a remote call with its arguments summarized, e.g. "item(L2E=)"."""
    summary = ", ".join(summarize(arg) for arg in args)

    return f"{method or 'ping'}({summary})"


log = _get_logger()
