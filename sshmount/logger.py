"""Module containing utilities for logging, along with a standard logger."""

from contextlib import contextmanager
import logging
import time
from typing import Any, Iterator, Optional, Tuple


def _get_logger(name: Optional[str] = "sshmount") -> logging.Logger:
    stderrOutput = logging.StreamHandler()

    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    stderrOutput.setFormatter(formatter)

    logger = logging.getLogger(name)
    logger.addHandler(stderrOutput)

    return logger


def summarize(obj: Any, max_length: int = 255) -> str:
    """Return a stringified representation of the object up to the given length."""
    stringified_obj = str(obj)

    if len(stringified_obj) <= max_length:
        return stringified_obj
    else:
        return stringified_obj[: max_length - 3] + "..."


def summarize_args(args: tuple) -> Tuple[str, ...]:
    """Summarize a tuple of function arguments."""
    return tuple([summarize(arg, max_length=64) for arg in args])


@contextmanager
def traced(prefix: str, name: str, *args: Any) -> Iterator[None]:
    """
    Log the duration of the wrapped call at debug level.

    Messages look like "sftp::stat('/a',) - 3 ms". Nothing is formatted unless debug
    logging is enabled because summarizing arguments is relatively slow.
    """
    t_call = time.time()

    try:
        yield
    finally:
        if log.isEnabledFor(logging.DEBUG):
            t_millis = round((time.time() - t_call) * 1000)
            log.debug(f"{prefix}::{name}{summarize_args(args)} - {t_millis} ms")


# Default logger
log = _get_logger()
