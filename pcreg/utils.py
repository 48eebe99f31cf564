"""General utility functions."""

import logging
import time
from functools import wraps

logger = logging.getLogger(__name__)


def time_function(func):
    """
    Decorator to time function execution.
    For recursive functions, only times the top-level call.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not hasattr(wrapper, '_in_call'):
            wrapper._in_call = False

        if wrapper._in_call:
            return func(*args, **kwargs)

        wrapper._in_call = True
        start_time = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            wrapper._in_call = False
            logger.debug("%s took %.6f seconds", func.__qualname__,
                         time.perf_counter() - start_time)

    return wrapper


def ceil_div(a, b):
    return -(-a // b)


def round_up(value, multiple):
    """Round value up to the next multiple of `multiple`."""
    return ceil_div(value, multiple) * multiple


def is_power_of_two(value):
    return value > 0 and (value & (value - 1)) == 0
