import asyncio
import functools
import logging
import time

logger = logging.getLogger(__name__)


def elapsed_ms(t0: float) -> int:
    """Milliseconds since a ``time.perf_counter()`` reading."""
    return int((time.perf_counter() - t0) * 1000)


class Stopwatch:
    """Wall-clock timer for a whole request; ``ms`` can be read at any point."""

    def __init__(self):
        self.t0 = time.perf_counter()

    @property
    def ms(self) -> int:
        return elapsed_ms(self.t0)


def profile_stage(stage_name: str):
    """Decorator to log how long a pipeline stage takes (works with async or sync)."""
    def decorator(func):
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def wrapper(*args, **kwargs):
                t0 = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    logger.info(f"[PERF] {stage_name}: {elapsed_ms(t0)} ms")
            return wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            t0 = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                logger.info(f"[PERF] {stage_name}: {elapsed_ms(t0)} ms")
        return wrapper
    return decorator
