"""Logging helpers for reconciliation runs.

``StructuredLogger`` appends ``key=value`` context to every message,
``PerformanceLogger`` times covariance estimation, factorization and ensemble
reconciliation and counts events such as repaired samples, and
``log_function_call`` traces a call with its duration.
"""

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from functools import wraps
from typing import Any, Callable, Dict, Iterator, MutableMapping, Optional, Tuple

import numpy as np


class StructuredLogger(logging.LoggerAdapter):
    """
    Logger adapter that appends fixed and per-call fields to messages.

    Example:
        >>> log = StructuredLogger(__name__, {"structure": "CrossTemporalStructure"})
        >>> log.info("Reconciler fitted", extra={"covariance": "shrink"})
        Reconciler fitted | structure=CrossTemporalStructure | covariance=shrink
    """

    def __init__(self, name: str, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__(logging.getLogger(name), dict(extra_fields or {}))

    def process(
        self,
        msg: Any,
        kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        fields = {**self.extra, **(kwargs.pop("extra", None) or {})}
        if fields:
            msg = f"{msg} | " + " | ".join(f"{key}={value}" for key, value in fields.items())
        return msg, kwargs


@dataclass
class OperationTiming:
    """Accumulated wall-clock time of one named operation."""

    calls: int = 0
    total: float = 0.0
    longest: float = 0.0
    last: float = 0.0

    def add(self, seconds: float) -> None:
        self.calls += 1
        self.total += seconds
        self.longest = max(self.longest, seconds)
        self.last = seconds


class PerformanceLogger:
    """Timings and event counters of one reconciler or sampler."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.timings: Dict[str, OperationTiming] = {}
        self.counters: Dict[str, int] = {}

    @contextmanager
    def timer(self, operation: str, log_level: str = 'INFO') -> Iterator[None]:
        """
        Time the enclosed block.

        Failed blocks are logged with their duration and re-raised; only
        successful ones are recorded in ``timings``.
        """
        level = logging.getLevelName(log_level.upper())
        start = time.perf_counter()
        try:
            yield
        except Exception as e:
            self.logger.error(f"{operation} failed after {time.perf_counter() - start:.4f}s: {e}")
            raise

        seconds = time.perf_counter() - start
        self.timings.setdefault(operation, OperationTiming()).add(seconds)
        self.logger.log(level, f"{operation} took {seconds:.4f}s")

    def count(self, event: str, amount: int = 1) -> None:
        self.counters[event] = self.counters.get(event, 0) + amount

    def log_ensemble_stats(self, samples: np.ndarray, name: str) -> None:
        """Log size, unusable (NaN) rows and the smallest value of a ``(B, N)`` ensemble."""
        unusable = np.isnan(samples).any(axis=1)
        usable = samples[~unusable]
        stats: Dict[str, Any] = {
            'samples': int(samples.shape[0]),
            'size': int(samples.shape[1]),
            'unusable': int(unusable.sum()),
        }
        if usable.size:
            stats['min'] = float(usable.min())
            stats['negative_entries'] = int((usable < 0).sum())

        self.logger.debug(f"{name}: {json.dumps(stats)}")

    def get_performance_summary(self) -> Dict[str, Any]:
        return {
            'total_time': sum(timing.total for timing in self.timings.values()),
            'operations': {name: asdict(timing) for name, timing in self.timings.items()},
            'events': dict(self.counters),
        }

    def log_performance_summary(self) -> None:
        summary = self.get_performance_summary()
        self.logger.info(f"Performance summary: {json.dumps(summary, indent=2)}")


def log_function_call(
    logger: Optional[logging.Logger] = None,
    level: str = 'DEBUG',
    log_result: bool = False
) -> Callable[[Callable], Callable]:
    """
    Log entry and duration of every call to the decorated function.

    Args:
        logger: Logger to use; defaults to the function's module logger.
        level: Level of the entry and exit messages. Failures are logged at
            ERROR and re-raised.
        log_result: Append ``repr(result)`` to the exit message.
    """
    log_level = logging.getLevelName(level.upper())

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            func_logger = logger or logging.getLogger(func.__module__)
            name = func.__qualname__
            start = time.perf_counter()
            func_logger.log(log_level, f"Calling {name}")

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                func_logger.error(
                    f"{name} raised {type(e).__name__} after {time.perf_counter() - start:.4f}s: {e}"
                )
                raise

            message = f"{name} returned in {time.perf_counter() - start:.4f}s"
            if log_result:
                message += f" with result: {result!r}"
            func_logger.log(log_level, message)
            return result

        return wrapper
    return decorator
