"""
Timing for provider calls
Wraps registrar / hosting / email operations and keeps running totals per operation
"""

import inspect
import logging
import time
import functools
from collections import defaultdict
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

_operation_stats: Dict[str, Dict[str, float]] = defaultdict(
    lambda: {'calls': 0, 'failures': 0, 'total_ms': 0.0, 'max_ms': 0.0}
)


def _record(operation_name: str, duration_ms: float, failed: bool) -> None:
    stats = _operation_stats[operation_name]
    stats['calls'] += 1
    stats['total_ms'] += duration_ms
    stats['max_ms'] = max(stats['max_ms'], duration_ms)
    if failed:
        stats['failures'] += 1


class OperationTimer:
    """Times one operation and records the result in the per-operation totals"""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        duration = self.duration_ms
        failed = exc_type is not None
        _record(self.operation_name, duration, failed)

        if failed:
            logger.warning(f"⏱️ {self.operation_name}: {duration:.2f}ms (failed: {exc_type.__name__})")
        else:
            logger.info(f"⏱️ {self.operation_name}: {duration:.2f}ms")

    @property
    def duration_ms(self) -> float:
        if self.start_time is not None and self.end_time is not None:
            return (self.end_time - self.start_time) * 1000
        return 0.0


def monitor_performance(operation_name: str):
    """
    Decorator to time a sync or async function

    Args:
        operation_name: Prefix used in log lines and stats keys
    """
    def decorator(func: Callable):
        label = f"{operation_name}.{func.__name__}"

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with OperationTimer(label):
                return await func(*args, **kwargs)

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with OperationTimer(label):
                return func(*args, **kwargs)

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def get_performance_stats() -> Dict[str, Any]:
    """Snapshot of call counts, failures and average/max latency per operation"""
    snapshot = {}
    for name, stats in _operation_stats.items():
        calls = int(stats['calls'])
        snapshot[name] = {
            'calls': calls,
            'failures': int(stats['failures']),
            'avg_ms': round(stats['total_ms'] / calls, 2) if calls else 0.0,
            'max_ms': round(stats['max_ms'], 2),
        }
    return snapshot


def reset_performance_stats() -> None:
    _operation_stats.clear()
