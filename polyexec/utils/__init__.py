"""
Shared helpers for :mod:`polyexec`.

* :mod:`logging` – JSON structured logging.
* :mod:`monitoring` – Prometheus counters and histograms.
* :mod:`net` – bounded async retry.
"""

from .logging import get_logger, log_json
from .net import RetryPolicy, retry_async

__all__ = [
    "get_logger",
    "log_json",
    "RetryPolicy",
    "retry_async",
]
