"""Order admission, signing, submission and outcome classification."""

from .classifier import FailureKind, OrderResult, Outcome, Rule
from .order_manager import OrderIntent, OrderManager, OrderState, Side
from .pipeline import CANCEL_BUCKETS, SUBMIT_BUCKETS, OrderExecutionPipeline
from .rate_limiter import RateLimiter
from .transport import AiohttpTransport, Transport, TransportRequest, TransportResponse

__all__ = [
    "FailureKind",
    "OrderResult",
    "Outcome",
    "Rule",
    "OrderIntent",
    "OrderManager",
    "OrderState",
    "Side",
    "CANCEL_BUCKETS",
    "SUBMIT_BUCKETS",
    "OrderExecutionPipeline",
    "RateLimiter",
    "AiohttpTransport",
    "Transport",
    "TransportRequest",
    "TransportResponse",
]
