"""Lazy-loading package exports to avoid heavy import side effects."""

from importlib import import_module
from typing import Any

__all__ = [
    "ExecutionOrchestrator",
    "build_orchestrator",
    "WalletDeriver",
    "derive_signer",
    "SafeOwnershipCoordinator",
    "RateLimiter",
    "OrderExecutionPipeline",
    "OrderIntent",
    "OrderResult",
    "load_settings",
    "execution",
    "wallet",
    "utils",
]

_EXPORTS = {
    "ExecutionOrchestrator": "polyexec.orchestrator",
    "build_orchestrator": "polyexec.orchestrator",
    "WalletDeriver": "polyexec.wallet.deriver",
    "derive_signer": "polyexec.wallet.deriver",
    "SafeOwnershipCoordinator": "polyexec.wallet.safe",
    "RateLimiter": "polyexec.execution.rate_limiter",
    "OrderExecutionPipeline": "polyexec.execution.pipeline",
    "OrderIntent": "polyexec.execution.order_manager",
    "OrderResult": "polyexec.execution.classifier",
    "load_settings": "polyexec.config",
}


def __getattr__(name: str) -> Any:  # pragma: no cover - thin wrapper
    if name in _EXPORTS:
        return getattr(import_module(_EXPORTS[name]), name)
    if name in {"execution", "wallet", "utils"}:
        return import_module(f"polyexec.{name}")
    raise AttributeError(name)
