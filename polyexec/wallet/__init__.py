"""Per-user signer derivation and Safe ownership management."""

from .chain import ChainClient, Web3ChainClient
from .deriver import DerivedSigner, WalletDeriver, derivation_index, derive_signer
from .relay import RelayStatus, SafeTransactionServiceRelay, TransactionRelay
from .safe import AuthorizationStatus, AuthorizationTransaction, SafeOwnershipCoordinator

__all__ = [
    "ChainClient",
    "Web3ChainClient",
    "DerivedSigner",
    "WalletDeriver",
    "derivation_index",
    "derive_signer",
    "RelayStatus",
    "SafeTransactionServiceRelay",
    "TransactionRelay",
    "AuthorizationStatus",
    "AuthorizationTransaction",
    "SafeOwnershipCoordinator",
]
