"""Deterministic per-user signer derivation.

Each user gets a BIP-32 child key of one master seed.  The child index is a
hash of the user's checksummed address, so the mapping is reproducible on
any host that holds the same master secret and nothing has to be stored.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from eth_account import Account
from eth_account.hdaccount import key_from_seed, seed_from_mnemonic
from eth_account.signers.local import LocalAccount
from eth_account.messages import encode_typed_data
from eth_utils import ValidationError, is_hex_address, keccak, to_checksum_address

from ..errors import ConfigurationError, DerivationError
from ..utils.logging import log_json

# 2**31 - 1 marks the hardened boundary; indices stay strictly below it.
INDEX_MODULUS = 2147483647
DERIVATION_PATH = "m/44'/60'/0'/0/{index}"

_HEX_SEED = re.compile(r"^0x[0-9a-fA-F]{128}$")


@dataclass(frozen=True)
class DerivedSigner:
    """Key pair derived for one user identity."""

    identity: str
    index: int
    path: str
    address: str
    account: LocalAccount = field(repr=False, compare=False)

    def sign_typed_data(self, typed: dict[str, Any]) -> str:
        """EIP-712 sign a full typed-data message, returning 0x hex."""
        signed = self.account.sign_message(encode_typed_data(full_message=typed))
        return "0x" + bytes(signed.signature).hex()

    def sign_hash(self, digest: bytes) -> str:
        """Sign a raw 32-byte digest (Safe owner signature, ``v`` in 27/28)."""
        signed = self.account.unsafe_sign_hash(digest)
        return "0x" + bytes(signed.signature).hex()

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        return bytes(self.account.sign_transaction(tx).raw_transaction)


def normalize_identity(user_identity: str) -> str:
    """Return the EIP-55 checksum form of ``user_identity``."""
    if not isinstance(user_identity, str) or not user_identity.strip():
        raise DerivationError("user identity must be a non-empty address string")
    candidate = user_identity.strip().lower()
    if not is_hex_address(candidate):
        raise DerivationError(f"user identity is not a 20-byte hex address: {user_identity!r}")
    return to_checksum_address(candidate)


def derivation_index(user_identity: str) -> int:
    """Map an identity to its child index in ``[0, 2**31 - 1)``."""
    digest = keccak(text=normalize_identity(user_identity))
    return int.from_bytes(digest, "big") % INDEX_MODULUS


def _seed_from_secret(master_secret: str | None) -> bytes:
    if master_secret is None or not str(master_secret).strip():
        raise ConfigurationError(
            "master derivation secret is not configured (set HD_WALLET_MNEMONIC)"
        )
    secret = str(master_secret).strip()
    if _HEX_SEED.match(secret):
        return bytes.fromhex(secret[2:])
    try:
        return seed_from_mnemonic(" ".join(secret.split()), "")
    except (ValidationError, ValueError) as exc:
        raise ConfigurationError("master derivation secret is not a valid BIP-39 mnemonic") from exc


class WalletDeriver:
    """Derive :class:`DerivedSigner` objects from one master secret.

    Parameters
    ----------
    master_secret:
        BIP-39 mnemonic phrase, or a ``0x`` prefixed 64-byte hex seed.
    logger:
        Optional logger; only public data (index, address) is ever logged.
    """

    def __init__(self, master_secret: str | None, logger: logging.Logger | None = None) -> None:
        self._seed = _seed_from_secret(master_secret)
        self._log = logger or logging.getLogger("polyexec.wallet")

    def derive_signer(self, user_identity: str) -> DerivedSigner:
        identity = normalize_identity(user_identity)
        index = derivation_index(identity)
        path = DERIVATION_PATH.format(index=index)
        account = Account.from_key(key_from_seed(self._seed, path))
        log_json(
            self._log,
            "signer_derived",
            level=logging.DEBUG,
            identity=identity,
            index=index,
            address=account.address,
        )
        return DerivedSigner(identity, index, path, account.address, account)

    def __repr__(self) -> str:
        return "WalletDeriver(<secret>)"


def derive_signer(master_secret: str | None, user_identity: str) -> DerivedSigner:
    """Functional shortcut for ``WalletDeriver(master_secret).derive_signer(...)``."""
    return WalletDeriver(master_secret).derive_signer(user_identity)


__all__ = [
    "DERIVATION_PATH",
    "INDEX_MODULUS",
    "DerivedSigner",
    "WalletDeriver",
    "derivation_index",
    "derive_signer",
    "normalize_identity",
]
