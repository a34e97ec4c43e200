"""EIP-712 order construction for the CTF exchange.

Orders are made on behalf of a Safe: ``maker`` is the Safe (it holds the
collateral and pays), ``signer`` is the derived owner key, and the signature
type tells the exchange to verify ownership through the Safe.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import os
import time
from decimal import ROUND_DOWN, Decimal
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from eth_utils import to_checksum_address

from .transport import encode_body
from .validators import parse_token_id

if TYPE_CHECKING:
    from ..wallet.deriver import DerivedSigner
    from .order_manager import OrderIntent

PROTOCOL_NAME = "Polymarket CTF Exchange"
PROTOCOL_VERSION = "1"

CTF_EXCHANGE = "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E"
NEG_RISK_CTF_EXCHANGE = "0xC5d563A36AE78145C45a50134d48A1215220f80a"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SIGNATURE_TYPE_EOA = 0
SIGNATURE_TYPE_POLY_PROXY = 1
SIGNATURE_TYPE_POLY_GNOSIS_SAFE = 2

_UNIT = Decimal("0.000001")

ORDER_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Order": [
        {"name": "salt", "type": "uint256"},
        {"name": "maker", "type": "address"},
        {"name": "signer", "type": "address"},
        {"name": "taker", "type": "address"},
        {"name": "tokenId", "type": "uint256"},
        {"name": "makerAmount", "type": "uint256"},
        {"name": "takerAmount", "type": "uint256"},
        {"name": "expiration", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "feeRateBps", "type": "uint256"},
        {"name": "side", "type": "uint8"},
        {"name": "signatureType", "type": "uint8"},
    ],
}


def random_salt() -> int:
    return int.from_bytes(os.urandom(8), "big", signed=False)


def to_base_units(value: float | Decimal) -> int:
    """Six-decimal fixed point, rounded towards zero."""
    return int((Decimal(str(value)).quantize(_UNIT, rounding=ROUND_DOWN) * 1_000_000))


def order_amounts(side: str, price: float, size: float) -> tuple[int, int]:
    """Return ``(maker_amount, taker_amount)`` in base units.

    BUY gives collateral and takes shares; SELL gives shares and takes
    collateral.
    """

    shares = to_base_units(size)
    collateral = to_base_units(Decimal(str(size)) * Decimal(str(price)))
    if str(side).upper() == "BUY":
        return collateral, shares
    return shares, collateral


def exchange_address(neg_risk: bool) -> str:
    return to_checksum_address(NEG_RISK_CTF_EXCHANGE if neg_risk else CTF_EXCHANGE)


def build_order_message(
    intent: "OrderIntent",
    signer_address: str,
    funder: str,
    salt: int,
    signature_type: int = SIGNATURE_TYPE_POLY_GNOSIS_SAFE,
    expiration: int = 0,
    nonce: int = 0,
    fee_rate_bps: int = 0,
) -> Dict[str, Any]:
    side = intent.side.value
    maker_amount, taker_amount = order_amounts(side, intent.price, intent.size)
    return {
        "salt": int(salt),
        "maker": to_checksum_address(funder),
        "signer": to_checksum_address(signer_address),
        "taker": ZERO_ADDRESS,
        "tokenId": parse_token_id(intent.token_id),
        "makerAmount": maker_amount,
        "takerAmount": taker_amount,
        "expiration": int(expiration),
        "nonce": int(nonce),
        "feeRateBps": int(fee_rate_bps),
        "side": 0 if side == "BUY" else 1,
        "signatureType": int(signature_type),
    }


def order_typed_data(message: Dict[str, Any], chain_id: int, neg_risk: bool) -> Dict[str, Any]:
    return {
        "types": ORDER_TYPES,
        "primaryType": "Order",
        "domain": {
            "name": PROTOCOL_NAME,
            "version": PROTOCOL_VERSION,
            "chainId": int(chain_id),
            "verifyingContract": exchange_address(neg_risk),
        },
        "message": message,
    }


def sign_order(
    intent: "OrderIntent",
    signer: "DerivedSigner",
    funder: str,
    chain_id: int = 137,
    salt_factory: Callable[[], int] = random_salt,
) -> Dict[str, Any]:
    """Build and sign the order, returning the wire representation.

    Parameters
    ----------
    intent:
        Validated order intent.
    signer:
        Derived owner key of ``funder``.
    funder:
        Safe address that holds the collateral and is recorded as maker.
    chain_id:
        Chain id bound into the EIP-712 domain.
    salt_factory:
        Source of the per-order salt.
    """

    message = build_order_message(intent, signer.address, funder, salt_factory())
    signature = signer.sign_typed_data(order_typed_data(message, chain_id, intent.neg_risk))
    return {
        "salt": message["salt"],
        "maker": message["maker"],
        "signer": message["signer"],
        "taker": message["taker"],
        "tokenId": str(message["tokenId"]),
        "makerAmount": str(message["makerAmount"]),
        "takerAmount": str(message["takerAmount"]),
        "expiration": str(message["expiration"]),
        "nonce": str(message["nonce"]),
        "feeRateBps": str(message["feeRateBps"]),
        "side": intent.side.value,
        "signatureType": message["signatureType"],
        "signature": signature,
    }


def l2_headers(
    credentials: Any,
    address: str,
    method: str,
    path: str,
    body: Any = None,
    timestamp: Optional[int] = None,
) -> Dict[str, str]:
    """HMAC request headers for authenticated exchange endpoints.

    ``credentials`` needs ``api_key``, ``secret`` (urlsafe base64) and
    ``passphrase`` attributes.
    """

    ts = str(int(time.time()) if timestamp is None else timestamp)
    body_str = "" if body is None else encode_body(body)
    payload = ts + method.upper() + path + body_str
    secret = base64.urlsafe_b64decode(credentials.secret + "==")
    digest = hmac.new(secret, payload.encode(), hashlib.sha256).digest()
    return {
        "POLY_ADDRESS": address,
        "POLY_API_KEY": credentials.api_key,
        "POLY_PASSPHRASE": credentials.passphrase,
        "POLY_TIMESTAMP": ts,
        "POLY_SIGNATURE": base64.urlsafe_b64encode(digest).decode(),
    }


__all__ = [
    "CTF_EXCHANGE",
    "NEG_RISK_CTF_EXCHANGE",
    "ORDER_TYPES",
    "PROTOCOL_NAME",
    "PROTOCOL_VERSION",
    "SIGNATURE_TYPE_POLY_GNOSIS_SAFE",
    "build_order_message",
    "exchange_address",
    "l2_headers",
    "order_amounts",
    "order_typed_data",
    "sign_order",
    "to_base_units",
]
