"""Configuration loading utilities for polyexec.

Settings live in a YAML file (``config.yaml`` at the project root by
default) and are validated with pydantic.  Secrets are never expected in the
file: they come from the environment, optionally seeded from a ``.env``
file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .execution.rate_limiter import RateLimiter


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "config.yaml"

# GnosisSafeProxy creation code shipped with the v1.3.0 proxy factory.
SAFE_PROXY_CREATION_CODE_V130 = (
    "0x608060405234801561001057600080fd5b506040516101e63803806101e683398181016040526020811015"
    "61003357600080fd5b8101908080519060200190929190505050600073ffffffffffffffffffffffffffffff"
    "ffffffffff168173ffffffffffffffffffffffffffffffffffffffff1614156100ca576040517f08c379a000"
    "000000000000000000000000000000000000000000000000000000815260040180806020018281038252602281"
    "52602001806101c46022913960400191505060405180910390fd5b806000806101000a81548173ffffffffffff"
    "ffffffffffffffffffffffffffff021916908373ffffffffffffffffffffffffffffffffffffffff160217905550"
    "5060ab806101196000396000f3fe608060405273ffffffffffffffffffffffffffffffffffffffff600054167f"
    "a619486e0000000000000000000000000000000000000000000000000000000060003514156050578060005260"
    "206000f35b3660008037600080366000845af43d6000803e60008114156070573d6000fd5b3d6000f3fea26469"
    "70667358221220d1429297349653a4918076d650332de1a1068c5f3e07c5c82360c277770b955264736f6c6343"
    "0007060033496e76616c69642073696e676c65746f6e20616464726573732070726f7669646564"
)


class RateLimitRule(BaseModel):
    """One bucket of the declarative rate-limit table."""

    name: str
    max_requests: int = Field(..., ge=1)
    window: float = Field(..., gt=0, description="Window length in seconds")
    burst_allowance: Optional[int] = Field(None, ge=1)


class SafeNetworkParams(BaseModel):
    """Parameters a Safe deployer uses; they fix the predicted address."""

    chain_id: int = 137
    proxy_factory: str = "0xa6B71E26C5e0845f74c812102Ca7114b6a896AB2"
    singleton: str = "0x3E5c63644E683549055b9Be8653de26E0B4CD36E"
    fallback_handler: str = "0xf48f2B2d2a534e402487b3ee7C18c33Aec0Fe5e4"
    proxy_creation_code: str = SAFE_PROXY_CREATION_CODE_V130
    salt_nonce: int = Field(0, ge=0)

    @field_validator("proxy_factory", "singleton", "fallback_handler")
    @classmethod
    def _hex_address(cls, value: str) -> str:
        if not (isinstance(value, str) and value.startswith("0x") and len(value) == 42):
            raise ValueError(f"not a hex address: {value!r}")
        return value


class ExchangeConfig(BaseModel):
    clob_url: str = "https://clob.polymarket.com"
    chain_id: int = 137
    submit_attempts: int = Field(1, ge=1)
    retry_backoff: float = Field(0.5, ge=0)
    request_timeout: float = Field(10.0, gt=0)
    max_redirects: int = Field(10, ge=0)


class AuthorizationConfig(BaseModel):
    poll_interval: float = Field(2.0, gt=0)
    timeout: float = Field(60.0, gt=0)
    max_poll_errors: int = Field(5, ge=0)


class ApiCredentials(BaseModel):
    """Exchange L2 API credentials used for HMAC request headers."""

    api_key: str
    secret: str
    passphrase: str


DEFAULT_RATE_LIMITS = [
    RateLimitRule(name="clob-api-keys", max_requests=50, window=10),
    RateLimitRule(name="clob-post-order", max_requests=2400, window=10, burst_allowance=2400),
    RateLimitRule(name="clob-post-order-sustained", max_requests=2400, window=60),
    RateLimitRule(name="clob-delete-order", max_requests=2400, window=10, burst_allowance=2400),
    RateLimitRule(name="clob-delete-order-sustained", max_requests=2400, window=60),
    RateLimitRule(name="clob-markets", max_requests=250, window=10),
    RateLimitRule(name="clob-book", max_requests=200, window=10),
    RateLimitRule(name="data-api", max_requests=200, window=10),
]


class Settings(BaseModel):
    """Top-level configuration schema."""

    master_secret: Optional[str] = Field(None, repr=False)
    safe_owner_key: Optional[str] = Field(None, repr=False)
    rpc_url: Optional[str] = None
    relay_url: str = "https://safe-transaction.polygon.safe.global"
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    authorization: AuthorizationConfig = Field(default_factory=AuthorizationConfig)
    safe: SafeNetworkParams = Field(default_factory=SafeNetworkParams)
    credentials: Optional[ApiCredentials] = Field(None, repr=False)
    rate_limits: list[RateLimitRule] = Field(default_factory=lambda: list(DEFAULT_RATE_LIMITS))

    def require_master_secret(self) -> str:
        if not self.master_secret or not self.master_secret.strip():
            raise ConfigurationError(
                "HD_WALLET_MNEMONIC is not configured; the master derivation secret is required"
            )
        return self.master_secret


def _apply_env(data: Dict[str, Any]) -> Dict[str, Any]:
    env_map = {
        "master_secret": "HD_WALLET_MNEMONIC",
        "rpc_url": "POLYGON_RPC_URL",
        "relay_url": "SAFE_TRANSACTION_SERVICE_URL",
        "safe_owner_key": "SAFE_OWNER_PRIVATE_KEY",
    }
    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value:
            data[key] = value

    clob_url = os.getenv("POLYMARKET_CLOB_API_URL")
    if clob_url:
        data.setdefault("exchange", {})
        data["exchange"]["clob_url"] = clob_url

    api_key = os.getenv("POLYMARKET_API_KEY")
    if api_key:
        data["credentials"] = {
            "api_key": api_key,
            "secret": os.getenv("POLYMARKET_API_SECRET", ""),
            "passphrase": os.getenv("POLYMARKET_API_PASSPHRASE", ""),
        }
    return data


def load_settings(path: str | Path | None = None, env_file: str | Path | None = None) -> Settings:
    """Load settings from YAML plus environment overrides.

    Parameters
    ----------
    path : str | Path | None
        Optional path to a YAML file. If ``None`` the project level
        ``config.yaml`` is used when present, otherwise built-in defaults.
    env_file : str | Path | None
        Optional ``.env`` file loaded before reading the environment.

    Raises
    ------
    ConfigurationError
        When an explicit file is missing or the content fails validation.
    """

    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    data: Dict[str, Any] = {}
    cfg_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if cfg_path.exists():
        with cfg_path.open() as f:
            data = yaml.safe_load(f) or {}
    elif path is not None:
        raise ConfigurationError(f"Config file not found: {cfg_path}")

    data = _apply_env(data)
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def load_config(path: str | Path | None = None) -> Dict[str, Any]:
    """Return validated settings as a plain dictionary."""
    return load_settings(path).model_dump()


def build_rate_limiter(settings: Settings | None = None, **kwargs: Any) -> RateLimiter:
    """Create a :class:`RateLimiter` with the configured bucket table."""
    limiter = RateLimiter(**kwargs)
    rules = settings.rate_limits if settings is not None else DEFAULT_RATE_LIMITS
    limiter.configure(rules)
    return limiter


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_RATE_LIMITS",
    "ApiCredentials",
    "AuthorizationConfig",
    "ExchangeConfig",
    "RateLimitRule",
    "SafeNetworkParams",
    "Settings",
    "build_rate_limiter",
    "load_config",
    "load_settings",
]
