"""Configuration management for ladder-mm.

Two layers: ``Settings`` holds process-level knobs from the environment (.env),
``StrategyConfig`` is the per-market YAML document loaded once at startup.
"""

from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(Exception):
    """Raised when settings or the strategy document are unusable."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Wallet Configuration
    private_key: Optional[SecretStr] = Field(
        default=None,
        description="Private key for signing transactions (hex string with 0x prefix)",
    )
    wallet_address: Optional[str] = Field(
        default=None,
        description="Wallet address whose orders and balances are managed",
    )

    # Network Configuration
    rpc_url: str = Field(
        default="https://mainnet.base.org",
        description="RPC endpoint used for balances and transaction submission",
    )
    oracle_rpc_url: Optional[str] = Field(
        default=None,
        description="RPC endpoint for on-chain oracles (falls back to rpc_url)",
    )
    taker_rpc_url: Optional[str] = Field(
        default=None,
        description="RPC endpoint for reading external pool swaps (falls back to rpc_url)",
    )
    chain_id: int = Field(
        default=8453,
        description="Chain ID (8453 for Base mainnet)",
    )
    subgraph_url: Optional[str] = Field(
        default=None,
        description="Venue subgraph endpoint for open orders and depth",
    )
    controller_address: Optional[str] = Field(
        default=None,
        description="Venue controller contract receiving instruction batches",
    )
    gas_multiplier: float = Field(
        default=1.1,
        description="Multiplier applied to the node's gas price",
        ge=1.0,
        le=5.0,
    )

    # Strategy
    strategy_config_path: Path = Field(
        default=Path("config.yaml"),
        description="Path to the per-market YAML strategy document",
    )

    # Mode
    dry_run: bool = Field(
        default=True,
        description="If true, submit batches to an in-memory paper venue",
    )
    cancel_on_start: bool = Field(
        default=True,
        description="If true, cancel all resting orders before the first cycle",
    )
    cancel_on_stop: bool = Field(
        default=True,
        description="If true, cancel all resting orders on shutdown",
    )
    simulate: bool = Field(
        default=False,
        description="If true, poll external pools and log a spread calibration each cycle",
    )

    # Alerts (optional)
    slack_info_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for informational messages",
    )
    slack_error_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for errors",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_json: bool = Field(
        default=False,
        description="Render logs as JSON lines",
    )

    @field_validator("wallet_address", mode="before")
    @classmethod
    def validate_wallet_address(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not v.startswith("0x") or len(v) != 42:
            raise ValueError("Wallet address must be a valid Ethereum address (0x + 40 hex chars)")
        return v.lower()

    @field_validator("private_key", mode="before")
    @classmethod
    def validate_private_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not v.startswith("0x"):
            raise ValueError("Private key must start with 0x")
        if len(v) != 66:  # 0x + 64 hex chars
            raise ValueError("Private key must be 32 bytes (64 hex chars + 0x prefix)")
        return v

    def is_trading_enabled(self) -> bool:
        """Check if on-chain trading credentials and venue endpoints are configured."""
        return (
            self.private_key is not None
            and self.wallet_address is not None
            and self.subgraph_url is not None
            and self.controller_address is not None
        )


class ResidualPolicy(str, Enum):
    """What to do with a tick whose resting orders do not fit the target exactly."""

    CANCEL = "cancel"
    KEEP = "keep"
    REBUILD = "rebuild"


# camelCase keys accepted from older strategy documents
_LEGACY_PARAM_KEYS = {
    "deltaLimit": "delta_limit",
    "minSpread": "min_tick_spread",
    "maxSpread": "max_tick_spread",
    "minTickSpread": "min_tick_spread",
    "maxTickSpread": "max_tick_spread",
    "orderGap": "order_gap",
    "orderNum": "order_num",
    "orderSize": "order_size",
    "minOrderSize": "min_order_size",
    "startBaseAmount": "start_base_amount",
    "startQuoteAmount": "start_quote_amount",
    "defaultBaseBalance": "start_base_amount",
    "residualPolicy": "residual_policy",
    "defaultAskSpread": "default_ask_spread",
    "defaultBidSpread": "default_bid_spread",
    "backtestWindowBlocks": "backtest_window_blocks",
}


def _rename_keys(data: Any, mapping: Dict[str, str]) -> Any:
    if not isinstance(data, dict):
        return data
    return {mapping.get(key, key): value for key, value in data.items()}


class MarketParams(BaseModel):
    """Quoting parameters for one market."""

    delta_limit: Decimal = Field(gt=0, description="Quote value of imbalance that saturates skew")
    min_tick_spread: int = Field(ge=0)
    max_tick_spread: int = Field(ge=0)
    order_gap: int = Field(default=0, ge=0, description="Ticks between ladder rungs")
    order_num: int = Field(default=1, gt=0, description="Rungs per side")
    order_size: Decimal = Field(gt=0, description="Base size per rung")
    min_order_size: Decimal = Field(default=Decimal("0"), ge=0)
    start_base_amount: Decimal = Field(default=Decimal("0"), ge=0)
    start_quote_amount: Decimal = Field(default=Decimal("0"), ge=0)
    residual_policy: ResidualPolicy = ResidualPolicy.CANCEL
    default_ask_spread: Optional[int] = Field(default=None, ge=0)
    default_bid_spread: Optional[int] = Field(default=None, ge=0)
    backtest_window_blocks: int = Field(default=1800, gt=0)

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data: Any) -> Any:
        return _rename_keys(data, _LEGACY_PARAM_KEYS)

    @model_validator(mode="after")
    def check_spread_bounds(self) -> "MarketParams":
        if self.max_tick_spread <= self.min_tick_spread:
            raise ValueError(
                f"max_tick_spread ({self.max_tick_spread}) must be greater than "
                f"min_tick_spread ({self.min_tick_spread})"
            )
        return self

    @property
    def spread_budget(self) -> int:
        return self.min_tick_spread + self.max_tick_spread

    @property
    def fallback_spreads(self) -> tuple:
        """(ask, bid) spreads used when backtesting finds nothing profitable."""
        half = self.spread_budget // 2
        ask = self.default_ask_spread if self.default_ask_spread is not None else half
        bid = self.default_bid_spread if self.default_bid_spread is not None else self.spread_budget - half
        return ask, bid


class OracleConfig(BaseModel):
    """Where the reference price for a market comes from."""

    source: Literal["binance", "chainlink", "odos", "static"] = "binance"
    symbol: Optional[str] = None  # binance
    interval: str = "1m"  # binance kline interval
    period: int = Field(default=20, gt=0)  # binance EMA period
    feed_address: Optional[str] = None  # chainlink
    feed_decimals: int = 8  # chainlink
    token_address: Optional[str] = None  # odos
    price: Optional[Decimal] = None  # static

    @model_validator(mode="after")
    def check_source_fields(self) -> "OracleConfig":
        required = {
            "binance": "symbol",
            "chainlink": "feed_address",
            "odos": "token_address",
            "static": "price",
        }[self.source]
        if getattr(self, required) is None:
            raise ValueError(f"{self.source} oracle requires '{required}'")
        return self


class VenueConfig(BaseModel):
    """Venue identifiers for one market."""

    base: str
    quote: str
    base_decimals: int = Field(default=18, ge=0, le=36)
    quote_decimals: int = Field(default=6, ge=0, le=36)
    bid_book_id: str = "0"
    ask_book_id: str = "0"


class PoolConfig(BaseModel):
    """External pool whose swaps feed the spread backtester."""

    address: str
    kind: Literal["uniswap_v3", "uniswap_v2"] = "uniswap_v3"
    token0_decimals: int = 18
    token1_decimals: int = 6
    token0_is_base: bool = True


class MarketConfig(BaseModel):
    oracle: OracleConfig
    venue: VenueConfig
    params: MarketParams
    pools: List[PoolConfig] = Field(default_factory=list)


class StrategyConfig(BaseModel):
    """The whole strategy document."""

    fetch_interval_seconds: float = Field(default=5.0, gt=0)
    markets: Dict[str, MarketConfig] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_interval(cls, data: Any) -> Any:
        if isinstance(data, dict) and "fetchIntervalMilliSeconds" in data:
            data = dict(data)
            data["fetch_interval_seconds"] = float(data.pop("fetchIntervalMilliSeconds")) / 1000
        return data


def parse_strategy_config(data: Union[Dict[str, Any], None]) -> StrategyConfig:
    """Validate an already-parsed strategy document."""
    if not isinstance(data, dict):
        raise ConfigError("Strategy config must be a mapping")
    try:
        return StrategyConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid strategy config: {e}") from e


def load_strategy_config(path: Union[str, Path]) -> StrategyConfig:
    """Load and validate the YAML strategy document at ``path``."""
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except FileNotFoundError as e:
        raise ConfigError(f"Strategy config not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Strategy config is not valid YAML: {e}") from e
    return parse_strategy_config(data)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment."""
    global _settings
    _settings = Settings()
    return _settings
