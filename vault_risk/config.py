from pydantic_settings import BaseSettings
from typing import List, Optional, Tuple


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # MongoDB Configuration
    MONGODB_URI: Optional[str] = None
    MONGO_DB_NAME: str = "vault_risk"

    # Chain / RPC
    RPC_URL: str = "https://rpc.hyperliquid.xyz/evm"
    RPC_TIMEOUT_SECONDS: float = 10.0
    VAULT_ADDRESSES: str = ""
    DEFAULT_VAULT_EVENT_STYLE: str = "looping"
    STAKING_CONTRACT_ADDRESS: str = ""
    LENDING_PROTOCOL_ADDRESS: str = ""
    L1_USER_ADDRESS: str = ""
    HLP_VAULT_ADDRESS: str = "0xdfc24b077bc1425ad1dea75bcb6f8158e10df303"

    # L1 read precompiles
    SPOT_BALANCE_PRECOMPILE_ADDRESS: str = "0x0000000000000000000000000000000000000801"
    VAULT_EQUITY_PRECOMPILE_ADDRESS: str = "0x0000000000000000000000000000000000000802"
    WITHDRAWABLE_PRECOMPILE_ADDRESS: str = "0x0000000000000000000000000000000000000803"
    SPOT_TOKEN_IDS: str = "0"
    TOKEN_DECIMALS: int = 18
    L1_USD_DECIMALS: int = 6

    # Price sources
    COINGECKO_API_KEY: str = ""
    COINGECKO_BASE_URL: str = "https://api.coingecko.com/api/v3"
    DEFILLAMA_COINS_URL: str = "https://coins.llama.fi"
    STAKING_ASSET_ID: str = "hyperliquid"
    DERIVATIVE_ASSET_ID: str = "staked-hype"
    PRICE_STALENESS_SECONDS: int = 900
    PRICE_REFRESH_INTERVAL: int = 60

    # Yield inputs
    BORROW_APR_URL: Optional[str] = None
    BORROW_APR_FIELD: str = "borrow_apr"
    FALLBACK_STAKING_APY: float = 0.08
    FALLBACK_BORROW_APR: float = 0.05
    APY_ESTIMATION_MIN_SECONDS: int = 86400

    # Cadence, measured in source-chain blocks
    L1_READ_INTERVAL_BLOCKS: int = 100
    RISK_CHECK_INTERVAL_BLOCKS: int = 100

    # External call policy
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 10.0
    EXTERNAL_CALL_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 0.5
    RETRY_MAX_DELAY_SECONDS: float = 5.0

    # Risk Calculation Parameters
    LIQUIDATION_THRESHOLD: float = 0.80
    HEALTH_FACTOR_WARNING: float = 1.2
    HEALTH_FACTOR_CRITICAL: float = 1.1
    LEVERAGE_WARNING: float = 3.0
    LEVERAGE_CRITICAL: float = 3.5
    NET_YIELD_WARNING: float = 0.02
    NET_YIELD_CRITICAL: float = 0.0

    # Alerts
    ALERT_EMISSION_POLICY: str = "on_transition"
    ALERT_AUTO_RESOLVE: bool = True
    ALERT_WEBHOOK_URL: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Allow extra fields in .env

    @property
    def vault_bindings(self) -> List[Tuple[str, str]]:
        """(address, event style) pairs from ``VAULT_ADDRESSES`` entries like ``0xabc`` or ``0xabc:share``."""
        bindings = []
        for entry in _split_csv(self.VAULT_ADDRESSES):
            address, _, style = entry.partition(":")
            bindings.append((address.strip().lower(), style.strip() or self.DEFAULT_VAULT_EVENT_STYLE))
        return bindings

    @property
    def vault_addresses(self) -> List[str]:
        return [address for address, _ in self.vault_bindings]

    @property
    def spot_token_ids(self) -> List[int]:
        return [int(token) for token in _split_csv(self.SPOT_TOKEN_IDS)]


# Global settings instance
settings = Settings()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Sentinels for undefined ratios
HEALTH_FACTOR_SAFE = 999.0
LEVERAGE_CAP = 999.0


# MongoDB Collection Names
class Collections:
    VAULT_POSITIONS = "vault_positions"
    USER_POSITIONS = "user_positions"
    DEPOSITS = "vault_deposits"
    WITHDRAWALS = "vault_withdrawals"
    SHARE_TRANSFERS = "share_transfers"
    LOOP_EXECUTIONS = "loop_executions"
    RISK_METRICS = "risk_metric_snapshots"
    ALERTS = "emergency_alerts"
    L1_EQUITY = "l1_equity_snapshots"
    L1_SPOT_BALANCES = "l1_spot_balance_snapshots"
    TOKEN_PRICES = "token_prices"
    RAW_EVENTS = "raw_events"


# Coarse alert levels for a metrics snapshot
class AlertLevel:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertSeverity:
    WARNING = "warning"
    CRITICAL = "critical"


# Alert Types
class AlertType:
    LIQUIDATION_RISK = "liquidation_risk"
    HIGH_LEVERAGE = "high_leverage"
    LOW_YIELD = "low_yield"
    STRATEGY_FAILURE = "strategy_failure"
    STALE_DATA = "stale_data"
    LIQUIDATION = "liquidation"


class ExecutionType:
    INCREASE_LEVERAGE = "increase_leverage"
    DECREASE_LEVERAGE = "decrease_leverage"
    REBALANCE = "rebalance"


class ContractRole:
    STAKING = "staking"
    LENDING = "lending"


# Strategy actions decoded from manager batches
class StrategyAction:
    STAKE = "stake"
    UNSTAKE = "unstake"
    SUPPLY = "supply"
    WITHDRAW_COLLATERAL = "withdraw_collateral"
    BORROW = "borrow"
    REPAY = "repay"
