from pydantic import BaseModel, Field
from typing import Any, ClassVar, Dict, List, Optional

from .config import AlertLevel, Collections, ExecutionType

# Mongo stores signed 64-bit integers; token amounts in base units overflow that
_INT64_MAX = 2 ** 63 - 1


def _bson_safe(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and abs(value) > _INT64_MAX:
        return str(value)
    if isinstance(value, dict):
        return {key: _bson_safe(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_bson_safe(item) for item in value]
    return value


# Base Models
class StoredRecord(BaseModel):
    """A document persisted under a deterministic natural key."""

    collection: ClassVar[str] = ""

    id: str

    def to_document(self) -> Dict[str, Any]:
        document = _bson_safe(self.model_dump(exclude={"id"}))
        document["_id"] = self.id
        return document

    @classmethod
    def from_document(cls, document: Dict[str, Any]):
        data = dict(document)
        data["id"] = data.pop("_id", data.get("id"))
        return cls(**data)


# Inbound events
class LedgerEvent(BaseModel):
    vault_address: str
    transaction_hash: str
    log_index: int
    block_number: int
    timestamp: int

    @property
    def event_id(self) -> str:
        return f"{self.transaction_hash.lower()}-{self.log_index}"


class DepositEvent(LedgerEvent):
    receiver: str
    amount: int
    shares: int


class WithdrawEvent(LedgerEvent):
    owner: str
    amount: int
    shares: int


class ShareTransferEvent(LedgerEvent):
    sender: str
    receiver: str
    value: int


class ManagerExecutedEvent(LedgerEvent):
    targets: List[str] = Field(default_factory=list)
    call_data: List[str] = Field(default_factory=list)
    call_values: List[int] = Field(default_factory=list)
    successful: bool = True


class LiquidationEvent(LedgerEvent):
    """A lending-market liquidation of a watched vault's position."""

    market_address: str
    liquidator: Optional[str] = None
    collateral_amount: int = 0
    debt_amount: int = 0


class BlockTick(BaseModel):
    block_number: int
    timestamp: int


# Current-state records
class VaultPosition(StoredRecord):
    collection: ClassVar[str] = Collections.VAULT_POSITIONS

    vault_address: str
    total_assets: int = 0
    total_shares: int = 0
    total_deposited: int = 0
    total_withdrawn: int = 0

    # Strategy balances, in staking-asset base units
    idle_staking_balance: int = 0
    idle_derivative_balance: int = 0
    collateral_amount: int = 0
    borrowed_amount: int = 0
    total_staked: int = 0
    total_derivative_balance: int = 0

    # Derived by the metrics cycle
    leverage_ratio: float = 1.0
    collateral_value_usd: float = 0.0
    borrowed_value_usd: float = 0.0
    net_asset_value_usd: float = 0.0

    deposit_count: int = 0
    withdrawal_count: int = 0
    execution_count: int = 0
    inconsistency_count: int = 0
    last_event_id: Optional[str] = None
    last_updated_block: int = 0
    last_updated_timestamp: int = 0


class UserPosition(StoredRecord):
    collection: ClassVar[str] = Collections.USER_POSITIONS

    vault_address: str
    user_address: str
    shares: int = 0
    deposited_amount: int = 0
    withdrawn_amount: int = 0
    # Deposit-asset cost of the shares currently held; follows shares on transfer
    cost_basis: int = 0
    deposit_count: int = 0
    withdrawal_count: int = 0
    is_active: bool = True

    # Valuation, refreshed by the metrics cycle
    share_value_usd: float = 0.0
    proportion: float = 0.0
    current_value_usd: float = 0.0
    unrealized_pnl_usd: float = 0.0

    last_updated_block: int = 0
    last_updated_timestamp: int = 0

    @staticmethod
    def make_id(vault_address: str, user_address: str) -> str:
        return f"{vault_address.lower()}-{user_address.lower()}"


# Append-only audit trail
class DepositRecord(StoredRecord):
    collection: ClassVar[str] = Collections.DEPOSITS

    vault_address: str
    user_address: str
    transaction_hash: str
    log_index: int
    block_number: int
    timestamp: int
    amount: int
    shares: int
    share_price: float
    total_supply_after: int
    total_assets_after: int


class WithdrawalRecord(StoredRecord):
    collection: ClassVar[str] = Collections.WITHDRAWALS

    vault_address: str
    user_address: str
    transaction_hash: str
    log_index: int
    block_number: int
    timestamp: int
    amount: int
    shares: int
    shares_burned: int
    assets_removed: int
    share_price: float
    total_supply_after: int
    total_assets_after: int
    clamped: bool = False


class ShareTransferRecord(StoredRecord):
    collection: ClassVar[str] = Collections.SHARE_TRANSFERS

    vault_address: str
    from_address: str
    to_address: str
    transaction_hash: str
    log_index: int
    block_number: int
    timestamp: int
    value: int
    sender_updated: bool = True
    receiver_updated: bool = True
    clamped: bool = False


class LoopExecution(StoredRecord):
    collection: ClassVar[str] = Collections.LOOP_EXECUTIONS

    vault_address: str
    transaction_hash: str
    log_index: int
    block_number: int
    timestamp: int
    execution_type: str = ExecutionType.REBALANCE
    targets: List[str] = Field(default_factory=list)
    call_data: List[str] = Field(default_factory=list)
    call_values: List[int] = Field(default_factory=list)
    staking_amount_processed: int = 0
    derivative_amount_processed: int = 0
    leverage_ratio_before: float = 1.0
    # Filled by the next completed metrics cycle
    leverage_ratio_after: Optional[float] = None
    success: bool = True
    error_message: str = ""


# Time series
class RiskMetricSnapshot(StoredRecord):
    collection: ClassVar[str] = Collections.RISK_METRICS

    vault_address: str
    block_number: int
    timestamp: int
    leverage_ratio: float
    health_factor: float
    liquidation_price: float
    derivative_price: Optional[float] = None
    staking_price: Optional[float] = None
    borrow_utilization: float = 0.0
    net_yield: float = 0.0
    staking_apy: float = 0.0
    borrow_apr: float = 0.0
    risk_score: int = 100
    alert_level: str = AlertLevel.LOW
    collateral_value_usd: float = 0.0
    borrowed_value_usd: float = 0.0
    net_asset_value_usd: float = 0.0
    l1_equity_usd: Optional[float] = None
    # Share supply the snapshot was valued against
    total_shares: int = 0

    # Degradation markers
    staking_apy_fallback: bool = False
    borrow_apr_fallback: bool = False
    price_stale: bool = False
    l1_data_missing: bool = False

    @staticmethod
    def make_id(vault_address: str, timestamp: int) -> str:
        return f"{vault_address.lower()}-{timestamp}"

    @property
    def degraded(self) -> bool:
        return self.price_stale or self.l1_data_missing


class EmergencyAlert(StoredRecord):
    collection: ClassVar[str] = Collections.ALERTS

    vault_address: str
    alert_type: str
    severity: str
    message: str
    trigger_value: float
    threshold: float
    block_number: int
    timestamp: int
    is_resolved: bool = False
    resolved_at: Optional[int] = None

    @staticmethod
    def make_id(vault_address: str, alert_type: str, timestamp: int) -> str:
        return f"{vault_address.lower()}-{alert_type}-{timestamp}"


class RawEventRecord(StoredRecord):
    """Every contract log the engine received, routed or not, keyed by ``tx_hash-log_index``."""

    collection: ClassVar[str] = Collections.RAW_EVENTS

    contract_address: str
    event_name: str
    transaction_hash: str
    log_index: int
    block_number: int
    timestamp: int
    data: Dict[str, Any] = Field(default_factory=dict)
    routed: bool = False


class L1EquitySnapshot(StoredRecord):
    collection: ClassVar[str] = Collections.L1_EQUITY

    vault_address: str
    user_address: str
    hlp_vault_address: str
    equity: Optional[int] = None
    withdrawable: Optional[int] = None
    block_number: int
    timestamp: int
    failed_reads: List[str] = Field(default_factory=list)


class L1SpotBalanceSnapshot(StoredRecord):
    collection: ClassVar[str] = Collections.L1_SPOT_BALANCES

    vault_address: str
    user_address: str
    token_id: int
    total: int
    hold: int
    entry_ntl: int
    block_number: int
    timestamp: int


class PriceQuote(BaseModel):
    symbol: str
    price_usd: float
    source: str
    last_updated: int
    stale: bool = False


class TokenPriceSnapshot(StoredRecord):
    collection: ClassVar[str] = Collections.TOKEN_PRICES

    symbol: str
    price_usd: float
    source: str
    last_updated: int
    timestamp: int
    stale: bool = False


class L1State(BaseModel):
    """Result of one L1 read cycle; absent values failed or were undecodable."""

    vault_address: str
    block_number: int
    timestamp: int
    equity: Optional[int] = None
    withdrawable: Optional[int] = None
    spot_balances: List[L1SpotBalanceSnapshot] = Field(default_factory=list)
    failed_reads: List[str] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_reads
