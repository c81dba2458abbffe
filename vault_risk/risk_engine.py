import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import structlog

from .config import HEALTH_FACTOR_SAFE, LEVERAGE_CAP, AlertLevel, settings as default_settings
from .models import L1State, PriceQuote, RiskMetricSnapshot, VaultPosition

logger = structlog.get_logger()

SECONDS_PER_YEAR = 365 * 24 * 3600

# (upper bound, deduction): first band whose bound the health factor is below
HEALTH_FACTOR_PENALTIES: Tuple[Tuple[float, int], ...] = ((1.1, 50), (1.3, 30), (1.5, 15), (2.0, 5))
# (lower bound, deduction): first band whose bound the leverage is above
LEVERAGE_PENALTIES: Tuple[Tuple[float, int], ...] = ((3.5, 40), (3.0, 25), (2.5, 15), (2.0, 5))


def calculate_leverage_ratio(total_deposits: float, total_borrowed: float) -> float:
    """Exposure over net capital, 1.0 without debt and capped when equity is gone."""
    if total_borrowed <= 0:
        return 1.0
    if total_deposits <= total_borrowed:
        return LEVERAGE_CAP
    return min(total_deposits / (total_deposits - total_borrowed), LEVERAGE_CAP)


def calculate_health_factor(collateral_value: float, borrowed_value: float, liquidation_threshold: float) -> float:
    if borrowed_value <= 0:
        return HEALTH_FACTOR_SAFE
    return min(max(collateral_value, 0.0) * liquidation_threshold / borrowed_value, HEALTH_FACTOR_SAFE)


def calculate_liquidation_price(borrowed_value: float, collateral_amount: float, liquidation_threshold: float) -> float:
    """Collateral price at which the health factor reaches 1.0."""
    if borrowed_value <= 0:
        return 0.0
    if collateral_amount <= 0 or liquidation_threshold <= 0:
        # Liquidatable at any price
        return LEVERAGE_CAP
    return (borrowed_value / collateral_amount) / liquidation_threshold


def calculate_net_yield(staking_apy: float, borrow_apr: float, leverage_ratio: float) -> float:
    return staking_apy * leverage_ratio - borrow_apr * (leverage_ratio - 1)


def calculate_borrow_utilization(borrowed_value: float, collateral_value: float, liquidation_threshold: float) -> float:
    if borrowed_value <= 0:
        return 0.0
    max_borrowable = collateral_value * liquidation_threshold
    if max_borrowable <= 0:
        return LEVERAGE_CAP
    return borrowed_value / max_borrowable


def calculate_risk_score(health_factor: float, leverage_ratio: float) -> int:
    """0-100, higher is safer. Table driven and free of hidden state."""
    score = 100
    for bound, penalty in HEALTH_FACTOR_PENALTIES:
        if health_factor < bound:
            score -= penalty
            break
    for bound, penalty in LEVERAGE_PENALTIES:
        if leverage_ratio > bound:
            score -= penalty
            break
    return max(0, score)


def determine_alert_level(health_factor: float, leverage_ratio: float) -> str:
    if health_factor < 1.1 or leverage_ratio > 3.5:
        return AlertLevel.CRITICAL
    if health_factor < 1.3 or leverage_ratio > 2.5:
        return AlertLevel.HIGH
    if health_factor < 1.8 or leverage_ratio > 2.0:
        return AlertLevel.MEDIUM
    return AlertLevel.LOW


def estimate_staking_apy(ratio_history: Sequence[Tuple[int, float]], min_seconds: int) -> Optional[float]:
    """Annualize growth of the derivative/staking price ratio.

    ``ratio_history`` holds (timestamp, ratio) points. Returns None when the
    observed span is too short or the implied rate is not positive.
    """
    points = sorted((ts, ratio) for ts, ratio in ratio_history if ratio and ratio > 0)
    if len(points) < 2:
        return None
    (start_ts, start_ratio), (end_ts, end_ratio) = points[0], points[-1]
    elapsed = end_ts - start_ts
    if elapsed < max(min_seconds, 1):
        return None
    growth = end_ratio / start_ratio
    if growth <= 1.0:
        return None
    apy = math.pow(growth, SECONDS_PER_YEAR / elapsed) - 1
    return apy if math.isfinite(apy) else None


@dataclass
class YieldInputs:
    staking_apy: float
    borrow_apr: float
    staking_apy_fallback: bool = False
    borrow_apr_fallback: bool = False


@dataclass
class PriceInputs:
    staking: Optional[PriceQuote] = None
    derivative: Optional[PriceQuote] = None

    @property
    def stale(self) -> bool:
        return (
            self.staking is None
            or self.derivative is None
            or self.staking.stale
            or self.derivative.stale
        )


class RiskMetricsEngine:
    """Turns one (position, prices, L1 state) input set into a metrics snapshot."""

    def __init__(self, settings=None):
        settings = settings or default_settings
        self.liquidation_threshold = settings.LIQUIDATION_THRESHOLD
        self.token_decimals = settings.TOKEN_DECIMALS
        self.l1_usd_decimals = settings.L1_USD_DECIMALS

    def compute_snapshot(
        self,
        vault: VaultPosition,
        prices: PriceInputs,
        l1_state: Optional[L1State],
        yields: YieldInputs,
        timestamp: int,
        block_number: int,
    ) -> RiskMetricSnapshot:
        staking_price = prices.staking.price_usd if prices.staking else None
        derivative_price = prices.derivative.price_usd if prices.derivative else None

        # Without quotes, value everything in staking-asset units at a 1:1 peg
        unit_staking = staking_price if staking_price is not None else 1.0
        unit_derivative = derivative_price if derivative_price is not None else unit_staking

        scale = 10 ** self.token_decimals
        collateral_amount = vault.collateral_amount / scale
        collateral_value = collateral_amount * unit_derivative
        idle_value = (
            vault.idle_staking_balance / scale * unit_staking
            + vault.idle_derivative_balance / scale * unit_derivative
        )
        borrowed_value = vault.borrowed_amount / scale * unit_staking

        l1_equity_usd = None
        if l1_state is not None and l1_state.equity is not None:
            l1_equity_usd = l1_state.equity / 10 ** self.l1_usd_decimals

        total_deposits = collateral_value + idle_value + (l1_equity_usd or 0.0)

        leverage_ratio = calculate_leverage_ratio(total_deposits, borrowed_value)
        health_factor = calculate_health_factor(collateral_value, borrowed_value, self.liquidation_threshold)
        snapshot = RiskMetricSnapshot(
            id=RiskMetricSnapshot.make_id(vault.vault_address, timestamp),
            vault_address=vault.vault_address,
            block_number=block_number,
            timestamp=timestamp,
            leverage_ratio=leverage_ratio,
            health_factor=health_factor,
            liquidation_price=calculate_liquidation_price(
                borrowed_value, collateral_amount, self.liquidation_threshold
            ),
            derivative_price=derivative_price,
            staking_price=staking_price,
            borrow_utilization=calculate_borrow_utilization(
                borrowed_value, collateral_value, self.liquidation_threshold
            ),
            net_yield=calculate_net_yield(yields.staking_apy, yields.borrow_apr, leverage_ratio),
            staking_apy=yields.staking_apy,
            borrow_apr=yields.borrow_apr,
            risk_score=calculate_risk_score(health_factor, leverage_ratio),
            alert_level=determine_alert_level(health_factor, leverage_ratio),
            collateral_value_usd=collateral_value,
            borrowed_value_usd=borrowed_value,
            net_asset_value_usd=total_deposits - borrowed_value,
            l1_equity_usd=l1_equity_usd,
            total_shares=vault.total_shares,
            staking_apy_fallback=yields.staking_apy_fallback,
            borrow_apr_fallback=yields.borrow_apr_fallback,
            price_stale=prices.stale,
            l1_data_missing=l1_state is None or not l1_state.complete,
        )

        if snapshot.degraded:
            logger.warning(
                "Computed degraded risk snapshot",
                vault=vault.vault_address,
                block=block_number,
                price_stale=snapshot.price_stale,
                l1_data_missing=snapshot.l1_data_missing,
            )
        return snapshot
