import pytest

from conftest import UNIT, VAULT
from vault_risk.config import HEALTH_FACTOR_SAFE, LEVERAGE_CAP, AlertLevel
from vault_risk.models import L1State, PriceQuote, VaultPosition
from vault_risk.risk_engine import (
    PriceInputs, RiskMetricsEngine, YieldInputs, calculate_borrow_utilization,
    calculate_health_factor, calculate_leverage_ratio, calculate_liquidation_price,
    calculate_net_yield, calculate_risk_score, determine_alert_level, estimate_staking_apy
)

DAY = 86400


def _quote(symbol, price, stale=False):
    return PriceQuote(symbol=symbol, price_usd=price, source="coingecko", last_updated=1_700_000_000, stale=stale)


class TestRiskCalculator:
    """Pure risk formulas"""

    class TestLeverage:
        def test_no_debt_is_unlevered(self):
            assert calculate_leverage_ratio(1000.0, 0.0) == 1.0

        def test_levered_position(self):
            assert calculate_leverage_ratio(1_000_000, 650_000) == pytest.approx(2.857, abs=1e-3)

        @pytest.mark.parametrize("deposits,borrowed", [(500.0, 500.0), (400.0, 500.0), (0.0, 1.0)])
        def test_no_equity_is_capped(self, deposits, borrowed):
            assert calculate_leverage_ratio(deposits, borrowed) == LEVERAGE_CAP

    class TestHealthFactor:
        def test_scenario_health_factor(self):
            assert calculate_health_factor(350_000, 650_000, 0.8) == pytest.approx(0.4308, abs=1e-4)

        def test_no_debt_is_safe(self):
            assert calculate_health_factor(1000.0, 0.0, 0.8) == HEALTH_FACTOR_SAFE

        def test_capped_at_safe_sentinel(self):
            assert calculate_health_factor(1e12, 1e-9, 0.8) == HEALTH_FACTOR_SAFE

    class TestLiquidationPrice:
        def test_price_where_health_factor_hits_one(self):
            price = calculate_liquidation_price(borrowed_value=600.0, collateral_amount=10.0, liquidation_threshold=0.8)
            assert price == pytest.approx(75.0)
            assert calculate_health_factor(10.0 * price, 600.0, 0.8) == pytest.approx(1.0)

        def test_without_debt(self):
            assert calculate_liquidation_price(0.0, 10.0, 0.8) == 0.0

        def test_debt_without_collateral(self):
            assert calculate_liquidation_price(100.0, 0.0, 0.8) == LEVERAGE_CAP

    class TestYieldAndUtilization:
        def test_net_yield(self):
            assert calculate_net_yield(0.08, 0.05, 3.0) == pytest.approx(0.24 - 0.10)

        def test_net_yield_unlevered_is_staking_apy(self):
            assert calculate_net_yield(0.08, 0.50, 1.0) == pytest.approx(0.08)

        def test_borrow_utilization(self):
            assert calculate_borrow_utilization(400.0, 1000.0, 0.8) == pytest.approx(0.5)
            assert calculate_borrow_utilization(0.0, 1000.0, 0.8) == 0.0
            assert calculate_borrow_utilization(10.0, 0.0, 0.8) == LEVERAGE_CAP

    class TestRiskScore:
        def test_scenario_score_follows_penalty_table(self):
            # health band <1.1 (-50) and leverage band >2.5 (-15)
            assert calculate_risk_score(0.4308, 2.857) == 35

        @pytest.mark.parametrize("hf,lev,expected", [
            (HEALTH_FACTOR_SAFE, 1.0, 100),
            (1.9, 1.0, 95),
            (1.4, 1.0, 85),
            (1.2, 1.0, 70),
            (1.0, 1.0, 50),
            (HEALTH_FACTOR_SAFE, 2.1, 95),
            (HEALTH_FACTOR_SAFE, 3.1, 75),
            (HEALTH_FACTOR_SAFE, 3.6, 60),
            (1.0, LEVERAGE_CAP, 10),
        ])
        def test_penalty_bands(self, hf, lev, expected):
            assert calculate_risk_score(hf, lev) == expected

        def test_band_edges_are_exclusive(self):
            assert calculate_risk_score(2.0, 2.0) == 100
            assert calculate_risk_score(1.1, 3.5) == 100 - 30 - 25

        def test_deterministic(self):
            inputs = [(0.9, 3.7), (1.25, 2.6), (5.0, 1.0)]
            first = [(calculate_risk_score(*i), determine_alert_level(*i)) for i in inputs]
            second = [(calculate_risk_score(*i), determine_alert_level(*i)) for i in reversed(inputs)]
            assert first == list(reversed(second))

    class TestAlertLevel:
        @pytest.mark.parametrize("hf,lev,expected", [
            (0.4308, 2.857, AlertLevel.CRITICAL),
            (5.0, 3.6, AlertLevel.CRITICAL),
            (1.2, 1.0, AlertLevel.HIGH),
            (5.0, 2.6, AlertLevel.HIGH),
            (1.5, 1.0, AlertLevel.MEDIUM),
            (5.0, 2.1, AlertLevel.MEDIUM),
            (HEALTH_FACTOR_SAFE, 1.0, AlertLevel.LOW),
        ])
        def test_bands(self, hf, lev, expected):
            assert determine_alert_level(hf, lev) == expected


class TestStakingApyEstimate:
    def test_annualizes_ratio_growth(self):
        history = [(0, 1.0), (365 * DAY, 1.05)]
        assert estimate_staking_apy(history, DAY) == pytest.approx(0.05)

    def test_short_span_returns_none(self):
        assert estimate_staking_apy([(0, 1.0), (3600, 1.01)], DAY) is None

    def test_non_positive_growth_returns_none(self):
        assert estimate_staking_apy([(0, 1.0), (2 * DAY, 0.99)], DAY) is None

    def test_single_point_returns_none(self):
        assert estimate_staking_apy([(0, 1.0)], DAY) is None


class TestComputeSnapshot:
    @pytest.fixture
    def engine(self, test_settings):
        return RiskMetricsEngine(test_settings)

    @pytest.fixture
    def levered_vault(self):
        return VaultPosition(
            id=VAULT,
            vault_address=VAULT,
            collateral_amount=100 * UNIT,
            borrowed_amount=60 * UNIT,
            idle_staking_balance=0,
        )

    @pytest.fixture
    def yields(self):
        return YieldInputs(staking_apy=0.08, borrow_apr=0.05)

    def test_values_position_at_quoted_prices(self, engine, levered_vault, yields):
        prices = PriceInputs(staking=_quote("hyperliquid", 10.0), derivative=_quote("staked-hype", 10.0))
        l1 = L1State(vault_address=VAULT, block_number=200, timestamp=1, equity=0)

        snapshot = engine.compute_snapshot(levered_vault, prices, l1, yields, timestamp=1_700_000_400, block_number=200)

        assert snapshot.id == f"{VAULT}-1700000400"
        assert snapshot.collateral_value_usd == pytest.approx(1000.0)
        assert snapshot.borrowed_value_usd == pytest.approx(600.0)
        assert snapshot.net_asset_value_usd == pytest.approx(400.0)
        assert snapshot.leverage_ratio == pytest.approx(2.5)
        assert snapshot.health_factor == pytest.approx(1000 * 0.8 / 600)
        assert snapshot.liquidation_price == pytest.approx(7.5)
        assert snapshot.net_yield == pytest.approx(0.08 * 2.5 - 0.05 * 1.5)
        assert snapshot.risk_score == calculate_risk_score(snapshot.health_factor, snapshot.leverage_ratio)
        assert snapshot.alert_level == AlertLevel.MEDIUM
        assert not snapshot.degraded

    def test_l1_equity_counts_toward_deposits(self, engine, levered_vault, yields):
        prices = PriceInputs(staking=_quote("hyperliquid", 10.0), derivative=_quote("staked-hype", 10.0))
        l1 = L1State(vault_address=VAULT, block_number=200, timestamp=1, equity=200 * 10 ** 6)

        snapshot = engine.compute_snapshot(levered_vault, prices, l1, yields, 1, 200)

        assert snapshot.l1_equity_usd == pytest.approx(200.0)
        assert snapshot.net_asset_value_usd == pytest.approx(600.0)
        assert snapshot.leverage_ratio == pytest.approx(1200 / 600)

    def test_missing_inputs_are_flagged_not_raised(self, engine, levered_vault, yields):
        snapshot = engine.compute_snapshot(levered_vault, PriceInputs(), None, yields, 1, 200)

        assert snapshot.price_stale
        assert snapshot.l1_data_missing
        assert snapshot.degraded
        assert snapshot.staking_price is None
        # Unit valuation keeps the ratios meaningful
        assert snapshot.leverage_ratio == pytest.approx(2.5)

    def test_stale_quote_and_partial_l1_read(self, engine, levered_vault, yields):
        prices = PriceInputs(staking=_quote("hyperliquid", 10.0, stale=True), derivative=_quote("staked-hype", 10.0))
        l1 = L1State(vault_address=VAULT, block_number=200, timestamp=1, equity=0, failed_reads=["withdrawable"])

        snapshot = engine.compute_snapshot(levered_vault, prices, l1, yields, 1, 200)

        assert snapshot.price_stale
        assert snapshot.l1_data_missing

    def test_fallback_yields_are_recorded(self, engine, levered_vault):
        yields = YieldInputs(staking_apy=0.08, borrow_apr=0.05, staking_apy_fallback=True, borrow_apr_fallback=True)
        snapshot = engine.compute_snapshot(levered_vault, PriceInputs(), None, yields, 1, 200)

        assert snapshot.staking_apy_fallback
        assert snapshot.borrow_apr_fallback

    def test_empty_vault_is_safe(self, engine, yields):
        vault = VaultPosition(id=VAULT, vault_address=VAULT)
        snapshot = engine.compute_snapshot(vault, PriceInputs(), None, yields, 1, 200)

        assert snapshot.leverage_ratio == 1.0
        assert snapshot.health_factor == HEALTH_FACTOR_SAFE
        assert snapshot.liquidation_price == 0.0
        assert snapshot.risk_score == 100
