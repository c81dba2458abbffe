import pytest

from conftest import ALICE, ASSET, BOB, LENDING, STAKING, UNIT, VAULT, encode_call
from vault_risk.config import ZERO_ADDRESS, ExecutionType
from vault_risk.ledger import PositionLedger, event_from_record
from vault_risk.models import (
    DepositRecord, LoopExecution, RiskMetricSnapshot, ShareTransferRecord, UserPosition,
    VaultPosition, WithdrawalRecord
)


def _snapshot(vault=VAULT, timestamp=1_700_000_500, **fields):
    values = dict(
        id=RiskMetricSnapshot.make_id(vault, timestamp),
        vault_address=vault,
        block_number=250,
        timestamp=timestamp,
        leverage_ratio=1.0,
        health_factor=999.0,
        liquidation_price=0.0,
    )
    values.update(fields)
    return RiskMetricSnapshot(**values)


class TestDeposits:
    """Deposit application and idempotence"""

    def test_first_deposit_creates_positions(self, ledger, events):
        update = ledger.apply(events.deposit(ALICE, 1000, 1000, block_number=100))

        vault = ledger.get_vault(VAULT)
        user = ledger.get_user(VAULT, ALICE)
        assert update.applied
        assert vault.total_assets == 1000
        assert vault.total_shares == 1000
        assert user.shares == 1000
        assert user.deposited_amount == 1000
        assert user.is_active

    def test_deposit_emits_audit_row_and_position_upserts(self, ledger, events):
        event = events.deposit(ALICE, 1000, 500)
        update = ledger.apply(event)

        assert [type(r) for r in update.upserts] == [VaultPosition, UserPosition]
        [record] = update.inserts
        assert isinstance(record, DepositRecord)
        assert record.id == event.event_id
        assert record.share_price == 2.0
        assert record.total_supply_after == 500

    def test_redelivered_deposit_is_a_noop(self, ledger, events, metrics):
        event = events.deposit(ALICE, 1000, 1000)
        ledger.apply(event)
        ledger.mark_persisted(event.event_id)
        before = ledger.snapshot_vault(VAULT)

        again = ledger.apply(event)

        assert again.duplicate
        assert not again.applied
        assert again.upserts == [] and again.inserts == []
        assert ledger.get_vault(VAULT) == before
        assert metrics.get_counter("ledger.duplicates_skipped", tags={"kind": "deposit"}) == 1

    def test_unwritten_deposit_is_offered_again_on_redelivery(self, ledger, events):
        event = events.deposit(ALICE, 1000, 1000)
        first = ledger.apply(event)

        again = ledger.apply(event)

        assert again.duplicate and not again.applied
        assert [r.id for r in again.inserts] == [r.id for r in first.inserts]
        assert again.upserts == first.upserts
        assert ledger.get_vault(VAULT).total_shares == 1000
        assert [u.event_id for u in ledger.unpersisted()] == [event.event_id]

        ledger.mark_persisted(event.event_id)

        assert ledger.unpersisted() == []
        assert ledger.apply(event).inserts == []

    def test_event_identity_ignores_hash_case(self, ledger, events):
        event = events.deposit(ALICE, 10, 10, tx="0xABCDEF", log_index=3)
        ledger.apply(event)

        same = events.deposit(ALICE, 10, 10, tx="0xabcdef", log_index=3)
        assert ledger.apply(same).duplicate
        assert ledger.get_vault(VAULT).total_shares == 10

    def test_same_transaction_different_log_index_both_apply(self, ledger, events):
        ledger.apply(events.deposit(ALICE, 10, 10, tx="0x01", log_index=0))
        ledger.apply(events.deposit(BOB, 20, 20, tx="0x01", log_index=1))

        assert ledger.get_vault(VAULT).total_shares == 30

    def test_redeposit_reactivates_user(self, ledger, events):
        ledger.apply(events.deposit(ALICE, 100, 100))
        ledger.apply(events.withdraw(ALICE, 100, 100))
        assert not ledger.get_user(VAULT, ALICE).is_active

        ledger.apply(events.deposit(ALICE, 50, 50))

        user = ledger.get_user(VAULT, ALICE)
        assert user.is_active
        assert user.shares == 50
        assert user.deposit_count == 2


class TestWithdrawals:
    """Withdrawals, clamping and deactivation"""

    def test_full_withdrawal_deactivates_user_and_keeps_audit_rows(self, ledger, events):
        deposit = ledger.apply(events.deposit(ALICE, 500, 500))
        withdrawal = ledger.apply(events.withdraw(ALICE, 500, 500))

        user = ledger.get_user(VAULT, ALICE)
        assert user.shares == 0
        assert not user.is_active
        # The user document is updated, never removed
        assert user in withdrawal.upserts
        assert isinstance(deposit.inserts[0], DepositRecord)
        assert isinstance(withdrawal.inserts[0], WithdrawalRecord)
        assert deposit.inserts[0].amount == 500

    def test_partial_withdrawal_releases_cost_basis_pro_rata(self, ledger, events):
        ledger.apply(events.deposit(ALICE, 1000, 1000))
        ledger.apply(events.withdraw(ALICE, 250, 250))

        user = ledger.get_user(VAULT, ALICE)
        assert user.shares == 750
        assert user.cost_basis == 750
        assert user.withdrawn_amount == 250
        assert ledger.get_vault(VAULT).total_withdrawn == 250

    def test_overdraw_is_clamped_and_flagged(self, ledger, events, metrics):
        ledger.apply(events.deposit(ALICE, 100, 100))
        update = ledger.apply(events.withdraw(ALICE, 300, 300))

        vault = ledger.get_vault(VAULT)
        user = ledger.get_user(VAULT, ALICE)
        assert update.applied
        assert "withdraw_shares_exceed_balance" in update.inconsistencies
        assert "withdraw_assets_exceed_vault" in update.inconsistencies
        assert vault.total_shares == 0
        assert vault.total_assets == 0
        assert user.shares == 0
        assert vault.inconsistency_count == len(update.inconsistencies)
        record = update.inserts[0]
        assert record.clamped
        assert record.shares == 300
        assert record.shares_burned == 100
        assert metrics.get_counter("ledger.inconsistencies", tags={"kind": "withdrawal"}) == 2

    def test_withdrawal_by_unknown_user_burns_nothing(self, ledger, events):
        ledger.apply(events.deposit(ALICE, 100, 100))
        update = ledger.apply(events.withdraw(BOB, 0, 50))

        assert ledger.get_vault(VAULT).total_shares == 100
        assert ledger.get_user(VAULT, ALICE).shares == 100
        assert update.inserts[0].shares_burned == 0


class TestTransfers:
    """Share transfers between holders"""

    def test_transfer_moves_shares_and_cost_basis(self, ledger, events):
        ledger.apply(events.deposit(ALICE, 1000, 1000))
        update = ledger.apply(events.transfer(ALICE, BOB, 400))

        alice = ledger.get_user(VAULT, ALICE)
        bob = ledger.get_user(VAULT, BOB)
        assert alice.shares == 600
        assert bob.shares == 400
        assert alice.cost_basis == 600
        assert bob.cost_basis == 400
        assert bob.is_active
        assert isinstance(update.inserts[0], ShareTransferRecord)
        assert ledger.get_vault(VAULT).total_shares == 1000

    def test_mint_and_burn_transfers_are_skipped(self, ledger, events):
        ledger.apply(events.deposit(ALICE, 1000, 1000))
        mint = events.transfer(ZERO_ADDRESS, ALICE, 1000)

        update = ledger.apply(mint)

        assert not update.applied
        assert update.skipped_reason == "mint_or_burn"
        assert not ledger.has_applied(mint.event_id)
        assert ledger.get_user(VAULT, ALICE).shares == 1000

    def test_self_transfer_records_audit_row_only(self, ledger, events):
        ledger.apply(events.deposit(ALICE, 1000, 1000))
        update = ledger.apply(events.transfer(ALICE, ALICE, 100))

        assert update.upserts == []
        assert len(update.inserts) == 1
        assert ledger.get_user(VAULT, ALICE).shares == 1000

    def test_transfer_exceeding_balance_credits_only_what_moved(self, ledger, events):
        ledger.apply(events.deposit(ALICE, 100, 100))
        update = ledger.apply(events.transfer(ALICE, BOB, 150))

        assert "transfer_exceeds_sender_balance" in update.inconsistencies
        assert ledger.get_user(VAULT, ALICE).shares == 0
        assert not ledger.get_user(VAULT, ALICE).is_active
        assert ledger.get_user(VAULT, BOB).shares == 100
        assert update.inserts[0].clamped

    def test_sender_update_failure_credits_receiver_in_full(self, ledger, events, monkeypatch):
        ledger.apply(events.deposit(ALICE, 1000, 1000))
        ledger.apply(events.deposit(BOB, 10, 10))
        real_user = ledger._user

        def failing_for_alice(vault_address, user_address):
            if user_address.lower() == ALICE:
                raise RuntimeError("position store unavailable")
            return real_user(vault_address, user_address)

        monkeypatch.setattr(ledger, "_user", failing_for_alice)
        update = ledger.apply(events.transfer(ALICE, BOB, 400))

        [record] = update.inserts
        assert not record.sender_updated
        assert record.receiver_updated
        assert update.applied
        assert update.inconsistencies == ["transfer_sender_update_failed"]
        assert ledger.get_user(VAULT, ALICE).shares == 1000
        assert ledger.get_user(VAULT, BOB).shares == 410
        assert ledger.get_vault(VAULT).inconsistency_count == 1

    def test_receiver_update_failure_still_debits_sender(self, ledger, events, monkeypatch, metrics):
        ledger.apply(events.deposit(ALICE, 1000, 1000))
        real_user = ledger._user

        def failing_for_bob(vault_address, user_address):
            if user_address.lower() == BOB:
                raise RuntimeError("position store unavailable")
            return real_user(vault_address, user_address)

        monkeypatch.setattr(ledger, "_user", failing_for_bob)
        update = ledger.apply(events.transfer(ALICE, BOB, 400))

        record = next(r for r in update.inserts if isinstance(r, ShareTransferRecord))
        assert record.sender_updated
        assert not record.receiver_updated
        assert update.inconsistencies == ["transfer_receiver_update_failed"]
        assert ledger.get_user(VAULT, ALICE).shares == 600
        assert ledger.get_user(VAULT, BOB) is None
        assert [type(r) for r in update.upserts] == [UserPosition, VaultPosition]
        assert metrics.get_counter("ledger.inconsistencies", tags={"kind": "transfer"}) == 1


class TestLoopExecutions:
    """Manager batch execution accounting"""

    @pytest.fixture
    def funded(self, ledger, events):
        ledger.apply(events.deposit(ALICE, 100 * UNIT, 100 * UNIT))
        return ledger

    def test_loop_moves_strategy_balances(self, funded, events):
        batch = events.executed(
            [STAKING, LENDING, LENDING],
            [
                encode_call("stake(uint256)", 100 * UNIT),
                encode_call("supply(address,uint256,address,uint16)", ASSET, 100 * UNIT, VAULT, 0),
                encode_call("borrow(address,uint256,uint256,uint16,address)", ASSET, 60 * UNIT, 2, 0, VAULT),
            ],
        )
        update = funded.apply(batch)

        vault = funded.get_vault(VAULT)
        assert update.consistent
        assert vault.collateral_amount == 100 * UNIT
        assert vault.borrowed_amount == 60 * UNIT
        assert vault.idle_staking_balance == 60 * UNIT
        assert vault.idle_derivative_balance == 0
        assert vault.total_staked == 100 * UNIT
        assert vault.total_derivative_balance == 100 * UNIT
        assert vault.execution_count == 1

        execution = update.inserts[0]
        assert isinstance(execution, LoopExecution)
        assert execution.execution_type == ExecutionType.INCREASE_LEVERAGE
        assert execution.leverage_ratio_before == 1.0
        assert execution.leverage_ratio_after is None
        assert execution.staking_amount_processed == 160 * UNIT
        assert execution.derivative_amount_processed == 100 * UNIT
        assert funded.pending_executions(VAULT) == [execution]

    def test_failed_execution_changes_no_balances(self, funded, events):
        batch = events.executed([STAKING], [encode_call("stake(uint256)", 50 * UNIT)], successful=False)
        update = funded.apply(batch)

        vault = funded.get_vault(VAULT)
        assert vault.idle_staking_balance == 100 * UNIT
        assert vault.total_staked == 0
        execution = update.inserts[0]
        assert not execution.success
        assert execution.error_message

    def test_repay_beyond_debt_is_clamped(self, funded, events):
        update = funded.apply(events.executed(
            [LENDING], [encode_call("repay(address,uint256,uint256,address)", ASSET, 10 * UNIT, 2, VAULT)]
        ))

        assert funded.get_vault(VAULT).borrowed_amount == 0
        assert update.inconsistencies == ["repay_exceeds_balance"]
        assert update.inserts[0].execution_type == ExecutionType.DECREASE_LEVERAGE

    def test_unknown_batch_is_recorded_as_rebalance(self, funded, events):
        update = funded.apply(events.executed([BOB], ["0xdeadbeef"]))

        assert update.inserts[0].execution_type == ExecutionType.REBALANCE
        assert funded.get_vault(VAULT).idle_staking_balance == 100 * UNIT


class TestRecordMetrics:
    """Feedback from a completed metrics cycle"""

    def test_revalues_active_users(self, ledger, events):
        ledger.apply(events.deposit(ALICE, 3 * UNIT, 3 * UNIT))
        ledger.apply(events.deposit(BOB, 1 * UNIT, 1 * UNIT))

        ledger.record_metrics(_snapshot(net_asset_value_usd=200.0, staking_price=40.0))

        alice = ledger.get_user(VAULT, ALICE)
        assert alice.proportion == pytest.approx(0.75)
        assert alice.current_value_usd == pytest.approx(150.0)
        assert alice.share_value_usd == pytest.approx(50.0)
        assert alice.unrealized_pnl_usd == pytest.approx(150.0 - 3 * 40.0)
        assert ledger.get_vault(VAULT).net_asset_value_usd == 200.0

    def test_completes_pending_executions_once(self, ledger, events):
        ledger.apply(events.deposit(ALICE, UNIT, UNIT))
        ledger.apply(events.executed([STAKING], [encode_call("stake(uint256)", UNIT)]))

        update = ledger.record_metrics(_snapshot(leverage_ratio=2.5))
        executions = [r for r in update.upserts if isinstance(r, LoopExecution)]

        assert [e.leverage_ratio_after for e in executions] == [2.5]
        assert ledger.pending_executions(VAULT) == []
        assert ledger.get_vault(VAULT).leverage_ratio == 2.5

    def test_only_captured_executions_are_completed(self, ledger, events):
        first = events.executed([STAKING], [encode_call("stake(uint256)", 0)])
        second = events.executed([STAKING], [encode_call("stake(uint256)", 0)])
        ledger.apply(first)
        ledger.apply(second)

        ledger.record_metrics(_snapshot(leverage_ratio=1.5), execution_ids=[first.event_id])

        assert [e.id for e in ledger.pending_executions(VAULT)] == [second.event_id]

    def test_captured_holdings_ignore_later_deposits(self, ledger, events):
        ledger.apply(events.deposit(ALICE, 100 * UNIT, 100 * UNIT))
        position = ledger.snapshot_vault(VAULT)
        holdings = ledger.snapshot_holdings(VAULT)
        # Applied while the cycle for the captured tick is still running
        ledger.apply(events.deposit(BOB, 100 * UNIT, 100 * UNIT))

        ledger.record_metrics(
            _snapshot(net_asset_value_usd=1000.0, staking_price=10.0, total_shares=position.total_shares),
            holdings=holdings,
        )

        alice = ledger.get_user(VAULT, ALICE)
        assert alice.proportion == pytest.approx(1.0)
        assert alice.current_value_usd == pytest.approx(1000.0)
        assert alice.share_value_usd == pytest.approx(10.0)
        assert alice.unrealized_pnl_usd == pytest.approx(0.0)
        assert ledger.get_user(VAULT, BOB).current_value_usd == 0.0


class TestReplay:
    """Rebuilding positions from the audit trail"""

    def test_replay_matches_live_application(self, ledger, events, classifier):
        updates = [
            ledger.apply(events.deposit(ALICE, 1000, 1000, block_number=100)),
            ledger.apply(events.deposit(BOB, 500, 500, block_number=101)),
            ledger.apply(events.transfer(ALICE, BOB, 200, block_number=102)),
            ledger.apply(events.withdraw(BOB, 300, 300, block_number=103)),
        ]
        records = [record for update in updates for record in update.inserts]

        rebuilt = PositionLedger(classifier)
        applied = rebuilt.replay(reversed(records))

        assert applied == 4
        for field_name in ("total_assets", "total_shares", "total_withdrawn"):
            assert getattr(rebuilt.get_vault(VAULT), field_name) == getattr(ledger.get_vault(VAULT), field_name)
        for user in (ALICE, BOB):
            assert rebuilt.get_user(VAULT, user).shares == ledger.get_user(VAULT, user).shares

    def test_replay_is_idempotent(self, ledger, events):
        records = ledger.apply(events.deposit(ALICE, 1000, 1000)).inserts

        ledger.replay(records)

        assert ledger.get_vault(VAULT).total_shares == 1000

    def test_completed_execution_does_not_return_to_pending(self, ledger, events, classifier):
        update = ledger.apply(events.executed([STAKING], [encode_call("stake(uint256)", 0)]))
        ledger.record_metrics(_snapshot(leverage_ratio=1.2))
        record = update.inserts[0]
        assert record.leverage_ratio_after == 1.2

        rebuilt = PositionLedger(classifier)
        rebuilt.replay([record])

        assert rebuilt.pending_executions(VAULT) == []

    def test_event_from_record_round_trips_identity(self, ledger, events):
        event = events.deposit(ALICE, 10, 10)
        record = ledger.apply(event).inserts[0]

        assert event_from_record(record).event_id == event.event_id


class TestInvariants:
    """Conservation and non-negativity across mixed sequences"""

    def test_user_shares_sum_to_vault_total(self, ledger, events):
        sequence = [
            events.deposit(ALICE, 1000, 1000),
            events.deposit(BOB, 400, 400),
            events.transfer(ALICE, BOB, 300),
            events.withdraw(BOB, 100, 100),
            events.transfer(BOB, ALICE, 10_000),
            events.withdraw(ALICE, 50_000, 50_000),
        ]
        for event in sequence:
            ledger.apply(event)

            vault = ledger.get_vault(VAULT)
            users = ledger.users_of(VAULT)
            assert sum(u.shares for u in users) == vault.total_shares
            assert vault.total_assets >= 0
            assert all(u.shares >= 0 for u in users)
