"""
Event-sourced position ledger.

Applies deposit, withdrawal, share-transfer and strategy-execution events to
in-memory vault and user positions. Every apply is idempotent per
``tx_hash-log_index`` and returns the records the caller must persist, so the
store only ever sees upserts keyed by natural identity.

Invariant violations (burning more shares than a user holds, removing more
assets than the vault holds) are clamped at zero and counted, never raised.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

import structlog

from .classifier import Classification, ExecutionClassifier
from .config import ZERO_ADDRESS, StrategyAction
from .models import (
    DepositEvent, DepositRecord, LedgerEvent, LoopExecution, ManagerExecutedEvent,
    RiskMetricSnapshot, ShareTransferEvent, ShareTransferRecord, StoredRecord,
    UserPosition, VaultPosition, WithdrawalRecord, WithdrawEvent
)

logger = structlog.get_logger()

AuditRecord = Union[DepositRecord, WithdrawalRecord, ShareTransferRecord, LoopExecution]

# Strategy calls that move the staking asset vs. its liquid-staked derivative
_STAKING_SIDE_ACTIONS = (
    StrategyAction.STAKE, StrategyAction.UNSTAKE, StrategyAction.BORROW, StrategyAction.REPAY
)
_DERIVATIVE_SIDE_ACTIONS = (StrategyAction.SUPPLY, StrategyAction.WITHDRAW_COLLATERAL)


@dataclass
class LedgerUpdate:
    """Outcome of one apply: what changed and must be written."""

    event_id: str
    applied: bool = True
    duplicate: bool = False
    skipped_reason: Optional[str] = None
    # Current-state documents, replaced wholesale
    upserts: List[StoredRecord] = field(default_factory=list)
    # Immutable audit rows, written only if absent
    inserts: List[StoredRecord] = field(default_factory=list)
    inconsistencies: List[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.inconsistencies


def _subtract(balance: int, amount: int) -> Tuple[int, int]:
    """Return (new balance, amount actually removed), never going below zero."""
    removed = min(balance, amount)
    return balance - removed, removed


class PositionLedger:
    def __init__(
        self,
        classifier: ExecutionClassifier,
        token_decimals: int = 18,
        metrics=None,
    ):
        self.classifier = classifier
        self.token_decimals = token_decimals
        self.metrics = metrics
        self.vaults: Dict[str, VaultPosition] = {}
        self.users: Dict[str, UserPosition] = {}
        self._applied: Set[str] = set()
        # Applied updates whose writes have not been confirmed by the store
        self._unpersisted: Dict[str, LedgerUpdate] = {}
        self._pending_executions: Dict[str, List[LoopExecution]] = {}

    # ------------------------------------------------------------------ lookups

    def get_vault(self, vault_address: str) -> Optional[VaultPosition]:
        return self.vaults.get(vault_address.lower())

    def get_user(self, vault_address: str, user_address: str) -> Optional[UserPosition]:
        return self.users.get(UserPosition.make_id(vault_address, user_address))

    def users_of(self, vault_address: str) -> List[UserPosition]:
        vault_address = vault_address.lower()
        return [user for user in self.users.values() if user.vault_address == vault_address]

    def pending_executions(self, vault_address: str) -> List[LoopExecution]:
        return list(self._pending_executions.get(vault_address.lower(), []))

    def has_applied(self, event_id: str) -> bool:
        return event_id in self._applied

    def snapshot_vault(self, vault_address: str) -> Optional[VaultPosition]:
        """Detached copy, so a metrics cycle never sees a half-applied event."""
        vault = self.get_vault(vault_address)
        return vault.model_copy(deep=True) if vault else None

    def snapshot_holdings(self, vault_address: str) -> Dict[str, Tuple[int, int]]:
        """(shares, cost basis) per active user, taken together with ``snapshot_vault``."""
        return {
            user.id: (user.shares, user.cost_basis)
            for user in self.users_of(vault_address)
            if user.is_active
        }

    def _vault(self, vault_address: str) -> VaultPosition:
        vault_address = vault_address.lower()
        vault = self.vaults.get(vault_address)
        if vault is None:
            vault = VaultPosition(id=vault_address, vault_address=vault_address)
            self.vaults[vault_address] = vault
        return vault

    def _user(self, vault_address: str, user_address: str) -> UserPosition:
        user_id = UserPosition.make_id(vault_address, user_address)
        user = self.users.get(user_id)
        if user is None:
            user = UserPosition(
                id=user_id,
                vault_address=vault_address.lower(),
                user_address=user_address.lower(),
            )
            self.users[user_id] = user
        return user

    @staticmethod
    def _touch(position: Union[VaultPosition, UserPosition], event: LedgerEvent):
        position.last_updated_block = event.block_number
        position.last_updated_timestamp = event.timestamp

    # ------------------------------------------------------------------ dispatch

    def apply(self, event: LedgerEvent) -> LedgerUpdate:
        if isinstance(event, DepositEvent):
            return self.apply_deposit(event)
        if isinstance(event, WithdrawEvent):
            return self.apply_withdrawal(event)
        if isinstance(event, ShareTransferEvent):
            return self.apply_transfer(event)
        if isinstance(event, ManagerExecutedEvent):
            return self.apply_loop_execution(event)
        raise TypeError(f"Unsupported ledger event: {type(event).__name__}")

    def _begin(self, event: LedgerEvent, kind: str) -> Optional[LedgerUpdate]:
        """Return a duplicate marker when the event was already applied.

        If the first apply's writes never reached the store, the marker carries
        them again so a redelivery can finish the job.
        """
        event_id = event.event_id
        if event_id in self._applied:
            logger.debug("Skipping duplicate event", event_id=event_id, kind=kind)
            self._count("ledger.duplicates_skipped", kind)
            duplicate = LedgerUpdate(event_id=event_id, applied=False, duplicate=True)
            pending = self._unpersisted.get(event_id)
            if pending is not None:
                duplicate.upserts = list(pending.upserts)
                duplicate.inserts = list(pending.inserts)
            return duplicate
        self._applied.add(event_id)
        return None

    def unpersisted(self) -> List[LedgerUpdate]:
        """Applied updates still waiting for a successful write, oldest first."""
        return list(self._unpersisted.values())

    def mark_persisted(self, event_id: str):
        self._unpersisted.pop(event_id, None)

    def _finish(self, update: LedgerUpdate, vault: Optional[VaultPosition], kind: str) -> LedgerUpdate:
        if update.inconsistencies:
            if vault is not None:
                vault.inconsistency_count += len(update.inconsistencies)
            logger.warning(
                "Data inconsistency clamped",
                event_id=update.event_id,
                kind=kind,
                conditions=update.inconsistencies,
            )
            self._count("ledger.inconsistencies", kind, len(update.inconsistencies))
        if update.applied:
            self._unpersisted[update.event_id] = update
            self._count("ledger.events_applied", kind)
        return update

    def _count(self, name: str, kind: str, value: float = 1.0):
        if self.metrics:
            self.metrics.increment(name, value, tags={"kind": kind})

    # ------------------------------------------------------------------ deposits

    def apply_deposit(self, event: DepositEvent) -> LedgerUpdate:
        duplicate = self._begin(event, "deposit")
        if duplicate:
            return duplicate

        update = LedgerUpdate(event_id=event.event_id)
        amount = max(event.amount, 0)
        shares = max(event.shares, 0)
        if amount != event.amount or shares != event.shares:
            update.inconsistencies.append("negative_deposit_input")

        vault = self._vault(event.vault_address)
        vault.total_assets += amount
        vault.total_shares += shares
        vault.total_deposited += amount
        vault.idle_staking_balance += amount
        vault.deposit_count += 1
        vault.last_event_id = event.event_id
        self._touch(vault, event)

        user = self._user(event.vault_address, event.receiver)
        if not user.is_active:
            logger.info("Reactivating user position", user_id=user.id, event_id=event.event_id)
        user.is_active = True
        user.shares += shares
        user.deposited_amount += amount
        user.cost_basis += amount
        user.deposit_count += 1
        self._touch(user, event)

        update.upserts.extend([vault, user])
        update.inserts.append(DepositRecord(
            id=event.event_id,
            vault_address=vault.vault_address,
            user_address=user.user_address,
            transaction_hash=event.transaction_hash.lower(),
            log_index=event.log_index,
            block_number=event.block_number,
            timestamp=event.timestamp,
            amount=amount,
            shares=shares,
            share_price=amount / shares if shares else 0.0,
            total_supply_after=vault.total_shares,
            total_assets_after=vault.total_assets,
        ))
        return self._finish(update, vault, "deposit")

    # ------------------------------------------------------------------ withdrawals

    def apply_withdrawal(self, event: WithdrawEvent) -> LedgerUpdate:
        duplicate = self._begin(event, "withdrawal")
        if duplicate:
            return duplicate

        update = LedgerUpdate(event_id=event.event_id)
        requested_shares = max(event.shares, 0)
        requested_amount = max(event.amount, 0)
        if requested_shares != event.shares or requested_amount != event.amount:
            update.inconsistencies.append("negative_withdrawal_input")

        vault = self._vault(event.vault_address)
        user = self._user(event.vault_address, event.owner)

        # Burn only what the owner holds so user shares keep summing to the vault total
        user_shares_before = user.shares
        burned = min(requested_shares, user_shares_before)
        if burned < requested_shares:
            update.inconsistencies.append("withdraw_shares_exceed_balance")
        vault.total_shares, vault_burned = _subtract(vault.total_shares, burned)
        if vault_burned < burned:
            update.inconsistencies.append("withdraw_shares_exceed_supply")

        vault.total_assets, removed = _subtract(vault.total_assets, requested_amount)
        if removed < requested_amount:
            update.inconsistencies.append("withdraw_assets_exceed_vault")
        vault.idle_staking_balance, _ = _subtract(vault.idle_staking_balance, removed)
        vault.total_withdrawn += removed
        vault.withdrawal_count += 1
        vault.last_event_id = event.event_id
        self._touch(vault, event)

        basis_released = user.cost_basis * burned // user_shares_before if user_shares_before else 0
        user.shares -= burned
        user.cost_basis -= basis_released
        user.withdrawn_amount += removed
        user.withdrawal_count += 1
        self._touch(user, event)
        if user.shares == 0:
            self._deactivate(user)

        update.upserts.extend([vault, user])
        update.inserts.append(WithdrawalRecord(
            id=event.event_id,
            vault_address=vault.vault_address,
            user_address=user.user_address,
            transaction_hash=event.transaction_hash.lower(),
            log_index=event.log_index,
            block_number=event.block_number,
            timestamp=event.timestamp,
            amount=requested_amount,
            shares=requested_shares,
            shares_burned=burned,
            assets_removed=removed,
            share_price=requested_amount / requested_shares if requested_shares else 0.0,
            total_supply_after=vault.total_shares,
            total_assets_after=vault.total_assets,
            clamped=bool(update.inconsistencies),
        ))
        return self._finish(update, vault, "withdrawal")

    @staticmethod
    def _deactivate(user: UserPosition):
        user.is_active = False
        user.cost_basis = 0
        user.proportion = 0.0
        user.current_value_usd = 0.0
        user.unrealized_pnl_usd = 0.0

    # ------------------------------------------------------------------ transfers

    def apply_transfer(self, event: ShareTransferEvent) -> LedgerUpdate:
        sender = event.sender.lower()
        receiver = event.receiver.lower()

        # Mints and burns are accounted for by the deposit/withdraw handlers
        if ZERO_ADDRESS in (sender, receiver):
            return LedgerUpdate(event_id=event.event_id, applied=False, skipped_reason="mint_or_burn")

        duplicate = self._begin(event, "transfer")
        if duplicate:
            return duplicate

        update = LedgerUpdate(event_id=event.event_id)
        value = max(event.value, 0)
        vault = self._vault(event.vault_address)
        record = ShareTransferRecord(
            id=event.event_id,
            vault_address=vault.vault_address,
            from_address=sender,
            to_address=receiver,
            transaction_hash=event.transaction_hash.lower(),
            log_index=event.log_index,
            block_number=event.block_number,
            timestamp=event.timestamp,
            value=value,
        )

        if sender == receiver or value == 0:
            update.inserts.append(record)
            return self._finish(update, vault, "transfer")

        moved: Optional[int] = None
        basis_moved = 0
        try:
            from_user = self._user(event.vault_address, sender)
            shares_before = from_user.shares
            moved = min(value, shares_before)
            if moved < value:
                update.inconsistencies.append("transfer_exceeds_sender_balance")
                record.clamped = True
            basis_moved = from_user.cost_basis * moved // shares_before if shares_before else 0
            from_user.shares -= moved
            from_user.cost_basis -= basis_moved
            self._touch(from_user, event)
            if from_user.shares == 0:
                self._deactivate(from_user)
            update.upserts.append(from_user)
        except Exception as e:
            record.sender_updated = False
            update.inconsistencies.append("transfer_sender_update_failed")
            logger.error("Failed to debit transfer sender", event_id=event.event_id, error=str(e))

        try:
            to_user = self._user(event.vault_address, receiver)
            # Credit what left the sender; the full value if the sender side failed
            to_user.shares += value if moved is None else moved
            to_user.cost_basis += basis_moved
            to_user.is_active = True
            self._touch(to_user, event)
            update.upserts.append(to_user)
        except Exception as e:
            record.receiver_updated = False
            update.inconsistencies.append("transfer_receiver_update_failed")
            logger.error("Failed to credit transfer receiver", event_id=event.event_id, error=str(e))

        vault.last_event_id = event.event_id
        update.upserts.append(vault)
        update.inserts.append(record)
        return self._finish(update, vault, "transfer")

    # ------------------------------------------------------------------ strategy executions

    def apply_loop_execution(
        self,
        event: ManagerExecutedEvent,
        leverage_ratio_before: Optional[float] = None,
    ) -> LedgerUpdate:
        duplicate = self._begin(event, "loop_execution")
        if duplicate:
            return duplicate

        update = LedgerUpdate(event_id=event.event_id)
        vault = self._vault(event.vault_address)
        classification = self.classifier.analyze(event.targets, event.call_data)

        if event.successful:
            self._apply_strategy_calls(vault, classification, update)
        vault.total_derivative_balance = vault.idle_derivative_balance + vault.collateral_amount
        vault.execution_count += 1
        vault.last_event_id = event.event_id
        self._touch(vault, event)

        execution = LoopExecution(
            id=event.event_id,
            vault_address=vault.vault_address,
            transaction_hash=event.transaction_hash.lower(),
            log_index=event.log_index,
            block_number=event.block_number,
            timestamp=event.timestamp,
            execution_type=classification.execution_type,
            targets=[t.lower() if isinstance(t, str) else str(t) for t in event.targets],
            call_data=list(event.call_data),
            call_values=list(event.call_values),
            staking_amount_processed=sum(classification.total(a) for a in _STAKING_SIDE_ACTIONS),
            derivative_amount_processed=sum(classification.total(a) for a in _DERIVATIVE_SIDE_ACTIONS),
            leverage_ratio_before=(
                vault.leverage_ratio if leverage_ratio_before is None else leverage_ratio_before
            ),
            success=event.successful,
            error_message="" if event.successful else "Execution failed",
        )
        self._pending_executions.setdefault(vault.vault_address, []).append(execution)

        update.upserts.append(vault)
        update.inserts.append(execution)
        logger.info(
            "Strategy execution recorded",
            event_id=event.event_id,
            execution_type=execution.execution_type,
            success=event.successful,
        )
        return self._finish(update, vault, "loop_execution")

    def _apply_strategy_calls(self, vault: VaultPosition, classification: Classification, update: LedgerUpdate):
        for call in classification.calls:
            action = call.rule.action
            amount = call.amount

            if action == StrategyAction.STAKE:
                vault.idle_staking_balance, moved = _subtract(vault.idle_staking_balance, amount)
                vault.idle_derivative_balance += moved
                vault.total_staked += moved
            elif action == StrategyAction.UNSTAKE:
                vault.idle_derivative_balance, moved = _subtract(vault.idle_derivative_balance, amount)
                vault.idle_staking_balance += moved
                vault.total_staked, _ = _subtract(vault.total_staked, moved)
            elif action == StrategyAction.SUPPLY:
                vault.idle_derivative_balance, moved = _subtract(vault.idle_derivative_balance, amount)
                vault.collateral_amount += moved
            elif action == StrategyAction.WITHDRAW_COLLATERAL:
                vault.collateral_amount, moved = _subtract(vault.collateral_amount, amount)
                vault.idle_derivative_balance += moved
            elif action == StrategyAction.BORROW:
                vault.borrowed_amount += amount
                vault.idle_staking_balance += amount
                moved = amount
            elif action == StrategyAction.REPAY:
                vault.borrowed_amount, moved = _subtract(vault.borrowed_amount, amount)
                vault.idle_staking_balance, _ = _subtract(vault.idle_staking_balance, moved)
            else:
                continue

            if moved < amount:
                update.inconsistencies.append(f"{action}_exceeds_balance")

    # ------------------------------------------------------------------ metrics feedback

    def record_metrics(
        self,
        snapshot: RiskMetricSnapshot,
        complete_executions: bool = True,
        execution_ids: Optional[Iterable[str]] = None,
        holdings: Optional[Dict[str, Tuple[int, int]]] = None,
    ) -> LedgerUpdate:
        """Store derived values from a completed metrics cycle.

        Revalues the vault's active users and fills ``leverage_ratio_after``
        on executions recorded since the previous cycle, or only on
        ``execution_ids`` when the cycle captured its inputs earlier.

        With ``holdings`` (from ``snapshot_holdings`` at the same tick) users are
        valued on the shares and cost basis they held at that tick, against the
        snapshot's share supply. Users who joined later keep their last valuation
        until the next cycle.
        """
        update = LedgerUpdate(event_id=snapshot.id)
        vault = self._vault(snapshot.vault_address)
        vault.leverage_ratio = snapshot.leverage_ratio
        vault.collateral_value_usd = snapshot.collateral_value_usd
        vault.borrowed_value_usd = snapshot.borrowed_value_usd
        vault.net_asset_value_usd = snapshot.net_asset_value_usd
        update.upserts.append(vault)

        total_shares = vault.total_shares if holdings is None else snapshot.total_shares
        scale = 10 ** self.token_decimals
        whole_shares = total_shares / scale
        share_value = snapshot.net_asset_value_usd / whole_shares if whole_shares else 0.0
        for user in self.users_of(vault.vault_address):
            if not user.is_active:
                continue
            if holdings is None:
                shares, cost_basis = user.shares, user.cost_basis
            elif user.id in holdings:
                shares, cost_basis = holdings[user.id]
            else:
                continue
            user.share_value_usd = share_value
            user.proportion = shares / total_shares if total_shares else 0.0
            user.current_value_usd = user.proportion * snapshot.net_asset_value_usd
            if snapshot.staking_price is not None:
                user.unrealized_pnl_usd = (
                    user.current_value_usd - (cost_basis / scale) * snapshot.staking_price
                )
            update.upserts.append(user)

        if complete_executions:
            pending = self._pending_executions.get(vault.vault_address, [])
            wanted = None if execution_ids is None else set(execution_ids)
            remaining = []
            for execution in pending:
                if wanted is not None and execution.id not in wanted:
                    remaining.append(execution)
                    continue
                execution.leverage_ratio_after = snapshot.leverage_ratio
                update.upserts.append(execution)
            self._pending_executions[vault.vault_address] = remaining

        return update

    # ------------------------------------------------------------------ replay

    def replay(self, records: Iterable[AuditRecord]) -> int:
        """Rebuild positions from persisted audit rows in (block, log index) order."""
        ordered = sorted(records, key=lambda r: (r.block_number, r.log_index))
        applied = 0
        for record in ordered:
            event = event_from_record(record)
            if isinstance(record, LoopExecution):
                update = self.apply_loop_execution(event, record.leverage_ratio_before)
                if update.applied and record.leverage_ratio_after is not None:
                    self._drop_pending(record.vault_address, record.id)
            else:
                update = self.apply(event)
            # Rows came from the store, nothing to write back
            self.mark_persisted(update.event_id)
            if update.applied:
                applied += 1
        logger.info("Ledger replay complete", records=len(ordered), applied=applied)
        return applied

    def _drop_pending(self, vault_address: str, execution_id: str):
        pending = self._pending_executions.get(vault_address.lower(), [])
        self._pending_executions[vault_address.lower()] = [e for e in pending if e.id != execution_id]


def event_from_record(record: AuditRecord) -> LedgerEvent:
    """The ledger event an audit row was produced from."""
    common = dict(
        vault_address=record.vault_address,
        transaction_hash=record.transaction_hash,
        log_index=record.log_index,
        block_number=record.block_number,
        timestamp=record.timestamp,
    )
    if isinstance(record, DepositRecord):
        return DepositEvent(receiver=record.user_address, amount=record.amount, shares=record.shares, **common)
    if isinstance(record, WithdrawalRecord):
        return WithdrawEvent(owner=record.user_address, amount=record.amount, shares=record.shares, **common)
    if isinstance(record, ShareTransferRecord):
        return ShareTransferEvent(
            sender=record.from_address, receiver=record.to_address, value=record.value, **common
        )
    if isinstance(record, LoopExecution):
        return ManagerExecutedEvent(
            targets=record.targets,
            call_data=record.call_data,
            call_values=record.call_values,
            successful=record.success,
            **common,
        )
    raise TypeError(f"Not an audit record: {type(record).__name__}")
