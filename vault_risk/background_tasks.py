import asyncio
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import structlog

from .alerts import AlertEvaluator, format_notification
from .error_handling import DatabaseError, ResilientCaller
from .event_router import EventRouter
from .external_apis import PriceSourceAdapter, RpcClient, WebhookNotifier, YieldRateEstimator
from .l1_reader import L1StateReader
from .ledger import PositionLedger
from .models import (
    BlockTick, EmergencyAlert, LiquidationEvent, LoopExecution, PriceQuote, RawEventRecord,
    RiskMetricSnapshot, TokenPriceSnapshot, VaultPosition
)
from .monitoring import MetricsCollector
from .risk_engine import PriceInputs, RiskMetricsEngine

logger = structlog.get_logger()


def _price_rows(quotes: Iterable[Optional[PriceQuote]], timestamp: int) -> List[TokenPriceSnapshot]:
    return [
        TokenPriceSnapshot(
            id=f"{quote.symbol}-{timestamp}",
            symbol=quote.symbol,
            price_usd=quote.price_usd,
            source=quote.source,
            last_updated=quote.last_updated,
            timestamp=timestamp,
            stale=quote.stale,
        )
        for quote in quotes
        if quote is not None and not quote.stale
    ]


class MonitoringCycle:
    """One metrics evaluation: join inputs, compute, alert, persist, notify."""

    def __init__(
        self,
        settings,
        ledger: PositionLedger,
        engine: RiskMetricsEngine,
        prices: PriceSourceAdapter,
        yields: YieldRateEstimator,
        l1_reader: L1StateReader,
        alerts: AlertEvaluator,
        repository,
        notifier: WebhookNotifier,
        metrics: MetricsCollector,
    ):
        self.settings = settings
        self.ledger = ledger
        self.engine = engine
        self.prices = prices
        self.yields = yields
        self.l1_reader = l1_reader
        self.alerts = alerts
        self.repository = repository
        self.notifier = notifier
        self.metrics = metrics

    @property
    def asset_ids(self) -> List[str]:
        return [self.settings.STAKING_ASSET_ID, self.settings.DERIVATIVE_ASSET_ID]

    def _reads_l1_at(self, block_number: int) -> bool:
        interval = self.settings.L1_READ_INTERVAL_BLOCKS
        return interval > 0 and block_number % interval == 0

    async def read_l1(self, vault_address: str, tick: BlockTick):
        state = await self.l1_reader.read_l1_state(vault_address, tick.block_number, tick.timestamp)
        try:
            await self.repository.persist(inserts=self.l1_reader.snapshot_rows(state))
        except DatabaseError as e:
            logger.error("Failed to persist L1 snapshot", vault=vault_address, block=tick.block_number, error=str(e))
        return state

    async def run(
        self,
        vault_address: str,
        tick: BlockTick,
        position: Optional[VaultPosition] = None,
        pending: Optional[List[LoopExecution]] = None,
        holdings: Optional[Dict[str, Tuple[int, int]]] = None,
    ) -> Optional[RiskMetricSnapshot]:
        """Compute and store one snapshot for ``vault_address`` at ``tick``.

        ``position``, ``pending`` and ``holdings`` are the ledger state captured
        at the tick; when omitted they are taken now.
        """
        vault_address = vault_address.lower()
        if position is None:
            position = self.ledger.snapshot_vault(vault_address)
            pending = self.ledger.pending_executions(vault_address)
            holdings = self.ledger.snapshot_holdings(vault_address)
        if position is None:
            position = VaultPosition(id=vault_address, vault_address=vault_address)
        pending = pending or []

        async with self.metrics.track_operation("metrics_cycle"):
            # Metrics wait on the latest completed price fetch and L1 read
            if self._reads_l1_at(tick.block_number):
                l1_read = self.l1_reader.read_l1_state(vault_address, tick.block_number, tick.timestamp)
            else:
                l1_read = self.l1_reader.latest(vault_address)
            quotes, l1_state = await asyncio.gather(
                self.prices.current(self.asset_ids, max_age=self.settings.PRICE_REFRESH_INTERVAL),
                l1_read,
            )

            price_inputs = PriceInputs(
                staking=quotes.get(self.settings.STAKING_ASSET_ID),
                derivative=quotes.get(self.settings.DERIVATIVE_ASSET_ID),
            )
            self.yields.record_prices(price_inputs.staking, price_inputs.derivative, tick.timestamp)
            yield_inputs = await self.yields.current_yields()

            snapshot = self.engine.compute_snapshot(
                position, price_inputs, l1_state, yield_inputs, tick.timestamp, tick.block_number
            )
            ledger_update = self.ledger.record_metrics(
                snapshot, execution_ids=[e.id for e in pending], holdings=holdings
            )
            evaluation = self.alerts.evaluate(snapshot, failed_executions=[e for e in pending if not e.success])

        self.metrics.set_gauge("vault.health_factor", snapshot.health_factor, tags={"vault": vault_address})
        self.metrics.set_gauge("vault.leverage_ratio", snapshot.leverage_ratio, tags={"vault": vault_address})
        self.metrics.set_gauge("vault.risk_score", snapshot.risk_score, tags={"vault": vault_address})
        logger.info(
            "Risk metrics computed",
            vault=vault_address,
            block=tick.block_number,
            health_factor=snapshot.health_factor,
            leverage_ratio=snapshot.leverage_ratio,
            risk_score=snapshot.risk_score,
            alert_level=snapshot.alert_level,
        )

        try:
            await self.repository.persist(
                inserts=[snapshot, *_price_rows(quotes.values(), tick.timestamp), *evaluation.created],
                upserts=ledger_update.upserts,
            )
            for alert in evaluation.resolved:
                await self.repository.mark_resolved(alert)
        except DatabaseError as e:
            logger.error("Failed to persist metrics cycle", vault=vault_address, block=tick.block_number, error=str(e))

        for alert in evaluation.created:
            await self.notifier.notify(alert, format_notification(alert))

        return snapshot

    async def resolve_alert(self, vault_address: str, alert_type: str, resolved_at: int) -> List[EmergencyAlert]:
        resolved = self.alerts.resolve(vault_address, alert_type, resolved_at)
        for alert in resolved:
            await self.repository.mark_resolved(alert)
        return resolved


class BackgroundTaskManager:
    """Owns the event consumer, block-driven cycles and the price refresh loop"""

    def __init__(
        self,
        settings,
        router: EventRouter,
        ledger: PositionLedger,
        cycle: MonitoringCycle,
        repository,
    ):
        self.settings = settings
        self.router = router
        self.ledger = ledger
        self.cycle = cycle
        self.repository = repository
        self.is_running = False
        self.tasks: List[asyncio.Task] = []
        self.cycle_tasks: Set[asyncio.Task] = set()
        self.queue: "asyncio.Queue[Mapping[str, Any]]" = asyncio.Queue()

    async def start(self):
        """Start all background tasks"""
        if self.is_running:
            logger.warning("Background tasks already running")
            return

        self.is_running = True
        logger.info("Starting background tasks")
        self.tasks.append(asyncio.create_task(self._event_consumer_loop()))
        self.tasks.append(asyncio.create_task(self._price_refresh_loop()))

    async def stop(self):
        """Stop all background tasks"""
        if not self.is_running:
            return

        logger.info("Stopping background tasks")
        self.is_running = False

        pending = [*self.tasks, *self.cycle_tasks]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self.tasks.clear()
        self.cycle_tasks.clear()

    def submit(self, raw_event: Mapping[str, Any]):
        self.queue.put_nowait(raw_event)

    async def drain(self):
        """Wait until every queued event and spawned cycle has finished."""
        await self.queue.join()
        while self.cycle_tasks:
            await asyncio.gather(*list(self.cycle_tasks), return_exceptions=True)

    async def _event_consumer_loop(self):
        """Single consumer: events are applied strictly in arrival order"""
        while self.is_running:
            raw_event = await self.queue.get()
            try:
                await self.handle(raw_event)
            except Exception as e:
                logger.error("Error handling event", error=str(e), event_name=raw_event.get("event"))
            finally:
                self.queue.task_done()

    async def handle(self, raw_event: Mapping[str, Any]):
        event = self.router.route(raw_event)
        if isinstance(event, BlockTick):
            self.on_block(event)
            return

        raw_row = self.router.raw_record(raw_event, routed=event is not None)
        if isinstance(event, LiquidationEvent):
            await self._on_liquidation(event, raw_row)
            return
        if event is None:
            if raw_row is not None:
                await self.repository.persist(inserts=[raw_row])
            return

        update = self.ledger.apply(event)
        if raw_row is not None and not update.duplicate:
            update.inserts.append(raw_row)
        if update.applied:
            await self._flush()
        elif update.upserts or update.inserts:
            # Skipped events and redeliveries of an unwritten apply
            await self.repository.persist(upserts=update.upserts, inserts=update.inserts)
            self.ledger.mark_persisted(update.event_id)

    async def _flush(self):
        """Write every applied update the store has not confirmed, oldest first.

        A failure leaves the rest queued; the next event or a redelivery retries them.
        """
        for update in self.ledger.unpersisted():
            await self.repository.persist(upserts=update.upserts, inserts=update.inserts)
            self.ledger.mark_persisted(update.event_id)

    async def _on_liquidation(self, event: LiquidationEvent, raw_row: Optional[RawEventRecord]):
        rows = [raw_row] if raw_row is not None else []
        alert = None
        if event.vault_address in self.settings.vault_addresses:
            alert = self.cycle.alerts.liquidation_alert(event)
        else:
            logger.debug("Liquidation of an unwatched account", account=event.vault_address)
        if alert is not None:
            rows.append(alert)
        if rows:
            await self.repository.persist(inserts=rows)
        if alert is None:
            return

        self.cycle.alerts.hydrate([alert])
        logger.warning(
            "Vault position liquidated",
            vault=event.vault_address,
            market=event.market_address,
            debt_amount=event.debt_amount,
            collateral_amount=event.collateral_amount,
        )
        await self.cycle.notifier.notify(alert, format_notification(alert))

    def on_block(self, tick: BlockTick):
        """Schedule the periodic work due at this block without blocking event application"""
        l1_interval = self.settings.L1_READ_INTERVAL_BLOCKS
        risk_interval = self.settings.RISK_CHECK_INTERVAL_BLOCKS

        for vault_address in self.settings.vault_addresses:
            if l1_interval > 0 and tick.block_number % l1_interval == 0:
                self._spawn(self.cycle.read_l1(vault_address, tick), "l1_read", vault_address, tick)
            if risk_interval > 0 and tick.block_number % risk_interval == 0:
                # Capture the ledger as of this block before anything else is applied
                position = self.ledger.snapshot_vault(vault_address)
                pending = self.ledger.pending_executions(vault_address)
                holdings = self.ledger.snapshot_holdings(vault_address)
                self._spawn(
                    self.cycle.run(vault_address, tick, position, pending, holdings),
                    "metrics_cycle",
                    vault_address,
                    tick,
                )

    def _spawn(self, coro, name: str, vault_address: str, tick: BlockTick):
        task = asyncio.create_task(coro)
        self.cycle_tasks.add(task)

        def _done(finished: asyncio.Task):
            self.cycle_tasks.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    f"Error in {name}",
                    vault=vault_address,
                    block=tick.block_number,
                    error=str(finished.exception()),
                )

        task.add_done_callback(_done)

    async def _price_refresh_loop(self):
        """Wall-clock price refresh, independent of block ticks"""
        while self.is_running:
            try:
                quotes = await self.cycle.prices.current(self.cycle.asset_ids, max_age=0)
                fresh = [q for q in quotes.values() if q is not None and not q.stale]
                if fresh:
                    timestamp = max(q.last_updated for q in fresh)
                    await self.repository.persist(inserts=_price_rows(fresh, timestamp))
            except Exception as e:
                logger.error("Error in price refresh loop", error=str(e))

            await asyncio.sleep(self.settings.PRICE_REFRESH_INTERVAL)


class BlockPoller:
    """Turns new chain heads into block ticks stamped with each block's own timestamp.

    Blocks are emitted strictly in order; when a head or header read fails the
    poller stops and picks up from the same block on the next poll.
    """

    def __init__(
        self,
        rpc: RpcClient,
        caller: ResilientCaller,
        submit: Callable[[Mapping[str, Any]], None],
        last_block: Optional[int] = None,
    ):
        self.rpc = rpc
        self.caller = caller
        self.submit = submit
        self.last_block = last_block

    async def poll_once(self) -> int:
        """Emit a tick for every block since the last poll; returns how many were emitted."""
        head = await self.caller.call("rpc:block_number", self.rpc.block_number)
        if not head.ok:
            return 0

        start = head.value if self.last_block is None else self.last_block + 1
        emitted = 0
        for block_number in range(start, head.value + 1):
            stamp = await self.caller.call(
                "rpc:block_timestamp", lambda n=block_number: self.rpc.block_timestamp(n)
            )
            if not stamp.ok:
                logger.warning("Block header unavailable, retrying on next poll", block=block_number)
                break
            self.submit({"event": "block", "blockNumber": block_number, "timestamp": stamp.value})
            self.last_block = block_number
            emitted += 1
        return emitted

    async def run(self, poll_seconds: float):
        while True:
            await self.poll_once()
            await asyncio.sleep(poll_seconds)
