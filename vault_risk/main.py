import logging
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from .alerts import AlertEvaluator
from .background_tasks import BackgroundTaskManager, MonitoringCycle
from .classifier import ExecutionClassifier
from .config import Settings, settings as default_settings
from .database import DatabaseManager, NullRepository, Repository
from .error_handling import ErrorCollector, ResilientCaller
from .event_router import EventRouter
from .external_apis import (
    BaseAPIClient, CoinGeckoClient, DefiLlamaClient, PriceSourceAdapter, RpcClient,
    WebhookNotifier, YieldRateEstimator
)
from .l1_reader import L1StateReader
from .ledger import PositionLedger
from .monitoring import MetricsCollector
from .risk_engine import RiskMetricsEngine

logger = structlog.get_logger()


def configure_logging(settings: Settings = default_settings):
    """Configure structured logging"""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=settings.LOG_LEVEL.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.LOG_JSON
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@dataclass
class Service:
    """Every component and client handle, constructed once per process."""

    settings: Settings
    metrics: MetricsCollector
    errors: ErrorCollector
    ledger: PositionLedger
    router: EventRouter
    cycle: MonitoringCycle
    tasks: BackgroundTaskManager
    repository: object
    db_manager: Optional[DatabaseManager] = None
    http_clients: List[BaseAPIClient] = field(default_factory=list)
    notifier: Optional[WebhookNotifier] = None
    rpc: Optional[RpcClient] = None
    caller: Optional[ResilientCaller] = None


def build_service(settings: Settings = default_settings, transport=None) -> Service:
    """Wire the engine together. ``transport`` replaces the network for every HTTP client."""
    metrics = MetricsCollector()
    errors = ErrorCollector()
    caller = ResilientCaller.from_settings(settings, error_collector=errors, metrics=metrics)

    coingecko = CoinGeckoClient(settings.COINGECKO_BASE_URL, settings.COINGECKO_API_KEY, transport=transport)
    defillama = DefiLlamaClient(settings.DEFILLAMA_COINS_URL, transport=transport)
    rpc = RpcClient(settings.RPC_URL, timeout=settings.RPC_TIMEOUT_SECONDS, transport=transport)
    http_clients: List[BaseAPIClient] = [coingecko, defillama, rpc]

    borrow_apr_client = None
    if settings.BORROW_APR_URL:
        borrow_apr_client = BaseAPIClient(settings.BORROW_APR_URL, transport=transport)
        http_clients.append(borrow_apr_client)

    db_manager = DatabaseManager(settings) if settings.MONGODB_URI else None
    repository = NullRepository()

    ledger = PositionLedger(ExecutionClassifier.from_settings(settings), settings.TOKEN_DECIMALS, metrics)
    notifier = WebhookNotifier(settings.ALERT_WEBHOOK_URL, transport=transport)
    cycle = MonitoringCycle(
        settings=settings,
        ledger=ledger,
        engine=RiskMetricsEngine(settings),
        prices=PriceSourceAdapter([coingecko, defillama], caller, settings.PRICE_STALENESS_SECONDS),
        yields=YieldRateEstimator(settings, caller, borrow_apr_client),
        l1_reader=L1StateReader(rpc, caller, settings, metrics),
        alerts=AlertEvaluator(settings),
        repository=repository,
        notifier=notifier,
        metrics=metrics,
    )
    router = EventRouter.from_settings(settings)
    tasks = BackgroundTaskManager(settings, router, ledger, cycle, repository)

    return Service(
        settings=settings,
        metrics=metrics,
        errors=errors,
        ledger=ledger,
        router=router,
        cycle=cycle,
        tasks=tasks,
        repository=repository,
        db_manager=db_manager,
        http_clients=http_clients,
        notifier=notifier,
        rpc=rpc,
        caller=caller,
    )


def _attach_repository(service: Service, repository):
    service.repository = repository
    service.cycle.repository = repository
    service.tasks.repository = repository


async def restore_state(service: Service):
    """Replay the audit trail and re-open unresolved alerts."""
    records = await service.repository.load_audit_trail()
    applied = service.ledger.replay(records)
    alerts = await service.repository.load_unresolved_alerts()
    service.cycle.alerts.hydrate(alerts)
    logger.info("State restored", audit_records=applied, open_alerts=len(alerts))


def run_summary(service: Service) -> dict:
    """Counters, metrics-cycle latency and recent errors for the shutdown log."""
    return {
        "counters": service.metrics.get_all_current_metrics()["counters"],
        "metrics_cycle": service.metrics.get_metric_summary("metrics_cycle.duration_ms"),
        "errors": service.errors.get_error_summary(),
    }


@asynccontextmanager
async def service_lifespan(service: Service):
    """Connect, restore, run; tear down in reverse order."""
    startup_start_time = time.time()
    logger.info("Starting vault risk engine", vaults=service.settings.vault_addresses)

    if service.db_manager is not None:
        await service.db_manager.connect()
        _attach_repository(service, Repository(service.db_manager.database))
    else:
        logger.warning("MONGODB_URI not set - running without persistence")

    for client in service.http_clients:
        await client.start()
    if service.notifier:
        await service.notifier.start()

    try:
        await restore_state(service)
        await service.tasks.start()
        logger.info("Vault risk engine ready", startup_time_seconds=round(time.time() - startup_start_time, 2))
        yield service
    finally:
        logger.info("Shutting down vault risk engine")
        await service.tasks.stop()
        logger.info("Run summary", **run_summary(service))
        for client in service.http_clients:
            await client.close()
        if service.notifier:
            await service.notifier.close()
        if service.db_manager is not None:
            await service.db_manager.disconnect()
        logger.info("Vault risk engine shutdown complete")
