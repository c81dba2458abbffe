"""
Threshold alerts over risk snapshots.

Each (vault, alert type) pair moves through ``none -> active -> resolved``.
Under the ``on_transition`` policy a record is written when a condition
activates or escalates, and recovery resolves it. Under ``every_cycle`` one
record is written per breached cycle, which keeps the breach-observation time
series. Both policies key records by ``vault-alert_type-timestamp`` so
re-evaluating a cycle writes nothing new.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import structlog

from .config import AlertSeverity, AlertType, settings as default_settings
from .models import EmergencyAlert, LiquidationEvent, LoopExecution, RiskMetricSnapshot

logger = structlog.get_logger()

POLICY_ON_TRANSITION = "on_transition"
POLICY_EVERY_CYCLE = "every_cycle"

_SEVERITY_RANK = {AlertSeverity.WARNING: 1, AlertSeverity.CRITICAL: 2}


class AlertState:
    NONE = "none"
    ACTIVE = "active"
    RESOLVED = "resolved"


@dataclass
class Condition:
    alert_type: str
    breached: bool
    severity: str = AlertSeverity.WARNING
    trigger_value: float = 0.0
    threshold: float = 0.0
    message: str = ""


@dataclass
class AlertTracker:
    state: str = AlertState.NONE
    severity: Optional[str] = None
    open_alerts: List[EmergencyAlert] = field(default_factory=list)


@dataclass
class AlertEvaluation:
    created: List[EmergencyAlert] = field(default_factory=list)
    resolved: List[EmergencyAlert] = field(default_factory=list)


class AlertEvaluator:
    def __init__(self, settings=None, policy: Optional[str] = None, auto_resolve: Optional[bool] = None):
        settings = settings or default_settings
        self.settings = settings
        self.policy = policy or settings.ALERT_EMISSION_POLICY
        if self.policy not in (POLICY_ON_TRANSITION, POLICY_EVERY_CYCLE):
            raise ValueError(f"Unknown alert emission policy: {self.policy}")
        self.auto_resolve = settings.ALERT_AUTO_RESOLVE if auto_resolve is None else auto_resolve
        self._trackers: Dict[Tuple[str, str], AlertTracker] = {}
        # Newest cycle timestamp evaluated per vault
        self._last_evaluated: Dict[str, int] = {}
        self._liquidation_ids: Set[str] = set()

    def state_of(self, vault_address: str, alert_type: str) -> str:
        tracker = self._trackers.get((vault_address.lower(), alert_type))
        return tracker.state if tracker else AlertState.NONE

    def active_alerts(self, vault_address: Optional[str] = None) -> List[EmergencyAlert]:
        alerts = []
        for (vault, _), tracker in self._trackers.items():
            if vault_address is None or vault == vault_address.lower():
                alerts.extend(tracker.open_alerts)
        return alerts

    def hydrate(self, alerts: Iterable[EmergencyAlert]):
        """Restore trackers from unresolved alerts loaded from the store."""
        for alert in sorted(alerts, key=lambda a: a.timestamp):
            if alert.is_resolved:
                continue
            tracker = self._trackers.setdefault((alert.vault_address.lower(), alert.alert_type), AlertTracker())
            tracker.state = AlertState.ACTIVE
            if tracker.severity is None or _SEVERITY_RANK[alert.severity] > _SEVERITY_RANK[tracker.severity]:
                tracker.severity = alert.severity
            tracker.open_alerts.append(alert)
            if alert.alert_type == AlertType.LIQUIDATION:
                self._liquidation_ids.add(alert.id)

    # ------------------------------------------------------------------ conditions

    def conditions(
        self,
        snapshot: RiskMetricSnapshot,
        failed_executions: Sequence[LoopExecution] = (),
    ) -> List[Condition]:
        s = self.settings
        hf = snapshot.health_factor
        lev = snapshot.leverage_ratio
        net_yield = snapshot.net_yield

        liquidation = Condition(AlertType.LIQUIDATION_RISK, hf < s.HEALTH_FACTOR_WARNING, trigger_value=hf)
        if hf < s.HEALTH_FACTOR_CRITICAL:
            liquidation.severity, liquidation.threshold = AlertSeverity.CRITICAL, s.HEALTH_FACTOR_CRITICAL
        else:
            liquidation.threshold = s.HEALTH_FACTOR_WARNING
        liquidation.message = f"Health factor {hf:.4f} below {liquidation.threshold}"

        leverage = Condition(AlertType.HIGH_LEVERAGE, lev > s.LEVERAGE_WARNING, trigger_value=lev)
        if lev > s.LEVERAGE_CRITICAL:
            leverage.severity, leverage.threshold = AlertSeverity.CRITICAL, s.LEVERAGE_CRITICAL
        else:
            leverage.threshold = s.LEVERAGE_WARNING
        leverage.message = f"Leverage ratio {lev:.3f}x above {leverage.threshold}x"

        low_yield = Condition(AlertType.LOW_YIELD, net_yield < s.NET_YIELD_WARNING, trigger_value=net_yield)
        if net_yield < s.NET_YIELD_CRITICAL:
            low_yield.severity, low_yield.threshold = AlertSeverity.CRITICAL, s.NET_YIELD_CRITICAL
        else:
            low_yield.threshold = s.NET_YIELD_WARNING
        low_yield.message = f"Net yield {net_yield:.2%} below {low_yield.threshold:.2%}"

        failures = [e for e in failed_executions if not e.success]
        strategy = Condition(
            AlertType.STRATEGY_FAILURE,
            bool(failures),
            trigger_value=float(len(failures)),
            threshold=0.0,
            message=f"{len(failures)} strategy execution(s) failed since the last cycle",
        )

        stale = Condition(
            AlertType.STALE_DATA,
            snapshot.degraded,
            trigger_value=float(snapshot.price_stale) + 2 * float(snapshot.l1_data_missing),
            threshold=0.0,
            message="Metrics computed from degraded inputs"
            + (" (stale price)" if snapshot.price_stale else "")
            + (" (missing L1 data)" if snapshot.l1_data_missing else ""),
        )

        return [liquidation, leverage, low_yield, strategy, stale]

    # ------------------------------------------------------------------ evaluation

    def evaluate(
        self,
        snapshot: RiskMetricSnapshot,
        failed_executions: Sequence[LoopExecution] = (),
    ) -> AlertEvaluation:
        evaluation = AlertEvaluation()
        vault = snapshot.vault_address.lower()
        last = self._last_evaluated.get(vault)
        if last is not None and snapshot.timestamp <= last:
            logger.debug("Cycle already evaluated or superseded", snapshot_id=snapshot.id, last_evaluated=last)
            return evaluation
        self._last_evaluated[vault] = snapshot.timestamp

        for condition in self.conditions(snapshot, failed_executions):
            tracker = self._trackers.setdefault((vault, condition.alert_type), AlertTracker())

            if not condition.breached:
                if tracker.state == AlertState.ACTIVE and self.auto_resolve:
                    evaluation.resolved.extend(self._resolve_tracker(tracker, snapshot.timestamp))
                    logger.info("Alert condition recovered", vault=vault, alert_type=condition.alert_type)
                continue

            if self.policy == POLICY_EVERY_CYCLE:
                evaluation.created.append(self._open(tracker, vault, condition, snapshot))
                continue

            if tracker.state != AlertState.ACTIVE:
                evaluation.created.append(self._open(tracker, vault, condition, snapshot))
            elif _SEVERITY_RANK[condition.severity] > _SEVERITY_RANK[tracker.severity]:
                # Escalation supersedes the open record
                evaluation.resolved.extend(self._resolve_tracker(tracker, snapshot.timestamp))
                evaluation.created.append(self._open(tracker, vault, condition, snapshot))

        for alert in evaluation.created:
            logger.warning(
                "Alert raised",
                vault=vault,
                alert_type=alert.alert_type,
                severity=alert.severity,
                trigger_value=alert.trigger_value,
            )
        return evaluation

    def _open(self, tracker: AlertTracker, vault: str, condition: Condition, snapshot: RiskMetricSnapshot) -> EmergencyAlert:
        alert = EmergencyAlert(
            id=EmergencyAlert.make_id(vault, condition.alert_type, snapshot.timestamp),
            vault_address=vault,
            alert_type=condition.alert_type,
            severity=condition.severity,
            message=condition.message,
            trigger_value=condition.trigger_value,
            threshold=condition.threshold,
            block_number=snapshot.block_number,
            timestamp=snapshot.timestamp,
        )
        tracker.state = AlertState.ACTIVE
        if tracker.severity is None or not tracker.open_alerts:
            tracker.severity = condition.severity
        else:
            tracker.severity = max(tracker.severity, condition.severity, key=_SEVERITY_RANK.__getitem__)
        tracker.open_alerts.append(alert)
        return alert

    def liquidation_alert(self, event: LiquidationEvent) -> Optional[EmergencyAlert]:
        """Critical record for a lending-market liquidation, or None if already raised.

        Nothing is tracked until the caller hands the stored alert to ``hydrate``.
        Liquidations stay open until an operator resolves them.
        """
        vault = event.vault_address.lower()
        alert_id = EmergencyAlert.make_id(vault, AlertType.LIQUIDATION, event.timestamp)
        if alert_id in self._liquidation_ids:
            return None
        scale = 10 ** self.settings.TOKEN_DECIMALS
        debt = event.debt_amount / scale
        return EmergencyAlert(
            id=alert_id,
            vault_address=vault,
            alert_type=AlertType.LIQUIDATION,
            severity=AlertSeverity.CRITICAL,
            message=(
                f"Position liquidated on {event.market_address}: "
                f"{event.collateral_amount / scale:.4f} collateral seized for {debt:.4f} debt"
            ),
            trigger_value=debt,
            threshold=0.0,
            block_number=event.block_number,
            timestamp=event.timestamp,
        )

    @staticmethod
    def _resolve_tracker(tracker: AlertTracker, resolved_at: int) -> List[EmergencyAlert]:
        resolved = []
        for alert in tracker.open_alerts:
            alert.is_resolved = True
            alert.resolved_at = resolved_at
            resolved.append(alert)
        tracker.open_alerts = []
        tracker.state = AlertState.RESOLVED
        tracker.severity = None
        return resolved

    def resolve(self, vault_address: str, alert_type: str, resolved_at: int) -> List[EmergencyAlert]:
        """Explicit operator resolution of every open alert of this type."""
        tracker = self._trackers.get((vault_address.lower(), alert_type))
        if tracker is None or tracker.state != AlertState.ACTIVE:
            return []
        resolved = self._resolve_tracker(tracker, resolved_at)
        logger.info("Alert resolved", vault=vault_address, alert_type=alert_type, count=len(resolved))
        return resolved


def format_notification(alert: EmergencyAlert) -> str:
    return f"**{alert.severity.upper()} ALERT**\n{alert.message}\nVault: {alert.vault_address}"
