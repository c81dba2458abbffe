"""
Vault Risk - position and risk aggregation for leveraged staking vaults

Turns ordered vault events, L1 precompile reads and external price feeds into
current vault/user positions, per-cycle risk snapshots (leverage, health
factor, liquidation price, net yield, risk score) and threshold alerts.

Key Features:
- Event-sourced, replayable position ledger with idempotent writes
- Data-driven classification of strategy batch executions
- Selector-less L1 precompile reads on a block cadence
- Ordered-fallback price sources with last-known-good degradation
- Alert state machine with auto-resolution on recovery
- MongoDB persistence keyed by natural identity
"""

__version__ = "0.1.0"

from .config import Settings, settings

__all__ = ["Settings", "settings"]
