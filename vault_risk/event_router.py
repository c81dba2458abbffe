"""
Maps raw decoded contract events onto typed ledger events.

Each watched contract gets a ``ContractBinding`` whose event map names the
ledger operation and the raw argument for every field, so vaults that emit
differently named events share one ledger instead of one handler per contract.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Union

import structlog
from pydantic import ValidationError

from .error_handling import ConfigurationError
from .models import (
    BlockTick, DepositEvent, LedgerEvent, LiquidationEvent, ManagerExecutedEvent, RawEventRecord,
    ShareTransferEvent, WithdrawEvent
)

logger = structlog.get_logger()

_EVENT_TYPES = {
    "deposit": DepositEvent,
    "withdraw": WithdrawEvent,
    "transfer": ShareTransferEvent,
    "manager_executed": ManagerExecutedEvent,
    "liquidation": LiquidationEvent,
}


@dataclass(frozen=True)
class EventMapping:
    operation: str
    # ledger field -> raw argument name
    args: Dict[str, str]


_TRANSFER = EventMapping("transfer", {"sender": "from", "receiver": "to", "value": "value"})

# Enter/Exit share vaults
SHARE_VAULT_EVENTS: Dict[str, EventMapping] = {
    "Enter": EventMapping("deposit", {"receiver": "user", "amount": "amount", "shares": "shares"}),
    "Exit": EventMapping("withdraw", {"owner": "user", "amount": "amount", "shares": "shares"}),
    "Transfer": _TRANSFER,
}

# Looping vaults with manager batch execution
LOOPING_VAULT_EVENTS: Dict[str, EventMapping] = {
    "Deposit": EventMapping("deposit", {"receiver": "receiver", "amount": "depositAmount", "shares": "shareAmount"}),
    "Withdraw": EventMapping("withdraw", {"owner": "receiver", "amount": "assets", "shares": "shares"}),
    "Transfer": _TRANSFER,
    "ManagerExecuted": EventMapping(
        "manager_executed",
        {"targets": "targets", "call_data": "data", "call_values": "values", "successful": "successful"},
    ),
}

# Lending market the vaults borrow from; the liquidated borrower is the vault
LENDING_MARKET_EVENTS: Dict[str, EventMapping] = {
    "LiquidationCall": EventMapping(
        "liquidation",
        {
            "vault_address": "user",
            "liquidator": "liquidator",
            "collateral_amount": "liquidatedCollateralAmount",
            "debt_amount": "debtToCover",
        },
    ),
}

EVENT_STYLES = {
    "share": SHARE_VAULT_EVENTS,
    "looping": LOOPING_VAULT_EVENTS,
}


@dataclass
class ContractBinding:
    name: str
    address: str
    events: Dict[str, EventMapping] = field(default_factory=dict)

    def __post_init__(self):
        self.address = self.address.lower()


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    raise ValueError(f"Not an integer: {value!r}")


def _convert(field_name: str, value: Any) -> Any:
    if field_name in ("amount", "shares", "value", "collateral_amount", "debt_amount"):
        return _to_int(value)
    if field_name == "call_values":
        return [_to_int(item) for item in value]
    if field_name == "call_data":
        return [item if isinstance(item, str) else "0x" + bytes(item).hex() for item in value]
    if field_name in ("vault_address", "liquidator"):
        return str(value).lower()
    return value


class EventRouter:
    def __init__(self, bindings: Iterable[ContractBinding]):
        self.bindings: Dict[str, ContractBinding] = {b.address: b for b in bindings}

    @classmethod
    def from_settings(cls, settings) -> "EventRouter":
        bindings = []
        for address, style in settings.vault_bindings:
            if style not in EVENT_STYLES:
                raise ConfigurationError(f"Unknown vault event style {style!r} for {address}")
            bindings.append(ContractBinding(name=f"{style}:{address}", address=address, events=EVENT_STYLES[style]))
        if settings.LENDING_PROTOCOL_ADDRESS:
            address = settings.LENDING_PROTOCOL_ADDRESS
            bindings.append(ContractBinding(name=f"lending:{address.lower()}", address=address, events=LENDING_MARKET_EVENTS))
        return cls(bindings)

    def route(self, raw: Mapping[str, Any]) -> Optional[Union[LedgerEvent, BlockTick]]:
        """Typed event for a raw mapping, or None when it is not ours or malformed."""
        if raw.get("event") == "block":
            try:
                return BlockTick(block_number=_to_int(raw["blockNumber"]), timestamp=_to_int(raw["timestamp"]))
            except (KeyError, ValueError, ValidationError) as e:
                logger.warning("Malformed block tick", error=str(e))
                return None

        address = str(raw.get("address", "")).lower()
        binding = self.bindings.get(address)
        if binding is None:
            logger.debug("Event from unbound contract", address=address)
            return None
        mapping = binding.events.get(raw.get("event"))
        if mapping is None:
            logger.debug("Unhandled event", binding=binding.name, event_name=raw.get("event"))
            return None

        args = raw.get("args") or {}
        try:
            payload = {
                field_name: _convert(field_name, args[arg_name])
                for field_name, arg_name in mapping.args.items()
                if arg_name in args or field_name != "successful"
            }
            event_type = _EVENT_TYPES[mapping.operation]
            # Vault events belong to the emitting contract; market events name the vault in an argument
            payload.setdefault("vault_address", address)
            if "market_address" in event_type.model_fields:
                payload["market_address"] = address
            return event_type(
                transaction_hash=raw["transactionHash"],
                log_index=_to_int(raw["logIndex"]),
                block_number=_to_int(raw["blockNumber"]),
                timestamp=_to_int(raw["timestamp"]),
                **payload,
            )
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning(
                "Malformed event payload",
                binding=binding.name,
                event_name=raw.get("event"),
                transaction_hash=raw.get("transactionHash"),
                error=str(e),
            )
            return None

    def raw_record(self, raw: Mapping[str, Any], routed: bool) -> Optional[RawEventRecord]:
        """Audit row for any log from a bound contract, whether or not it maps to a ledger event."""
        address = str(raw.get("address", "")).lower()
        if raw.get("event") == "block" or address not in self.bindings:
            return None
        try:
            transaction_hash = str(raw["transactionHash"]).lower()
            log_index = _to_int(raw["logIndex"])
            return RawEventRecord(
                id=f"{transaction_hash}-{log_index}",
                contract_address=address,
                event_name=str(raw.get("event") or ""),
                transaction_hash=transaction_hash,
                log_index=log_index,
                block_number=_to_int(raw["blockNumber"]),
                timestamp=_to_int(raw["timestamp"]),
                data=_plain(dict(raw.get("args") or {})),
                routed=routed,
            )
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning("Raw event missing position fields", address=address, error=str(e))
            return None


def _plain(value: Any) -> Any:
    """Decoded log arguments as storable values: bytes become hex, tuples become lists."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value
