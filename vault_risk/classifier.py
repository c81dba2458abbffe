"""
Infers the strategy intent of a manager batch from its (target, call data) pairs.

Known calls live in ``SELECTOR_TABLE``; selectors are derived from canonical
signatures rather than hard-coded bytes. The classifier is total: malformed
call data, mismatched list lengths and empty batches all resolve to a defined
``ExecutionType``.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector

from .config import ContractRole, ExecutionType, StrategyAction

logger = structlog.get_logger()


@dataclass(frozen=True)
class SelectorRule:
    role: str
    signature: str
    execution_type: str
    action: str
    amount_arg: int

    @property
    def selector(self) -> str:
        return "0x" + function_signature_to_4byte_selector(self.signature).hex()

    @property
    def arg_types(self) -> List[str]:
        inner = self.signature[self.signature.index("(") + 1:-1]
        return [arg for arg in inner.split(",") if arg]


SELECTOR_TABLE: Tuple[SelectorRule, ...] = (
    # Liquid staking contract
    SelectorRule(ContractRole.STAKING, "stake(uint256)",
                 ExecutionType.INCREASE_LEVERAGE, StrategyAction.STAKE, 0),
    SelectorRule(ContractRole.STAKING, "unstake(uint256)",
                 ExecutionType.DECREASE_LEVERAGE, StrategyAction.UNSTAKE, 0),
    SelectorRule(ContractRole.STAKING, "withdraw(uint256)",
                 ExecutionType.DECREASE_LEVERAGE, StrategyAction.UNSTAKE, 0),
    # Lending pool
    SelectorRule(ContractRole.LENDING, "supply(address,uint256,address,uint16)",
                 ExecutionType.INCREASE_LEVERAGE, StrategyAction.SUPPLY, 1),
    SelectorRule(ContractRole.LENDING, "deposit(address,uint256,address,uint16)",
                 ExecutionType.INCREASE_LEVERAGE, StrategyAction.SUPPLY, 1),
    SelectorRule(ContractRole.LENDING, "borrow(address,uint256,uint256,uint16,address)",
                 ExecutionType.INCREASE_LEVERAGE, StrategyAction.BORROW, 1),
    SelectorRule(ContractRole.LENDING, "repay(address,uint256,uint256,address)",
                 ExecutionType.DECREASE_LEVERAGE, StrategyAction.REPAY, 1),
    SelectorRule(ContractRole.LENDING, "withdraw(address,uint256,address)",
                 ExecutionType.DECREASE_LEVERAGE, StrategyAction.WITHDRAW_COLLATERAL, 1),
)


@dataclass
class DecodedCall:
    index: int
    target: str
    rule: SelectorRule
    amount: int


@dataclass
class Classification:
    execution_type: str
    calls: List[DecodedCall] = field(default_factory=list)
    undecodable: int = 0

    def total(self, action: str) -> int:
        return sum(call.amount for call in self.calls if call.rule.action == action)


def _normalize_hex(data: Any) -> Optional[str]:
    if isinstance(data, (bytes, bytearray)):
        return "0x" + bytes(data).hex()
    if isinstance(data, str):
        text = data.lower()
        return text if text.startswith("0x") else "0x" + text
    return None


class ExecutionClassifier:
    """Matches batch sub-calls against the selector table by contract role."""

    def __init__(
        self,
        role_addresses: Dict[str, Iterable[str]],
        table: Sequence[SelectorRule] = SELECTOR_TABLE,
    ):
        self.table = tuple(table)
        self._roles_by_address: Dict[str, List[str]] = {}
        for role, addresses in role_addresses.items():
            for address in addresses:
                if address:
                    self._roles_by_address.setdefault(address.lower(), []).append(role)
        self._rules_by_selector: Dict[str, List[SelectorRule]] = {}
        for rule in self.table:
            self._rules_by_selector.setdefault(rule.selector, []).append(rule)

    @classmethod
    def from_settings(cls, settings) -> "ExecutionClassifier":
        return cls({
            ContractRole.STAKING: [settings.STAKING_CONTRACT_ADDRESS],
            ContractRole.LENDING: [settings.LENDING_PROTOCOL_ADDRESS],
        })

    def match(self, target: Any, data: Any) -> Optional[SelectorRule]:
        """Rule for a single sub-call, or None when the pair is unknown."""
        if not isinstance(target, str):
            return None
        roles = self._roles_by_address.get(target.lower())
        call_data = _normalize_hex(data)
        if not roles or call_data is None or len(call_data) < 10:
            return None
        for rule in self._rules_by_selector.get(call_data[:10], ()):
            if rule.role in roles:
                return rule
        return None

    def classify(self, targets: Sequence[Any], call_data: Sequence[Any]) -> str:
        """First known (target, selector) pair decides; otherwise ``rebalance``."""
        for target, data in zip(targets or (), call_data or ()):
            rule = self.match(target, data)
            if rule is not None:
                return rule.execution_type
        return ExecutionType.REBALANCE

    def analyze(self, targets: Sequence[Any], call_data: Sequence[Any]) -> Classification:
        """Classify the batch and decode the amount of every recognised call."""
        result = Classification(execution_type=self.classify(targets, call_data))

        for index, (target, data) in enumerate(zip(targets or (), call_data or ())):
            rule = self.match(target, data)
            if rule is None:
                continue
            amount = self._decode_amount(rule, _normalize_hex(data))
            if amount is None:
                result.undecodable += 1
                logger.warning(
                    "Undecodable strategy call", index=index, target=target, signature=rule.signature
                )
                continue
            result.calls.append(DecodedCall(index=index, target=target.lower(), rule=rule, amount=amount))

        return result

    def decode_amounts(self, targets: Sequence[Any], call_data: Sequence[Any]) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for call in self.analyze(targets, call_data).calls:
            totals[call.rule.action] = totals.get(call.rule.action, 0) + call.amount
        return totals

    @staticmethod
    def _decode_amount(rule: SelectorRule, call_data: str) -> Optional[int]:
        try:
            arguments = decode(rule.arg_types, bytes.fromhex(call_data[10:]))
        except (DecodingError, ValueError, OverflowError):
            return None
        amount = arguments[rule.amount_arg]
        return amount if isinstance(amount, int) else None
