import os
from itertools import count
from unittest.mock import AsyncMock

import pytest
from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector

# Set test environment before the package builds its global settings
os.environ["ENV"] = "test"
os.environ["LOG_LEVEL"] = "ERROR"  # Reduce noise in tests
os.environ.pop("MONGODB_URI", None)
os.environ["COINGECKO_API_KEY"] = "test_key"

from vault_risk.classifier import ExecutionClassifier
from vault_risk.config import ContractRole, Settings
from vault_risk.ledger import PositionLedger
from vault_risk.models import (
    BlockTick, DepositEvent, ManagerExecutedEvent, ShareTransferEvent, WithdrawEvent
)
from vault_risk.monitoring import MetricsCollector

VAULT = "0x1111111111111111111111111111111111111111"
STAKING = "0x2222222222222222222222222222222222222222"
LENDING = "0x3333333333333333333333333333333333333333"
ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
ASSET = "0x4444444444444444444444444444444444444444"
UNIT = 10 ** 18


def encode_call(signature: str, *args) -> str:
    """Selector plus ABI-encoded arguments, as a manager batch carries it."""
    arg_types = [t for t in signature[signature.index("(") + 1:-1].split(",") if t]
    return "0x" + (function_signature_to_4byte_selector(signature) + encode(arg_types, list(args))).hex()


class EventFactory:
    """Builds ledger events with unique (tx hash, log index) identities."""

    def __init__(self, vault_address: str = VAULT):
        self.vault_address = vault_address
        self._sequence = count(1)

    def _meta(self, block_number: int, log_index=None, tx=None):
        n = next(self._sequence)
        return dict(
            vault_address=self.vault_address,
            transaction_hash=tx or f"0x{n:064x}",
            log_index=n if log_index is None else log_index,
            block_number=block_number,
            timestamp=1_700_000_000 + block_number * 2,
        )

    def deposit(self, receiver, amount, shares, block_number=100, **meta):
        return DepositEvent(receiver=receiver, amount=amount, shares=shares, **self._meta(block_number, **meta))

    def withdraw(self, owner, amount, shares, block_number=100, **meta):
        return WithdrawEvent(owner=owner, amount=amount, shares=shares, **self._meta(block_number, **meta))

    def transfer(self, sender, receiver, value, block_number=100, **meta):
        return ShareTransferEvent(sender=sender, receiver=receiver, value=value, **self._meta(block_number, **meta))

    def executed(self, targets, call_data, successful=True, block_number=100, **meta):
        return ManagerExecutedEvent(
            targets=targets,
            call_data=call_data,
            call_values=[0] * len(targets),
            successful=successful,
            **self._meta(block_number, **meta),
        )

    def tick(self, block_number):
        return BlockTick(block_number=block_number, timestamp=1_700_000_000 + block_number * 2)


@pytest.fixture
def test_settings():
    """Settings pinned for tests, independent of the process environment"""
    return Settings(
        _env_file=None,
        VAULT_ADDRESSES=VAULT,
        STAKING_CONTRACT_ADDRESS=STAKING,
        LENDING_PROTOCOL_ADDRESS=LENDING,
        L1_READ_INTERVAL_BLOCKS=10,
        RISK_CHECK_INTERVAL_BLOCKS=10,
        EXTERNAL_CALL_TIMEOUT_SECONDS=1.0,
        EXTERNAL_CALL_MAX_ATTEMPTS=2,
        RETRY_BASE_DELAY_SECONDS=0.0,
        RETRY_MAX_DELAY_SECONDS=0.0,
        SPOT_TOKEN_IDS="0,1",
        BORROW_APR_URL=None,
        ALERT_WEBHOOK_URL=None,
    )


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def classifier():
    return ExecutionClassifier({ContractRole.STAKING: [STAKING], ContractRole.LENDING: [LENDING]})


@pytest.fixture
def ledger(classifier, metrics):
    return PositionLedger(classifier, token_decimals=18, metrics=metrics)


@pytest.fixture
def events():
    return EventFactory()


@pytest.fixture
def mock_repository():
    """Repository double recording every persisted record"""
    repository = AsyncMock()
    repository.load_audit_trail.return_value = []
    repository.load_unresolved_alerts.return_value = []
    return repository
