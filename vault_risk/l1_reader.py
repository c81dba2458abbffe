"""
Periodic reads of L1 vault equity, withdrawable balance and spot balances.

The precompiles are addressed by contract alone, so call data is the bare
ABI-encoded argument tuple with no function selector in front.
"""
import asyncio
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

import structlog
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from .error_handling import DecodeError, ResilientCaller
from .models import L1EquitySnapshot, L1SpotBalanceSnapshot, L1State, StoredRecord

logger = structlog.get_logger()

EQUITY_READ = "vault_equity"
WITHDRAWABLE_READ = "withdrawable"
SPOT_READ = "spot_balance"


def encode_vault_equity_call(user: str, vault: str) -> str:
    return "0x" + encode(["address", "address"], [to_checksum_address(user), to_checksum_address(vault)]).hex()


def encode_withdrawable_call(user: str) -> str:
    return "0x" + encode(["address"], [to_checksum_address(user)]).hex()


def encode_spot_balance_call(user: str, token_id: int) -> str:
    return "0x" + encode(["address", "uint64"], [to_checksum_address(user), token_id]).hex()


def _decode(types: List[str], data: bytes, what: str) -> Tuple:
    if len(data) < 32 * len(types):
        raise DecodeError(f"{what}: expected {32 * len(types)} bytes, got {len(data)}")
    try:
        return decode(types, data)
    except DecodingError as e:
        raise DecodeError(f"{what}: {e}") from e


def decode_vault_equity(data: bytes) -> int:
    return _decode(["uint64"], data, EQUITY_READ)[0]


def decode_withdrawable(data: bytes) -> int:
    return _decode(["uint64"], data, WITHDRAWABLE_READ)[0]


def decode_spot_balance(data: bytes) -> Tuple[int, int, int]:
    total, hold, entry_ntl = _decode(["uint64", "uint64", "uint64"], data, SPOT_READ)
    return total, hold, entry_ntl


class L1StateReader:
    def __init__(self, rpc, caller: ResilientCaller, settings, metrics=None, cache_size: int = 64):
        self.rpc = rpc
        self.caller = caller
        self.settings = settings
        self.metrics = metrics
        self.spot_token_ids = settings.spot_token_ids
        self._cache: "OrderedDict[Tuple[str, int], L1State]" = OrderedDict()
        self._inflight: Dict[Tuple[str, int], asyncio.Task] = {}
        self._cache_size = cache_size

    def _user_for(self, vault_address: str) -> str:
        return (self.settings.L1_USER_ADDRESS or vault_address).lower()

    async def read_l1_state(self, vault_address: str, block_number: int, timestamp: int) -> L1State:
        """Read once per (vault, block); concurrent callers share the same read."""
        key = (vault_address.lower(), block_number)
        if key in self._cache:
            return self._cache[key]
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._read(key[0], block_number, timestamp))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    async def latest(self, vault_address: str) -> Optional[L1State]:
        """Most recent read for the vault, waiting on one still in flight."""
        vault_address = vault_address.lower()
        pending = [(block, task) for (vault, block), task in self._inflight.items() if vault == vault_address]
        if pending:
            _, task = max(pending, key=lambda item: item[0])
            return await asyncio.shield(task)
        states = [state for (vault, _), state in self._cache.items() if vault == vault_address]
        return max(states, key=lambda s: s.block_number) if states else None

    async def _read(self, vault_address: str, block_number: int, timestamp: int) -> L1State:
        user = self._user_for(vault_address)

        async def read_equity():
            payload = encode_vault_equity_call(user, self.settings.HLP_VAULT_ADDRESS)
            return decode_vault_equity(await self.rpc.eth_call(self.settings.VAULT_EQUITY_PRECOMPILE_ADDRESS, payload))

        async def read_withdrawable():
            payload = encode_withdrawable_call(user)
            return decode_withdrawable(await self.rpc.eth_call(self.settings.WITHDRAWABLE_PRECOMPILE_ADDRESS, payload))

        def read_spot(token_id: int):
            async def _read_spot():
                payload = encode_spot_balance_call(user, token_id)
                return decode_spot_balance(
                    await self.rpc.eth_call(self.settings.SPOT_BALANCE_PRECOMPILE_ADDRESS, payload)
                )
            return _read_spot

        equity, withdrawable, *spots = await asyncio.gather(
            self.caller.call(f"l1:{EQUITY_READ}", read_equity),
            self.caller.call(f"l1:{WITHDRAWABLE_READ}", read_withdrawable),
            *[self.caller.call(f"l1:{SPOT_READ}:{token_id}", read_spot(token_id)) for token_id in self.spot_token_ids],
        )

        state = L1State(vault_address=vault_address, block_number=block_number, timestamp=timestamp)
        if equity.ok:
            state.equity = equity.value
        else:
            state.failed_reads.append(EQUITY_READ)
        if withdrawable.ok:
            state.withdrawable = withdrawable.value
        else:
            state.failed_reads.append(WITHDRAWABLE_READ)

        for token_id, outcome in zip(self.spot_token_ids, spots):
            if not outcome.ok:
                state.failed_reads.append(f"{SPOT_READ}:{token_id}")
                continue
            total, hold, entry_ntl = outcome.value
            state.spot_balances.append(L1SpotBalanceSnapshot(
                id=f"{vault_address}-{token_id}-{block_number}",
                vault_address=vault_address,
                user_address=user,
                token_id=token_id,
                total=total,
                hold=hold,
                entry_ntl=entry_ntl,
                block_number=block_number,
                timestamp=timestamp,
            ))

        if state.failed_reads:
            logger.warning("L1 read degraded", vault=vault_address, block=block_number, failed=state.failed_reads)
        else:
            logger.info("L1 state read", vault=vault_address, block=block_number, equity=state.equity)
        if self.metrics:
            self.metrics.increment("l1.reads", tags={"complete": str(state.complete).lower()})
            if state.equity is not None:
                self.metrics.set_gauge("l1.equity", float(state.equity), tags={"vault": vault_address})

        self._cache[(vault_address, block_number)] = state
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return state

    def snapshot_rows(self, state: L1State) -> List[StoredRecord]:
        """Append-only rows for one read; nothing for reads that all failed."""
        rows: List[StoredRecord] = []
        if state.equity is not None or state.withdrawable is not None:
            rows.append(L1EquitySnapshot(
                id=f"{state.vault_address}-{state.block_number}",
                vault_address=state.vault_address,
                user_address=self._user_for(state.vault_address),
                hlp_vault_address=self.settings.HLP_VAULT_ADDRESS.lower(),
                equity=state.equity,
                withdrawable=state.withdrawable,
                block_number=state.block_number,
                timestamp=state.timestamp,
                failed_reads=list(state.failed_reads),
            ))
        rows.extend(state.spot_balances)
        return rows
