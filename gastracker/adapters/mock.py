# /gastracker/adapters/mock.py
# Test doubles for the chain source and price oracle contracts.
# They perform no I/O; tests drive them explicitly.

import asyncio
from typing import Dict, List, Optional

from gastracker.adapters.chain_source import (
    BlockEvent, ChainDataSource, ConnectionHandle, ConnectivityError, FeeSnapshot,
)
from gastracker.adapters.oracle import OracleError, PriceOracle
from gastracker.core.logger import get_logger

log = get_logger(__name__)

GWEI = 10 ** 9

class MockChainDataSource(ChainDataSource):
    """
    A chain source whose blocks are injected by the test.

    Fees are given in gwei and reported in wei like a real node. Set
    ``gate`` to an unset asyncio.Event to hold fetch_block until released.
    """
    def __init__(self, chain_id: str, base_fee: Optional[float] = 10.0,
                 gas_price: Optional[float] = None, max_priority_fee: Optional[float] = None,
                 fail_connect: bool = False):
        super().__init__(chain_id)
        self.base_fee = base_fee
        self.gas_price = gas_price
        self.max_priority_fee = max_priority_fee
        self.fail_connect = fail_connect
        self.head = 100
        self.gate: Optional[asyncio.Event] = None
        self.handles: List[ConnectionHandle] = []
        self.connect_attempts = 0
        self.disconnect_calls = 0

    def pushes_blocks(self) -> bool:
        # Blocks arrive only through emit()
        return False

    async def connect(self, endpoint: str) -> ConnectionHandle:
        self.connect_attempts += 1
        if self.fail_connect:
            log.warning("MOCK_CHAIN_CONNECT_FORCED_FAILURE", chain=self.chain_id)
            raise ConnectivityError(f"{self.chain_id} unreachable (mock)")
        handle = ConnectionHandle(self.chain_id, endpoint)
        handle.last_block = self.head
        self.handles.append(handle)
        return handle

    def _fees(self) -> FeeSnapshot:
        return FeeSnapshot(
            gas_price=int(self.gas_price * GWEI) if self.gas_price is not None else None,
            max_priority_fee=int(self.max_priority_fee * GWEI) if self.max_priority_fee is not None else None,
        )

    async def get_fee_snapshot(self, handle: ConnectionHandle) -> FeeSnapshot:
        return self._fees()

    async def fetch_latest_block_number(self, handle: ConnectionHandle) -> int:
        return self.head

    async def fetch_block(self, handle: ConnectionHandle, number: int) -> BlockEvent:
        if self.gate is not None:
            await self.gate.wait()
        return self.make_event(number)

    def make_event(self, number: int) -> BlockEvent:
        base = int(self.base_fee * GWEI) if self.base_fee is not None else None
        fees = self._fees()

        async def fee_data_query() -> FeeSnapshot:
            return fees

        return BlockEvent(number, base, fee_data_query)

    async def emit(self, number: Optional[int] = None):
        """Delivers one block to every active handle's handlers."""
        self.head = number if number is not None else self.head + 1
        for handle in list(self.handles):
            if handle.active:
                await self._dispatch(handle, self.make_event(self.head))
                handle.last_block = self.head

    async def disconnect(self, handle: ConnectionHandle):
        self.disconnect_calls += 1
        await super().disconnect(handle)


class MockPriceOracle(PriceOracle):
    """Returns queued prices in order, repeating the last; raises OracleError when failing."""
    def __init__(self, prices: Optional[List[float]] = None, fail: bool = False):
        self.prices = list(prices or [2000.0])
        self.fail = fail
        self.calls = 0

    async def get_spot_price(self) -> float:
        self.calls += 1
        if self.fail:
            raise OracleError("Forced oracle failure (mock)")
        if len(self.prices) > 1:
            return self.prices.pop(0)
        return self.prices[0]


def mock_sources(chain_ids, **overrides) -> Dict[str, MockChainDataSource]:
    """One MockChainDataSource per chain; ``overrides`` maps chain id to kwargs."""
    return {chain_id: MockChainDataSource(chain_id, **overrides.get(chain_id, {})) for chain_id in chain_ids}
