# /gastracker/adapters/chain_source.py
# Chain data sources: one live (JSON-RPC over web3) and one simulated variant
# behind the same async contract, so ingestion never knows which is active.
import asyncio
import random
from decimal import Decimal
from typing import Awaitable, Callable, List, NamedTuple, Optional

import aiohttp
from web3 import AsyncWeb3, Web3

from gastracker.core.chains import SimulationProfile
from gastracker.core.config import settings
from gastracker.core.decorators import retriable_network_call
from gastracker.core.logger import get_logger
from gastracker.core.models import now_ms

log = get_logger(__name__)

# Upper bound on blocks replayed after a slow poll; older gaps are skipped.
MAX_CATCHUP_BLOCKS = 8
# Consecutive failed head polls before a live connection is declared lost.
MAX_POLL_FAILURES = 3
MIN_SIMULATED_FEE_GWEI = 0.01

class ConnectivityError(ConnectionError):
    """Raised when a chain endpoint cannot be reached."""
    pass

class FeeSnapshot(NamedTuple):
    gas_price: Optional[int] = None          # wei
    max_priority_fee: Optional[int] = None   # wei

class BlockEvent(NamedTuple):
    block_number: int
    base_fee_per_gas: Optional[int]          # wei, None when the chain's base fee is not used
    fee_data_query: Callable[[], Awaitable[FeeSnapshot]]

BlockCallback = Callable[[BlockEvent], Awaitable[None]]
LostCallback = Callable[["ConnectionHandle", str], Awaitable[None]]

class ConnectionHandle:
    """Bookkeeping for one live connection to one chain."""
    def __init__(self, chain_id: str, endpoint: str, client=None):
        self.chain_id = chain_id
        self.endpoint = endpoint
        self.client = client
        self.active = True
        self.lost = False
        self.callbacks: List[BlockCallback] = []
        self.lost_callbacks: List[LostCallback] = []
        self.task: Optional[asyncio.Task] = None
        self.last_block = 0

class ChainDataSource:
    """
    The interface every chain data source implements.

    Subclasses provide the network (or synthetic) calls and a delivery loop;
    callback registration, dispatch and teardown are shared here.
    """
    def __init__(self, chain_id: str):
        self.chain_id = chain_id

    async def connect(self, endpoint: str) -> ConnectionHandle:
        raise NotImplementedError

    async def get_fee_snapshot(self, handle: ConnectionHandle) -> FeeSnapshot:
        raise NotImplementedError

    async def fetch_latest_block_number(self, handle: ConnectionHandle) -> int:
        raise NotImplementedError

    async def fetch_block(self, handle: ConnectionHandle, number: int) -> BlockEvent:
        raise NotImplementedError

    async def _deliver_loop(self, handle: ConnectionHandle):
        raise NotImplementedError

    def pushes_blocks(self) -> bool:
        return True

    def on_block(self, handle: ConnectionHandle, callback: BlockCallback):
        """Registers a handler called once per new block until disconnect."""
        if not handle.active:
            raise ConnectivityError(f"Handle for {handle.chain_id} is disconnected")
        handle.callbacks.append(callback)
        if handle.task is None and self.pushes_blocks():
            handle.task = asyncio.create_task(self._deliver_loop(handle), name=f"blocks:{handle.chain_id}")

    def on_lost(self, handle: ConnectionHandle, callback: LostCallback):
        """Registers a handler called once if the source gives up on the connection."""
        if not handle.active:
            raise ConnectivityError(f"Handle for {handle.chain_id} is disconnected")
        handle.lost_callbacks.append(callback)

    async def _mark_lost(self, handle: ConnectionHandle, reason: str):
        """Releases a connection that stopped responding and notifies its owner."""
        if not handle.active:
            return
        handle.active = False
        handle.lost = True
        handle.callbacks.clear()
        callbacks, handle.lost_callbacks = handle.lost_callbacks, []
        if handle.task is asyncio.current_task():
            handle.task = None
        await self._close(handle)
        log.warning("CHAIN_CONNECTION_LOST", chain=handle.chain_id, reason=reason)
        for callback in callbacks:
            try:
                await callback(handle, reason)
            except Exception as e:
                log.error("LOST_HANDLER_FAILED", chain=handle.chain_id, error=str(e), exc_info=True)

    async def _dispatch(self, handle: ConnectionHandle, event: BlockEvent):
        for callback in list(handle.callbacks):
            if not handle.active:
                return
            try:
                await callback(event)
            except Exception as e:
                log.error("BLOCK_HANDLER_FAILED", chain=handle.chain_id, block=event.block_number, error=str(e), exc_info=True)

    async def disconnect(self, handle: ConnectionHandle):
        """Stops delivery and releases the handle. Safe to call repeatedly."""
        if not handle.active:
            return
        handle.active = False
        handle.callbacks.clear()
        handle.lost_callbacks.clear()
        task, handle.task = handle.task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close(handle)
        log.info("CHAIN_SOURCE_DISCONNECTED", chain=handle.chain_id)

    async def _close(self, handle: ConnectionHandle):
        handle.client = None


class LiveChainDataSource(ChainDataSource):
    """
    Reads a real chain over JSON-RPC. New blocks are detected by polling the
    head, which works against any HTTP endpoint.

    When ``trust_base_fee`` is False the block's base fee is not reported and
    ingestion falls back to splitting the aggregate gas price.
    """
    def __init__(self, chain_id: str, trust_base_fee: bool = True,
                 poll_interval: float = settings.BLOCK_POLL_SECONDS,
                 timeout: float = settings.RPC_TIMEOUT_SECONDS,
                 max_poll_failures: int = MAX_POLL_FAILURES):
        super().__init__(chain_id)
        self.trust_base_fee = trust_base_fee
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.max_poll_failures = max_poll_failures

    async def connect(self, endpoint: str) -> ConnectionHandle:
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            endpoint, request_kwargs={"timeout": aiohttp.ClientTimeout(total=self.timeout)}
        ))
        handle = ConnectionHandle(self.chain_id, endpoint, client=w3)
        try:
            if not await w3.is_connected():
                raise ConnectivityError(f"{self.chain_id} endpoint is unreachable")
            handle.last_block = await w3.eth.block_number
        except ConnectivityError:
            raise
        except Exception as e:
            raise ConnectivityError(f"{self.chain_id} connection failed: {e}") from e
        log.info("LIVE_CHAIN_SOURCE_CONNECTED", chain=self.chain_id, head=handle.last_block)
        return handle

    @retriable_network_call
    async def get_fee_snapshot(self, handle: ConnectionHandle) -> FeeSnapshot:
        w3 = handle.client
        gas_price = await w3.eth.gas_price
        try:
            priority = await w3.eth.max_priority_fee
        except Exception:
            # Not every node implements eth_maxPriorityFeePerGas
            log.debug("MAX_PRIORITY_FEE_RPC_UNSUPPORTED", chain=handle.chain_id)
            priority = None
        return FeeSnapshot(gas_price=gas_price, max_priority_fee=priority)

    @retriable_network_call
    async def fetch_latest_block_number(self, handle: ConnectionHandle) -> int:
        return await handle.client.eth.block_number

    @retriable_network_call
    async def fetch_block(self, handle: ConnectionHandle, number: int) -> BlockEvent:
        block = await handle.client.eth.get_block(number)
        base_fee = block.get("baseFeePerGas") if self.trust_base_fee else None
        return BlockEvent(number, base_fee, lambda: self.get_fee_snapshot(handle))

    async def _deliver_loop(self, handle: ConnectionHandle):
        failures = 0
        while handle.active:
            await asyncio.sleep(self.poll_interval)
            try:
                head = await self.fetch_latest_block_number(handle)
            except Exception as e:
                failures += 1
                log.warning("BLOCK_POLL_FAILED", chain=handle.chain_id, error=str(e), failures=failures)
                if failures >= self.max_poll_failures:
                    await self._mark_lost(handle, f"{failures} consecutive head polls failed: {e}")
                    return
                continue
            failures = 0
            first = max(handle.last_block + 1, head - MAX_CATCHUP_BLOCKS + 1)
            for number in range(first, head + 1):
                if not handle.active:
                    return
                try:
                    event = await self.fetch_block(handle, number)
                except Exception as e:
                    log.warning("BLOCK_FETCH_FAILED", chain=handle.chain_id, block=number, error=str(e))
                    break
                await self._dispatch(handle, event)
                handle.last_block = number


def _to_wei(gwei: float) -> int:
    return Web3.to_wei(Decimal(str(gwei)), "gwei")

class SimulatedChainDataSource(ChainDataSource):
    """
    Synthesizes blocks from a per-chain profile: each fee component is the
    profile mean plus uniform jitter, floored at 0.01 gwei.

    With ``block_interval`` set, blocks are pushed to handlers on that cadence;
    otherwise blocks exist only when pulled through ``fetch_block``.
    """
    def __init__(self, chain_id: str, profile: SimulationProfile,
                 block_interval: Optional[float] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], int] = now_ms):
        super().__init__(chain_id)
        self.profile = profile
        self.block_interval = block_interval
        self.rng = rng or random.Random()
        self.clock = clock

    def pushes_blocks(self) -> bool:
        return self.block_interval is not None

    def sample_fees(self) -> tuple:
        """Returns (base_fee, priority_fee) in gwei."""
        p = self.profile
        base = p.base + (self.rng.random() - 0.5) * p.variance
        priority = p.priority + (self.rng.random() - 0.5) * (p.variance * 0.3)
        return max(MIN_SIMULATED_FEE_GWEI, base), max(MIN_SIMULATED_FEE_GWEI, priority)

    async def connect(self, endpoint: str) -> ConnectionHandle:
        handle = ConnectionHandle(self.chain_id, endpoint)
        handle.last_block = await self.fetch_latest_block_number(handle)
        log.info("SIMULATED_CHAIN_SOURCE_CONNECTED", chain=self.chain_id, head=handle.last_block)
        return handle

    async def get_fee_snapshot(self, handle: ConnectionHandle) -> FeeSnapshot:
        base, priority = self.sample_fees()
        return FeeSnapshot(gas_price=_to_wei(base + priority), max_priority_fee=_to_wei(priority))

    async def fetch_latest_block_number(self, handle: ConnectionHandle) -> int:
        return self.clock() // int(self.profile.block_time * 1000)

    async def fetch_block(self, handle: ConnectionHandle, number: int) -> BlockEvent:
        base, priority = self.sample_fees()
        fees = FeeSnapshot(gas_price=_to_wei(base + priority), max_priority_fee=_to_wei(priority))

        async def fee_data_query() -> FeeSnapshot:
            return fees

        return BlockEvent(number, _to_wei(base), fee_data_query)

    async def _deliver_loop(self, handle: ConnectionHandle):
        while handle.active:
            await asyncio.sleep(self.block_interval)
            number = max(handle.last_block + 1, await self.fetch_latest_block_number(handle))
            await self._dispatch(handle, await self.fetch_block(handle, number))
            handle.last_block = number


def build_chain_source(mode: str, config) -> ChainDataSource:
    """Returns the source variant for ``mode`` configured for one chain."""
    if mode == "simulation":
        return SimulatedChainDataSource(config.chain_id, config.profile, block_interval=settings.SIMULATED_BLOCK_INTERVAL)
    return LiveChainDataSource(config.chain_id, trust_base_fee=not config.splits_gas_price)
