# /gastracker/core/orchestrator.py
# Bridges chain sources and the price oracle to the store, and owns the
# ingestion lifecycle: connect, react to blocks, tick, switch mode, stop.

import asyncio
from typing import Callable, Dict, Mapping, Optional, Tuple

from web3 import Web3

from gastracker.adapters.chain_source import (
    BlockEvent, ChainDataSource, ConnectionHandle, FeeSnapshot, build_chain_source,
)
from gastracker.adapters.oracle import OracleError, PriceOracle, build_price_oracle
from gastracker.core.chains import ChainConfig, chain_configs
from gastracker.core.config import settings
from gastracker.core.logger import get_logger, bind_chain, CHAIN_CONNECT_FAILURES, ORACLE_FAILURES, TICKS_COMPLETED
from gastracker.core.models import GasPoint, Mode
from gastracker.core.state import GasMarketStore

log = get_logger(__name__)

SourceFactory = Callable[[str, ChainConfig], ChainDataSource]
OracleFactory = Callable[[str], PriceOracle]

UNREACHABLE_MESSAGE = "No chain is reachable; retrying on the next tick"

class InitializationError(Exception):
    """Raised when ingestion could not set up a single chain."""
    pass

def _gwei(wei: int) -> float:
    return float(Web3.from_wei(wei, "gwei"))

class IngestionOrchestrator:
    """
    The single writer of a GasMarketStore.

    Every store mutation happens on the event loop from a block handler, a
    tick or an explicit fetch. Each connect/disconnect cycle gets a new
    generation number; work started under an older generation is dropped
    before it can touch the store.
    """
    def __init__(self, store: GasMarketStore,
                 chains: Optional[Mapping[str, ChainConfig]] = None,
                 source_factory: SourceFactory = build_chain_source,
                 oracle_factory: OracleFactory = build_price_oracle,
                 tick_seconds: Optional[float] = None):
        configs = chains if chains is not None else chain_configs()
        self.store = store
        self.chains: Dict[str, ChainConfig] = {cid: cfg for cid, cfg in configs.items() if cid in store.chain_ids}
        self.source_factory = source_factory
        self.oracle_factory = oracle_factory
        self._tick_override = tick_seconds

        self.default_priority_fee = settings.DEFAULT_PRIORITY_FEE_GWEI
        self.split_ratio = settings.BASE_FEE_SPLIT_RATIO
        self.fallback_price = settings.FALLBACK_ETH_USD_PRICE

        self.sources: Dict[str, ChainDataSource] = {}
        self.handles: Dict[str, ConnectionHandle] = {}
        self.oracle: Optional[PriceOracle] = None
        self.is_initialized = False
        self.active_mode: Optional[Mode] = None
        self._generation = 0
        self._tick_task: Optional[asyncio.Task] = None

    @property
    def tick_seconds(self) -> float:
        if self._tick_override is not None:
            return self._tick_override
        if self.active_mode == "simulation":
            return settings.SIMULATION_TICK_SECONDS
        return settings.LIVE_TICK_SECONDS

    def _is_current(self, generation: int) -> bool:
        return self.is_initialized and generation == self._generation

    # --- Lifecycle ---

    async def initialize(self):
        """Connects every chain and starts the tick. A no-op when already running."""
        if self.is_initialized:
            return
        mode = self.store.state.mode
        self.store.set_loading(True)
        self._generation += 1
        generation = self._generation

        self.sources = {}
        for chain_id, config in self.chains.items():
            try:
                self.sources[chain_id] = self.source_factory(mode, config)
            except Exception as e:
                log.error("CHAIN_SOURCE_BUILD_FAILED", chain=chain_id, mode=mode, error=str(e))
        if not self.sources:
            message = "No chain data sources could be configured"
            self.store.set_error(message)
            self.store.set_loading(False)
            log.critical("INGESTION_INITIALIZATION_FAILED", mode=mode, chains=list(self.chains))
            raise InitializationError(message)

        try:
            self.oracle = self.oracle_factory(mode)
        except Exception as e:
            log.error("PRICE_ORACLE_BUILD_FAILED", mode=mode, error=str(e))
            self.oracle = None

        self.active_mode = mode
        self.is_initialized = True
        await self.refresh_spot_price()
        await asyncio.gather(*(self._connect_chain(chain_id, generation) for chain_id in self.sources))
        if not self._is_current(generation):
            return

        if mode == "simulation" and not self._sources_push_blocks():
            await self.fetch_once()
        self._tick_task = asyncio.create_task(self._tick_loop(generation), name="ingestion-tick")
        self.store.set_error(None if self.handles else UNREACHABLE_MESSAGE)
        self.store.set_loading(False)
        log.info("INGESTION_INITIALIZED", mode=mode, connected=sorted(self.handles), tick_seconds=self.tick_seconds)

    async def disconnect(self):
        """Stops all ingestion. Safe to call at any time, any number of times."""
        self._generation += 1
        self.is_initialized = False
        task, self._tick_task = self._tick_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        handles, self.handles = self.handles, {}
        for chain_id, handle in handles.items():
            try:
                await self.sources[chain_id].disconnect(handle)
            except Exception as e:
                log.warning("CHAIN_DISCONNECT_FAILED", chain=chain_id, error=str(e))
        for chain_id in self.store.chain_ids:
            self.store.update_chain_snapshot(chain_id, is_connected=False)
        self.store.set_loading(False)
        if handles or task is not None:
            log.info("INGESTION_DISCONNECTED", chains=sorted(handles))

    async def switch_mode(self, mode: Mode):
        """Sets the mode and, when running, reconnects with that mode's sources. History is kept."""
        self.store.set_mode(mode)
        if self.is_initialized and mode != self.active_mode:
            log.info("INGESTION_SWITCHING_MODE", previous=self.active_mode, mode=mode)
            await self.disconnect()
            await self.initialize()

    # --- Connections ---

    async def _connect_chain(self, chain_id: str, generation: int):
        source = self.sources[chain_id]
        config = self.chains[chain_id]
        bind_chain(chain_id)
        try:
            handle = await source.connect(config.rpc_url)
        except Exception as e:
            CHAIN_CONNECT_FAILURES.labels(chain_id).inc()
            log.warning("CHAIN_CONNECT_FAILED", chain=chain_id, error=str(e))
            if generation == self._generation:
                self.store.update_chain_snapshot(chain_id, is_connected=False)
            return

        if not self._is_current(generation):
            await source.disconnect(handle)
            return
        self.handles[chain_id] = handle
        source.on_block(handle, self._make_block_handler(chain_id, generation))
        source.on_lost(handle, self._make_lost_handler(chain_id, generation))
        self.store.update_chain_snapshot(chain_id, is_connected=True)

    def _make_lost_handler(self, chain_id: str, generation: int):
        async def handle_lost(handle: ConnectionHandle, reason: str):
            if not self._is_current(generation) or self.handles.get(chain_id) is not handle:
                return
            del self.handles[chain_id]
            CHAIN_CONNECT_FAILURES.labels(chain_id).inc()
            self.store.update_chain_snapshot(chain_id, is_connected=False)
            log.warning("CHAIN_MARKED_DISCONNECTED", chain=chain_id, reason=reason)
            if not self.handles:
                self.store.set_error(UNREACHABLE_MESSAGE)
        return handle_lost

    async def _reconnect_missing(self, generation: int):
        missing = [chain_id for chain_id in self.sources if chain_id not in self.handles]
        if missing:
            log.info("CHAIN_RECONNECT_ATTEMPT", chains=missing)
            await asyncio.gather(*(self._connect_chain(chain_id, generation) for chain_id in missing))
            if self.handles and self._is_current(generation):
                self.store.set_error(None)

    def _sources_push_blocks(self) -> bool:
        return all(source.pushes_blocks() for source in self.sources.values())

    # --- Block ingestion ---

    def _make_block_handler(self, chain_id: str, generation: int):
        async def handle_block(event: BlockEvent):
            await self._ingest_block(chain_id, event, generation)
        return handle_block

    async def _extract_fees(self, chain_id: str, event: BlockEvent) -> Tuple[float, float]:
        """Returns (base_fee, priority_fee) in gwei for one block."""
        if event.base_fee_per_gas is not None:
            base_fee = _gwei(event.base_fee_per_gas)
            priority_fee = self.default_priority_fee
            try:
                fees = await event.fee_data_query()
                if fees.max_priority_fee is not None:
                    priority_fee = _gwei(fees.max_priority_fee)
            except Exception as e:
                log.debug("PRIORITY_FEE_QUERY_FAILED", chain=chain_id, error=str(e))
            return base_fee, priority_fee

        # No base fee: approximate by splitting the aggregate gas price.
        try:
            fees = await event.fee_data_query()
        except Exception as e:
            log.warning("GAS_PRICE_QUERY_FAILED", chain=chain_id, block=event.block_number, error=str(e))
            fees = FeeSnapshot()
        if fees.gas_price is None:
            return 0.0, self.default_priority_fee
        gas_price = _gwei(fees.gas_price)
        return gas_price * self.split_ratio, gas_price * (1 - self.split_ratio)

    async def _ingest_block(self, chain_id: str, event: BlockEvent, generation: int):
        base_fee, priority_fee = await self._extract_fees(chain_id, event)
        if not self._is_current(generation):
            log.debug("STALE_BLOCK_DROPPED", chain=chain_id, block=event.block_number)
            return
        point = GasPoint.create(
            timestamp=self.store.now(),
            base_fee=base_fee,
            priority_fee=priority_fee,
            usd_price=self.store.state.eth_usd_price,
            source=self.active_mode,
        )
        self.store.update_chain_snapshot(chain_id, base_fee=base_fee, priority_fee=priority_fee, block_number=event.block_number)
        self.store.append_gas_point(chain_id, point)

    async def fetch_once(self):
        """Pulls one fresh observation per connected chain without waiting for a tick."""
        generation = self._generation
        await asyncio.gather(*(
            self._fetch_chain(chain_id, handle, generation) for chain_id, handle in list(self.handles.items())
        ))

    async def _fetch_chain(self, chain_id: str, handle: ConnectionHandle, generation: int):
        source = self.sources[chain_id]
        try:
            number = await source.fetch_latest_block_number(handle)
            event = await source.fetch_block(handle, number)
        except Exception as e:
            log.warning("MANUAL_FETCH_FAILED", chain=chain_id, error=str(e))
            return
        await self._ingest_block(chain_id, event, generation)

    # --- Price and periodic work ---

    async def refresh_spot_price(self):
        generation = self._generation
        try:
            if self.oracle is None:
                raise OracleError("No price oracle configured")
            price = await self.oracle.get_spot_price()
        except OracleError as e:
            ORACLE_FAILURES.inc()
            log.warning("SPOT_PRICE_REFRESH_FAILED", error=str(e))
            if generation == self._generation and self.store.state.eth_usd_price == 0:
                self.store.set_spot_price(self.fallback_price)
                log.info("SPOT_PRICE_FALLBACK_APPLIED", price=self.fallback_price)
            return
        if generation == self._generation:
            self.store.set_spot_price(price)

    async def tick(self):
        """One periodic pass: price refresh, then synthesis (simulation) or reconnects (live)."""
        generation = self._generation
        await self.refresh_spot_price()
        if self.active_mode == "simulation":
            if not self._sources_push_blocks():
                await self.fetch_once()
        else:
            await self._reconnect_missing(generation)
        TICKS_COMPLETED.labels(self.active_mode or "idle").inc()

    async def _tick_loop(self, generation: int):
        while self._is_current(generation):
            await asyncio.sleep(self.tick_seconds)
            if not self._is_current(generation):
                return
            try:
                await self.tick()
            except Exception as e:
                log.error("INGESTION_TICK_FAILED", error=str(e), exc_info=True)
