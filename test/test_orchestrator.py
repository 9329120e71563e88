# /test/test_orchestrator.py
# Ingestion lifecycle against mock sources and oracles.

import asyncio

import pytest

from gastracker.adapters.chain_source import ConnectionHandle, ConnectivityError, LiveChainDataSource
from gastracker.adapters.mock import MockPriceOracle, mock_sources
from gastracker.core.orchestrator import UNREACHABLE_MESSAGE, IngestionOrchestrator, InitializationError
from gastracker.core.state import GasMarketStore

CHAINS = ("ethereum", "polygon", "arbitrum")
SPLIT_CHAINS = {
    "polygon": {"base_fee": None, "gas_price": 50.0},
    "arbitrum": {"base_fee": None, "gas_price": 0.2},
}

def make_orchestrator(store, live=None, simulation=None, oracle=None):
    live = live if live is not None else mock_sources(CHAINS, **SPLIT_CHAINS)
    simulation = simulation if simulation is not None else live
    by_mode = {"live": live, "simulation": simulation}
    oracle = oracle or MockPriceOracle([2000.0])
    return IngestionOrchestrator(
        store,
        source_factory=lambda mode, config: by_mode[mode][config.chain_id],
        oracle_factory=lambda mode: oracle,
        tick_seconds=3600,
    )

@pytest.fixture
def store():
    return GasMarketStore(mode="live")

async def settle():
    for _ in range(10):
        await asyncio.sleep(0)

@pytest.mark.asyncio
async def test_initialize_connects_all_chains_and_sets_price(store):
    orchestrator = make_orchestrator(store)
    await orchestrator.initialize()
    try:
        assert all(store.chain(c).is_connected for c in CHAINS)
        assert store.state.eth_usd_price == 2000.0
        assert store.state.is_loading is False
        assert store.state.error is None
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_initialize_is_idempotent(store):
    sources = mock_sources(CHAINS)
    orchestrator = make_orchestrator(store, live=sources)
    await orchestrator.initialize()
    await orchestrator.initialize()
    try:
        assert all(s.connect_attempts == 1 for s in sources.values())
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_one_failing_chain_does_not_block_others(store):
    sources = mock_sources(CHAINS, polygon={"fail_connect": True})
    orchestrator = make_orchestrator(store, live=sources)
    await orchestrator.initialize()
    try:
        assert store.chain("ethereum").is_connected
        assert store.chain("arbitrum").is_connected
        assert not store.chain("polygon").is_connected

        await sources["ethereum"].emit()
        assert len(store.chain("ethereum").history) == 1
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_live_tick_retries_failed_connections(store):
    sources = mock_sources(CHAINS, polygon={"fail_connect": True})
    orchestrator = make_orchestrator(store, live=sources)
    await orchestrator.initialize()
    try:
        sources["polygon"].fail_connect = False
        await orchestrator.tick()
        assert store.chain("polygon").is_connected
        assert sources["polygon"].connect_attempts == 2
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_all_chains_unreachable_is_reported_not_raised(store):
    sources = mock_sources(CHAINS, **{c: {"fail_connect": True} for c in CHAINS})
    orchestrator = make_orchestrator(store, live=sources)
    await orchestrator.initialize()
    try:
        assert store.state.error
        assert not any(store.chain(c).is_connected for c in CHAINS)
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_no_buildable_source_raises_initialization_error(store):
    def broken_factory(mode, config):
        raise RuntimeError("no transport")

    orchestrator = IngestionOrchestrator(store, source_factory=broken_factory, oracle_factory=lambda mode: MockPriceOracle())
    with pytest.raises(InitializationError):
        await orchestrator.initialize()
    assert store.state.error == "No chain data sources could be configured"
    assert store.state.is_loading is False
    assert not orchestrator.is_initialized

# --- Fee extraction ---

@pytest.mark.asyncio
async def test_base_fee_chain_uses_default_priority(store):
    sources = mock_sources(CHAINS)
    orchestrator = make_orchestrator(store, live=sources)
    await orchestrator.initialize()
    try:
        await sources["ethereum"].emit(101)
        record = store.chain("ethereum")
        assert record.base_fee == pytest.approx(10.0)
        assert record.priority_fee == pytest.approx(2.0)
        assert record.gas_price == pytest.approx(12.0)
        assert record.block_number == 101
        point = record.history[-1]
        assert point.total_fee == pytest.approx(12.0)
        assert point.usd_price == 2000.0
        assert point.source == "live"
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_base_fee_chain_prefers_node_priority_fee(store):
    sources = mock_sources(CHAINS, ethereum={"base_fee": 20.0, "max_priority_fee": 1.5})
    orchestrator = make_orchestrator(store, live=sources)
    await orchestrator.initialize()
    try:
        await sources["ethereum"].emit()
        assert store.chain("ethereum").priority_fee == pytest.approx(1.5)
        assert store.chain("ethereum").gas_price == pytest.approx(21.5)
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_chains_without_base_fee_split_gas_price(store):
    sources = mock_sources(CHAINS, **SPLIT_CHAINS)
    orchestrator = make_orchestrator(store, live=sources)
    await orchestrator.initialize()
    try:
        await sources["polygon"].emit()
        record = store.chain("polygon")
        assert record.base_fee == pytest.approx(40.0)
        assert record.priority_fee == pytest.approx(10.0)
        assert record.gas_price == pytest.approx(50.0)
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_missing_gas_price_falls_back_to_default_priority(store):
    sources = mock_sources(CHAINS, arbitrum={"base_fee": None, "gas_price": None})
    orchestrator = make_orchestrator(store, live=sources)
    await orchestrator.initialize()
    try:
        await sources["arbitrum"].emit()
        record = store.chain("arbitrum")
        assert record.base_fee == 0
        assert record.priority_fee == pytest.approx(2.0)
    finally:
        await orchestrator.disconnect()

# --- Price oracle ---

@pytest.mark.asyncio
async def test_oracle_failure_without_price_uses_fallback(store):
    orchestrator = make_orchestrator(store, oracle=MockPriceOracle(fail=True))
    await orchestrator.initialize()
    try:
        assert store.state.eth_usd_price == 2000.0
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_oracle_failure_keeps_last_known_price(store):
    oracle = MockPriceOracle([2500.0])
    orchestrator = make_orchestrator(store, oracle=oracle)
    await orchestrator.initialize()
    try:
        oracle.fail = True
        await orchestrator.tick()
        assert store.state.eth_usd_price == 2500.0
    finally:
        await orchestrator.disconnect()

# --- Simulation, fetch and disconnect ---

@pytest.mark.asyncio
async def test_simulation_tick_synthesizes_point_per_chain():
    store = GasMarketStore(mode="simulation")
    orchestrator = make_orchestrator(store)
    await orchestrator.initialize()
    try:
        # initialize seeds one point per chain
        assert all(len(store.chain(c).history) == 1 for c in CHAINS)
        await orchestrator.tick()
        assert all(len(store.chain(c).history) == 2 for c in CHAINS)
        assert all(store.chain(c).history[-1].source == "simulation" for c in CHAINS)
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_fetch_once_pulls_one_point_per_connected_chain(store):
    orchestrator = make_orchestrator(store)
    await orchestrator.initialize()
    try:
        await orchestrator.fetch_once()
        assert all(len(store.chain(c).history) == 1 for c in CHAINS)
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_disconnect_without_initialize_is_safe(store):
    orchestrator = make_orchestrator(store)
    await orchestrator.disconnect()
    await orchestrator.disconnect()
    assert not orchestrator.is_initialized

@pytest.mark.asyncio
async def test_disconnect_releases_handles_and_allows_reinitialize(store):
    sources = mock_sources(CHAINS)
    orchestrator = make_orchestrator(store, live=sources)
    await orchestrator.initialize()
    await orchestrator.disconnect()
    await orchestrator.disconnect()

    assert orchestrator.handles == {}
    assert all(s.disconnect_calls == 1 for s in sources.values())
    assert not any(store.chain(c).is_connected for c in CHAINS)

    await sources["ethereum"].emit()
    assert len(store.chain("ethereum").history) == 0

    await orchestrator.initialize()
    try:
        assert all(s.connect_attempts == 2 for s in sources.values())
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_disconnect_during_inflight_tick_appends_nothing():
    store = GasMarketStore(mode="simulation")
    sources = mock_sources(CHAINS)
    orchestrator = make_orchestrator(store, live=sources)
    await orchestrator.initialize()
    before = {c: len(store.chain(c).history) for c in CHAINS}

    gate = asyncio.Event()
    for source in sources.values():
        source.gate = gate
    tick = asyncio.create_task(orchestrator.tick())
    await settle()

    await orchestrator.disconnect()
    gate.set()
    await tick

    assert {c: len(store.chain(c).history) for c in CHAINS} == before
    assert not any(store.chain(c).is_connected for c in CHAINS)

@pytest.mark.asyncio
async def test_mode_switch_round_trip_keeps_history_order(store):
    live = mock_sources(CHAINS)
    simulation = mock_sources(CHAINS)
    orchestrator = make_orchestrator(store, live=live, simulation=simulation)
    await orchestrator.initialize()
    try:
        for number in (101, 102, 103):
            await live["ethereum"].emit(number)
        live_points = list(store.chain("ethereum").history)

        await orchestrator.switch_mode("simulation")
        assert store.state.mode == "simulation"
        assert orchestrator.active_mode == "simulation"
        await orchestrator.switch_mode("live")

        history = list(store.chain("ethereum").history)
        assert history[:3] == live_points
        assert [p.source for p in history] == ["live", "live", "live", "simulation"]
        assert store.chain("ethereum").is_connected
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_switch_mode_before_initialize_only_sets_mode(store):
    orchestrator = make_orchestrator(store)
    await orchestrator.switch_mode("simulation")
    assert store.state.mode == "simulation"
    assert not orchestrator.is_initialized

class DroppingLiveSource(LiveChainDataSource):
    """Live source that connects without a node and stops answering polls when ``alive`` is False."""
    def __init__(self, chain_id):
        super().__init__(chain_id, poll_interval=0.01, max_poll_failures=2)
        self.alive = True
        self.connect_attempts = 0

    async def connect(self, endpoint):
        self.connect_attempts += 1
        if not self.alive:
            raise ConnectivityError(f"{self.chain_id} unreachable")
        handle = ConnectionHandle(self.chain_id, endpoint)
        handle.last_block = 100
        return handle

    async def fetch_latest_block_number(self, handle):
        if not self.alive:
            raise ConnectionError("node stopped responding")
        return handle.last_block

async def wait_until(predicate, timeout=2.0):
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached in time")

@pytest.mark.asyncio
async def test_chain_that_drops_after_connecting_is_marked_down_and_reconnected(store):
    live = mock_sources(CHAINS)
    dropping = DroppingLiveSource("ethereum")
    live["ethereum"] = dropping
    orchestrator = make_orchestrator(store, live=live)
    await orchestrator.initialize()
    try:
        assert store.chain("ethereum").is_connected

        dropping.alive = False
        await wait_until(lambda: not store.chain("ethereum").is_connected)
        assert "ethereum" not in orchestrator.handles
        assert store.chain("polygon").is_connected
        assert store.chain("arbitrum").is_connected

        dropping.alive = True
        await orchestrator.tick()
        assert store.chain("ethereum").is_connected
        assert dropping.connect_attempts == 2
        assert "ethereum" in orchestrator.handles
    finally:
        await orchestrator.disconnect()

@pytest.mark.asyncio
async def test_losing_every_chain_sets_error(store):
    dropping = {c: DroppingLiveSource(c) for c in CHAINS}
    orchestrator = make_orchestrator(store, live=dropping)
    await orchestrator.initialize()
    try:
        assert store.state.error is None
        for source in dropping.values():
            source.alive = False
        await wait_until(lambda: not orchestrator.handles)
        assert store.state.error == UNREACHABLE_MESSAGE
        assert not any(store.chain(c).is_connected for c in CHAINS)
    finally:
        await orchestrator.disconnect()
