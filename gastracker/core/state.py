# /gastracker/core/state.py
# The gas market store: sole owner of MarketState. Every mutation is a short,
# synchronous call so readers on the same event loop never see a half update.
import re
from collections import deque
from typing import Callable, Dict, Iterator, Mapping, Optional, Tuple

from gastracker.core.chains import ChainConfig, chain_configs
from gastracker.core.config import settings
from gastracker.core.logger import get_logger, GAS_POINTS_INGESTED
from gastracker.core.models import (
    ChainRecord, GasPoint, MarketState, Mode, PointSource, SimulationInputs, TransactionCost, now_ms,
)

log = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_INTERVAL_MS = 15 * 60 * 1000
GWEI_PER_NATIVE = 1e9
# Relative change between the last two totals that counts as a trend
TREND_THRESHOLD = 0.05

_AMOUNT_RE = re.compile(r"(\d+\.?\d*|\.\d+)?")
_SNAPSHOT_FIELDS = {"base_fee", "priority_fee", "block_number", "is_connected", "rpc_url"}
_MODES = ("live", "simulation")

class ValidationError(ValueError):
    """Raised when user-supplied simulation input is malformed."""
    pass

class AggregatedSeries:
    """
    Interval means over the trailing 24h window of one chain's history.

    Iterating computes the buckets on demand from a snapshot taken at
    construction; iterating again restarts from the first bucket.
    """
    def __init__(self, points: Tuple[GasPoint, ...], now: int, interval_ms: int):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self._points = points
        self.now = now
        self.interval_ms = interval_ms
        self.window_start = now - DAY_MS

    def __iter__(self) -> Iterator[GasPoint]:
        last_bucket = (self.now - self.window_start) // self.interval_ms
        sums: Dict[int, list] = {}
        for point in self._points:
            if point.timestamp < self.window_start:
                continue
            idx = (point.timestamp - self.window_start) // self.interval_ms
            if idx > last_bucket:
                continue
            acc = sums.setdefault(idx, [0.0, 0.0, 0.0, 0])
            acc[0] += point.base_fee
            acc[1] += point.priority_fee
            acc[2] += point.total_fee
            acc[3] += 1
        for idx in sorted(sums):
            base, priority, total, count = sums[idx]
            yield GasPoint(
                timestamp=self.window_start + idx * self.interval_ms,
                base_fee=base / count,
                priority_fee=priority / count,
                total_fee=total / count,
            )

    def __len__(self) -> int:
        return sum(1 for _ in self)

class GasMarketStore:
    """
    Holds the authoritative market snapshot and the operations that read and
    mutate it. Construct one per process (or per test); nothing here is global.
    """
    def __init__(self, chains: Optional[Mapping[str, ChainConfig]] = None,
                 history_limit: int = settings.HISTORY_LIMIT,
                 clock: Callable[[], int] = now_ms,
                 mode: Mode = "live"):
        self._chain_configs = dict(chains if chains is not None else chain_configs())
        self.history_limit = history_limit
        self._clock = clock
        self._initial_mode = mode
        self.state = self._fresh_state()

    def _fresh_state(self) -> MarketState:
        records = {
            chain_id: ChainRecord(name=cfg.name, symbol=cfg.symbol, rpc_url=cfg.rpc_url)
            for chain_id, cfg in self._chain_configs.items()
        }
        return MarketState(chains=records, mode=self._initial_mode)

    @property
    def chain_ids(self) -> Tuple[str, ...]:
        return tuple(self.state.chains)

    def now(self) -> int:
        return self._clock()

    def chain(self, chain_id: str) -> ChainRecord:
        try:
            return self.state.chains[chain_id]
        except KeyError:
            raise KeyError(f"Unknown chain id: {chain_id!r}") from None

    def reset(self):
        """Restores construction defaults, dropping all history."""
        self.state = self._fresh_state()
        log.info("MARKET_STATE_RESET")

    def snapshot(self) -> MarketState:
        """Deep copy for readers that must not hold a live reference."""
        return self.state.model_copy(deep=True)

    # --- Ingestion writes ---

    def update_chain_snapshot(self, chain_id: str, **fields):
        record = self.chain(chain_id)
        unknown = set(fields) - _SNAPSHOT_FIELDS
        if unknown:
            raise AttributeError(f"Fields cannot be set through a snapshot update: {sorted(unknown)}")
        for name, value in fields.items():
            setattr(record, name, value)
        record.gas_price = record.base_fee + record.priority_fee
        record.last_update = self._clock()

    def append_gas_point(self, chain_id: str, point: GasPoint):
        history = self.chain(chain_id).history
        while len(history) >= self.history_limit:
            history.popleft()
        history.append(point)
        GAS_POINTS_INGESTED.labels(chain_id).inc()
        log.debug("GAS_POINT_APPENDED", chain=chain_id, total_fee=point.total_fee, history_len=len(history))

    # --- Scalar setters ---

    def set_spot_price(self, value: float):
        if value < 0:
            raise ValueError("Spot price cannot be negative")
        self.state.eth_usd_price = float(value)

    def set_mode(self, mode: Mode):
        if mode not in _MODES:
            raise ValueError(f"Unknown mode: {mode!r}")
        if mode != self.state.mode:
            log.info("MODE_CHANGED", previous=self.state.mode, mode=mode)
        self.state.mode = mode

    def set_loading(self, loading: bool):
        self.state.is_loading = loading

    def set_error(self, error: Optional[str]):
        self.state.error = error

    def set_simulation(self, **fields) -> SimulationInputs:
        """
        Validates and applies simulation inputs. All fields are checked before
        any is applied, so a rejected call leaves the previous inputs intact.
        """
        unknown = set(fields) - set(SimulationInputs.model_fields)
        if unknown:
            raise ValidationError(f"Unknown simulation fields: {sorted(unknown)}")
        if "amount" in fields:
            amount = fields["amount"]
            if not isinstance(amount, str) or not _AMOUNT_RE.fullmatch(amount):
                raise ValidationError(f"Amount must be a non-negative decimal string, got {amount!r}")
        if "gas_limit" in fields:
            gas_limit = fields["gas_limit"]
            if isinstance(gas_limit, bool) or not isinstance(gas_limit, int):
                raise ValidationError(f"Gas limit must be an integer, got {gas_limit!r}")
            if gas_limit < settings.MIN_GAS_LIMIT:
                raise ValidationError(f"Gas limit must be at least {settings.MIN_GAS_LIMIT}")
        if "chain" in fields and fields["chain"] not in self.state.chains:
            raise ValidationError(f"Unknown chain: {fields['chain']!r}")

        self.state.simulation = self.state.simulation.model_copy(update=fields)
        return self.state.simulation

    # --- Derived queries ---

    def get_aggregated_series(self, chain_id: str, interval_ms: int = DEFAULT_INTERVAL_MS,
                              now_ms: Optional[int] = None,
                              source: Optional[PointSource] = None) -> AggregatedSeries:
        history = self.chain(chain_id).history
        points = tuple(p for p in history if source is None or p.source == source)
        now = self._clock() if now_ms is None else now_ms
        return AggregatedSeries(points, now, interval_ms)

    def estimate_transaction_cost(self, chain_id: str, gas_limit: int, amount: float) -> TransactionCost:
        record = self.chain(chain_id)
        price = self.state.eth_usd_price
        gas_cost_native = (record.gas_price * gas_limit) / GWEI_PER_NATIVE
        total_cost_native = gas_cost_native + amount
        return TransactionCost(
            gas_cost_native=gas_cost_native,
            gas_cost_fiat=gas_cost_native * price,
            total_cost_native=total_cost_native,
            total_cost_fiat=total_cost_native * price,
        )

    def compare_transaction_costs(self, gas_limit: int, amount: float) -> Dict[str, TransactionCost]:
        return {chain_id: self.estimate_transaction_cost(chain_id, gas_limit, amount) for chain_id in self.state.chains}

    def cheapest_chain(self, gas_limit: int, amount: float) -> str:
        costs = self.compare_transaction_costs(gas_limit, amount)
        cheapest = next(iter(costs))
        for chain_id, cost in costs.items():
            if cost.gas_cost_fiat < costs[cheapest].gas_cost_fiat:
                cheapest = chain_id
        return cheapest

    def estimate_simulation(self) -> TransactionCost:
        """Cost of the transaction currently described by the simulation inputs."""
        sim = self.state.simulation
        amount = float(sim.amount) if sim.amount else 0.0
        return self.estimate_transaction_cost(sim.chain, sim.gas_limit, amount)

    def fee_trend(self, chain_id: str) -> str:
        history = self.chain(chain_id).history
        if len(history) < 2:
            return "flat"
        previous, current = history[-2].total_fee, history[-1].total_fee
        if current > previous * (1 + TREND_THRESHOLD):
            return "up"
        if current < previous * (1 - TREND_THRESHOLD):
            return "down"
        return "flat"
