# /gastracker/core/models.py
# Typed records shared by the store, the orchestrator and the control API.
import time
from collections import deque
from typing import Deque, Dict, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

Mode = Literal["live", "simulation"]
PointSource = Literal["live", "simulation"]

def now_ms() -> int:
    return int(time.time() * 1000)

class GasPoint(BaseModel):
    """One fee observation for a chain, in gwei."""
    model_config = ConfigDict(frozen=True)

    timestamp: int
    base_fee: float = Field(ge=0)
    priority_fee: float = Field(ge=0)
    total_fee: float = Field(ge=0)
    usd_price: Optional[float] = None
    source: Optional[PointSource] = None

    @classmethod
    def create(cls, timestamp: int, base_fee: float, priority_fee: float,
               usd_price: Optional[float] = None, source: Optional[PointSource] = None) -> "GasPoint":
        """Build a point whose total_fee is the sum of its components."""
        return cls(
            timestamp=timestamp,
            base_fee=base_fee,
            priority_fee=priority_fee,
            total_fee=base_fee + priority_fee,
            usd_price=usd_price,
            source=source,
        )

class ChainRecord(BaseModel):
    """Mutable per-chain snapshot plus its bounded history."""
    name: str
    symbol: str
    rpc_url: str = ""
    base_fee: float = 0.0
    priority_fee: float = 0.0
    gas_price: float = 0.0
    block_number: int = 0
    history: Deque[GasPoint] = Field(default_factory=deque)
    is_connected: bool = False
    last_update: int = 0

class SimulationInputs(BaseModel):
    amount: str = "0.1"
    gas_limit: int = 21000
    chain: str = "ethereum"

class MarketState(BaseModel):
    chains: Dict[str, ChainRecord]
    eth_usd_price: float = 0.0
    mode: Mode = "live"
    is_loading: bool = False
    error: Optional[str] = None
    simulation: SimulationInputs = Field(default_factory=SimulationInputs)

class TransactionCost(BaseModel):
    model_config = ConfigDict(frozen=True)

    gas_cost_native: float
    gas_cost_fiat: float
    total_cost_native: float
    total_cost_fiat: float
