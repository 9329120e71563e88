# /gastracker/core/chains.py
# The fixed set of supported chains. Identifiers never change at runtime.
from typing import Dict, NamedTuple

from gastracker.core.config import Settings, settings as default_settings

class SimulationProfile(NamedTuple):
    """Random-walk parameters for a simulated chain, in gwei."""
    base: float
    priority: float
    variance: float
    block_time: float  # seconds

class ChainConfig(NamedTuple):
    chain_id: str
    name: str
    symbol: str
    rpc_url: str
    # Chains without a usable base fee get the aggregate gas price split by ratio
    splits_gas_price: bool
    profile: SimulationProfile

SIMULATION_PROFILES: Dict[str, SimulationProfile] = {
    "ethereum": SimulationProfile(base=15.0, priority=2.0, variance=5.0, block_time=12.0),
    "polygon": SimulationProfile(base=35.0, priority=30.0, variance=10.0, block_time=2.0),
    "arbitrum": SimulationProfile(base=0.1, priority=0.05, variance=0.05, block_time=0.25),
}

def chain_configs(settings: Settings = default_settings) -> Dict[str, ChainConfig]:
    """Builds the chain table, resolving endpoints from settings."""
    return {
        "ethereum": ChainConfig("ethereum", "Ethereum", "ETH", settings.ETHEREUM_RPC_URL, False, SIMULATION_PROFILES["ethereum"]),
        "polygon": ChainConfig("polygon", "Polygon", "MATIC", settings.POLYGON_RPC_URL, True, SIMULATION_PROFILES["polygon"]),
        "arbitrum": ChainConfig("arbitrum", "Arbitrum", "ETH", settings.ARBITRUM_RPC_URL, True, SIMULATION_PROFILES["arbitrum"]),
    }
