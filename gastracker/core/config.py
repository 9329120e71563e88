# /gastracker/core/config.py
import sys
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Settings are read once from the environment (and an optional .env file).
# Everything that differs between deployments lives here; chain identity and
# simulation profiles are fixed in gastracker.core.chains.
class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Operating mode at startup: "live" or "simulation"
    MODE: str = "simulation"

    # Chain endpoints
    ETHEREUM_RPC_URL: str = "https://eth-mainnet.g.alchemy.com/v2/demo"
    POLYGON_RPC_URL: str = "https://polygon-mainnet.g.alchemy.com/v2/demo"
    ARBITRUM_RPC_URL: str = "https://arb-mainnet.g.alchemy.com/v2/demo"
    RPC_TIMEOUT_SECONDS: float = 10.0

    # Ingestion cadence
    LIVE_TICK_SECONDS: float = 30.0
    SIMULATION_TICK_SECONDS: float = 6.0
    BLOCK_POLL_SECONDS: float = 4.0
    # When set, simulated sources push their own blocks and the tick stops synthesizing
    SIMULATED_BLOCK_INTERVAL: float | None = None

    # Store and fee extraction policy
    HISTORY_LIMIT: int = Field(default=100, ge=1)
    MIN_GAS_LIMIT: int = 21000
    DEFAULT_PRIORITY_FEE_GWEI: float = 2.0
    BASE_FEE_SPLIT_RATIO: float = Field(default=0.8, ge=0.0, le=1.0)

    # Price oracle (Uniswap V3 USDC/WETH 0.05% pool by default)
    PRICE_POOL_ADDRESS: str = "0x88e6A0c2dDD26FEEb64F039a2c41296FcB3f5640"
    PRICE_POOL_DECIMALS0: int = 6
    PRICE_POOL_DECIMALS1: int = 18
    PRICE_POOL_INVERT: bool = True
    FALLBACK_ETH_USD_PRICE: float = 2000.0
    SIMULATED_PRICE_SEED: float = 2347.82
    SIMULATED_PRICE_STEP: float = 10.0
    SIMULATED_PRICE_FLOOR: float = 1000.0

    # Operational Settings
    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: str | None = None
    CONTROL_API_TOKEN: str | None = None
    HEALTH_PORT: int = 8080
    CONTROL_PORT: int = 8000

try:
    settings = Settings()
except Exception as e:
    # Late import to avoid circular dependency only for logging the failure
    try:
        from gastracker.core.logger import get_logger, configure_logging
        configure_logging()
        log = get_logger("GasTracker.Config")
        log.critical("FAILED_TO_LOAD_SETTINGS", error=str(e))
    except Exception:
        print("FAILED_TO_LOAD_SETTINGS", e)
    sys.exit(1)
