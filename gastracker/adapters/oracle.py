# /gastracker/adapters/oracle.py
import random
from decimal import Decimal, localcontext
from typing import Optional

import aiohttp
from web3 import AsyncWeb3, Web3

from gastracker.abis.uniswap_v3 import UNISWAP_V3_POOL_ABI
from gastracker.core.config import settings
from gastracker.core.decorators import retriable_network_call
from gastracker.core.logger import get_logger

log = get_logger(__name__)

Q192 = 2 ** 192
# sqrtPriceX96 is up to 160 bits, so its square needs ~97 significant digits.
# Numerator and denominator stay exact Python ints; only the final division
# is rounded, to this many digits.
_DIVISION_PRECISION = 60

class OracleError(Exception):
    """Raised when a spot price cannot be produced."""
    pass

def price_from_sqrt_price_x96(sqrt_price_x96: int, decimals0: int, decimals1: int, invert: bool = False) -> Decimal:
    """
    Converts a pool's sqrtPriceX96 to a human price.

    price = sqrtPriceX96**2 * 10**decimals0 / (2**192 * 10**decimals1), which is
    token1 per token0; ``invert`` returns token0 per token1 instead.
    """
    if sqrt_price_x96 <= 0:
        raise OracleError(f"Invalid sqrtPriceX96: {sqrt_price_x96}")
    numerator = sqrt_price_x96 * sqrt_price_x96 * 10 ** decimals0
    denominator = Q192 * 10 ** decimals1
    with localcontext() as ctx:
        ctx.prec = _DIVISION_PRECISION
        if invert:
            return Decimal(denominator) / Decimal(numerator)
        return Decimal(numerator) / Decimal(denominator)

def sqrt_price_x96_from_price(price, decimals0: int, decimals1: int, invert: bool = False) -> int:
    """Inverse of price_from_sqrt_price_x96, rounded to the nearest integer."""
    with localcontext() as ctx:
        ctx.prec = _DIVISION_PRECISION
        value = Decimal(str(price))
        if value <= 0:
            raise ValueError("Price must be positive")
        if invert:
            value = 1 / value
        raw = value * Decimal(10) ** decimals1 / Decimal(10) ** decimals0
        return int((raw * Q192).sqrt().to_integral_value())

class PriceOracle:
    """Interface for fiat-per-native-unit price sources."""
    async def get_spot_price(self) -> float:
        raise NotImplementedError

class LivePriceOracle(PriceOracle):
    """Reads slot0 of a Uniswap V3 pool with a read-only contract call."""
    def __init__(self, rpc_url: str, pool_address: str = settings.PRICE_POOL_ADDRESS,
                 decimals0: int = settings.PRICE_POOL_DECIMALS0,
                 decimals1: int = settings.PRICE_POOL_DECIMALS1,
                 invert: bool = settings.PRICE_POOL_INVERT,
                 timeout: float = settings.RPC_TIMEOUT_SECONDS):
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            rpc_url, request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)}
        ))
        self.pool = self.w3.eth.contract(address=Web3.to_checksum_address(pool_address), abi=UNISWAP_V3_POOL_ABI)
        self.decimals0 = decimals0
        self.decimals1 = decimals1
        self.invert = invert

    @retriable_network_call
    async def _read_sqrt_price(self) -> int:
        slot0 = await self.pool.functions.slot0().call()
        return int(slot0[0])

    async def get_spot_price(self) -> float:
        try:
            sqrt_price = await self._read_sqrt_price()
        except Exception as e:
            raise OracleError(f"slot0 read failed: {e}") from e
        price = price_from_sqrt_price_x96(sqrt_price, self.decimals0, self.decimals1, self.invert)
        log.debug("POOL_SPOT_PRICE_READ", price=str(price))
        return float(price)

class SimulatedPriceOracle(PriceOracle):
    """
    Bounded random walk: the first read returns the seed, each later read
    moves by up to +/- step/2 and never drops below ``floor``.
    """
    def __init__(self, seed: float = settings.SIMULATED_PRICE_SEED,
                 step: float = settings.SIMULATED_PRICE_STEP,
                 floor: float = settings.SIMULATED_PRICE_FLOOR,
                 rng: Optional[random.Random] = None):
        self.price = max(floor, seed)
        self.step = step
        self.floor = floor
        self.rng = rng or random.Random()
        self._seeded = False

    async def get_spot_price(self) -> float:
        if self._seeded:
            self.price = max(self.floor, self.price + (self.rng.random() - 0.5) * self.step)
        self._seeded = True
        return self.price

def build_price_oracle(mode: str) -> PriceOracle:
    if mode == "simulation":
        return SimulatedPriceOracle()
    return LivePriceOracle(settings.ETHEREUM_RPC_URL)
