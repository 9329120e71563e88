# /gastracker/core/config_validator.py
# Run at startup to catch settings that would leave ingestion unable to work.
from gastracker.core.config import settings
from gastracker.core.logger import log

def validate():
    log.info("--- CONFIG VALIDATION START ---")
    errors = []

    if settings.MODE not in ("live", "simulation"):
        errors.append(f"MODE must be 'live' or 'simulation', got {settings.MODE!r}")

    if settings.MODE == "live":
        for var in ("ETHEREUM_RPC_URL", "POLYGON_RPC_URL", "ARBITRUM_RPC_URL"):
            if not getattr(settings, var, None):
                errors.append(f"Missing required configuration: {var}")

    if settings.PRICE_POOL_DECIMALS0 < 0 or settings.PRICE_POOL_DECIMALS1 < 0:
        errors.append("Price pool decimals must be non-negative")

    if not settings.CONTROL_API_TOKEN:
        log.warning("CONTROL_API_TOKEN_NOT_SET", detail="mode and simulation writes will be refused")

    if errors:
        for error in errors:
            log.critical(error)
        raise ValueError("System configuration is incomplete. Halting.")

    log.info("--- CONFIG VALIDATION PASSED ---")

if __name__ == "__main__":
    validate()
