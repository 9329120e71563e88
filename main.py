# /main.py
# Runs ingestion, the health endpoint and the control API on one event loop.
# The store is created here once and handed to everything that needs it.
import asyncio
import uvicorn
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from gastracker.core.config import settings
from gastracker.core.config_validator import validate as validate_config
from gastracker.core.control_api import create_app
from gastracker.core.logger import configure_logging, get_logger
from gastracker.core.orchestrator import IngestionOrchestrator, InitializationError
from gastracker.core.state import GasMarketStore

def make_health_app(store: GasMarketStore) -> web.Application:
    async def healthz(request):
        state = store.state
        return web.json_response({
            "status": "degraded" if state.error else "ok",
            "mode": state.mode,
            "error": state.error,
            "eth_usd_price": state.eth_usd_price,
            "chains": {chain_id: record.is_connected for chain_id, record in state.chains.items()},
        })

    async def metrics(request):
        return web.Response(body=generate_latest(), headers={"Content-Type": CONTENT_TYPE_LATEST})

    app = web.Application()
    app.add_routes([web.get("/healthz", healthz), web.get("/metrics", metrics)])
    return app

async def main():
    configure_logging()
    log = get_logger("GasTracker.System")
    validate_config()
    log.info("GAS_TRACKER_STARTING", mode=settings.MODE)

    store = GasMarketStore(mode=settings.MODE)
    orchestrator = IngestionOrchestrator(store)
    try:
        await orchestrator.initialize()
    except InitializationError as e:
        log.critical("GAS_TRACKER_CANNOT_START", error=str(e))
        return

    runner = web.AppRunner(make_health_app(store))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", settings.HEALTH_PORT)
    await site.start()
    log.info("HEALTHCHECK_SERVER_STARTED", port=settings.HEALTH_PORT)

    server = uvicorn.Server(uvicorn.Config(
        create_app(store, orchestrator), host="0.0.0.0", port=settings.CONTROL_PORT, log_level=settings.LOG_LEVEL.lower(),
    ))
    try:
        await server.serve()
    finally:
        await orchestrator.disconnect()
        await runner.cleanup()
        log.warning("SYSTEM_SHUTDOWN_COMPLETE")

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
