# /gastracker/core/control_api.py
# Read access to the market snapshot and derived queries; the only writes are
# the user-driven mode and simulation inputs, both behind the control token.
from typing import Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel

from gastracker.core.config import settings
from gastracker.core.logger import get_logger
from gastracker.core.models import Mode
from gastracker.core.orchestrator import IngestionOrchestrator
from gastracker.core.state import DEFAULT_INTERVAL_MS, GasMarketStore, ValidationError

log = get_logger(__name__)

class ModeRequest(BaseModel):
    mode: Mode

def verify(authorization: str | None = Header(None)):
    token = settings.CONTROL_API_TOKEN
    if not token:
        raise HTTPException(status_code=500, detail="Control token not configured")
    if authorization != f"Bearer {token}":
        raise HTTPException(status_code=401, detail="Unauthorized")

def create_app(store: GasMarketStore, orchestrator: Optional[IngestionOrchestrator] = None) -> FastAPI:
    app = FastAPI(title="gastracker")

    def known_chain(chain_id: str) -> str:
        if chain_id not in store.chain_ids:
            raise HTTPException(status_code=404, detail=f"Unknown chain: {chain_id}")
        return chain_id

    @app.get("/state")
    async def get_state():
        return store.snapshot().model_dump(mode="json")

    @app.get("/chains/{chain_id}/series")
    async def get_series(chain_id: str = Depends(known_chain), interval_ms: int = Query(DEFAULT_INTERVAL_MS, gt=0)):
        series = store.get_aggregated_series(chain_id, interval_ms)
        return [point.model_dump(mode="json", exclude_none=True) for point in series]

    @app.get("/chains/{chain_id}/cost")
    async def get_cost(chain_id: str = Depends(known_chain),
                       gas_limit: int = Query(settings.MIN_GAS_LIMIT, ge=settings.MIN_GAS_LIMIT),
                       amount: float = Query(0.0, ge=0)):
        cost = store.estimate_transaction_cost(chain_id, gas_limit, amount)
        return {"chain": chain_id, "trend": store.fee_trend(chain_id), **cost.model_dump()}

    @app.get("/costs")
    async def get_costs(gas_limit: int = Query(settings.MIN_GAS_LIMIT, ge=settings.MIN_GAS_LIMIT),
                        amount: float = Query(0.0, ge=0)):
        costs = store.compare_transaction_costs(gas_limit, amount)
        return {
            "costs": {chain_id: cost.model_dump() for chain_id, cost in costs.items()},
            "cheapest": store.cheapest_chain(gas_limit, amount),
        }

    @app.post("/mode")
    async def set_mode(request: ModeRequest, auth: None = Depends(verify)):
        if orchestrator is not None:
            await orchestrator.switch_mode(request.mode)
        else:
            store.set_mode(request.mode)
        return {"mode": store.state.mode}

    @app.post("/simulation")
    async def set_simulation(fields: dict = Body(...), auth: None = Depends(verify)):
        try:
            simulation = store.set_simulation(**fields)
        except ValidationError as e:
            log.warning("SIMULATION_INPUT_REJECTED", error=str(e))
            raise HTTPException(status_code=422, detail=str(e))
        return {"simulation": simulation.model_dump(), "estimate": store.estimate_simulation().model_dump()}

    return app
