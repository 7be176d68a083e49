from fastapi import APIRouter, Depends
from orderflow.background_workers.abandonment_sweeper import AbandonmentSweeper
from orderflow.common.utils import success_response
from orderflow.db.dependencies import get_sweeper

sweeps_admin_router = APIRouter()


@sweeps_admin_router.post("/sweeps/abandoned")
async def run_abandonment_sweep(sweeper: AbandonmentSweeper = Depends(get_sweeper)):
    cancelled = await sweeper.sweep_once()
    return success_response({"cancelled_order_ids": cancelled, "count": len(cancelled)})
